"""User-facing error messages for the chat pipeline."""
from typing import Any, Dict
import logging

logger = logging.getLogger(__name__)

GENERIC_ERRORS = {
    "en": "Sorry, something went wrong. Please try again.",
    "es": "Lo siento, algo salió mal. Por favor, inténtalo de nuevo.",
}


class ErrorHandler:
    def user_message(self, language: str = "en") -> str:
        return GENERIC_ERRORS.get(language or "en", GENERIC_ERRORS["en"])

    def handle_exception(self, exc: Exception, language: str = "en", context: Dict[str, Any] = None) -> Dict[str, Any]:
        logger.error("Unhandled exception in chat pipeline: %s (context=%s)", exc, context or {}, exc_info=True)
        return {"message": self.user_message(language), "error": True}
