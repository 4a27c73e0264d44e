"""
Reply generation, sentiment and language detection.

`GeminiResponder` calls Google Gemini through google-genai; `DemoResponder`
answers from keyword rules so the bot runs without an API key
(`GEMINI_API_KEY=DEMO_MODE` or unset).
"""

import asyncio
import logging
import os
import random
from typing import Any, Dict, Optional

from google import genai
from google.genai import types
from langdetect import DetectorFactory, LangDetectException, detect

from chatdesk.escalation.models import Sentiment

logger = logging.getLogger(__name__)

MODEL_NAME = "gemini-2.5-flash"
SUPPORTED_LANGUAGES = ("en", "es")

# langdetect is non-deterministic without a fixed seed.
DetectorFactory.seed = 0

SYSTEM_PROMPTS = {
    "en": """
You are a helpful and empathetic customer support assistant.
Keep responses concise (under 150 words), friendly, and professional.
Adjust your tone based on the user's sentiment:
- Positive: Be enthusiastic and supportive
- Neutral: Be helpful and informative
- Negative: Be understanding, apologetic, and solution-focused
If you cannot help with something, politely suggest contacting a human agent.
""".strip(),
    "es": """
Eres un asistente de atención al cliente útil y empático.
Mantén las respuestas concisas (menos de 150 palabras), amigables y profesionales.
Ajusta tu tono según el sentimiento del usuario:
- Positivo: Sé entusiasta y solidario
- Neutral: Sé útil e informativo
- Negativo: Sé comprensivo, disculpándote y enfocado en soluciones
Si no puedes ayudar con algo, sugiere cortésmente contactar a un agente humano.
""".strip(),
}

SENTIMENT_INSTRUCTION = (
    "Analyze the sentiment of the following text. Respond with only one word: positive, negative, or neutral."
)


class ResponderError(Exception):
    """Reply generation failed; the caller shows the generic error message."""


def parse_sentiment(raw: str) -> Sentiment:
    try:
        return Sentiment((raw or "").strip().lower().rstrip("."))
    except ValueError:
        return Sentiment.NEUTRAL


class GeminiResponder:
    def __init__(self, api_key: Optional[str] = None, temperature: float = 0.7, max_attempts: int = 3):
        api_key = api_key or os.environ.get("GEMINI_API_KEY")
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY is missing.")
        self.client = genai.Client(api_key=api_key)
        self.temperature = temperature
        self.max_attempts = max_attempts

    async def _generate(self, prompt: str, system_instruction: str, temperature: float, max_tokens: int) -> str:
        def _sync_generate():
            return self.client.models.generate_content(
                model=MODEL_NAME,
                contents=prompt,
                config=types.GenerateContentConfig(
                    system_instruction=system_instruction,
                    temperature=temperature,
                    max_output_tokens=max_tokens,
                ),
            )

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await asyncio.to_thread(_sync_generate)
                return (getattr(response, "text", "") or "").strip()
            except Exception as e:
                if attempt >= self.max_attempts:
                    logger.error("GenAI error: %s: %s", type(e).__name__, e, exc_info=True)
                    raise ResponderError(str(e)) from e
                backoff = (2 ** (attempt - 1)) + random.uniform(0, 0.5)
                logger.warning(
                    "GenAI request failed on attempt %s/%s (%s). Retrying in %.2fs...",
                    attempt,
                    self.max_attempts,
                    type(e).__name__,
                    backoff,
                )
                await asyncio.sleep(backoff)
        raise ResponderError("no attempts made")

    async def generate_reply(self, message: str, context: Dict[str, Any]) -> str:
        language = context.get("language") or "en"
        system = SYSTEM_PROMPTS.get(language, SYSTEM_PROMPTS["en"])
        profile = context.get("user_profile") or {}
        if profile.get("name"):
            system += f"\nUser's name is {profile['name']}."
        text = await self._generate(message, system, self.temperature, 200)
        if not text:
            raise ResponderError("empty response")
        return text

    async def analyze_sentiment(self, text: str) -> Sentiment:
        try:
            raw = await self._generate(text, SENTIMENT_INSTRUCTION, 0.1, 10)
        except ResponderError:
            return Sentiment.NEUTRAL
        return parse_sentiment(raw)

    async def detect_language(self, text: str) -> str:
        try:
            code = detect(text)
        except LangDetectException:
            return "en"
        return code if code in SUPPORTED_LANGUAGES else "en"


class DemoResponder:
    """Keyword-driven replies for local development and tests."""

    POSITIVE_WORDS = ("love", "great", "amazing", "excellent", "wonderful")
    NEGATIVE_WORDS = ("hate", "terrible", "awful", "frustrated", "angry", "bad")
    SPANISH_WORDS = ("hola", "gracias", "por favor", "ayuda", "necesito", "problema", "español")

    async def generate_reply(self, message: str, context: Dict[str, Any]) -> str:
        language = context.get("language") or "en"
        name = (context.get("user_profile") or {}).get("name")
        lowered = (message or "").lower()
        es = language == "es"

        if any(w in lowered for w in ("hello", "hi", "hola")):
            suffix = f" {name}" if name else ""
            return (
                f"¡Hola{suffix}! Soy tu asistente de IA. ¿Cómo puedo ayudarte hoy?"
                if es
                else f"Hello{suffix}! I'm your AI assistant. How can I help you today?"
            )
        if any(w in lowered for w in ("love", "great", "amazing")):
            return (
                "¡Me alegra saber que tienes una experiencia positiva! ¿Hay algo más en lo que pueda ayudarte?"
                if es
                else "I'm glad to hear you're having a positive experience! Is there anything else I can help you with?"
            )
        if "help" in lowered or "ayuda" in lowered:
            return (
                "Por supuesto, estoy aquí para ayudarte. Puedo responder preguntas o conectarte con un agente humano si es necesario."
                if es
                else "Of course, I'm here to help! I can answer questions or connect you with a human agent if needed."
            )
        return (
            "Gracias por tu mensaje. ¿Puedes contarme más sobre lo que necesitas?"
            if es
            else "Thank you for your message. Can you tell me more about what you need?"
        )

    async def analyze_sentiment(self, text: str) -> Sentiment:
        lowered = (text or "").lower()
        if any(w in lowered for w in self.POSITIVE_WORDS):
            return Sentiment.POSITIVE
        if any(w in lowered for w in self.NEGATIVE_WORDS):
            return Sentiment.NEGATIVE
        return Sentiment.NEUTRAL

    async def detect_language(self, text: str) -> str:
        lowered = (text or "").lower()
        return "es" if any(w in lowered for w in self.SPANISH_WORDS) else "en"


def build_responder(api_key: Optional[str] = None):
    api_key = api_key if api_key is not None else os.environ.get("GEMINI_API_KEY", "")
    demo = os.environ.get("DEMO_MODE", "").lower() in ("1", "true", "yes")
    if demo or not api_key or api_key == "DEMO_MODE":
        logger.info("Using demo responder")
        return DemoResponder()
    return GeminiResponder(api_key=api_key)
