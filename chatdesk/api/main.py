"""
FastAPI application - Main entry point
"""

from dotenv import load_dotenv

load_dotenv()

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware

from chatdesk.api.endpoints.chat import router as chat_router
from chatdesk.api.endpoints.slack_events import router as slack_router
from chatdesk.api.endpoints.whatsapp_webhook import router as whatsapp_router
from chatdesk.api.escalation import router as escalation_router
from chatdesk.api.services import Services, build_services
from chatdesk.escalation.models import ChannelAddress, InboundMessage, UserChannel
from chatdesk.utils.helpers import sanitize_input

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SERVICE_NAME = "Chatdesk Support API"
VERSION = "1.0.0"

LIVE_PLATFORMS = {"web": UserChannel.WEB, "mobile": UserChannel.MOBILE}


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title=SERVICE_NAME,
        description="Multi-channel support chatbot with human escalation to Slack",
        version=VERSION,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services or build_services()

    app.include_router(escalation_router, prefix="/api")
    app.include_router(chat_router, prefix="/api")
    app.include_router(slack_router)
    app.include_router(whatsapp_router)

    @app.get("/", tags=["Health"])
    async def root():
        """Health check endpoint."""
        return {"service": SERVICE_NAME, "status": "healthy", "version": VERSION, "timestamp": datetime.now().isoformat()}

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Detailed health check (stores, live sessions)."""
        svc: Services = app.state.services
        return {
            "status": "healthy",
            "database": {"chat_store": "connected" if svc.chat_store.ping() else "unavailable"},
            "open_escalations": len(svc.store.list_open()),
            "timestamp": datetime.now().isoformat(),
        }

    @app.websocket("/ws/chat")
    async def websocket_chat(websocket: WebSocket):
        """
        Live chat session for web and mobile clients.

        - Authenticates with a session token (`token` query param or
          `Authorization: Bearer ...`) and joins the room `<platform>_<uid>`.
        - Client frames: `{"event": "chat_message", "data": {...}}`.
        - Server frames: `bot_response`, `admin_response`, `error`.
        """
        svc: Services = app.state.services
        token = websocket.query_params.get("token") or _bearer(websocket.headers.get("authorization"))
        uid = await svc.token_verifier.verify(token)
        if not uid:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        channel = LIVE_PLATFORMS.get((websocket.query_params.get("platform") or "web").lower(), UserChannel.WEB)
        address = ChannelAddress(channel, uid)

        await websocket.accept()
        svc.live.join(address.user_id, websocket)
        try:
            while True:
                try:
                    frame = await websocket.receive_json()
                except WebSocketDisconnect:
                    break
                except Exception:
                    # Malformed frame; close with a generic error.
                    await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
                    break

                if not isinstance(frame, dict) or frame.get("event") != "chat_message":
                    continue
                await _handle_live_message(svc, websocket, address, frame.get("data") or {})
        finally:
            svc.live.leave(address.user_id, websocket)

    return app


def _bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    return value.strip() if scheme.lower() == "bearer" else None


async def _handle_live_message(svc: Services, websocket: WebSocket, address: ChannelAddress, data: Dict[str, Any]) -> None:
    language = data.get("language")
    if data.get("type") == "voice":
        message = InboundMessage(
            user=address,
            text="",
            language=language,
            channel_metadata={"platform": address.channel.value},
            is_voice=True,
            voice_data={k: data.get(k) for k in ("audioData", "duration", "mimeType", "timestamp")},
        )
    else:
        text = sanitize_input(data.get("message") or "")
        if not text:
            return
        message = InboundMessage(
            user=address,
            text=text,
            language=language,
            channel_metadata={"platform": address.channel.value},
        )

    try:
        reply = await svc.pipeline.handle(message)
    except Exception as e:
        out = svc.error_handler.handle_exception(e, message.language or "en", {"user_id": address.user_id})
        await websocket.send_json({"event": "error", "data": {"message": out["message"]}})
        return

    await websocket.send_json({"event": "bot_response", "data": reply.to_event()})


app = create_app()
