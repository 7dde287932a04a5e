# ragmaster/webhook.py
# ──────────────────────────────────────────────────────────────────────────────
#  WhatsApp webhook relay.
#
#  The subscription handshake is a two-state protocol: the relay stays in
#  AWAITING_VERIFICATION until Meta's GET challenge succeeds (recorded in the
#  settings row), then ACCEPTING event deliveries. Each inbound message is
#  handled on its own; a failure becomes an apology reply to that sender and
#  the batch goes on.
# ──────────────────────────────────────────────────────────────────────────────
import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from . import settings_store
from .chat import ChatRelay
from .config import AUDIO_MAX_BYTES, IMAGE_MAX_BYTES
from .errors import ServiceNotConfigured
from .gemini import ClientCell
from .log import get_logger
from .whatsapp import WhatsAppClient

logger = get_logger(__name__)

BUSINESS_OBJECT = "whatsapp_business_account"

AUDIO_PROMPT        = "Listen to this audio message."
NOT_READY_REPLY     = "System Error: AI not initialized. Please check server logs."
AUDIO_ERROR_REPLY   = "Error processing audio."
IMAGE_ERROR_REPLY   = "Error processing image."
GENERIC_ERROR_REPLY = "Sorry, I could not process your message right now."

REACTIONS = {"audio": "🎤", "image": "👀"}


class WebhookState(str, Enum):
    AWAITING_VERIFICATION = "awaiting_verification"
    ACCEPTING             = "accepting"


class VerificationFailed(Exception):
    pass


@dataclass
class InboundMessage:
    id: str
    sender: str
    type: str
    phone_number_id: str
    text: Optional[str] = None
    media_id: Optional[str] = None
    caption: Optional[str] = None


def _dicts(items: Any) -> List[Dict[str, Any]]:
    return [i for i in items if isinstance(i, dict)] if isinstance(items, list) else []


def parse_messages(body: Dict[str, Any]) -> List[InboundMessage]:
    # malformed units are skipped so the rest of the delivery still goes through
    out: List[InboundMessage] = []
    for entry in _dicts(body.get("entry")):
        for change in _dicts(entry.get("changes")):
            value    = change.get("value") if isinstance(change.get("value"), dict) else {}
            metadata = value.get("metadata") if isinstance(value.get("metadata"), dict) else {}
            phone_id = metadata.get("phone_number_id", "")
            for m in _dicts(value.get("messages")):
                kind    = m.get("type", "")
                payload = m.get(kind) if isinstance(m.get(kind), dict) else {}
                out.append(InboundMessage(
                    id=m.get("id", ""),
                    sender=m.get("from", ""),
                    type=kind,
                    phone_number_id=phone_id,
                    text=payload.get("body") if kind == "text" else None,
                    media_id=payload.get("id") if kind in ("audio", "image") else None,
                    caption=payload.get("caption") if kind == "image" else None,
                ))
    return out


def verify_signature(raw_body: bytes, header: Optional[str], app_secret: str) -> bool:
    if not header or not header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header.split("=", 1)[1])


class WebhookRelay:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_cell: ClientCell,
        whatsapp_factory: Callable[[str, str], WhatsAppClient] = WhatsAppClient,
        chat_relay: Optional[ChatRelay] = None,
    ):
        self.session_factory  = session_factory
        self.client_cell      = client_cell
        self.whatsapp_factory = whatsapp_factory
        self.chat_relay       = chat_relay or ChatRelay()

    # ---- handshake -------------------------------------------------------
    def state(self, db: Session) -> WebhookState:
        if settings_store.webhook_verified(db):
            return WebhookState.ACCEPTING
        return WebhookState.AWAITING_VERIFICATION

    def verify(self, db: Session, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> str:
        expected = settings_store.resolve_credentials(db).verify_token
        if mode != "subscribe" or not expected or not token or not hmac.compare_digest(token, expected):
            logger.warning("[Webhook] verification failed (mode=%s)", mode)
            raise VerificationFailed()
        settings_store.mark_webhook_verified(db)
        logger.info("[Webhook] verified; accepting events")
        return challenge or ""

    def accepts(self, db: Session, body: Any, raw_body: bytes, signature: Optional[str]) -> bool:
        if not isinstance(body, dict) or body.get("object") != BUSINESS_OBJECT:
            logger.info("[Webhook] ignoring non-WhatsApp event")
            return False
        if self.state(db) is not WebhookState.ACCEPTING:
            logger.warning("[Webhook] event received before subscription verification; dropped")
            return False
        secret = settings_store.resolve_credentials(db).fb_app_secret
        if secret and not verify_signature(raw_body, signature, secret):
            logger.warning("[Webhook] invalid X-Hub-Signature-256; dropped")
            return False
        return True

    # ---- event processing ------------------------------------------------
    def deliver(self, body: Any, raw_body: bytes, signature: Optional[str]) -> int:
        """Background entry point for a POSTed delivery. Never raises."""
        try:
            db = self.session_factory()
            try:
                accepted = self.accepts(db, body, raw_body, signature)
            finally:
                db.close()
            return self.process_event(body) if accepted else 0
        except Exception as exc:
            logger.exception("[Webhook] delivery dropped: %s", exc)
            return 0

    def process_event(self, body: Dict[str, Any]) -> int:
        """Handle every message of a delivery. Returns how many were handled."""
        messages = parse_messages(body)
        if not messages:
            return 0
        db = self.session_factory()
        try:
            creds   = settings_store.resolve_credentials(db)
            handled = 0
            for msg in messages:
                wa = self.whatsapp_factory(creds.whatsapp_token, msg.phone_number_id or creds.whatsapp_phone_number_id)
                try:
                    if self.handle_message(db, wa, creds.gemini_api_key, msg):
                        handled += 1
                except Exception as exc:
                    logger.exception("[Webhook] message %s from %s failed: %s", msg.id, msg.sender, exc)
                    db.rollback()
            return handled
        finally:
            db.close()

    def handle_message(self, db: Session, wa: WhatsAppClient, api_key: str, msg: InboundMessage) -> bool:
        if msg.type not in ("text", "audio", "image"):
            logger.info("[Webhook] unsupported message type %r from %s; skipped", msg.type, msg.sender)
            return False

        wa.mark_read(msg.id)
        if msg.type in REACTIONS:
            wa.react(msg.sender, msg.id, REACTIONS[msg.type])

        try:
            kwargs: Dict[str, Any] = {"message": msg.text}
            if msg.type == "audio":
                media  = wa.fetch_media(msg.media_id, AUDIO_MAX_BYTES)
                kwargs = {"audio": media.data_b64, "mime_type": media.mime_type}
            elif msg.type == "image":
                media  = wa.fetch_media(msg.media_id, IMAGE_MAX_BYTES)
                kwargs = {"image": media.data_b64, "mime_type": media.mime_type, "message": msg.caption}

            client = self.client_cell.get(lambda: api_key)
            reply  = self.chat_relay.reply(
                db, client, channel="whatsapp", user_id=msg.sender,
                audio_prompt=AUDIO_PROMPT, **kwargs,
            )
        except ServiceNotConfigured:
            wa.send_text(msg.sender, NOT_READY_REPLY)
            return True
        except Exception as exc:
            logger.error("[Webhook] %s message %s failed: %s", msg.type, msg.id, exc)
            db.rollback()
            wa.send_text(msg.sender, {
                "audio": AUDIO_ERROR_REPLY,
                "image": IMAGE_ERROR_REPLY,
            }.get(msg.type, GENERIC_ERROR_REPLY))
            return True

        wa.send_text(msg.sender, reply or GENERIC_ERROR_REPLY)
        return True
