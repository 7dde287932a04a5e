# ragmaster/whatsapp.py
# ──────────────────────────────────────────────────────────────────────────────
#  Meta Cloud API (WhatsApp) client: read receipts, reactions, text/template
#  sends and media download with a size ceiling.
# ──────────────────────────────────────────────────────────────────────────────
import base64
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import requests

from .config import GRAPH_BASE_URL, HTTP_TIMEOUT, WHATSAPP_API_VERSION
from .errors import MediaTooLarge, WhatsAppAPIError
from .log import get_logger

logger = get_logger(__name__)


def clean_phone_number(phone: str) -> str:
    """E.164 digits only, no '+'."""
    return re.sub(r"\D", "", phone or "")


@dataclass
class Media:
    data_b64: str
    mime_type: str
    size: int


def _graph_error(resp) -> WhatsAppAPIError:
    try:
        err = (resp.json() or {}).get("error") or {}
    except ValueError:
        err = {}
    return WhatsAppAPIError(
        err.get("message") or f"WhatsApp API HTTP {resp.status_code}",
        error_code=err.get("code", "UNKNOWN"),
        status=resp.status_code,
    )


class WhatsAppClient:
    def __init__(
        self,
        token: str,
        phone_number_id: str,
        api_version: str = WHATSAPP_API_VERSION,
        base_url: str = GRAPH_BASE_URL,
        timeout: float = HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
        media_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.token           = token
        self.phone_number_id = phone_number_id
        self.graph_url       = f"{base_url.rstrip('/')}/{api_version}"
        self.timeout         = timeout
        self.http            = session or requests.Session()
        self.media_transport = media_transport

    @property
    def _auth(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _post_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.token:
            raise WhatsAppAPIError("WhatsApp Token Missing")
        url = f"{self.graph_url}/{self.phone_number_id}/messages"
        try:
            resp = self.http.post(url, json=payload, headers=self._auth, timeout=self.timeout)
        except requests.RequestException as exc:
            raise WhatsAppAPIError(f"WhatsApp network error: {exc}") from exc
        if resp.status_code >= 400:
            raise _graph_error(resp)
        return resp.json() if resp.content else {}

    # ---- best-effort signals --------------------------------------------
    def mark_read(self, message_id: str) -> None:
        try:
            self._post_message({"messaging_product": "whatsapp", "status": "read", "message_id": message_id})
        except WhatsAppAPIError as exc:
            logger.error("[WhatsApp] error marking message as read: %s", exc)

    def react(self, to: str, message_id: str, emoji: str) -> None:
        try:
            self._post_message({
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": to,
                "type": "reaction",
                "reaction": {"message_id": message_id, "emoji": emoji},
            })
        except WhatsAppAPIError as exc:
            logger.warning("[WhatsApp] error sending reaction: %s", exc)

    # ---- sends -----------------------------------------------------------
    def send_text(self, to: str, body: str) -> Dict[str, Any]:
        return self._post_message({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": clean_phone_number(to),
            "type": "text",
            "text": {"body": body},
        })

    def send_template(self, to: str, name: str, language: str) -> Dict[str, Any]:
        return self._post_message({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": clean_phone_number(to),
            "type": "template",
            "template": {"name": name, "language": {"code": language}},
        })

    # ---- media -----------------------------------------------------------
    def fetch_media(self, media_id: str, max_bytes: int) -> Media:
        if not self.token:
            raise WhatsAppAPIError("Missing WhatsApp Token")

        resp = self.http.get(f"{self.graph_url}/{media_id}", headers=self._auth, timeout=self.timeout)
        if resp.status_code >= 400:
            raise _graph_error(resp)
        meta = resp.json()
        url  = meta.get("url")
        if not url:
            raise WhatsAppAPIError(f"No download URL for media {media_id}")
        declared = int(meta.get("file_size") or 0)
        if declared > max_bytes:
            raise MediaTooLarge(declared, max_bytes)

        chunks, size = [], 0
        with httpx.Client(timeout=self.timeout, follow_redirects=True, transport=self.media_transport) as http:
            with http.stream("GET", url, headers=self._auth) as media:
                if media.status_code >= 400:
                    raise WhatsAppAPIError(f"Media download failed with HTTP {media.status_code}",
                                           status=media.status_code)
                length = int(media.headers.get("content-length") or 0)
                if length > max_bytes:
                    raise MediaTooLarge(length, max_bytes)
                for chunk in media.iter_bytes():
                    size += len(chunk)
                    if size > max_bytes:
                        raise MediaTooLarge(size, max_bytes)
                    chunks.append(chunk)
                mime = media.headers.get("content-type") or meta.get("mime_type") or "application/octet-stream"

        return Media(
            data_b64=base64.b64encode(b"".join(chunks)).decode("ascii"),
            mime_type=mime.split(";")[0].strip(),
            size=size,
        )
