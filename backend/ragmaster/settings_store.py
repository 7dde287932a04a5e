# ragmaster/settings_store.py
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from . import models
from .config import (
    DEFAULT_MARKETING_INSTRUCTION, DEFAULT_SYSTEM_INSTRUCTION, env_credential,
)
from .log import get_logger
from .models import utcnow

logger = get_logger(__name__)

MASK = "********"
SETTINGS_ID = 1

# camelCase (API) -> column
PROMPT_FIELDS = {
    "systemInstruction":    "system_instruction",
    "marketingInstruction": "marketing_instruction",
}
SECRET_FIELDS = {
    "geminiApiKey":          "gemini_api_key",
    "whatsappToken":         "whatsapp_token",
    "whatsappPhoneNumberId": "whatsapp_phone_number_id",
    "verifyToken":           "verify_token",
    "fbAppSecret":           "fb_app_secret",
    "fbPageToken":           "fb_page_token",
    "messengerToken":        "messenger_token",
    "instagramToken":        "instagram_token",
}


@dataclass
class Credentials:
    gemini_api_key: str = ""
    whatsapp_token: str = ""
    whatsapp_phone_number_id: str = ""
    verify_token: str = ""
    fb_app_secret: str = ""


def get_row(db: Session) -> Optional[models.AppSettings]:
    return db.get(models.AppSettings, SETTINGS_ID)


def read_masked(db: Session) -> Dict[str, str]:
    row = get_row(db)
    if row is None:
        return {}
    out = {api: getattr(row, col) or "" for api, col in PROMPT_FIELDS.items()}
    out.update({api: MASK if getattr(row, col) else "" for api, col in SECRET_FIELDS.items()})
    return out


def _should_update(value: Any) -> bool:
    return bool(value) and value != MASK


def write(db: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Upsert the settings row. Returns the columns that were changed."""
    changes: Dict[str, Any] = {}
    for api, col in PROMPT_FIELDS.items():
        if payload.get(api) is not None:
            changes[col] = payload[api]
    for api, col in SECRET_FIELDS.items():
        if _should_update(payload.get(api)):
            changes[col] = payload[api]

    row = get_row(db)
    if row is None:
        row = models.AppSettings(id=SETTINGS_ID)
        db.add(row)
    for col, value in changes.items():
        setattr(row, col, value)
    row.updated_at = utcnow()
    db.commit()

    # never log values, only which fields moved
    logger.info("[Config] settings updated: %s", sorted(changes) or "nothing")
    return changes


def resolve_credentials(db: Optional[Session]) -> Credentials:
    row = get_row(db) if db is not None else None
    values = {}
    for col in Credentials.__dataclass_fields__:
        values[col] = env_credential(col) or (getattr(row, col, None) or "")
    return Credentials(**values)


def system_instruction(db: Session) -> str:
    row = get_row(db)
    return (row.system_instruction if row else None) or DEFAULT_SYSTEM_INSTRUCTION


def marketing_instruction(db: Session) -> str:
    row = get_row(db)
    return (row.marketing_instruction if row else None) or DEFAULT_MARKETING_INSTRUCTION


def mark_webhook_verified(db: Session) -> None:
    row = get_row(db)
    if row is None:
        row = models.AppSettings(id=SETTINGS_ID)
        db.add(row)
    row.webhook_verified_at = utcnow()
    db.commit()


def webhook_verified(db: Session) -> bool:
    row = get_row(db)
    return bool(row and row.webhook_verified_at)
