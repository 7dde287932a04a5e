# ragmaster/documents.py
# ──────────────────────────────────────────────────────────────────────────────
#  Knowledge-base documents: hash dedup → provider upload → activation poll →
#  metadata row, with a compensating provider delete if the row can't be saved.
# ──────────────────────────────────────────────────────────────────────────────
import hashlib
import time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .config import FILE_POLL_ATTEMPTS, FILE_POLL_INTERVAL
from .errors import DuplicateDocument
from .gemini import GeminiClient
from .log import get_logger
from .models import utcnow

logger = get_logger(__name__)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def to_dict(doc: models.Document) -> Dict[str, Any]:
    return {
        "id":           doc.id,
        "name":         doc.name,
        "hash":         doc.hash,
        "uri":          doc.uri,
        "google_name":  doc.provider_name,
        "mime_type":    doc.mime_type,
        "size":         doc.size,
        "status":       doc.status,
        "usage_count":  doc.usage_count or 0,
        "last_used_at": doc.last_used_at.isoformat() if doc.last_used_at else None,
        "created_at":   doc.created_at.isoformat() if doc.created_at else None,
    }


def find_by_hash(db: Session, digest: str) -> Optional[models.Document]:
    return db.query(models.Document).filter(models.Document.hash == digest).first()


def list_documents(db: Session) -> List[models.Document]:
    return (
        db.query(models.Document)
        .order_by(models.Document.created_at.desc(), models.Document.id.desc())
        .all()
    )


def active_documents(db: Session) -> List[models.Document]:
    return (
        db.query(models.Document)
        .filter(models.Document.status == "success", models.Document.uri.isnot(None))
        .order_by(models.Document.id)
        .all()
    )


def mark_used(db: Session, docs: List[models.Document]) -> None:
    if not docs:
        return
    now = utcnow()
    for doc in docs:
        doc.usage_count  = (doc.usage_count or 0) + 1
        doc.last_used_at = now
    db.commit()


def _rollback_provider(client: GeminiClient, name: str) -> None:
    logger.warning("[Upload] DB error; rolling back provider upload %s", name)
    try:
        client.delete_file(name)
    except Exception as exc:
        logger.error("[Upload] rollback delete of %s failed: %s", name, exc)


def ingest(
    db: Session,
    client: GeminiClient,
    filename: str,
    mime_type: Optional[str],
    data: bytes,
    poll_attempts: int = FILE_POLL_ATTEMPTS,
    poll_interval: float = FILE_POLL_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
) -> models.Document:
    digest    = content_hash(data)
    mime_type = mime_type or "application/octet-stream"

    existing = find_by_hash(db, digest)
    if existing is not None:
        logger.info("[Upload] duplicate file rejected: %s (hash %s)", filename, digest[:12])
        raise DuplicateDocument(existing)

    logger.info("[Upload] uploading %s (%d bytes) to Gemini", filename, len(data))
    file_obj = client.upload_file(data, mime_type, filename)
    name     = file_obj["name"]

    try:
        active = client.wait_for_active(name, attempts=poll_attempts, interval=poll_interval, sleep=sleep)
    except Exception:
        # provider rejected or never finished processing the file
        _rollback_provider(client, name)
        raise

    doc = models.Document(
        name=filename,
        hash=digest,
        uri=active.get("uri") or file_obj.get("uri"),
        provider_name=name,
        mime_type=mime_type,
        size=len(data),
        status="success",
        created_at=utcnow(),
    )
    try:
        db.add(doc)
        db.commit()
        db.refresh(doc)
    except SQLAlchemyError as exc:
        db.rollback()
        _rollback_provider(client, name)
        if isinstance(exc, IntegrityError):
            winner = find_by_hash(db, digest)
            if winner is not None:
                raise DuplicateDocument(winner) from exc
        raise

    logger.info("[Upload] stored %s as document %s", filename, doc.id)
    return doc


def delete(db: Session, client: Optional[GeminiClient], doc: models.Document) -> None:
    if doc.provider_name and client is not None:
        try:
            client.delete_file(doc.provider_name)
            logger.info("[Delete] removed %s from Gemini", doc.provider_name)
        except Exception as exc:
            logger.warning("[Delete] Gemini delete warning for %s: %s", doc.provider_name, exc)
    elif doc.provider_name:
        logger.warning("[Delete] no Gemini client; %s left in provider store", doc.provider_name)

    db.delete(doc)
    db.commit()
