# ragmaster/chat.py
import time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from . import documents, models, settings_store
from .gemini import GeminiClient, GenerateResult, file_part, generate_with_retry, inline_part, text_part
from .log import get_logger

logger = get_logger(__name__)

AUDIO_PROMPT = "Audio message received. Reply appropriately."
IMAGE_PROMPT = "Analyze this image."


def build_parts(
    docs: List[models.Document],
    message: Optional[str] = None,
    audio: Optional[str] = None,
    image: Optional[str] = None,
    mime_type: Optional[str] = None,
    audio_prompt: str = AUDIO_PROMPT,
) -> List[Dict[str, Any]]:
    """Document references first, then the user's media and/or text."""
    parts = [file_part(d.uri, d.mime_type) for d in docs if d.uri]
    if audio:
        parts.append(inline_part(audio, mime_type or "audio/webm"))
        parts.append(text_part(audio_prompt))
    elif image:
        parts.append(inline_part(image, mime_type or "image/jpeg"))
        parts.append(text_part(message or IMAGE_PROMPT))
    else:
        parts.append(text_part(message or ""))
    return parts


def describe_query(message: Optional[str], audio: Optional[str], image: Optional[str]) -> str:
    if audio:
        return "[Audio Message]"
    if image:
        return f"[Image Message] {message or ''}".rstrip()
    return message or ""


def log_request(
    db: Session,
    channel: str,
    query_text: str,
    response_text: str,
    is_success: bool,
    user_id: Optional[str],
    result: Optional[GenerateResult] = None,
    latency_ms: Optional[int] = None,
) -> None:
    db.add(models.RequestLog(
        channel=channel,
        query_text=query_text,
        response_text=response_text,
        is_success=is_success,
        user_id=user_id,
        input_tokens=result.input_tokens if result else 0,
        output_tokens=result.output_tokens if result else 0,
        latency_ms=latency_ms,
        created_at=models.utcnow(),
    ))
    db.commit()


class ChatRelay:
    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self.sleep = sleep

    def reply(
        self,
        db: Session,
        client: GeminiClient,
        *,
        channel: str,
        user_id: Optional[str],
        message: Optional[str] = None,
        audio: Optional[str] = None,
        image: Optional[str] = None,
        mime_type: Optional[str] = None,
        audio_prompt: str = AUDIO_PROMPT,
    ) -> str:
        docs        = documents.active_documents(db)
        instruction = settings_store.system_instruction(db)
        parts       = build_parts(docs, message, audio, image, mime_type, audio_prompt)
        query_text  = describe_query(message, audio, image)

        logger.info("[Chat] %s request with %d document(s)", channel, len(docs))
        started = time.monotonic()
        try:
            result = generate_with_retry(client, parts, system_instruction=instruction, sleep=self.sleep)
        except Exception as exc:
            db.rollback()
            try:
                log_request(db, channel, query_text, str(exc), False, user_id,
                            latency_ms=int((time.monotonic() - started) * 1000))
            except Exception as log_exc:
                db.rollback()
                logger.error("[Chat] could not record failed request: %s", log_exc)
            raise

        log_request(db, channel, query_text, result.text, True, user_id, result,
                    latency_ms=int((time.monotonic() - started) * 1000))
        documents.mark_used(db, docs)
        return result.text
