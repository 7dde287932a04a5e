# ragmaster/broadcast.py
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import BROADCAST_DELAY_SECONDS, WINDOW_ERROR_CODE
from .errors import WhatsAppAPIError
from .log import get_logger
from .whatsapp import WhatsAppClient, clean_phone_number

logger = get_logger(__name__)


@dataclass
class BroadcastError:
    number: str
    code: Any
    message: str
    is24hWindowError: bool


@dataclass
class BroadcastReport:
    total: int = 0
    success: int = 0
    failed: int = 0
    errors: List[BroadcastError] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def send_broadcast(
    wa: WhatsAppClient,
    numbers: List[str],
    *,
    kind: str = "text",
    message: Optional[str] = None,
    template_name: Optional[str] = None,
    template_lang: str = "en_US",
    delay: float = BROADCAST_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> BroadcastReport:
    """
    Send one message per recipient, in order, pausing ``delay`` seconds
    between sends. Every recipient is attempted; failures are collected
    in the report, nothing is rolled back.
    """
    report = BroadcastReport(total=len(numbers))

    for i, raw in enumerate(numbers):
        number = clean_phone_number(raw)
        try:
            if kind == "template":
                wa.send_template(number, template_name, template_lang)
            else:
                wa.send_text(number, message)
            report.success += 1
        except WhatsAppAPIError as exc:
            report.failed += 1
            report.errors.append(BroadcastError(
                number=number,
                code=exc.error_code,
                message=exc.message,
                is24hWindowError=exc.error_code == WINDOW_ERROR_CODE,
            ))
            logger.warning("[Broadcast] %s failed (%s): %s", number, exc.error_code, exc.message)
        except Exception as exc:
            report.failed += 1
            report.errors.append(BroadcastError(number=number, code="UNKNOWN", message=str(exc), is24hWindowError=False))
            logger.warning("[Broadcast] %s failed: %s", number, exc)

        if delay and i < len(numbers) - 1:
            sleep(delay)

    logger.info("[Broadcast] %d sent, %d failed of %d", report.success, report.failed, report.total)
    return report
