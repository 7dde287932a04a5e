# ragmaster/strategy.py
import json
import time
from typing import Any, Callable, Dict

from .errors import UnexpectedResponse
from .gemini import GeminiClient, generate_with_retry, text_part
from .log import get_logger
from .models import utcnow

logger = get_logger(__name__)


def build_prompt(cfg: Dict[str, Any]) -> str:
    return f"""
ACT AS: A World-Class Digital Strategy Consultant.
TASK: Generate a {cfg['mode']} content strategy.
CONTEXT:
- Objective: {cfg['objective']}
- Tone: {cfg['tone']}
- Language: {cfg['language']}
- Content focus: {cfg.get('contentFilter') or 'frequent_questions'}
- Date Range: {cfg['startDate']} to {cfg['endDate']}

OUTPUT JSON:
{{ "synthesis": "...", "themes": [{{ "title": "...", "recommendation": "...", "best_posting_time": "...",
   "rag_source_docs": ["..."], "content": [{{ "platform": "WhatsApp", "content": "...", "hashtags": ["..."] }}] }}] }}
""".strip()


def generate(
    client: GeminiClient,
    cfg: Dict[str, Any],
    instruction: str,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    result = generate_with_retry(
        client,
        [text_part(build_prompt(cfg))],
        system_instruction=instruction,
        response_mime_type="application/json",
        sleep=sleep,
    )
    try:
        parsed = json.loads(result.text)
    except ValueError:
        logger.error("[Strategy] model returned non-JSON output: %.300s", result.text)
        raise UnexpectedResponse("Model returned an invalid strategy document")
    if not isinstance(parsed, dict):
        raise UnexpectedResponse("Model returned an invalid strategy document")

    parsed.update({"generatedAt": utcnow().isoformat(), "mode": cfg["mode"]})
    return parsed
