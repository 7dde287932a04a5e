# ragmaster/gemini.py
# ──────────────────────────────────────────────────────────────────────────────
#  Gemini REST client: generateContent + File API (upload / get / delete),
#  error classification, the retrying completion call, and the process-wide
#  client cell that is reloaded when the API key changes.
# ──────────────────────────────────────────────────────────────────────────────
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import (
    GEMINI_BASE_URL, GEMINI_MODEL, HTTP_TIMEOUT,
    LLM_MAX_ATTEMPTS, LLM_BACKOFF_BASE, LLM_BACKOFF_JITTER,
    FILE_POLL_ATTEMPTS, FILE_POLL_INTERVAL,
)
from .errors import (
    FileProcessingFailed, FileProcessingTimeout, InvalidCredentials,
    ServiceNotConfigured, UnexpectedResponse, UpstreamError,
)
from .log import get_logger
from .retry import RetryExhausted, exponential, fixed, retry_call

logger = get_logger(__name__)

TRANSIENT_STATUSES = {429, 500, 503}


@dataclass
class GenerateResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


# ───────────────────────── Error classification ──────────────────────────────
def is_invalid_credentials(exc: BaseException) -> bool:
    if not isinstance(exc, UpstreamError) or exc.status not in (400, 401, 403):
        return False
    blob = exc.message + " " + json.dumps(exc.body or {})
    return "API key" in blob or "API_KEY_INVALID" in blob

def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and exc.status in TRANSIENT_STATUSES


# ───────────────────────── Content parts ─────────────────────────────────────
def file_part(uri: str, mime_type: Optional[str]) -> Dict[str, Any]:
    return {"fileData": {"fileUri": uri, "mimeType": mime_type or "application/octet-stream"}}

def inline_part(data_b64: str, mime_type: str) -> Dict[str, Any]:
    return {"inlineData": {"mimeType": mime_type, "data": data_b64}}

def text_part(text: str) -> Dict[str, Any]:
    return {"text": text}


# ───────────────────────── Client ────────────────────────────────────────────
class GeminiClient:
    def __init__(
        self,
        api_key: str,
        model: str = GEMINI_MODEL,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.api_key  = api_key.strip()
        self.model    = model
        self.base_url = base_url.rstrip("/")
        self.timeout  = timeout
        self.http     = session or requests.Session()

    def _headers(self, **extra: str) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key, **extra}

    def _check(self, resp) -> Any:
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {"raw": (resp.text or "")[:500]}
            err = body.get("error", {}) if isinstance(body, dict) else {}
            msg = err.get("message") or f"HTTP {resp.status_code}"
            raise UpstreamError(
                f"Gemini API error {resp.status_code}: {msg}",
                status=resp.status_code, body=body,
            )
        if not resp.content:
            return {}
        return resp.json()

    def _request(self, method: str, url: str, **kwargs):
        try:
            return self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise UpstreamError(f"Gemini network error: {exc}") from exc

    # ---- completions -----------------------------------------------------
    def generate_content(
        self,
        parts: List[Dict[str, Any]],
        system_instruction: Optional[str] = None,
        response_mime_type: Optional[str] = None,
    ) -> GenerateResult:
        body: Dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if system_instruction:
            body["systemInstruction"] = {"parts": [text_part(system_instruction)]}
        if response_mime_type:
            body["generationConfig"] = {"responseMimeType": response_mime_type}

        url  = f"{self.base_url}/v1beta/models/{self.model}:generateContent"
        data = self._check(self._request("POST", url, headers=self._headers(), json=body))

        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise UnexpectedResponse(f"Gemini returned no candidates (blockReason={reason})")
        content = candidates[0].get("content") or {}
        text    = "".join(p.get("text", "") for p in content.get("parts") or [])
        usage   = data.get("usageMetadata") or {}
        return GenerateResult(
            text=text.strip(),
            input_tokens=int(usage.get("promptTokenCount") or 0),
            output_tokens=int(usage.get("candidatesTokenCount") or 0),
        )

    # ---- file store ------------------------------------------------------
    def upload_file(self, data: bytes, mime_type: str, display_name: str) -> Dict[str, Any]:
        start = self._request(
            "POST", f"{self.base_url}/upload/v1beta/files",
            headers=self._headers(**{
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(data)),
                "X-Goog-Upload-Header-Content-Type": mime_type,
                "Content-Type": "application/json",
            }),
            json={"file": {"display_name": display_name}},
        )
        self._check(start)
        upload_url = start.headers.get("x-goog-upload-url")
        if not upload_url:
            raise UnexpectedResponse("Gemini File API did not return an upload URL")

        resp = self._request(
            "POST", upload_url,
            headers=self._headers(**{
                "Content-Length": str(len(data)),
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            }),
            data=data,
        )
        payload = self._check(resp)
        logger.debug("[Upload] raw provider response: %s", payload)

        # the file object may come back wrapped in "file" or bare
        file_obj = payload.get("file") if isinstance(payload.get("file"), dict) else payload
        if not isinstance(file_obj, dict) or not file_obj.get("name"):
            logger.error("[Upload] unexpected File API response: %s", json.dumps(payload)[:1000])
            raise UnexpectedResponse("Invalid response format from Gemini File API. Check logs.")
        return file_obj

    def get_file(self, name: str) -> Dict[str, Any]:
        return self._check(self._request("GET", f"{self.base_url}/v1beta/{name}", headers=self._headers()))

    def delete_file(self, name: str) -> None:
        self._check(self._request("DELETE", f"{self.base_url}/v1beta/{name}", headers=self._headers()))

    def wait_for_active(
        self,
        name: str,
        attempts: int = FILE_POLL_ATTEMPTS,
        interval: float = FILE_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Dict[str, Any]:
        logger.info("[Upload] waiting for %s to become ACTIVE", name)
        try:
            info = retry_call(
                lambda: self.get_file(name),
                attempts=attempts,
                delay=fixed(interval),
                until=lambda f: f.get("state") in ("ACTIVE", "FAILED"),
                sleep=sleep,
            )
        except RetryExhausted:
            logger.error("[Upload] %s still processing after %d polls", name, attempts)
            raise FileProcessingTimeout("File processing timed out.")
        if info.get("state") == "FAILED":
            logger.error("[Upload] %s processing FAILED on provider side", name)
            raise FileProcessingFailed("File processing failed on Google side.")
        logger.info("[Upload] %s is ACTIVE", name)
        return info


# ───────────────────────── Retrying completion ───────────────────────────────
def generate_with_retry(
    client: GeminiClient,
    parts: List[Dict[str, Any]],
    system_instruction: Optional[str] = None,
    response_mime_type: Optional[str] = None,
    attempts: int = LLM_MAX_ATTEMPTS,
    delay: Optional[Callable[[int], float]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> GenerateResult:
    def _call() -> GenerateResult:
        try:
            return client.generate_content(parts, system_instruction, response_mime_type)
        except UpstreamError as exc:
            if is_invalid_credentials(exc):
                logger.error("[LLM] invalid API key detected")
                raise InvalidCredentials() from exc
            raise

    def _log_retry(attempt: int, wait: float, exc: Optional[BaseException]) -> None:
        logger.warning("[LLM] %s; retrying in %.0fms (attempt %d/%d)",
                       exc, wait * 1000, attempt + 1, attempts)

    return retry_call(
        _call,
        attempts=attempts,
        delay=delay or exponential(LLM_BACKOFF_BASE, LLM_BACKOFF_JITTER),
        retry_on=is_transient,
        on_retry=_log_retry,
        sleep=sleep,
    )


# ───────────────────────── Process-wide client cell ──────────────────────────
class ClientCell:
    """
    Holds the current ``GeminiClient``. Readers take the reference as-is;
    ``reload`` builds a new client and swaps the reference under a lock, so a
    call in flight keeps using the client it started with.
    """

    def __init__(self, factory: Callable[[str], GeminiClient] = GeminiClient):
        self._factory = factory
        self._client: Optional[GeminiClient] = None
        self._lock    = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._client is not None

    def get(self, key_loader: Callable[[], str]) -> GeminiClient:
        client = self._client
        if client is not None:
            return client
        return self.reload(key_loader())

    def reload(self, api_key: Optional[str]) -> GeminiClient:
        with self._lock:
            if not api_key:
                self._client = None
                logger.warning("[LLM] Gemini API key is missing; chat features will fail")
                raise ServiceNotConfigured()
            self._client = self._factory(api_key)
            logger.info("[LLM] Gemini client initialised")
            return self._client

    def clear(self) -> None:
        with self._lock:
            self._client = None


client_cell = ClientCell()
