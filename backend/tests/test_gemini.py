import pytest

from ragmaster.errors import (
    FileProcessingFailed, FileProcessingTimeout, InvalidCredentials,
    ServiceNotConfigured, UnexpectedResponse, UpstreamError,
)
from ragmaster.gemini import (
    ClientCell, GeminiClient, GenerateResult, generate_with_retry,
    is_invalid_credentials, is_transient, text_part,
)
from ragmaster.retry import exponential

from fakes import FakeGemini, FakeResponse, FakeSession

INVALID_KEY_BODY = {
    "error": {
        "code": 400,
        "message": "API key not valid. Please pass a valid API key.",
        "status": "INVALID_ARGUMENT",
        "details": [{"reason": "API_KEY_INVALID"}],
    }
}


def _client(*responses):
    session = FakeSession(responses)
    return GeminiClient("AIza-test", model="gemini-test", base_url="https://gemini.test", session=session), session


# ───────────────────────── REST client ───────────────────────────────────────
class TestGenerateContent:
    def test_parses_text_and_usage(self):
        client, session = _client(FakeResponse(200, {
            "candidates": [{"content": {"parts": [{"text": "Bon"}, {"text": "jour "}]}}],
            "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 3},
        }))

        result = client.generate_content([text_part("salut")], system_instruction="Be brief")

        assert result == GenerateResult("Bonjour", 7, 3)
        method, url, kwargs = session.requests[0]
        assert method == "POST"
        assert url == "https://gemini.test/v1beta/models/gemini-test:generateContent"
        assert kwargs["headers"]["x-goog-api-key"] == "AIza-test"
        assert kwargs["json"]["systemInstruction"] == {"parts": [{"text": "Be brief"}]}
        assert kwargs["json"]["contents"][0]["parts"] == [{"text": "salut"}]

    def test_json_mode_sets_generation_config(self):
        client, session = _client(FakeResponse(200, {"candidates": [{"content": {"parts": [{"text": "{}"}]}}]}))
        client.generate_content([text_part("x")], response_mime_type="application/json")
        assert session.requests[0][2]["json"]["generationConfig"] == {"responseMimeType": "application/json"}

    def test_no_candidates_is_unexpected(self):
        client, _ = _client(FakeResponse(200, {"promptFeedback": {"blockReason": "SAFETY"}}))
        with pytest.raises(UnexpectedResponse, match="SAFETY"):
            client.generate_content([text_part("x")])

    def test_http_error_carries_status_and_body(self):
        client, _ = _client(FakeResponse(503, {"error": {"message": "The model is overloaded."}}))
        with pytest.raises(UpstreamError) as info:
            client.generate_content([text_part("x")])
        assert info.value.status == 503
        assert "overloaded" in info.value.message
        assert is_transient(info.value)


class TestErrorClassification:
    def test_invalid_key_is_recognised(self):
        exc = UpstreamError("Gemini API error 400: API key not valid.", status=400, body=INVALID_KEY_BODY)
        assert is_invalid_credentials(exc)
        assert not is_transient(exc)

    def test_plain_invalid_argument_is_not_a_key_problem(self):
        body = {"error": {"message": "Request contains an invalid argument.", "status": "INVALID_ARGUMENT"}}
        exc = UpstreamError("Gemini API error 400: Request contains an invalid argument.", status=400, body=body)
        assert not is_invalid_credentials(exc)

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_transient_statuses(self, status):
        assert is_transient(UpstreamError("busy", status=status))

    def test_other_errors_are_not_transient(self):
        assert not is_transient(UpstreamError("not found", status=404))
        assert not is_transient(ValueError("boom"))


class TestFileStore:
    def test_resumable_upload_returns_wrapped_file(self):
        client, session = _client(
            FakeResponse(200, None, headers={"X-Goog-Upload-URL": "https://upload.test/session/1"}),
            FakeResponse(200, {"file": {"name": "files/abc", "uri": "https://gemini.test/files/abc", "state": "PROCESSING"}}),
        )

        info = client.upload_file(b"%PDF-1.4", "application/pdf", "policy.pdf")

        assert info["name"] == "files/abc"
        start, finish = session.requests
        assert start[2]["headers"]["X-Goog-Upload-Command"] == "start"
        assert start[2]["json"] == {"file": {"display_name": "policy.pdf"}}
        assert finish[1] == "https://upload.test/session/1"
        assert finish[2]["data"] == b"%PDF-1.4"

    def test_upload_accepts_bare_file_object(self):
        client, _ = _client(
            FakeResponse(200, None, headers={"x-goog-upload-url": "https://upload.test/2"}),
            FakeResponse(200, {"name": "files/bare", "uri": "u", "state": "ACTIVE"}),
        )
        assert client.upload_file(b"x", "text/plain", "a.txt")["name"] == "files/bare"

    def test_upload_without_name_is_unexpected(self):
        client, _ = _client(
            FakeResponse(200, None, headers={"x-goog-upload-url": "https://upload.test/3"}),
            FakeResponse(200, {"something": "else"}),
        )
        with pytest.raises(UnexpectedResponse):
            client.upload_file(b"x", "text/plain", "a.txt")

    def test_upload_without_session_url_is_unexpected(self):
        client, _ = _client(FakeResponse(200, None))
        with pytest.raises(UnexpectedResponse):
            client.upload_file(b"x", "text/plain", "a.txt")

    def test_wait_for_active_polls_until_active(self):
        client, session = _client(
            FakeResponse(200, {"name": "files/abc", "state": "PROCESSING"}),
            FakeResponse(200, {"name": "files/abc", "state": "PROCESSING"}),
            FakeResponse(200, {"name": "files/abc", "state": "ACTIVE", "uri": "u"}),
        )
        sleeps = []
        info = client.wait_for_active("files/abc", attempts=30, interval=2.0, sleep=sleeps.append)
        assert info["state"] == "ACTIVE"
        assert sleeps == [2.0, 2.0]
        assert session.requests[0][1] == "https://gemini.test/v1beta/files/abc"

    def test_wait_for_active_reports_failure(self):
        client, _ = _client(FakeResponse(200, {"name": "files/abc", "state": "FAILED"}))
        with pytest.raises(FileProcessingFailed):
            client.wait_for_active("files/abc", sleep=lambda s: None)

    def test_wait_for_active_times_out(self):
        client, _ = _client(*[FakeResponse(200, {"name": "files/abc", "state": "PROCESSING"})] * 3)
        with pytest.raises(FileProcessingTimeout):
            client.wait_for_active("files/abc", attempts=3, interval=2.0, sleep=lambda s: None)


# ───────────────────────── Retrying completion ───────────────────────────────
class TestGenerateWithRetry:
    def test_three_transient_failures_exhaust_attempts(self):
        fake = FakeGemini()
        fake.replies = [UpstreamError(f"busy {i}", status=503) for i in range(3)]
        sleeps = []

        with pytest.raises(UpstreamError, match="busy 2"):
            generate_with_retry(fake, [text_part("x")], attempts=3,
                                delay=exponential(1.0, 0.5, rand=lambda: 0.0), sleep=sleeps.append)

        assert len(fake.calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_recovers_after_a_transient_failure(self):
        fake = FakeGemini()
        fake.replies = [UpstreamError("rate limited", status=429), GenerateResult("ok", 1, 1)]
        result = generate_with_retry(fake, [text_part("x")], sleep=lambda s: None)
        assert result.text == "ok"
        assert len(fake.calls) == 2

    def test_invalid_key_is_not_retried(self):
        fake = FakeGemini()
        fake.replies = [UpstreamError("Gemini API error 400: API key not valid.", status=400, body=INVALID_KEY_BODY)]
        sleeps = []
        with pytest.raises(InvalidCredentials) as info:
            generate_with_retry(fake, [text_part("x")], sleep=sleeps.append)
        assert info.value.message == "Invalid API Key. Please update it in Settings."
        assert len(fake.calls) == 1
        assert sleeps == []

    def test_other_errors_propagate_unchanged(self):
        fake = FakeGemini()
        fake.replies = [UpstreamError("model not found", status=404)]
        with pytest.raises(UpstreamError, match="not found"):
            generate_with_retry(fake, [text_part("x")], sleep=lambda s: None)
        assert len(fake.calls) == 1


# ───────────────────────── Client cell ───────────────────────────────────────
class TestClientCell:
    def test_empty_key_means_not_configured(self):
        cell = ClientCell(factory=lambda key: FakeGemini())
        with pytest.raises(ServiceNotConfigured):
            cell.get(lambda: "")
        assert not cell.loaded

    def test_loads_once_then_reuses(self):
        built = []
        cell  = ClientCell(factory=lambda key: built.append(key) or FakeGemini())
        first = cell.get(lambda: "k1")
        assert cell.get(lambda: "k2") is first
        assert built == ["k1"]

    def test_reload_swaps_the_client(self):
        cell = ClientCell(factory=lambda key: GeminiClient(key))
        old  = cell.reload("k1")
        new  = cell.reload(" k2 ")
        assert new is not old
        assert new.api_key == "k2"
        # a holder of the old reference keeps a working client
        assert old.api_key == "k1"

    def test_reload_with_empty_key_clears(self):
        cell = ClientCell(factory=lambda key: FakeGemini())
        cell.reload("k1")
        with pytest.raises(ServiceNotConfigured):
            cell.reload("")
        assert not cell.loaded
