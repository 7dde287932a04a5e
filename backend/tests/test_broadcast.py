from ragmaster.broadcast import send_broadcast
from ragmaster.errors import WhatsAppAPIError

from fakes import FakeWhatsApp

NUMBERS = ["212600000001", "212600000002", "212600000003", "212600000004", "212600000005"]


def test_every_recipient_is_attempted_and_failures_counted():
    wa = FakeWhatsApp()
    wa.failures = {
        "212600000002": WhatsAppAPIError("Re-engagement message", error_code=131047),
        "212600000004": WhatsAppAPIError("Invalid parameter", error_code=100),
    }
    sleeps = []

    report = send_broadcast(wa, NUMBERS, message="Rappel: dossier RSU", sleep=sleeps.append)

    assert (report.total, report.success, report.failed) == (5, 3, 2)
    assert [to for to, _ in wa.sent] == ["212600000001", "212600000003", "212600000005"]
    window = {e.number: e.is24hWindowError for e in report.errors}
    assert window == {"212600000002": True, "212600000004": False}
    assert [e.code for e in report.errors] == [131047, 100]


def test_sends_are_paced_but_not_after_the_last():
    sleeps = []
    send_broadcast(FakeWhatsApp(), NUMBERS, message="x", delay=0.1, sleep=sleeps.append)
    assert sleeps == [0.1] * 4


def test_numbers_are_cleaned():
    wa = FakeWhatsApp()
    send_broadcast(wa, ["+212 600-000-001"], message="x", sleep=lambda s: None)
    assert wa.sent == [("212600000001", "x")]


def test_template_broadcast():
    wa = FakeWhatsApp()
    report = send_broadcast(wa, NUMBERS[:2], kind="template", template_name="rappel_rsu",
                            template_lang="fr", sleep=lambda s: None)
    assert report.success == 2
    assert wa.templates == [("212600000001", "rappel_rsu", "fr"), ("212600000002", "rappel_rsu", "fr")]
    assert wa.sent == []


def test_unexpected_error_is_recorded_as_unknown():
    wa = FakeWhatsApp()
    wa.failures = {"212600000001": ConnectionError("reset by peer")}
    report = send_broadcast(wa, NUMBERS[:1], message="x", sleep=lambda s: None)
    assert report.as_dict()["errors"] == [{
        "number": "212600000001", "code": "UNKNOWN", "message": "reset by peer", "is24hWindowError": False,
    }]


class TestBroadcastRoute:
    def _configure(self, client, admin_headers):
        client.post("/api/config", headers=admin_headers,
                    json={"whatsappToken": "wa-token", "whatsappPhoneNumberId": "PN1"})

    def test_admin_broadcast_returns_the_report(self, client, admin_headers, fake_whatsapp):
        self._configure(client, admin_headers)
        fake_whatsapp.failures = {"212600000002": WhatsAppAPIError("Re-engagement message", error_code=131047)}

        resp = client.post("/api/whatsapp/broadcast", headers=admin_headers,
                           json={"numbers": NUMBERS[:2], "type": "text", "message": "Bonjour"})

        assert resp.status_code == 200
        body = resp.json()
        assert (body["total"], body["success"], body["failed"]) == (2, 1, 1)
        assert body["errors"][0]["is24hWindowError"] is True

    def test_missing_credentials(self, client, admin_headers):
        resp = client.post("/api/whatsapp/broadcast", headers=admin_headers,
                           json={"numbers": NUMBERS[:1], "message": "Bonjour"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "WhatsApp credentials missing in config."

    def test_text_broadcast_needs_a_message(self, client, admin_headers):
        self._configure(client, admin_headers)
        resp = client.post("/api/whatsapp/broadcast", headers=admin_headers, json={"numbers": NUMBERS[:1]})
        assert resp.status_code == 400

    def test_empty_recipient_list_is_invalid(self, client, admin_headers):
        resp = client.post("/api/whatsapp/broadcast", headers=admin_headers, json={"numbers": [], "message": "x"})
        assert resp.status_code == 400

    def test_admins_only(self, client, user_headers):
        resp = client.post("/api/whatsapp/broadcast", headers=user_headers,
                           json={"numbers": NUMBERS[:1], "message": "Bonjour"})
        assert resp.status_code == 403
