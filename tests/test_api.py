"""Tests for the webhook endpoints, driven through FastAPI's TestClient."""
import pytest
import xml.etree.ElementTree as ET
from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from app.core.config import get_settings
from app.main import app, get_dispatcher

BUSINESS_NUMBER = "+15550001111"
CALL_FORM = {"CallSid": "CA123", "From": "+15559998888", "To": BUSINESS_NUMBER}


@pytest.fixture
def client(settings, dispatcher):
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def twiml_root(response):
    assert response.headers["content-type"].startswith("application/xml")
    return ET.fromstring(response.content)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestCallWebhooks:
    def test_handle_call(self, client):
        response = client.post("/handle-call", data=CALL_FORM)
        root = twiml_root(response)

        assert response.status_code == 200
        assert [el.tag for el in root] == ["Say", "Gather"]

    def test_root_behaves_like_handle_call(self, client):
        assert client.post("/", data=CALL_FORM).content == client.post("/handle-call", data=CALL_FORM).content

    def test_handle_gather_routes_digit(self, client):
        response = client.post("/handle-gather?blockId=gather1&retry=0", data={**CALL_FORM, "Digits": "1"})
        root = twiml_root(response)

        assert root[0].tag == "Dial"
        assert root[0].text == "+15551234567"

    def test_handle_gather_without_digits_retries(self, client):
        response = client.post("/handle-gather?blockId=gather1&retry=0", data=CALL_FORM)
        root = twiml_root(response)

        assert [el.tag for el in root] == ["Say", "Gather", "Redirect"]
        assert root[1].get("action") == "/handle-gather?blockId=gather1&retry=1"

    def test_unknown_number(self, client):
        response = client.post("/handle-call", data={**CALL_FORM, "To": "+15550000000"})
        root = twiml_root(response)

        assert response.status_code == 200
        assert root[0].text == "This number is not configured."


class TestSignatureValidation:
    @pytest.fixture
    def signed_settings(self, settings):
        settings.VALIDATE_TWILIO_SIGNATURE = True
        settings.TWILIO_AUTH_TOKEN = "test-auth-token"
        return settings

    def test_missing_signature_is_rejected(self, signed_settings, client):
        response = client.post("/handle-call", data=CALL_FORM)

        assert response.status_code == 403
        assert twiml_root(response)[-1].tag == "Hangup"

    def test_valid_signature_is_accepted(self, signed_settings, client):
        signature = RequestValidator("test-auth-token").compute_signature("http://testserver/handle-call", CALL_FORM)
        response = client.post("/handle-call", data=CALL_FORM, headers={"X-Twilio-Signature": signature})

        assert response.status_code == 200
        assert twiml_root(response)[1].tag == "Gather"

    def test_public_base_url_is_signed_url(self, signed_settings, client):
        signed_settings.PUBLIC_BASE_URL = "https://calls.example.com"
        signature = RequestValidator("test-auth-token").compute_signature(
            "https://calls.example.com/handle-call", CALL_FORM
        )
        response = client.post("/handle-call", data=CALL_FORM, headers={"X-Twilio-Signature": signature})

        assert response.status_code == 200


class TestMultiForward:
    def test_rings_numbers_then_voicemail(self, client):
        response = client.post(
            "/handle-multi-forward",
            data={"ForwardNumbers": "+15551230001, ,+15551230002", "Strategy": "simultaneous", "RingTimeout": "25"},
        )
        root = twiml_root(response)

        assert [el.tag for el in root] == ["Say", "Dial", "Say", "Record", "Say", "Hangup"]
        assert root[0].text == "Connecting your call to our team. Please hold."
        assert root[1].get("timeout") == "25"
        assert root[1].get("record") == "record-from-ringing-dual"
        assert [n.text for n in root[1]] == ["+15551230001", "+15551230002"]
        assert root[3].get("maxLength") == "60"

    def test_sequential_strategy_announces_each_attempt(self, client):
        response = client.post(
            "/handle-multi-forward", data={"ForwardNumbers": "+1111,+2222,+3333", "Strategy": "sequential"}
        )
        root = twiml_root(response)

        assert [el.tag for el in root][:6] == ["Say", "Dial", "Say", "Dial", "Say", "Dial"]
        assert root[0].text == "Connecting your call. Please hold."
        assert root[2].text == "Trying another number. Please continue to hold."
        assert root[4].text == "Trying another number. Please continue to hold."
        assert all(d.get("record") == "record-from-ringing-dual" for d in root if d.tag == "Dial")

    def test_priority_strategy(self, client):
        response = client.post(
            "/handle-multi-forward", data={"ForwardNumbers": "+1111,+2222", "Strategy": "priority"}
        )
        root = twiml_root(response)
        dials = [el for el in root if el.tag == "Dial"]

        assert [d.get("timeout") for d in dials] == ["30", "20"]
        assert [el.tag for el in root][:4] == ["Say", "Dial", "Say", "Dial"]
        assert root[0].text == "Connecting you to our primary contact. Please hold."
        assert root[2].text == "Trying our backup contacts. Please continue to hold."
        assert all(d.get("record") == "record-from-ringing-dual" for d in dials)

    def test_priority_with_single_number_has_no_backup_notice(self, client):
        root = twiml_root(client.post("/handle-multi-forward", data={"ForwardNumbers": "+1111", "Strategy": "priority"}))

        assert "Trying our backup contacts. Please continue to hold." not in [el.text for el in root]

    def test_missing_numbers(self, client):
        root = twiml_root(client.post("/handle-multi-forward", data={"Strategy": "sequential"}))
        assert root[0].text == "Configuration error. Please contact support."

    def test_blank_numbers(self, client):
        root = twiml_root(client.post("/handle-multi-forward", data={"ForwardNumbers": " , "}))
        assert root[0].text == "No valid forwarding numbers configured."


class TestMalformedRequests:
    def test_file_part_instead_of_field(self, client):
        response = client.post("/handle-call", files={"To": ("a.txt", b"+15550001111")}, data={"CallSid": "CA1"})
        root = twiml_root(response)

        assert response.status_code == 200
        assert root.tag == "Response"
        assert root[0].text == "This number is not configured."
        assert root[-1].tag == "Hangup"

    def test_unreadable_signed_request(self, settings, client):
        settings.VALIDATE_TWILIO_SIGNATURE = True
        settings.TWILIO_AUTH_TOKEN = "test-auth-token"
        response = client.post(
            "/handle-gather?blockId=gather1&retry=0",
            files={"Digits": ("digits.txt", b"1")},
            data=CALL_FORM,
            headers={"X-Twilio-Signature": "bogus"},
        )
        root = twiml_root(response)

        assert root.tag == "Response"
        assert root[-1].tag == "Hangup"

    def test_multi_forward_file_part(self, client):
        response = client.post("/handle-multi-forward", files={"ForwardNumbers": ("n.txt", b"+1111")})
        root = twiml_root(response)

        assert root[0].text == "We're experiencing technical difficulties. Please try again later."
        assert root[-1].tag == "Hangup"
