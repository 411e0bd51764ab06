from __future__ import annotations

from types import SimpleNamespace
from urllib.parse import parse_qs, urlsplit

from twilio.base.exceptions import TwilioException

from api import twilio_routes
from api.dependencies import get_agent_factory
from config.settings import Settings
from fakes import FakeAgentChannel
from integrations.twilio_client import TwilioConfig

TWILIO_CFG = TwilioConfig(
    account_sid="AC123",
    auth_token="token",
    from_number="+15550001111",
    public_base_url="https://relay.example.com",
)


class FakeCalls:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.created: list[dict] = []

    def create(self, **kwargs):
        self.created.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(sid="CA987", status="queued")


class FakeTwilioClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls = FakeCalls(error)


def use_twilio(app, fake: FakeTwilioClient) -> None:
    app.dependency_overrides[twilio_routes.get_twilio_client] = lambda: fake
    app.dependency_overrides[twilio_routes.get_twilio_cfg] = lambda: TWILIO_CFG


def test_health_reports_active_sessions(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["active_sessions"] == 0
    assert body["version"]


def test_call_twiml_connects_stream_with_escaped_parameters(client):
    response = client.post(
        "/api/twilio/call-twiml",
        params={"prompt": 'Say "hi" & <wave>', "first_message": "Hello there"},
        data={"CallSid": "CA1"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    body = response.text
    assert '<Stream url="wss://relay.example.com/api/twilio/call-stream">' in body
    assert '<Parameter name="prompt" value="Say &quot;hi&quot; &amp; &lt;wave&gt;" />' in body
    assert '<Parameter name="first_message" value="Hello there" />' in body


def test_call_twiml_falls_back_to_default_conversation(client):
    settings = Settings(_env_file=None)
    response = client.post("/api/twilio/call-twiml", data={"CallSid": "CA1"})

    assert f'value="{settings.default_prompt}"' in response.text
    assert f'value="{settings.default_first_message}"' in response.text


def test_call_status_acknowledges(client):
    response = client.post(
        "/api/twilio/call-status",
        data={"CallSid": "CA1", "CallStatus": "completed", "CallDuration": "42"},
    )

    assert response.status_code == 200
    assert response.text == "OK"


def test_make_call_places_call_pointing_at_control_document(app, client):
    fake = FakeTwilioClient()
    use_twilio(app, fake)

    response = client.post(
        "/api/twilio/make-call",
        json={"phoneNumber": "41791234567", "prompt": "Confirm the booking.", "firstMessage": "Hi, it's Relay."},
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Call initiated successfully",
        "callSid": "CA987",
        "status": "queued",
        "to": "+41791234567",
    }
    created = fake.calls.created[0]
    assert created["to"] == "+41791234567"
    assert created["from_"] == "+15550001111"
    assert created["status_callback"] == "https://relay.example.com/api/twilio/call-status"
    control = urlsplit(created["url"])
    assert f"{control.scheme}://{control.netloc}{control.path}" == "https://relay.example.com/api/twilio/call-twiml"
    assert parse_qs(control.query) == {
        "prompt": ["Confirm the booking."],
        "first_message": ["Hi, it's Relay."],
    }


def test_make_call_requires_a_number(app, client):
    fake = FakeTwilioClient()
    use_twilio(app, fake)

    response = client.post("/api/twilio/make-call", json={"prompt": "anything"})

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Phone number is required"}
    assert fake.calls.created == []


def test_make_call_reports_provider_failure(app, client):
    use_twilio(app, FakeTwilioClient(error=TwilioException("number is not verified")))

    response = client.post("/api/twilio/make-call", json={"number": "+15550002222"})

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "number is not verified",
        "details": "Failed to initiate outbound call",
    }


def test_make_call_enforces_api_key_when_configured(app, client, monkeypatch):
    guarded = Settings(_env_file=None, outbound_call_api_key="s3cret", public_base_url="https://relay.example.com")
    monkeypatch.setattr(twilio_routes, "get_settings", lambda: guarded)
    fake = FakeTwilioClient()
    use_twilio(app, fake)

    denied = client.post("/api/twilio/make-call", json={"phoneNumber": "+15550002222"})
    allowed = client.post(
        "/api/twilio/make-call",
        json={"phoneNumber": "+15550002222"},
        headers={"X-Api-Key": "s3cret"},
    )

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert len(fake.calls.created) == 1


def test_make_call_without_twilio_credentials_is_unavailable(app, client):
    app.dependency_overrides[twilio_routes.get_twilio_client] = lambda: FakeTwilioClient()

    def unconfigured():
        from agents.errors import ConfigurationError

        raise ConfigurationError("Twilio credentials are not configured")

    app.dependency_overrides[twilio_routes.get_twilio_cfg] = unconfigured

    response = client.post("/api/twilio/make-call", json={"phoneNumber": "+15550002222"})

    assert response.status_code == 503
    assert response.json() == {"detail": "Twilio credentials are not configured"}


def test_media_stream_runs_a_session_and_marks_completion(app, client):
    agents: list[FakeAgentChannel] = []

    def factory() -> FakeAgentChannel:
        agent = FakeAgentChannel()
        agents.append(agent)
        return agent

    app.dependency_overrides[get_agent_factory] = lambda: factory

    with client.websocket_connect("/api/twilio/call-stream") as ws:
        ws.send_json({"event": "connected", "protocol": "Call", "version": "1.0.0"})
        ws.send_json(
            {
                "event": "start",
                "streamSid": "MZ77",
                "start": {
                    "streamSid": "MZ77",
                    "callSid": "CA77",
                    "customParameters": {"prompt": "Take a message.", "first_message": "Hello!"},
                },
            }
        )
        ws.send_json({"event": "media", "streamSid": "MZ77", "media": {"payload": "AAEC"}})
        ws.send_json({"event": "stop", "streamSid": "MZ77"})

        assert ws.receive_json() == {"event": "mark", "streamSid": "MZ77", "mark": {"name": "conversation-complete"}}

    assert len(agents) == 1
    assert agents[0].configs[0].prompt == "Take a message."
    assert agents[0].configs[0].first_message == "Hello!"
    assert agents[0].close_calls == 1


def test_outbound_call_path_used_by_automations(app, client):
    fake = FakeTwilioClient()
    use_twilio(app, fake)

    response = client.post(
        "/api/twilio/make-outbound-call",
        json={"number": "15550003333", "first_message": "Hello from the workflow"},
    )

    assert response.status_code == 200
    assert response.json()["callSid"] == "CA987"
    assert response.json()["to"] == "+15550003333"
    control = urlsplit(fake.calls.created[0]["url"])
    assert parse_qs(control.query)["first_message"] == ["Hello from the workflow"]


def test_make_call_reports_network_failure(app, client):
    use_twilio(app, FakeTwilioClient(error=ConnectionError("network unreachable")))

    response = client.post("/api/twilio/make-call", json={"phoneNumber": "+15550002222"})

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "network unreachable",
        "details": "Failed to initiate outbound call",
    }


def test_api_key_is_checked_before_twilio_configuration(app, client, monkeypatch):
    guarded = Settings(_env_file=None, outbound_call_api_key="s3cret")
    monkeypatch.setattr(twilio_routes, "get_settings", lambda: guarded)

    def unconfigured():
        from agents.errors import ConfigurationError

        raise ConfigurationError("Twilio credentials are not configured")

    app.dependency_overrides[twilio_routes.get_twilio_client] = unconfigured
    app.dependency_overrides[twilio_routes.get_twilio_cfg] = unconfigured

    response = client.post("/api/twilio/make-outbound-call", json={"phoneNumber": "+15550002222"})

    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}
