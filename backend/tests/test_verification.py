"""Tests for the phone verification / AI enablement flow."""

import pytest
import requests

from household_ledger.exceptions import ChallengeError, RateLimitedError, RequestRejected
from household_ledger.models import AIToken, WebhookConfig
from household_ledger.phone import ChallengePayload, create_challenge, sha256_hex
from household_ledger.ratelimit import FailureBlocker, RateLimiter
from household_ledger.verification import PhoneVerificationService

from conftest import OTHER_USER_ID, USER_ID

SECRET = "s3cret"
PHONE = "5511987654321"


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class RecordingPost:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse(200, {"success": True})
        self.error = error
        self.calls = []

    def __call__(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def post():
    return RecordingPost()


@pytest.fixture
def service(store, clock, post):
    store.webhooks.append(WebhookConfig(id="wh-1", url="https://relay.example.com/hook"))
    return PhoneVerificationService(
        store=store,
        secret=SECRET,
        code_limiter=RateLimiter(5, clock=clock),
        failures=FailureBlocker(clock=clock),
        challenge_ttl=300,
        clock=clock,
        http_post=post,
    )


def sent_code(post):
    return post.calls[-1]["json"]["code"]


class TestGenerateCode:
    def test_relays_code_and_returns_challenge(self, service, store, post):
        result = service.generate_code(USER_ID, "(11) 98765-4321")

        assert result["success"] is True
        assert result["expires_in"] == 300
        assert result["challenge"].count(".") == 1

        call = post.calls[0]
        assert call["url"] == "https://relay.example.com/hook"
        assert call["json"]["phone"] == PHONE
        assert call["json"]["email"] == "ana@example.com"
        assert len(call["json"]["code"]) == 6

        assert len(store.webhook_logs) == 1
        assert store.webhook_logs[0].status_code == 200
        assert store.webhook_logs[0].event_type == "ai_enablement"

    def test_invalid_phone(self, service):
        with pytest.raises(RequestRejected) as exc:
            service.generate_code(USER_ID, "123")
        assert exc.value.status_code == 400

    def test_no_webhook(self, service, store):
        store.webhooks.clear()
        with pytest.raises(RequestRejected) as exc:
            service.generate_code(USER_ID, PHONE)
        assert exc.value.status_code == 503

    def test_webhook_http_error(self, service, store, post):
        post.response = FakeResponse(500)
        with pytest.raises(RequestRejected) as exc:
            service.generate_code(USER_ID, PHONE)
        assert exc.value.status_code == 502
        assert store.webhook_logs[0].status_code == 500
        assert store.security_events[-1].event_type == "webhook_send_failed"

    def test_webhook_reports_failure(self, service, post):
        post.response = FakeResponse(200, {"success": False})
        with pytest.raises(RequestRejected, match="success: false"):
            service.generate_code(USER_ID, PHONE)

    def test_webhook_non_json_body_is_success(self, service, post):
        post.response = FakeResponse(204)
        assert service.generate_code(USER_ID, PHONE)["success"] is True

    def test_connection_error(self, service, store, post):
        post.error = requests.ConnectionError("refused")
        with pytest.raises(RequestRejected) as exc:
            service.generate_code(USER_ID, PHONE)
        assert exc.value.status_code == 502
        assert store.webhook_logs[0].status_code == 0

    def test_rate_limited(self, service):
        for _ in range(5):
            service.generate_code(USER_ID, PHONE)
        with pytest.raises(RateLimitedError):
            service.generate_code(USER_ID, PHONE)


class TestValidateCode:
    def test_enables_ai_and_issues_token(self, service, store, post):
        challenge = service.generate_code(USER_ID, PHONE)["challenge"]

        result = service.validate_code(USER_ID, sent_code(post), challenge, "11 98765-4321")

        assert result["success"] is True
        profile = store.get_profile(USER_ID)
        assert profile.ai_enabled is True
        assert profile.phone == PHONE
        assert len(result["token"]) == 50
        assert store.find_active_token(sha256_hex(result["token"])).user_id == USER_ID
        assert store.security_events[-1].event_type == "ai_enabled"

    def test_previous_tokens_revoked(self, service, store, post):
        store.insert_token(AIToken(user_id=USER_ID, token_hash=sha256_hex("old")))
        challenge = service.generate_code(USER_ID, PHONE)["challenge"]
        service.validate_code(USER_ID, sent_code(post), challenge, PHONE)

        assert store.find_active_token(sha256_hex("old")) is None
        assert len([t for t in store.ai_tokens if t.is_active]) == 1

    def test_phone_ownership_transfer(self, service, store, post):
        store.update_profile(OTHER_USER_ID, phone=PHONE, ai_enabled=True)
        store.insert_token(AIToken(user_id=OTHER_USER_ID, token_hash=sha256_hex("theirs")))

        challenge = service.generate_code(USER_ID, PHONE)["challenge"]
        service.validate_code(USER_ID, sent_code(post), challenge, PHONE)

        previous = store.get_profile(OTHER_USER_ID)
        assert previous.phone is None
        assert previous.ai_enabled is False
        assert store.has_active_token(OTHER_USER_ID) is False
        events = [e.event_type for e in store.security_events]
        assert "phone_ownership_transferred" in events
        assert "phone_removed" in events

    def test_wrong_code_blocks(self, service, store, post, clock):
        challenge = service.generate_code(USER_ID, PHONE)["challenge"]

        with pytest.raises(RequestRejected, match="Código inválido"):
            service.validate_code(USER_ID, "zzzzzz", challenge, PHONE, client_ip="10.0.0.1")
        assert store.security_events[-1].event_type == "invalid_ai_code"
        assert store.security_events[-1].metadata == {"ip": "10.0.0.1"}

        with pytest.raises(RateLimitedError):
            service.validate_code(USER_ID, sent_code(post), challenge, PHONE)

        clock.now += 31
        assert service.validate_code(USER_ID, sent_code(post), challenge, PHONE)["success"] is True

    def test_expired(self, service, post, clock):
        challenge = service.generate_code(USER_ID, PHONE)["challenge"]
        clock.now += 301
        with pytest.raises(ChallengeError, match="expirado"):
            service.validate_code(USER_ID, sent_code(post), challenge, PHONE)

    def test_other_users_challenge(self, service, post):
        challenge = service.generate_code(USER_ID, PHONE)["challenge"]
        with pytest.raises(ChallengeError, match="usuário"):
            service.validate_code(OTHER_USER_ID, sent_code(post), challenge, PHONE)

    def test_phone_mismatch(self, service, post):
        challenge = service.generate_code(USER_ID, PHONE)["challenge"]
        with pytest.raises(ChallengeError, match="telefone"):
            service.validate_code(USER_ID, sent_code(post), challenge, "21987654321")

    def test_forged_challenge(self, service, clock):
        forged = create_challenge(
            ChallengePayload(user_id=USER_ID, code_hash=sha256_hex("AAAAAA"), expires_at=clock() + 60, phone=PHONE),
            "not-the-secret",
        )
        with pytest.raises(ChallengeError):
            service.validate_code(USER_ID, "AAAAAA", forged, PHONE)

    def test_missing_fields(self, service):
        with pytest.raises(RequestRejected, match="obrigatórios"):
            service.validate_code(USER_ID, "", "", PHONE)
        with pytest.raises(RequestRejected, match="inválido"):
            service.validate_code(USER_ID, "abc", "x.y", "12")


def test_status(service, store):
    assert service.status(USER_ID) == {"ai_enabled": False, "has_token": False, "phone": None}
    store.update_profile(USER_ID, ai_enabled=True, phone=PHONE)
    store.insert_token(AIToken(user_id=USER_ID, token_hash="h"))
    assert service.status(USER_ID) == {"ai_enabled": True, "has_token": True, "phone": PHONE}
