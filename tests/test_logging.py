import structlog

from rentease.logging import (
    _redact_credentials,
    bind_request_context,
    get_correlation_id,
    redact_email,
    set_correlation_id,
)
from rentease.service.tokens import TokenIssuer


def _redact(**fields):
    return _redact_credentials(None, "info", {"event": "test_event", **fields})


class TestRedaction:
    def test_credentials_are_dropped(self):
        event = _redact(password="Str0ng#Pass", jwt_secret="abcdefgh", otp="123456")

        assert event["password"] == "[redacted]"
        assert event["jwt_secret"] == "[redacted]"
        assert event["otp"] == "[redacted]"
        assert event["event"] == "test_event"

    def test_mailboxes_become_hints(self):
        event = _redact(email="tenant@example.com", to="landlord@example.com")

        assert event["email"] == "te***@example.com"
        assert event["to"] == "la***@example.com"

    def test_hint_is_not_redacted_twice(self):
        assert _redact(email=redact_email("tenant@example.com"))["email"] == "te***@example.com"

    def test_metadata_keys_mentioning_email_are_kept(self):
        event = _redact(email_transport="resend", user_id="u1")

        assert event["email_transport"] == "resend"
        assert event["user_id"] == "u1"

    def test_tokens_inside_free_text_are_masked(self):
        token = TokenIssuer().sign({"userId": "u1"}, "secret-for-logging-tests", 60)

        event = _redact(error=f"rejected {token} from client")

        assert token not in event["error"]
        assert event["error"] == "rejected [redacted] from client"

    def test_redact_email_without_mailbox(self):
        assert redact_email(None) == "redacted"
        assert redact_email("not-an-address") == "redacted"


class TestRequestContext:
    def test_correlation_id_generated_or_reused(self):
        assert set_correlation_id("req-1") == "req-1"
        assert get_correlation_id() == "req-1"
        assert set_correlation_id() != "req-1"

    def test_bound_context_replaces_previous_request(self):
        bind_request_context(client_ip="1.1.1.1", path="/api/auth/login")
        bind_request_context(client_ip="2.2.2.2")

        assert structlog.contextvars.get_contextvars() == {"client_ip": "2.2.2.2"}
        structlog.contextvars.clear_contextvars()
