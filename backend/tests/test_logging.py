import json
import logging

from billing_core.core.logging_config import JSONFormatter, RedactingFilter, get_event_logger, redact


def record(message, *args, **extra) -> logging.LogRecord:
    rec = logging.LogRecord("billing_core.test", logging.INFO, __file__, 1, message, args, None)
    for key, value in extra.items():
        setattr(rec, key, value)
    return rec


class TestRedaction:
    def test_credentials_are_masked(self):
        assert redact("Authorization: Bearer eyJhbGciOi.abc.def") == "Authorization: Bearer ***"
        assert redact("POST /webhooks/google-play?token=s3cret&x=1") == "POST /webhooks/google-play?token=***&x=1"
        assert redact("signature=deadbeef rejected") == "signature=*** rejected"

    def test_plain_messages_untouched(self):
        assert redact("Subscription sub_123 activated") == "Subscription sub_123 activated"

    def test_filter_rewrites_formatted_message(self):
        rec = record("push with token=%s", "s3cret")
        assert RedactingFilter().filter(rec) is True
        assert rec.getMessage() == "push with token=***"


class TestJSONFormatter:
    def test_context_fields(self):
        rec = record("Applied charged", provider="razorpay", subscription_id="abc", event_key=None)
        payload = json.loads(JSONFormatter().format(rec))

        assert payload["message"] == "Applied charged"
        assert payload["provider"] == "razorpay"
        assert payload["subscription_id"] == "abc"
        assert "event_key" not in payload


class TestEventLogger:
    def test_adapter_merges_extras(self, caplog):
        logger = get_event_logger("billing_core.test", "google_play", "msg-1")
        with caplog.at_level(logging.INFO, logger="billing_core.test"):
            logger.info("Deferred lookup", extra={"subscription_id": "abc"})

        rec = caplog.records[-1]
        assert rec.provider == "google_play"
        assert rec.event_key == "msg-1"
        assert rec.subscription_id == "abc"
