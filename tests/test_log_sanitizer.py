"""
Tests for rehabflow.utils.log_sanitizer (PHI redaction in log output).
"""

import logging

from rehabflow.utils.log_sanitizer import (
    REDACTED,
    PHISanitizationFilter,
    mask_phone,
    sanitize_dict,
    sanitize_text,
)


class TestMaskPhone:

    def test_keeps_last_four(self):
        assert mask_phone("+15551234567") == "***4567"

    def test_empty(self):
        assert mask_phone(None) == ""
        assert mask_phone("") == ""

    def test_too_short(self):
        assert mask_phone("12") == "***"


class TestSanitizeText:

    def test_e164_masked(self):
        assert sanitize_text("send to +15551234567 failed") == "send to ***4567 failed"

    def test_formatted_number_masked(self):
        assert "***4567" in sanitize_text("call (555) 123-4567 now")

    def test_uuid_untouched(self):
        text = "appointment 1b4e28ba-2fa1-11d2-883f-0016d3cca427"
        assert sanitize_text(text) == text


class TestSanitizeDict:

    def test_phi_keys_redacted(self):
        data = {"first_name": "Ana", "phone": "+15551234567", "step": 2}
        assert sanitize_dict(data) == {"first_name": REDACTED, "phone": REDACTED, "step": 2}

    def test_nested(self):
        data = {"patient": {"last_name": "Ruiz"}, "notes": ["+15551234567"]}
        cleaned = sanitize_dict(data)
        assert cleaned["patient"]["last_name"] == REDACTED
        assert cleaned["notes"] == ["***4567"]


class TestFilter:

    def _record(self, msg, args):
        return logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)

    def test_masks_args(self):
        record = self._record("send_sms: sent to %s", ("+15551234567",))
        assert PHISanitizationFilter().filter(record) is True
        assert record.getMessage() == "send_sms: sent to ***4567"

    def test_masks_message(self):
        record = self._record("from +15551234567", None)
        PHISanitizationFilter().filter(record)
        assert record.getMessage() == "from ***4567"

    def test_leaves_numbers_alone(self):
        record = self._record("%d sent, %d errors", (3, 1))
        PHISanitizationFilter().filter(record)
        assert record.getMessage() == "3 sent, 1 errors"
