import logging

from intake.core.logging import RedactionFilter
from intake.core.security import redact_secrets


def _record(msg, args):
    return logging.LogRecord("intake.test", logging.WARNING, __file__, 1, msg, args, None)


def test_redact_secrets_masks_known_token_shapes():
    text = (
        "openai sk-abcdefghijkl github ghp_" + "a" * 36 + " gitlab glpat-" + "b" * 20
        + " header Bearer abc.def.ghi"
    )

    redacted = redact_secrets(text)

    assert "sk-abcdefghijkl" not in redacted
    assert "ghp_" not in redacted
    assert "glpat-" not in redacted
    assert "Bearer ***" in redacted


def test_filter_redacts_message_and_args():
    record = _record("token %s for %s", ("ghp_" + "c" * 36, "acme/api"))

    assert RedactionFilter().filter(record) is True
    assert record.getMessage() == "token *** for acme/api"


def test_filter_handles_mapping_args():
    record = _record("auth %(value)s", ({"value": "Bearer 0123456789abcdef"},))

    RedactionFilter().filter(record)

    assert record.getMessage() == "auth Bearer ***"
