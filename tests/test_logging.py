from oceanblog.logging import _redact_pii


def _redact(**fields):
    return _redact_pii(None, "info", dict(fields))


def test_credentials_are_masked():
    redacted = _redact(password="Password1!", refresh_token="abc.def.ghi", event="login")

    assert redacted == {"password": "***", "refresh_token": "***", "event": "login"}


def test_email_keeps_prefix_and_domain():
    assert _redact(email="reader@example.com")["email"] == "re***@example.com"


def test_digests_pass_through():
    redacted = _redact(email_hash="0123456789abcdef", token_hash="fedcba9876543210")

    assert redacted == {"email_hash": "0123456789abcdef", "token_hash": "fedcba9876543210"}
