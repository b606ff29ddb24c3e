from tokenwarden.logging import _redact_credentials, hash_email


def _redact(**event):
    return _redact_credentials(None, "info", dict(event))


def test_credentials_are_masked_entirely():
    event = _redact(
        event="login",
        password="hunter2hunter2",
        refresh_token="eyJhbGciOiJIUzI1NiJ9.payload.sig",
        Authorization="Bearer abc",
        user_id="user-123456",
    )

    assert event["password"] == "***"
    assert event["refresh_token"] == "***"
    assert event["Authorization"] == "***"
    assert event["user_id"] == "user-123456"


def test_short_credentials_are_masked_too():
    assert _redact(token="abc")["token"] == "***"


def test_addresses_keep_only_their_domain():
    event = _redact(email="alice@example.com", to_email="not-an-address")

    assert event["email"] == "***@example.com"
    assert event["to_email"] == "***"


def test_derived_values_are_kept():
    digest = hash_email("a@example.com")

    assert _redact(email_hash=digest)["email_hash"] == digest


def test_non_string_values_untouched():
    assert _redact(token_count=3)["token_count"] == 3


def test_hash_email_normalizes():
    assert hash_email(" A@Example.COM ") == hash_email("a@example.com")
    assert len(hash_email("a@example.com")) == 64
