"""Token format policy and legacy storage normalization."""

import json

from conftest import make_token

from fiscalpush.services.notification.tokens import classify_token, detect_platform, normalize_token_entries


def test_well_formed_token_is_valid():
    assert classify_token(make_token("dev1")) == "valid"


def test_length_bounds_are_inclusive():
    assert classify_token("a" * 100, min_length=100, max_length=500) == "valid"
    assert classify_token("a" * 99, min_length=100, max_length=500) == "invalid"
    assert classify_token("a" * 500, min_length=100, max_length=500) == "valid"
    assert classify_token("a" * 501, min_length=100, max_length=500) == "invalid"


def test_charset_rejects_spaces_and_extended_chars_by_default():
    assert classify_token("a" * 60 + " " + "a" * 60) == "invalid"
    dotted = "a" * 60 + "." + "a" * 60
    assert classify_token(dotted) == "invalid"
    assert classify_token(dotted, extended_charset=True) == "valid"


def test_non_string_and_empty_tokens_are_invalid():
    assert classify_token(None) == "invalid"
    assert classify_token("") == "invalid"
    assert classify_token(12345) == "invalid"


def test_test_tokens_accepted_outside_production():
    """Short test tokens bypass the format checks when allowed."""

    assert classify_token("test_fcm_token_abc", environment="testing") == "test"
    assert classify_token("test_device", environment="staging", allow_test_tokens=True) == "test"
    assert classify_token("test_device", environment="staging", allow_test_tokens=False) == "invalid"


def test_test_tokens_never_valid_in_production():
    assert classify_token("test_fcm_token_abc", environment="production", allow_test_tokens=True) == "invalid"


def test_detect_platform():
    assert detect_platform("cX:APA91b" + "x" * 120) == "android"
    assert detect_platform("apns-" + "x" * 120) == "ios"
    assert detect_platform(make_token("browser")) == "web"


def test_normalize_legacy_shapes():
    """Bare strings, JSON-encoded lists and dict entries all normalize."""

    a, b, c = make_token("a"), make_token("b"), make_token("c")

    assert [r.token for r in normalize_token_entries(a)] == [a]
    assert [r.token for r in normalize_token_entries(json.dumps([a, b]))] == [a, b]

    mixed = [a, {"token": b, "device_id": "pixel", "created_at": "2026-01-01T00:00:00+00:00"}, {"no": "token"}, c]
    records = normalize_token_entries(mixed)
    assert [r.token for r in records] == [a, b, c]
    assert records[1].device_id == "pixel"
    assert records[1].last_used_at == "2026-01-01T00:00:00+00:00"
    # never-refreshed bare strings sort first for eviction
    assert records[0].last_used_at == "1970-01-01T00:00:00+00:00"


def test_normalize_drops_duplicates_and_invalid_entries():
    a = make_token("a")
    records = normalize_token_entries([a, a, "bad token", None, 7])
    assert [r.token for r in records] == [a]


def test_normalize_empty_values():
    assert normalize_token_entries(None) == []
    assert normalize_token_entries("") == []
    assert normalize_token_entries("[not json") == []
