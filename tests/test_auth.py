from datetime import datetime, timedelta, timezone

import jwt
import pytest

from services.realtime.app.auth import extract_token, verify_token

SECRET = "test-secret"


def token(payload: dict, secret: str = SECRET) -> str:
    return jwt.encode(payload, secret, algorithm="HS256")


def test_valid_token_yields_user_id():
    assert verify_token(token({"id": "u-1"}), secret=SECRET) == "u-1"


def test_numeric_id_claim_is_stringified():
    assert verify_token(token({"id": 42}), secret=SECRET) == "42"


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "",
        "not-a-jwt",
        token({"id": "u-1"}, secret="another-secret"),
        token({"id": "u-1", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)}),
        token({"sub": "u-1"}),
    ],
)
def test_unusable_token_yields_no_identity(raw):
    assert verify_token(raw, secret=SECRET) is None


def test_query_token_takes_precedence():
    assert extract_token("from-query", "Bearer from-header") == "from-query"


def test_bearer_header_is_used_when_no_query_token():
    assert extract_token(None, "Bearer abc.def.ghi") == "abc.def.ghi"


@pytest.mark.parametrize("header", [None, "", "Basic dXNlcjpwYXNz", "Bearer"])
def test_missing_or_foreign_authorization(header):
    assert extract_token(None, header) is None
