"""Tests for identity-keyed rate limiting and the 429 envelope."""

import json
from unittest.mock import MagicMock, patch

from pydantic import SecretStr
from starlette.requests import Request

from profile_onboarding.core.config import settings
from profile_onboarding.core.rate_limiting import (
    identity_rate_limit_key,
    rate_limit_exceeded_handler,
)
from tests.conftest import (
    OTHER_IDENTITY_ID,
    TEST_AUTH_SECRET,
    TEST_IDENTITY_ID,
    create_test_jwt,
)


def _request(cookie: str | None = None) -> Request:
    headers = []
    if cookie is not None:
        headers.append((b"cookie", f"{settings.auth_cookie_name}={cookie}".encode()))
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": "/api/v1/onboarding/complete",
            "headers": headers,
            "client": ("203.0.113.7", 51000),
        }
    )


class TestIdentityRateLimitKey:
    """Tests for identity_rate_limit_key()."""

    def test_hosted_mode_keys_on_token_subject(self) -> None:
        with (
            patch.object(settings, "auth_enabled", True),
            patch.object(settings, "auth_secret", SecretStr(TEST_AUTH_SECRET)),
        ):
            key = identity_rate_limit_key(_request(create_test_jwt()))
        assert key == f"identity:{TEST_IDENTITY_ID}"

    def test_hosted_mode_invalid_token_keys_on_address(self) -> None:
        """A token signed with another secret never earns an identity bucket."""
        with (
            patch.object(settings, "auth_enabled", True),
            patch.object(settings, "auth_secret", SecretStr(TEST_AUTH_SECRET)),
        ):
            key = identity_rate_limit_key(
                _request(create_test_jwt(secret="b" * 64))
            )
        assert key == "addr:203.0.113.7"

    def test_hosted_mode_without_cookie(self) -> None:
        with patch.object(settings, "auth_enabled", True):
            assert identity_rate_limit_key(_request()) == "addr:203.0.113.7"

    def test_local_mode_keys_on_default_identity(self) -> None:
        with (
            patch.object(settings, "auth_enabled", False),
            patch.object(settings, "default_identity_id", OTHER_IDENTITY_ID),
        ):
            key = identity_rate_limit_key(_request())
        assert key == f"identity:{OTHER_IDENTITY_ID}"

    def test_local_mode_without_default_identity(self) -> None:
        with (
            patch.object(settings, "auth_enabled", False),
            patch.object(settings, "default_identity_id", None),
        ):
            assert identity_rate_limit_key(_request()) == "addr:203.0.113.7"


class TestRateLimitExceededHandler:
    """Tests for rate_limit_exceeded_handler()."""

    def test_envelope_and_retry_after(self) -> None:
        exc = MagicMock()
        exc.detail = "5 per 1 minute"
        exc.limit.limit.get_expiry.return_value = 60

        response = rate_limit_exceeded_handler(_request(), exc)

        assert response.status_code == 429
        assert response.headers["retry-after"] == "60"
        body = json.loads(response.body)
        assert body["error"]["code"] == "RATE_LIMITED"
        assert "5 per 1 minute" in body["error"]["message"]

    def test_retry_after_uses_limit_window(self) -> None:
        exc = MagicMock()
        exc.detail = "30 per 1 hour"
        exc.limit.limit.get_expiry.return_value = 3600

        response = rate_limit_exceeded_handler(_request(), exc)

        assert response.headers["retry-after"] == "3600"

    def test_retry_after_fallback(self) -> None:
        """Without limit details the header falls back to one minute."""
        exc = MagicMock(spec=["detail"])
        exc.detail = "too many"

        response = rate_limit_exceeded_handler(_request(), exc)

        assert response.headers["retry-after"] == "60"
