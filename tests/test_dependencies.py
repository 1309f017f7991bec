"""
Tests for API Dependencies.

Tests caller authentication from bearer tokens.
"""

import time

import jwt
import pytest
from fastapi.security import HTTPAuthorizationCredentials

from voucherflow.api.dependencies import (
    JWT_ALGORITHM,
    decode_caller_token,
    get_current_caller,
    get_payment_provider,
)
from voucherflow.config import settings
from voucherflow.exceptions import AuthenticationError
from voucherflow.services.stripe_provider import StripeProvider


def make_token(secret: str | None = None, **claims) -> str:
    payload = {"sub": "buyer-user-001", "email": "buyer@example.com", "exp": time.time() + 300}
    payload.update(claims)
    payload = {k: v for k, v in payload.items() if v is not None}
    return jwt.encode(payload, secret or settings.auth_jwt_secret, algorithm=JWT_ALGORITHM)


class TestDecodeCallerToken:
    """Tests for decode_caller_token."""

    def test_valid_token(self):
        """Valid token yields the caller identity."""
        caller = decode_caller_token(make_token())

        assert caller.user_id == "buyer-user-001"
        assert caller.email == "buyer@example.com"

    def test_token_without_email(self):
        """Email claim is optional."""
        caller = decode_caller_token(make_token(email=None))

        assert caller.email is None

    def test_expired_token(self):
        """Expired token is rejected."""
        with pytest.raises(AuthenticationError, match="expired"):
            decode_caller_token(make_token(exp=time.time() - 60))

    def test_wrong_secret(self):
        """Token signed with another key is rejected."""
        with pytest.raises(AuthenticationError, match="Invalid token"):
            decode_caller_token(make_token(secret="another-secret-key-that-is-32-chars-long"))

    def test_garbage_token(self):
        """Malformed token is rejected."""
        with pytest.raises(AuthenticationError):
            decode_caller_token("not-a-jwt")

    def test_missing_subject(self):
        """Token without a subject is rejected."""
        with pytest.raises(AuthenticationError, match="subject"):
            decode_caller_token(make_token(sub=None))


class TestGetCurrentCaller:
    """Tests for the get_current_caller dependency."""

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        """No Authorization header is unauthenticated."""
        with pytest.raises(AuthenticationError, match="required"):
            await get_current_caller(None)

    @pytest.mark.asyncio
    async def test_bearer_credentials(self):
        """Bearer token is decoded."""
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=make_token())

        caller = await get_current_caller(credentials)

        assert caller.user_id == "buyer-user-001"


def test_payment_provider_is_stripe():
    """Provider dependency builds the Stripe implementation from settings."""
    provider = get_payment_provider()

    assert isinstance(provider, StripeProvider)
    assert provider.webhook_secret == settings.stripe_webhook_secret
