"""
FastAPI Dependencies - Caller authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from voucherflow.config import settings
from voucherflow.exceptions import AuthenticationError
from voucherflow.models.domain import CallerIdentity
from voucherflow.services.payment_provider import PaymentProvider
from voucherflow.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"

# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_caller_token(token: str) -> CallerIdentity:
    """
    Verify a bearer token issued by the auth service.

    Raises:
        AuthenticationError: Token is expired, malformed or has no subject
    """
    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[JWT_ALGORITHM],
            audience=settings.auth_jwt_audience,
            options={"verify_aud": settings.auth_jwt_audience is not None},
        )
    except jwt.ExpiredSignatureError as exc:
        logger.info("caller_token_expired")
        raise AuthenticationError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("caller_token_invalid", error=str(exc))
        raise AuthenticationError("Invalid token") from exc

    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Token has no subject")

    email = payload.get("email")
    return CallerIdentity(user_id=str(subject), email=str(email) if email else None)


async def get_current_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerIdentity:
    """
    FastAPI dependency resolving the authenticated caller.

    Accepts: Authorization: Bearer {jwt}

    Raises:
        AuthenticationError: No token or invalid token (401)
    """
    if credentials is None:
        raise AuthenticationError("Authorization header required")
    return decode_caller_token(credentials.credentials)


def get_payment_provider() -> PaymentProvider:
    """FastAPI dependency providing the configured payment processor."""
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.processor_timeout_seconds,
        max_network_retries=settings.stripe_max_network_retries,
    )
