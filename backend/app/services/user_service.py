"""
User Service - bearer token to Principal resolution

Implements cache-aside pattern:
1. Check Redis cache first (fast path), keyed by a digest of the token
2. On cache miss, ask the auth service who the token belongs to
3. Update cache with the resolved principal
"""

import hashlib
import time
from typing import Any

from pydantic import ValidationError
from redis.exceptions import RedisError

from app.clients.auth_client import AuthClient
from app.core.config import settings
from app.core.errors import Unauthorized
from app.core.logging import get_logger
from app.core.metrics import (
    principal_resolution_duration_seconds,
    principal_resolution_total,
)
from app.core.redis import RedisClient
from app.models import Principal, UserRole

logger = get_logger(__name__)


def principal_cache_key(token: str) -> str:
    # Never store raw tokens as keys
    return f"principal:{hashlib.sha256(token.encode('utf-8')).hexdigest()}"


def principal_from_user(data: dict[str, Any]) -> Principal | None:
    """Map the auth service's user document onto a Principal; None for inactive users"""
    if data.get("isActive") is False:
        return None
    user_id = data.get("id") or data.get("_id")
    if not user_id:
        return None
    role = data.get("role")
    if role not in {member.value for member in UserRole}:
        role = UserRole.CUSTOMER.value
    return Principal(
        id=str(user_id),
        role=role,
        name=data.get("name"),
        email=data.get("email"),
        wallet_address=data.get("walletAddress") or data.get("wallet_address"),
    )


class UserService:
    """Authentication seam used by the route dependencies"""

    @staticmethod
    async def resolve_principal(
        token: str | None, redis: RedisClient, client: AuthClient
    ) -> Principal:
        """
        Resolve a bearer token to the calling Principal

        Args:
            token: Raw bearer token from the Authorization header
            redis: Redis client instance
            client: Auth service client

        Returns:
            The Principal the token was issued to

        Raises:
            Unauthorized: Missing, invalid or deactivated token
            GatewayUnavailable: Auth service unreachable on a cache miss
        """
        if not token:
            principal_resolution_total.labels(result="rejected").inc()
            raise Unauthorized("No token, authorization denied")

        start_time = time.time()
        cache_key = principal_cache_key(token)

        # Step 1: Check cache first (fast path)
        try:
            cached = await redis.get_json(cache_key)
        except (RedisError, RuntimeError, ValueError) as e:
            # Non-critical: fall through to the auth service
            logger.warning(
                "principal_cache_read_failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            cached = None

        if cached:
            try:
                principal = Principal(**cached)
            except ValidationError:
                principal = None
            if principal is not None:
                principal_resolution_total.labels(result="cache_hit").inc()
                principal_resolution_duration_seconds.observe(time.time() - start_time)
                logger.debug("principal_cache_hit", user_id=principal.id, role=principal.role)
                return principal

        # Step 2: Cache miss - ask the auth service
        try:
            user = await client.get_me(token)
        except Exception:
            principal_resolution_total.labels(result="error").inc()
            principal_resolution_duration_seconds.observe(time.time() - start_time)
            raise

        principal = principal_from_user(user) if user else None
        if principal is None:
            principal_resolution_total.labels(result="rejected").inc()
            principal_resolution_duration_seconds.observe(time.time() - start_time)
            logger.info("principal_rejected", reason="invalid_or_inactive")
            raise Unauthorized("Token is not valid")

        # Step 3: Update cache for future requests
        try:
            await redis.set_json(
                cache_key,
                principal.model_dump(mode="json"),
                ttl=settings.PRINCIPAL_CACHE_TTL,
            )
        except (RedisError, RuntimeError, TypeError) as cache_error:
            # Non-critical: Cache update failed, but we have the principal
            logger.warning(
                "principal_cache_update_failed",
                user_id=principal.id,
                error_type=type(cache_error).__name__,
                error_message=str(cache_error),
            )

        duration = time.time() - start_time
        principal_resolution_total.labels(result="auth_service").inc()
        principal_resolution_duration_seconds.observe(duration)
        logger.info(
            "principal_resolved",
            user_id=principal.id,
            role=principal.role,
            source="auth_service",
            duration_ms=round(duration * 1000, 2),
        )
        return principal
