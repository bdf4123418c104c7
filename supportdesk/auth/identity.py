"""
Bearer token verification.

Tokens are HS256 JWTs issued by the auth provider. The `sub` claim is the
profile id; role and department always come from a live profile lookup so a
role change takes effect on the next request or connection.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol

import jwt
import structlog

from supportdesk.auth.principal import Principal
from supportdesk.config import get_settings
from supportdesk.tickets.models import Profile

logger = structlog.get_logger()

JWT_ALGORITHM = "HS256"

ProfileLookup = Callable[[str], Awaitable[Profile | None]]


class IdentityService(Protocol):
    async def verify_token(self, token: str) -> Principal | None: ...

    async def get_profile(self, user_id: str) -> Profile | None: ...


class JwtIdentityService:
    def __init__(
        self,
        *,
        profile_lookup: ProfileLookup,
        secret: str | None = None,
        audience: str | None = None,
        issuer: str | None = None,
    ) -> None:
        settings = get_settings()
        self._profile_lookup = profile_lookup
        self._secret = secret if secret is not None else settings.identity_jwt_secret
        self._audience = audience if audience is not None else settings.identity_jwt_audience
        self._issuer = issuer if issuer is not None else settings.identity_jwt_issuer

    def _decode(self, token: str) -> dict | None:
        if not self._secret:
            logger.error("IDENTITY_JWT_SECRET not configured; rejecting token")
            return None
        options = {"require": ["sub", "exp"]}
        if not self._audience:
            options["verify_aud"] = False
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            logger.info("Bearer token expired")
        except jwt.InvalidTokenError as exc:
            logger.info("Bearer token invalid", error=str(exc))
        return None

    async def verify_token(self, token: str) -> Principal | None:
        if not token:
            return None
        claims = self._decode(token)
        if not claims:
            return None
        profile = await self._profile_lookup(str(claims["sub"]))
        if profile is None:
            logger.info("Bearer token subject has no profile", user_id=claims["sub"])
            return None
        return profile.to_principal()

    async def get_profile(self, user_id: str) -> Profile | None:
        return await self._profile_lookup(user_id)
