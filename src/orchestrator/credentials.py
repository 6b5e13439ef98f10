"""Credential exchange.

Converts an inbound JWT into a backend API token: the JWT's workspace and
member claims are re-signed as a backend system key, which is then used to
look up the member's API tokens.
"""

import time
from typing import Any, Optional

import httpx
from jose import JWTError, jwt

from shared.config import TokenExchangeSettings
from shared.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"


class TokenExchangeError(Exception):
    """The inbound token could not be turned into an API token."""
    pass


class TokenExchange:
    """Turns inbound JWTs into tool server API tokens."""

    def __init__(
        self,
        settings: TokenExchangeSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.settings = settings
        self._transport = transport

    @staticmethod
    def decode_token(token: str) -> dict[str, Any]:
        """Read a JWT's claims without verifying its signature."""
        try:
            return jwt.get_unverified_claims(token)
        except JWTError as e:
            raise TokenExchangeError(f"Failed to decode token: {e}") from e

    def verify_token(self, token: str, secret: Optional[str] = None) -> dict[str, Any]:
        """Verify a JWT's signature and return its claims."""
        try:
            return jwt.decode(
                token,
                secret or self.settings.jwt_secret,
                algorithms=[ALGORITHM],
                options={"verify_aud": False},
            )
        except JWTError as e:
            raise TokenExchangeError(f"Failed to verify token: {e}") from e

    def prepare_backend_system_key(self, input_token: str) -> str:
        """
        Re-sign the workspace and member of an inbound JWT as a backend key.

        Raises:
            TokenExchangeError: If the token is unreadable or lacks the claims
        """
        claims = self.decode_token(input_token)
        workspace_id = claims.get("workspace-id")
        member_id = claims.get("member-id")

        if not workspace_id or not member_id:
            raise TokenExchangeError("Required fields (workspace-id, member-id) not found in token")

        return jwt.encode(
            {
                "workspaceRegistryId": workspace_id,
                "memberId": member_id,
                "iss": self.settings.issuer,
                "iat": int(time.time()),
            },
            self.settings.jwt_secret,
            algorithm=ALGORITHM,
        )

    async def fetch_api_token(self, backend_system_key: str) -> str:
        """
        Look up the first API token of the first membership.

        Raises:
            TokenExchangeError: On HTTP failure or when no token is listed
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.request_timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(
                    self.settings.memberships_url,
                    headers={
                        "backend_system_key": backend_system_key,
                        "Content-Type": "application/json",
                    },
                )
                response.raise_for_status()
                memberships = response.json()
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Failed to fetch API token: {e}") from e
        except ValueError as e:
            raise TokenExchangeError(f"Invalid membership response: {e}") from e

        if not isinstance(memberships, list) or not memberships:
            raise TokenExchangeError("No memberships found in response")

        api_tokens = memberships[0].get("apiTokens") if isinstance(memberships[0], dict) else None
        if not api_tokens:
            raise TokenExchangeError("No API tokens found in first membership")

        return api_tokens[0]

    async def get_api_token(self, input_token: str) -> str:
        """Exchange an inbound JWT for a tool server API token."""
        backend_system_key = self.prepare_backend_system_key(input_token)
        api_token = await self.fetch_api_token(backend_system_key)
        logger.debug("Exchanged inbound token for API token")
        return api_token
