from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from spillwatch.errors import AuthError
from spillwatch.settings import Settings


logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class Token:
    access_token: str
    expires_at: float
    token_type: str = "Bearer"

    @property
    def authorization(self) -> str:
        return f"Bearer {self.access_token}"


class TokenCache:
    """OAuth2 client-credentials token holder for the Copernicus identity service.

    A cached token is served until ``expiry_skew_seconds`` before it expires.
    Concurrent callers that find no valid token share one pending refresh, so a
    refresh cycle costs exactly one round trip to the identity endpoint. A failed
    refresh releases the pending marker and the next call starts a new one.
    """

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        token_url: str,
        session: aiohttp.ClientSession | None = None,
        clock: Clock = time.monotonic,
        expiry_skew_seconds: float = 60.0,
        timeout_seconds: float = 40.0,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._skew = max(0.0, float(expiry_skew_seconds))
        self._timeout_seconds = timeout_seconds
        self._token: Token | None = None
        self._pending: asyncio.Task[Token] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> "TokenCache":
        return cls(
            client_id=settings.spillwatch_copernicus_client_id,
            client_secret=settings.spillwatch_copernicus_client_secret,
            token_url=settings.spillwatch_copernicus_token_url,
            session=session,
        )

    async def get_token(self) -> Token:
        token = self._token
        if token is not None and self._clock() < token.expires_at - self._skew:
            return token

        if self._pending is None:
            self._pending = asyncio.create_task(self._refresh(), name="spillwatch-token-refresh")
            self._pending.add_done_callback(self._release_pending)
        return await asyncio.shield(self._pending)

    def clear(self, *, if_token: Token | None = None) -> None:
        """Drop the cached token, or only ``if_token`` when it is still the cached one."""

        if if_token is not None and self._token is not if_token:
            return
        self._token = None

    def is_authenticated(self) -> bool:
        return self._token is not None and self._clock() < self._token.expires_at

    def seconds_until_expiry(self) -> int:
        if self._token is None:
            return 0
        return max(0, int(self._token.expires_at - self._clock()))

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    def _release_pending(self, task: asyncio.Task[Token]) -> None:
        if self._pending is task:
            self._pending = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds)
            )
            self._owns_session = True
        return self._session

    async def _refresh(self) -> Token:
        if not self._client_id or not self._client_secret:
            raise AuthError(
                "Missing Copernicus credentials. Set SPILLWATCH_COPERNICUS_CLIENT_ID "
                "and SPILLWATCH_COPERNICUS_CLIENT_SECRET."
            )

        body = await self._request_token()
        access_token = body.get("access_token")
        if not access_token:
            raise AuthError("Copernicus token endpoint did not return access_token.")

        try:
            lifetime = float(body.get("expires_in") or 0)
        except (TypeError, ValueError):
            lifetime = 0.0

        token = Token(
            access_token=str(access_token),
            expires_at=self._clock() + lifetime,
            token_type=str(body.get("token_type") or "Bearer"),
        )
        self._token = token
        logger.info("copernicus_token_refreshed expires_in=%s", int(lifetime))
        return token

    async def _request_token(self) -> dict[str, Any]:
        payload = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        try:
            async with self._http().post(self._token_url, data=payload, headers=headers) as response:
                if response.status >= 300:
                    detail = await response.text()
                    raise AuthError(
                        f"Authentication failed: {response.status} - {detail}",
                        status=response.status,
                    )
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise AuthError(f"Copernicus identity service unreachable: {exc}") from exc
