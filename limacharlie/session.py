# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Session - holds credentials and mints bearer tokens (JWT).

The API secret is exchanged for a short-lived JWT at the token endpoint.
Concurrent refreshes coalesce: callers that queued up while a refresh was
in flight reuse its token instead of issuing their own request.

States:
- UNAUTHENTICATED: no token held
- REQUESTING: first token being minted
- AUTHENTICATED: a token is held
- REFRESHING: a held token is being replaced

Usage:
    session = Session(options, http=get_aiohttp_session, jwt_url=JWT_URL)
    token = await session.refresh_token()
    assert session.current_token() == token
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum

import aiohttp

from .errors import DecodeError, NetworkError, NoAPIKeyError, RESTError, make_preview
from .options import ClientOptions
from .serialization import loads_json

logger = logging.getLogger(__name__)

DEFAULT_JWT_URL = "https://app.limacharlie.io/jwt"


class SessionState(str, Enum):
    """Token lifecycle states."""
    UNAUTHENTICATED = "unauthenticated"
    REQUESTING = "requesting"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


class Session:
    """
    Token holder for one client.

    The token is written only while the internal lock is held; reads are
    lock-free. A session belongs to the event loop of its first refresh.
    The session never retries the token endpoint, that is left to the
    request executor.
    """

    def __init__(
        self,
        options: ClientOptions,
        http: Callable[[], Awaitable[aiohttp.ClientSession]],
        jwt_url: str = DEFAULT_JWT_URL,
        timeout: float = 30.0,
        user_agent: str = "limacharlie-sdk",
        on_state_change: Callable[[SessionState, SessionState], None] | None = None,
    ):
        self._options = options
        self._http = http
        self._jwt_url = jwt_url
        self._timeout = timeout
        self._user_agent = user_agent
        self._on_state_change = on_state_change

        self._lock = asyncio.Lock()
        self._token: str | None = options.jwt or None
        self._acquired_at: float | None = None
        self._expiry_seconds: int | None = None
        self._refresh_count = 0
        self._state = SessionState.AUTHENTICATED if self._token else SessionState.UNAUTHENTICATED

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def refresh_count(self) -> int:
        """Number of token endpoint calls issued so far."""
        return self._refresh_count

    @property
    def has_api_key(self) -> bool:
        return bool(self._options.api_key)

    @property
    def expires_at(self) -> float | None:
        """Epoch seconds after which the token is stale, None when unknown."""
        if self._acquired_at is None or self._expiry_seconds is None:
            return None
        return self._acquired_at + self._expiry_seconds

    @property
    def is_expired(self) -> bool:
        """
        True when the held token must be replaced before use.

        A token minted here without a requested expiry is stale right away;
        a caller-supplied token is kept until the server rejects it.
        """
        if self._acquired_at is None:
            return False
        expires_at = self.expires_at
        return expires_at is None or time.time() >= expires_at

    @property
    def needs_refresh(self) -> bool:
        return not self._token or self.is_expired

    def current_token(self) -> str:
        """The held token, or "" when none."""
        return self._token or ""

    def _set_state(self, new_state: SessionState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        logger.info(f"Session state change: {old_state.value} -> {new_state.value}")
        if self._on_state_change:
            try:
                self._on_state_change(old_state, new_state)
            except Exception as e:
                logger.warning(f"State change callback error: {e}")

    async def refresh_token(self, expiry_seconds: int | None = None, stale_token: str | None = None) -> str:
        """
        Mint a new token.

        Args:
            expiry_seconds: Requested lifetime, defaults to the options' value
            stale_token: The token the caller saw rejected. If another caller
                already replaced it, the newer token is returned without a
                network call. Defaults to the token held on entry.

        Returns:
            The new token

        Raises:
            NoAPIKeyError: no API key to exchange
            RESTError: token endpoint answered non-200
            NetworkError: token endpoint unreachable
            DecodeError: response was not {"jwt": ...}
        """
        seen = self._token if stale_token is None else stale_token
        async with self._lock:
            if self._token and self._token != seen:
                return self._token

            if not self._options.api_key:
                raise NoAPIKeyError()

            previous = self._state
            self._set_state(SessionState.REFRESHING if self._token else SessionState.REQUESTING)
            try:
                expiry = expiry_seconds if expiry_seconds is not None else self._options.expiry_seconds
                token = await self._request_token(expiry)
            except BaseException:
                self._set_state(previous)
                raise

            self._token = token
            self._acquired_at = time.time()
            self._expiry_seconds = expiry
            self._set_state(SessionState.AUTHENTICATED)
            return token

    async def _request_token(self, expiry_seconds: int | None) -> str:
        form = {"secret": self._options.api_key}
        if self._options.uid:
            form["uid"] = self._options.uid
        if self._options.oid:
            form["oid"] = self._options.oid
        if expiry_seconds:
            form["expiry"] = str(int(expiry_seconds))
        if self._options.permissions:
            form["perms"] = ",".join(self._options.permissions)

        self._refresh_count += 1
        http = await self._http()
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        try:
            async with http.post(
                self._jwt_url,
                data=form,
                headers={"User-Agent": self._user_agent},
                timeout=timeout,
            ) as response:
                status = response.status
                body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError("POST", self._jwt_url, e) from e

        if status != 200:
            raise RESTError(status, make_preview(body), "POST", self._jwt_url)

        decoded = loads_json(body)
        token = decoded.get("jwt") if isinstance(decoded, dict) else None
        if not token or not isinstance(token, str):
            raise DecodeError("token response has no jwt field", "$.jwt")
        logger.debug("Acquired new JWT")
        return token
