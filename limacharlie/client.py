# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
LimaCharlie Client - the reliable request executor.

Every REST call in the SDK goes through Client.execute(). It composes the
URL, encodes the body, injects the bearer token, retries transient failures
and decodes the response through the serialization normalizer.

Retry policy:
- network errors, HTTP 5xx and HTTP 429 are retried up to max_retries
  attempts in total (a value of 0 still makes one attempt)
- 429 honors Retry-After, otherwise backoff is min(base * 2**n, max)
- 401 triggers exactly one token refresh per logical request; a second
  401 raises UnauthorizedError
- token endpoint calls (before the first send and after a 401) follow the
  same policy and draw from the same attempt budget

Usage:
    async with Client(ClientOptions(oid=OID, api_key=KEY)) as client:
        who = await client.who_am_i()
        rules = await client.request("GET", f"rules/{client.oid}")

        # Full descriptor form
        response = await client.execute(Request(
            verb="POST",
            path=f"rules/{client.oid}",
            body_encoding=BodyEncoding.FORM,
            body={"name": "r1", "detection": {...}},
        ))
"""

import asyncio
import base64
import email.utils
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlencode

import aiohttp

from . import __version__
from .errors import (
    DecodeError,
    InvalidOptionsError,
    NetworkError,
    NoAPIKeyError,
    OperationCancelledError,
    RESTError,
    ResourceNotFoundError,
    UnauthorizedError,
    make_preview,
)
from .options import ClientOptions, resolve_options
from .serialization import dumps_json, loads_json
from .session import DEFAULT_JWT_URL, Session, SessionState

logger = logging.getLogger(__name__)

DEFAULT_API_ROOT = "https://api.limacharlie.io"
DEFAULT_STREAM_URL = "wss://stream.limacharlie.io/ws"
API_VERSION = "v1"


class BodyEncoding(str, Enum):
    """How Request.body is put on the wire."""
    NONE = "none"
    JSON = "json"
    FORM = "form"


@dataclass
class ClientConfig:
    """Transport settings shared by every request of one client."""
    # Endpoints
    api_root: str = DEFAULT_API_ROOT
    api_version: str = API_VERSION
    jwt_url: str = DEFAULT_JWT_URL
    stream_url: str = DEFAULT_STREAM_URL

    # Timeouts (seconds)
    timeout: float = 60.0
    token_timeout: float = 30.0

    # Retry settings
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0

    user_agent: str = f"limacharlie-sdk-python/{__version__}"


@dataclass
class Request:
    """A single logical request. Descriptors are single-use."""
    verb: str
    path: str
    root_override: str | None = None
    query_params: Mapping[str, Any] | list[tuple[str, Any]] | None = None
    body_encoding: BodyEncoding = BodyEncoding.NONE
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    content_type: str | None = None
    timeout: float | None = None
    max_retries: int | None = None
    is_no_auth: bool = False
    is_json_response: bool = True
    # Applied to the decoded body, e.g. WhoAmI.from_dict
    response_factory: Callable[[Any], Any] | None = None
    idempotent_key: str | None = None
    # Bound on the whole logical request, retries included
    deadline: float | None = None


@dataclass
class Response:
    """Outcome of a successful execute()."""
    status: int
    raw: bytes
    decoded: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass
class WhoAmI:
    """Identity and permissions of the current credentials."""
    ident: str | None = None
    orgs: list[str] = field(default_factory=list)
    perms: list[str] = field(default_factory=list)
    # Present for user tokens spanning several organizations
    user_perms: dict[str, list[str]] | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "WhoAmI":
        return cls(
            ident=data.get("ident"),
            orgs=list(data.get("orgs") or []),
            perms=list(data.get("perms") or []),
            user_perms=data.get("user_perms"),
        )

    def has_permission_for_org(self, oid: str, perm: str) -> bool:
        if self.user_perms is not None and oid in self.user_perms:
            return perm in (self.user_perms[oid] or [])
        return oid in self.orgs and perm in self.perms


def _pairs(params: Mapping[str, Any] | list[tuple[str, Any]]) -> list[tuple[str, Any]]:
    return list(params.items()) if isinstance(params, Mapping) else list(params)


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return dumps_json(value)
    if hasattr(value, "to_dict"):
        return dumps_json(value.to_dict())
    return str(value)


def encode_form(data: Mapping[str, Any] | list[tuple[str, Any]]) -> list[tuple[str, str]]:
    """
    Flatten a mapping into form pairs.

    Lists become repeated keys, nested mappings become JSON text, booleans
    become "true"/"false" and None values are skipped.
    """
    pairs = []
    for key, value in _pairs(data):
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            pairs.extend((key, _form_value(item)) for item in value)
        else:
            pairs.append((key, _form_value(value)))
    return pairs


def compose_url(
    api_root: str,
    api_version: str,
    path: str,
    query_params: Mapping[str, Any] | list[tuple[str, Any]] | None = None,
    root_override: str | None = None,
) -> str:
    """
    Build {root}/{version}/{path}?{query}.

    A root_override ending in "/" is used as-is with no version prefix,
    which is how auxiliary services sharing this transport are reached.
    """
    root = root_override or api_root
    path = path.lstrip("/")
    if root.endswith("/"):
        url = f"{root}{path}"
    else:
        url = f"{root.rstrip('/')}/{api_version}/{path}"
    if query_params:
        query = urlencode(encode_form(query_params))
        if query:
            url = f"{url}{'&' if '?' in url else '?'}{query}"
    return url


def _encode_body(request: Request) -> tuple[bytes | None, str | None]:
    if request.body_encoding == BodyEncoding.NONE:
        return None, None
    if request.body_encoding == BodyEncoding.JSON:
        body = request.body.to_dict() if hasattr(request.body, "to_dict") else request.body
        return dumps_json(body).encode("utf-8"), request.content_type or "application/json"
    if request.body_encoding == BodyEncoding.FORM:
        body = urlencode(encode_form(request.body or {})).encode("utf-8")
        return body, request.content_type or "application/x-www-form-urlencoded"
    raise InvalidOptionsError(f"unknown body encoding: {request.body_encoding}", field="body_encoding")


def parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(when.timestamp() - time.time(), 0.0)


def _is_transient(error: Exception) -> bool:
    if isinstance(error, NetworkError):
        return True
    return isinstance(error, RESTError) and (error.status == 429 or error.status >= 500)


class Client:
    """
    Async LimaCharlie API client.

    Owns the aiohttp session and the token Session. Resource wrappers take
    a Client explicitly and go through request()/execute().

    Usage:
        async with Client(ClientOptions(oid=OID, api_key=KEY)) as client:
            if (await client.who_am_i()).has_permission_for_org(client.oid, "dr.list"):
                ...
    """

    def __init__(
        self,
        options: ClientOptions | None = None,
        config: ClientConfig | None = None,
        **kwargs,
    ):
        self.options = resolve_options(options)
        self.config = config or ClientConfig(
            **{k: v for k, v in kwargs.items() if hasattr(ClientConfig, k)}
        )

        self._http: aiohttp.ClientSession | None = None
        self.session = Session(
            self.options,
            http=self.get_http_session,
            jwt_url=self.config.jwt_url,
            timeout=self.config.token_timeout,
            user_agent=self.config.user_agent,
        )

    @property
    def oid(self) -> str | None:
        return self.options.oid

    @property
    def uid(self) -> str | None:
        return self.options.uid

    async def get_http_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )
        return self._http

    async def __aenter__(self):
        await self.get_http_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._http and not self._http.closed:
            await self._http.close()

    def _backoff(self, attempt: int) -> float:
        return min(self.config.backoff_base * (2 ** attempt), self.config.backoff_max)

    def _check_rate_limit(self, headers: Mapping[str, str]) -> None:
        quota = headers.get("X-RateLimit-Quota")
        period = headers.get("X-RateLimit-Period")
        if quota and period:
            logger.warning(f"Rate limit hit, quota limit: {quota}, quota period: {period} seconds")

    async def execute(self, request: Request, deadline: float | None = None) -> Response:
        """
        Run one logical request to completion.

        Args:
            request: The request descriptor
            deadline: Seconds allowed for the whole request including
                retries; overrides request.deadline

        Returns:
            Response with decoded body (when is_json_response)

        Raises:
            NetworkError, RESTError, UnauthorizedError, ResourceNotFoundError,
            DecodeError, NoAPIKeyError, OperationCancelledError
        """
        deadline = deadline if deadline is not None else request.deadline
        if deadline is None:
            return await self._execute(request)
        try:
            return await asyncio.wait_for(self._execute(request), timeout=deadline)
        except asyncio.TimeoutError as e:
            raise OperationCancelledError(
                f"{request.verb} {request.path} exceeded deadline of {deadline}s"
            ) from e

    async def _execute(self, request: Request) -> Response:
        verb = request.verb.upper()
        url = compose_url(
            self.config.api_root,
            self.config.api_version,
            request.path,
            request.query_params,
            request.root_override,
        )
        body, content_type = _encode_body(request)
        max_retries = self.config.max_retries if request.max_retries is None else request.max_retries
        max_attempts = max(max_retries, 1)
        timeout = aiohttp.ClientTimeout(total=request.timeout or self.config.timeout)

        attempt = 0
        if not request.is_no_auth and self.session.needs_refresh:
            attempt = await self._refresh_with_retry(f"{verb} {request.path}", attempt, max_attempts)

        has_refreshed = False
        while True:
            headers = {"User-Agent": self.config.user_agent}
            if content_type:
                headers["Content-Type"] = content_type
            if request.idempotent_key:
                headers["x-idempotent-key"] = request.idempotent_key
            token = ""
            if not request.is_no_auth:
                token = self.session.current_token()
                headers["Authorization"] = f"bearer {token}"
            headers.update(request.headers)

            try:
                status, raw, response_headers = await self._send(verb, url, body, headers, timeout)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                attempt += 1
                if attempt >= max_attempts:
                    raise NetworkError(verb, request.path, e, attempts=attempt) from e
                delay = self._backoff(attempt - 1)
                logger.warning(
                    f"{verb} {request.path} failed (attempt {attempt}/{max_attempts}): "
                    f"{e!r}, retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                continue

            self._check_rate_limit(response_headers)

            if status == 401 and not request.is_no_auth and not has_refreshed:
                has_refreshed = True
                logger.info(f"{verb} {request.path} unauthorized, refreshing token")
                try:
                    attempt = await self._refresh_with_retry(
                        f"{verb} {request.path}", attempt, max_attempts, stale_token=token
                    )
                except NoAPIKeyError as e:
                    raise UnauthorizedError(401, make_preview(raw), verb, request.path) from e
                continue

            if status == 429 or status >= 500:
                attempt += 1
                if attempt < max_attempts:
                    delay = None
                    if status == 429:
                        delay = parse_retry_after(response_headers.get("Retry-After"))
                    if delay is None:
                        delay = self._backoff(attempt - 1)
                    delay = min(delay, self.config.backoff_max)
                    logger.warning(
                        f"{verb} {request.path} returned {status} "
                        f"(attempt {attempt}/{max_attempts}), retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    continue

            return self._finish(request, verb, status, raw, response_headers)

    async def _refresh_with_retry(
        self,
        label: str,
        attempt: int,
        max_attempts: int,
        stale_token: str | None = None,
    ) -> int:
        """
        Refresh the token, retrying transient token endpoint failures.

        Returns:
            The attempt count after the refresh, for the caller's budget
        """
        while True:
            try:
                await self.session.refresh_token(stale_token=stale_token)
                return attempt
            except (NetworkError, RESTError) as e:
                if not _is_transient(e):
                    raise
                attempt += 1
                if attempt >= max_attempts:
                    raise
                delay = self._backoff(attempt - 1)
                logger.warning(
                    f"{label}: token refresh failed (attempt {attempt}/{max_attempts}): "
                    f"{e}, retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    async def ensure_token(self) -> str:
        """Current token, minted first if missing or stale."""
        if self.session.needs_refresh:
            await self._refresh_with_retry("token", 0, max(self.config.max_retries, 1))
        return self.session.current_token()

    async def _send(
        self,
        verb: str,
        url: str,
        body: bytes | None,
        headers: dict[str, str],
        timeout: aiohttp.ClientTimeout,
    ) -> tuple[int, bytes, Mapping[str, str]]:
        http = await self.get_http_session()
        async with http.request(verb, url, data=body, headers=headers, timeout=timeout) as response:
            raw = await response.read()
            logger.debug(f"{verb} {url.split('?')[0]} -> {response.status}")
            return response.status, raw, response.headers

    def _finish(
        self,
        request: Request,
        verb: str,
        status: int,
        raw: bytes,
        headers: Mapping[str, str],
    ) -> Response:
        if 200 <= status < 300:
            decoded = None
            if request.is_json_response and raw.strip():
                decoded = loads_json(raw)
            if request.response_factory is not None:
                try:
                    decoded = request.response_factory(decoded)
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    raise DecodeError(f"unexpected response shape for {verb} {request.path}: {e}") from e
            return Response(status=status, raw=raw, decoded=decoded, headers=headers)

        preview = make_preview(raw)
        if status == 401:
            raise UnauthorizedError(status, preview, verb, request.path)
        if status == 404:
            raise ResourceNotFoundError(status, preview, verb, request.path)
        raise RESTError(status, preview, verb, request.path)

    async def request(
        self,
        verb: str,
        path: str,
        *,
        query_params: Mapping[str, Any] | list[tuple[str, Any]] | None = None,
        json_body: Any = None,
        form: Mapping[str, Any] | None = None,
        root_override: str | None = None,
        timeout: float | None = None,
        is_no_auth: bool = False,
        idempotent_key: str | None = None,
        response_factory: Callable[[Any], Any] | None = None,
    ) -> Any:
        """Convenience wrapper around execute() returning the decoded body."""
        if json_body is not None and form is not None:
            raise InvalidOptionsError("json_body and form are mutually exclusive", field="body")
        encoding = BodyEncoding.NONE
        body = None
        if json_body is not None:
            encoding, body = BodyEncoding.JSON, json_body
        elif form is not None:
            encoding, body = BodyEncoding.FORM, form
        response = await self.execute(Request(
            verb=verb,
            path=path,
            root_override=root_override,
            query_params=query_params,
            body_encoding=encoding,
            body=body,
            timeout=timeout,
            is_no_auth=is_no_auth,
            idempotent_key=idempotent_key,
            response_factory=response_factory,
        ))
        return response.decoded

    async def who_am_i(self) -> WhoAmI:
        """Identity and permissions behind the current credentials."""
        return await self.request("GET", "who", response_factory=WhoAmI.from_dict)

    async def service_request(
        self,
        service_name: str,
        data: Mapping[str, Any],
        is_async: bool = False,
        timeout: float | None = None,
    ) -> Any:
        """Call a service extension: POST service/{oid}/{name} with base64 JSON payload."""
        self._require_oid()
        payload = base64.b64encode(dumps_json(dict(data)).encode("utf-8")).decode("ascii")
        return await self.request(
            "POST",
            f"service/{self.oid}/{service_name}",
            form={"request_data": payload, "is_async": is_async},
            timeout=timeout,
        )

    def _require_oid(self) -> str:
        if not self.oid:
            raise InvalidOptionsError("this operation requires an OID", field="oid")
        return self.oid

    async def get_stats(self) -> dict:
        """Snapshot of client state, without secrets."""
        return {
            "api_root": self.config.api_root,
            "oid": self.oid,
            "uid": self.uid,
            "session_state": self.session.state.value,
            "has_token": self.session.state != SessionState.UNAUTHENTICATED,
            "token_refreshes": self.session.refresh_count,
        }
