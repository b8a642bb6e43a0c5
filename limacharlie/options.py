# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Credential resolution.

Each field is taken from the first source that provides it:

1. explicit ClientOptions passed by the caller
2. environment variables LC_OID, LC_UID, LC_API_KEY, LC_CURRENT_ENV
3. the selected environment section of the config file
4. the top-level (default) entries of the config file

The config file is YAML, found through LC_CREDS_FILE or at ~/.limacharlie:

    oid: 00000000-0000-0000-0000-000000000001
    api_key: 00000000-0000-0000-0000-00000000000a
    env:
      staging:
        oid: 00000000-0000-0000-0000-000000000002
        uid: 00000000-0000-0000-0000-000000000003
        api_key: 00000000-0000-0000-0000-00000000000b

Usage:
    opts = resolve_options(ClientOptions(environment="staging"))
    async with Client(opts) as client:
        ...
"""

import logging
import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace

from .errors import DecodeError, InvalidOptionsError
from .serialization import loads_yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.limacharlie"
DEFAULT_ENVIRONMENT = "default"

ENV_OID = "LC_OID"
ENV_UID = "LC_UID"
ENV_API_KEY = "LC_API_KEY"
ENV_CURRENT_ENV = "LC_CURRENT_ENV"
ENV_CREDS_FILE = "LC_CREDS_FILE"

_CREDENTIAL_FIELDS = ("oid", "uid", "api_key")


@dataclass
class ClientOptions:
    """Credentials and token preferences for one client."""
    oid: str | None = None
    uid: str | None = None
    api_key: str | None = None
    environment: str | None = None

    # Token supplied by the caller instead of (or in addition to) an API key
    jwt: str | None = None
    # Restrict the minted token to these permissions
    permissions: list[str] = field(default_factory=list)
    # Requested token lifetime in seconds, None lets the server decide
    expiry_seconds: int | None = None

    def validate(self) -> "ClientOptions":
        """Check identifier syntax; returns self so calls can be chained."""
        if not self.oid and not self.uid:
            raise InvalidOptionsError("OID or UID required", field="oid")
        for name in _CREDENTIAL_FIELDS:
            value = getattr(self, name)
            if value and not is_valid_id(value):
                raise InvalidOptionsError(f"invalid {name}: not a valid identifier", field=name)
        if self.expiry_seconds is not None and self.expiry_seconds <= 0:
            raise InvalidOptionsError("expiry_seconds must be positive", field="expiry_seconds")
        return self

    def is_complete(self) -> bool:
        """True when nothing further could be gained from the config file."""
        return bool((self.oid or self.uid) and (self.api_key or self.jwt))

    def __repr__(self) -> str:
        # Secrets stay out of logs and tracebacks.
        return (
            f"ClientOptions(oid={self.oid!r}, uid={self.uid!r}, "
            f"api_key={'***' if self.api_key else None}, environment={self.environment!r})"
        )


def is_valid_id(value: str) -> bool:
    """True for the canonical text form of a 128-bit identifier."""
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def config_file_path(environ: Mapping[str, str] | None = None) -> str:
    """Location of the credentials file, with ~ expanded."""
    environ = os.environ if environ is None else environ
    path = environ.get(ENV_CREDS_FILE) or DEFAULT_CONFIG_PATH
    return os.path.expanduser(path)


def load_config_file(path: str, environment: str | None = None) -> ClientOptions:
    """
    Read one environment out of a credentials file.

    An environment of None or "" selects the top-level default entries.
    Values missing from a named environment fall back to the defaults.

    Raises:
        InvalidOptionsError: unreadable file, malformed content or unknown
            environment name
    """
    path = os.path.expanduser(path)
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except OSError as e:
        raise InvalidOptionsError(f"cannot read config file {path}: {e.strerror or e}", field="config") from e

    try:
        content = loads_yaml(raw) or {}
    except DecodeError as e:
        raise InvalidOptionsError(f"malformed config file {path}: {e}", field="config") from e
    if not isinstance(content, dict):
        raise InvalidOptionsError(f"malformed config file {path}: top level is not a mapping", field="config")

    defaults = _entries(content)
    env_name = environment or DEFAULT_ENVIRONMENT
    if env_name == DEFAULT_ENVIRONMENT:
        return ClientOptions(environment=environment, **defaults)

    envs = content.get("env") or {}
    section = envs.get(env_name) if isinstance(envs, dict) else None
    if not isinstance(section, dict):
        raise InvalidOptionsError(f"environment {env_name} not found", field="environment")

    selected = _entries(section)
    merged = {k: selected.get(k) or defaults.get(k) for k in _CREDENTIAL_FIELDS}
    return ClientOptions(environment=environment, **merged)


def _entries(section: dict) -> dict:
    out = {}
    for k in _CREDENTIAL_FIELDS:
        v = section.get(k)
        out[k] = str(v) if v not in (None, "") else None
    return out


def resolve_options(
    explicit: ClientOptions | None = None,
    environ: Mapping[str, str] | None = None,
    config_path: str | None = None,
) -> ClientOptions:
    """
    Merge explicit options, environment variables and the config file.

    Resolution is idempotent: feeding the result back in yields an equal
    ClientOptions.

    Args:
        explicit: Caller-supplied options, highest precedence
        environ: Environment mapping (defaults to os.environ)
        config_path: Credentials file (defaults to LC_CREDS_FILE or ~/.limacharlie)

    Raises:
        InvalidOptionsError: no OID/UID anywhere, malformed identifiers, or a
            config file problem when the file was actually needed
    """
    environ = os.environ if environ is None else environ
    opts = replace(explicit) if explicit is not None else ClientOptions()

    if not opts.environment:
        opts.environment = environ.get(ENV_CURRENT_ENV) or opts.environment
    if not opts.oid:
        opts.oid = environ.get(ENV_OID) or None
    if not opts.uid:
        opts.uid = environ.get(ENV_UID) or None
    if not opts.api_key:
        opts.api_key = environ.get(ENV_API_KEY) or None

    if not opts.is_complete():
        path = config_path or config_file_path(environ)
        try:
            from_file = load_config_file(path, opts.environment)
        except InvalidOptionsError as e:
            # The file only matters when nothing else identified us.
            if e.field == "environment":
                raise
            if not (opts.oid or opts.uid):
                if isinstance(e.__cause__, OSError):
                    raise InvalidOptionsError("OID or UID required", field="oid") from e
                raise
            logger.debug(f"Ignoring credentials file: {e}")
        else:
            for name in _CREDENTIAL_FIELDS:
                if not getattr(opts, name):
                    setattr(opts, name, getattr(from_file, name))

    return opts.validate()
