# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
LimaCharlie Python SDK - async client core.

Components:
- Credential resolution (explicit options, LC_* variables, ~/.limacharlie)
- Session with coalesced JWT refresh
- Request executor with retries and one-shot 401 re-authentication
- Spout: live WebSocket stream with bounded buffering
- Firehose: TLS listener receiving pushed data
- Sync: declarative org config push/fetch, including hives

Usage:
    from limacharlie import Client, ClientOptions, SyncOptions, load_org_config, push

    async with Client(ClientOptions(environment="prod")) as client:
        who = await client.who_am_i()
        ops = await push(client, load_org_config("org.yaml"), SyncOptions(dr_rules=True))
"""

__version__ = "0.1.0"

from .client import (
    BodyEncoding,
    Client,
    ClientConfig,
    Request,
    Response,
    WhoAmI,
    compose_url,
    encode_form,
)
from .errors import (
    DecodeError,
    InvalidOptionsError,
    LimaCharlieError,
    NetworkError,
    NoAPIKeyError,
    OperationCancelledError,
    ResourceNotFoundError,
    RESTError,
    SyncError,
    UnauthorizedError,
)
from .firehose import (
    Firehose,
    FirehoseMessage,
    FirehoseOptions,
    FirehoseOutputOptions,
    generate_self_signed_cert,
)
from .hive_sync import HiveSyncOptions, hive_fetch, hive_push
from .options import DEFAULT_CONFIG_PATH, ClientOptions, load_config_file, resolve_options
from .serialization import canonical_json, dumps_yaml, loads_json, loads_yaml, normalize
from .session import Session, SessionState
from .spout import STREAM_KINDS, FutureResults, Spout, SpoutMetrics
from .sync import OrgConfig, SyncOptions, fetch, load_org_config, push, push_from_files
from .types import SyncOperation

__all__ = [
    # Options
    "ClientOptions",
    "resolve_options",
    "load_config_file",
    "DEFAULT_CONFIG_PATH",
    # Serialization
    "normalize",
    "loads_json",
    "loads_yaml",
    "canonical_json",
    "dumps_yaml",
    # Session
    "Session",
    "SessionState",
    # Client
    "Client",
    "ClientConfig",
    "Request",
    "Response",
    "BodyEncoding",
    "WhoAmI",
    "compose_url",
    "encode_form",
    # Stream
    "Spout",
    "SpoutMetrics",
    "FutureResults",
    "STREAM_KINDS",
    # Firehose
    "Firehose",
    "FirehoseOptions",
    "FirehoseOutputOptions",
    "FirehoseMessage",
    "generate_self_signed_cert",
    # Sync
    "OrgConfig",
    "SyncOptions",
    "SyncOperation",
    "push",
    "fetch",
    "push_from_files",
    "load_org_config",
    "HiveSyncOptions",
    "hive_push",
    "hive_fetch",
    # Errors
    "LimaCharlieError",
    "InvalidOptionsError",
    "NoAPIKeyError",
    "NetworkError",
    "RESTError",
    "UnauthorizedError",
    "ResourceNotFoundError",
    "DecodeError",
    "OperationCancelledError",
    "SyncError",
]
