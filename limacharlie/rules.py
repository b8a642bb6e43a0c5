# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Detection & Response and False Positive rule endpoints.

Usage:
    rules = await dr_rules(client, namespace="managed")
    await dr_rule_add(client, "suspicious-exec", detect, respond, ttl_seconds=3600)
    await dr_rule_delete(client, "suspicious-exec")
"""

import logging
import time
from typing import Any

from .client import Client
from .errors import InvalidOptionsError
from .serialization import dumps_json
from .types import DR_NAMESPACES, DRRule, FPRule

logger = logging.getLogger(__name__)


def rule_expiry(ttl_seconds: int | None = None, expires_at: int | None = None) -> int | None:
    """
    Absolute expiry (epoch seconds) for a rule.

    An explicit `expires_at` wins over the relative `ttl_seconds`.
    """
    if expires_at is not None:
        if expires_at <= 0:
            raise InvalidOptionsError("expires_at must be positive", field="expires_at")
        return int(expires_at)
    if ttl_seconds is not None:
        if ttl_seconds <= 0:
            raise InvalidOptionsError("ttl_seconds must be positive", field="ttl_seconds")
        return int(time.time()) + int(ttl_seconds)
    return None


def _check_namespace(namespace: str | None) -> None:
    if namespace and namespace not in DR_NAMESPACES:
        raise InvalidOptionsError(f"unknown namespace {namespace}", field="namespace")


async def dr_rules(client: Client, namespace: str | None = None) -> dict[str, DRRule]:
    """Rules of one namespace (server default namespace when None), keyed by name."""
    _check_namespace(namespace)
    oid = client._require_oid()
    query = {"namespace": namespace} if namespace else None
    resp = await client.request("GET", f"rules/{oid}", query_params=query)
    rules = {}
    for name, data in (resp or {}).items():
        rule = DRRule.from_dict(data or {}, name)
        if namespace and not (data or {}).get("namespace"):
            rule.namespace = namespace
        rules[name] = rule
    return rules


async def dr_rule_add(
    client: Client,
    name: str,
    detect: dict,
    respond: list,
    namespace: str | None = None,
    is_replace: bool = False,
    is_enabled: bool = True,
    ttl_seconds: int | None = None,
    expires_at: int | None = None,
) -> Any:
    """Create (or with is_replace, overwrite) a D&R rule."""
    _check_namespace(namespace)
    oid = client._require_oid()
    form: dict[str, Any] = {
        "name": name,
        "is_replace": is_replace,
        "detection": dumps_json(detect),
        "response": dumps_json(respond),
        "is_enabled": is_enabled,
        "expire_on": rule_expiry(ttl_seconds, expires_at),
        "namespace": namespace,
    }
    return await client.request("POST", f"rules/{oid}", form=form)


async def dr_rule_delete(client: Client, name: str, namespace: str | None = None) -> Any:
    _check_namespace(namespace)
    oid = client._require_oid()
    return await client.request("DELETE", f"rules/{oid}", form={"name": name, "namespace": namespace})


async def fp_rules(client: Client) -> dict[str, FPRule]:
    """False positive rules keyed by name."""
    oid = client._require_oid()
    resp = await client.request("GET", f"fp/{oid}")
    return {name: FPRule.from_dict(data or {}, name) for name, data in (resp or {}).items()}


async def fp_rule_add(client: Client, name: str, rule: dict, is_replace: bool = False) -> Any:
    oid = client._require_oid()
    form = {"name": name, "is_replace": is_replace, "rule": dumps_json(rule)}
    return await client.request("POST", f"fp/{oid}", form=form)


async def fp_rule_delete(client: Client, name: str) -> Any:
    oid = client._require_oid()
    return await client.request("DELETE", f"fp/{oid}", form={"name": name})
