# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Network policies.

These live under the API root without the version prefix
(`{api_root}/net/policy?oid=...`), so every call sets a root override
ending in "/".
"""

from typing import Any

from .client import Client
from .types import NetPolicy


def _root(client: Client) -> str:
    return client.config.api_root.rstrip("/") + "/"


async def net_policies(client: Client) -> dict[str, NetPolicy]:
    oid = client._require_oid()
    resp = await client.request("GET", "net/policy", query_params={"oid": oid}, root_override=_root(client))
    policies = (resp or {}).get("policies") or {}
    return {name: NetPolicy.from_dict(data or {}, name) for name, data in policies.items()}


async def net_policy_add(client: Client, policy: NetPolicy) -> Any:
    oid = client._require_oid()
    form = {
        "name": policy.name,
        "type": policy.type,
        "policy": policy.policy,
        "expires_on": policy.expires_on,
    }
    return await client.request(
        "POST", "net/policy", query_params={"oid": oid}, form=form, root_override=_root(client)
    )


async def net_policy_delete(client: Client, name: str) -> Any:
    oid = client._require_oid()
    return await client.request(
        "DELETE", "net/policy", query_params={"oid": oid, "name": name}, root_override=_root(client)
    )
