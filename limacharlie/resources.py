# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""Resource subscriptions (lookups, yara sources, add-ons...) by category."""

from typing import Any

from .client import Client


async def resources(client: Client) -> dict[str, list[str]]:
    """Subscribed resource names grouped by category."""
    oid = client._require_oid()
    resp = await client.request("GET", f"orgs/{oid}/resources")
    section = (resp or {}).get("resources") or {}
    return {category: list(names or []) for category, names in section.items()}


async def resource_subscribe(client: Client, category: str, name: str) -> Any:
    oid = client._require_oid()
    return await client.request(
        "POST", f"orgs/{oid}/resources", form={"res_cat": category, "res_name": name}
    )


async def resource_unsubscribe(client: Client, category: str, name: str) -> Any:
    oid = client._require_oid()
    return await client.request(
        "DELETE", f"orgs/{oid}/resources", form={"res_cat": category, "res_name": name}
    )
