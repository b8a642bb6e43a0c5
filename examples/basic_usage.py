#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Basic LimaCharlie SDK Usage Example

Demonstrates:
- Credential resolution from ~/.limacharlie or LC_* variables
- Permission check with who_am_i
- Listing and adding a D&R rule with a relative TTL
- Raw requests through the executor
"""

import asyncio
import logging

from limacharlie import Client, ClientOptions, RESTError
from limacharlie.rules import dr_rule_add, dr_rule_delete, dr_rules

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


async def main():
    # Uses LC_OID / LC_API_KEY or the default environment of ~/.limacharlie
    async with Client(ClientOptions()) as client:

        logger.info("=== Example 1: Who am I ===")
        who = await client.who_am_i()
        logger.info(f"Identity: {who.ident}, {len(who.perms)} permissions")
        if not who.has_permission_for_org(client.oid, "dr.list"):
            logger.warning("Missing dr.list, stopping here")
            return

        logger.info("=== Example 2: List rules ===")
        for name, rule in (await dr_rules(client)).items():
            logger.info(f"  {rule.namespace}/{name} enabled={rule.is_enabled}")

        logger.info("=== Example 3: Temporary rule ===")
        await dr_rule_add(
            client,
            "sdk-example",
            detect={"event": "NEW_PROCESS", "op": "ends with", "path": "event/FILE_PATH", "value": "evil.exe"},
            respond=[{"action": "report", "name": "sdk-example"}],
            is_replace=True,
            ttl_seconds=3600,
        )
        await dr_rule_delete(client, "sdk-example")

        logger.info("=== Example 4: Raw request ===")
        try:
            sensors = await client.request("GET", f"sensors/{client.oid}", query_params={"limit": 5})
            logger.info(f"Sensors page: {list((sensors or {}).keys())}")
        except RESTError as e:
            logger.warning(f"Request failed: {e}")

        logger.info(f"Client stats: {await client.get_stats()}")


if __name__ == "__main__":
    asyncio.run(main())
