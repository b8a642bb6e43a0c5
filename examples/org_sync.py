#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Org Sync Example - keep an organization in line with a YAML file.

Demonstrates:
- Fetching the current config as YAML
- Dry-run push to preview changes
- Forced push removing what the file does not list
- Partial progress on SyncError
"""

import asyncio
import logging
import sys

from limacharlie import Client, ClientOptions, SyncError, SyncOptions, fetch, push_from_files

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


async def main(path: str):
    async with Client(ClientOptions()) as client:
        current = await fetch(client, SyncOptions(dr_rules=True, outputs=True))
        logger.info(f"Current config:\n{current.to_yaml()}")

        options = SyncOptions(dr_rules=True, outputs=True, force=True, dry_run=True)
        changes = [op for op in await push_from_files(client, path, options) if not op.is_present]
        for op in changes:
            logger.info(f"Would apply: {op}")
        if not changes:
            logger.info("Nothing to do")
            return

        options.dry_run = False
        try:
            await push_from_files(client, path, options)
        except SyncError as e:
            logger.error(f"Sync stopped in {e.section} after {len(e.operations)} operations: {e}")
            raise


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "org.yaml"))
