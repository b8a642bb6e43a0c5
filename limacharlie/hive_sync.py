# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Hive synchronization.

Records of each named hive are reconciled in the organization's own
partition. A record counts as unchanged when its content and its
enabled/expiry/tags metadata match; changed records are rewritten and
reported as added.

Usage:
    ops = await hive_push(client, {"lookup": {"bad-domains": record}}, HiveSyncOptions(force=True))
    current = await hive_fetch(client, ["lookup"])
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from .client import Client
from .errors import LimaCharlieError, SyncError, is_inaccessible
from .hive import hive_add, hive_list, hive_remove
from .types import HiveRecord, SyncOperation

logger = logging.getLogger(__name__)

SECTION = "hives"
ELEMENT_TYPE = "hive"


@dataclass
class HiveSyncOptions:
    force: bool = False
    dry_run: bool = False
    ignore_inaccessible: bool = False


def _element_name(hive_name: str, key: str) -> str:
    return f"{hive_name}/{key}"


async def hive_fetch(client: Client, hive_names: list[str]) -> dict[str, dict[str, HiveRecord]]:
    """Current records of each hive, keeping only the synced metadata."""
    partition = client._require_oid()
    out: dict[str, dict[str, HiveRecord]] = {}
    for hive_name in hive_names:
        records = await hive_list(client, hive_name, partition)
        for record in records.values():
            record.sys_mtd = {}
            record.usr_mtd.comment = ""
        out[hive_name] = records
    return out


async def hive_push(
    client: Client,
    desired: Mapping[str, Mapping[str, HiveRecord]],
    options: HiveSyncOptions | None = None,
    operations: list[SyncOperation] | None = None,
) -> list[SyncOperation]:
    """
    Reconcile hive records.

    Args:
        desired: hive name -> key -> record
        operations: list to append to, shared with an enclosing org sync

    Raises:
        SyncError: a fetch or write failed; `operations` holds partial progress
    """
    options = options or HiveSyncOptions()
    ops = operations if operations is not None else []
    partition = client._require_oid()

    for hive_name, records in desired.items():
        try:
            existing = await hive_list(client, hive_name, partition)
        except LimaCharlieError as e:
            if options.ignore_inaccessible and is_inaccessible(e):
                logger.warning(f"Skipping inaccessible hive {hive_name}: {e}")
                continue
            raise SyncError(SECTION, f"{hive_name}: {e}", ops) from e

        for key, record in records.items():
            op = SyncOperation(ELEMENT_TYPE, _element_name(hive_name, key))
            current = existing.get(key)
            if current is not None and current.content_key() == record.content_key():
                ops.append(op)
                continue
            op.is_added = True
            if not options.dry_run:
                try:
                    await hive_add(client, hive_name, partition, key, record.data, record.usr_mtd)
                except LimaCharlieError as e:
                    raise SyncError(SECTION, f"{ELEMENT_TYPE} {op.element_name}: {e}", ops) from e
                logger.info(str(op))
            ops.append(op)

        if not options.force:
            continue

        for key in existing:
            if key in records:
                continue
            op = SyncOperation(ELEMENT_TYPE, _element_name(hive_name, key), is_removed=True)
            if not options.dry_run:
                try:
                    await hive_remove(client, hive_name, partition, key)
                except LimaCharlieError as e:
                    raise SyncError(SECTION, f"{ELEMENT_TYPE} {op.element_name}: {e}", ops) from e
                logger.info(str(op))
            ops.append(op)

    return ops
