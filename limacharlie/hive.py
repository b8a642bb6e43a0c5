# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Hive: keyed record storage partitioned per organization.

Record content is uploaded gzip-compressed and base64 encoded (`gzdata`).
A record written without content only updates its user metadata.

Usage:
    records = await hive_list(client, "dr-general", client.oid)
    await hive_add(client, "lookup", client.oid, "bad-domains", {"lookup_data": {...}})
"""

import base64
import gzip
from typing import Any
from urllib.parse import quote

from .client import Client
from .serialization import dumps_json
from .types import HiveRecord, UsrMtd


def _record_path(hive_name: str, partition: str, key: str) -> str:
    return f"hive/{hive_name}/{partition}/{quote(key, safe='')}"


def encode_record_data(data: dict) -> str:
    """base64(gzip(json(data))), the wire form of record content."""
    return base64.b64encode(gzip.compress(dumps_json(data).encode("utf-8"))).decode("ascii")


async def hive_list(client: Client, hive_name: str, partition: str) -> dict[str, HiveRecord]:
    resp = await client.request("GET", f"hive/{hive_name}/{partition}")
    return {key: HiveRecord.from_dict(data) for key, data in (resp or {}).items()}


async def hive_get(client: Client, hive_name: str, partition: str, key: str) -> HiveRecord:
    resp = await client.request("GET", f"{_record_path(hive_name, partition, key)}/data")
    return HiveRecord.from_dict(resp)


async def hive_add(
    client: Client,
    hive_name: str,
    partition: str,
    key: str,
    data: dict | None = None,
    usr_mtd: UsrMtd | None = None,
    etag: str | None = None,
) -> Any:
    """Create or overwrite a record; with no data only the metadata is set."""
    target = "data" if data is not None else "mtd"
    form: dict[str, Any] = {
        "usr_mtd": (usr_mtd or UsrMtd()).to_dict(),
        "etag": etag,
    }
    if data is not None:
        form["gzdata"] = encode_record_data(data)
    return await client.request("POST", f"{_record_path(hive_name, partition, key)}/{target}", form=form)


async def hive_remove(client: Client, hive_name: str, partition: str, key: str) -> Any:
    return await client.request("DELETE", _record_path(hive_name, partition, key))
