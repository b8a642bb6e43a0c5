# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""Output endpoints: where the organization's data gets forwarded."""

import logging
from typing import Any

from .client import Client
from .errors import ResourceNotFoundError
from .types import OutputConfig

logger = logging.getLogger(__name__)


async def outputs(client: Client) -> dict[str, OutputConfig]:
    """
    Outputs of the organization keyed by name.

    Raises:
        ResourceNotFoundError: the response has no section for this org
    """
    oid = client._require_oid()
    resp = await client.request("GET", f"outputs/{oid}")
    if not isinstance(resp, dict) or oid not in resp:
        raise ResourceNotFoundError(404, "no outputs section for organization", "GET", f"outputs/{oid}")
    section = resp[oid] or {}
    return {name: OutputConfig.from_dict(cfg or {}, name) for name, cfg in section.items()}


async def output_add(client: Client, output: OutputConfig) -> Any:
    oid = client._require_oid()
    logger.info(f"Adding output {output.name} ({output.module}/{output.type})")
    return await client.request("POST", f"outputs/{oid}", form=output.to_dict())


async def output_delete(client: Client, name: str) -> Any:
    oid = client._require_oid()
    logger.info(f"Deleting output {name}")
    return await client.request("DELETE", f"outputs/{oid}", form={"name": name})
