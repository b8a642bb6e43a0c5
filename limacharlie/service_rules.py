# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Rules managed through service extensions rather than dedicated endpoints.

- integrity: file and registry integrity monitoring
- exfil: which events sensors send, plus value watches
- logging: artifact collection

Every call is a `Client.service_request` carrying an "action" field.
"""

from typing import Any

from .client import Client
from .types import ArtifactRule, ExfilEventRule, ExfilRules, ExfilWatchRule, IntegrityRule

INTEGRITY_SERVICE = "integrity"
EXFIL_SERVICE = "exfil"
ARTIFACT_SERVICE = "logging"


# =============================================================================
# Integrity
# =============================================================================

async def integrity_rules(client: Client) -> dict[str, IntegrityRule]:
    resp = await client.service_request(INTEGRITY_SERVICE, {"action": "list_rules"})
    return {name: IntegrityRule.from_dict(data or {}, name) for name, data in (resp or {}).items()}


async def integrity_rule_add(client: Client, rule: IntegrityRule) -> Any:
    return await client.service_request(INTEGRITY_SERVICE, {
        "action": "add_rule",
        "name": rule.name,
        "patterns": rule.patterns,
        "tags": rule.tags,
        "platforms": rule.platforms,
    })


async def integrity_rule_delete(client: Client, name: str) -> Any:
    return await client.service_request(INTEGRITY_SERVICE, {"action": "remove_rule", "name": name})


# =============================================================================
# Exfil
# =============================================================================

async def exfil_rules(client: Client) -> ExfilRules:
    resp = await client.service_request(EXFIL_SERVICE, {"action": "list_rules"})
    return ExfilRules.from_dict(resp)


async def exfil_event_rule_add(client: Client, rule: ExfilEventRule) -> Any:
    return await client.service_request(EXFIL_SERVICE, {
        "action": "add_event_rule",
        "name": rule.name,
        "events": rule.events,
        "tags": rule.tags,
        "platforms": rule.platforms,
    })


async def exfil_event_rule_delete(client: Client, name: str) -> Any:
    return await client.service_request(EXFIL_SERVICE, {"action": "remove_event_rule", "name": name})


async def exfil_watch_add(client: Client, rule: ExfilWatchRule) -> Any:
    return await client.service_request(EXFIL_SERVICE, {
        "action": "add_watch",
        "name": rule.name,
        "operator": rule.operator,
        "event": rule.event,
        "value": rule.value,
        "path": rule.path,
        "tags": rule.tags,
        "platforms": rule.platforms,
    })


async def exfil_watch_delete(client: Client, name: str) -> Any:
    return await client.service_request(EXFIL_SERVICE, {"action": "remove_watch", "name": name})


# =============================================================================
# Artifacts
# =============================================================================

async def artifact_rules(client: Client) -> dict[str, ArtifactRule]:
    resp = await client.service_request(ARTIFACT_SERVICE, {"action": "list_rules"})
    return {name: ArtifactRule.from_dict(data or {}, name) for name, data in (resp or {}).items()}


async def artifact_rule_add(client: Client, rule: ArtifactRule) -> Any:
    return await client.service_request(ARTIFACT_SERVICE, {
        "action": "add_rule",
        "name": rule.name,
        "patterns": rule.patterns,
        "is_delete_after": rule.is_delete_after,
        "is_ignore_cert": rule.is_ignore_cert,
        "days_retention": rule.days_retention,
        "tags": rule.tags,
        "platforms": rule.platforms,
    })


async def artifact_rule_delete(client: Client, name: str) -> Any:
    return await client.service_request(ARTIFACT_SERVICE, {"action": "remove_rule", "name": name})
