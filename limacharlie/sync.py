# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Sync - reconcile a declarative organization config with the cloud.

Sections are processed in a fixed order so that dependencies exist
before the objects using them:

    resources, dr-rules, fp-rules, outputs, integrity, artifact,
    exfil, net-policy, hives

Within a section desired items are handled first: present and equal
items are reported as-is, anything else is (re)written and reported as
added. With `force`, remote items missing from the config are removed.
With `dry_run`, the same operations are reported but nothing is written.

Config files are YAML:

    version: 3
    include:
      - common/outputs.yaml
    rules:
      suspicious-exec:
        namespace: general
        detect: {...}
        respond: [...]
    outputs:
      siem:
        module: syslog
        type: detect
        dest_host: siem.example.com:6514

Usage:
    options = SyncOptions(dr_rules=True, outputs=True, force=True)
    for op in await push_from_files(client, "org.yaml", options):
        print(op)
"""

import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from .client import Client
from .errors import (
    DecodeError,
    InvalidOptionsError,
    LimaCharlieError,
    RESTError,
    SyncError,
    is_inaccessible,
)
from .hive_sync import HiveSyncOptions, hive_fetch, hive_push
from .net_policies import net_policies, net_policy_add, net_policy_delete
from .outputs import output_add, output_delete, outputs
from .resources import resource_subscribe, resource_unsubscribe, resources
from .rules import dr_rule_add, dr_rule_delete, dr_rules, fp_rule_add, fp_rule_delete, fp_rules
from .serialization import dumps_yaml, loads_yaml
from .service_rules import (
    artifact_rule_add,
    artifact_rule_delete,
    artifact_rules,
    exfil_event_rule_add,
    exfil_event_rule_delete,
    exfil_rules,
    exfil_watch_add,
    exfil_watch_delete,
    integrity_rule_add,
    integrity_rule_delete,
    integrity_rules,
)
from .types import (
    ArtifactRule,
    DRRule,
    ExfilRules,
    FPRule,
    HiveRecord,
    IntegrityRule,
    NetPolicy,
    OutputConfig,
    SyncOperation,
)

logger = logging.getLogger(__name__)

CURRENT_VERSION = 3

# Section names, in processing order
SECTIONS = (
    "resources",
    "dr-rules",
    "fp-rules",
    "outputs",
    "integrity",
    "artifact",
    "exfil",
    "net-policy",
    "hives",
)

# D&R namespace -> permission needed to list it
NAMESPACE_PERMISSIONS = (
    ("general", "dr.list"),
    ("managed", "dr.list.managed"),
    ("replicant", "dr.list.replicant"),
)
RESERVED_RULE_PREFIX = "__"

IncludeLoader = Callable[[str, str], bytes]


def local_file_include_loader(parent: str, path: str) -> bytes:
    """Read `path`, relative to the including file's directory (or the CWD)."""
    if not os.path.isabs(path):
        base = os.path.dirname(os.path.abspath(parent)) if parent else os.getcwd()
        path = os.path.join(base, path)
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise InvalidOptionsError(f"cannot read config {path}: {e.strerror or e}", field="include") from e


@dataclass
class SyncOptions:
    """What to synchronize and how."""
    force: bool = False
    dry_run: bool = False
    ignore_inaccessible: bool = False

    resources: bool = False
    dr_rules: bool = False
    fp_rules: bool = False
    outputs: bool = False
    integrity: bool = False
    artifacts: bool = False
    exfil: bool = False
    net_policies: bool = False
    hives: bool = False

    # Hives to fetch; a push uses the hives named in the config
    hive_names: list[str] = field(default_factory=list)
    include_loader: IncludeLoader | None = None

    @classmethod
    def all_sections(cls, **kwargs) -> "SyncOptions":
        sections = dict(
            resources=True, dr_rules=True, fp_rules=True, outputs=True, integrity=True,
            artifacts=True, exfil=True, net_policies=True, hives=True,
        )
        sections.update(kwargs)
        return cls(**sections)

    def validate(self) -> "SyncOptions":
        if not any((
            self.resources, self.dr_rules, self.fp_rules, self.outputs, self.integrity,
            self.artifacts, self.exfil, self.net_policies, self.hives,
        )):
            raise InvalidOptionsError("no section selected for sync", field="sections")
        return self


# =============================================================================
# Config model
# =============================================================================

def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError("expected a mapping", f"$.{key}")
    return value


@dataclass
class OrgConfig:
    """Desired (or fetched) state of an organization."""
    version: int = CURRENT_VERSION
    includes: list[str] = field(default_factory=list)
    resources: dict[str, list[str]] = field(default_factory=dict)
    dr_rules: dict[str, DRRule] = field(default_factory=dict)
    fp_rules: dict[str, FPRule] = field(default_factory=dict)
    outputs: dict[str, OutputConfig] = field(default_factory=dict)
    integrity: dict[str, IntegrityRule] = field(default_factory=dict)
    artifacts: dict[str, ArtifactRule] = field(default_factory=dict)
    exfil: ExfilRules = field(default_factory=ExfilRules)
    net_policies: dict[str, NetPolicy] = field(default_factory=dict)
    hives: dict[str, dict[str, HiveRecord]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict | None, source: str = "") -> "OrgConfig":
        data = data or {}
        if not isinstance(data, dict):
            raise DecodeError("config is not a mapping")

        version = data.get("version")
        if not isinstance(version, int) or isinstance(version, bool) or version <= 0:
            raise InvalidOptionsError(f"invalid version found ({source}): {version}", field="version")
        if version > CURRENT_VERSION:
            raise InvalidOptionsError(f"version not supported ({source}): {version}", field="version")

        includes = data.get("include") or []
        if isinstance(includes, str):
            includes = [includes]

        return cls(
            version=version,
            includes=[str(i) for i in includes],
            resources={cat: list(names or []) for cat, names in _section(data, "resources").items()},
            dr_rules={k: DRRule.from_dict(v or {}, k) for k, v in _section(data, "rules").items()},
            fp_rules={k: FPRule.from_dict(v or {}, k) for k, v in _section(data, "fps").items()},
            outputs={k: OutputConfig.from_dict(v or {}, k) for k, v in _section(data, "outputs").items()},
            integrity={k: IntegrityRule.from_dict(v or {}, k) for k, v in _section(data, "integrity").items()},
            artifacts={k: ArtifactRule.from_dict(v or {}, k) for k, v in _section(data, "artifact").items()},
            exfil=ExfilRules.from_dict(_section(data, "exfil")),
            net_policies={k: NetPolicy.from_dict(v or {}, k) for k, v in _section(data, "net-policy").items()},
            hives={
                hive: {key: HiveRecord.from_dict(rec) for key, rec in (records or {}).items()}
                for hive, records in _section(data, "hives").items()
            },
        )

    def to_dict(self) -> dict:
        """YAML-ready mapping; empty sections are left out."""
        out: dict[str, Any] = {"version": self.version}
        if self.includes:
            out["include"] = self.includes
        if self.resources:
            out["resources"] = self.resources
        if self.dr_rules:
            out["rules"] = {k: v.to_dict() for k, v in self.dr_rules.items()}
        if self.fp_rules:
            out["fps"] = {k: v.to_dict() for k, v in self.fp_rules.items()}
        if self.outputs:
            out["outputs"] = {k: _without_name(v.to_dict()) for k, v in self.outputs.items()}
        if self.integrity:
            out["integrity"] = {k: v.to_dict() for k, v in self.integrity.items()}
        if self.artifacts:
            out["artifact"] = {k: v.to_dict() for k, v in self.artifacts.items()}
        exfil = self.exfil.to_dict()
        if exfil:
            out["exfil"] = exfil
        if self.net_policies:
            out["net-policy"] = {k: _without_name(v.to_dict()) for k, v in self.net_policies.items()}
        if self.hives:
            out["hives"] = {
                hive: {key: rec.to_dict() for key, rec in records.items()}
                for hive, records in self.hives.items()
            }
        return out

    def to_yaml(self) -> str:
        return dumps_yaml(self.to_dict())

    def merge(self, other: "OrgConfig") -> "OrgConfig":
        """New config with `other` layered on top; resource lists are unioned."""
        merged_resources = {cat: list(names) for cat, names in self.resources.items()}
        for cat, names in other.resources.items():
            current = merged_resources.setdefault(cat, [])
            current.extend(n for n in names if n not in current)

        hives = {hive: dict(records) for hive, records in self.hives.items()}
        for hive, records in other.hives.items():
            hives.setdefault(hive, {}).update(records)

        return OrgConfig(
            version=max(self.version, other.version),
            includes=list(self.includes),
            resources=merged_resources,
            dr_rules={**self.dr_rules, **other.dr_rules},
            fp_rules={**self.fp_rules, **other.fp_rules},
            outputs={**self.outputs, **other.outputs},
            integrity={**self.integrity, **other.integrity},
            artifacts={**self.artifacts, **other.artifacts},
            exfil=self.exfil.merge(other.exfil),
            net_policies={**self.net_policies, **other.net_policies},
            hives=hives,
        )


def _without_name(data: dict) -> dict:
    data.pop("name", None)
    return data


def loads_org_config(text: bytes | str, source: str = "") -> OrgConfig:
    return OrgConfig.from_dict(loads_yaml(text), source)


def load_org_config(path: str, include_loader: IncludeLoader | None = None) -> OrgConfig:
    """
    Load a config file and everything it includes.

    Included files are merged in order on top of the including file, and
    may include further files. Relative include paths are resolved by the
    loader, by default against the including file's directory.
    """
    loader = include_loader or local_file_include_loader
    return _load_effective(loader, "", path, ())


def _load_effective(loader: IncludeLoader, parent: str, path: str, chain: tuple[str, ...]) -> OrgConfig:
    resolved = path
    if loader is local_file_include_loader and not os.path.isabs(path):
        # Nested includes resolve against this file, wherever it lives.
        base = os.path.dirname(os.path.abspath(parent)) if parent else os.getcwd()
        resolved = os.path.normpath(os.path.join(base, path))
    if resolved in chain:
        raise InvalidOptionsError(f"include cycle: {' -> '.join(chain + (resolved,))}", field="include")

    config = loads_org_config(loader(parent, path), path)
    for include in config.includes:
        config = config.merge(_load_effective(loader, resolved, include, chain + (resolved,)))
    return config


# =============================================================================
# Push
# =============================================================================

async def _fetch(section: str, fetch: Callable[[], Awaitable[Any]], options: SyncOptions, ops: list) -> Any:
    """Existing state of a section, or None when skipped as inaccessible."""
    try:
        return await fetch()
    except LimaCharlieError as e:
        if options.ignore_inaccessible and is_inaccessible(e):
            logger.warning(f"Skipping inaccessible section {section}: {e}")
            return None
        raise SyncError(section, str(e), ops) from e


async def _apply(section: str, op: SyncOperation, write: Callable[[], Awaitable[Any]], ops: list) -> None:
    try:
        await write()
    except LimaCharlieError as e:
        raise SyncError(section, f"{op.element_type} {op.element_name}: {e}", ops) from e
    logger.info(str(op))


async def _push_section(
    section: str,
    element_type: str,
    desired: Mapping[str, Any],
    existing: Mapping[str, Any],
    add: Callable[[str, Any], Awaitable[Any]],
    remove: Callable[[str], Awaitable[Any]],
    options: SyncOptions,
    ops: list[SyncOperation],
) -> None:
    for name, item in desired.items():
        op = SyncOperation(element_type, name)
        current = existing.get(name)
        if current is not None and current.content_key() == item.content_key():
            ops.append(op)
            continue
        op.is_added = True
        if not options.dry_run:
            await _apply(section, op, lambda: add(name, item), ops)
        ops.append(op)

    if not options.force:
        return

    for name in existing:
        if name in desired:
            continue
        op = SyncOperation(element_type, name, is_removed=True)
        if not options.dry_run:
            await _apply(section, op, lambda: remove(name), ops)
        ops.append(op)


async def _push_resources(client: Client, config: OrgConfig, options: SyncOptions, ops: list) -> None:
    section = "resources"
    existing = await _fetch(section, lambda: resources(client), options, ops)
    if existing is None:
        return

    for category, names in config.resources.items():
        current = set(existing.get(category) or [])
        for name in names:
            op = SyncOperation("resource", f"{category}/{name}")
            if name not in current:
                op.is_added = True
                if not options.dry_run:
                    await _apply(section, op, lambda: resource_subscribe(client, category, name), ops)
            ops.append(op)

    if not options.force:
        return

    # Only categories the config mentions are managed.
    for category, names in config.resources.items():
        for name in existing.get(category) or []:
            if name in names:
                continue
            op = SyncOperation("resource", f"{category}/{name}", is_removed=True)
            if not options.dry_run:
                await _apply(section, op, lambda: resource_unsubscribe(client, category, name), ops)
            ops.append(op)


async def accessible_namespaces(client: Client) -> list[str]:
    """D&R namespaces the current credentials may list."""
    oid = client._require_oid()
    who = await client.who_am_i()
    return [ns for ns, perm in NAMESPACE_PERMISSIONS if who.has_permission_for_org(oid, perm)]


async def fetch_dr_rules(client: Client) -> dict[str, DRRule]:
    """Rules of every accessible namespace, reserved names excluded."""
    namespaces = await accessible_namespaces(client)
    if not namespaces:
        raise RESTError(403, "no accessible D&R namespace", "GET", f"rules/{client.oid}")
    out = {}
    for namespace in namespaces:
        for name, rule in (await dr_rules(client, namespace)).items():
            if not name.startswith(RESERVED_RULE_PREFIX):
                out[name] = rule
    return out


async def _push_dr_rules(client: Client, config: OrgConfig, options: SyncOptions, ops: list) -> None:
    section = "dr-rules"
    existing = await _fetch(section, lambda: fetch_dr_rules(client), options, ops)
    if existing is None:
        return

    for name, rule in config.dr_rules.items():
        op = SyncOperation("dr-rule", name)
        current = existing.get(name)
        if current is not None and current.content_equals(rule):
            ops.append(op)
            continue
        op.is_added = True
        if options.dry_run:
            ops.append(op)
            continue
        if current is not None and not current.is_same_namespace(rule):
            await _apply(section, op, lambda: dr_rule_delete(client, name, current.namespace), ops)
        await _apply(section, op, lambda: dr_rule_add(
            client,
            name,
            rule.detect,
            rule.respond,
            namespace=rule.namespace,
            is_replace=True,
            is_enabled=rule.is_enabled,
            expires_at=rule.expire_on,
        ), ops)
        ops.append(op)

    if not options.force:
        return

    for name, current in existing.items():
        if name in config.dr_rules:
            continue
        op = SyncOperation("dr-rule", name, is_removed=True)
        if not options.dry_run:
            await _apply(section, op, lambda: dr_rule_delete(client, name, current.namespace), ops)
        ops.append(op)


async def _push_exfil(client: Client, config: OrgConfig, options: SyncOptions, ops: list) -> None:
    section = "exfil"
    existing = await _fetch(section, lambda: exfil_rules(client), options, ops)
    if existing is None:
        return
    await _push_section(
        section, "exfil-watch", config.exfil.watches, existing.watches,
        lambda name, rule: exfil_watch_add(client, replace(rule, name=name)),
        lambda name: exfil_watch_delete(client, name),
        options, ops,
    )
    await _push_section(
        section, "exfil-list", config.exfil.events, existing.events,
        lambda name, rule: exfil_event_rule_add(client, replace(rule, name=name)),
        lambda name: exfil_event_rule_delete(client, name),
        options, ops,
    )


async def push(client: Client, config: OrgConfig, options: SyncOptions) -> list[SyncOperation]:
    """
    Apply `config` to the organization.

    Returns:
        Every operation, in processing order

    Raises:
        InvalidOptionsError: no section selected
        SyncError: a fetch or write failed; `operations` holds partial progress
    """
    options.validate()
    oid = client._require_oid()
    ops: list[SyncOperation] = []

    if options.resources:
        await _push_resources(client, config, options, ops)

    if options.dr_rules:
        await _push_dr_rules(client, config, options, ops)

    if options.fp_rules:
        existing = await _fetch("fp-rules", lambda: fp_rules(client), options, ops)
        if existing is not None:
            await _push_section(
                "fp-rules", "fp-rule", config.fp_rules, existing,
                lambda name, rule: fp_rule_add(client, name, rule.data, is_replace=True),
                lambda name: fp_rule_delete(client, name),
                options, ops,
            )

    if options.outputs:
        existing = await _fetch("outputs", lambda: outputs(client), options, ops)
        if existing is not None:
            await _push_section(
                "outputs", "output", config.outputs, existing,
                lambda name, output: output_add(client, replace(output, name=name)),
                lambda name: output_delete(client, name),
                options, ops,
            )

    if options.integrity:
        existing = await _fetch("integrity", lambda: integrity_rules(client), options, ops)
        if existing is not None:
            await _push_section(
                "integrity", "integrity", config.integrity, existing,
                lambda name, rule: integrity_rule_add(client, replace(rule, name=name)),
                lambda name: integrity_rule_delete(client, name),
                options, ops,
            )

    if options.artifacts:
        existing = await _fetch("artifact", lambda: artifact_rules(client), options, ops)
        if existing is not None:
            await _push_section(
                "artifact", "artifact", config.artifacts, existing,
                lambda name, rule: artifact_rule_add(client, replace(rule, name=name)),
                lambda name: artifact_rule_delete(client, name),
                options, ops,
            )

    if options.exfil:
        await _push_exfil(client, config, options, ops)

    if options.net_policies:
        existing = await _fetch("net-policy", lambda: net_policies(client), options, ops)
        if existing is not None:
            desired = {
                name: replace(policy, name=name, oid=policy.oid or oid)
                for name, policy in config.net_policies.items()
            }
            await _push_section(
                "net-policy", "net-policy", desired, existing,
                lambda name, policy: net_policy_add(client, policy),
                lambda name: net_policy_delete(client, name),
                options, ops,
            )

    if options.hives:
        await hive_push(
            client,
            config.hives,
            HiveSyncOptions(
                force=options.force,
                dry_run=options.dry_run,
                ignore_inaccessible=options.ignore_inaccessible,
            ),
            operations=ops,
        )

    return ops


async def push_from_files(client: Client, path: str, options: SyncOptions) -> list[SyncOperation]:
    """Load `path` with its includes, then push it."""
    config = load_org_config(path, options.include_loader)
    return await push(client, config, options)


# =============================================================================
# Fetch
# =============================================================================

async def fetch(client: Client, options: SyncOptions) -> OrgConfig:
    """
    Current state of the selected sections, shaped like a config file so
    it can be pushed back unchanged.
    """
    options.validate()
    config = OrgConfig()
    ops: list[SyncOperation] = []

    if options.resources:
        config.resources = await _fetch("resources", lambda: resources(client), options, ops) or {}

    if options.dr_rules:
        rules = await _fetch("dr-rules", lambda: fetch_dr_rules(client), options, ops) or {}
        for rule in rules.values():
            rule.expire_on = None
        config.dr_rules = rules

    if options.fp_rules:
        config.fp_rules = await _fetch("fp-rules", lambda: fp_rules(client), options, ops) or {}

    if options.outputs:
        config.outputs = await _fetch("outputs", lambda: outputs(client), options, ops) or {}

    if options.integrity:
        config.integrity = await _fetch("integrity", lambda: integrity_rules(client), options, ops) or {}

    if options.artifacts:
        config.artifacts = await _fetch("artifact", lambda: artifact_rules(client), options, ops) or {}

    if options.exfil:
        config.exfil = await _fetch("exfil", lambda: exfil_rules(client), options, ops) or ExfilRules()

    if options.net_policies:
        policies = await _fetch("net-policy", lambda: net_policies(client), options, ops) or {}
        # Organization and author are implied by where the config is pushed.
        config.net_policies = {
            name: replace(policy, oid="", created_by="") for name, policy in policies.items()
        }

    if options.hives and options.hive_names:
        config.hives = await _fetch("hives", lambda: hive_fetch(client, options.hive_names), options, ops) or {}

    return config
