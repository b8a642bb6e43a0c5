# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Typed records for the configuration objects the sync engine manages.

Each record converts from/to the wire or YAML shape (`from_dict` /
`to_dict`) and exposes `content_key()`: the canonical JSON of the fields
that matter for equality, with missing lists normalized to empty lists.
Two records describe the same remote state exactly when their content
keys are equal.

Data model:
- DRRule: detection & response rule, lives in a namespace
- FPRule: false positive rule
- OutputConfig: data output (module + destination settings)
- IntegrityRule / ArtifactRule: service-backed collection rules
- ExfilRules: event list rules, watch rules and performance settings
- NetPolicy: network policy
- HiveRecord: one keyed record of a hive
- SyncOperation: outcome of syncing one element
"""

from dataclasses import dataclass, field
from typing import Any

from .serialization import canonical_json

DEFAULT_NAMESPACE = "general"
DR_NAMESPACES = ("general", "managed", "replicant")


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _filters(data: dict) -> tuple[list[str], list[str]]:
    """Tags and platforms, from either a nested `filters` map or flat keys."""
    filters = data.get("filters")
    source = filters if isinstance(filters, dict) else data
    return _str_list(source.get("tags")), _str_list(source.get("platforms"))


def normalize_namespace(namespace: str | None) -> str:
    return namespace or DEFAULT_NAMESPACE


# =============================================================================
# Detection & Response / False Positive rules
# =============================================================================

@dataclass
class DRRule:
    """Detection & response rule."""
    name: str = ""
    namespace: str = DEFAULT_NAMESPACE
    detect: dict = field(default_factory=dict)
    respond: list = field(default_factory=list)
    is_enabled: bool = True
    expire_on: int | None = None

    @classmethod
    def from_dict(cls, data: dict, name: str = "") -> "DRRule":
        # The API wraps content in "data"; config files use it flat.
        content = data.get("data") if isinstance(data.get("data"), dict) else data
        expire_on = data.get("expire_on")
        return cls(
            name=name or data.get("name") or "",
            namespace=normalize_namespace(data.get("namespace")),
            detect=dict(content.get("detect") or {}),
            respond=list(content.get("respond") or []),
            is_enabled=bool(data.get("is_enabled", True)),
            expire_on=int(expire_on) if expire_on else None,
        )

    def to_dict(self) -> dict:
        out = {"detect": self.detect, "respond": self.respond}
        if self.namespace != DEFAULT_NAMESPACE:
            out["namespace"] = self.namespace
        return out

    def content_key(self) -> str:
        return canonical_json({"detect": self.detect, "respond": self.respond})

    def is_same_namespace(self, other: "DRRule") -> bool:
        return normalize_namespace(self.namespace) == normalize_namespace(other.namespace)

    def content_equals(self, other: "DRRule") -> bool:
        return self.is_same_namespace(other) and self.content_key() == other.content_key()


@dataclass
class FPRule:
    """False positive rule; `data` is its detection logic."""
    name: str = ""
    data: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict, name: str = "") -> "FPRule":
        return cls(name=name or data.get("name") or "", data=dict(data.get("data") or {}))

    def to_dict(self) -> dict:
        return {"data": self.data}

    def content_key(self) -> str:
        return canonical_json(self.data)


# =============================================================================
# Outputs
# =============================================================================

@dataclass
class OutputConfig:
    """
    Data output. Only `name`, `module` and `type` are modelled explicitly;
    every other field (dest_host, is_tls, tag, ...) is kept in `settings`.
    """
    name: str = ""
    module: str = ""
    type: str = ""
    settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict, name: str = "") -> "OutputConfig":
        settings = {}
        for key, value in data.items():
            if key in ("name", "module", "type", "for"):
                continue
            # Empty strings are how the API spells "unset".
            if value is None or value == "":
                continue
            if key.startswith("is_") and isinstance(value, str):
                value = value.strip().lower() == "true"
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                # Form posts turn numbers into text; compare them as text.
                value = str(value)
            settings[key] = value
        return cls(
            name=name or data.get("name") or "",
            module=data.get("module") or "",
            type=data.get("type") or data.get("for") or "",
            settings=settings,
        )

    def to_dict(self) -> dict:
        out = {"name": self.name, "module": self.module, "type": self.type}
        out.update(self.settings)
        return out

    def content_key(self) -> str:
        return canonical_json(self.to_dict())


# =============================================================================
# Service-backed rules
# =============================================================================

@dataclass
class IntegrityRule:
    """File/registry integrity monitoring rule."""
    name: str = ""
    patterns: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    platforms: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict, name: str = "") -> "IntegrityRule":
        tags, platforms = _filters(data)
        return cls(
            name=name or data.get("name") or "",
            patterns=_str_list(data.get("patterns")),
            tags=tags,
            platforms=platforms,
        )

    def to_dict(self) -> dict:
        return {"patterns": self.patterns, "tags": self.tags, "platforms": self.platforms}

    def content_key(self) -> str:
        return canonical_json(self.to_dict())


@dataclass
class ArtifactRule:
    """Artifact (log file) collection rule."""
    name: str = ""
    patterns: list[str] = field(default_factory=list)
    is_ignore_cert: bool = False
    is_delete_after: bool = False
    days_retention: int = 0
    tags: list[str] = field(default_factory=list)
    platforms: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict, name: str = "") -> "ArtifactRule":
        tags, platforms = _filters(data)
        return cls(
            name=name or data.get("name") or "",
            patterns=_str_list(data.get("patterns")),
            is_ignore_cert=bool(data.get("is_ignore_cert", False)),
            is_delete_after=bool(data.get("is_delete_after", False)),
            days_retention=int(data.get("days_retention") or 0),
            tags=tags,
            platforms=platforms,
        )

    def to_dict(self) -> dict:
        return {
            "is_ignore_cert": self.is_ignore_cert,
            "is_delete_after": self.is_delete_after,
            "days_retention": self.days_retention,
            "patterns": self.patterns,
            "tags": self.tags,
            "platforms": self.platforms,
        }

    def content_key(self) -> str:
        return canonical_json(self.to_dict())


@dataclass
class ExfilEventRule:
    """Exfil list rule: which event types sensors send."""
    name: str = ""
    events: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    platforms: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict, name: str = "") -> "ExfilEventRule":
        tags, platforms = _filters(data)
        return cls(
            name=name or data.get("name") or "",
            events=_str_list(data.get("events")),
            tags=tags,
            platforms=platforms,
        )

    def to_dict(self) -> dict:
        return {"events": self.events, "filters": {"tags": self.tags, "platforms": self.platforms}}

    def content_key(self) -> str:
        return canonical_json(self.to_dict())


@dataclass
class ExfilWatchRule:
    """Exfil watch rule: send events whose value at `path` matches."""
    name: str = ""
    event: str = ""
    value: str = ""
    path: list[str] = field(default_factory=list)
    operator: str = ""
    tags: list[str] = field(default_factory=list)
    platforms: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict, name: str = "") -> "ExfilWatchRule":
        tags, platforms = _filters(data)
        return cls(
            name=name or data.get("name") or "",
            event=data.get("event") or "",
            value=str(data.get("value") or ""),
            path=_str_list(data.get("path")),
            operator=data.get("operator") or "",
            tags=tags,
            platforms=platforms,
        )

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "value": self.value,
            "path": self.path,
            "operator": self.operator,
            "filters": {"tags": self.tags, "platforms": self.platforms},
        }

    def content_key(self) -> str:
        return canonical_json(self.to_dict())


@dataclass
class ExfilRules:
    """All exfil settings of an organization, as listed by the service."""
    performance: dict = field(default_factory=dict)
    events: dict[str, ExfilEventRule] = field(default_factory=dict)
    watches: dict[str, ExfilWatchRule] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ExfilRules":
        data = data or {}
        return cls(
            performance=dict(data.get("perf") or {}),
            events={k: ExfilEventRule.from_dict(v or {}, k) for k, v in (data.get("list") or {}).items()},
            watches={k: ExfilWatchRule.from_dict(v or {}, k) for k, v in (data.get("watch") or {}).items()},
        )

    def to_dict(self) -> dict:
        out: dict[str, Any] = {}
        if self.performance:
            out["perf"] = self.performance
        if self.events:
            out["list"] = {k: v.to_dict() for k, v in self.events.items()}
        if self.watches:
            out["watch"] = {k: v.to_dict() for k, v in self.watches.items()}
        return out

    def merge(self, other: "ExfilRules") -> "ExfilRules":
        return ExfilRules(
            performance={**self.performance, **other.performance},
            events={**self.events, **other.events},
            watches={**self.watches, **other.watches},
        )


# =============================================================================
# Net policies
# =============================================================================

@dataclass
class NetPolicy:
    """Network policy (firewall, capture, dns, service...)."""
    name: str = ""
    type: str = ""
    policy: dict = field(default_factory=dict)
    expires_on: int = 0
    oid: str = ""
    created_by: str = ""

    @classmethod
    def from_dict(cls, data: dict, name: str = "") -> "NetPolicy":
        return cls(
            name=name or data.get("name") or "",
            type=data.get("type") or "",
            policy=dict(data.get("policy") or {}),
            expires_on=int(data.get("expires_on") or 0),
            oid=data.get("oid") or "",
            created_by=data.get("created_by") or "",
        )

    def to_dict(self) -> dict:
        out = {"name": self.name, "type": self.type, "policy": self.policy, "expires_on": self.expires_on}
        if self.oid:
            out["oid"] = self.oid
        if self.created_by:
            out["created_by"] = self.created_by
        return out

    def content_key(self) -> str:
        content = self.to_dict()
        content.pop("created_by", None)
        return canonical_json(content)


# =============================================================================
# Hive
# =============================================================================

@dataclass
class UsrMtd:
    """User-controlled metadata of a hive record."""
    enabled: bool = True
    expiry: int = 0
    tags: list[str] = field(default_factory=list)
    comment: str = ""

    @classmethod
    def from_dict(cls, data: dict | None) -> "UsrMtd":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", True)),
            expiry=int(data.get("expiry") or 0),
            tags=_str_list(data.get("tags")),
            comment=data.get("comment") or "",
        )

    def to_dict(self) -> dict:
        return {"enabled": self.enabled, "expiry": self.expiry, "tags": self.tags, "comment": self.comment}


@dataclass
class HiveRecord:
    """One record of a hive: content plus metadata."""
    data: dict | None = None
    usr_mtd: UsrMtd = field(default_factory=UsrMtd)
    sys_mtd: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict | None) -> "HiveRecord":
        data = data or {}
        content = data.get("data")
        return cls(
            data=dict(content) if isinstance(content, dict) else None,
            usr_mtd=UsrMtd.from_dict(data.get("usr_mtd")),
            sys_mtd=dict(data.get("sys_mtd") or {}),
        )

    def to_dict(self) -> dict:
        out: dict[str, Any] = {}
        if self.data is not None:
            out["data"] = self.data
        out["usr_mtd"] = self.usr_mtd.to_dict()
        return out

    def content_key(self) -> str:
        # Comment and system metadata are not part of record identity.
        return canonical_json({
            "data": self.data or None,
            "enabled": self.usr_mtd.enabled,
            "expiry": self.usr_mtd.expiry,
            "tags": self.usr_mtd.tags,
        })


# =============================================================================
# Sync operations
# =============================================================================

@dataclass
class SyncOperation:
    """
    One element handled by a sync push.

    Neither flag set means the element was already present and correct.
    """
    element_type: str
    element_name: str
    is_added: bool = False
    is_removed: bool = False

    @property
    def is_present(self) -> bool:
        return not (self.is_added or self.is_removed)

    def __str__(self) -> str:
        mark = "+" if self.is_added else "-" if self.is_removed else "="
        return f"{mark} {self.element_type} {self.element_name}"
