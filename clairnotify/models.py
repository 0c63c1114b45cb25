"""Data model shared by the notifier: vulnerabilities, notifications, receipts and pages."""

from __future__ import annotations

import hashlib
import string
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any
from uuid import UUID

NIL_UUID = UUID(int=0)
VULNERABILITY_KIND = "vulnerability"

_DIGEST_ALGORITHMS = ("sha256", "sha512")


class Severity(IntEnum):
    """Normalized vulnerability severity, ordered from least to most severe."""

    UNKNOWN = 0
    NEGLIGIBLE = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    CRITICAL = 5

    def __str__(self) -> str:
        return self.name.capitalize()

    @classmethod
    def _missing_(cls, value: object) -> Severity | None:
        # Accept the textual form, e.g. Severity("High").
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                return None
        return None


@dataclass(frozen=True)
class Digest:
    """A content digest such as ``sha256:<hex>``."""

    algorithm: str
    checksum: bytes

    def __post_init__(self) -> None:
        if self.algorithm not in _DIGEST_ALGORITHMS:
            raise ValueError(f"unknown digest algorithm: {self.algorithm!r}")
        size = hashlib.new(self.algorithm).digest_size
        if len(self.checksum) != size:
            raise ValueError(
                f"bad checksum length for {self.algorithm}: "
                f"got {len(self.checksum)} bytes, want {size}"
            )

    @classmethod
    def parse(cls, text: str) -> Digest:
        """Parse the ``algorithm:hex`` form."""
        algorithm, sep, hexsum = text.partition(":")
        if not sep:
            raise ValueError(f"invalid digest format: {text!r}")
        if not hexsum or not all(c in string.hexdigits for c in hexsum):
            raise ValueError(f"invalid digest checksum: {hexsum!r}")
        return cls(algorithm, bytes.fromhex(hexsum))

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.checksum.hex()}"


@dataclass
class Vulnerability:
    """A vulnerability as reported by the matcher."""

    id: str = ""
    updater: str = ""
    name: str = ""
    description: str = ""
    issued: datetime | None = None
    links: str = ""
    severity: str = ""
    normalized_severity: Severity = Severity.UNKNOWN
    package: dict[str, Any] | None = None
    dist: dict[str, Any] | None = None
    repo: dict[str, Any] | None = None
    fixed_in_version: str = ""


@dataclass
class AffectedManifests:
    """Manifests affected by a set of vulnerabilities.

    ``vulnerable_manifests`` maps a manifest digest to vulnerability ids,
    sorted from most to least severe.
    """

    vulnerabilities: dict[str, Vulnerability] = field(default_factory=dict)
    vulnerable_manifests: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class UpdateOperation:
    """A single run of an updater in the matcher."""

    ref: UUID
    updater: str = ""
    fingerprint: str = ""
    date: datetime | None = None
    kind: str = VULNERABILITY_KIND


@dataclass
class UpdateDiff:
    """The vulnerabilities added and removed between two update operations."""

    prev: UpdateOperation | None = None
    cur: UpdateOperation | None = None
    added: list[Vulnerability] = field(default_factory=list)
    removed: list[Vulnerability] = field(default_factory=list)


class Reason(str, Enum):
    """What caused a notification."""

    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"


class Status(str, Enum):
    """Lifecycle state of a notification."""

    CREATED = "created"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    DELETED = "deleted"


@dataclass
class VulnSummary:
    """Summary of the vulnerability that triggered a notification."""

    name: str = ""
    description: str = ""
    package: dict[str, Any] | None = None
    distribution: dict[str, Any] | None = None
    repo: dict[str, Any] | None = None
    severity: str = ""
    fixed_in_version: str = ""
    links: str = ""

    @classmethod
    def from_vulnerability(cls, vuln: Vulnerability) -> VulnSummary:
        return cls(
            name=vuln.name,
            description=vuln.description,
            package=vuln.package,
            distribution=vuln.dist,
            repo=vuln.repo,
            severity=str(vuln.normalized_severity),
            fixed_in_version=vuln.fixed_in_version,
            links=vuln.links,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "description": self.description}
        if self.package is not None:
            out["package"] = self.package
        if self.distribution is not None:
            out["distribution"] = self.distribution
        if self.repo is not None:
            out["repo"] = self.repo
        out["severity"] = self.severity
        out["fixed_in_version"] = self.fixed_in_version
        out["links"] = self.links
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VulnSummary:
        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            package=data.get("package"),
            distribution=data.get("distribution"),
            repo=data.get("repo"),
            severity=data.get("severity", ""),
            fixed_in_version=data.get("fixed_in_version", ""),
            links=data.get("links", ""),
        )


@dataclass
class Notification:
    """A change in the vulnerabilities affecting one manifest."""

    manifest: Digest
    reason: Reason
    vulnerability: VulnSummary = field(default_factory=VulnSummary)
    id: UUID = NIL_UUID

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "manifest": str(self.manifest),
            "reason": self.reason.value,
            "vulnerability": self.vulnerability.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Notification:
        raw_id = data.get("id")
        return cls(
            manifest=Digest.parse(data["manifest"]),
            reason=Reason(data["reason"]),
            vulnerability=VulnSummary.from_dict(data.get("vulnerability") or {}),
            id=UUID(raw_id) if raw_id else NIL_UUID,
        )


@dataclass(frozen=True)
class NotificationHandle:
    """Handle a client uses to fetch a set of notifications."""

    id: UUID

    def to_dict(self) -> dict[str, str]:
        return {"id": str(self.id)}


@dataclass
class Page:
    """Minimal paging protocol: page size and the id to continue after."""

    size: int = 0
    next: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.next is not None:
            out["next"] = str(self.next)
        out["size"] = self.size
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Page:
        raw_next = data.get("next")
        return cls(size=int(data.get("size", 0)), next=UUID(raw_next) if raw_next else None)


@dataclass
class Receipt:
    """Current status of a notification set."""

    uoid: UUID = NIL_UUID
    notification_id: UUID = NIL_UUID
    status: Status = Status.CREATED
    ts: datetime | None = None