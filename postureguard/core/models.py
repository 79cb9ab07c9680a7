from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .predicates import Predicate

SEVERITIES = ("low", "medium", "high", "critical")
SEVERITY_RANK = {name: rank for rank, name in enumerate(SEVERITIES)}

SELECTOR_KINDS = ("file", "sysctl", "service", "firewall")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, order=True)
class Selector:
    """A managed resource: probe kind plus kind-specific target."""

    kind: str
    target: str

    @classmethod
    def parse(cls, text: str) -> Selector:
        kind, sep, target = str(text).partition(":")
        kind = kind.strip().lower()
        target = target.strip()
        if not sep or not target:
            raise ValueError(f"selector {text!r} must look like '<kind>:<target>'")
        if kind not in SELECTOR_KINDS:
            raise ValueError(f"selector {text!r}: unknown kind '{kind}' (valid: {', '.join(SELECTOR_KINDS)})")
        return cls(kind=kind, target=target)

    def __str__(self) -> str:
        return f"{self.kind}:{self.target}"


@dataclass(frozen=True)
class Host:
    name: str
    address: str | None = None
    user: str | None = None
    port: int | None = None
    connection: str = "ssh"
    reachable: bool = True

    @property
    def is_local(self) -> bool:
        return self.connection == "local" or self.name in ("localhost", "127.0.0.1", "::1")

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Fact:
    selector: Selector
    value: Any
    source: str
    observed_at: datetime = field(default_factory=utcnow)


@dataclass
class FactSet:
    """Facts observed on one host during one cycle.

    Selectors that could not be collected are kept in ``unavailable`` with
    the reason, so the rules referencing them can be failed individually.
    """

    host: str
    facts: dict[Selector, Fact] = field(default_factory=dict)
    unavailable: dict[Selector, str] = field(default_factory=dict)

    def add(self, fact: Fact) -> None:
        self.facts[fact.selector] = fact
        self.unavailable.pop(fact.selector, None)

    def mark_unavailable(self, selector: Selector, reason: str) -> None:
        self.facts.pop(selector, None)
        self.unavailable[selector] = reason

    def get(self, selector: Selector) -> Fact | None:
        return self.facts.get(selector)

    def reason(self, selector: Selector) -> str:
        return self.unavailable.get(selector, "fact was not collected")


@dataclass(frozen=True)
class PolicySettings:
    timeout: float = 30.0
    auto_remediate: frozenset[str] = frozenset(SEVERITIES)
    verify: bool = True


@dataclass(frozen=True)
class Rule:
    id: str
    title: str
    severity: str
    selector: Selector
    predicate: Predicate
    depends_on: tuple[str, ...] = ()
    timeout: float | None = None
    auto_remediate: bool | None = None


@dataclass(frozen=True)
class Policy:
    """A compiled policy. Rules are stored in topological order."""

    name: str
    version: str
    rules: tuple[Rule, ...]
    settings: PolicySettings = field(default_factory=PolicySettings)

    def rule(self, rule_id: str) -> Rule:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        raise KeyError(rule_id)

    @property
    def rule_ids(self) -> list[str]:
        return [r.id for r in self.rules]

    def selectors(self) -> list[Selector]:
        seen: dict[Selector, None] = {}
        for rule in self.rules:
            seen.setdefault(rule.selector, None)
        return list(seen)

    def dependents(self, rule_id: str) -> set[str]:
        """Return every rule that transitively depends on ``rule_id``."""
        found: set[str] = set()
        frontier = [rule_id]
        while frontier:
            current = frontier.pop()
            for rule in self.rules:
                if current in rule.depends_on and rule.id not in found:
                    found.add(rule.id)
                    frontier.append(rule.id)
        return found

    def timeout_for(self, rule: Rule) -> float:
        return rule.timeout if rule.timeout is not None else self.settings.timeout

    def may_remediate(self, rule: Rule) -> bool:
        if rule.auto_remediate is not None:
            return rule.auto_remediate
        return rule.severity in self.settings.auto_remediate

    @property
    def short_version(self) -> str:
        return self.version[:12]


class Status(str, Enum):
    COMPLIANT = "compliant"
    DRIFTED = "drifted"
    REMEDIATED = "remediated"
    FAILED = "failed"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value


CONVERGED_STATUSES = frozenset({Status.COMPLIANT, Status.REMEDIATED})


@dataclass(frozen=True)
class CheckResult:
    rule_id: str
    host: str
    status: Status
    severity: str
    policy_version: str
    evidence: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_record(self, include_timestamp: bool = True) -> dict[str, Any]:
        """Flat export record for the audit stream."""
        record: dict[str, Any] = {
            "rule_id": self.rule_id,
            "host": self.host,
            "status": self.status.value,
            "severity": self.severity,
            "policy_version": self.policy_version,
            "evidence": copy.deepcopy(self.evidence),
        }
        if include_timestamp:
            record["timestamp"] = self.timestamp.isoformat()
        return record

    def canonical(self) -> str:
        """Timestamp-free canonical JSON, stable across runs and machines."""
        return json.dumps(self.to_record(include_timestamp=False), sort_keys=True, separators=(",", ":"), default=str)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> CheckResult:
        ts = record.get("timestamp")
        return cls(
            rule_id=record["rule_id"],
            host=record["host"],
            status=Status(record["status"]),
            severity=record.get("severity", "low"),
            policy_version=record.get("policy_version", ""),
            evidence=dict(record.get("evidence") or {}),
            timestamp=datetime.fromisoformat(ts) if ts else utcnow(),
        )


@dataclass(frozen=True)
class RemediationAction:
    rule_id: str
    host: str
    selector: Selector
    desired: dict[str, Any]
    rollback: dict[str, Any] | None
    timeout: float
