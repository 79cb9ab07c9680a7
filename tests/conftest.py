"""Shared fakes: an in-memory host whose state probes read and executors change."""
from __future__ import annotations

import copy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from postureguard.core.compiler import compile_policy
from postureguard.core.execution import ActionTimeout, ApplyOutcome
from postureguard.core.models import Host, Selector
from postureguard.core.predicates import sha256_text
from postureguard.probes.base import ProbeError
from postureguard.probes.collector import FactCollector

FIXTURES = Path(__file__).parent / "fixtures"

FIXED_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeSystem:
    """Host state keyed by selector, shared by FakeProbe and FakeExecutor."""

    def __init__(self, state: dict[str, Any]) -> None:
        self.state = {Selector.parse(k): v for k, v in state.items()}
        self.unavailable: set[Selector] = set()
        self.failing: dict[Selector, bool] = {}  # selector -> partially changed?
        self.timing_out: set[Selector] = set()
        self.ignored: set[Selector] = set()  # executor claims success, state unchanged
        self.calls: list[tuple[str, Selector, dict]] = []

    def value(self, selector: str) -> Any:
        return self.state[Selector.parse(selector)]


class FakeProbe:
    def __init__(self, kind: str, system: FakeSystem) -> None:
        self.kind = kind
        self.name = f"fake_{kind}"
        self._system = system

    def observe(self, transport, target: str) -> Any:
        selector = Selector(self.kind, target)
        if selector in self._system.unavailable:
            raise ProbeError(f"cannot read {selector}")
        if selector not in self._system.state:
            raise ProbeError(f"no such resource {selector}")
        return copy.deepcopy(self._system.state[selector])


class FakeExecutor:
    def __init__(self, system: FakeSystem) -> None:
        self._system = system

    def apply(self, host: Host, selector: Selector, desired: dict, *, timeout: float) -> ApplyOutcome:
        self._system.calls.append((host.name, selector, dict(desired)))
        if selector in self._system.timing_out:
            self._system.timing_out.discard(selector)
            raise ActionTimeout(f"simulated timeout after {timeout:g}s")
        if selector in self._system.failing:
            partial = self._system.failing.pop(selector)
            if partial:
                self._system.state[selector] = "half-applied"
            return ApplyOutcome(ok=False, changed=partial, detail="simulated failure")
        if selector in self._system.ignored:
            return ApplyOutcome(ok=True, changed=True, detail="changed")
        current = self._system.state.get(selector)
        new = observed_from_desired(selector.kind, desired, current)
        changed = new != current
        self._system.state[selector] = new
        return ApplyOutcome(ok=True, changed=changed, detail="changed" if changed else "already in desired state")


def observed_from_desired(kind: str, desired: dict, current: Any) -> Any:
    if kind == "sysctl":
        return str(desired["value"])
    if kind == "firewall":
        return desired.get("present", True)
    if kind == "service":
        value = dict(current or {"active": "inactive", "enabled": "disabled"})
        if "state" in desired:
            value["active"] = "active" if desired["state"] == "running" else "inactive"
        if "enabled" in desired:
            value["enabled"] = "enabled" if desired["enabled"] else "disabled"
        return value
    if kind == "file":
        if not desired.get("present", True):
            return {"present": False, "mode": None, "sha256": None, "content": None}
        value = dict(current or {"present": True, "mode": "0644", "sha256": None, "content": None})
        value["present"] = True
        if "content" in desired:
            value["content"] = desired["content"]
            value["sha256"] = sha256_text(desired["content"])
        if "mode" in desired:
            value["mode"] = desired["mode"]
        return value
    raise ValueError(kind)


def fake_collector(system: FakeSystem, **kwargs) -> FactCollector:
    probes = {kind: FakeProbe(kind, system) for kind in ("file", "sysctl", "service", "firewall")}
    return FactCollector(probes, transport_factory=lambda host: None, **kwargs)


# A: ip_forward must be 0; B: dmz zone present, depends on A
EXAMPLE_DOCUMENT = {
    "policy": "example",
    "rules": {
        "A": {
            "title": "IPv4 forwarding disabled",
            "severity": "high",
            "resource": "sysctl:net.ipv4.ip_forward",
            "desired": {"value": "0"},
        },
        "B": {
            "title": "DMZ zone enabled",
            "severity": "medium",
            "resource": "firewall:dmz",
            "desired": {"present": True},
            "depends_on": ["A"],
        },
    },
}


@pytest.fixture
def example_policy():
    return compile_policy(copy.deepcopy(EXAMPLE_DOCUMENT))


@pytest.fixture
def drifted_system():
    return FakeSystem({"sysctl:net.ipv4.ip_forward": "1", "firewall:dmz": False})


@pytest.fixture
def host():
    return Host(name="web-01")
