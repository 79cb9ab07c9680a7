"""Desired-state predicates, one tagged variant per selector kind.

Every variant knows how to compare itself with an observed fact value, how
to express itself as an executor payload, and how to rebuild a payload that
restores a previously observed value (used for rollback).
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, ClassVar, Union

_SERVICE_STATES = {"running", "stopped"}

# systemctl is-enabled answers that count as "enabled"
_ENABLED_STATES = {"enabled", "enabled-runtime", "alias"}

_ALLOWED_KEYS = {
    "file": {"present", "content", "sha256", "mode"},
    "sysctl": {"value"},
    "service": {"state", "enabled"},
    "firewall": {"present"},
}


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class FileState:
    kind: ClassVar[str] = "file"

    present: bool = True
    content: str | None = None
    sha256: str | None = None
    mode: str | None = None

    @property
    def expected_hash(self) -> str | None:
        if self.content is not None:
            return sha256_text(self.content)
        return self.sha256

    def matches(self, observed: Any) -> bool:
        if not isinstance(observed, dict):
            return False
        if not self.present:
            return not observed.get("present", False)
        if not observed.get("present", False):
            return False
        expected = self.expected_hash
        if expected is not None and observed.get("sha256") != expected:
            return False
        if self.mode is not None and _mode_bits(observed.get("mode")) != _mode_bits(self.mode):
            return False
        return True

    def desired(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"present": self.present}
        if self.content is not None:
            payload["content"] = self.content
        if self.sha256 is not None:
            payload["sha256"] = self.sha256
        if self.mode is not None:
            payload["mode"] = self.mode
        return payload

    def rollback_from(self, observed: Any) -> dict[str, Any] | None:
        if not isinstance(observed, dict):
            return None
        if not observed.get("present", False):
            return {"present": False}
        # Without captured content the previous file cannot be rebuilt
        if observed.get("content") is None:
            return None
        payload: dict[str, Any] = {"present": True, "content": observed["content"]}
        if observed.get("mode"):
            payload["mode"] = observed["mode"]
        return payload

    def summarize(self, observed: Any) -> Any:
        if not isinstance(observed, dict):
            return observed
        return {k: observed.get(k) for k in ("present", "mode", "sha256")}

    def describe(self) -> dict[str, Any]:
        summary: dict[str, Any] = {"present": self.present}
        if self.expected_hash is not None:
            summary["sha256"] = self.expected_hash
        if self.mode is not None:
            summary["mode"] = self.mode
        return summary


@dataclass(frozen=True)
class KernelParam:
    kind: ClassVar[str] = "sysctl"

    value: str

    def matches(self, observed: Any) -> bool:
        if observed is None:
            return False
        return _normalize_sysctl(observed) == _normalize_sysctl(self.value)

    def desired(self) -> dict[str, Any]:
        return {"value": self.value}

    def rollback_from(self, observed: Any) -> dict[str, Any] | None:
        if observed is None:
            return None
        return {"value": _normalize_sysctl(observed)}

    def summarize(self, observed: Any) -> Any:
        return observed

    def describe(self) -> dict[str, Any]:
        return {"value": self.value}


@dataclass(frozen=True)
class ServiceState:
    kind: ClassVar[str] = "service"

    state: str | None = None
    enabled: bool | None = None

    def matches(self, observed: Any) -> bool:
        if not isinstance(observed, dict):
            return False
        if self.state is not None and _running(observed) != (self.state == "running"):
            return False
        if self.enabled is not None and _enabled(observed) != self.enabled:
            return False
        return True

    def desired(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.state is not None:
            payload["state"] = self.state
        if self.enabled is not None:
            payload["enabled"] = self.enabled
        return payload

    def rollback_from(self, observed: Any) -> dict[str, Any] | None:
        if not isinstance(observed, dict) or observed.get("enabled") == "not-found":
            return None
        payload: dict[str, Any] = {}
        # Only restore the aspects this rule manages
        if self.state is not None:
            payload["state"] = "running" if _running(observed) else "stopped"
        if self.enabled is not None:
            payload["enabled"] = _enabled(observed)
        return payload

    def summarize(self, observed: Any) -> Any:
        return observed

    def describe(self) -> dict[str, Any]:
        return self.desired()


@dataclass(frozen=True)
class FirewallRule:
    kind: ClassVar[str] = "firewall"

    present: bool = True

    def matches(self, observed: Any) -> bool:
        return isinstance(observed, bool) and observed == self.present

    def desired(self) -> dict[str, Any]:
        return {"present": self.present}

    def rollback_from(self, observed: Any) -> dict[str, Any] | None:
        if not isinstance(observed, bool):
            return None
        return {"present": observed}

    def summarize(self, observed: Any) -> Any:
        return observed

    def describe(self) -> dict[str, Any]:
        return {"present": self.present}


Predicate = Union[FileState, KernelParam, ServiceState, FirewallRule]

PREDICATE_TYPES: dict[str, type] = {
    FileState.kind: FileState,
    KernelParam.kind: KernelParam,
    ServiceState.kind: ServiceState,
    FirewallRule.kind: FirewallRule,
}


def validate_predicate(kind: str, raw: Any, path: str = "desired") -> list[str]:
    """Return a list of error strings if the desired-state block is malformed."""
    errors: list[str] = []
    if kind not in _ALLOWED_KEYS:
        errors.append(f"{path}: no predicate for selector kind '{kind}'")
        return errors
    if not isinstance(raw, dict):
        errors.append(f"{path}: expected dict, got {type(raw).__name__}")
        return errors

    unknown = sorted(set(raw) - _ALLOWED_KEYS[kind])
    if unknown:
        errors.append(f"{path}: unknown keys for '{kind}': {', '.join(unknown)}")

    if kind == "file":
        _validate_file(raw, errors, path)
    elif kind == "sysctl":
        if "value" not in raw:
            errors.append(f"{path}: missing required key 'value'")
        elif isinstance(raw["value"], (dict, list, bool)) or raw["value"] is None:
            errors.append(f"{path}.value: expected a scalar, got {type(raw['value']).__name__}")
    elif kind == "service":
        if "state" not in raw and "enabled" not in raw:
            errors.append(f"{path}: needs at least one of 'state', 'enabled'")
        if "state" in raw and raw["state"] not in _SERVICE_STATES:
            errors.append(f"{path}.state: expected one of {sorted(_SERVICE_STATES)}, got {raw['state']!r}")
        if "enabled" in raw and not isinstance(raw["enabled"], bool):
            errors.append(f"{path}.enabled: expected bool, got {type(raw['enabled']).__name__}")
    elif kind == "firewall":
        if "present" in raw and not isinstance(raw["present"], bool):
            errors.append(f"{path}.present: expected bool, got {type(raw['present']).__name__}")
    return errors


def _validate_file(raw: dict, errors: list[str], path: str) -> None:
    present = raw.get("present", True)
    if not isinstance(present, bool):
        errors.append(f"{path}.present: expected bool, got {type(present).__name__}")
        return
    if not present:
        for key in ("content", "sha256", "mode"):
            if key in raw:
                errors.append(f"{path}: '{key}' makes no sense when present is false")
        return
    if "content" in raw and not isinstance(raw["content"], str):
        errors.append(f"{path}.content: expected string, got {type(raw['content']).__name__}")
    if "content" in raw and "sha256" in raw:
        errors.append(f"{path}: 'content' and 'sha256' are mutually exclusive")
    if "sha256" in raw:
        digest = raw["sha256"]
        if not isinstance(digest, str) or len(digest) != 64 or any(c not in "0123456789abcdefABCDEF" for c in digest):
            errors.append(f"{path}.sha256: expected a 64 character hex digest")
    if "mode" in raw:
        try:
            _normalize_mode(raw["mode"])
        except ValueError:
            errors.append(f"{path}.mode: expected an octal mode such as '0600', got {raw['mode']!r}")


def build_predicate(kind: str, raw: dict) -> Predicate:
    """Construct the predicate variant for ``kind``. ``raw`` must already be valid."""
    if kind == "file":
        return FileState(
            present=raw.get("present", True),
            content=raw.get("content"),
            sha256=raw["sha256"].lower() if "sha256" in raw else None,
            mode=_normalize_mode(raw["mode"]) if "mode" in raw else None,
        )
    if kind == "sysctl":
        return KernelParam(value=_normalize_sysctl(raw["value"]))
    if kind == "service":
        return ServiceState(state=raw.get("state"), enabled=raw.get("enabled"))
    if kind == "firewall":
        return FirewallRule(present=raw.get("present", True))
    raise ValueError(f"Unknown selector kind: {kind}")


def _normalize_sysctl(value: Any) -> str:
    # Kernel reports multi-value params tab separated
    return " ".join(str(value).split())


def _normalize_mode(value: Any) -> str:
    """Coerce a file mode to a four digit octal string.

    YAML 1.1 reads an unquoted 0600 as the integer 384, so ints are taken
    as already-decoded mode bits.
    """
    if isinstance(value, bool):
        raise ValueError(value)
    if isinstance(value, int):
        bits = value
    else:
        bits = int(str(value).strip(), 8)
    if not 0 <= bits <= 0o7777:
        raise ValueError(value)
    return f"{bits:04o}"


def _mode_bits(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value), 8)
    except ValueError:
        return None


def _running(observed: dict) -> bool:
    return observed.get("active") == "active"


def _enabled(observed: dict) -> bool:
    return observed.get("enabled") in _ENABLED_STATES
