"""Ansible ad-hoc executor: turns a desired state into one module invocation.

postureguard does not mutate hosts itself. Each remediation request is
handed to ``ansible`` with the json stdout callback and the per-host task
result is mapped to an ApplyOutcome.
"""
from __future__ import annotations

import json
import logging
import os
import subprocess
from typing import Any

from ..core.execution import ActionFailure, ActionTimeout, ApplyOutcome
from ..core.models import Host, Selector
from ..probes.base import ProbeError
from ..probes.firewall import parse_firewall_target

logger = logging.getLogger(__name__)

_ANSIBLE_ENV = {
    "ANSIBLE_STDOUT_CALLBACK": "json",
    "ANSIBLE_LOAD_CALLBACK_PLUGINS": "1",
    "ANSIBLE_NOCOLOR": "1",
    "ANSIBLE_RETRY_FILES_ENABLED": "0",
}


class AnsibleExecutor:
    """Applies desired states through ``ansible <host> -m <module>``."""

    name = "ansible"

    def __init__(self, *, binary: str = "ansible", become: bool = True, extra_args: list[str] | None = None) -> None:
        self._binary = binary
        self._become = become
        self._extra_args = list(extra_args or [])

    def apply(self, host: Host, selector: Selector, desired: dict[str, Any], *, timeout: float) -> ApplyOutcome:
        module, args = build_module_call(selector, desired)
        cmd = self.command(host, module, args)
        logger.debug("%s: %s %s", host.name, module, json.dumps(_redact(args), sort_keys=True))
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                env={**os.environ, **_ANSIBLE_ENV},
            )
        except FileNotFoundError:
            raise ActionFailure(f"{self._binary} binary not found") from None
        except subprocess.TimeoutExpired:
            raise ActionTimeout(f"{module} on {host.name} timed out after {timeout:g}s") from None
        except OSError as e:
            raise ActionFailure(f"OS error running {self._binary}: {e}") from None
        return parse_ansible_output(completed.stdout, completed.stderr, completed.returncode)

    def command(self, host: Host, module: str, args: dict[str, Any]) -> list[str]:
        target = host.address or host.name
        cmd = [self._binary, "all", "-i", f"{target},", "-m", module, "-a", json.dumps(args, sort_keys=True)]
        if host.is_local:
            cmd.extend(["-c", "local"])
        if host.user:
            cmd.extend(["-u", host.user])
        if host.port:
            cmd.extend(["-e", f"ansible_port={host.port}"])
        if self._become:
            cmd.append("--become")
        cmd.extend(self._extra_args)
        return cmd


def build_module_call(selector: Selector, desired: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Map a selector and desired state to an Ansible module and its arguments."""
    target = selector.target
    if selector.kind == "file":
        if not desired.get("present", True):
            return "ansible.builtin.file", {"path": target, "state": "absent"}
        if "content" in desired:
            args: dict[str, Any] = {"dest": target, "content": desired["content"]}
            if "mode" in desired:
                args["mode"] = desired["mode"]
            return "ansible.builtin.copy", args
        if "sha256" in desired:
            raise ActionFailure(f"{selector}: desired state pins a hash only, there is no content to write")
        args = {"path": target, "state": "file"}
        if "mode" in desired:
            args["mode"] = desired["mode"]
        return "ansible.builtin.file", args

    if selector.kind == "sysctl":
        return "ansible.posix.sysctl", {
            "name": target,
            "value": str(desired["value"]),
            "state": "present",
            "sysctl_set": True,
            "reload": True,
        }

    if selector.kind == "service":
        args = {"name": target}
        if "state" in desired:
            args["state"] = "started" if desired["state"] == "running" else "stopped"
        if "enabled" in desired:
            args["enabled"] = bool(desired["enabled"])
        return "ansible.builtin.systemd", args

    if selector.kind == "firewall":
        try:
            zone, entry_kind, entry = parse_firewall_target(target)
        except ProbeError as e:
            raise ActionFailure(str(e)) from None
        present = desired.get("present", True)
        if entry_kind is None:
            return "ansible.posix.firewalld", {
                "zone": zone,
                "state": "present" if present else "absent",
                "permanent": True,
            }
        return "ansible.posix.firewalld", {
            "zone": zone,
            entry_kind: entry,
            "state": "enabled" if present else "disabled",
            "permanent": True,
            "immediate": True,
        }

    raise ActionFailure(f"no executor mapping for selector kind '{selector.kind}'")


def parse_ansible_output(stdout: str, stderr: str, returncode: int) -> ApplyOutcome:
    """Extract the single task result from json callback output."""
    start = stdout.find("{")
    if start < 0:
        excerpt = (stderr.strip() or stdout.strip())[:200]
        raise ActionFailure(f"ansible exited {returncode} without a result: {excerpt or 'no output'}")
    try:
        payload = json.loads(stdout[start:])
        host_results = payload["plays"][0]["tasks"][0]["hosts"]
        result = next(iter(host_results.values()))
    except (json.JSONDecodeError, KeyError, IndexError, TypeError, StopIteration):
        raise ActionFailure(f"unreadable ansible output (exit {returncode})") from None

    changed = bool(result.get("changed", False))
    message = str(result.get("msg", "")).strip()[:200]
    if result.get("unreachable"):
        raise ActionFailure(f"host unreachable: {message or 'no details'}")
    if result.get("failed"):
        return ApplyOutcome(ok=False, changed=changed, detail=message or "module failed")
    return ApplyOutcome(ok=True, changed=changed, detail="changed" if changed else "already in desired state")


def _redact(args: dict[str, Any]) -> dict[str, Any]:
    if "content" in args:
        return {**args, "content": f"<{len(args['content'])} chars>"}
    return args
