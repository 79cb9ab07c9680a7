from __future__ import annotations

from .base import ProbeError, Transport, stderr_excerpt

# is-active prints one of these even when it exits non-zero
_ACTIVE_STATES = {"active", "inactive", "failed", "activating", "deactivating", "reloading", "unknown"}


class ServiceProbe:
    """Reads a systemd unit's activity and enablement."""

    kind = "service"
    name = "systemd_probe"

    def observe(self, transport: Transport, target: str) -> dict[str, str]:
        active = transport.run(["systemctl", "is-active", target])
        state = active.stdout.strip()
        if state not in _ACTIVE_STATES:
            raise ProbeError(f"systemctl is-active {target}: {stderr_excerpt(active)}")

        enabled = transport.run(["systemctl", "is-enabled", target])
        enablement = enabled.stdout.strip()
        if not enablement:
            if "No such file" in enabled.stderr or "not found" in enabled.stderr:
                enablement = "not-found"
            else:
                raise ProbeError(f"systemctl is-enabled {target}: {stderr_excerpt(enabled)}")

        return {"active": state, "enabled": enablement}
