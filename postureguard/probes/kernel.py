from __future__ import annotations

from .base import ProbeError, Transport, stderr_excerpt


class KernelParamProbe:
    """Reads a kernel parameter with ``sysctl -n``."""

    kind = "sysctl"
    name = "sysctl_probe"

    def observe(self, transport: Transport, target: str) -> str:
        result = transport.run(["sysctl", "-n", target])
        if not result.ok:
            raise ProbeError(f"sysctl {target}: {stderr_excerpt(result)}")
        return " ".join(result.stdout.split())
