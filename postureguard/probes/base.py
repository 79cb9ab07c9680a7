from __future__ import annotations

from typing import Any, Protocol

from .transport import CommandResult


class ProbeError(Exception):
    """Raised when a probe cannot determine the current value of its target."""


class Transport(Protocol):
    name: str

    def run(self, argv: list[str], *, timeout: float = ...) -> CommandResult: ...


class Probe(Protocol):
    """Reads the current value of one selector kind from a host."""

    kind: str

    def observe(self, transport: Transport, target: str) -> Any: ...


def default_probes() -> dict[str, Probe]:
    from .file import FileProbe
    from .firewall import FirewallProbe
    from .kernel import KernelParamProbe
    from .service import ServiceProbe

    probes: list[Probe] = [FileProbe(), KernelParamProbe(), ServiceProbe(), FirewallProbe()]
    return {p.kind: p for p in probes}


def stderr_excerpt(result: CommandResult) -> str:
    text = result.stderr.strip() or result.stdout.strip()
    return text[:200] or f"exit status {result.returncode}"

