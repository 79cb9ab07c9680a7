"""Command transports used by probes to read host state.

Probes never mutate a host; they only run read-only commands through a
transport and interpret the output.
"""
from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Sequence

from ..core.models import Host

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10.0

_SSH_OPTIONS = ("-o", "BatchMode=yes", "-o", "ConnectTimeout=5")


class TransportError(RuntimeError):
    """Raised when a command could not be run at all (as opposed to exiting non-zero)."""


@dataclass
class CommandResult:
    """Output of one command. ``stdout`` is decoded leniently; ``raw`` keeps the exact bytes."""

    stdout: str
    stderr: str
    returncode: int
    raw: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class LocalTransport:
    """Runs commands on the machine postureguard itself runs on."""

    name = "local"

    def run(self, argv: Sequence[str], *, timeout: float = _DEFAULT_TIMEOUT) -> CommandResult:
        return _run(list(argv), timeout=timeout, display=shlex.join(argv))


class SshTransport:
    """Runs commands on a remote host over non-interactive ssh."""

    name = "ssh"

    def __init__(self, host: Host) -> None:
        self._host = host

    def command(self, argv: Sequence[str]) -> list[str]:
        cmd = ["ssh", *_SSH_OPTIONS]
        if self._host.port:
            cmd.extend(["-p", str(self._host.port)])
        destination = self._host.address or self._host.name
        if self._host.user:
            destination = f"{self._host.user}@{destination}"
        # The remote side receives one shell string
        cmd.extend([destination, "--", shlex.join(argv)])
        return cmd

    def run(self, argv: Sequence[str], *, timeout: float = _DEFAULT_TIMEOUT) -> CommandResult:
        return _run(self.command(argv), timeout=timeout, display=f"{self._host.name}: {shlex.join(argv)}")


def transport_for(host: Host) -> LocalTransport | SshTransport:
    if host.is_local:
        return LocalTransport()
    return SshTransport(host)


def _run(cmd: list[str], *, timeout: float, display: str) -> CommandResult:
    logger.debug("Running (timeout=%.0fs): %s", timeout, display)
    try:
        completed = subprocess.run(cmd, capture_output=True, timeout=timeout)
    except FileNotFoundError:
        raise TransportError(f"{cmd[0]} binary not found") from None
    except subprocess.TimeoutExpired:
        raise TransportError(f"command timed out after {timeout:.0f}s: {display}") from None
    except OSError as e:
        raise TransportError(f"OS error running {display}: {e}") from None
    # Bytes in, so file content is neither newline-translated nor rejected as bad UTF-8
    return CommandResult(
        stdout=completed.stdout.decode("utf-8", errors="replace"),
        stderr=completed.stderr.decode("utf-8", errors="replace"),
        returncode=completed.returncode,
        raw=completed.stdout,
    )
