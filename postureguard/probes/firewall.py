"""Firewall probe backed by firewalld.

Targets:
- ``<zone>``: the zone is defined in the permanent configuration
- ``<zone>/service:<name>``: the service is allowed in the zone
- ``<zone>/port:<port>/<proto>``: the port is open in the zone
"""
from __future__ import annotations

from .base import ProbeError, Transport, stderr_excerpt

_QUERY_FLAGS = {"service": "--query-service", "port": "--query-port"}


class FirewallProbe:
    kind = "firewall"
    name = "firewalld_probe"

    def observe(self, transport: Transport, target: str) -> bool:
        zone, entry_kind, entry = parse_firewall_target(target)
        if entry_kind is None:
            return zone in _defined_zones(transport)

        result = transport.run(["firewall-cmd", f"--zone={zone}", f"{_QUERY_FLAGS[entry_kind]}={entry}"])
        # firewall-cmd answers queries with 0 (yes) / 1 (no); anything else is an error
        if result.returncode in (0, 1):
            return result.returncode == 0
        raise ProbeError(f"firewall-cmd query {target}: {stderr_excerpt(result)}")


def parse_firewall_target(target: str) -> tuple[str, str | None, str | None]:
    """Split ``zone[/kind:value]`` into its parts."""
    zone, sep, rest = target.partition("/")
    zone = zone.strip()
    if not zone:
        raise ProbeError(f"firewall target {target!r} has no zone")
    if not sep:
        return zone, None, None
    entry_kind, sep, entry = rest.partition(":")
    if not sep or entry_kind not in _QUERY_FLAGS or not entry:
        raise ProbeError(f"firewall target {target!r}: expected <zone>/service:<name> or <zone>/port:<port>/<proto>")
    return zone, entry_kind, entry


def _defined_zones(transport: Transport) -> set[str]:
    result = transport.run(["firewall-cmd", "--permanent", "--get-zones"])
    if not result.ok:
        raise ProbeError(f"firewall-cmd --get-zones: {stderr_excerpt(result)}")
    return set(result.stdout.split())
