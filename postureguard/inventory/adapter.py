from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from ..core.models import Host

_SEARCH_PATHS = [
    Path("/etc/postureguard/inventory.yaml"),
    Path.home() / ".config" / "postureguard" / "inventory.yaml",
    Path("inventory.yaml"),
]

_HOST_KEYS = {"host", "address", "user", "port", "connection", "reachable"}


class InventoryError(Exception):
    """Raised when an inventory file is missing or malformed."""


class InventoryAdapter:
    """Read-only adapter for locating and loading the host inventory."""

    def __init__(self, inventory_path: Path | None = None) -> None:
        self._explicit_path = inventory_path

    def detect(self) -> bool:
        return self._resolve() is not None

    def hosts(self) -> list[Host]:
        resolved = self._resolve()
        if resolved is None:
            raise InventoryError(f"no inventory found (searched: {', '.join(self.searched_locations())})")
        return load_inventory(resolved)

    def searched_locations(self) -> list[str]:
        """Return the list of paths that would be checked, in order."""
        locations: list[str] = []
        if self._explicit_path:
            locations.append(str(self._explicit_path))
        env_path = os.environ.get("POSTUREGUARD_INVENTORY")
        if env_path:
            locations.append(f"$POSTUREGUARD_INVENTORY ({env_path})")
        locations.extend(str(p) for p in _SEARCH_PATHS)
        return locations

    def _resolve(self) -> Path | None:
        if self._explicit_path:
            # An explicit path never falls back to the search list
            return self._explicit_path if self._explicit_path.exists() else None

        env_path = os.environ.get("POSTUREGUARD_INVENTORY")
        if env_path:
            p = Path(env_path)
            if p.exists():
                return p

        for p in _SEARCH_PATHS:
            if p.exists():
                return p

        return None


def load_inventory(path: Path) -> list[Host]:
    """Load hosts from YAML (list, ``hosts:`` or ``groups:``) or plain text.

    Hosts are deduplicated by name, keeping the first occurrence.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise InventoryError(f"{path}: {e}") from None

    if path.suffix in (".yaml", ".yml", ".json"):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise InventoryError(f"{path}: invalid YAML: {e}") from None
    else:
        data = _parse_text(text)

    entries = _host_entries(data, str(path))
    hosts: dict[str, Host] = {}
    for i, entry in enumerate(entries):
        host = _build_host(entry, f"{path}: hosts[{i}]")
        hosts.setdefault(host.name, host)
    return list(hosts.values())


def _parse_text(text: str) -> list[str]:
    names: list[str] = []
    for line in text.splitlines():
        stripped = line.split("#", 1)[0].strip()
        if stripped:
            names.append(stripped)
    return names


def _host_entries(data: Any, source: str) -> list[Any]:
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        entries: list[Any] = []
        hosts = data.get("hosts")
        if hosts is not None:
            if not isinstance(hosts, list):
                raise InventoryError(f"{source}: 'hosts' must be a list")
            entries.extend(hosts)
        groups = data.get("groups")
        if groups is not None:
            if not isinstance(groups, dict):
                raise InventoryError(f"{source}: 'groups' must map group names to host lists")
            for name, members in groups.items():
                if not isinstance(members, list):
                    raise InventoryError(f"{source}: group '{name}' must be a list")
                entries.extend(members)
        if hosts is None and groups is None:
            raise InventoryError(f"{source}: expected 'hosts' or 'groups'")
        return entries
    raise InventoryError(f"{source}: expected a list or mapping, got {type(data).__name__}")


def _build_host(entry: Any, where: str) -> Host:
    if isinstance(entry, str) and entry.strip():
        return Host(name=entry.strip())
    if not isinstance(entry, dict) or not entry.get("host"):
        raise InventoryError(f"{where}: expected a host name or a mapping with 'host'")
    unknown = sorted(set(entry) - _HOST_KEYS)
    if unknown:
        raise InventoryError(f"{where}: unknown keys: {', '.join(unknown)}")
    port = entry.get("port")
    if port is not None and (not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536):
        raise InventoryError(f"{where}: invalid port {port!r}")
    connection = entry.get("connection", "ssh")
    if connection not in ("ssh", "local"):
        raise InventoryError(f"{where}: connection must be 'ssh' or 'local'")
    reachable = entry.get("reachable", True)
    if not isinstance(reachable, bool):
        raise InventoryError(f"{where}: reachable must be true or false, got {reachable!r}")
    return Host(
        name=str(entry["host"]),
        address=entry.get("address"),
        user=entry.get("user"),
        port=port,
        connection=connection,
        reachable=reachable,
    )
