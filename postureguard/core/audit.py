"""Append-only audit trail of check results.

There is no update or delete: a correction is a new record that names the
sequence number it supersedes.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from .models import CheckResult, Status

logger = logging.getLogger(__name__)


class AuditLogError(Exception):
    """Raised when an audit log cannot be read or appended to."""


@dataclass(frozen=True)
class AuditRecord:
    seq: int
    result: CheckResult
    supersedes: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"seq": self.seq, **self.result.to_record(), "supersedes": self.supersedes}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditRecord:
        return cls(seq=int(data["seq"]), result=CheckResult.from_record(data), supersedes=data.get("supersedes"))


class _AuditStore:
    """Query operations shared by every sink; subclasses provide records()."""

    def records(self) -> Iterator[AuditRecord]:
        raise NotImplementedError

    def query(
        self,
        *,
        host: str | None = None,
        rule_id: str | None = None,
        status: Status | str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AuditRecord]:
        """Filter the stream. ``since`` is inclusive, ``until`` exclusive."""
        wanted_status = Status(status) if status is not None else None
        since = _aware(since)
        until = _aware(until)
        matched: list[AuditRecord] = []
        for record in self.records():
            r = record.result
            if host is not None and r.host != host:
                continue
            if rule_id is not None and r.rule_id != rule_id:
                continue
            if wanted_status is not None and r.status != wanted_status:
                continue
            if since is not None and _aware(r.timestamp) < since:
                continue
            if until is not None and _aware(r.timestamp) >= until:
                continue
            matched.append(record)
        return matched

    def latest(self, host: str) -> dict[str, CheckResult]:
        """Most recent result per rule for one host (the next cycle's baseline)."""
        return self.latest_by_host([host]).get(host, {})

    def latest_by_host(self, hosts: Iterable[str] | None = None) -> dict[str, dict[str, CheckResult]]:
        wanted = set(hosts) if hosts is not None else None
        current: dict[str, dict[str, CheckResult]] = {}
        for record in self.records():
            r = record.result
            if wanted is None or r.host in wanted:
                current.setdefault(r.host, {})[r.rule_id] = r
        return current


class MemoryAuditSink(_AuditStore):
    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    def append(self, result: CheckResult, *, supersedes: int | None = None) -> int:
        _check_supersedes(supersedes, len(self._records))
        record = AuditRecord(seq=len(self._records) + 1, result=result, supersedes=supersedes)
        self._records.append(record)
        return record.seq

    def records(self) -> Iterator[AuditRecord]:
        return iter(tuple(self._records))

    def __len__(self) -> int:
        return len(self._records)


class JsonlAuditSink(_AuditStore):
    """Audit trail persisted as JSON Lines, one record per line, append mode only."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._count = sum(1 for _ in self.records()) if self._path.exists() else 0
        logger.debug("Audit log %s opened with %d records", self._path, self._count)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, result: CheckResult, *, supersedes: int | None = None) -> int:
        _check_supersedes(supersedes, self._count)
        record = AuditRecord(seq=self._count + 1, result=result, supersedes=supersedes)
        line = json.dumps(record.to_dict(), sort_keys=True, default=str)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            raise AuditLogError(f"{self._path}: cannot append: {e}") from e
        self._count += 1
        return record.seq

    def records(self) -> Iterator[AuditRecord]:
        try:
            with open(self._path, encoding="utf-8") as f:
                lines = f.readlines()
        except FileNotFoundError:
            return iter(())
        except OSError as e:
            raise AuditLogError(f"{self._path}: cannot read: {e}") from e

        parsed: list[AuditRecord] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                parsed.append(AuditRecord.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                raise AuditLogError(f"{self._path}:{lineno}: malformed audit record: {e}") from e
        return iter(parsed)

    def __len__(self) -> int:
        return self._count


def _check_supersedes(supersedes: int | None, count: int) -> None:
    if supersedes is not None and not 1 <= supersedes <= count:
        raise ValueError(f"cannot supersede unknown record {supersedes}")


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
