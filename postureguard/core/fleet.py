from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from ..probes.collector import FactCollector
from .audit import AuditLogError, JsonlAuditSink, MemoryAuditSink
from .execution import ExecutionEngine
from .models import SEVERITY_RANK, CheckResult, FactSet, Host, Policy, Status
from .reconciler import CancelToken, CycleReport, Reconciler

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 8


@dataclass
class FleetReport:
    policy: Policy
    cycles: dict[str, CycleReport] = field(default_factory=dict)
    audit_errors: list[str] = field(default_factory=list)

    def results(self) -> list[CheckResult]:
        return [r for cycle in self.cycles.values() for r in cycle.results]

    def counts(self) -> dict[str, int]:
        totals = {status.value: 0 for status in Status}
        for cycle in self.cycles.values():
            for key, value in cycle.counts().items():
                totals[key] += value
        return totals

    def exit_code(self, fail_on: str = "low") -> int:
        """0 when every rule at or above ``fail_on`` converged and was recorded, else 1."""
        if fail_on not in SEVERITY_RANK:
            raise ValueError(f"unknown severity: {fail_on}")
        if self.audit_errors:
            return 1
        return 1 if any(cycle.unconverged(fail_on) for cycle in self.cycles.values()) else 0


class FleetRunner:
    """Runs one independent reconciliation cycle per host on a bounded pool.

    Host cycles share only the immutable policy. Each cycle hands its results
    back to the coordinating thread, which is the only writer to the sink.
    """

    def __init__(
        self,
        policy: Policy,
        collector: FactCollector,
        engine: ExecutionEngine | None,
        sink: MemoryAuditSink | JsonlAuditSink,
        *,
        workers: int = DEFAULT_WORKERS,
        dry_run: bool = False,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._policy = policy
        self._collector = collector
        self._engine = engine
        self._sink = sink
        self._workers = workers
        self._dry_run = dry_run

    def run(self, hosts: Iterable[Host], *, cancel: CancelToken | None = None) -> FleetReport:
        unique: dict[str, Host] = {}
        for host in hosts:
            unique.setdefault(host.name, host)
        report = FleetReport(policy=self._policy)
        if not unique:
            return report

        finished: dict[str, CycleReport] = {}
        baselines = self._sink.latest_by_host(unique)
        workers = min(self._workers, len(unique))
        logger.info("Reconciling %d hosts against %s (%d workers)", len(unique), self._policy.name, workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cycle") as pool:
            futures = {
                pool.submit(self._cycle, host, baselines.get(host.name, {}), cancel): host
                for host in unique.values()
            }
            for future in as_completed(futures):
                host = futures[future]
                try:
                    cycle = future.result()
                except Exception as exc:
                    # One host's crash must not take the fleet down
                    logger.exception("%s: reconciliation cycle crashed", host.name)
                    cycle = self._host_error(host, exc)
                self._record(host, cycle, report)
                finished[host.name] = cycle

        # Report in inventory order, not completion order
        report.cycles = {name: finished[name] for name in unique}
        return report

    def _record(self, host: Host, cycle: CycleReport, report: FleetReport) -> None:
        try:
            for result in cycle.results:
                self._sink.append(result)
        except AuditLogError as e:
            # The cycle already happened on the host; keep it in the report
            logger.error("%s: results not recorded: %s", host.name, e)
            report.audit_errors.append(f"{host.name}: {e}")

    def _cycle(self, host: Host, baseline: Mapping[str, CheckResult], cancel: CancelToken | None) -> CycleReport:
        if cancel is not None and cancel.cancelled:
            facts = FactSet(host=host.name)
        else:
            facts = self._collector.collect(host, self._policy.selectors())
        reconciler = Reconciler(self._policy, self._engine, dry_run=self._dry_run)
        return reconciler.reconcile(host, facts, cancel=cancel, baseline=baseline)

    def _host_error(self, host: Host, exc: Exception) -> CycleReport:
        cycle = CycleReport(host=host.name, policy_version=self._policy.version)
        detail = f"{type(exc).__name__}: {exc}"
        for rule in self._policy.rules:
            cycle.results.append(CheckResult(
                rule_id=rule.id,
                host=host.name,
                status=Status.FAILED,
                severity=rule.severity,
                policy_version=self._policy.version,
                evidence={"error": "host_error", "detail": detail},
            ))
        return cycle
