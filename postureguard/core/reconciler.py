"""Reconciler: diffs facts against a compiled policy and drives remediation.

Rules are walked once, in the policy's topological order. Each rule gets
exactly one terminal CheckResult per cycle:

- a rule whose dependency did not end compliant or remediated is skipped
- a rule whose fact could not be collected fails
- a matching fact is compliant
- a mismatch is remediated through the execution engine (remediated or
  failed), or left drifted in dry-run mode or when the policy gate requires
  approval for the rule's severity
"""
from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

from .execution import ExecutionEngine
from .models import (
    CONVERGED_STATUSES,
    SEVERITY_RANK,
    CheckResult,
    FactSet,
    Host,
    Policy,
    RemediationAction,
    Rule,
    Status,
    utcnow,
)

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation signal, optionally with a deadline.

    Checked by the reconciler between rules only; an action already running
    is allowed to finish or time out.
    """

    def __init__(self, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = deadline
        self._reason = "cancelled"

    @classmethod
    def with_timeout(cls, seconds: float | None) -> CancelToken:
        if seconds is None:
            return cls()
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("cycle timeout reached")
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason


@dataclass
class CycleReport:
    host: str
    policy_version: str
    results: list[CheckResult] = field(default_factory=list)
    actions: list[RemediationAction] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def converged(self) -> bool:
        return all(r.status in CONVERGED_STATUSES for r in self.results)

    @property
    def failed(self) -> list[CheckResult]:
        return [r for r in self.results if r.status == Status.FAILED]

    def status_of(self, rule_id: str) -> Status:
        for result in self.results:
            if result.rule_id == rule_id:
                return result.status
        raise KeyError(rule_id)

    def counts(self) -> dict[str, int]:
        counter = Counter(r.status for r in self.results)
        return {status.value: counter.get(status, 0) for status in Status}

    def unconverged(self, min_severity: str = "low") -> list[CheckResult]:
        threshold = SEVERITY_RANK[min_severity]
        return [
            r for r in self.results
            if r.status not in CONVERGED_STATUSES and SEVERITY_RANK.get(r.severity, 0) >= threshold
        ]


class Reconciler:
    """Runs one reconciliation cycle for one host against one policy."""

    def __init__(
        self,
        policy: Policy,
        engine: ExecutionEngine | None = None,
        *,
        dry_run: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._policy = policy
        self._engine = engine
        self._dry_run = dry_run or engine is None
        self._clock = clock

    def reconcile(
        self,
        host: Host | str,
        facts: FactSet,
        cancel: CancelToken | None = None,
        baseline: Mapping[str, CheckResult] | None = None,
    ) -> CycleReport:
        if isinstance(host, str):
            host = Host(name=host)
        report = CycleReport(host=host.name, policy_version=self._policy.version)
        terminal: dict[str, Status] = {}
        applied: set[tuple[str, str]] = set()

        for rule in self._policy.rules:
            if cancel is not None and cancel.cancelled:
                if not report.cancelled:
                    logger.warning("%s: %s, skipping remaining rules", host.name, cancel.reason)
                report.cancelled = True
                result = self._result(rule, host, Status.SKIPPED, {"reason": "cycle_cancelled", "detail": cancel.reason})
            else:
                result, action = self._check(rule, host, facts, terminal, applied)
                if action is not None:
                    report.actions.append(action)
                    previous = baseline.get(rule.id) if baseline else None
                    if previous is not None and previous.status == Status.FAILED:
                        logger.info("%s: retrying %s after failure in previous cycle", host.name, rule.id)
                        report.retried.append(rule.id)
            terminal[rule.id] = result.status
            report.results.append(result)

        logger.info(
            "%s: cycle finished (%s)", host.name,
            ", ".join(f"{k}={v}" for k, v in report.counts().items() if v),
        )
        return report

    def _check(
        self,
        rule: Rule,
        host: Host,
        facts: FactSet,
        terminal: Mapping[str, Status],
        applied: set[tuple[str, str]],
    ) -> tuple[CheckResult, RemediationAction | None]:
        blocked = [dep for dep in rule.depends_on if terminal.get(dep) not in CONVERGED_STATUSES]
        if blocked:
            logger.debug("%s: %s skipped, blocked by %s", host.name, rule.id, blocked)
            return self._result(rule, host, Status.SKIPPED, {"reason": "dependency_skipped", "blocked_by": blocked}), None

        evidence: dict[str, Any] = {"selector": str(rule.selector), "desired": rule.predicate.describe()}
        fact = facts.get(rule.selector)
        if fact is None:
            evidence.update(error="fact_unavailable", detail=facts.reason(rule.selector))
            return self._result(rule, host, Status.FAILED, evidence), None

        evidence["observed"] = rule.predicate.summarize(fact.value)
        if rule.predicate.matches(fact.value):
            return self._result(rule, host, Status.COMPLIANT, evidence), None

        action = RemediationAction(
            rule_id=rule.id,
            host=host.name,
            selector=rule.selector,
            desired=rule.predicate.desired(),
            rollback=rule.predicate.rollback_from(fact.value),
            timeout=self._policy.timeout_for(rule),
        )

        if self._dry_run:
            evidence["remediation"] = "dry_run"
            return self._result(rule, host, Status.DRIFTED, evidence), None
        if not self._policy.may_remediate(rule):
            evidence["remediation"] = "approval_required"
            return self._result(rule, host, Status.DRIFTED, evidence), None

        key = (host.name, rule.id)
        if key in applied:
            evidence["remediation"] = "already_applied"
            return self._result(rule, host, Status.DRIFTED, evidence), None
        applied.add(key)

        outcome = self._engine.apply(host, action, rule.predicate)
        evidence["remediation"] = outcome.to_evidence()
        if outcome.succeeded:
            return self._result(rule, host, Status.REMEDIATED, evidence), action
        evidence["error"] = outcome.error
        return self._result(rule, host, Status.FAILED, evidence), action

    def _result(self, rule: Rule, host: Host, status: Status, evidence: dict[str, Any]) -> CheckResult:
        return CheckResult(
            rule_id=rule.id,
            host=host.name,
            status=status,
            severity=rule.severity,
            policy_version=self._policy.version,
            evidence=evidence,
            timestamp=self._clock(),
        )
