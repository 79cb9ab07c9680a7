"""Execution Engine: applies one remediation action to one host.

The engine never retries within a cycle and never records results itself;
it hands an ActionOutcome back to the reconciler.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Protocol

from ..probes.collector import FactCollector, FactUnavailable
from .models import Host, RemediationAction, Selector
from .predicates import Predicate

logger = logging.getLogger(__name__)


class ActionError(Exception):
    """Base class for remediation failures."""

    kind = "action_failure"

    def __init__(self, message: str, changed: bool = False) -> None:
        super().__init__(message)
        self.changed = changed


class ActionFailure(ActionError):
    """The executor reported that the desired state could not be applied."""


class ActionTimeout(ActionError):
    """The action did not finish within its timeout. Host state is unknown.

    ``abandoned`` is set when the engine stopped waiting while the executor
    call was still running, so it may yet change the host.
    """

    kind = "action_timeout"

    def __init__(self, message: str, changed: bool = False, *, abandoned: bool = False) -> None:
        super().__init__(message, changed)
        self.abandoned = abandoned


@dataclass(frozen=True)
class ApplyOutcome:
    """What the configuration-management layer reports for one request."""

    ok: bool
    changed: bool
    detail: str = ""


class Executor(Protocol):
    def apply(self, host: Host, selector: Selector, desired: dict[str, Any], *, timeout: float) -> ApplyOutcome: ...


@dataclass(frozen=True)
class RollbackOutcome:
    attempted: bool
    ok: bool
    detail: str

    def to_evidence(self) -> dict[str, Any]:
        return {"attempted": self.attempted, "ok": self.ok, "detail": self.detail}


@dataclass(frozen=True)
class ActionOutcome:
    succeeded: bool
    changed: bool
    detail: str = ""
    error: str | None = None
    rollback: RollbackOutcome | None = None

    def to_evidence(self) -> dict[str, Any]:
        evidence: dict[str, Any] = {"changed": self.changed, "detail": self.detail}
        if self.error:
            evidence["error"] = self.error
        if self.rollback is not None:
            evidence["rollback"] = self.rollback.to_evidence()
        return evidence


class ExecutionEngine:
    """Applies remediation actions with timeout, verification and rollback.

    ``timeout_grace`` is extra wall time granted to the executor beyond the
    action timeout before the engine gives up waiting on it, so executors
    that enforce the timeout themselves can report it first.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        collector: FactCollector | None = None,
        verify: bool = True,
        timeout_grace: float = 2.0,
    ) -> None:
        self._executor = executor
        self._collector = collector
        self._verify = verify
        self._timeout_grace = timeout_grace

    def apply(self, host: Host, action: RemediationAction, predicate: Predicate | None = None) -> ActionOutcome:
        logger.info("%s: remediating %s (%s)", host.name, action.rule_id, action.selector)
        try:
            outcome = self._call(host, action.selector, action.desired, action.timeout)
        except ActionTimeout as e:
            logger.error("%s: %s timed out: %s", host.name, action.rule_id, e)
            if e.abandoned:
                # A rollback now would race the action still running on the host
                logger.warning("%s: not rolling back %s, action still in flight", host.name, action.rule_id)
                return ActionOutcome(
                    succeeded=False,
                    changed=e.changed,
                    detail=str(e),
                    error=e.kind,
                    rollback=RollbackOutcome(
                        attempted=False, ok=False, detail="action still running on host, rollback not attempted",
                    ),
                )
            return self._failed(host, action, e.kind, str(e), changed=e.changed, rollback=True)
        except ActionError as e:
            logger.error("%s: %s failed: %s", host.name, action.rule_id, e)
            return self._failed(host, action, e.kind, str(e), changed=e.changed, rollback=e.changed)

        if not outcome.ok:
            logger.error("%s: %s failed: %s", host.name, action.rule_id, outcome.detail)
            return self._failed(
                host, action, ActionFailure.kind, outcome.detail or "executor reported failure",
                changed=outcome.changed, rollback=outcome.changed,
            )

        if self._verify and predicate is not None and self._collector is not None:
            problem = self._verification_problem(host, action, predicate)
            if problem:
                logger.error("%s: %s applied but %s", host.name, action.rule_id, problem)
                return self._failed(
                    host, action, ActionFailure.kind, f"verification failed: {problem}",
                    changed=outcome.changed, rollback=outcome.changed,
                )

        return ActionOutcome(succeeded=True, changed=outcome.changed, detail=outcome.detail)

    def _verification_problem(self, host: Host, action: RemediationAction, predicate: Predicate) -> str | None:
        try:
            fact = self._collector.observe(host, action.selector)
        except FactUnavailable as e:
            return f"could not re-observe {action.selector}: {e.reason}"
        if not predicate.matches(fact.value):
            return f"{action.selector} still does not match the desired state"
        return None

    def _failed(
        self,
        host: Host,
        action: RemediationAction,
        error: str,
        detail: str,
        *,
        changed: bool,
        rollback: bool,
    ) -> ActionOutcome:
        return ActionOutcome(
            succeeded=False,
            changed=changed,
            detail=detail,
            error=error,
            rollback=self._rollback(host, action) if rollback else None,
        )

    def _rollback(self, host: Host, action: RemediationAction) -> RollbackOutcome:
        if action.rollback is None:
            logger.warning("%s: cannot roll back %s, previous state not restorable", host.name, action.rule_id)
            return RollbackOutcome(attempted=False, ok=False, detail="previous state is not restorable")
        try:
            outcome = self._call(host, action.selector, action.rollback, action.timeout)
        except ActionError as e:
            logger.error("%s: rollback of %s failed: %s", host.name, action.rule_id, e)
            return RollbackOutcome(attempted=True, ok=False, detail=str(e))
        if not outcome.ok:
            logger.error("%s: rollback of %s failed: %s", host.name, action.rule_id, outcome.detail)
        else:
            logger.info("%s: rolled back %s", host.name, action.rule_id)
        return RollbackOutcome(attempted=True, ok=outcome.ok, detail=outcome.detail)

    def _call(self, host: Host, selector: Selector, desired: dict[str, Any], timeout: float) -> ApplyOutcome:
        # A hung executor thread is abandoned, not killed
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"action-{host.name}")
        try:
            future = pool.submit(self._executor.apply, host, selector, desired, timeout=timeout)
            try:
                return future.result(timeout=timeout + self._timeout_grace)
            except FuturesTimeout:
                raise ActionTimeout(f"no result after {timeout:g}s", abandoned=not future.done()) from None
        finally:
            pool.shutdown(wait=False)
