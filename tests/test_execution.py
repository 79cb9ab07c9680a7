import threading

from conftest import FakeExecutor, FakeSystem, fake_collector
from postureguard.core.execution import ActionFailure, ActionTimeout, ApplyOutcome, ExecutionEngine
from postureguard.core.models import Host, RemediationAction, Selector
from postureguard.core.predicates import KernelParam

HOST = Host(name="web-01")
SELECTOR = Selector("sysctl", "net.ipv4.ip_forward")
PREDICATE = KernelParam(value="0")


def _action(rollback={"value": "1"}, timeout=5.0):
    return RemediationAction(
        rule_id="KRN-001",
        host=HOST.name,
        selector=SELECTOR,
        desired={"value": "0"},
        rollback=rollback,
        timeout=timeout,
    )


def _system():
    return FakeSystem({"sysctl:net.ipv4.ip_forward": "1"})


class HangingExecutor:
    """Blocks on the first request until released; answers later ones at once."""

    def __init__(self):
        self.release = threading.Event()
        self.requests = []

    def apply(self, host, selector, desired, *, timeout):
        self.requests.append(desired)
        if len(self.requests) == 1:
            self.release.wait(5)
        return ApplyOutcome(ok=True, changed=True, detail="changed")


class TimingOutExecutor:
    """Reports a timeout for the first request, as ansible does when its own timer fires."""

    def __init__(self):
        self.requests = []

    def apply(self, host, selector, desired, *, timeout):
        self.requests.append(desired)
        if len(self.requests) == 1:
            raise ActionTimeout(f"kernel param on {host.name} timed out after {timeout:g}s")
        return ApplyOutcome(ok=True, changed=True, detail="changed")


class RaisingExecutor:
    def apply(self, host, selector, desired, *, timeout):
        raise ActionFailure("host unreachable: ssh: connect to host web-01 port 22: Connection refused")


# --- success ---

def test_successful_action_is_verified():
    system = _system()
    engine = ExecutionEngine(FakeExecutor(system), collector=fake_collector(system), timeout_grace=0)

    outcome = engine.apply(HOST, _action(), PREDICATE)

    assert outcome.succeeded is True
    assert outcome.changed is True
    assert outcome.rollback is None
    assert system.value("sysctl:net.ipv4.ip_forward") == "0"


def test_verification_can_be_disabled():
    system = _system()
    system.ignored.add(SELECTOR)
    engine = ExecutionEngine(FakeExecutor(system), collector=fake_collector(system), verify=False)

    assert engine.apply(HOST, _action(), PREDICATE).succeeded is True


def test_evidence_shape():
    system = _system()
    engine = ExecutionEngine(FakeExecutor(system))
    assert engine.apply(HOST, _action()).to_evidence() == {"changed": True, "detail": "changed"}


# --- timeout ---

def test_hung_executor_times_out_without_racing_a_rollback():
    executor = HangingExecutor()
    engine = ExecutionEngine(executor, timeout_grace=0)
    try:
        outcome = engine.apply(HOST, _action(timeout=0.2))
        requests = list(executor.requests)
    finally:
        executor.release.set()

    assert outcome.succeeded is False
    assert outcome.error == "action_timeout"
    assert "no result after 0.2s" in outcome.detail
    assert outcome.rollback.attempted is False
    assert outcome.rollback.detail == "action still running on host, rollback not attempted"
    assert requests == [{"value": "0"}]


def test_executor_reported_timeout_rolls_back():
    executor = TimingOutExecutor()
    outcome = ExecutionEngine(executor, timeout_grace=0).apply(HOST, _action(timeout=0.2))

    assert outcome.error == "action_timeout"
    assert outcome.rollback.attempted is True
    assert outcome.rollback.ok is True
    assert executor.requests == [{"value": "0"}, {"value": "1"}]


def test_timeout_without_restorable_state():
    executor = TimingOutExecutor()
    outcome = ExecutionEngine(executor, timeout_grace=0).apply(HOST, _action(rollback=None, timeout=0.2))

    assert outcome.rollback.attempted is False
    assert outcome.rollback.detail == "previous state is not restorable"
    assert executor.requests == [{"value": "0"}]


# --- failure ---

def test_failure_without_change_does_not_roll_back():
    system = _system()
    system.failing[SELECTOR] = False
    engine = ExecutionEngine(FakeExecutor(system))

    outcome = engine.apply(HOST, _action())

    assert outcome.succeeded is False
    assert outcome.error == "action_failure"
    assert outcome.detail == "simulated failure"
    assert outcome.rollback is None
    assert len(system.calls) == 1


def test_partial_failure_rolls_back():
    system = _system()
    system.failing[SELECTOR] = True
    engine = ExecutionEngine(FakeExecutor(system))

    outcome = engine.apply(HOST, _action())

    assert outcome.changed is True
    assert outcome.rollback.attempted is True
    assert outcome.rollback.ok is True
    assert system.value("sysctl:net.ipv4.ip_forward") == "1"
    assert outcome.to_evidence()["rollback"] == {"attempted": True, "ok": True, "detail": "changed"}


def test_executor_exception_becomes_failed_outcome():
    engine = ExecutionEngine(RaisingExecutor())

    outcome = engine.apply(HOST, _action())

    assert outcome.succeeded is False
    assert outcome.error == "action_failure"
    assert "Connection refused" in outcome.detail


def test_verification_failure_rolls_back():
    system = _system()
    system.ignored.add(SELECTOR)
    engine = ExecutionEngine(FakeExecutor(system), collector=fake_collector(system))

    outcome = engine.apply(HOST, _action(), PREDICATE)

    assert outcome.succeeded is False
    assert outcome.detail.startswith("verification failed:")
    assert outcome.rollback.attempted is True


def test_verification_when_fact_disappears():
    system = _system()
    engine = ExecutionEngine(FakeExecutor(system), collector=fake_collector(system))
    system.unavailable.add(SELECTOR)

    outcome = engine.apply(HOST, _action(), PREDICATE)

    assert outcome.succeeded is False
    assert "could not re-observe" in outcome.detail
