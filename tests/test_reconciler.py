import copy
import dataclasses

from conftest import EXAMPLE_DOCUMENT, FIXED_TIME, FakeExecutor, FakeSystem, fake_collector
from postureguard.core.compiler import compile_policy
from postureguard.core.execution import ExecutionEngine
from postureguard.core.models import CheckResult, Host, Selector, Status
from postureguard.core.reconciler import CancelToken, Reconciler

IP_FORWARD = Selector("sysctl", "net.ipv4.ip_forward")
DMZ = Selector("firewall", "dmz")


def _engine(system):
    return ExecutionEngine(FakeExecutor(system), collector=fake_collector(system), timeout_grace=0)


def _cycle(policy, system, host, *, dry_run=False, cancel=None, baseline=None, engine=None):
    facts = fake_collector(system).collect(host, policy.selectors())
    reconciler = Reconciler(
        policy, None if dry_run else (engine or _engine(system)), clock=lambda: FIXED_TIME,
    )
    return reconciler.reconcile(host, facts, cancel=cancel, baseline=baseline)


def _statuses(report):
    return [(r.rule_id, r.status) for r in report.results]


# --- convergence ---

def test_drift_is_remediated_in_dependency_order(example_policy, drifted_system, host):
    report = _cycle(example_policy, drifted_system, host)

    assert _statuses(report) == [("A", Status.REMEDIATED), ("B", Status.REMEDIATED)]
    assert [a.rule_id for a in report.actions] == ["A", "B"]
    assert [call[1] for call in drifted_system.calls] == [IP_FORWARD, DMZ]
    assert report.converged is True


def test_second_cycle_is_compliant_with_no_actions(example_policy, drifted_system, host):
    _cycle(example_policy, drifted_system, host)
    drifted_system.calls.clear()

    report = _cycle(example_policy, drifted_system, host)

    assert _statuses(report) == [("A", Status.COMPLIANT), ("B", Status.COMPLIANT)]
    assert report.actions == []
    assert drifted_system.calls == []


def test_compliant_evidence_records_observed_value(example_policy, host):
    system = FakeSystem({"sysctl:net.ipv4.ip_forward": "0", "firewall:dmz": True})
    report = _cycle(example_policy, system, host)
    evidence = report.results[0].evidence
    assert evidence["selector"] == "sysctl:net.ipv4.ip_forward"
    assert evidence["desired"] == {"value": "0"}
    assert evidence["observed"] == "0"


def test_rollback_payload_captures_previous_value(example_policy, drifted_system, host):
    report = _cycle(example_policy, drifted_system, host)
    assert report.actions[0].rollback == {"value": "1"}
    assert report.actions[1].rollback == {"present": False}


# --- failure propagation ---

def test_failed_dependency_skips_dependents(example_policy, drifted_system, host):
    drifted_system.failing[IP_FORWARD] = False

    report = _cycle(example_policy, drifted_system, host)

    assert _statuses(report) == [("A", Status.FAILED), ("B", Status.SKIPPED)]
    b = report.results[1]
    assert b.evidence["reason"] == "dependency_skipped"
    assert b.evidence["blocked_by"] == ["A"]
    assert [call[1] for call in drifted_system.calls] == [IP_FORWARD]
    assert drifted_system.value("firewall:dmz") is False


def test_skip_propagates_transitively(host):
    document = copy.deepcopy(EXAMPLE_DOCUMENT)
    document["rules"]["C"] = {
        "title": "public ssh",
        "severity": "low",
        "resource": "firewall:public/service:ssh",
        "desired": {"present": True},
        "depends_on": ["B"],
    }
    policy = compile_policy(document)
    system = FakeSystem({
        "sysctl:net.ipv4.ip_forward": "1",
        "firewall:dmz": False,
        "firewall:public/service:ssh": False,
    })
    system.failing[IP_FORWARD] = False

    report = _cycle(policy, system, host)

    assert _statuses(report) == [("A", Status.FAILED), ("B", Status.SKIPPED), ("C", Status.SKIPPED)]
    assert report.results[2].evidence["blocked_by"] == ["B"]


def test_unavailable_fact_only_fails_its_rule(host):
    document = copy.deepcopy(EXAMPLE_DOCUMENT)
    document["rules"]["C"] = {
        "title": "auditd running",
        "severity": "high",
        "resource": "service:auditd",
        "desired": {"state": "running"},
    }
    policy = compile_policy(document)
    system = FakeSystem({
        "sysctl:net.ipv4.ip_forward": "0",
        "firewall:dmz": True,
        "service:auditd": {"active": "active", "enabled": "enabled"},
    })
    system.unavailable.add(IP_FORWARD)

    report = _cycle(policy, system, host)

    assert report.status_of("A") == Status.FAILED
    assert report.results[0].evidence["error"] == "fact_unavailable"
    assert report.status_of("B") == Status.SKIPPED
    assert report.status_of("C") == Status.COMPLIANT


def test_unreachable_host_fails_every_root_rule(example_policy, drifted_system):
    report = _cycle(example_policy, drifted_system, Host(name="gone", reachable=False))
    assert _statuses(report) == [("A", Status.FAILED), ("B", Status.SKIPPED)]
    assert "unreachable" in report.results[0].evidence["detail"]
    assert drifted_system.calls == []


def test_timeout_fails_rule_and_rolls_back(example_policy, drifted_system, host):
    drifted_system.timing_out.add(IP_FORWARD)

    report = _cycle(example_policy, drifted_system, host)

    a = report.results[0]
    assert a.status == Status.FAILED
    assert a.evidence["error"] == "action_timeout"
    assert a.evidence["remediation"]["rollback"]["attempted"] is True
    assert drifted_system.value("sysctl:net.ipv4.ip_forward") == "1"
    assert report.status_of("B") == Status.SKIPPED


def test_applied_but_not_effective_is_a_failure(example_policy, drifted_system, host):
    drifted_system.ignored.add(IP_FORWARD)

    report = _cycle(example_policy, drifted_system, host)

    a = report.results[0]
    assert a.status == Status.FAILED
    assert "verification failed" in a.evidence["remediation"]["detail"]


def test_failed_action_is_not_reapplied_in_the_same_cycle(example_policy, drifted_system, host):
    drifted_system.ignored.add(IP_FORWARD)

    _cycle(example_policy, drifted_system, host)

    # apply, then rollback to the captured value; never a second apply
    assert [desired for _, selector, desired in drifted_system.calls if selector == IP_FORWARD] == [
        {"value": "0"}, {"value": "1"},
    ]


def test_repeated_rule_id_in_hand_built_policy_is_applied_once(example_policy, drifted_system, host):
    first = example_policy.rules[0]
    policy = dataclasses.replace(example_policy, rules=example_policy.rules + (first,))

    report = _cycle(policy, drifted_system, host)

    assert _statuses(report) == [("A", Status.REMEDIATED), ("B", Status.REMEDIATED), ("A", Status.DRIFTED)]
    assert report.results[2].evidence["remediation"] == "already_applied"
    assert [a.rule_id for a in report.actions] == ["A", "B"]
    assert sum(1 for _, selector, _ in drifted_system.calls if selector == IP_FORWARD) == 1


# --- gating ---

def test_dry_run_reports_drift_without_acting(example_policy, drifted_system, host):
    report = _cycle(example_policy, drifted_system, host, dry_run=True)

    assert _statuses(report) == [("A", Status.DRIFTED), ("B", Status.SKIPPED)]
    assert report.results[0].evidence["remediation"] == "dry_run"
    assert report.actions == []
    assert drifted_system.calls == []


def test_approval_required_below_auto_remediate_threshold(drifted_system, host):
    document = copy.deepcopy(EXAMPLE_DOCUMENT)
    document["settings"] = {"auto_remediate": ["critical"]}
    policy = compile_policy(document)

    report = _cycle(policy, drifted_system, host)

    assert report.status_of("A") == Status.DRIFTED
    assert report.results[0].evidence["remediation"] == "approval_required"
    assert drifted_system.calls == []


# --- cancellation ---

def test_cancelled_before_start_skips_everything(example_policy, drifted_system, host):
    token = CancelToken()
    token.cancel("operator interrupt")

    report = _cycle(example_policy, drifted_system, host, cancel=token)

    assert report.cancelled is True
    assert all(r.status == Status.SKIPPED for r in report.results)
    assert report.results[0].evidence == {"reason": "cycle_cancelled", "detail": "operator interrupt"}
    assert drifted_system.calls == []


def test_cancel_takes_effect_at_rule_boundary(example_policy, drifted_system, host):
    token = CancelToken()

    class CancellingExecutor(FakeExecutor):
        def apply(self, *args, **kwargs):
            outcome = super().apply(*args, **kwargs)
            token.cancel()
            return outcome

    engine = ExecutionEngine(
        CancellingExecutor(drifted_system), collector=fake_collector(drifted_system), timeout_grace=0,
    )
    report = _cycle(example_policy, drifted_system, host, cancel=token, engine=engine)

    assert _statuses(report) == [("A", Status.REMEDIATED), ("B", Status.SKIPPED)]
    assert report.results[1].evidence["reason"] == "cycle_cancelled"


def test_expired_deadline_cancels():
    token = CancelToken(deadline=0.0)
    assert token.cancelled is True
    assert token.reason == "cycle timeout reached"


def test_token_without_deadline_stays_open():
    assert CancelToken.with_timeout(None).cancelled is False


# --- retries and determinism ---

def test_previous_failure_is_reported_as_retry(example_policy, drifted_system, host):
    previous = CheckResult(
        rule_id="A", host=host.name, status=Status.FAILED, severity="high",
        policy_version=example_policy.version, timestamp=FIXED_TIME,
    )

    report = _cycle(example_policy, drifted_system, host, baseline={"A": previous})

    assert report.retried == ["A"]
    assert report.status_of("A") == Status.REMEDIATED


def test_identical_inputs_give_identical_results(example_policy, host):
    def run():
        system = FakeSystem({"sysctl:net.ipv4.ip_forward": "1", "firewall:dmz": False})
        return [r.canonical() for r in _cycle(example_policy, system, host).results]

    assert run() == run()


def test_counts_and_unconverged(example_policy, drifted_system, host):
    drifted_system.failing[IP_FORWARD] = False
    report = _cycle(example_policy, drifted_system, host)

    assert report.counts() == {"compliant": 0, "drifted": 0, "remediated": 0, "failed": 1, "skipped": 1}
    assert [r.rule_id for r in report.unconverged("high")] == ["A"]
    assert [r.rule_id for r in report.unconverged("low")] == ["A", "B"]
    assert report.converged is False


def test_plain_host_name_is_accepted(example_policy):
    system = FakeSystem({"sysctl:net.ipv4.ip_forward": "0", "firewall:dmz": True})
    facts = fake_collector(system).collect(Host("db-01"), example_policy.selectors())
    report = Reconciler(example_policy).reconcile("db-01", facts)
    assert report.host == "db-01"
    assert report.converged is True
