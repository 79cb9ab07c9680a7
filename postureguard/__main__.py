"""Entry point: python -m postureguard {run,compile,report} ..."""
from __future__ import annotations

import argparse
import contextlib
import json
import logging
import math
import os
import re
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Iterator

from . import __version__
from .core.audit import AuditLogError, JsonlAuditSink, MemoryAuditSink
from .core.compiler import CompileError, load_policy
from .core.execution import ExecutionEngine
from .core.fleet import DEFAULT_WORKERS, FleetReport, FleetRunner
from .core.models import SEVERITIES, Policy, Status
from .core.reconciler import CancelToken
from .executors.ansible import AnsibleExecutor
from .inventory.adapter import InventoryAdapter, InventoryError
from .probes.collector import DEFAULT_PROBE_CONCURRENCY, FactCollector

EXIT_CONVERGED = 0
EXIT_UNCONVERGED = 1
EXIT_COMPILE_ERROR = 2

_DEFAULT_POLICY = Path(__file__).resolve().parent / "policies" / "zero_trust_baseline.yaml"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    return args.handler(args)


def parse_duration(text: str) -> float:
    """Parse ``90``, ``30s``, ``5m``, ``1h30m`` or ``250ms`` into seconds."""
    text = text.strip().lower()
    try:
        seconds = float(text)
    except ValueError:
        parts = _DURATION_PART.findall(text)
        if not parts or "".join(n + u for n, u in parts) != text:
            raise ValueError(f"invalid duration: {text!r}") from None
        seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)
    if not math.isfinite(seconds) or seconds <= 0:
        raise ValueError(f"duration must be a positive number: {text!r}")
    return seconds


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="postureguard",
        description="Continuous compliance reconciliation for zero-trust host baselines",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Reconcile every inventory host against a policy")
    _add_common(run)
    run.add_argument("--policy", type=Path, default=_DEFAULT_POLICY, help="Path to policy YAML (default: bundled baseline)")
    run.add_argument("--inventory", type=Path, help="Path to inventory file (default: $POSTUREGUARD_INVENTORY or search path)")
    run.add_argument("--dry-run", action="store_true", help="Detect drift without remediating")
    run.add_argument("--cycle-timeout", help="Stop starting new rules after this long, e.g. 90s, 5m, 1h30m")
    run.add_argument("--workers", type=int, default=DEFAULT_WORKERS, help=f"Hosts reconciled in parallel (default: {DEFAULT_WORKERS})")
    run.add_argument(
        "--probe-concurrency", type=int, default=DEFAULT_PROBE_CONCURRENCY,
        help=f"Concurrent probes per host (default: {DEFAULT_PROBE_CONCURRENCY})",
    )
    run.add_argument("--audit-log", type=Path, help="Append check results to this JSON Lines file")
    run.add_argument("--json", action="store_true", dest="json_output", help="Output results as JSON")
    run.add_argument("--no-become", action="store_true", help="Do not escalate privileges when remediating")
    run.add_argument(
        "--fail-on",
        choices=list(SEVERITIES),
        default="low",
        help="Minimum severity of an unconverged rule that causes exit code 1 (default: low)",
    )
    run.set_defaults(handler=_cmd_run)

    comp = sub.add_parser("compile", help="Validate a policy and print its evaluation order")
    _add_common(comp)
    comp.add_argument("--policy", type=Path, default=_DEFAULT_POLICY, help="Path to policy YAML (default: bundled baseline)")
    comp.add_argument("--json", action="store_true", dest="json_output", help="Output as JSON")
    comp.set_defaults(handler=_cmd_compile)

    report = sub.add_parser("report", help="Query an audit log")
    _add_common(report)
    report.add_argument("--audit-log", type=Path, required=True, help="JSON Lines audit log written by 'run'")
    report.add_argument("--host", help="Only this host")
    report.add_argument("--rule", dest="rule_id", help="Only this rule id")
    report.add_argument("--status", choices=[s.value for s in Status], help="Only this status")
    report.add_argument("--since", help="ISO 8601 timestamp, inclusive")
    report.add_argument("--until", help="ISO 8601 timestamp, exclusive")
    report.set_defaults(handler=_cmd_report)

    return parser


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")


def _configure_logging(verbose: bool) -> None:
    if verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, os.environ.get("POSTUREGUARD_LOG_LEVEL", "WARNING").upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _cmd_run(args: argparse.Namespace) -> int:
    try:
        cycle_timeout = parse_duration(args.cycle_timeout) if args.cycle_timeout else None
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_COMPILE_ERROR
    if args.workers < 1 or args.probe_concurrency < 1:
        print("error: --workers and --probe-concurrency must be at least 1", file=sys.stderr)
        return EXIT_COMPILE_ERROR

    try:
        policy = load_policy(args.policy)
    except CompileError as e:
        print(f"error: policy compilation failed: {e}", file=sys.stderr)
        return EXIT_COMPILE_ERROR

    adapter = InventoryAdapter(inventory_path=args.inventory)
    if not adapter.detect():
        print("No inventory found.", file=sys.stderr)
        print(f"  searched: {', '.join(adapter.searched_locations())}", file=sys.stderr)
        print("Usage: postureguard run --inventory <hosts.yaml>", file=sys.stderr)
        return EXIT_COMPILE_ERROR
    try:
        hosts = adapter.hosts()
    except InventoryError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_COMPILE_ERROR

    if not hosts:
        print("Inventory is empty; nothing to reconcile.")
        return EXIT_CONVERGED

    try:
        sink = JsonlAuditSink(args.audit_log) if args.audit_log else MemoryAuditSink()
    except AuditLogError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_COMPILE_ERROR
    collector = FactCollector(max_concurrency=args.probe_concurrency)
    engine = None
    if not args.dry_run:
        engine = ExecutionEngine(
            AnsibleExecutor(become=not args.no_become),
            collector=collector,
            verify=policy.settings.verify,
        )
    runner = FleetRunner(policy, collector, engine, sink, workers=args.workers, dry_run=args.dry_run)

    cancel = CancelToken.with_timeout(cycle_timeout)
    try:
        with _cancel_on_interrupt(cancel):
            report = runner.run(hosts, cancel=cancel)
    except AuditLogError as e:
        # Reading the previous results failed before any host was touched
        print(f"error: {e}", file=sys.stderr)
        return EXIT_COMPILE_ERROR

    if args.json_output:
        print(json.dumps(_report_json(report, args), indent=2, default=str))
    else:
        _print_report(report)
    for error in report.audit_errors:
        print(f"error: audit log: {error}", file=sys.stderr)

    return report.exit_code(args.fail_on)


def _cmd_compile(args: argparse.Namespace) -> int:
    try:
        policy = load_policy(args.policy)
    except CompileError as e:
        print(f"error: policy compilation failed: {e}", file=sys.stderr)
        return EXIT_COMPILE_ERROR

    if args.json_output:
        print(json.dumps(_policy_json(policy, args.policy), indent=2))
        return EXIT_CONVERGED

    print(f"{policy.name} version {policy.short_version} ({len(policy.rules)} rules)")
    for i, rule in enumerate(policy.rules, start=1):
        after = f"  after {', '.join(rule.depends_on)}" if rule.depends_on else ""
        print(f"{i:3}. {rule.id} [{rule.severity}] {rule.selector}{after}")
    return EXIT_CONVERGED


def _cmd_report(args: argparse.Namespace) -> int:
    if not args.audit_log.is_file():
        print(f"error: audit log not found: {args.audit_log}", file=sys.stderr)
        return EXIT_COMPILE_ERROR
    try:
        since = datetime.fromisoformat(args.since) if args.since else None
        until = datetime.fromisoformat(args.until) if args.until else None
    except ValueError as e:
        print(f"error: invalid timestamp: {e}", file=sys.stderr)
        return EXIT_COMPILE_ERROR

    try:
        records = JsonlAuditSink(args.audit_log).query(
            host=args.host, rule_id=args.rule_id, status=args.status, since=since, until=until,
        )
    except AuditLogError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_COMPILE_ERROR

    for record in records:
        print(json.dumps(record.to_dict(), sort_keys=True, default=str))
    return EXIT_CONVERGED


@contextlib.contextmanager
def _cancel_on_interrupt(cancel: CancelToken) -> Iterator[None]:
    """Turn the first Ctrl-C into a cooperative cancel; in-flight actions finish."""
    def handler(signum, frame):
        print("interrupt: finishing in-flight actions, skipping remaining rules", file=sys.stderr)
        cancel.cancel("interrupted")
        signal.signal(signal.SIGINT, previous)

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # Not the main thread; signals cannot be installed here
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _print_report(report: FleetReport) -> None:
    policy = report.policy
    for host, cycle in report.cycles.items():
        print(f"{host}  (policy {policy.name} @ {policy.short_version})")
        for result in cycle.results:
            title = policy.rule(result.rule_id).title
            line = f"  [{result.status.value.upper():10}] {result.rule_id}: {title}"
            note = _result_note(result.evidence)
            if note:
                line += f"  ({note})"
            print(line)
        if cycle.cancelled:
            print("  cycle cancelled before every rule was evaluated")
        print()

    counts = ", ".join(f"{k}={v}" for k, v in report.counts().items() if v)
    print(f"{len(report.cycles)} hosts: {counts or 'no rules evaluated'}")


def _result_note(evidence: dict) -> str:
    if "error" in evidence:
        detail = evidence.get("detail")
        if detail is None and isinstance(evidence.get("remediation"), dict):
            detail = evidence["remediation"].get("detail")
        return f"{evidence['error']}: {detail}" if detail else evidence["error"]
    if evidence.get("reason") == "dependency_skipped":
        return f"blocked by {', '.join(evidence.get('blocked_by', []))}"
    if evidence.get("reason"):
        return str(evidence["reason"])
    if isinstance(evidence.get("remediation"), str):
        return f"remediation: {evidence['remediation']}"
    return ""


def _report_json(report: FleetReport, args: argparse.Namespace) -> dict:
    policy = report.policy
    return {
        "meta": {
            "schema_version": "0.1",
            "tool_version": __version__,
            "policy": policy.name,
            "policy_version": policy.version,
            "policy_path": str(args.policy),
            "dry_run": args.dry_run,
            "audit_errors": report.audit_errors,
        },
        "hosts": {
            host: {
                "counts": cycle.counts(),
                "cancelled": cycle.cancelled,
                "retried": cycle.retried,
                "results": [r.to_record() for r in cycle.results],
            }
            for host, cycle in report.cycles.items()
        },
    }


def _policy_json(policy: Policy, path: Path) -> dict:
    return {
        "policy": policy.name,
        "version": policy.version,
        "policy_path": str(path),
        "settings": {
            "timeout": policy.settings.timeout,
            "auto_remediate": sorted(policy.settings.auto_remediate, key=SEVERITIES.index),
            "verify": policy.settings.verify,
        },
        "rules": [
            {
                "id": rule.id,
                "title": rule.title,
                "severity": rule.severity,
                "resource": str(rule.selector),
                "depends_on": list(rule.depends_on),
                "timeout": policy.timeout_for(rule),
                "auto_remediate": policy.may_remediate(rule),
            }
            for rule in policy.rules
        ],
    }


if __name__ == "__main__":
    sys.exit(main())
