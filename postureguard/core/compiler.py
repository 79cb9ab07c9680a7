from __future__ import annotations

import hashlib
import heapq
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from .models import SEVERITIES, Policy, PolicySettings, Rule, Selector
from .predicates import build_predicate, validate_predicate

logger = logging.getLogger(__name__)

_REQUIRED_RULE_KEYS = {"title", "severity", "resource", "desired"}
_KNOWN_RULE_KEYS = _REQUIRED_RULE_KEYS | {"id", "depends_on", "timeout", "auto_remediate"}
_KNOWN_SETTINGS_KEYS = {"timeout", "auto_remediate", "verify"}


class CompileErrorKind(str, Enum):
    DUPLICATE_RULE = "duplicate_rule"
    UNRESOLVED_DEPENDENCY = "unresolved_dependency"
    CYCLIC_DEPENDENCY = "cyclic_dependency"
    INVALID_RULE = "invalid_rule"
    INVALID_DOCUMENT = "invalid_document"


class CompileError(Exception):
    """Raised when a policy document cannot be compiled. Nothing is kept."""

    def __init__(self, kind: CompileErrorKind, details: list[str], rule_ids: Iterable[str] = ()) -> None:
        self.kind = kind
        self.details = list(details)
        self.rule_ids = list(rule_ids)
        joined = "\n  ".join(self.details)
        super().__init__(f"{kind.value}:\n  {joined}" if len(self.details) > 1 else f"{kind.value}: {joined}")


def load_policy(policy_path: Path) -> Policy:
    """Read, validate and compile a YAML policy file."""
    policy_path = Path(policy_path)
    try:
        text = policy_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, [f"policy file not found: {policy_path}"]) from None
    except OSError as e:
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, [f"{policy_path}: {e}"]) from None

    try:
        root = yaml.compose(text, Loader=yaml.SafeLoader)
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, [f"{policy_path}: invalid YAML: {e}"]) from None

    policy = compile_policy(document, source=str(policy_path), duplicate_ids=_duplicate_rule_keys(root))
    logger.info("Compiled policy %s (%d rules, version %s)", policy.name, len(policy.rules), policy.short_version)
    return policy


def compile_policy(document: Any, *, source: str = "<policy>", duplicate_ids: Iterable[str] = ()) -> Policy:
    """Turn a parsed policy document into a topologically ordered Policy.

    ``duplicate_ids`` carries rule IDs that appeared more than once in the
    source text but were collapsed by the YAML parser.
    """
    if not isinstance(document, dict):
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, [f"{source}: expected a YAML mapping at top level"])

    raw_rules = document.get("rules")
    if raw_rules is None:
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, [f"{source}: missing 'rules'"])
    entries, shape_errors = _rule_entries(raw_rules, source)
    if shape_errors:
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, shape_errors)

    duplicates = sorted(set(duplicate_ids) | _duplicates(rule_id for rule_id, _ in entries))
    if duplicates:
        raise CompileError(
            CompileErrorKind.DUPLICATE_RULE,
            [f"rule id '{d}' is declared more than once" for d in duplicates],
            duplicates,
        )

    settings, settings_errors = _compile_settings(document.get("settings"))
    errors = settings_errors + _validate_rules(entries)
    if errors:
        raise CompileError(CompileErrorKind.INVALID_RULE, errors)

    rules = [_build_rule(rule_id, body) for rule_id, body in entries]
    known = {r.id for r in rules}

    unresolved = [
        (rule.id, dep) for rule in rules for dep in rule.depends_on if dep not in known
    ]
    if unresolved:
        raise CompileError(
            CompileErrorKind.UNRESOLVED_DEPENDENCY,
            [f"rule '{rid}' depends on unknown rule '{dep}'" for rid, dep in unresolved],
            [rid for rid, _ in unresolved],
        )

    graph = {r.id: list(r.depends_on) for r in rules}
    cycle = find_cycle(graph)
    if cycle:
        raise CompileError(
            CompileErrorKind.CYCLIC_DEPENDENCY,
            [f"dependency cycle: {' -> '.join(cycle)}"],
            cycle[:-1],
        )

    return Policy(
        name=str(document.get("policy") or Path(source).stem),
        version=policy_hash(document),
        rules=tuple(topological_order(rules)),
        settings=settings,
    )


def policy_hash(document: Any) -> str:
    """Content hash of the parsed document, independent of key order and formatting."""
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def find_cycle(graph: Mapping[str, list[str]]) -> list[str] | None:
    """Depth-first search for a dependency cycle.

    Returns the cycle as a path that starts and ends on the same node, or
    None when the graph is acyclic. Edges point from a rule to the rules it
    depends on.
    """
    visiting: set[str] = set()
    visited: set[str] = set()
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        stack.append(node)
        for dep in graph.get(node, ()):
            if dep in visiting:
                return stack[stack.index(dep):] + [dep]
            if dep not in visited:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        visiting.discard(node)
        visited.add(node)
        return None

    for node in graph:
        if node not in visited:
            found = visit(node)
            if found:
                return found
    return None


def topological_order(rules: list[Rule]) -> list[Rule]:
    """Order rules so dependencies come first; unrelated rules keep declaration order."""
    index = {r.id: i for i, r in enumerate(rules)}
    waiting = {r.id: len(set(r.depends_on)) for r in rules}
    dependents: dict[str, list[str]] = {r.id: [] for r in rules}
    for r in rules:
        for dep in set(r.depends_on):
            dependents[dep].append(r.id)

    ready = [index[rid] for rid, count in waiting.items() if count == 0]
    heapq.heapify(ready)
    ordered: list[Rule] = []
    while ready:
        rule = rules[heapq.heappop(ready)]
        ordered.append(rule)
        for child in dependents[rule.id]:
            waiting[child] -= 1
            if waiting[child] == 0:
                heapq.heappush(ready, index[child])

    if len(ordered) != len(rules):
        raise ValueError("dependency graph contains a cycle")
    return ordered


def _rule_entries(raw_rules: Any, source: str) -> tuple[list[tuple[str, Any]], list[str]]:
    """Normalize mapping or list form into ordered (rule_id, body) pairs."""
    errors: list[str] = []
    entries: list[tuple[str, Any]] = []
    if isinstance(raw_rules, dict):
        for rule_id, body in raw_rules.items():
            entries.append((str(rule_id), body))
    elif isinstance(raw_rules, list):
        for i, body in enumerate(raw_rules):
            if not isinstance(body, dict):
                errors.append(f"rules[{i}]: expected dict, got {type(body).__name__}")
                continue
            if "id" not in body:
                errors.append(f"rules[{i}]: missing key 'id'")
                continue
            entries.append((str(body["id"]), body))
    else:
        errors.append(f"{source}: 'rules' must be a mapping or a list, got {type(raw_rules).__name__}")
    return entries, errors


def _duplicates(ids: Iterable[str]) -> set[str]:
    seen: set[str] = set()
    dupes: set[str] = set()
    for rule_id in ids:
        if rule_id in seen:
            dupes.add(rule_id)
        seen.add(rule_id)
    return dupes


def _duplicate_rule_keys(root: yaml.Node | None) -> set[str]:
    """Find repeated keys directly under a top-level ``rules`` mapping node."""
    if not isinstance(root, yaml.MappingNode):
        return set()
    for key_node, value_node in root.value:
        if isinstance(key_node, yaml.ScalarNode) and key_node.value == "rules":
            if isinstance(value_node, yaml.MappingNode):
                return _duplicates(
                    k.value for k, _ in value_node.value if isinstance(k, yaml.ScalarNode)
                )
    return set()


def _compile_settings(raw: Any) -> tuple[PolicySettings, list[str]]:
    errors: list[str] = []
    if raw is None:
        return PolicySettings(), errors
    if not isinstance(raw, dict):
        return PolicySettings(), [f"settings: expected dict, got {type(raw).__name__}"]

    unknown = sorted(set(raw) - _KNOWN_SETTINGS_KEYS)
    if unknown:
        errors.append(f"settings: unknown keys: {', '.join(unknown)}")

    defaults = PolicySettings()
    timeout = raw.get("timeout", defaults.timeout)
    if not _is_positive_number(timeout):
        errors.append(f"settings.timeout: expected a positive number, got {timeout!r}")
        timeout = defaults.timeout

    severities = raw.get("auto_remediate", list(defaults.auto_remediate))
    if severities is True:
        severities = list(SEVERITIES)
    elif severities is False or severities is None:
        severities = []
    if not isinstance(severities, list) or any(s not in SEVERITIES for s in severities):
        errors.append(f"settings.auto_remediate: expected a list drawn from {list(SEVERITIES)}")
        severities = []

    verify = raw.get("verify", defaults.verify)
    if not isinstance(verify, bool):
        errors.append(f"settings.verify: expected bool, got {type(verify).__name__}")
        verify = defaults.verify

    return PolicySettings(timeout=float(timeout), auto_remediate=frozenset(severities), verify=verify), errors


def _validate_rules(entries: list[tuple[str, Any]]) -> list[str]:
    """Validate that every rule has required keys and a well-formed desired state."""
    errors: list[str] = []
    for rule_id, body in entries:
        where = f"rules.{rule_id}"
        if not isinstance(body, dict):
            errors.append(f"{where}: expected dict, got {type(body).__name__}")
            continue
        missing = _REQUIRED_RULE_KEYS - body.keys()
        if missing:
            errors.append(f"{where}: missing keys: {sorted(missing)}")
        unknown = sorted(set(body) - _KNOWN_RULE_KEYS)
        if unknown:
            errors.append(f"{where}: unknown keys: {', '.join(unknown)}")
        if "severity" in body and body["severity"] not in SEVERITIES:
            errors.append(f"{where}: unknown severity '{body['severity']}' (valid: {', '.join(SEVERITIES)})")

        selector = None
        if "resource" in body:
            try:
                selector = Selector.parse(body["resource"])
            except ValueError as e:
                errors.append(f"{where}.resource: {e}")
        if selector is not None and "desired" in body:
            errors.extend(validate_predicate(selector.kind, body["desired"], path=f"{where}.desired"))

        deps = body.get("depends_on", [])
        if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
            errors.append(f"{where}.depends_on: expected a list of rule ids")
        if "timeout" in body and not _is_positive_number(body["timeout"]):
            errors.append(f"{where}.timeout: expected a positive number, got {body['timeout']!r}")
        if "auto_remediate" in body and not isinstance(body["auto_remediate"], bool):
            errors.append(f"{where}.auto_remediate: expected bool")
    return errors


def _build_rule(rule_id: str, body: dict) -> Rule:
    selector = Selector.parse(body["resource"])
    deps: list[str] = []
    for dep in body.get("depends_on", []):
        if dep not in deps:
            deps.append(dep)
    return Rule(
        id=rule_id,
        title=str(body["title"]),
        severity=body["severity"],
        selector=selector,
        predicate=build_predicate(selector.kind, body["desired"]),
        depends_on=tuple(deps),
        timeout=float(body["timeout"]) if "timeout" in body else None,
        auto_remediate=body.get("auto_remediate"),
    )


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
