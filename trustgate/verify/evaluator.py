from __future__ import annotations

import json
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any

from trustgate.logger import log_event
from trustgate.verify.result import PolicyInput, Violation


class PolicyEvaluationError(Exception):
    pass


OPA_REQUIRED_MESSAGE = (
    "OPA (Open Policy Agent) is required for policy evaluation but was not found on PATH. "
    "Install it from https://www.openpolicyagent.org/docs/latest/#running-opa"
)

DEFAULT_RULE = "policy-violation"
DEFAULT_SEVERITY = "critical"
DEFAULT_RESULT = "fail"
DEFAULT_MESSAGE = "Policy deny rule triggered"


def _find_tool(name: str) -> str | None:
    return shutil.which(name)


def _run_tool(argv: list[str], timeout_seconds: int) -> subprocess.CompletedProcess:
    return subprocess.run(
        argv,
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
    )


def has_policies(policy_dir) -> bool:
    path = Path(policy_dir)
    if not path.is_dir():
        return False
    return any(p.is_file() for p in path.rglob("*.rego"))


def evaluate_policy(policy_dir, policy_input: PolicyInput, settings) -> list[Violation]:
    if not has_policies(policy_dir):
        log_event("evaluator", f"no_policy_loaded dir={policy_dir}")
        return []

    binary = _find_tool(settings.binary)
    if binary is None:
        if settings.allow_missing:
            log_event("evaluator", f"evaluator_missing binary={settings.binary} allow_missing=1 violation=opa-required")
        else:
            log_event("evaluator", f"evaluator_missing binary={settings.binary} violation=opa-required")
        return [Violation(rule="opa-required", severity="critical", message=OPA_REQUIRED_MESSAGE)]

    fd, input_path = tempfile.mkstemp(prefix="trustgate-input-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(policy_input.to_dict(), handle, sort_keys=True)

        argv = [
            binary,
            "eval",
            "--data",
            str(policy_dir),
            "--input",
            input_path,
            "--format",
            "json",
            settings.decision_path,
        ]
        try:
            proc = _run_tool(argv, settings.timeout_seconds)
        except subprocess.TimeoutExpired as exc:
            log_event("evaluator", f"timeout seconds={settings.timeout_seconds}")
            raise PolicyEvaluationError(
                f"policy evaluation timed out after {settings.timeout_seconds}s"
            ) from exc
        except OSError as exc:
            raise PolicyEvaluationError(f"policy evaluation failed to start: {exc}") from exc
    finally:
        try:
            os.unlink(input_path)
        except FileNotFoundError:
            pass

    if proc.returncode != 0:
        stderr = (proc.stderr or "").strip()
        log_event("evaluator", f"eval_failed exit={proc.returncode} stderr={stderr}")
        raise PolicyEvaluationError(f"policy evaluation failed (exit {proc.returncode}): {stderr}")

    try:
        payload = json.loads(proc.stdout or "")
    except ValueError as exc:
        raise PolicyEvaluationError(f"failed to parse evaluator output: {exc}") from exc

    violations = decode_evaluator_output(payload)
    log_event("evaluator", f"evaluated dir={policy_dir} violations={len(violations)}")
    return violations


def decode_evaluator_output(payload: Any) -> list[Violation]:
    """Translate an `opa eval --format json` document into violations.

    Both the `violations` list and the legacy `deny` list are read, in that
    order, and merged. Fields the policy supplies are kept as-is.
    """
    value = _first_expression_value(payload)
    if value is None:
        return []
    if not isinstance(value, dict):
        raise PolicyEvaluationError("evaluator result is not an object")

    violations = []
    for key in ("violations", "deny"):
        entries = value.get(key)
        if entries is None:
            continue
        if not isinstance(entries, list):
            raise PolicyEvaluationError(f"evaluator result field '{key}' is not a list")
        for entry in entries:
            violations.append(_decode_entry(entry))
    return violations


def _first_expression_value(payload):
    if not isinstance(payload, dict):
        raise PolicyEvaluationError("evaluator output is not an object")
    results = payload.get("result")
    if not results:
        return None
    if not isinstance(results, list) or not isinstance(results[0], dict):
        raise PolicyEvaluationError("evaluator output has malformed result list")
    expressions = results[0].get("expressions")
    if not expressions:
        return None
    if not isinstance(expressions, list) or not isinstance(expressions[0], dict):
        raise PolicyEvaluationError("evaluator output has malformed expressions")
    return expressions[0].get("value")


def _decode_entry(entry) -> Violation:
    if isinstance(entry, str):
        return Violation(rule=DEFAULT_RULE, severity=DEFAULT_SEVERITY, message=entry, result=DEFAULT_RESULT)
    if not isinstance(entry, dict):
        raise PolicyEvaluationError(f"unsupported violation entry: {entry!r}")
    return Violation(
        rule=_field(entry, "rule", DEFAULT_RULE),
        severity=_field(entry, "severity", DEFAULT_SEVERITY),
        result=_field(entry, "result", DEFAULT_RESULT),
        message=_field(entry, "message", DEFAULT_MESSAGE),
    )


def _field(entry, key, default):
    value = entry.get(key)
    if value is None:
        return default
    return str(value)
