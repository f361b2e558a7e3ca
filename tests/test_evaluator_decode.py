import json
import os
import subprocess

import pytest

from trustgate.config import EvaluatorSettings
from trustgate.verify.evaluator import (
    OPA_REQUIRED_MESSAGE,
    PolicyEvaluationError,
    decode_evaluator_output,
    evaluate_policy,
)
from trustgate.verify.result import ArtifactConfig, PolicyInput


def _payload(value):
    return {"result": [{"expressions": [{"value": value}]}]}


def _input():
    return PolicyInput(
        config=ArtifactConfig(user="", labels={}),
        sbom_present=True,
        attestation_present=False,
        for_promotion=False,
    )


def _policy_dir(tmp_path):
    policy_dir = tmp_path / "policy"
    policy_dir.mkdir()
    (policy_dir / "default.rego").write_text("package trustgate.policy\n", encoding="utf-8")
    return policy_dir


def test_violation_fields_are_propagated_verbatim():
    violations = decode_evaluator_output(
        _payload(
            {
                "allow": False,
                "violations": [
                    {"rule": "no-root-user", "severity": "high", "message": "Container runs as root"}
                ],
            }
        )
    )
    assert len(violations) == 1
    assert violations[0].rule == "no-root-user"
    assert violations[0].severity == "high"
    assert violations[0].message == "Container runs as root"
    assert violations[0].result == "fail"


def test_absent_fields_take_defaults():
    violations = decode_evaluator_output(_payload({"deny": [{}]}))
    assert violations[0].rule == "policy-violation"
    assert violations[0].severity == "critical"
    assert violations[0].result == "fail"
    assert violations[0].message == "Policy deny rule triggered"


def test_violations_and_legacy_deny_are_merged_in_order():
    violations = decode_evaluator_output(
        _payload(
            {
                "violations": [{"rule": "a", "severity": "low", "message": "first"}],
                "deny": [{"rule": "a", "severity": "low", "message": "first"}, "legacy string"],
            }
        )
    )
    assert [v.rule for v in violations] == ["a", "a", "policy-violation"]
    assert violations[2].message == "legacy string"


def test_empty_result_means_no_violations():
    assert decode_evaluator_output({"result": []}) == []
    assert decode_evaluator_output({}) == []
    assert decode_evaluator_output(_payload({"allow": True, "violations": []})) == []


def test_non_list_container_is_an_error():
    with pytest.raises(PolicyEvaluationError):
        decode_evaluator_output(_payload({"violations": {"rule": "x"}}))


def test_no_policy_files_allows(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    monkeypatch.setattr("trustgate.verify.evaluator._find_tool", lambda name: pytest.fail("must not look up opa"))

    assert evaluate_policy(tmp_path / "missing", _input(), EvaluatorSettings()) == []
    (tmp_path / "empty").mkdir()
    assert evaluate_policy(tmp_path / "empty", _input(), EvaluatorSettings()) == []


@pytest.mark.parametrize("allow_missing", [False, True])
def test_missing_evaluator_yields_opa_required(tmp_path, monkeypatch, allow_missing):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    monkeypatch.setattr("trustgate.verify.evaluator._find_tool", lambda name: None)

    violations = evaluate_policy(_policy_dir(tmp_path), _input(), EvaluatorSettings(allow_missing=allow_missing))
    assert len(violations) == 1
    assert violations[0].rule == "opa-required"
    assert violations[0].severity == "critical"
    assert violations[0].message == OPA_REQUIRED_MESSAGE


def test_evaluate_policy_runs_opa_with_input_file(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    policy_dir = _policy_dir(tmp_path)
    seen = {}

    def fake_run(argv, timeout_seconds):
        seen["argv"] = argv
        seen["timeout"] = timeout_seconds
        input_path = argv[argv.index("--input") + 1]
        with open(input_path, encoding="utf-8") as handle:
            seen["input"] = json.load(handle)
        seen["input_path"] = input_path
        stdout = json.dumps(_payload({"violations": [{"rule": "no-root-user", "severity": "high", "message": "root"}]}))
        return subprocess.CompletedProcess(argv, 0, stdout=stdout, stderr="")

    monkeypatch.setattr("trustgate.verify.evaluator._find_tool", lambda name: "/usr/bin/opa")
    monkeypatch.setattr("trustgate.verify.evaluator._run_tool", fake_run)

    violations = evaluate_policy(policy_dir, _input(), EvaluatorSettings(timeout_seconds=7))
    assert [v.rule for v in violations] == ["no-root-user"]
    assert seen["argv"][:3] == ["/usr/bin/opa", "eval", "--data"]
    assert seen["argv"][-1] == "data.trustgate.policy.result"
    assert seen["timeout"] == 7
    assert seen["input"]["config"] == {"User": "", "Labels": {}}
    assert seen["input"]["sbom"] == {"present": True}
    assert not os.path.exists(seen["input_path"])


def test_evaluator_failure_raises(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    monkeypatch.setattr("trustgate.verify.evaluator._find_tool", lambda name: "/usr/bin/opa")
    monkeypatch.setattr(
        "trustgate.verify.evaluator._run_tool",
        lambda argv, timeout_seconds: subprocess.CompletedProcess(argv, 1, stdout="", stderr="rego_parse_error"),
    )

    with pytest.raises(PolicyEvaluationError) as exc:
        evaluate_policy(_policy_dir(tmp_path), _input(), EvaluatorSettings())
    assert "rego_parse_error" in str(exc.value)


def test_evaluator_timeout_raises(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))

    def slow(argv, timeout_seconds):
        raise subprocess.TimeoutExpired(argv, timeout_seconds)

    monkeypatch.setattr("trustgate.verify.evaluator._find_tool", lambda name: "/usr/bin/opa")
    monkeypatch.setattr("trustgate.verify.evaluator._run_tool", slow)

    with pytest.raises(PolicyEvaluationError):
        evaluate_policy(_policy_dir(tmp_path), _input(), EvaluatorSettings(timeout_seconds=1))
