import json
import subprocess

import pytest

from trustgate.config import GateConfig
from trustgate.verify.default_policy import DEFAULT_POLICY_CONTENT
from trustgate.verify.gate import VerificationFailed, verify_artifact
from trustgate.verify.profile import Profile
from trustgate.verify.state_store import FileStateStore


DIGEST = "ab" * 32


def _config(tmp_path, mode="enforce"):
    return GateConfig(project_name="demo", policy_mode=mode, workspace=str(tmp_path / ".trustgate"))


def _with_sbom(config):
    config.sbom_dir.mkdir(parents=True, exist_ok=True)
    (config.sbom_dir / "demo.spdx.json").write_text("{}", encoding="utf-8")


def _with_policy(config):
    config.policy_dir.mkdir(parents=True, exist_ok=True)
    (config.policy_dir / "default.rego").write_text(DEFAULT_POLICY_CONTENT, encoding="utf-8")


def _fake_inspect(monkeypatch, user="app", labels=None):
    def run(argv, timeout_seconds):
        if "--format={{.Id}}" in argv:
            return f"sha256:{DIGEST}\n"
        return json.dumps([{"Config": {"User": user, "Labels": labels}}])

    monkeypatch.setattr("trustgate.verify.facts._find_tool", lambda name: "/usr/bin/docker" if name == "docker" else None)
    monkeypatch.setattr("trustgate.verify.facts._run_tool", run)


def _fake_opa(monkeypatch, value):
    stdout = json.dumps({"result": [{"expressions": [{"value": value}]}]})
    monkeypatch.setattr("trustgate.verify.evaluator._find_tool", lambda name: "/usr/bin/opa")
    monkeypatch.setattr(
        "trustgate.verify.evaluator._run_tool",
        lambda argv, timeout_seconds: subprocess.CompletedProcess(argv, 0, stdout=stdout, stderr=""),
    )


def test_missing_sbom_in_enforce_mode_fails(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path)
    _with_policy(config)
    _fake_inspect(monkeypatch)
    _fake_opa(monkeypatch, {"allow": True, "violations": []})

    with pytest.raises(VerificationFailed) as exc:
        verify_artifact(config, "demo:latest")

    result = exc.value.result
    assert result.status == "fail"
    assert result.sbom_present is False
    assert [v.rule for v in result.violations] == ["sbom-required"]
    assert result.policy_result.allow is False
    assert result.exit_code() == 1
    assert FileStateStore(config.state_dir).load("last_verify")["status"] == "fail"


def test_sbom_and_allowing_policy_passes(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path)
    _with_sbom(config)
    _with_policy(config)
    _fake_inspect(monkeypatch, labels={"org.opencontainers.image.title": "demo"})
    _fake_opa(monkeypatch, {"allow": True, "violations": []})

    result = verify_artifact(config, "demo:latest")
    assert result.status == "pass"
    assert result.policy_result.allow is True
    assert result.violations == []
    assert result.exit_code() == 0
    assert result.input.config.labels == {"org.opencontainers.image.title": "demo"}

    store = FileStateStore(config.state_dir)
    assert store.load(f"verify/{DIGEST}")["status"] == "pass"
    assert store.load("last_verify")["result"]["input"]["sbom"] == {"present": True}


def test_state_write_failure_is_surfaced_as_warning(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path)
    _with_sbom(config)
    _with_policy(config)
    _fake_inspect(monkeypatch, labels={"team": "platform"})
    _fake_opa(monkeypatch, {"allow": True, "violations": []})

    class ReadOnlyStore:
        def save(self, key, value):
            raise OSError("read-only file system")

        def load(self, key):
            return None

    result = verify_artifact(config, "demo:latest", store=ReadOnlyStore())
    assert result.status == "pass"
    assert result.exit_code() == 0
    assert len(result.state_warnings) == 2
    assert all("read-only file system" in w for w in result.state_warnings)
    assert "stateWarnings" not in result.to_dict()


def test_policy_violation_is_propagated_and_fails(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path, mode="warn")
    _with_sbom(config)
    _with_policy(config)
    _fake_inspect(monkeypatch, user="")
    _fake_opa(
        monkeypatch,
        {"allow": False, "violations": [{"rule": "no-root-user", "severity": "high", "message": "Container runs as root"}]},
    )

    result = verify_artifact(config, "demo:latest")
    assert result.status == "fail"
    assert len(result.violations) == 1
    assert result.violations[0].to_dict() == {
        "rule": "no-root-user",
        "severity": "high",
        "result": "fail",
        "message": "Container runs as root",
    }


def test_missing_evaluator_returns_populated_failure(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path)
    _with_sbom(config)
    _with_policy(config)
    _fake_inspect(monkeypatch)
    monkeypatch.setattr("trustgate.verify.evaluator._find_tool", lambda name: None)

    with pytest.raises(VerificationFailed) as exc:
        verify_artifact(config, "demo:latest")

    result = exc.value.result
    assert result is not None
    assert result.status == "fail"
    assert [v.rule for v in result.violations] == ["opa-required"]
    assert result.policy_result.allow is False


def test_profile_does_not_hide_missing_evaluator(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path, mode="warn")
    _with_sbom(config)
    _with_policy(config)
    _fake_inspect(monkeypatch)
    monkeypatch.setattr("trustgate.verify.evaluator._find_tool", lambda name: None)

    profile = Profile(name="lenient", ignore=("critical",), show_warnings=True)
    result = verify_artifact(config, "demo:latest", profile=profile)
    assert result.status == "fail"
    assert [v.rule for v in result.violations] == ["opa-required"]


def test_profile_demotes_policy_violations(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path)
    _with_sbom(config)
    _with_policy(config)
    _fake_inspect(monkeypatch)
    _fake_opa(monkeypatch, {"violations": [{"rule": "image-labels", "severity": "low", "message": "no labels"}]})

    profile = Profile(name="relaxed", ignore=("low",), show_warnings=True)
    result = verify_artifact(config, "demo:latest", profile=profile)
    assert result.status == "pass"
    assert [w.rule for w in result.policy_result.warnings] == ["image-labels"]
    assert FileStateStore(config.state_dir).load("last_verify")["profileUsed"] == "relaxed"


def test_inspection_failure_is_critical(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path, mode="warn")
    _with_sbom(config)
    _with_policy(config)
    monkeypatch.setattr("trustgate.verify.facts._find_tool", lambda name: None)
    monkeypatch.setattr("trustgate.verify.evaluator._find_tool", lambda name: pytest.fail("evaluator must not run"))

    result = verify_artifact(config, "demo:latest", digest_resolver=lambda ref: DIGEST)
    assert result.status == "fail"
    assert [v.rule for v in result.violations] == ["image-inspect-failed"]
    assert "no container tools found" in result.violations[0].message
    assert result.input is None


def test_evaluator_error_becomes_violation(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path)
    _with_sbom(config)
    _with_policy(config)
    _fake_inspect(monkeypatch)
    monkeypatch.setattr("trustgate.verify.evaluator._find_tool", lambda name: "/usr/bin/opa")
    monkeypatch.setattr(
        "trustgate.verify.evaluator._run_tool",
        lambda argv, timeout_seconds: subprocess.CompletedProcess(argv, 0, stdout="not json", stderr=""),
    )

    with pytest.raises(VerificationFailed) as exc:
        verify_artifact(config, "demo:latest")
    assert [v.rule for v in exc.value.result.violations] == ["policy-evaluation-error"]


def test_expired_waiver_fails_verification(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path)
    _with_sbom(config)
    _with_policy(config)
    _fake_inspect(monkeypatch)
    _fake_opa(monkeypatch, {"allow": True, "violations": []})
    config.waivers_path.write_text(
        "waivers:\n"
        "  - ruleId: no-root-user\n"
        "    justification: legacy base image\n"
        "    expiry: '2000-01-01T00:00:00Z'\n",
        encoding="utf-8",
    )

    with pytest.raises(VerificationFailed) as exc:
        verify_artifact(config, "demo:latest")
    violation = exc.value.result.violations[0]
    assert violation.rule == "no-root-user"
    assert violation.severity == "critical"
    assert "expired" in violation.message


def test_internal_error_is_converted(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    config = _config(tmp_path, mode="warn")
    _with_sbom(config)

    def boom(*args, **kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr("trustgate.verify.gate.build_policy_input", boom)

    with pytest.raises(VerificationFailed) as exc:
        verify_artifact(config, "demo:latest", digest_resolver=lambda ref: DIGEST)
    assert [v.rule for v in exc.value.result.violations] == ["internal-error"]
    assert exc.value.result.status == "fail"
