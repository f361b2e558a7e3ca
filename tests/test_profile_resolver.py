import textwrap

import pytest

from trustgate.verify.profile import Profile, ProfileError, load_profile, resolve_violations
from trustgate.verify.result import Violation


def _v(rule, severity="high"):
    return Violation(rule=rule, severity=severity, message=f"{rule} triggered")


def _write_profile(directory, name, text):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.yaml"
    path.write_text(textwrap.dedent(text).strip() + "\n", encoding="utf-8")
    return path


def test_no_profile_enforces_everything():
    violations = [_v("ruleA"), _v("ruleB", "low")]
    resolution = resolve_violations(None, violations)
    assert resolution.violations == violations
    assert resolution.warnings == []
    assert resolution.allow is False


def test_allow_list_drops_rules_outside_it():
    profile = Profile(name="strict", allow=("ruleA",))
    resolution = resolve_violations(profile, [_v("ruleA"), _v("ruleB")])
    assert [v.rule for v in resolution.violations] == ["ruleA"]
    assert resolution.warnings == []
    assert resolution.allow is False


def test_ignored_severity_becomes_warning_when_shown():
    profile = Profile(name="relaxed", ignore=("low",), show_warnings=True)
    resolution = resolve_violations(profile, [_v("ruleC", "low")])
    assert resolution.allow is True
    assert resolution.violations == []
    assert [w.rule for w in resolution.warnings] == ["ruleC"]


def test_ignored_rule_is_dropped_when_warnings_hidden():
    profile = Profile(name="quiet", ignore=("ruleC",))
    resolution = resolve_violations(profile, [_v("ruleC")])
    assert resolution.allow is True
    assert resolution.warnings == []


def test_ignore_matching_is_case_insensitive():
    profile = Profile(name="mixed", ignore=("LOW", "No-Root-User"), show_warnings=True)
    resolution = resolve_violations(profile, [_v("no-root-user"), _v("x", "Low"), _v("y", "critical")])
    assert [v.rule for v in resolution.violations] == ["y"]
    assert len(resolution.warnings) == 2


def test_load_profile_by_name(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    profiles_dir = tmp_path / "profiles"
    _write_profile(
        profiles_dir,
        "baseline",
        """
        schemaVersion: 1
        name: baseline
        description: Baseline enforcement profile
        policies:
          allow: [no-root-user, no-latest-tag]
        violations:
          ignore: [informational, low]
        warnings:
          show: true
        """,
    )

    profile = load_profile("baseline", profiles_dir)
    assert profile.name == "baseline"
    assert profile.allow == ("no-root-user", "no-latest-tag")
    assert profile.ignore == ("informational", "low")
    assert profile.show_warnings is True


def test_load_profile_by_explicit_path_without_description(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    path = _write_profile(tmp_path / "elsewhere", "custom", "schemaVersion: 1\nname: custom")

    profile = load_profile(str(path), tmp_path / "profiles")
    assert profile.name == "custom"
    assert profile.description == ""
    assert profile.allow == ()


@pytest.mark.parametrize(
    "body",
    [
        "schemaVersion: 2\nname: x",
        "schemaVersion: 1\nname: ''",
        "schemaVersion: 1\nname: x\nunexpected: true",
        "schemaVersion: 1\nname: x\npolicies: {allow: [a], deny: [b]}",
        "schemaVersion: 1\nname: x\nviolations: {ignore: ['  ']}",
        "schemaVersion: 1\nname: x\nwarnings: {show: 'yes'}",
        "schemaVersion: 1\nname: x\npolicies: [a]",
    ],
)
def test_load_profile_rejects_invalid_documents(tmp_path, monkeypatch, body):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    profiles_dir = tmp_path / "profiles"
    _write_profile(profiles_dir, "bad", body)

    with pytest.raises(ProfileError):
        load_profile("bad", profiles_dir)


def test_load_profile_missing(tmp_path, monkeypatch):
    monkeypatch.setenv("TRUSTGATE_LOG_PATH", str(tmp_path / "trustgate.log"))
    with pytest.raises(ProfileError) as exc:
        load_profile("absent", tmp_path / "profiles")
    assert "profile not found" in str(exc.value)
