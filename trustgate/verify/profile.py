"""Post-evaluation profiles.

A profile never changes what the evaluator computes. It only decides which of
the evaluator's violations block, which are demoted to warnings and which are
dropped.
"""

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from trustgate.logger import log_event


class ProfileError(Exception):
    pass


_TOP_LEVEL_KEYS = {"schemaVersion", "name", "description", "policies", "violations", "warnings"}
_SECTION_KEYS = {
    "policies": {"allow"},
    "violations": {"ignore"},
    "warnings": {"show"},
}


@dataclass(frozen=True)
class Profile:
    name: str
    schema_version: int = 1
    description: str = ""
    allow: tuple[str, ...] = ()
    ignore: tuple[str, ...] = ()
    show_warnings: bool = False


@dataclass
class Resolution:
    violations: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    allow: bool = True


def profile_path_for(name_or_path, profiles_dir):
    value = str(name_or_path)
    if "/" in value or value.endswith(".yaml") or value.endswith(".yml"):
        return Path(value)
    return Path(profiles_dir) / f"{value}.yaml"


def load_profile(name_or_path, profiles_dir):
    path = profile_path_for(name_or_path, profiles_dir)
    if not path.is_file():
        log_event("profile", f"not_found path={path}")
        raise ProfileError(f"profile not found: {path}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except Exception as exc:
        log_event("profile", f"parse_failed path={path} error={exc}")
        raise ProfileError(f"failed to parse profile {path}: {exc}") from exc

    try:
        profile = profile_from_mapping(data)
    except ValueError as exc:
        log_event("profile", f"invalid path={path} error={exc}")
        raise ProfileError(f"profile {path} validation failed: {exc}") from exc

    log_event(
        "profile",
        f"loaded path={path} name={profile.name} allow={len(profile.allow)} "
        f"ignore={len(profile.ignore)} show_warnings={profile.show_warnings}",
    )
    return profile


def profile_from_mapping(data):
    if not isinstance(data, dict):
        raise ValueError("trustgate.profile.invalid document must be a mapping")
    _reject_unknown(data, _TOP_LEVEL_KEYS, "")

    version = data.get("schemaVersion")
    if version != 1 or isinstance(version, bool):
        raise ValueError(f"trustgate.profile.invalid unsupported schemaVersion={version!r} (expected 1)")

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("trustgate.profile.invalid name is required")

    description = data.get("description") or ""
    if not isinstance(description, str):
        raise ValueError("trustgate.profile.invalid description must be a string")

    sections = {}
    for key, allowed in _SECTION_KEYS.items():
        section = data.get(key)
        if section is None:
            section = {}
        if not isinstance(section, dict):
            raise ValueError(f"trustgate.profile.invalid {key} must be a mapping")
        _reject_unknown(section, allowed, f"{key}.")
        sections[key] = section

    show = sections["warnings"].get("show", False)
    if not isinstance(show, bool):
        raise ValueError("trustgate.profile.invalid warnings.show must be a boolean")

    return Profile(
        name=name,
        schema_version=1,
        description=description,
        allow=_string_list(sections["policies"].get("allow"), "policies.allow"),
        ignore=_string_list(sections["violations"].get("ignore"), "violations.ignore"),
        show_warnings=show,
    )


def _reject_unknown(mapping, allowed, prefix):
    unknown = sorted(str(k) for k in mapping if k not in allowed)
    if unknown:
        raise ValueError(f"trustgate.profile.invalid unknown field {prefix}{unknown[0]}")


def _string_list(value, name):
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValueError(f"trustgate.profile.invalid {name} must be a list")
    items = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"trustgate.profile.invalid {name}[{index}] must be a non-empty string")
        items.append(item)
    return tuple(items)


def resolve_violations(profile, violations):
    if profile is None:
        enforced = list(violations)
        return Resolution(violations=enforced, warnings=[], allow=not enforced)

    allow_set = set(profile.allow)
    ignore_set = {item.lower() for item in profile.ignore}

    resolution = Resolution()
    for violation in violations:
        if allow_set and violation.rule not in allow_set:
            continue
        if violation.rule.lower() in ignore_set or violation.severity.lower() in ignore_set:
            if profile.show_warnings:
                resolution.warnings.append(violation)
            continue
        resolution.violations.append(violation)

    resolution.allow = not resolution.violations
    return resolution
