import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from trustgate.logger import log_event


class ConfigLoadError(Exception):
    pass


REQUIRED_KEYS = {
    "project",
    "policy",
    "sbom",
}

CONFIG_SEARCH_PATHS = (
    "trustgate.yaml",
    ".trustgate/trustgate.yaml",
)
DEFAULT_WORKSPACE = ".trustgate"
DEFAULT_DECISION_PATH = "data.trustgate.policy.result"
DEFAULT_CONTAINER_TOOLS = ("docker", "podman", "nerdctl")

_POLICY_MODES = ("enforce", "warn")
_SBOM_FORMATS = ("spdx", "cyclonedx")
_TRUST_SOURCES = ("local", "remote")
_TRUST_PREFIX = "trust.requireAttestations"


@dataclass(frozen=True)
class EvaluatorSettings:
    binary: str = "opa"
    decision_path: str = DEFAULT_DECISION_PATH
    timeout_seconds: int = 60
    allow_missing: bool = False


@dataclass(frozen=True)
class InspectorSettings:
    tools: tuple[str, ...] = DEFAULT_CONTAINER_TOOLS
    timeout_seconds: int = 30


@dataclass(frozen=True)
class AttestationRequirements:
    enabled: bool = False
    min_count: int = 1
    sources: tuple[str, ...] = ("local",)
    require_digest_match: bool = True
    require_valid_schema: bool = True
    require_results_hash_match: bool = True
    mode: str = "enforce"


@dataclass(frozen=True)
class GateConfig:
    project_name: str
    policy_mode: str = "enforce"
    sbom_format: str = "spdx"
    workspace: str = DEFAULT_WORKSPACE
    evaluator: EvaluatorSettings = field(default_factory=EvaluatorSettings)
    inspector: InspectorSettings = field(default_factory=InspectorSettings)
    trust: AttestationRequirements = field(default_factory=AttestationRequirements)

    @property
    def policy_dir(self) -> Path:
        return Path(self.workspace) / "policy"

    @property
    def sbom_dir(self) -> Path:
        return Path(self.workspace) / "sbom"

    @property
    def state_dir(self) -> Path:
        return Path(self.workspace) / "state"

    @property
    def attestation_dir(self) -> Path:
        return Path(self.workspace) / "attestations"

    @property
    def profiles_dir(self) -> Path:
        return Path(self.workspace) / "profiles"

    @property
    def waivers_path(self) -> Path:
        return Path(self.workspace) / "waivers.yaml"

    @property
    def enforcing(self) -> bool:
        return self.policy_mode == "enforce"


def discover_config_path(explicit=None):
    if explicit:
        return Path(explicit)
    env_path = os.environ.get("TRUSTGATE_CONFIG")
    if env_path:
        return Path(env_path)
    for candidate in CONFIG_SEARCH_PATHS:
        path = Path(candidate)
        if path.is_file():
            return path
    home_config = Path.home() / ".trustgate" / "config.yaml"
    if home_config.is_file():
        return home_config
    raise ConfigLoadError(
        "No configuration found (looked for trustgate.yaml, .trustgate/trustgate.yaml, "
        "~/.trustgate/config.yaml). Run 'trustgate init' to create one."
    )


def load_config(config_path=None):
    path = discover_config_path(config_path)
    try:
        raw = path.read_text(encoding="utf-8")
    except Exception as exc:
        log_event("config", f"load_failed path={path} error={exc}")
        raise ConfigLoadError(f"Failed to read config: {exc}") from exc

    try:
        data = yaml.safe_load(raw)
    except Exception as exc:
        log_event("config", f"parse_failed path={path} error={exc}")
        raise ConfigLoadError(f"Failed to parse config YAML: {exc}") from exc

    if not isinstance(data, dict):
        log_event("config", f"invalid_mapping path={path}")
        raise ConfigLoadError("Config YAML must be a mapping")

    missing = sorted(REQUIRED_KEYS - set(data.keys()))
    if missing:
        log_event("config", f"missing_keys path={path} missing={','.join(missing)}")
        raise ConfigLoadError(f"Config missing required keys: {', '.join(missing)}")

    try:
        config = config_from_mapping(data)
    except ValueError as exc:
        log_event("config", f"invalid path={path} error={exc}")
        raise ConfigLoadError(f"Invalid config {path}: {exc}") from exc

    log_event(
        "config",
        f"loaded path={path} project={config.project_name} mode={config.policy_mode} "
        f"trust_enabled={config.trust.enabled}",
    )
    return config


def config_from_mapping(data, environ=None):
    environ = os.environ if environ is None else environ

    project = _section(data, "project")
    name = project.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("project.name is required")

    mode = _section(data, "policy").get("mode", "enforce")
    if mode not in _POLICY_MODES:
        raise ValueError("policy.mode must be 'enforce' or 'warn'")

    sbom_format = _section(data, "sbom").get("format", "spdx")
    if sbom_format not in _SBOM_FORMATS:
        raise ValueError("sbom.format must be 'spdx' or 'cyclonedx'")

    workspace = data.get("workspace", DEFAULT_WORKSPACE)
    if not isinstance(workspace, str) or not workspace:
        raise ValueError("workspace must be a non-empty string")

    evaluator_cfg = _section(data, "evaluator")
    allow_missing = _flag(evaluator_cfg, "allowMissing", False, "evaluator")
    if environ.get("TRUSTGATE_ALLOW_NO_OPA") == "1":
        allow_missing = True
    evaluator = EvaluatorSettings(
        binary=str(evaluator_cfg.get("binary", "opa")),
        decision_path=str(evaluator_cfg.get("decisionPath", DEFAULT_DECISION_PATH)),
        timeout_seconds=_positive_int(evaluator_cfg.get("timeoutSeconds", 60), "evaluator.timeoutSeconds"),
        allow_missing=allow_missing,
    )

    inspector_cfg = _section(data, "inspector")
    tools = inspector_cfg.get("tools", list(DEFAULT_CONTAINER_TOOLS))
    if not isinstance(tools, list) or not tools or not all(isinstance(t, str) and t for t in tools):
        raise ValueError("inspector.tools must be a non-empty list of tool names")
    inspector = InspectorSettings(
        tools=tuple(tools),
        timeout_seconds=_positive_int(inspector_cfg.get("timeoutSeconds", 30), "inspector.timeoutSeconds"),
    )

    trust = _attestation_requirements(_section(_section(data, "trust"), "requireAttestations"))

    return GateConfig(
        project_name=name.strip(),
        policy_mode=mode,
        sbom_format=sbom_format,
        workspace=workspace,
        evaluator=evaluator,
        inspector=inspector,
        trust=trust,
    )


def _attestation_requirements(section):
    if not section:
        return AttestationRequirements()

    enabled = _flag(section, "enabled", False, _TRUST_PREFIX)
    min_count = section.get("minCount", 1)
    if not isinstance(min_count, int) or isinstance(min_count, bool):
        raise ValueError("trust.requireAttestations.minCount must be an integer")
    if enabled and min_count < 1:
        raise ValueError("trust.requireAttestations.minCount must be >= 1 when enabled")

    sources = section.get("sources", ["local"])
    if not isinstance(sources, list) or any(s not in _TRUST_SOURCES for s in sources):
        raise ValueError("trust.requireAttestations.sources must be a subset of local, remote")

    mode = section.get("mode", "enforce")
    if mode not in _POLICY_MODES:
        raise ValueError("trust.requireAttestations.mode must be 'enforce' or 'warn'")

    return AttestationRequirements(
        enabled=enabled,
        min_count=min_count,
        sources=tuple(sources),
        require_digest_match=_flag(section, "requireDigestMatch", True, _TRUST_PREFIX),
        require_valid_schema=_flag(section, "requireValidSchema", True, _TRUST_PREFIX),
        require_results_hash_match=_flag(section, "requireResultsHashMatch", True, _TRUST_PREFIX),
        mode=mode,
    )


def _flag(section, key, default, prefix):
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"{prefix}.{key} must be a boolean")
    return value


def _section(data, key):
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be a mapping")
    return value


def _positive_int(value, name):
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"{name} must be a positive integer")
    return value


def render_config_yaml(project_name):
    payload = {
        "project": {"name": project_name},
        "policy": {"mode": "enforce"},
        "sbom": {"format": "spdx"},
        "workspace": DEFAULT_WORKSPACE,
        "trust": {
            "requireAttestations": {
                "enabled": False,
                "minCount": 1,
                "sources": ["local"],
                "mode": "enforce",
            }
        },
    }
    return "# trustgate configuration\n" + yaml.safe_dump(payload, sort_keys=False)


def init_workspace(root, project_name=None):
    from trustgate.verify.default_policy import DEFAULT_POLICY_CONTENT

    root_path = Path(root)
    config_path = root_path / "trustgate.yaml"
    if config_path.exists():
        raise ConfigLoadError(f"{config_path} already exists")

    name = project_name or root_path.resolve().name
    workspace = root_path / DEFAULT_WORKSPACE
    for sub in ("policy", "profiles", "sbom", "state", "attestations"):
        (workspace / sub).mkdir(parents=True, exist_ok=True)

    config_path.write_text(render_config_yaml(name), encoding="utf-8")
    policy_path = workspace / "policy" / "default.rego"
    policy_path.write_text(DEFAULT_POLICY_CONTENT, encoding="utf-8")

    log_event("config", f"init project={name} config={config_path} policy={policy_path}")
    return [str(config_path), str(policy_path)]
