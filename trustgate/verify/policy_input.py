from pathlib import Path

from trustgate.logger import log_event
from trustgate.verify.facts import inspect_artifact
from trustgate.verify.result import PolicyInput


def sbom_present(config) -> bool:
    sbom_dir = Path(config.sbom_dir)
    exact = sbom_dir / f"{config.project_name}.{config.sbom_format}.json"
    if exact.is_file():
        return True
    if not sbom_dir.is_dir():
        return False
    return any(p.is_file() for p in sbom_dir.glob("*.json"))


def attestations_present(config) -> bool:
    root = Path(config.attestation_dir)
    if not root.is_dir():
        return False
    return any(p.is_file() for p in root.rglob("*"))


def build_policy_input(config, image_ref: str, for_promotion: bool = False) -> PolicyInput:
    artifact = inspect_artifact(
        image_ref,
        tools=config.inspector.tools,
        timeout_seconds=config.inspector.timeout_seconds,
    )
    policy_input = PolicyInput(
        config=artifact,
        sbom_present=sbom_present(config),
        attestation_present=attestations_present(config),
        for_promotion=for_promotion,
    )
    log_event(
        "policy_input",
        f"built image={image_ref} sbom={policy_input.sbom_present} "
        f"attestation={policy_input.attestation_present} promotion={for_promotion}",
    )
    return policy_input
