from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from trustgate import __version__
from trustgate.logger import log_event
from trustgate.trust.attestation import ATTESTATION_SCHEMA_VERSION
from trustgate.trust.canonical_hash import compute_results_hash
from trustgate.trust.engine import DIGEST_PREFIX_LENGTH
from trustgate.verify.facts import checked_digest, digest_resolver_for
from trustgate.verify.result import utc_iso8601
from trustgate.verify.state_store import (
    LAST_ATTESTATION_KEY,
    FileStateStore,
    StateStoreError,
    load_verify_state,
)


class AttestationError(Exception):
    pass


@dataclass(frozen=True)
class AttestResult:
    output_path: str
    attestation: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"outputPath": self.output_path, "attestation": self.attestation}


def sanitize_ref(image_ref: str) -> str:
    name = image_ref.split("/")[-1].split("@")[0].split(":")[0]
    return re.sub(r"[^A-Za-z0-9_-]", "_", name) or "unknown"


def sbom_ref(config) -> str:
    candidate = Path(config.sbom_dir) / f"{config.project_name}.{config.sbom_format}.json"
    return str(candidate) if candidate.is_file() else ""


def build_attestation(config, image_ref, digest, state, results_hash, *, tool_version, git_commit=None):
    metadata = {"tool": "trustgate", "toolVersion": tool_version}
    if git_commit:
        metadata["gitCommit"] = git_commit
    evidence = {
        "policyPack": str(config.policy_dir),
        "policyMode": config.policy_mode,
        "verificationStatus": state.status,
        "verificationResultsHash": results_hash,
    }
    sbom = sbom_ref(config)
    if sbom:
        evidence["sbomRef"] = sbom
    return {
        "schemaVersion": ATTESTATION_SCHEMA_VERSION,
        "command": "attest",
        "timestamp": utc_iso8601(),
        "subject": {"imageRef": image_ref, "imageDigest": digest},
        "evidence": evidence,
        "metadata": metadata,
    }


def _file_stamp() -> str:
    return time.strftime("%Y%m%d-%H%M%S", time.gmtime())


def _write_new(directory: Path, document) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    stamp = _file_stamp()
    payload = json.dumps(document, sort_keys=True, indent=2) + "\n"
    suffix = 0
    while True:
        name = f"{stamp}-attestation.json" if suffix == 0 else f"{stamp}-{suffix}-attestation.json"
        path = directory / name
        try:
            with path.open("x", encoding="utf-8") as handle:
                handle.write(payload)
        except FileExistsError:
            suffix += 1
            continue
        return path


def create_attestation(
    config,
    image_ref: str,
    *,
    store=None,
    digest_resolver=None,
    tool_version: str = __version__,
    git_commit: str | None = None,
) -> AttestResult:
    if not image_ref:
        raise AttestationError("image reference required")
    store = store if store is not None else FileStateStore(config.state_dir)
    resolver = digest_resolver if digest_resolver is not None else digest_resolver_for(config)

    try:
        digest = checked_digest(resolver(image_ref))
    except Exception as exc:
        log_event("attest", f"digest_unresolved image={image_ref} error={exc}")
        digest = ""

    try:
        state = load_verify_state(store, image_ref, digest_resolver=lambda _ref: digest or None)
    except StateStoreError as exc:
        raise AttestationError(f"failed to read verification state: {exc}") from exc
    if state is None:
        raise AttestationError(
            f"verification state not found for {image_ref}\n\n"
            f"Remediation:\n  Run 'trustgate verify {image_ref}' first to generate verification results"
        )

    results_hash = compute_results_hash(state.result)
    document = build_attestation(
        config,
        image_ref,
        digest,
        state,
        results_hash,
        tool_version=tool_version,
        git_commit=git_commit,
    )

    directory = Path(config.attestation_dir) / (digest[:DIGEST_PREFIX_LENGTH] if digest else sanitize_ref(image_ref))
    try:
        path = _write_new(directory, document)
    except OSError as exc:
        raise AttestationError(f"failed to write attestation: {exc}") from exc

    pointer = {
        "attestationPath": str(path),
        "timestamp": document["timestamp"],
        "imageRef": image_ref,
        "imageDigest": digest,
        "status": state.status,
    }
    try:
        store.save(LAST_ATTESTATION_KEY, pointer)
    except Exception as exc:
        log_event("attest", f"pointer_failed path={path} error={exc}")

    log_event("attest", f"created image={image_ref} path={path} status={state.status} hash={results_hash}")
    return AttestResult(output_path=str(path), attestation=document)
