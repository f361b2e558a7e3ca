from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from trustgate.logger import log_event
from trustgate.trust.attestation import validate_attestation
from trustgate.trust.canonical_hash import compute_results_hash
from trustgate.verify.facts import DigestResolutionError, checked_digest, digest_resolver_for
from trustgate.verify.state_store import FileStateStore, StateStoreError, load_verify_state


TRUST_SCHEMA_VERSION = "v0.3"
DIGEST_PREFIX_LENGTH = 12


class TrustVerificationFailed(Exception):
    def __init__(self, message, result):
        super().__init__(message)
        self.result = result


@dataclass
class TrustVerifyResult:
    image_ref: str
    image_digest: str = ""
    verification_status: str = "unknown"
    attestations: list = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    schema_version: str = TRUST_SCHEMA_VERSION

    @property
    def attestation_count(self) -> int:
        return len(self.attestations)

    @property
    def valid_count(self) -> int:
        return sum(1 for detail in self.attestations if detail.valid)

    @property
    def invalid_count(self) -> int:
        return self.attestation_count - self.valid_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "imageRef": self.image_ref,
            "imageDigest": self.image_digest,
            "verificationStatus": self.verification_status,
            "attestationCount": self.attestation_count,
            "validCount": self.valid_count,
            "invalidCount": self.invalid_count,
            "attestations": [detail.to_dict() for detail in self.attestations],
            "errors": list(self.errors),
        }

    def format_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2)

    def exit_code(self) -> int:
        if self.verification_status == "verified":
            return 0
        if self.verification_status == "unverified":
            return 1
        return 2


def trust_decision(valid_count: int, invalid_count: int, requirements) -> str:
    if requirements.enabled:
        return "verified" if valid_count >= requirements.min_count else "unverified"
    if valid_count > 0 and invalid_count == 0:
        return "verified"
    return "unverified"


def find_attestations_for_digest(attestation_root, digest: str) -> list[Path]:
    try:
        prefix = checked_digest(digest)[:DIGEST_PREFIX_LENGTH]
    except DigestResolutionError:
        return []
    directory = Path(attestation_root) / prefix
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.rglob("*.json") if p.is_file())


def expected_results_hash(store, image_ref: str, digest: str) -> str | None:
    try:
        state = load_verify_state(store, image_ref, digest_resolver=lambda _ref: digest)
    except (StateStoreError, ValueError) as exc:
        log_event("trust", f"state_unreadable image={image_ref} error={exc}")
        return None
    if state is None or not state.result:
        return None
    return compute_results_hash(state.result)


def verify_attestations(config, image_ref: str, *, store=None, digest_resolver=None) -> TrustVerifyResult:
    store = store if store is not None else FileStateStore(config.state_dir)
    resolver = digest_resolver if digest_resolver is not None else digest_resolver_for(config)
    requirements = config.trust
    result = TrustVerifyResult(image_ref=image_ref)

    try:
        digest = checked_digest(resolver(image_ref))
    except DigestResolutionError as exc:
        result.errors.append(f"Cannot resolve digest: {exc}")
        log_event("trust", f"digest_unresolved image={image_ref} status=unknown")
        raise TrustVerificationFailed(f"cannot resolve digest for {image_ref}", result) from exc
    result.image_digest = digest

    paths = find_attestations_for_digest(config.attestation_dir, digest)
    if not paths:
        result.verification_status = "unverified"
        result.errors.append("No attestations found")
        return _conclude(result, requirements)

    expected = expected_results_hash(store, image_ref, digest)
    details = [
        validate_attestation(
            path,
            digest,
            expected,
            require_valid_schema=requirements.require_valid_schema,
            require_digest_match=requirements.require_digest_match,
            require_results_hash_match=requirements.require_results_hash_match,
        )
        for path in paths
    ]
    result.attestations = sorted(details, key=lambda d: (d.timestamp, d.path))
    for detail in result.attestations:
        if not detail.valid:
            result.errors.append(f"Invalid attestation: {Path(detail.path).name} ({detail.invalid_reason})")

    result.verification_status = trust_decision(result.valid_count, result.invalid_count, requirements)
    if requirements.enabled and result.verification_status != "verified":
        result.errors.append(
            f"Insufficient valid attestations: {result.valid_count} < {requirements.min_count}"
        )
    return _conclude(result, requirements)


def _conclude(result, requirements):
    log_event(
        "trust",
        f"decision image={result.image_ref} digest={result.image_digest[:DIGEST_PREFIX_LENGTH]} "
        f"status={result.verification_status} valid={result.valid_count} invalid={result.invalid_count} "
        f"required={requirements.min_count if requirements.enabled else 'off'} mode={requirements.mode}",
    )
    if result.verification_status != "verified" and requirements.mode == "enforce":
        reason = result.errors[-1] if result.errors else "attestation validation failed"
        raise TrustVerificationFailed(f"trust verification failed: {reason}", result)
    return result
