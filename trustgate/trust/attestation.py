from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from trustgate.verify.facts import normalize_digest


CANNOT_READ = "cannot read file"
INVALID_JSON = "invalid JSON"
INVALID_SCHEMA = "invalid schema"
DIGEST_MISMATCH = "digest mismatch"
MISSING_RESULTS_HASH = "missing results hash"
STATE_MISSING = "verification state missing"
RESULTS_HASH_MISMATCH = "results hash mismatch"

ATTESTATION_SCHEMA_VERSION = "v0.1"
_REQUIRED_FIELDS = ("schemaVersion", "timestamp", "subject", "evidence")


@dataclass(frozen=True)
class AttestationDetail:
    path: str
    timestamp: str = ""
    verification_status: str = ""
    verification_results_hash: str = ""
    valid_schema: bool = False
    digest_match: bool = False
    results_hash_match: bool = False
    invalid_reason: str = ""

    @property
    def valid(self) -> bool:
        return not self.invalid_reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "timestamp": self.timestamp,
            "verificationStatus": self.verification_status,
            "verificationResultsHash": self.verification_results_hash,
            "validSchema": self.valid_schema,
            "digestMatch": self.digest_match,
            "resultsHashMatch": self.results_hash_match,
            "invalidReason": self.invalid_reason,
        }


def schema_is_valid(doc: Mapping[str, Any]) -> bool:
    if any(key not in doc for key in _REQUIRED_FIELDS):
        return False
    if not isinstance(doc.get("timestamp"), str):
        return False
    subject = doc.get("subject")
    if not isinstance(subject, Mapping) or not isinstance(subject.get("imageDigest"), str):
        return False
    evidence = doc.get("evidence")
    if not isinstance(evidence, Mapping):
        return False
    for key in ("verificationStatus", "verificationResultsHash"):
        if key in evidence and not isinstance(evidence[key], str):
            return False
    return True


def validate_attestation(
    path,
    expected_digest: str,
    expected_results_hash: str | None,
    *,
    require_valid_schema: bool = True,
    require_digest_match: bool = True,
    require_results_hash_match: bool = True,
) -> AttestationDetail:
    """Check one attestation document against the artifact and its state.

    Every check is evaluated and reported. `invalid_reason` names the first
    check that fails among those the caller requires; an unreadable or
    non-JSON document is always invalid.
    """
    path_text = str(path)
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return AttestationDetail(path=path_text, invalid_reason=CANNOT_READ)

    try:
        doc = json.loads(raw)
    except ValueError:
        return AttestationDetail(path=path_text, invalid_reason=INVALID_JSON)
    if not isinstance(doc, Mapping):
        return AttestationDetail(path=path_text, invalid_reason=INVALID_SCHEMA)

    timestamp = doc.get("timestamp") if isinstance(doc.get("timestamp"), str) else ""
    evidence = doc.get("evidence") if isinstance(doc.get("evidence"), Mapping) else {}
    subject = doc.get("subject") if isinstance(doc.get("subject"), Mapping) else {}
    status = evidence.get("verificationStatus")
    results_hash = evidence.get("verificationResultsHash")
    status = status if isinstance(status, str) else ""
    results_hash = results_hash if isinstance(results_hash, str) else ""

    valid_schema = schema_is_valid(doc)
    attested_digest = subject.get("imageDigest")
    digest_match = isinstance(attested_digest, str) and bool(attested_digest) and (
        normalize_digest(attested_digest) == normalize_digest(expected_digest)
    )
    if not results_hash:
        hash_reason = MISSING_RESULTS_HASH
    elif not expected_results_hash:
        hash_reason = STATE_MISSING
    elif results_hash != expected_results_hash:
        hash_reason = RESULTS_HASH_MISMATCH
    else:
        hash_reason = ""

    reason = ""
    if require_valid_schema and not valid_schema:
        reason = INVALID_SCHEMA
    elif require_digest_match and not digest_match:
        reason = DIGEST_MISMATCH
    elif require_results_hash_match and hash_reason:
        reason = hash_reason

    return AttestationDetail(
        path=path_text,
        timestamp=timestamp,
        verification_status=status,
        verification_results_hash=results_hash,
        valid_schema=valid_schema,
        digest_match=digest_match,
        results_hash_match=not hash_reason,
        invalid_reason=reason,
    )
