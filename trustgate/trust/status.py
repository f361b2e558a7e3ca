from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from trustgate.logger import log_event
from trustgate.trust.engine import find_attestations_for_digest
from trustgate.verify.facts import checked_digest, digest_resolver_for
from trustgate.verify.result import Violation
from trustgate.verify.state_store import FileStateStore, StateStoreError, load_verify_state


STATUS_SCHEMA_VERSION = "v0.2"


@dataclass
class TrustStatusResult:
    image_ref: str
    status: str = "unknown"
    profile_used: str | None = None
    violations: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    sbom_present: bool = False
    attestations: list[str] = field(default_factory=list)
    timestamp: str = ""
    schema_version: str = STATUS_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "schemaVersion": self.schema_version,
            "imageRef": self.image_ref,
            "status": self.status,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
            "sbomPresent": self.sbom_present,
            "attestations": list(self.attestations),
            "timestamp": self.timestamp,
        }
        if self.profile_used:
            payload["profileUsed"] = self.profile_used
        return payload

    def format_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2)

    def exit_code(self) -> int:
        if self.status == "unknown":
            return 2
        if self.status == "pass":
            return 0
        return 1


def _violations(entries):
    if not isinstance(entries, list):
        return []
    return [Violation.from_mapping(e) for e in entries if isinstance(e, dict)]


def trust_status(config, image_ref: str, *, store=None, digest_resolver=None) -> TrustStatusResult:
    store = store if store is not None else FileStateStore(config.state_dir)
    resolver = digest_resolver if digest_resolver is not None else digest_resolver_for(config)

    try:
        digest = checked_digest(resolver(image_ref))
    except Exception as exc:
        log_event("status", f"digest_unresolved image={image_ref} error={exc}")
        digest = ""

    try:
        state = load_verify_state(store, image_ref, digest_resolver=lambda _ref: digest or None)
    except (StateStoreError, ValueError) as exc:
        log_event("status", f"state_unreadable image={image_ref} error={exc}")
        state = None
    if state is None:
        log_event("status", f"no_state image={image_ref} status=unknown")
        return TrustStatusResult(image_ref=image_ref)

    policy_result = state.result.get("policyResult") or {}
    sbom = state.result.get("sbomPresent")
    attestations = find_attestations_for_digest(config.attestation_dir, digest) if digest else []
    result = TrustStatusResult(
        image_ref=state.image_ref,
        status=state.status,
        profile_used=state.profile_used,
        violations=_violations(policy_result.get("violations")),
        warnings=_violations(policy_result.get("warnings")),
        sbom_present=sbom if isinstance(sbom, bool) else False,
        attestations=[str(p) for p in attestations],
        timestamp=state.timestamp,
    )
    log_event(
        "status",
        f"loaded image={image_ref} status={result.status} violations={len(result.violations)} "
        f"attestations={len(result.attestations)}",
    )
    return result


def render_status(result: TrustStatusResult) -> str:
    lines = [
        "Trust Status",
        "",
        f"Image:          {result.image_ref}",
        f"Last Verified:  {result.timestamp}",
        f"Status:         {result.status.upper()}",
    ]
    if result.profile_used:
        lines.append(f"Profile:        {result.profile_used}")
    lines += [
        "",
        "Artifacts:",
        f"  SBOM:         {'present' if result.sbom_present else 'not found'}",
        f"  Attestations: {len(result.attestations)} found" if result.attestations else "  Attestations: none",
    ]
    if result.violations:
        lines += ["", "Policy Violations:"]
        lines += [f"  [{v.severity}] {v.rule}: {v.message}" for v in result.violations]
    if result.warnings:
        lines += ["", f"Warnings ({len(result.warnings)} ignored):"]
        lines += [f"  [{w.severity}] {w.rule}: {w.message}" for w in result.warnings]
    if not result.violations and not result.warnings and result.status == "pass":
        lines += ["", "No policy violations"]
    return "\n".join(lines)
