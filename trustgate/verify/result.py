import dataclasses
import json
import time
from typing import Any, Mapping


SEVERITIES = ("critical", "high", "medium", "low", "informational")
STATUSES = ("pass", "fail", "warn")

NIL_RESULT_JSON = '{"status":"fail","error":"internal error: nil result"}'


def utc_iso8601() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


@dataclasses.dataclass(frozen=True)
class Violation:
    rule: str
    severity: str
    message: str
    result: str = "fail"

    def to_dict(self) -> dict[str, str]:
        return {
            "rule": self.rule,
            "severity": self.severity,
            "result": self.result,
            "message": self.message,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Violation":
        return cls(
            rule=str(data.get("rule", "")),
            severity=str(data.get("severity", "")),
            result=str(data.get("result", "fail")),
            message=str(data.get("message", "")),
        )


def critical(rule: str, message: str) -> Violation:
    return Violation(rule=rule, severity="critical", message=message)


@dataclasses.dataclass(frozen=True)
class ArtifactConfig:
    user: str
    labels: Mapping[str, str]


@dataclasses.dataclass(frozen=True)
class PolicyInput:
    config: ArtifactConfig
    sbom_present: bool
    attestation_present: bool
    for_promotion: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": {"User": self.config.user, "Labels": dict(self.config.labels)},
            "sbom": {"present": self.sbom_present},
            "attestation": {"present": self.attestation_present},
            "promotion": self.for_promotion,
        }


@dataclasses.dataclass
class PolicyResult:
    allow: bool
    violations: list[Violation]
    warnings: list[Violation]

    def to_dict(self) -> dict[str, Any]:
        return {
            "allow": self.allow,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclasses.dataclass
class VerifyResult:
    status: str
    sbom_present: bool
    policy_result: PolicyResult
    attestations: list[str]
    violations: list[Violation]
    input: PolicyInput | None = None
    # Persistence problems reported by the state store; never serialized.
    state_warnings: list[str] = dataclasses.field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "status": self.status,
            "sbomPresent": self.sbom_present,
            "policyResult": self.policy_result.to_dict(),
            "attestations": list(self.attestations),
            "violations": [v.to_dict() for v in self.violations],
        }
        if self.input is not None:
            payload["input"] = self.input.to_dict()
        return payload

    def format_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2)

    def exit_code(self) -> int:
        if self.status == "pass":
            return 0
        return 1

    def validate_gate(self) -> None:
        if self.status not in STATUSES:
            raise ValueError(f"trustgate.result.invalid status={self.status}")
        if self.policy_result.allow != (len(self.policy_result.violations) == 0):
            raise ValueError("trustgate.result.invalid allow disagrees with violations")
        if (self.status == "pass") != self.policy_result.allow:
            raise ValueError("trustgate.result.invalid status disagrees with allow")


def verify_exit_code(result: VerifyResult | None) -> int:
    if result is None:
        return 2
    return result.exit_code()


def format_result_json(result: VerifyResult | None) -> str:
    if result is None:
        return NIL_RESULT_JSON
    return result.format_json()


@dataclasses.dataclass(frozen=True)
class VerifyState:
    image_ref: str
    status: str
    timestamp: str
    result: Mapping[str, Any]
    profile_used: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "imageRef": self.image_ref,
            "status": self.status,
            "timestamp": self.timestamp,
            "result": dict(self.result),
        }
        if self.profile_used:
            payload["profileUsed"] = self.profile_used
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "VerifyState":
        result = data.get("result")
        if not isinstance(result, Mapping):
            result = {}
        return cls(
            image_ref=str(data.get("imageRef", "")),
            status=str(data.get("status", "")),
            timestamp=str(data.get("timestamp", "")),
            result=result,
            profile_used=data.get("profileUsed") or None,
        )
