from trustgate.trust.attestation import (
    AttestationDetail,
    validate_attestation,
)
from trustgate.trust.canonical_hash import (
    canon_json_bytes,
    compute_results_hash,
)
from trustgate.trust.engine import (
    TrustVerificationFailed,
    TrustVerifyResult,
    find_attestations_for_digest,
    trust_decision,
    verify_attestations,
)
from trustgate.trust.status import (
    TrustStatusResult,
    trust_status,
)
from trustgate.trust.writer import (
    AttestationError,
    AttestResult,
    create_attestation,
)

__all__ = [
    "AttestResult",
    "AttestationDetail",
    "AttestationError",
    "TrustStatusResult",
    "TrustVerificationFailed",
    "TrustVerifyResult",
    "canon_json_bytes",
    "compute_results_hash",
    "create_attestation",
    "find_attestations_for_digest",
    "trust_decision",
    "trust_status",
    "validate_attestation",
    "verify_attestations",
]
