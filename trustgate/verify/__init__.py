from trustgate.verify.evaluator import (
    PolicyEvaluationError,
    decode_evaluator_output,
    evaluate_policy,
)
from trustgate.verify.explain import (
    ExplainError,
    explain_last,
    render_explanation,
)
from trustgate.verify.facts import (
    ArtifactInspectError,
    DigestResolutionError,
    checked_digest,
    inspect_artifact,
    normalize_digest,
    resolve_digest,
)
from trustgate.verify.gate import (
    VerificationFailed,
    finalize_gate,
    verify_artifact,
)
from trustgate.verify.policy_input import (
    build_policy_input,
)
from trustgate.verify.profile import (
    Profile,
    ProfileError,
    load_profile,
    resolve_violations,
)
from trustgate.verify.result import (
    PolicyInput,
    PolicyResult,
    VerifyResult,
    VerifyState,
    Violation,
    format_result_json,
    verify_exit_code,
)
from trustgate.verify.state_store import (
    FileStateStore,
    StateStore,
    StateStoreError,
    load_verify_state,
    save_verify_state,
)
from trustgate.verify.waivers import (
    Waiver,
    WaiverLoadError,
    load_waivers,
)

__all__ = [
    "ArtifactInspectError",
    "DigestResolutionError",
    "ExplainError",
    "FileStateStore",
    "PolicyEvaluationError",
    "PolicyInput",
    "PolicyResult",
    "Profile",
    "ProfileError",
    "StateStore",
    "StateStoreError",
    "VerificationFailed",
    "VerifyResult",
    "VerifyState",
    "Violation",
    "Waiver",
    "WaiverLoadError",
    "build_policy_input",
    "decode_evaluator_output",
    "evaluate_policy",
    "explain_last",
    "finalize_gate",
    "format_result_json",
    "checked_digest",
    "inspect_artifact",
    "load_profile",
    "load_verify_state",
    "load_waivers",
    "normalize_digest",
    "render_explanation",
    "resolve_digest",
    "resolve_violations",
    "save_verify_state",
    "verify_exit_code",
    "verify_artifact",
]
