"""Verification gate.

`verify_artifact` always produces a fully populated VerifyResult. Status is
derived from the final PolicyResult in `_GateRun.conclude` and nowhere else.
Violations raised by the engine itself (missing SBOM, expired waivers,
inspection and evaluator failures) are never subject to profile filtering.
"""

from dataclasses import dataclass, field

from trustgate.logger import log_event
from trustgate.verify.evaluator import PolicyEvaluationError, evaluate_policy
from trustgate.verify.facts import ArtifactInspectError, digest_resolver_for
from trustgate.verify.policy_input import attestations_present, build_policy_input, sbom_present
from trustgate.verify.profile import resolve_violations
from trustgate.verify.result import PolicyResult, VerifyResult, critical
from trustgate.verify.state_store import FileStateStore, save_verify_state
from trustgate.verify.waivers import WaiverLoadError, expired_waivers, load_waivers


ENGINE_RULES = frozenset({"opa-required", "policy-evaluation-error"})


class VerificationFailed(Exception):
    def __init__(self, message, result):
        super().__init__(message)
        self.result = result


def finalize_gate(engine_violations, policy_violations, profile=None) -> PolicyResult:
    resolution = resolve_violations(profile, policy_violations)
    violations = list(engine_violations) + list(resolution.violations)
    return PolicyResult(
        allow=not violations,
        violations=violations,
        warnings=list(resolution.warnings),
    )


@dataclass
class _GateRun:
    config: object
    image_ref: str
    profile: object
    store: object
    digest_resolver: object
    engine: list = field(default_factory=list)
    policy: list = field(default_factory=list)
    sbom_present: bool = False
    policy_input: object = None

    def fail(self, violation):
        log_event("gate", f"violation image={self.image_ref} rule={violation.rule} severity={violation.severity}")
        self.engine.append(violation)

    def should_stop(self):
        return bool(self.engine) and self.config.enforcing

    def conclude(self, reason=None, always_raise=False) -> VerifyResult:
        policy_result = finalize_gate(self.engine, self.policy, self.profile)
        status = "pass" if policy_result.allow else "fail"
        result = VerifyResult(
            status=status,
            sbom_present=self.sbom_present,
            policy_result=policy_result,
            attestations=["present"] if attestations_present(self.config) else [],
            violations=policy_result.violations,
            input=self.policy_input,
        )
        result.validate_gate()

        state_warnings = save_verify_state(
            self.store,
            self.image_ref,
            result,
            self.profile.name if self.profile is not None else None,
            digest_resolver=self.digest_resolver,
        )
        result.state_warnings.extend(state_warnings)
        log_event(
            "gate",
            f"concluded image={self.image_ref} status={status} violations={len(policy_result.violations)} "
            f"warnings={len(policy_result.warnings)} mode={self.config.policy_mode}",
        )

        if status != "pass" and (always_raise or self.config.enforcing):
            raise VerificationFailed(f"verification failed: {reason or _summary(policy_result)}", result)
        return result


def _summary(policy_result):
    rules = ", ".join(v.rule for v in policy_result.violations)
    return f"{len(policy_result.violations)} violation(s): {rules}"


def verify_artifact(
    config,
    image_ref,
    *,
    for_promotion=False,
    profile=None,
    store=None,
    digest_resolver=None,
) -> VerifyResult:
    run = _GateRun(
        config=config,
        image_ref=image_ref,
        profile=profile,
        store=store if store is not None else FileStateStore(config.state_dir),
        digest_resolver=digest_resolver if digest_resolver is not None else digest_resolver_for(config),
    )
    log_event(
        "gate",
        f"start image={image_ref} promotion={for_promotion} "
        f"profile={profile.name if profile is not None else '<none>'} mode={config.policy_mode}",
    )
    try:
        return _verify(run, for_promotion)
    except VerificationFailed:
        raise
    except Exception as exc:
        log_event("gate", f"internal_error image={image_ref} error={type(exc).__name__}: {exc}")
        run.fail(critical("internal-error", f"Internal error during verification: {exc}"))
        return run.conclude(reason="internal error", always_raise=True)


def _verify(run, for_promotion):
    config = run.config

    run.sbom_present = sbom_present(config)
    if not run.sbom_present:
        run.fail(critical("sbom-required", "SBOM is required but not found"))
        if run.should_stop():
            return run.conclude(reason="SBOM required but not found")

    for waiver in expired_waivers(_load_waivers(config)):
        run.fail(critical(waiver.rule_id, f"Waiver for rule '{waiver.rule_id}' expired on {waiver.expiry}"))
    if run.should_stop():
        return run.conclude()

    try:
        run.policy_input = build_policy_input(config, run.image_ref, for_promotion)
    except ArtifactInspectError as exc:
        run.fail(critical("image-inspect-failed", f"Unable to inspect image config: {exc}"))
        # without facts there is nothing meaningful to evaluate
        return run.conclude(reason="image inspection failed")

    try:
        evaluated = evaluate_policy(config.policy_dir, run.policy_input, config.evaluator)
    except PolicyEvaluationError as exc:
        run.fail(critical("policy-evaluation-error", f"Policy evaluation error: {exc}"))
        return run.conclude(reason="policy evaluation error")

    for violation in evaluated:
        if violation.rule in ENGINE_RULES:
            run.fail(violation)
        else:
            run.policy.append(violation)

    return run.conclude()


def _load_waivers(config):
    try:
        return load_waivers(config.waivers_path)
    except WaiverLoadError as exc:
        log_event("gate", f"waivers_ignored path={config.waivers_path} error={exc}")
        return []
