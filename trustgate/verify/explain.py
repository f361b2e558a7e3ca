from trustgate.logger import log_event
from trustgate.verify.result import VerifyState
from trustgate.verify.state_store import LAST_VERIFY_KEY, StateStoreError


class ExplainError(Exception):
    pass


NO_HISTORY_HINT = "Run 'trustgate verify' first to generate verification results"


def explain_last(store) -> VerifyState:
    try:
        data = store.load(LAST_VERIFY_KEY)
    except StateStoreError as exc:
        raise ExplainError(f"failed to read verification state: {exc}") from exc
    if data is None:
        raise ExplainError(f"no verification history found\n\nHint: {NO_HISTORY_HINT}")

    state = VerifyState.from_mapping(data)
    result = dict(state.result)
    result.setdefault("input", {})
    log_event("explain", f"loaded image={state.image_ref} status={state.status}")
    return VerifyState(
        image_ref=state.image_ref,
        status=state.status,
        timestamp=state.timestamp,
        result=result,
        profile_used=state.profile_used,
    )


def render_explanation(state, waivers=(), now=None) -> str:
    result = state.result or {}
    lines = [
        "Last Verification Decision",
        "",
        f"Image:      {state.image_ref}",
        f"Time:       {state.timestamp}",
        f"Decision:   {state.status.upper()}",
    ]
    if state.profile_used:
        lines.append(f"Profile:    {state.profile_used}")
    lines.append("")

    if "sbomPresent" in result:
        lines.append("SBOM: Present" if result["sbomPresent"] else "SBOM: Missing")
    attestations = result.get("attestations")
    if isinstance(attestations, list):
        lines.append(f"Attestations: {len(attestations)} found" if attestations else "Attestations: None")

    violations = result.get("violations") or []
    if violations:
        lines += ["", "Policy Violations:"]
        for index, violation in enumerate(violations, start=1):
            lines.append(f"  {index}. [{violation.get('severity', '')}] {violation.get('rule', '')}")
            lines.append(f"     {violation.get('message', '')}")
        lines += [
            "",
            "Remediation:",
            "  - Review policy rules in .trustgate/policy/",
            "  - Fix violations in the Dockerfile or build process",
            "  - Rebuild the image and re-run 'trustgate verify'",
        ]

    policy_result = result.get("policyResult") or {}
    if "allow" in policy_result:
        lines += ["", "Policy: Allowed" if policy_result["allow"] else "Policy: Denied"]
    warnings = policy_result.get("warnings") or []
    if warnings:
        lines += ["", "Warnings:"]
        for index, warning in enumerate(warnings, start=1):
            lines.append(f"  {index}. {warning.get('rule', '')}: {warning.get('message', '')}")

    if waivers:
        lines += ["", "Policy Waivers:"]
        for index, waiver in enumerate(waivers, start=1):
            marker = " (EXPIRED)" if waiver.is_expired(now) else ""
            lines.append(f"  {index}. {waiver.rule_id}{marker}")
            lines.append(f"     Justification: {waiver.justification}")
            if waiver.expiry:
                lines.append(f"     Expires: {waiver.expiry}")
            if waiver.approved_by:
                lines.append(f"     Approved by: {waiver.approved_by}")

    lines += ["", "To see the full verification output:", f"  trustgate verify {state.image_ref}"]
    return "\n".join(lines)
