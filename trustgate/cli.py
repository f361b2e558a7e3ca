import json
import sys

import click

from trustgate import __version__
from trustgate.config import ConfigLoadError, init_workspace, load_config
from trustgate.logger import log_event
from trustgate.trust.engine import TrustVerificationFailed, verify_attestations
from trustgate.trust.status import render_status, trust_status
from trustgate.trust.writer import AttestationError, create_attestation
from trustgate.verify.explain import ExplainError, explain_last, render_explanation
from trustgate.verify.gate import VerificationFailed, verify_artifact
from trustgate.verify.profile import ProfileError, load_profile
from trustgate.verify.result import format_result_json, verify_exit_code
from trustgate.verify.state_store import FileStateStore, StateStoreError
from trustgate.verify.waivers import WaiverLoadError, load_waivers


EXIT_INTERNAL = 2


def _fail(message, remediation=None, code=1):
    click.echo(f"Error: {message}", err=True)
    if remediation:
        click.echo(f"Remediation: {remediation}", err=True)
    sys.exit(code)


def _config(ctx):
    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigLoadError as exc:
        _fail(str(exc), "Run 'trustgate init' or pass --config", code=EXIT_INTERNAL)


@click.group()
@click.version_option(__version__, prog_name="trustgate")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to trustgate.yaml")
@click.pass_context
def cli(ctx, config_path):
    """Policy verification and trust validation for container images."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--name", "project_name", help="Project name (defaults to the directory name)")
def init(project_name):
    """Create trustgate.yaml and a default policy."""
    try:
        written = init_workspace(".", project_name)
    except ConfigLoadError as exc:
        _fail(str(exc), "Remove the existing configuration or edit it directly")
    for path in written:
        click.echo(f"Created {path}")


def _render_verify(result):
    lines = [f"Verification: {result.status.upper()}"]
    lines.append(f"SBOM: {'present' if result.sbom_present else 'missing'}")
    for violation in result.violations:
        lines.append(f"  [{violation.severity}] {violation.rule}: {violation.message}")
    for warning in result.policy_result.warnings:
        lines.append(f"  warning [{warning.severity}] {warning.rule}: {warning.message}")
    return "\n".join(lines)


@cli.command()
@click.argument("image")
@click.option("--profile", "profile_name", help="Profile name or path applied after evaluation")
@click.option("--promotion", is_flag=True, help="Require promotion-grade evidence")
@click.option("--json", "as_json", is_flag=True, help="Emit the result as JSON")
@click.pass_context
def verify(ctx, image, profile_name, promotion, as_json):
    """Verify IMAGE against the configured policy."""
    config = _config(ctx)
    profile = None
    if profile_name:
        try:
            profile = load_profile(profile_name, config.profiles_dir)
        except ProfileError as exc:
            _fail(str(exc), f"Check {config.profiles_dir} for available profiles", code=EXIT_INTERNAL)

    error = None
    try:
        result = verify_artifact(config, image, for_promotion=promotion, profile=profile)
    except VerificationFailed as exc:
        result = exc.result
        error = exc

    click.echo(format_result_json(result) if as_json else _render_verify(result))
    for warning in result.state_warnings:
        click.echo(f"Warning: {warning}", err=True)
    code = verify_exit_code(result)
    if any(v.rule == "internal-error" for v in result.violations):
        code = EXIT_INTERNAL
    if error is not None:
        log_event("cli", f"verify_failed image={image} exit={code}")
        if not as_json:
            click.echo(f"Error: {error}", err=True)
    sys.exit(code)


@cli.command()
@click.argument("image")
@click.option("--json", "as_json", is_flag=True, help="Emit the result as JSON")
@click.pass_context
def attest(ctx, image, as_json):
    """Create an attestation for IMAGE from its last verification."""
    config = _config(ctx)
    try:
        result = create_attestation(config, image)
    except AttestationError as exc:
        _fail(str(exc))
    if as_json:
        click.echo(format_json(result.to_dict()))
    else:
        click.echo("Attestation created")
        click.echo(f"  Path:    {result.output_path}")
        click.echo(f"  Subject: {image}")
        click.echo(f"  Hash:    {result.attestation['evidence']['verificationResultsHash']}")


def format_json(payload):
    return json.dumps(payload, sort_keys=True, indent=2)


@cli.group()
def policy():
    """Inspect policy decisions."""


@policy.command("explain")
@click.option("--json", "as_json", is_flag=True, help="Emit the last decision as JSON")
@click.pass_context
def policy_explain(ctx, as_json):
    """Explain the last verification decision."""
    config = _config(ctx)
    try:
        state = explain_last(FileStateStore(config.state_dir))
    except ExplainError as exc:
        _fail(str(exc))
    if as_json:
        click.echo(format_json(state.to_dict()))
        return
    try:
        waivers = load_waivers(config.waivers_path)
    except WaiverLoadError as exc:
        log_event("cli", f"waivers_unavailable error={exc}")
        waivers = []
    click.echo(render_explanation(state, waivers))


@cli.group()
def trust():
    """Attestation trust checks."""


@trust.command("verify")
@click.argument("image")
@click.option("--json", "as_json", is_flag=True, help="Emit the result as JSON")
@click.pass_context
def trust_verify(ctx, image, as_json):
    """Validate the attestations recorded for IMAGE."""
    config = _config(ctx)
    error = None
    try:
        result = verify_attestations(config, image)
    except TrustVerificationFailed as exc:
        result = exc.result
        error = exc
    except StateStoreError as exc:
        _fail(str(exc), code=EXIT_INTERNAL)

    if as_json:
        click.echo(result.format_json())
    else:
        click.echo(f"Trust: {result.verification_status.upper()}")
        click.echo(f"Attestations: {result.valid_count} valid, {result.invalid_count} invalid")
        for detail in result.attestations:
            state = "valid" if detail.valid else f"invalid ({detail.invalid_reason})"
            click.echo(f"  {detail.path}: {state}")
    if error is not None and not as_json:
        click.echo(f"Error: {error}", err=True)
        if result.verification_status == "unknown":
            click.echo(f"Remediation: Ensure the image exists locally (docker pull {image})", err=True)
        elif result.attestation_count == 0:
            click.echo(f"Remediation: Run 'trustgate verify {image} && trustgate attest {image}'", err=True)
    sys.exit(result.exit_code())


@trust.command("status")
@click.argument("image")
@click.option("--json", "as_json", is_flag=True, help="Emit the result as JSON")
@click.pass_context
def trust_status_command(ctx, image, as_json):
    """Show the recorded trust status of IMAGE."""
    config = _config(ctx)
    result = trust_status(config, image)
    click.echo(result.format_json() if as_json else render_status(result))
    if result.status == "unknown" and not as_json:
        click.echo(f"Remediation: Run 'trustgate verify {image}' first", err=True)
    sys.exit(result.exit_code())


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
