"""Artifact introspection through external container tools.

Inspection failure is always an error. An empty default config would let
root-user rules silently never fire.
"""

from __future__ import annotations

import json
import re
import shutil
import subprocess
from typing import Sequence

from trustgate.config import DEFAULT_CONTAINER_TOOLS
from trustgate.logger import log_event
from trustgate.verify.result import ArtifactConfig


_DIGEST_PATTERN = re.compile(r"[0-9a-f]{64}")


class ArtifactInspectError(Exception):
    pass


class DigestResolutionError(Exception):
    pass


def _find_tool(name: str) -> str | None:
    return shutil.which(name)


def _run_tool(argv: list[str], timeout_seconds: int) -> str:
    proc = subprocess.run(
        argv,
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
        check=True,
    )
    return proc.stdout


def normalize_digest(value: str) -> str:
    value = (value or "").strip().lower()
    if value.startswith("sha256:"):
        value = value[len("sha256:"):]
    return value


def checked_digest(value) -> str:
    digest = normalize_digest(value)
    if not _DIGEST_PATTERN.fullmatch(digest):
        raise DigestResolutionError(f"invalid sha256 digest {value!r}")
    return digest


def inspect_artifact(
    image_ref: str,
    *,
    tools: Sequence[str] = DEFAULT_CONTAINER_TOOLS,
    timeout_seconds: int = 30,
) -> ArtifactConfig:
    last_error = None
    tried = []
    for tool in tools:
        path = _find_tool(tool)
        if path is None:
            continue
        tried.append(tool)
        try:
            output = _run_tool([path, "inspect", image_ref], timeout_seconds)
            config = _parse_inspect_output(output)
        except subprocess.TimeoutExpired:
            last_error = f"{tool} inspect timed out after {timeout_seconds}s"
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            last_error = f"{tool} inspect exited {exc.returncode}: {stderr}"
        except (OSError, ValueError) as exc:
            last_error = f"{tool} inspect failed: {exc}"
        else:
            log_event("facts", f"inspected image={image_ref} tool={tool} user={config.user or '<empty>'}")
            return config
        log_event("facts", f"inspect_failed image={image_ref} tool={tool} error={last_error}")

    names = "/".join(tools)
    if last_error is not None:
        raise ArtifactInspectError(f"failed to inspect image: {last_error} (tried {'/'.join(tried)})")
    raise ArtifactInspectError(f"no container tools found ({names} required)")


def _parse_inspect_output(output: str) -> ArtifactConfig:
    payload = json.loads(output)
    if not isinstance(payload, list) or not payload:
        raise ValueError("inspect output is not a non-empty JSON array")
    first = payload[0]
    if not isinstance(first, dict):
        raise ValueError("inspect output entry is not an object")
    config = first.get("Config") or {}
    if not isinstance(config, dict):
        raise ValueError("Config is not an object")

    user = config.get("User") or ""
    labels = config.get("Labels") or {}
    if not isinstance(user, str):
        raise ValueError("Config.User is not a string")
    if not isinstance(labels, dict):
        raise ValueError("Config.Labels is not an object")
    return ArtifactConfig(user=user, labels={str(k): str(v) for k, v in labels.items()})


def resolve_digest(
    image_ref: str,
    *,
    tools: Sequence[str] = DEFAULT_CONTAINER_TOOLS,
    timeout_seconds: int = 30,
) -> str:
    if "@sha256:" in image_ref:
        return checked_digest(image_ref.split("@sha256:", 1)[1])

    for tool in tools:
        path = _find_tool(tool)
        if path is None:
            continue
        try:
            output = _run_tool([path, "inspect", "--format={{.Id}}", image_ref], timeout_seconds)
        except (subprocess.SubprocessError, OSError) as exc:
            log_event("facts", f"digest_failed image={image_ref} tool={tool} error={exc}")
            continue
        try:
            return checked_digest(output)
        except DigestResolutionError as exc:
            log_event("facts", f"digest_invalid image={image_ref} tool={tool} error={exc}")

    raise DigestResolutionError(f"could not resolve digest for {image_ref}")


def digest_resolver_for(config):
    def _resolve(image_ref: str) -> str:
        return resolve_digest(
            image_ref,
            tools=config.inspector.tools,
            timeout_seconds=config.inspector.timeout_seconds,
        )

    return _resolve
