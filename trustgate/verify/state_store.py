from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from trustgate.logger import log_event
from trustgate.verify.facts import checked_digest
from trustgate.verify.result import VerifyState, utc_iso8601


LAST_VERIFY_KEY = "last_verify"
LAST_ATTESTATION_KEY = "last_attestation"


class StateStoreError(Exception):
    pass


class StateStore(Protocol):
    def load(self, key: str) -> dict[str, Any] | None:
        ...

    def save(self, key: str, value: dict[str, Any]) -> None:
        ...


def verify_key(digest: str) -> str:
    return f"verify/{digest}"


@dataclass(frozen=True)
class FileStateStore:
    root: Path

    def path_for(self, key: str) -> Path:
        parts = key.split("/")
        if not key or any(part in ("", ".", "..") for part in parts):
            raise ValueError(f"trustgate.state.invalid key={key!r}")
        return Path(self.root).joinpath(*parts[:-1], f"{parts[-1]}.json")

    def load(self, key: str) -> dict[str, Any] | None:
        path = self.path_for(key)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StateStoreError(f"failed to read state {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateStoreError(f"state {path} is not a JSON object")
        return data

    def save(self, key: str, value: dict[str, Any]) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(value, sort_keys=True, indent=2) + "\n"
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise


def _resolve(digest_resolver, image_ref):
    if digest_resolver is None:
        return None
    try:
        value = digest_resolver(image_ref)
        return checked_digest(value) if value else None
    except Exception as exc:
        log_event("state", f"digest_unresolved image={image_ref} error={exc}")
        return None


def save_verify_state(store, image_ref, result, profile_name=None, *, digest_resolver=None) -> list[str]:
    """Persist the verification outcome. Never raises; returns warnings."""
    state = VerifyState(
        image_ref=image_ref,
        status=result.status,
        timestamp=utc_iso8601(),
        result=result.to_dict(),
        profile_used=profile_name,
    )
    payload = state.to_dict()
    warnings = []

    try:
        store.save(LAST_VERIFY_KEY, payload)
    except Exception as exc:
        warnings.append(f"failed to write verification state: {exc}")

    digest = _resolve(digest_resolver, image_ref)
    if digest:
        try:
            store.save(verify_key(digest), payload)
        except Exception as exc:
            warnings.append(f"failed to write digest-scoped state for {digest[:12]}: {exc}")

    for warning in warnings:
        log_event("state", f"save_warning image={image_ref} warning={warning}")
    log_event("state", f"saved image={image_ref} status={result.status} digest={(digest or '')[:12] or '<none>'}")
    return warnings


def load_verify_state(store, image_ref, *, digest_resolver=None) -> VerifyState | None:
    digest = _resolve(digest_resolver, image_ref)
    if digest:
        data = store.load(verify_key(digest))
        if data is not None:
            return VerifyState.from_mapping(data)

    data = store.load(LAST_VERIFY_KEY)
    if data is None:
        return None
    state = VerifyState.from_mapping(data)
    if state.image_ref != image_ref:
        log_event("state", f"global_state_mismatch requested={image_ref} stored={state.image_ref}")
        return None
    return state
