"""Canonical JSON and the verification results hash.

The results hash binds an attestation to the verification outcome it claims.
Only `status`, `violations`, `waivers`, `sbomPresent` and `attestations`
participate, so cosmetic fields (timestamps, input facts, warnings) never
change it.
"""

from __future__ import annotations

import json
import math
from hashlib import sha256
from typing import Any, Mapping


HASH_PREFIX = "sha256:"

_VIOLATION_SORT_FIELDS = ("rule", "severity", "result", "message")


def canon_json_bytes(obj: Mapping[str, Any], *, allow_floats: bool = False) -> bytes:
    _ensure_mapping(obj)
    _validate_json_value(obj, allow_floats=allow_floats)
    rendered = json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
    return rendered.encode("utf-8")


def build_results_hash_input(result: Mapping[str, Any]) -> Mapping[str, Any]:
    _ensure_mapping(result)
    policy_result = result.get("policyResult")
    if not isinstance(policy_result, Mapping):
        policy_result = {}
    return {
        "status": result.get("status", ""),
        "violations": _sorted_violations(result.get("violations")),
        "waivers": _sorted_waivers(policy_result.get("waivers")),
        "sbomPresent": result.get("sbomPresent"),
        "attestations": list(result.get("attestations") or []),
    }


def compute_results_hash(result: Any) -> str:
    if hasattr(result, "to_dict"):
        result = result.to_dict()
    digest = sha256(canon_json_bytes(build_results_hash_input(result))).hexdigest()
    return HASH_PREFIX + digest


def _sorted_violations(value):
    if not isinstance(value, list):
        return []
    entries = [dict(item) for item in value if isinstance(item, Mapping)]
    return sorted(entries, key=lambda v: tuple(str(v.get(k, "")) for k in _VIOLATION_SORT_FIELDS))


def _sorted_waivers(value):
    if not isinstance(value, list):
        return []
    entries = [dict(item) for item in value if isinstance(item, Mapping)]
    return sorted(entries, key=lambda w: str(w.get("ruleId", "")))


def _ensure_mapping(value: Any) -> None:
    if not isinstance(value, Mapping):
        raise ValueError("trustgate.hash.invalid mapping_required")


def _validate_json_value(value: Any, *, allow_floats: bool) -> None:
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not allow_floats:
            raise ValueError("trustgate.hash.invalid float_forbidden")
        if not math.isfinite(value):
            raise ValueError("trustgate.hash.invalid non_finite_float")
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _validate_json_value(item, allow_floats=allow_floats)
        return
    if isinstance(value, Mapping):
        for key in value.keys():
            if not isinstance(key, str):
                raise ValueError("trustgate.hash.invalid key_type")
        for item in value.values():
            _validate_json_value(item, allow_floats=allow_floats)
        return
    raise ValueError("trustgate.hash.invalid value_type")
