from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import yaml

from trustgate.logger import log_event


class WaiverLoadError(Exception):
    pass


@dataclass(frozen=True)
class Waiver:
    rule_id: str
    justification: str = ""
    expiry: str = ""
    approved_by: str = ""

    def is_expired(self, now=None) -> bool:
        if not self.expiry:
            return False
        expiry = _parse_rfc3339(self.expiry)
        if expiry is None:
            # unparsable expiry counts as expired
            return True
        current = now or datetime.now(timezone.utc)
        return current > expiry

    def to_dict(self):
        payload = {
            "ruleId": self.rule_id,
            "justification": self.justification,
            "expiry": self.expiry,
        }
        if self.approved_by:
            payload["approvedBy"] = self.approved_by
        return payload


def _parse_rfc3339(value):
    text = str(value).strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


def load_waivers(path):
    waivers_path = Path(path)
    if not waivers_path.exists():
        return []

    try:
        raw = waivers_path.read_text(encoding="utf-8")
    except Exception as exc:
        log_event("waivers", f"load_failed path={waivers_path} error={exc}")
        raise WaiverLoadError(f"Failed to read waivers file: {exc}") from exc

    try:
        data = yaml.safe_load(raw)
    except Exception as exc:
        log_event("waivers", f"parse_failed path={waivers_path} error={exc}")
        raise WaiverLoadError(f"Failed to parse waivers file: {exc}") from exc

    if data is None:
        return []
    if not isinstance(data, dict) or not isinstance(data.get("waivers") or [], list):
        raise WaiverLoadError("Waivers file must be a mapping with a 'waivers' list")

    waivers = []
    for index, entry in enumerate(data.get("waivers") or []):
        if not isinstance(entry, dict):
            raise WaiverLoadError(f"waivers[{index}] must be a mapping")
        rule_id = entry.get("ruleId")
        if not isinstance(rule_id, str) or not rule_id.strip():
            raise WaiverLoadError(f"waivers[{index}].ruleId is required")
        expiry = entry.get("expiry", "")
        if isinstance(expiry, datetime):
            # YAML timestamps arrive pre-parsed
            expiry = expiry.isoformat()
        waivers.append(
            Waiver(
                rule_id=rule_id,
                justification=str(entry.get("justification", "")),
                expiry=str(expiry or ""),
                approved_by=str(entry.get("approvedBy", "") or ""),
            )
        )

    log_event("waivers", f"loaded path={waivers_path} count={len(waivers)}")
    return waivers


def expired_waivers(waivers, now=None):
    return [w for w in waivers if w.is_expired(now)]
