from __future__ import annotations

import json
import re
from typing import Any, Mapping, Optional

_KEY_VALUE = re.compile(r"^\s*(?:jobId|job_id)\s*=\s*(\d+)\s*$", re.IGNORECASE)


def _from_mapping(payload: Mapping[str, Any]) -> Optional[int]:
    for key in ("jobId", "job_id"):
        if key in payload:
            return resolve_job_id(payload[key])
    return None


def resolve_job_id(param: Any) -> Optional[int]:
    """
    Job id from a scheduler trigger parameter: 123, "123", "jobId=123", "job_id=123",
    '{"jobId": 123}' or a dict. Anything else yields None.
    """
    if param is None or isinstance(param, bool):
        return None
    if isinstance(param, int):
        return param if param > 0 else None
    if isinstance(param, Mapping):
        return _from_mapping(param)
    text = str(param).strip()
    if not text:
        return None
    if text.isdigit():
        return int(text) or None
    m = _KEY_VALUE.match(text)
    if m:
        return int(m.group(1)) or None
    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except ValueError:
            return None
        if isinstance(payload, Mapping):
            return _from_mapping(payload)
    return None
