from __future__ import annotations
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from .errors import InvalidJobMessage
from .models import JobRequest


def new_job_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_source(code: Optional[str]) -> str:
    return (code or "").replace("\r\n", "\n").replace("\u00a0", " ").replace("\t", " ")


def salvage_job_id(body: Any) -> Optional[str]:
    """Best-effort id extraction from a body that did not validate."""
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except ValueError:
            return None
    if isinstance(body, dict):
        jid = body.get("id")
        if isinstance(jid, str) and jid:
            return jid
    return None


def parse_job_message(body: str | bytes) -> JobRequest:
    try:
        return JobRequest.model_validate_json(body)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidJobMessage(f"invalid job message: {problems}", job_id=salvage_job_id(body)) from e
