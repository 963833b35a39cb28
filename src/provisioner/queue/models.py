from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(slots=True)
class JobMessage:
    job_id: str
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
    requested_by: str | None = None
    delay_seconds: float = 0.0
    # wall-clock epoch before which the job must not run
    not_before: float | None = None

    def to_message_body(self) -> str:
        data = asdict(self)
        return json.dumps({k: v for k, v in data.items() if v is not None}, separators=(",", ":"))

    @classmethod
    def from_message_body(cls, body: str | dict[str, Any]) -> JobMessage:
        data = json.loads(body) if isinstance(body, str) else dict(body)
        return cls(
            job_id=data["job_id"],
            job_type=data["job_type"],
            payload=data.get("payload") or {},
            idempotency_key=data.get("idempotency_key"),
            requested_by=data.get("requested_by"),
            delay_seconds=float(data.get("delay_seconds") or 0.0),
            not_before=data.get("not_before"),
        )
