"""JSONL audit trail of attestation requests."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class AuditResult(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(frozen=True)
class AuditEntry:
    timestamp: str
    solver_address: str | None
    intent_hash: str
    payment_id: str | None
    amount_cents: int | None
    result: AuditResult
    duration_ms: int
    error_code: str | None = None

    def to_json(self) -> str:
        data = asdict(self)
        data["result"] = self.result.value
        return json.dumps(data, sort_keys=True)


class AuditLog:
    """Append-only JSONL file; a None path only logs."""

    def __init__(self, path: str | None) -> None:
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        *,
        solver_address: str | None,
        intent_hash: str,
        result: AuditResult,
        duration_ms: int,
        payment_id: str | None = None,
        amount_cents: int | None = None,
        error_code: str | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            solver_address=solver_address,
            intent_hash=intent_hash,
            payment_id=payment_id,
            amount_cents=amount_cents,
            result=result,
            duration_ms=duration_ms,
            error_code=error_code,
        )
        logger.info(
            f"Attestation {result.value}",
            extra={
                "solver_address": solver_address,
                "intent_hash": intent_hash,
                "payment_id": payment_id,
                "result": result.value,
                "duration_ms": duration_ms,
                "error_code": error_code,
            },
        )
        if self.path is not None:
            with self._lock, self.path.open("a", encoding="utf-8") as fh:
                fh.write(entry.to_json() + "\n")
        return entry
