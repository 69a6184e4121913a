from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from subprocess import Popen
from typing import Any, Dict, Optional, Union

# Exit code khi process không có mã thoát riêng
# (bị cancel, bị kill bằng signal, hoặc không launch được).
CANCELLED_EXIT_CODE = -1


class RunMode(str, Enum):
    RUN = "run"
    TEST = "test"


class JobState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class StreamName(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass
class Job:
    job_id: str
    mode: RunMode
    state: JobState = JobState.PENDING
    process: Optional[Popen] = None   # chỉ có khi RUNNING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cancel_requested: bool = False

    def to_dict(self) -> Dict[str, Any]:
        proc = self.process
        return {
            "job_id": self.job_id,
            "mode": self.mode.value,
            "state": self.state.value,
            "pid": proc.pid if proc is not None else None,
            "created_at": self.created_at.isoformat(),
            "cancel_requested": self.cancel_requested,
        }


@dataclass(frozen=True)
class OutputLine:
    job_id: str
    stream: StreamName
    text: str

    @property
    def kind(self) -> str:
        return self.stream.value

    def payload(self) -> Dict[str, Any]:
        return {"job_id": self.job_id, "line": self.text}


@dataclass(frozen=True)
class CompletionEvent:
    job_id: str
    exit_code: int
    duration_ms: int
    cancelled: bool = False

    @property
    def kind(self) -> str:
        return "completed"

    def payload(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "cancelled": self.cancelled,
        }


Event = Union[OutputLine, CompletionEvent]
