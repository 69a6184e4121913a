from __future__ import annotations
import threading
from subprocess import Popen
from typing import Dict, List, NamedTuple, Optional

from ..core.errors import DuplicateJob
from ..core.models import Job, JobState


class CancelClaim(NamedTuple):
    job: Job
    process: Optional[Popen]   # snapshot lúc claim, None nếu job còn PENDING


class JobRegistry:
    """
    Map job_id -> Job cho các job đang active (PENDING/RUNNING).
    Lock chỉ giữ trong từng thao tác, không bao giờ giữ qua wait/IO.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}

    def insert(self, job: Job) -> None:
        with self._lock:
            if job.job_id in self._jobs:
                raise DuplicateJob(job.job_id)
            self._jobs[job.job_id] = job

    def remove(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.pop(job_id, None)

    def lookup(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def mark_running(self, job_id: str, process: Popen) -> bool:
        """
        Gắn process handle và chuyển sang RUNNING.
        Trả về True nếu đã có yêu cầu cancel lúc job còn PENDING.
        """
        with self._lock:
            job = self._jobs[job_id]
            job.process = process
            job.state = JobState.RUNNING
            return job.cancel_requested

    def claim_cancel(self, job_id: str) -> Optional[CancelClaim]:
        """
        Đánh dấu cancel. Chỉ lần claim đầu tiên nhận được CancelClaim,
        các lần sau (hoặc id không tồn tại) nhận None.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.cancel_requested:
                return None
            job.cancel_requested = True
            return CancelClaim(job, job.process)

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
