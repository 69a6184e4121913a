from __future__ import annotations
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from ..core.errors import JobNotFound, LaunchError, WorkspaceError
from ..core.models import CANCELLED_EXIT_CODE, CompletionEvent, Job, JobState, RunMode
from ..core.settings import Settings, load_settings
from ..core.utils import elapsed_ms
from .events import EventChannel, EventHub, EventSink
from .registry import JobRegistry
from .supervisor import ProcessSupervisor, RunningJob
from .workspace import WorkspaceBuilder

log = structlog.get_logger(__name__)


class JobService:
    """
    Orchestrator: ghép Registry + WorkspaceBuilder + Supervisor + EventSink.
    Mỗi job: 1 thread điều phối (chờ exit, phát completion) + 2 thread đọc stream.
    """

    def __init__(self, settings: Optional[Settings] = None, sink: Optional[EventSink] = None):
        self.settings = settings or load_settings()
        self.sink = sink if sink is not None else EventHub(self.settings.event_retention_s)
        self.registry = JobRegistry()
        self.builder = WorkspaceBuilder(
            Path(self.settings.workspace_root) if self.settings.workspace_root else None
        )
        self.supervisor = ProcessSupervisor(self.settings, self.registry, self.sink)

    @property
    def hub(self) -> Optional[EventHub]:
        return self.sink if isinstance(self.sink, EventHub) else None

    def submit(self, job_id: str, source: str, mode: RunMode = RunMode.RUN) -> Job:
        """
        Nhận job và chạy nền. Lỗi DuplicateJob / WorkspaceError / LaunchError
        trả về ngay cho caller, khi đó job không phát event nào.
        """
        job = Job(job_id=job_id, mode=RunMode(mode))
        self.registry.insert(job)  # DuplicateJob: chưa có side effect gì

        # mỗi lần submit một channel riêng: event của lần chạy trước cùng id
        # không bao giờ rơi vào channel của lần này
        hub = self.hub
        channel = hub.open(job_id) if hub is not None else None

        try:
            workspace = self.builder.prepare(source, job.mode)
        except WorkspaceError:
            job.state = JobState.FAILED
            self._release(job_id, channel)
            log.error("job_workspace_failed", job_id=job_id, exc_info=True)
            raise

        try:
            running = self.supervisor.start(job, workspace, channel)
        except LaunchError:
            self._release(job_id, channel)
            workspace.cleanup()
            raise

        t = threading.Thread(
            target=self._coordinate,
            args=(running,),
            name=f"{job_id}-coordinator",
            daemon=True,
        )
        t.start()
        log.info("job_submitted", job_id=job_id, mode=job.mode.value, workspace=str(workspace.path))
        return job

    def cancel(self, job_id: str) -> bool:
        return self.supervisor.cancel(job_id)

    def status(self, job_id: str) -> Dict[str, Any]:
        job = self.registry.lookup(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job.to_dict()

    def active_jobs(self) -> int:
        return len(self.registry)

    def _release(self, job_id: str, channel: Optional[EventChannel]) -> None:
        self.registry.remove(job_id)
        hub = self.hub
        if hub is not None:
            hub.discard(job_id, channel)

    def _coordinate(self, running: RunningJob) -> None:
        job = running.job
        try:
            event = self.supervisor.await_completion(running)
        except Exception:
            log.exception("job_coordinator_failed", job_id=job.job_id)
            job.state = JobState.FAILED
            self.supervisor.terminate(job)
            event = CompletionEvent(
                job.job_id, CANCELLED_EXIT_CODE, elapsed_ms(running.started), job.cancel_requested
            )

        # thứ tự: gỡ khỏi registry -> xoá workspace -> phát completion.
        # Ai thấy completion thì id đã rảnh và workspace đã mất.
        self.registry.remove(job.job_id)
        running.workspace.cleanup()
        try:
            running.sink.emit(event)
        except Exception:
            log.exception("event_emit_failed", job_id=job.job_id, kind=event.kind)
        log.info(
            "job_completed",
            job_id=job.job_id,
            state=job.state.value,
            exit_code=event.exit_code,
            duration_ms=event.duration_ms,
        )
