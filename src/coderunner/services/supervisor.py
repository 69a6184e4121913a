from __future__ import annotations
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

from ..core.errors import LaunchError
from ..core.models import CANCELLED_EXIT_CODE, CompletionEvent, Job, JobState, RunMode
from ..core.settings import Settings
from ..core.utils import elapsed_ms
from .events import EventSink
from .multiplexer import StreamMultiplexer
from .registry import JobRegistry
from .workspace import Workspace

log = structlog.get_logger(__name__)

# bước chờ khi join các thread đọc stream
_JOIN_STEP_S = 0.1


@dataclass
class RunningJob:
    job: Job
    workspace: Workspace
    process: subprocess.Popen
    streams: StreamMultiplexer
    sink: EventSink   # kênh riêng của lần submit này
    started: float   # time.monotonic()


class ProcessSupervisor:
    """
    Spawn build tool trong workspace, chờ exit và cancel theo process group.
    Child chạy trong session riêng => pgid == pid, kill cả cây con cháu.
    """

    def __init__(self, settings: Settings, registry: JobRegistry, sink: EventSink):
        self.settings = settings
        self.registry = registry
        self.sink = sink

    def command(self, mode: RunMode) -> List[str]:
        return self.settings.command_for(RunMode(mode).value)

    def _env(self) -> Dict[str, str]:
        return {**os.environ, **self.settings.env}

    # ------------ lifecycle ------------

    def start(self, job: Job, workspace: Workspace, sink: Optional[EventSink] = None) -> RunningJob:
        sink = sink if sink is not None else self.sink
        argv = self.command(job.mode)
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(workspace.path),
                env=self._env(),
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            job.state = JobState.FAILED
            log.error("job_launch_failed", job_id=job.job_id, argv=argv, error=str(e))
            raise LaunchError(f"spawn_failed:{argv[0] if argv else '<empty>'}:{e}") from e

        cancel_pending = self.registry.mark_running(job.job_id, proc)
        streams = StreamMultiplexer(job.job_id, sink, self.settings.decode_errors)
        streams.start(proc.stdout, proc.stderr)

        log.info("job_started", job_id=job.job_id, mode=job.mode.value, pid=proc.pid, argv=argv)
        if cancel_pending:
            # cancel đến lúc job còn PENDING
            self._signal_tree(job, proc)

        return RunningJob(
            job=job, workspace=workspace, process=proc, streams=streams, sink=sink, started=started,
        )

    def await_completion(self, running: RunningJob) -> CompletionEvent:
        job, proc = running.job, running.process
        rc = proc.wait()

        # leader đã thoát; process cháu (cùng group) có thể vẫn giữ pipe.
        # Quá drain_timeout_s thì SIGKILL cả group, quá thêm lần nữa thì bỏ stream.
        deadline = time.monotonic() + self.settings.drain_timeout_s
        group_killed = False
        while not running.streams.join(_JOIN_STEP_S):
            if time.monotonic() < deadline:
                continue
            if not group_killed:
                log.warning("job_leftover_processes_killed", job_id=job.job_id, pgid=proc.pid)
                self._killpg(job.job_id, proc.pid, signal.SIGKILL)
                group_killed = True
                deadline = time.monotonic() + self.settings.drain_timeout_s
                continue
            # cháu đã thoát khỏi group (setsid) mà vẫn giữ pipe
            log.warning("stream_drain_abandoned", job_id=job.job_id)
            running.streams.abandon()
            break

        duration = elapsed_ms(running.started)
        cancelled = job.cancel_requested
        if cancelled:
            job.state = JobState.CANCELLED
            exit_code = CANCELLED_EXIT_CODE
        else:
            job.state = JobState.COMPLETED
            # rc < 0: chết vì signal, không có exit code
            exit_code = rc if rc >= 0 else CANCELLED_EXIT_CODE
        job.process = None

        log.info(
            "job_exited",
            job_id=job.job_id,
            rc=rc,
            exit_code=exit_code,
            cancelled=cancelled,
            duration_ms=duration,
        )
        return CompletionEvent(job.job_id, exit_code, duration, cancelled)

    # ------------ cancel ------------

    def cancel(self, job_id: str) -> bool:
        """
        True: job đang active (lần gọi đầu sẽ gửi signal).
        False: không tìm thấy (đã xong hoặc id lạ), không phải lỗi.
        """
        claim = self.registry.claim_cancel(job_id)
        if claim is None:
            return job_id in self.registry
        log.info("job_cancel_requested", job_id=job_id, state=claim.job.state.value)
        if claim.process is not None:
            self._signal_tree(claim.job, claim.process)
        return True

    def terminate(self, job: Job) -> None:
        if job.process is not None:
            self._signal_tree(job, job.process)

    def _signal_tree(self, job: Job, proc: subprocess.Popen) -> None:
        """SIGTERM cả process group, sau kill_grace_s thì SIGKILL. Không block."""
        self._killpg(job.job_id, proc.pid, signal.SIGTERM)
        timer = threading.Timer(
            self.settings.kill_grace_s,
            self._killpg,
            args=(job.job_id, proc.pid, signal.SIGKILL),
        )
        timer.daemon = True
        timer.start()

    @staticmethod
    def _killpg(job_id: str, pgid: int, sig: int) -> None:
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            return  # cả group đã thoát
        except PermissionError as e:
            log.warning("job_signal_failed", job_id=job_id, pgid=pgid, sig=sig, error=str(e))
            return
        log.debug("job_signalled", job_id=job_id, pgid=pgid, sig=sig)
