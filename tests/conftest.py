from __future__ import annotations
import sys
import threading
from pathlib import Path
from typing import Callable, List

import pytest

from coderunner.core.models import CompletionEvent, Event, OutputLine, StreamName
from coderunner.core.settings import Settings
from coderunner.services.events import EventSink
from coderunner.services.job_service import JobService

WORKLOADS = Path(__file__).parent / "workloads"


class RecordingSink(EventSink):
    """Ghi lại mọi event để test chờ và kiểm tra thứ tự."""

    def __init__(self):
        self._cond = threading.Condition()
        self.events: List[Event] = []

    def emit(self, event: Event) -> None:
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def events_for(self, job_id: str) -> List[Event]:
        with self._cond:
            return [e for e in self.events if e.job_id == job_id]

    def lines(self, job_id: str, stream: StreamName) -> List[str]:
        return [
            e.text for e in self.events_for(job_id)
            if isinstance(e, OutputLine) and e.stream == stream
        ]

    def wait_for(self, predicate: Callable[[List[Event]], bool], timeout: float = 20.0) -> None:
        with self._cond:
            ok = self._cond.wait_for(lambda: predicate(self.events), timeout)
        assert ok, "timed out waiting for events"

    def wait_line(self, job_id: str, text: str, timeout: float = 20.0) -> None:
        self.wait_for(
            lambda evs: any(
                isinstance(e, OutputLine) and e.job_id == job_id and e.text == text for e in evs
            ),
            timeout,
        )

    def wait_completed(self, job_id: str, timeout: float = 20.0) -> CompletionEvent:
        self.wait_for(
            lambda evs: any(isinstance(e, CompletionEvent) and e.job_id == job_id for e in evs),
            timeout,
        )
        return [e for e in self.events_for(job_id) if isinstance(e, CompletionEvent)][0]


def python_settings(workspace_root: Path, **overrides) -> Settings:
    """Thay cargo bằng chính interpreter đang chạy test: source là code Python."""
    data = dict(
        run_command=[sys.executable, "-u", "src/main.rs"],
        test_command=[sys.executable, "-u", "src/lib.rs"],
        command_wrapper=[],
        env={},
        workspace_root=workspace_root,
        kill_grace_s=0.5,
        drain_timeout_s=0.5,
        decode_errors="ignore",
        sse_keepalive_s=1.0,
    )
    data.update(overrides)
    return Settings(**data)


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def settings(workspace_root: Path) -> Settings:
    return python_settings(workspace_root)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def service(settings: Settings, sink: RecordingSink) -> JobService:
    return JobService(settings, sink=sink)


@pytest.fixture
def workload() -> Callable[[str], str]:
    def _read(name: str) -> str:
        return (WORKLOADS / name).read_text(encoding="utf-8")
    return _read
