from __future__ import annotations
import threading
from typing import IO, List, Optional

import structlog

from ..core.errors import StreamReadError
from ..core.models import OutputLine, StreamName
from .events import EventSink

log = structlog.get_logger(__name__)


def _strip_eol(raw: bytes) -> bytes:
    if raw.endswith(b"\r\n"):
        return raw[:-2]
    if raw.endswith(b"\n"):
        return raw[:-1]
    return raw


class StreamMultiplexer:
    """
    Mỗi stream một thread đọc riêng: stdout chậm không chặn stderr
    (tránh child bị treo vì pipe stderr đầy).
    """

    def __init__(self, job_id: str, sink: EventSink, decode_errors: str = "ignore"):
        self.job_id = job_id
        self.sink = sink
        self.decode_errors = decode_errors
        self._threads: List[threading.Thread] = []
        self._abandoned = threading.Event()
        # kiểm tra cờ abandon + emit là một bước: sau abandon() không còn dòng nào ra sink
        self._emit_lock = threading.Lock()

    def start(self, stdout: Optional[IO[bytes]], stderr: Optional[IO[bytes]]) -> None:
        for name, pipe in ((StreamName.STDOUT, stdout), (StreamName.STDERR, stderr)):
            if pipe is None:
                continue
            t = threading.Thread(
                target=self._drain,
                args=(name, pipe),
                name=f"{self.job_id}-{name.value}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)

    def join(self, timeout: Optional[float] = None) -> bool:
        """True nếu cả hai stream đã đọc tới EOF."""
        for t in self._threads:
            t.join(timeout)
        return not any(t.is_alive() for t in self._threads)

    def abandon(self) -> None:
        """
        Ngừng phát event (các thread đọc vẫn chạy tới EOF rồi tự thoát).
        Chờ emit đang dở xong rồi mới trả về.
        """
        with self._emit_lock:
            self._abandoned.set()

    def _decode(self, raw: bytes) -> str:
        try:
            return _strip_eol(raw).decode("utf-8", errors=self.decode_errors)
        except UnicodeDecodeError as e:
            raise StreamReadError(f"malformed_line:{e.reason}") from e

    def _drain(self, name: StreamName, pipe: IO[bytes]) -> None:
        count = 0
        try:
            for raw in iter(pipe.readline, b""):
                if self._abandoned.is_set():
                    continue
                try:
                    text = self._decode(raw)
                except StreamReadError as e:
                    log.warning("stream_read_error", job_id=self.job_id, stream=name.value, error=str(e))
                    continue
                with self._emit_lock:
                    if self._abandoned.is_set():
                        continue
                    try:
                        self.sink.emit(OutputLine(self.job_id, name, text))
                    except Exception:
                        log.exception("event_emit_failed", job_id=self.job_id, stream=name.value)
                count += 1
        except (OSError, ValueError) as e:
            # broken pipe / pipe bị đóng khi kill: chỉ dừng stream này
            log.warning("stream_read_error", job_id=self.job_id, stream=name.value, error=str(e))
        finally:
            try:
                pipe.close()
            except OSError:
                pass
            log.debug("stream_drained", job_id=self.job_id, stream=name.value, lines=count)
