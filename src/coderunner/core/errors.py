from __future__ import annotations


class RunnerError(Exception):
    """Lỗi gốc của job runner."""


class WorkspaceError(RunnerError):
    """Không tạo được workspace (disk đầy, không có quyền ghi...)."""


class LaunchError(RunnerError):
    """Không spawn được build tool (thiếu executable, permission, sai argv)."""


class StreamReadError(RunnerError):
    """Lỗi đọc một dòng output. Chỉ log rồi bỏ qua, không làm fail job."""


class DuplicateJob(RunnerError):
    def __init__(self, job_id: str):
        super().__init__(f"job_already_active:{job_id}")
        self.job_id = job_id


class JobNotFound(RunnerError):
    def __init__(self, job_id: str):
        super().__init__(f"job_not_found:{job_id}")
        self.job_id = job_id
