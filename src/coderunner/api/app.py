from __future__ import annotations
import json
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..core.errors import DuplicateJob, JobNotFound, LaunchError, WorkspaceError
from ..core.models import RunMode
from ..core.utils import new_job_id
from ..logging import setup_logging
from ..services.job_service import JobService
from ..services.toolchain import probe_toolchain


# --------- Schemas ---------
class CreateJobReq(BaseModel):
    job_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    code: str
    mode: RunMode = RunMode.RUN

class CreateJobRes(BaseModel):
    job_id: str

class CancelJobRes(BaseModel):
    ok: bool
    reason: Optional[str] = None

class JobStatusRes(BaseModel):
    job_id: str
    mode: str
    state: str
    pid: Optional[int] = None
    created_at: str
    cancel_requested: bool = False

class ToolchainRes(BaseModel):
    installed: bool
    cargo_version: Optional[str] = None
    rustc_version: Optional[str] = None
    rustup_version: Optional[str] = None


def _sse(kind: str, payload: Dict[str, Any]) -> str:
    return f"event: {kind}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


def create_app(svc: Optional[JobService] = None) -> FastAPI:
    svc = svc or JobService()
    setup_logging(svc.settings.log_level)

    app = FastAPI(title="Code Runner API")
    # CORS: DEV mở rộng (*). PROD nên whitelist domain FE.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.service = svc

    # --------- Endpoints ---------

    @app.get("/health")
    def health():
        return {"ok": True, "active_jobs": svc.active_jobs()}

    @app.get("/toolchain", response_model=ToolchainRes)
    def toolchain():
        return ToolchainRes(**probe_toolchain(svc.settings).to_dict())

    @app.post("/jobs", response_model=CreateJobRes, status_code=status.HTTP_202_ACCEPTED)
    def create_job(req: CreateJobReq):
        job_id = req.job_id or new_job_id()
        try:
            svc.submit(job_id, req.code, req.mode)
        except DuplicateJob:
            raise HTTPException(status_code=409, detail="job_already_active")
        except WorkspaceError as e:
            raise HTTPException(status_code=500, detail=f"workspace_error:{e}")
        except LaunchError as e:
            raise HTTPException(status_code=503, detail=f"launch_error:{e}")
        return CreateJobRes(job_id=job_id)

    @app.post("/jobs/{job_id}/cancel", response_model=CancelJobRes)
    def cancel_job(job_id: str):
        if svc.cancel(job_id):
            return CancelJobRes(ok=True)
        # không thấy job: kết quả bình thường, không phải lỗi
        return CancelJobRes(ok=False, reason="not_found")

    @app.get("/jobs/{job_id}", response_model=JobStatusRes)
    def get_job(job_id: str):
        try:
            data = svc.status(job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail="job_not_found")
        return JobStatusRes(**data)

    @app.get("/jobs/{job_id}/events")
    def stream_events(job_id: str):
        ch = svc.hub.get(job_id) if svc.hub is not None else None
        if ch is None:
            raise HTTPException(status_code=404, detail="job_not_found")

        def event_stream():
            for ev in ch.iter_events(timeout=svc.settings.sse_keepalive_s):
                if ev is None:
                    yield ": keepalive\n\n"
                    continue
                yield _sse(ev.kind, ev.payload())

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app
