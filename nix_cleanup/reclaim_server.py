#!/usr/bin/env python3
"""Local nix-cleanup job server (FastAPI).

Runs reclamation pipelines as background jobs for unattended use:
- Preview jobs (discovery + classification only)
- Reclaim jobs (full pipeline, explicit confirm required)
- Job polling and WebSocket progress updates

Jobs share one worker so at most one pipeline touches the store at a time.
The server never prompts; run it as root so privileged store commands do not
need an interactive sudo password.

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import tempfile
import threading
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from nix_cleanup.reclaim_engine import (
    APP_NAME,
    APP_VERSION,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MAX_WAVES,
    DEFAULT_STORE_ROOT,
    STRATEGY_ITERATIVE,
    CleanupError,
    ReclaimConfig,
    ReclaimContext,
    ReclaimPipeline,
    Selector,
    default_jobs,
    now_utc_iso,
)
from nix_cleanup.store_commands import NixStore


# ------------------------------- Logging ------------------------------------ #


def configure_logging(log_file: Path) -> logging.Logger:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        log_file = Path(tempfile.gettempdir()) / APP_NAME / "server.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(f"{APP_NAME}.server")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


LOGGER = configure_logging(Path(os.getenv("NIX_CLEANUP_SERVER_LOG", str(Path(tempfile.gettempdir()) / APP_NAME / "server.log"))))
APP_LOOP: asyncio.AbstractEventLoop | None = None
STORE_ROOT = os.getenv("NIX_CLEANUP_STORE_ROOT", DEFAULT_STORE_ROOT)


# ---------------------------- API Models ------------------------------------ #


class SelectorRequest(BaseModel):
    system: bool = False
    older_than: str | None = None
    paths: list[str] = Field(default_factory=list)
    package: str | None = None
    preview_limit: int = Field(default=20, ge=1, le=1000)


class ReclaimRequest(SelectorRequest):
    strategy: str = Field(default=STRATEGY_ITERATIVE, pattern="^(quick|iterative)$")
    jobs: int | None = Field(default=None, ge=1)
    max_waves: int = Field(default=DEFAULT_MAX_WAVES, ge=1)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1)
    run_compaction: bool = True
    confirm: bool = False


# ---------------------------- Response Helpers ------------------------------ #


def api_ok(data: Any, *, meta: dict[str, Any] | None = None) -> JSONResponse:
    body = {
        "status": "ok",
        "timestamp": now_utc_iso(),
        "meta": meta or {},
        "data": data,
    }
    return JSONResponse(body)


def api_error(code: str, message: str, status_code: int = 400, details: dict[str, Any] | None = None) -> JSONResponse:
    body = {
        "status": "error",
        "timestamp": now_utc_iso(),
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }
    return JSONResponse(body, status_code=status_code)


# ------------------------------- Job Manager -------------------------------- #


@dataclass
class JobState:
    job_id: str
    job_type: str
    status: str = "queued"
    created_at: str = field(default_factory=now_utc_iso)
    updated_at: str = field(default_factory=now_utc_iso)
    progress: dict[str, Any] = field(default_factory=lambda: {"phase": "queued", "pct": 0.0})
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


FINISHED_STATUSES = frozenset({"completed", "failed"})


class JobManager:
    """Runs pipeline jobs on a small pool and fans progress out to subscribers.

    Finished jobs stay queryable until more than ``keep_finished`` of them
    have piled up; the oldest are then forgotten.
    """

    def __init__(self, max_workers: int = 1, keep_finished: int = 100):
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self.keep_finished = keep_finished
        self._jobs: dict[str, JobState] = {}
        self._subs: dict[str, set[asyncio.Queue]] = {}
        self._lock = threading.Lock()

    def create_job(self, job_type: str) -> JobState:
        job = JobState(job_id=uuid.uuid4().hex, job_type=job_type)
        with self._lock:
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> JobState | None:
        with self._lock:
            return self._jobs.get(job_id)

    def job_ids(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subs.get(job_id, ()))

    def subscribe(self, job_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        with self._lock:
            self._subs.setdefault(job_id, set()).add(q)
        return q

    def unsubscribe(self, job_id: str, q: asyncio.Queue) -> None:
        with self._lock:
            subs = self._subs.get(job_id)
            if subs is None:
                return
            subs.discard(q)
            if not subs:
                del self._subs[job_id]

    def _notify(self, job_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            queues = list(self._subs.get(job_id, ()))

        for q in queues:
            if APP_LOOP and APP_LOOP.is_running():
                APP_LOOP.call_soon_threadsafe(_queue_put_nowait_safe, q, payload)
            else:
                _queue_put_nowait_safe(q, payload)

    def _update(self, job_id: str, **changes: Any) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return False
            for name, value in changes.items():
                setattr(job, name, value)
            job.updated_at = now_utc_iso()
        return True

    def update_progress(self, job_id: str, progress: dict[str, Any]) -> None:
        if self._update(job_id, progress=progress):
            self._notify(job_id, {"event": "progress", "job_id": job_id, "progress": progress})

    def _finish(self, job_id: str, event: dict[str, Any], **changes: Any) -> None:
        if not self._update(job_id, **changes):
            return
        self._notify(job_id, event)
        # the final event is already queued; later subscribers read the job state instead
        with self._lock:
            self._subs.pop(job_id, None)
            finished = [jid for jid, job in self._jobs.items() if job.status in FINISHED_STATUSES]
            for jid in finished[: max(0, len(finished) - self.keep_finished)]:
                del self._jobs[jid]

    def submit(self, job: JobState, func: Callable[[Callable[[dict[str, Any]], None]], dict[str, Any]]) -> None:
        def runner() -> None:
            if self._update(job.job_id, status="running"):
                self._notify(job.job_id, {"event": "status", "job_id": job.job_id, "status": "running"})
            try:
                result = func(lambda p: self.update_progress(job.job_id, p))
            except CleanupError as exc:
                LOGGER.error("job_failed job=%s type=%s err=%s", job.job_id, job.job_type, exc)
                code = type(exc).__name__.upper()
                self._finish(
                    job.job_id,
                    {"event": "failed", "job_id": job.job_id, "error": {"code": code, "message": str(exc)}},
                    status="failed",
                    error={"code": code, "message": str(exc), "traceback": ""},
                )
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.exception("job_crashed job=%s type=%s", job.job_id, job.job_type)
                self._finish(
                    job.job_id,
                    {"event": "failed", "job_id": job.job_id, "error": {"code": "JOB_EXECUTION_ERROR", "message": str(exc)}},
                    status="failed",
                    error={"code": "JOB_EXECUTION_ERROR", "message": str(exc), "traceback": traceback.format_exc()},
                )
            else:
                self._finish(
                    job.job_id,
                    {"event": "completed", "job_id": job.job_id, "result": result},
                    status="completed",
                    result=result,
                )

        self.executor.submit(runner)


def _queue_put_nowait_safe(q: asyncio.Queue, payload: dict[str, Any]) -> None:
    try:
        q.put_nowait(payload)
    except asyncio.QueueFull:
        with contextlib.suppress(asyncio.QueueEmpty):
            _ = q.get_nowait()
        with contextlib.suppress(asyncio.QueueFull):
            q.put_nowait(payload)


JOBS = JobManager(max_workers=1)


# ---------------------------- Pipeline Wiring ------------------------------- #


def build_store(config: ReclaimConfig) -> Any:
    return NixStore.from_environment(store_root=config.store_root)


def selector_from_request(req: SelectorRequest) -> Selector:
    return Selector.from_options(
        whole_store=req.system,
        older_than=req.older_than,
        paths=req.paths,
        package=req.package,
    )


def config_from_request(req: SelectorRequest) -> ReclaimConfig:
    if isinstance(req, ReclaimRequest):
        return ReclaimConfig(
            store_root=STORE_ROOT,
            jobs=req.jobs or default_jobs(),
            assume_yes=True,
            strategy=req.strategy,
            run_compaction=req.run_compaction,
            max_waves=req.max_waves,
            chunk_size=req.chunk_size,
            preview_limit=req.preview_limit,
        ).validate()
    return ReclaimConfig(store_root=STORE_ROOT, run_compaction=False, preview_limit=req.preview_limit).validate()


def make_pipeline(config: ReclaimConfig, progress_cb: Callable[[dict[str, Any]], None]) -> ReclaimPipeline:
    context = ReclaimContext.for_store(config, build_store(config), logging.getLogger(APP_NAME))
    return ReclaimPipeline(
        context,
        echo=lambda line: LOGGER.info("pipeline %s", line),
        confirm=lambda _question: True,
        progress=progress_cb,
    )


@contextlib.asynccontextmanager
async def lifespan(_: FastAPI):
    global APP_LOOP
    APP_LOOP = asyncio.get_running_loop()
    LOGGER.info("server_started store_root=%s", STORE_ROOT)
    yield


app = FastAPI(
    title="nix-cleanup server",
    version=APP_VERSION,
    description="Local nix store reclamation jobs (safety-first).",
    lifespan=lifespan,
)


@app.exception_handler(CleanupError)
async def cleanup_error_handler(_: Request, exc: CleanupError):
    return api_error("USAGE_ERROR", str(exc), status_code=400)


# ---------------------------- Job Endpoints --------------------------------- #


@app.get("/api/v1/jobs/{job_id}", summary="Get job status/progress")
async def get_job(job_id: str):
    job = JOBS.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return api_ok(asdict(job))


@app.get("/api/v1/jobs/{job_id}/result", summary="Get job result")
async def get_job_result(job_id: str):
    job = JOBS.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status not in FINISHED_STATUSES:
        return api_ok({"job_id": job_id, "status": job.status, "progress": job.progress})
    return api_ok({"job_id": job_id, "status": job.status, "result": job.result, "error": job.error})


@app.websocket("/api/v1/ws/jobs/{job_id}")
async def ws_job_progress(websocket: WebSocket, job_id: str):
    await websocket.accept()
    job = JOBS.get(job_id)
    if not job:
        await websocket.send_json({"status": "error", "message": "job not found"})
        await websocket.close()
        return

    q = JOBS.subscribe(job_id)
    try:
        await websocket.send_json({"event": "connected", "job_id": job_id})
        await websocket.send_json({"event": "snapshot", "job": asdict(job)})

        while True:
            current = JOBS.get(job_id)
            if current is None or current.status in FINISHED_STATUSES:
                break
            payload = await q.get()
            await websocket.send_json(payload)
    except WebSocketDisconnect:
        pass
    finally:
        JOBS.unsubscribe(job_id, q)
        with contextlib.suppress(RuntimeError):
            await websocket.close()


# ----------------------------- Reclaim APIs --------------------------------- #


@app.post("/api/v1/reclaim/preview", summary="Discover and classify without deleting")
async def preview_reclaim(req: SelectorRequest):
    selector = selector_from_request(req)
    config = config_from_request(req)
    job = JOBS.create_job("preview")

    def runner(progress_cb: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        plan = make_pipeline(config, progress_cb).plan(selector)
        progress_cb({"phase": "completed", "pct": 100.0})
        LOGGER.info("preview completed job=%s selector=%s deletable=%s", job.job_id, selector.describe(), len(plan.deletable))
        return {"selector": selector.describe(), **plan.to_dict(config.preview_limit)}

    JOBS.submit(job, runner)
    return api_ok({"job_id": job.job_id, "status": job.status}, meta={"type": "preview"})


@app.post("/api/v1/reclaim/run", summary="Run the reclamation pipeline")
async def run_reclaim(req: ReclaimRequest):
    if not req.confirm:
        return api_error(
            "CONFIRMATION_REQUIRED",
            "Deleting store paths requires confirm=true.",
            status_code=400,
        )
    selector = selector_from_request(req)
    config = config_from_request(req)
    job = JOBS.create_job("reclaim")

    def runner(progress_cb: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        result = make_pipeline(config, progress_cb).run(selector)
        LOGGER.info("reclaim completed job=%s %s", job.job_id, result.summary_line())
        return result.to_dict()

    JOBS.submit(job, runner)
    return api_ok({"job_id": job.job_id, "status": job.status}, meta={"type": "reclaim"})


@app.get("/healthz", summary="Liveness endpoint")
async def healthz():
    return api_ok({"service": "nix-cleanup-server", "healthy": True})


@app.get("/", summary="Service index")
async def root_index():
    return api_ok(
        {
            "service": "nix-cleanup-server",
            "version": APP_VERSION,
            "openapi": "/docs",
            "store_root": STORE_ROOT,
            "core_endpoints": [
                "/api/v1/reclaim/preview",
                "/api/v1/reclaim/run",
                "/api/v1/jobs/{job_id}",
                "/api/v1/jobs/{job_id}/result",
                "/api/v1/ws/jobs/{job_id}",
            ],
            "note": "Default deployment should bind to 127.0.0.1 only for local safety.",
        }
    )


# --------------------------------- Runner ---------------------------------- #


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the nix-cleanup job server")
    parser.add_argument("--host", default=os.getenv("NIX_CLEANUP_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("NIX_CLEANUP_PORT", "8011")))
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    import uvicorn

    args = parse_args(argv)
    LOGGER.info("Starting nix-cleanup server host=%s port=%s", args.host, args.port)
    uvicorn.run(
        "nix_cleanup.reclaim_server:app",
        host=args.host,
        port=args.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
