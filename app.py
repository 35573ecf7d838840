"""
FastAPI application — control and status API for Harden Pilot.

Endpoints:
  POST /pipeline/start          — Discover units and analyze them
  GET  /pipeline/status         — Current pipeline snapshot
  GET  /events                  — Server-sent stream of snapshots
  POST /decisions               — Submit reviewer decisions (starts hardening)
  POST /ask                     — Ask a question about a unit
  POST /explain/{finding_id}    — Explain one finding of a unit
  POST /pipeline/retry          — Re-run analysis for one unit
  POST /pipeline/reset          — Start over and re-discover
  GET  /pipeline/runs           — List saved run logs
  GET  /health                  — Health check
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

import config
from models.errors import FindingNotFound, PhaseConflict, ToolInvocationError, UnitNotFound
from models.schemas import Phase
from workflows.pipeline import Pipeline

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

pipeline: Pipeline | None = None

_sse_lock = threading.Lock()
_sse_count = 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    global pipeline
    if pipeline is None:
        pipeline = Pipeline.from_config()
        log.info(
            "Pipeline ready: root=%s, tool=%s",
            config.SOURCE_ROOT.absolute(), config.TOOL_BACKEND,
        )
    yield


app = FastAPI(
    title="Harden Pilot",
    description="Parallel hardening pipeline with human review between analysis and hardening",
    version="1.0.0",
    lifespan=lifespan,
)


def get_pipeline() -> Pipeline:
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


# ── Error mapping ─────────────────────────────────────────────────────

@app.exception_handler(UnitNotFound)
@app.exception_handler(FindingNotFound)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(PhaseConflict)
async def phase_conflict_handler(request: Request, exc: PhaseConflict):
    return JSONResponse(status_code=409, content={"error": str(exc)})


@app.exception_handler(ToolInvocationError)
async def tool_error_handler(request: Request, exc: ToolInvocationError):
    message = get_pipeline().sanitize_error(str(exc))
    return JSONResponse(status_code=502, content={"error": message})


@app.middleware("http")
async def limit_body_size(request: Request, call_next):
    length = request.headers.get("content-length")
    if request.method == "POST" and length:
        if not length.isdigit():
            return JSONResponse(status_code=400, content={"error": "Invalid Content-Length"})
        if int(length) > config.MAX_BODY_BYTES:
            return JSONResponse(status_code=413, content={"error": "Request body too large"})
    return await call_next(request)


# ── Request models ────────────────────────────────────────────────────

class DecisionsRequest(BaseModel):
    decisions: dict[str, dict[str, Any]]


class AskRequest(BaseModel):
    controller: str = Field(min_length=1)
    question: str = Field(min_length=1)


class UnitRequest(BaseModel):
    controller: str = Field(min_length=1)


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "harden-pilot",
        "phase": get_pipeline().phase.value,
    }


# ── Pipeline ──────────────────────────────────────────────────────────

@app.post("/pipeline/start", status_code=202)
def start_pipeline(background: BackgroundTasks):
    """Discover units and analyze them in the background."""
    p = get_pipeline()
    if p.phase != Phase.IDLE:
        raise PhaseConflict(Phase.IDLE.value, p.phase.value)
    background.add_task(p.start)
    return {"status": "started"}


@app.get("/pipeline/status")
def pipeline_status():
    return get_pipeline().snapshot()


@app.post("/pipeline/retry", status_code=202)
def retry_unit(req: UnitRequest):
    return get_pipeline().retry_screen(req.controller)


@app.post("/pipeline/reset")
def reset_pipeline(background: BackgroundTasks):
    p = get_pipeline()
    p.reset()
    background.add_task(p.discover)
    return {"status": "reset"}


@app.get("/pipeline/runs")
def list_pipeline_runs():
    return {"runs": get_pipeline().list_runs()}


# ── Status stream ─────────────────────────────────────────────────────

@app.get("/events")
async def events():
    """Stream the snapshot whenever it changes, until SSE_TIMEOUT."""
    global _sse_count
    p = get_pipeline()
    with _sse_lock:
        if _sse_count >= config.SSE_MAX_CONNECTIONS:
            return JSONResponse(status_code=429, content={"error": "Too many SSE connections"})
        _sse_count += 1

    return StreamingResponse(
        _snapshot_stream(p),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


async def _snapshot_stream(p: Pipeline):
    global _sse_count
    try:
        last_json = None
        deadline = time.monotonic() + config.SSE_TIMEOUT
        while True:
            if time.monotonic() > deadline:
                yield "event: timeout\ndata: {}\n\n"
                break
            current_json = p.to_json()
            if current_json != last_json:
                yield f"data: {current_json}\n\n"
                last_json = current_json
            await asyncio.sleep(config.SSE_POLL_INTERVAL)
    finally:
        with _sse_lock:
            _sse_count -= 1


# ── Human decisions ───────────────────────────────────────────────────

@app.post("/decisions", status_code=202)
def submit_decisions(req: DecisionsRequest, background: BackgroundTasks):
    """Accept decisions for units, then harden and verify in the background.

    Body: {"decisions": {"posts_controller": {"action": "approve|modify|selective|skip", ...}}}
    """
    p = get_pipeline()
    for name, decision in req.decisions.items():
        if "action" not in decision:
            raise HTTPException(status_code=400, detail=f"Decision for {name} has no action")

    # Recorded now so a concurrent second submission gets its 409 here
    generation = p.record_decisions(req.decisions)
    background.add_task(p.run_hardening, generation)
    return {"status": "decisions_received", "controllers": list(req.decisions)}


# ── Ad-hoc queries ────────────────────────────────────────────────────

@app.post("/ask")
def ask(req: AskRequest):
    answer = get_pipeline().ask_about_screen(req.controller, req.question)
    return {"controller": req.controller, "answer": answer}


@app.post("/explain/{finding_id}")
def explain(finding_id: str, req: UnitRequest):
    explanation = get_pipeline().explain_finding(req.controller, finding_id)
    return {"controller": req.controller, "finding_id": finding_id, "explanation": explanation}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)
