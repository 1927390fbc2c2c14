"""
API routes for load-test runs: submission, status/result polling, logs and history.
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse

from chaosmonkey.api.dependencies import ChaosMonkeyServices, get_services
from chaosmonkey.api.error_handling import http_exception
from chaosmonkey.config import settings
from chaosmonkey.models.run import (
    RunCreateResponse,
    RunLogsResponse,
    RunStatus,
    RunStatusResponse,
    RunSummary,
)
from chaosmonkey.websocket.streaming import poll_interval_ms, sse_log_stream

router = APIRouter()


async def _read_json_body(request: Request) -> object:
    raw = await request.body()
    if len(raw) > settings.MAX_REQUEST_BODY_BYTES:
        raise HTTPException(status_code=413, detail="request body too large")
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="request body must be valid JSON")


@router.post("/run", response_model=RunCreateResponse)
async def create_run(
    request: Request, services: ChaosMonkeyServices = Depends(get_services)
) -> RunCreateResponse:
    """
    Submit a load-test run. The run starts immediately.
    """
    payload = await _read_json_body(request)
    try:
        run = await services.controller.start(payload)
        return RunCreateResponse(id=run.run_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise http_exception("start run", e)


@router.get(
    "/status/{run_id}",
    response_model=RunStatusResponse,
    response_model_exclude_none=True,
)
async def get_run_status(
    run_id: str, services: ChaosMonkeyServices = Depends(get_services)
) -> RunStatusResponse:
    try:
        snap = await services.registry.snapshot(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="not found")
    return RunStatusResponse(
        status=snap.status, progress=list(snap.progress), started_at=snap.started_at
    )


@router.get("/result/{run_id}")
async def get_run_result(
    run_id: str, services: ChaosMonkeyServices = Depends(get_services)
) -> JSONResponse:
    """
    Final report of a run.

    - 200 with the engine result once the run is done
    - 202 while it is still running (clients keep polling)
    - 409 with the error message if the run failed
    """
    try:
        snap = await services.registry.snapshot(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="not found")
    if snap.status == RunStatus.DONE:
        return JSONResponse(jsonable_encoder(snap.result))
    if snap.status == RunStatus.ERROR:
        return JSONResponse(
            {"status": snap.status.value, "error": snap.error}, status_code=409
        )
    return JSONResponse({"status": snap.status.value}, status_code=202)


@router.get("/logs/{run_id}", response_model=RunLogsResponse)
async def get_run_logs(
    run_id: str, services: ChaosMonkeyServices = Depends(get_services)
) -> RunLogsResponse:
    """
    Pull-mode log fetch: the whole buffer plus status and a suggested re-poll delay.
    """
    try:
        snap = await services.registry.snapshot(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="not found")
    return RunLogsResponse(
        status=snap.status,
        lines=list(snap.lines),
        poll_after_ms=poll_interval_ms(snap.status),
    )


@router.get("/logs/stream/{run_id}")
async def stream_run_logs_sse(
    run_id: str, services: ChaosMonkeyServices = Depends(get_services)
) -> StreamingResponse:
    """
    Push-mode log stream (Server-Sent Events): buffered lines, live lines,
    then a single ``end`` event.
    """
    try:
        run = await services.registry.get(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="not found")
    return StreamingResponse(
        sse_log_stream(run.log),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/history", response_model=list[RunSummary])
async def list_run_history(
    services: ChaosMonkeyServices = Depends(get_services),
) -> list[RunSummary]:
    return await services.registry.list_history(limit=settings.HISTORY_LIMIT)
