"""
HTTP surface for the dashboard.

Sessions are created with a POST and observed through a Server-Sent Events
stream; a client that loses the stream polls the session summary to learn
the outcome.
"""
import asyncio
import json
from typing import Any, Dict, Iterator, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from nodepool_sequencer import __version__
from nodepool_sequencer.bus import Subscription
from nodepool_sequencer.errors import (
    NodePoolNotFoundError,
    PoolBusyError,
    PreconditionError,
    SequencerError,
    SessionNotFoundError,
    ValidationError,
)
from nodepool_sequencer.models import NodePoolRef, NodePoolUpdate, Phase
from nodepool_sequencer.orchestrator import Orchestrator
from nodepool_sequencer.session import SequenceSession

API_PREFIX = "/api/v1"

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (SessionNotFoundError, 404),
    (NodePoolNotFoundError, 404),
    (PoolBusyError, 409),
    (PreconditionError, 409),
)


def error_body(code: str, message: str, details: Any = None) -> Dict[str, Any]:
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


def format_sse(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


def _close_record(session: Optional[SequenceSession]) -> str:
    if session is None:
        payload = {"message": "Sequencing finished"}
    else:
        payload = {
            "message": f"Sequencing {session.status.value}",
            "status": session.status.value,
            "phase": session.phase,
            "error": session.error,
        }
    return format_sse("close", json.dumps(payload))


def progress_stream(orchestrator: Orchestrator, subscription: Subscription,
                    heartbeat: float) -> Iterator[str]:
    """Render a subscription as SSE records, ending with a ``close`` record"""
    session_id = subscription.session_id
    try:
        while True:
            event = subscription.get(timeout=heartbeat)
            if event is not None:
                yield format_sse("progress", json.dumps(event.to_dict()))
                continue
            if subscription.closed:
                try:
                    session = orchestrator.get_session(session_id)
                except SessionNotFoundError:
                    session = None
                yield _close_record(session)
                return
            yield ": heartbeat\n\n"
    finally:
        orchestrator.unsubscribe(subscription)
        logger.debug(f"SSE stream for {session_id} ended")


def create_app(orchestrator: Orchestrator) -> FastAPI:
    app = FastAPI(title="nodepool-sequencer", version=__version__)
    app.state.orchestrator = orchestrator

    @app.exception_handler(SequencerError)
    async def sequencer_error_handler(request: Request, exc: SequencerError):
        status = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 500)
        details = exc.errors if isinstance(exc, ValidationError) else None
        if status == 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content=error_body(exc.code, str(exc), details))

    @app.get(f"{API_PREFIX}/health")
    def health():
        sessions = orchestrator.list_sessions()
        return {
            "status": "ok",
            "sessions": len(sessions),
            "running": sum(1 for s in sessions if not s.terminal),
            "locked_pools": len(orchestrator.registry.locked_pools()),
        }

    @app.get(f"{API_PREFIX}/version")
    def version():
        return {"current_version": __version__}

    @app.get(f"{API_PREFIX}/nodepools")
    def list_node_pools(cluster: Optional[str] = Query(None), resource_group: Optional[str] = Query(None),
                        subscription: str = ""):
        if not cluster or not resource_group:
            return JSONResponse(status_code=400, content=error_body(
                "MISSING_PARAMETER", "Parameters 'cluster' and 'resource_group' are required"))
        pools = orchestrator.list_node_pools(cluster, resource_group, subscription)
        return {"success": True, "data": [pool.to_dict() for pool in pools], "count": len(pools)}

    @app.put(f"{API_PREFIX}/nodepools/{{cluster}}/{{resource_group}}/{{name}}")
    async def update_node_pool(cluster: str, resource_group: str, name: str, request: Request,
                               subscription: str = ""):
        try:
            payload = await request.json()
        except ValueError as e:
            return JSONResponse(status_code=400, content=error_body("INVALID_REQUEST", "Invalid request body", str(e)))

        update = NodePoolUpdate.from_dict(payload)
        pool = NodePoolRef(name=name, cluster=cluster, resource_group=resource_group, subscription=subscription)
        info = await asyncio.to_thread(orchestrator.update_node_pool, pool, update)
        return {"success": True, "message": f"Node pool {name} updated", "data": info.to_dict()}

    @app.post(f"{API_PREFIX}/nodepools/sequence", status_code=201)
    async def create_sequence(request: Request):
        try:
            payload = await request.json()
        except ValueError as e:
            return JSONResponse(status_code=400, content=error_body("INVALID_REQUEST", "Invalid request body", str(e)))

        session = orchestrator.create_session(payload)
        return {
            "success": True,
            "message": "Sequencing started",
            "data": {
                "cluster": session.request.cluster,
                "origin": session.origin.ref.name,
                "dest": session.dest.ref.name,
                "phases": len(Phase),
                "session_id": session.id,
            },
        }

    @app.get(f"{API_PREFIX}/nodepools/sequence/progress")
    def sequence_progress(session_id: Optional[str] = Query(None)):
        if not session_id:
            return JSONResponse(status_code=400, content=error_body(
                "MISSING_PARAMETER", "Parameter 'session_id' is required"))
        subscription = orchestrator.subscribe(session_id)
        return StreamingResponse(
            progress_stream(orchestrator, subscription, orchestrator.settings.heartbeat_interval),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get(f"{API_PREFIX}/nodepools/sequence/{{session_id}}")
    def sequence_status(session_id: str, events: bool = False):
        session = orchestrator.get_session(session_id)
        data = session.to_summary()
        if events:
            data["events"] = [event.to_dict() for event in session.events]
        return {"success": True, "data": data}

    @app.post(f"{API_PREFIX}/nodepools/sequence/{{session_id}}/cancel", status_code=202)
    def cancel_sequence(session_id: str):
        session = orchestrator.cancel(session_id)
        return {"success": True, "data": session.to_summary()}

    @app.post(f"{API_PREFIX}/nodepools/sequence/{{session_id}}/uncordon")
    def uncordon_origin(session_id: str):
        nodes = orchestrator.uncordon_origin(session_id)
        return {"success": True, "data": {"uncordoned": nodes, "count": len(nodes)}}

    return app
