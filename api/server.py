"""
Decision Core — API Server

FastAPI application serving:
  POST /v1/workflows                  — trigger a decision round (async, 202)
  GET  /v1/workflows/{id}             — workflow state
  GET  /v1/workflows/{id}/decisions   — decision history
  GET  /v1/workflows/{id}/log         — communication log
  POST /v1/workflows/{id}/approval    — approve or reject a paused decision
  POST /v1/workflows/{id}/abort       — cancel a workflow
  GET  /v1/approvals                  — workflows awaiting a human
  POST /a2a/receive                   — inbound protocol messages
  GET  /v1/stats                      — coordinator statistics
  GET  /health                        — liveness
  GET  /ready                         — readiness

Usage:
    CC_SIGNING_KEY=... uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Development (synchronous runs)
    CC_WORKER_MODE=inline uvicorn api.server:app --reload
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any

logger = logging.getLogger("decision_core.api")


def create_app(
    coordinator: Any = None,
    backend: Any = None,
    config_path: str = "",
    recover_on_startup: bool = True,
) -> Any:
    """
    Create and configure the FastAPI application.

    Returns the app instance. Separated from module-level creation
    so tests can inject a coordinator and a backend.
    """
    from fastapi import FastAPI, HTTPException, Request
    from fastapi.concurrency import run_in_threadpool
    from fastapi.responses import JSONResponse

    from api.models import AbortAction, ApprovalAction, WorkflowAccepted, WorkflowSubmission
    from api.worker import WorkerBackend, create_backend
    from coordinator.errors import IllegalStateTransition, StoreUnavailable, WorkflowNotFound
    from coordinator.runtime import Coordinator
    from coordinator.types import WorkflowRequest
    from protocol.errors import AuthenticationError, MessageValidationError, ProtocolError

    # ── Lifecycle ─────────────────────────────────────────────

    @asynccontextmanager
    async def lifespan(app):
        if recover_on_startup:
            worker = get_backend()
            for state in get_coordinator().store.list_resumable():
                worker.enqueue(state.request_id)
        yield
        if _backend:
            _backend.shutdown()

    app = FastAPI(
        title="Decision Core API",
        version="0.1.0",
        description="Decision orchestration for multi-agent process control",
        lifespan=lifespan,
    )

    # ── State ────────────────────────────────────────────────

    _coordinator: Coordinator | None = coordinator
    _backend: WorkerBackend | None = backend

    def get_coordinator() -> Coordinator:
        nonlocal _coordinator
        if _coordinator is None:
            _coordinator = Coordinator.from_config(config_path or None)
        return _coordinator

    def get_backend() -> WorkerBackend:
        nonlocal _backend
        if _backend is None:
            _backend = create_backend(get_coordinator())
        return _backend

    def load_state(request_id: str):
        state = get_coordinator().get_state(request_id)
        if state is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return state

    async def read_body(request: Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")
        return body

    # ── Errors ────────────────────────────────────────────────

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable):
        return JSONResponse(status_code=503, content={"detail": f"store unavailable: {exc}"})

    # ── Workflow Submission ───────────────────────────────────

    @app.post("/v1/workflows", response_model=None)
    async def submit_workflow(request: Request):
        submission = WorkflowSubmission.from_body(await read_body(request))
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        workflow_request = WorkflowRequest.create(
            submission.trigger,
            submission.context,
            conversation_id=submission.conversation_id,
            request_id=submission.request_id,
        )
        state = await run_in_threadpool(get_coordinator().accept, workflow_request)
        job_id = get_backend().enqueue(state.request_id)

        response = WorkflowAccepted(
            request_id=state.request_id,
            conversation_id=state.conversation_id,
            status=state.status.value,
            message=f"Workflow enqueued (job: {job_id})",
        )
        return JSONResponse(status_code=202, content=response.to_dict())

    # ── Workflow Views ────────────────────────────────────────

    @app.get("/v1/workflows/{request_id}")
    async def get_workflow(request_id: str):
        return JSONResponse(content=load_state(request_id).to_dict())

    @app.get("/v1/workflows/{request_id}/decisions")
    async def get_decisions(request_id: str):
        load_state(request_id)
        decisions = get_coordinator().get_decisions(request_id)
        return JSONResponse(content={"request_id": request_id, "decisions": decisions})

    @app.get("/v1/workflows/{request_id}/log")
    async def get_log(request_id: str):
        state = load_state(request_id)
        entries = get_coordinator().get_communication_log(request_id)
        return JSONResponse(content={
            "request_id": request_id,
            "conversation_id": state.conversation_id,
            "count": len(entries),
            "messages": entries,
        })

    # ── Approvals ─────────────────────────────────────────────

    @app.get("/v1/approvals")
    async def list_approvals():
        pending = get_coordinator().list_pending_approvals()
        return JSONResponse(content={"count": len(pending), "approvals": pending})

    @app.post("/v1/workflows/{request_id}/approval")
    async def decide_approval(request_id: str, request: Request):
        action = ApprovalAction.from_body(await read_body(request))
        errors = action.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        coord = get_coordinator()
        try:
            if action.approve:
                state = await run_in_threadpool(
                    coord.approve, request_id, action.approver, action.rationale,
                    action.approved_proposal_ids,
                )
            else:
                state = await run_in_threadpool(
                    coord.reject, request_id, action.approver, action.rationale,
                )
        except WorkflowNotFound:
            raise HTTPException(status_code=404, detail="Workflow not found")
        except IllegalStateTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        return JSONResponse(content={
            "request_id": request_id,
            "action": "approved" if action.approve else "rejected",
            "approver": action.approver,
            "status": state.status.value,
            "decision_id": state.decision.decision_id if state.decision else None,
        })

    @app.post("/v1/workflows/{request_id}/abort")
    async def abort_workflow(request_id: str, request: Request):
        reason = ""
        if await request.body():
            reason = (await read_body(request)).get("reason", "")
        action = AbortAction(reason=reason)
        errors = action.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        try:
            state = await run_in_threadpool(get_coordinator().abort, request_id, action.reason)
        except WorkflowNotFound:
            raise HTTPException(status_code=404, detail="Workflow not found")
        except IllegalStateTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        return JSONResponse(content={
            "request_id": request_id, "status": state.status.value, "error": state.error,
        })

    # ── Protocol ──────────────────────────────────────────────

    @app.post("/a2a/receive")
    async def receive_message(request: Request):
        auth = request.headers.get("authorization", "")
        if not auth.lower().startswith("bearer "):
            return JSONResponse(status_code=401, content={"detail": "missing bearer credential"})
        token = auth[7:].strip()

        body = await read_body(request)
        receiver = get_coordinator().receiver()
        try:
            reply = await run_in_threadpool(receiver.receive, body.get("message"), token)
        except AuthenticationError as e:
            logger.warning("Rejected inbound message: %s", e)
            return JSONResponse(status_code=401, content={"detail": str(e)})
        except MessageValidationError as e:
            return JSONResponse(status_code=400, content={"detail": str(e), "errors": e.errors})
        except ProtocolError as e:
            return JSONResponse(status_code=400, content={"detail": str(e)})
        return JSONResponse(content=reply)

    # ── Stats ─────────────────────────────────────────────────

    @app.get("/v1/stats")
    async def get_stats():
        stats = dict(get_coordinator().stats())
        stats["worker"] = get_backend().tracker.stats
        return JSONResponse(content=stats)

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        # Store reachable and coordinator constructible
        try:
            get_coordinator().stats(days=1)
            return JSONResponse(content={"status": "ok"})
        except (StoreUnavailable, ValueError) as e:
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app(config_path=os.environ.get("CC_CONFIG_PATH", ""))
