"""
HyperCut Agent - API Server

FastAPI application exposing one orchestrator session:
  POST   /v1/agent/messages              - run one conversational turn
  GET    /v1/agent/plan                  - pending execution plan (or null)
  POST   /v1/agent/plan/confirm          - execute the pending plan
  POST   /v1/agent/plan/cancel           - drop the pending plan
  PATCH  /v1/agent/plan/steps/{step_id}  - edit a step's arguments
  DELETE /v1/agent/plan/steps/{step_id}  - remove a step
  POST   /v1/agent/workflows/run         - run a named workflow directly
  POST   /v1/agent/tools/{tool_name}     - run one tool directly
  POST   /v1/agent/cancel                - abort the active request
  GET    /v1/agent/events?cursor=N       - execution events since cursor
  GET    /v1/workflows                   - workflow catalog
  GET    /health                         - liveness
  GET    /ready                          - provider availability

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Tests / embedding: bring your own orchestrator
    app = create_app(orchestrator=AgentOrchestrator(registry, provider))

Requires: pip install fastapi uvicorn
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agent.config import get_config_value, load_config
from agent.document import InMemoryDocument
from agent.logging import ExecutionLogger, configure_logging
from agent.orchestrator import AgentOrchestrator
from agent.tools import ToolRegistry
from agent.types import AgentResponse
from api.models import MessageRequest, PlanStepUpdate, ToolExecutionRequest, WorkflowRunRequest

logger = logging.getLogger("hypercut_agent.api")


async def _read_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _agent_response(response: AgentResponse) -> JSONResponse:
    return JSONResponse(content=response.to_dict())


def _invalid(errors: list[str]) -> JSONResponse:
    return JSONResponse(status_code=422, content={"errors": errors})


def create_app(
    orchestrator: AgentOrchestrator | None = None,
    config_path: str | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Without an orchestrator one is built lazily from the layered config on
    first use, with an empty tool registry and an in-memory document.
    """
    app = FastAPI(
        title="HyperCut Agent API",
        version="0.1.0",
        description="Agent execution engine for the HyperCut timeline editor",
    )

    # ── State ────────────────────────────────────────────────

    _orchestrator: AgentOrchestrator | None = orchestrator

    def get_orchestrator() -> AgentOrchestrator:
        nonlocal _orchestrator
        if _orchestrator is None:
            config = load_config(base_path=config_path or os.environ.get("HCA_CONFIG", "agent_config.yaml"))
            configure_logging(level=get_config_value("logging.level", config, "INFO"))
            _orchestrator = AgentOrchestrator.from_config(
                config, registry=ToolRegistry(), document=InMemoryDocument(),
            )
            ExecutionLogger().attach(_orchestrator.event_log)
            logger.info("Orchestrator created from %s", config.get("_config_source"))
        return _orchestrator

    # ── Conversation ─────────────────────────────────────────

    @app.post("/v1/agent/messages")
    async def post_message(request: Request):
        body = await _read_body(request)
        if not isinstance(body, dict):
            return _invalid(["body must be a JSON object"])
        payload = MessageRequest.from_body(body)
        errors = payload.validate()
        if errors:
            return _invalid(errors)
        return _agent_response(await get_orchestrator().process(payload.message))

    @app.post("/v1/agent/cancel")
    async def cancel_request():
        cancelled = get_orchestrator().cancel("cancelled via API")
        return JSONResponse(content={"cancelled": cancelled})

    # ── Plans ────────────────────────────────────────────────

    @app.get("/v1/agent/plan")
    async def get_plan():
        plan = get_orchestrator().get_pending_plan()
        return JSONResponse(content={"plan": plan.to_dict() if plan else None})

    @app.post("/v1/agent/plan/confirm")
    async def confirm_plan():
        return _agent_response(await get_orchestrator().confirm_pending_plan())

    @app.post("/v1/agent/plan/cancel")
    async def cancel_plan():
        return _agent_response(get_orchestrator().cancel_pending_plan())

    @app.patch("/v1/agent/plan/steps/{step_id}")
    async def update_plan_step(step_id: str, request: Request):
        body = await _read_body(request)
        if not isinstance(body, dict):
            return _invalid(["body must be a JSON object"])
        payload = PlanStepUpdate.from_body(body)
        errors = payload.validate()
        if errors:
            return _invalid(errors)
        return _agent_response(get_orchestrator().update_pending_plan_step(step_id, payload.arguments))

    @app.delete("/v1/agent/plan/steps/{step_id}")
    async def remove_plan_step(step_id: str):
        return _agent_response(get_orchestrator().remove_pending_plan_step(step_id))

    # ── Direct execution ─────────────────────────────────────

    @app.post("/v1/agent/workflows/run")
    async def run_workflow(request: Request):
        body = await _read_body(request)
        if not isinstance(body, dict):
            return _invalid(["body must be a JSON object"])
        payload = WorkflowRunRequest.from_body(body)
        errors = payload.validate()
        if errors:
            return _invalid(errors)
        response = await get_orchestrator().run_workflow(
            payload.workflow_name,
            step_overrides=payload.step_overrides,
            start_from_step_id=payload.start_from_step_id,
            confirm_required_steps=payload.confirm_required_steps,
            quality_max_iterations=payload.quality_max_iterations,
        )
        return _agent_response(response)

    @app.post("/v1/agent/tools/{tool_name}")
    async def execute_tool(tool_name: str, request: Request):
        body = await _read_body(request)
        if not isinstance(body, dict):
            return _invalid(["body must be a JSON object"])
        payload = ToolExecutionRequest.from_body(body)
        errors = payload.validate()
        if errors:
            return _invalid(errors)
        orchestrator = get_orchestrator()
        if tool_name not in orchestrator.registry:
            return JSONResponse(status_code=404, content={"detail": f"Tool not found: {tool_name}"})
        return _agent_response(await orchestrator.execute_tool(tool_name, payload.arguments))

    # ── Events / catalog ─────────────────────────────────────

    @app.get("/v1/agent/events")
    async def get_events(cursor: int = 0, request_id: str | None = None):
        events, next_cursor = get_orchestrator().event_log.since(max(0, cursor))
        if request_id:
            events = [e for e in events if e.request_id == request_id]
        return JSONResponse(content={
            "events": [e.to_dict() for e in events],
            "next_cursor": next_cursor,
        })

    @app.get("/v1/workflows")
    async def get_workflows():
        workflows = get_orchestrator().catalog.list()
        return JSONResponse(content={
            "count": len(workflows),
            "workflows": [w.summary_dict() for w in workflows],
        })

    # ── Health ───────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        status = await get_orchestrator().check_provider_status()
        if not status["available"]:
            return JSONResponse(status_code=503, content={"status": "fail", **status})
        return JSONResponse(content={"status": "ok", **status})

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app()
