from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from .controller import PipelineController
from .errors import ConfigurationError
from .model import PULL_REQUEST, PUSH, Event, PipelineSpec, RunResult

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    kind: str
    branch: str | None = None
    sha: str | None = None

class StepLogResponse(BaseModel):
    ordinal: int
    step: str
    started_at: float
    duration: float
    outcome: str
    exit_code: int | None = None
    message: str | None = None

class JobResponse(BaseModel):
    instance: str
    status: str | None
    reason: str | None = None
    failed_step: str | None = None
    duration: float = 0.0
    log: list[StepLogResponse] = Field(default_factory=list)

class RunResponse(BaseModel):
    run_id: str | None
    status: str
    jobs: list[JobResponse] = Field(default_factory=list)

# -------------------- Helpers --------------------

def event_from_github(kind: str, payload: dict[str, Any]) -> Optional[Event]:
    """
    Map a GitHub webhook delivery to an Event.

    push:          ref="refs/heads/master", after=<sha>
    pull_request:  pull_request.base.ref=<target branch>, pull_request.head.sha=<sha>
    Other deliveries are not events this runner reacts to.
    """
    if kind == PUSH:
        return Event(kind=PUSH, branch=payload.get("ref"), sha=payload.get("after"))
    if kind == PULL_REQUEST:
        pr = payload.get("pull_request") or {}
        return Event(
            kind=PULL_REQUEST,
            branch=(pr.get("base") or {}).get("ref"),
            sha=(pr.get("head") or {}).get("sha"),
        )
    return None


def to_response(result: RunResult) -> RunResponse:
    return RunResponse.model_validate(result.to_dict())

# -------------------- App --------------------

def create_app(
    spec: PipelineSpec,
    controller_factory: Callable[[PipelineSpec], PipelineController] | None = None,
) -> FastAPI:
    """
    Webhook receiver for one pipeline.

    Each delivery is an independent run; endpoints are sync so FastAPI runs
    them in its threadpool while the jobs execute.
    """
    make_controller = controller_factory or (lambda s: PipelineController(s))
    app = FastAPI(title="matrixci webhook receiver")

    def _handle(event: Event) -> RunResponse:
        try:
            result = make_controller(spec).handle(event)
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail={"message": e.message, **e.details})
        return to_response(result)

    @app.get("/healthz")
    def healthz():
        return {"ok": True, "pipeline": spec.name}

    @app.post("/events", response_model=RunResponse)
    def post_event(req: EventRequest):
        return _handle(Event(kind=req.kind, branch=req.branch, sha=req.sha))

    @app.post("/webhook")
    def github_webhook(
        payload: dict[str, Any],
        x_github_event: str = Header(...),
    ):
        if x_github_event == "ping":
            return {"ok": True}
        event = event_from_github(x_github_event, payload)
        if event is None:
            return {"ok": True, "status": "ignored", "event": x_github_event}
        return _handle(event)

    return app
