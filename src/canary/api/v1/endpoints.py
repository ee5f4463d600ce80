"""Rollout endpoints: revision intake, templates and operator control signals."""
from typing import Literal, Optional

from fastapi import APIRouter, Request, status
from loguru import logger

from src.canary.core.limiter import limiter, CONTROL_SIGNAL_LIMIT, SUBMIT_LIMIT
from src.canary.models.schemas import AnalysisTemplate, ControlSignalResponse, RevisionSubmitted
from src.canary.monitoring.tracing import tracer, set_span_attributes
from src.canary.services.rollout_service import rollout_manager

router = APIRouter()


@router.post("/templates", status_code=status.HTTP_201_CREATED)
async def register_template(template: AnalysisTemplate):
    """Register or replace an analysis template."""
    rollout_manager.register_template(template)
    return template.model_dump(mode="json")


@router.get("/templates")
async def list_templates():
    return [t.model_dump(mode="json") for t in rollout_manager.templates.values()]


@router.post("/rollouts", status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(SUBMIT_LIMIT)
async def submit_revision(request: Request, body: RevisionSubmitted):
    """
    Accept a revision handed over by an upstream pipeline.

    The rollout starts driving in the background; poll it by id.
    """
    with tracer.start_as_current_span("submit_revision") as span:
        set_span_attributes(span, application=body.application, revision=body.revision, source=body.source)
        rollout = await rollout_manager.submit(body)
        set_span_attributes(span, rollout_id=rollout.id)
        return rollout.to_dict()


@router.get("/rollouts")
async def list_rollouts(application: Optional[str] = None):
    return [r.to_dict() for r in rollout_manager.list(application)]


@router.get("/rollouts/{rollout_id}")
async def get_rollout(rollout_id: str):
    return rollout_manager.get(rollout_id).to_dict()


@router.get("/rollouts/{rollout_id}/analysis-runs")
async def get_analysis_runs(rollout_id: str):
    return [run.to_dict() for run in rollout_manager.analysis_runs(rollout_id)]


@router.post("/rollouts/{rollout_id}/{signal}", response_model=ControlSignalResponse)
@limiter.limit(CONTROL_SIGNAL_LIMIT)
async def control_signal(
    request: Request,
    rollout_id: str,
    signal: Literal["promote", "pause", "resume", "abort"],
    reason: Optional[str] = None,
):
    """Deliver an operator control signal to a live rollout."""
    if signal == "abort":
        rollout = rollout_manager.abort(rollout_id, reason or "aborted by operator")
    else:
        rollout = getattr(rollout_manager, signal)(rollout_id)

    logger.info(f"Operator {signal} delivered to rollout {rollout_id}")
    return ControlSignalResponse(rollout_id=rollout.id, signal=signal, status=rollout.status.value)
