from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from reqflow import __version__
from reqflow.config import ReqflowConfig
from reqflow.domain import Requirement, UseCase, utcnow
from reqflow.export import render_export
from reqflow.pipeline import AnalysisResult
from reqflow.runtime import Runtime, load_runtime
from reqflow.state import NotFound
from reqflow.workflow import InvalidTransition

logger = logging.getLogger(__name__)


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.capitalize() for part in rest)


def camelize(payload: Any) -> Any:
    """Camel-case a record's own keys; nested values such as metadata pass through."""
    if isinstance(payload, list):
        return [camelize(item) for item in payload]
    if isinstance(payload, dict):
        return {_camel(str(key)): value for key, value in payload.items()}
    return payload


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=_camel)


class AnalyzeRequest(_Body):
    message: str = Field(min_length=1)
    acting_user_id: int | None = None
    project_id: int | None = None


class ActingUserRequest(_Body):
    acting_user_id: int


class OptionalActingUserRequest(_Body):
    acting_user_id: int | None = None


class RejectRequest(_Body):
    acting_user_id: int
    reason: str | None = None


class AssignmentRequest(_Body):
    entity_type: Literal["requirement", "use_case"]
    entity_id: int
    acting_user_id: int
    to_role: str = Field(min_length=1)
    to_user_id: int | None = None
    due_date: str | None = None
    comments: str = ""


def analysis_payload(result: AnalysisResult) -> dict[str, Any]:
    return {
        "responseText": result.response_text,
        "sourceUrlIfAny": result.source_url,
        "extractedTitleIfAny": result.extracted_title,
        "createdRequirementId": result.requirement_id,
        "useCaseIds": list(result.use_case_ids),
        "offerActions": result.offer_actions,
        "suggestions": list(result.suggestions),
        "intent": result.intent,
        "degraded": list(result.degraded),
    }


def create_app(
    runtime: Runtime | None = None,
    config: ReqflowConfig | None = None,
) -> FastAPI:
    runtime = runtime or load_runtime(config or ReqflowConfig.default())
    default_user = runtime.config.workflow.default_acting_user_id

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await runtime.jobs.start()
        try:
            yield
        finally:
            await runtime.jobs.stop()

    app = FastAPI(title="reqflow", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(NotFound)
    async def _not_found(_: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransition)
    async def _invalid_transition(_: Request, exc: InvalidTransition) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "entityType": exc.entity_type,
                "entityId": exc.entity_id,
                "currentStatus": exc.current,
                "trigger": exc.trigger,
            },
        )

    @app.post("/analyze")
    async def analyze(body: AnalyzeRequest) -> dict[str, Any]:
        result = await runtime.pipeline.analyze(
            body.message,
            body.acting_user_id or default_user,
            body.project_id,
        )
        return analysis_payload(result)

    @app.post("/analyze/jobs", status_code=202)
    async def submit_analysis(body: AnalyzeRequest) -> dict[str, Any]:
        job = runtime.jobs.submit(
            "analyze",
            {
                "message": body.message,
                "acting_user_id": body.acting_user_id or default_user,
                "project_id": body.project_id,
            },
        )
        return {"jobId": job.id, "status": job.status}

    @app.get("/jobs/{job_id}")
    async def job_status(job_id: int) -> dict[str, Any]:
        job = runtime.jobs.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"job {job_id} not found")
        result = None
        if job.result is not None:
            result = analysis_payload(AnalysisResult(**job.result))
        return {
            "jobId": job.id,
            "kind": job.kind,
            "status": job.status,
            "result": result,
            "error": job.error,
            "createdAt": job.created_at,
            "updatedAt": job.updated_at,
        }

    @app.patch("/requirement/{requirement_id}/accept")
    async def accept_requirement(
        requirement_id: int, body: OptionalActingUserRequest | None = None
    ) -> dict[str, Any]:
        acting = (body.acting_user_id if body else None) or default_user
        requirement = await runtime.engine.accept(requirement_id, acting)
        return camelize(requirement.to_dict())

    @app.post("/requirement/{requirement_id}/generate-deliverables")
    async def generate_deliverables(
        requirement_id: int, body: OptionalActingUserRequest | None = None
    ) -> dict[str, Any]:
        acting = (body.acting_user_id if body else None) or default_user
        batch = await runtime.pipeline.generate_deliverables(requirement_id, acting)
        return {
            "deliverables": camelize([item.to_dict() for item in batch.deliverables]),
            "exportProjection": batch.export_projection(),
            "count": batch.count,
            "usedFallback": batch.used_fallback,
        }

    @app.patch("/useCase/{use_case_id}/submit")
    async def submit_use_case(
        use_case_id: int, body: OptionalActingUserRequest | None = None
    ) -> dict[str, Any]:
        acting = (body.acting_user_id if body else None) or default_user
        use_case = await runtime.engine.submit_for_review(use_case_id, acting)
        return camelize(use_case.to_dict())

    @app.patch("/useCase/{use_case_id}/approve")
    async def approve_use_case(use_case_id: int, body: ActingUserRequest) -> dict[str, Any]:
        use_case = await runtime.engine.approve(use_case_id, body.acting_user_id)
        return camelize(use_case.to_dict())

    @app.patch("/useCase/{use_case_id}/reject")
    async def reject_use_case(use_case_id: int, body: RejectRequest) -> dict[str, Any]:
        use_case = await runtime.engine.reject(use_case_id, body.acting_user_id, body.reason)
        return camelize(use_case.to_dict())

    @app.post("/assignments", status_code=201)
    async def create_assignment(body: AssignmentRequest) -> dict[str, Any]:
        try:
            assignment = await runtime.engine.assign_to_role(
                body.entity_type,
                body.entity_id,
                body.acting_user_id,
                body.to_role,
                to_user_id=body.to_user_id,
                due_date=body.due_date,
                comments=body.comments,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return camelize(assignment.to_dict())

    @app.get("/requirements/export")
    async def export_requirements() -> PlainTextResponse:
        document = render_export(
            runtime.repository.all(Requirement),
            runtime.repository.all(UseCase),
            utcnow(),
        )
        return PlainTextResponse(document, media_type="text/markdown; charset=utf-8")

    @app.get("/activity")
    async def activity(limit: int = Query(default=20, ge=1, le=500)) -> list[dict[str, Any]]:
        return camelize([entry.to_dict() for entry in runtime.repository.recent_activity(limit)])

    return app
