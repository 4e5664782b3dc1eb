from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from reqflow.acquisition import FetchError, extract_urls, fetch_source
from reqflow.backends.base import ModelUnavailable
from reqflow.backends.cascade import ModelCascade
from reqflow.config import AcquisitionConfig, ExtractionConfig
from reqflow.deliverables import DeliverableGenerator, export_projection
from reqflow.domain import Deliverable, Requirement, Source, UseCase, User
from reqflow.extraction import ExtractionResult, analyze_use_cases, display_text, extract_title
from reqflow.state.repository import Repository
from reqflow.templates import PromptIntent, TemplateEngine, select_intent
from reqflow.workflow.engine import WorkflowEngine
from reqflow.workflow.fsm import InvalidTransition

logger = logging.getLogger(__name__)

APOLOGY = (
    "I'm having trouble connecting to the AI service right now. "
    "Please try again in a moment."
)
DEFAULT_ROLE = "business_analyst"

ROLE_SUGGESTIONS: dict[str, list[str]] = {
    "business_analyst": [
        "Create detailed use case",
        "Analyze requirements gap",
        "Generate test scenarios",
        "Review compliance needs",
    ],
    "product_owner": [
        "Define acceptance criteria",
        "Prioritize backlog items",
        "Plan sprint scope",
        "Review stakeholder feedback",
    ],
    "developer": [
        "Review technical specs",
        "Estimate development effort",
        "Identify dependencies",
        "Plan architecture",
    ],
}
ROLE_FAMILIES = {
    "business_analyst": "business_analyst",
    "product_owner": "product_owner",
    "scrum_master": "product_owner",
    "project_manager": "product_owner",
    "developer": "developer",
    "architect": "developer",
}
TOPIC_SUGGESTIONS = {
    "performance": ["Analyze performance requirements", "Define SLA targets"],
    "security": ["Review security protocols", "Plan compliance audit"],
}
REQUIREMENT_ACTIONS = ["Accept requirement", "Generate deliverables", "Export requirements"]


def role_suggestions(role: str | None, message: str) -> list[str]:
    family = DEFAULT_ROLE
    for prefix, name in ROLE_FAMILIES.items():
        if (role or "").replace("-", "_").startswith(prefix):
            family = name
            break
    suggestions = list(ROLE_SUGGESTIONS[family])
    lowered = (message or "").lower()
    for topic, extra in TOPIC_SUGGESTIONS.items():
        if topic in lowered:
            suggestions.extend(extra)
            break
    return suggestions


@dataclass(slots=True)
class AnalysisResult:
    response_text: str
    source_url: str | None = None
    extracted_title: str | None = None
    requirement_id: int | None = None
    use_case_ids: list[int] = field(default_factory=list)
    offer_actions: bool = False
    suggestions: list[str] = field(default_factory=list)
    intent: str = PromptIntent.SDLC_GUIDANCE.value
    model: str | None = None
    degraded: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "response_text": self.response_text,
            "source_url": self.source_url,
            "extracted_title": self.extracted_title,
            "requirement_id": self.requirement_id,
            "use_case_ids": list(self.use_case_ids),
            "offer_actions": self.offer_actions,
            "suggestions": list(self.suggestions),
            "intent": self.intent,
            "model": self.model,
            "degraded": list(self.degraded),
        }


@dataclass(slots=True)
class DeliverableBatch:
    requirement_id: int
    deliverables: list[Deliverable]
    used_fallback: bool = False

    @property
    def count(self) -> int:
        return len(self.deliverables)

    def export_projection(self) -> list[dict[str, Any]]:
        return export_projection(self.deliverables)


class AnalysisPipeline:
    """Message in, requirement and use cases out.

    Fetch, model and extraction failures are recovered here: each one is
    written to the activity log as ``degraded:<kind>`` and the caller still
    gets an answer.
    """

    def __init__(
        self,
        *,
        repository: Repository,
        engine: WorkflowEngine,
        cascade: ModelCascade,
        templates: TemplateEngine | None = None,
        generator: DeliverableGenerator | None = None,
        acquisition: AcquisitionConfig | None = None,
        extraction: ExtractionConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.cascade = cascade
        self.templates = templates or TemplateEngine()
        self.generator = generator or DeliverableGenerator(cascade, self.templates.deliverables)
        self.acquisition = acquisition or AcquisitionConfig()
        self.extraction = extraction or ExtractionConfig()
        self.transport = transport

    async def _fetch(self, url: str) -> Source:
        return await fetch_source(
            url,
            timeout_seconds=self.acquisition.timeout_seconds,
            user_agent=self.acquisition.user_agent,
            body_limit=self.acquisition.body_limit,
            max_headings=self.acquisition.max_headings,
            max_links=self.acquisition.max_links,
            transport=self.transport,
        )

    def _role_of(self, user_id: int) -> str:
        user = self.repository.find(User, user_id)
        return user.role if user is not None else DEFAULT_ROLE

    def _next_uc_key(self, kind: str) -> str:
        prefix = "UC-F" if kind == "functional" else "UC-NF"
        count = len(self.repository.all(UseCase, lambda use_case: use_case.kind == kind))
        return f"{prefix}-{count + 1:03d}"

    async def analyze(
        self,
        message: str,
        acting_user_id: int,
        project_id: int | None = None,
    ) -> AnalysisResult:
        degraded: list[str] = []
        urls = extract_urls(message)
        source_url = urls[0] if urls else None
        source: Source | None = None
        if source_url:
            try:
                source = await self._fetch(source_url)
            except FetchError as exc:
                degraded.append("fetch")
                self.engine.record_degradation(
                    "fetch",
                    str(exc),
                    user_id=acting_user_id,
                    metadata={"url": source_url, "reason": exc.reason},
                )

        intent = select_intent(message, source_available=source is not None)
        role = self._role_of(acting_user_id)
        prompt = self.templates.build(intent, message, source=source, role=role)
        logger.info("analyzing message intent=%s source=%s", intent.value, source_url or "-")

        try:
            answer = await self.cascade.generate(prompt)
        except ModelUnavailable as exc:
            degraded.append("model")
            self.engine.record_degradation(
                "model",
                str(exc),
                user_id=acting_user_id,
                metadata={"intent": intent.value, "errors": exc.errors[-6:]},
            )
            return AnalysisResult(
                response_text=APOLOGY,
                source_url=source_url,
                extracted_title=source.title if source and source.title else None,
                offer_actions=False,
                intent=intent.value,
                degraded=degraded,
            )

        if intent is PromptIntent.SDLC_GUIDANCE:
            return AnalysisResult(
                response_text=answer.text,
                source_url=source_url,
                suggestions=role_suggestions(role, message),
                intent=intent.value,
                model=answer.model,
                degraded=degraded,
            )

        extraction = analyze_use_cases(
            answer.text,
            max_functional=self.extraction.max_functional,
            max_non_functional=self.extraction.max_non_functional,
        )
        if extraction.degraded:
            degraded.append("extraction")
        requirement, use_cases = self._persist(
            answer.text, extraction, source, source_url, acting_user_id, project_id, intent
        )
        if extraction.degraded:
            self.engine.record_degradation(
                "extraction",
                "No use case records detected; stored one catch-all use case.",
                user_id=acting_user_id,
                entity_type="requirement",
                entity_id=requirement.id,
            )
        return AnalysisResult(
            response_text=display_text(answer.text),
            source_url=source_url,
            extracted_title=requirement.title,
            requirement_id=requirement.id,
            use_case_ids=[use_case.id for use_case in use_cases],
            offer_actions=True,
            suggestions=list(REQUIREMENT_ACTIONS),
            intent=intent.value,
            model=answer.model,
            degraded=degraded,
        )

    def _persist(
        self,
        answer_text: str,
        extraction: ExtractionResult,
        source: Source | None,
        source_url: str | None,
        acting_user_id: int,
        project_id: int | None,
        intent: PromptIntent,
    ) -> tuple[Requirement, list[UseCase]]:
        title = (
            (source.title if source and source.title else "")
            or extraction.project_name
            or extract_title(answer_text)
            or "Untitled requirement"
        )
        requirement = self.repository.create(
            Requirement,
            title=title[:200],
            content=display_text(answer_text),
            created_by=acting_user_id,
            source_url=source.url if source else None,
            project_id=project_id,
            metadata={
                "intent": intent.value,
                "summary": extraction.summary,
                "extraction_method": extraction.method,
                "requested_url": source_url,
            },
        )
        self.engine.log_activity(
            acting_user_id,
            "created",
            "requirement",
            requirement.id,
            f"Requirement '{requirement.title}' created from analysis",
            {"use_cases": len(extraction.records)},
        )

        use_cases: list[UseCase] = []
        for record in extraction.records:
            use_case = self.repository.create(
                UseCase,
                title=record.title,
                description=record.description,
                created_by=acting_user_id,
                uc_id=self._next_uc_key(record.kind),
                kind=record.kind,
                actors=list(record.actors),
                dependencies=list(record.dependencies),
                priority=record.priority,
                requirement_id=requirement.id,
                project_id=project_id,
            )
            self.engine.log_activity(
                acting_user_id,
                "created",
                "use_case",
                use_case.id,
                f"Use case {use_case.uc_id} '{use_case.title}' extracted",
                {"requirement_id": requirement.id},
            )
            use_cases.append(use_case)
        logger.info(
            "requirement %s stored with %d use cases (%s)",
            requirement.id,
            len(use_cases),
            extraction.method,
        )
        return requirement, use_cases

    async def generate_deliverables(
        self, requirement_id: int, acting_user_id: int
    ) -> DeliverableBatch:
        """Generate and persist deliverables for an accepted requirement."""
        async with self.engine.locks.hold("requirements", requirement_id):
            requirement = self.repository.get(Requirement, requirement_id)
            if requirement.status != "accepted":
                raise InvalidTransition(
                    "requirement", requirement.id, requirement.status, "generate_deliverables"
                )
            result = await self.generator.generate(requirement)
            if result.used_fallback:
                kind = "deliverable_parse"
                if result.reason and result.reason.startswith("model_unavailable"):
                    kind = "model"
                self.engine.record_degradation(
                    kind,
                    result.reason or "deliverable generation fell back",
                    user_id=acting_user_id,
                    entity_type="requirement",
                    entity_id=requirement.id,
                )

            deliverables = [
                self.repository.create(
                    Deliverable, requirement_id=requirement.id, **draft.as_values()
                )
                for draft in result.deliverables
            ]
            self.engine.log_activity(
                acting_user_id,
                "deliverables_generated",
                "requirement",
                requirement.id,
                f"Generated {len(deliverables)} deliverables for '{requirement.title}'",
                {"count": len(deliverables), "fallback": result.used_fallback},
            )
        return DeliverableBatch(
            requirement_id=requirement.id,
            deliverables=deliverables,
            used_fallback=result.used_fallback,
        )
