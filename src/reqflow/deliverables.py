from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from reqflow.backends.base import ModelUnavailable
from reqflow.backends.cascade import ModelCascade
from reqflow.domain import DELIVERABLE_TYPES, Deliverable, Priority, Requirement
from reqflow.extraction import clean_text, coerce_str_list, decode_json, infer_priority
from reqflow.templates import DeliverablesTemplate

logger = logging.getLogger(__name__)

TYPE_ALIASES = {
    "feature": "story",
    "user story": "story",
    "user_story": "story",
    "subtask": "task",
    "sub-task": "task",
    "chore": "task",
    "defect": "bug",
    "issue": "bug",
    "initiative": "epic",
}
ISSUE_TYPES = {"epic": "Epic", "story": "Story", "task": "Task", "bug": "Bug"}
JIRA_PRIORITIES = {"low": "Low", "medium": "Medium", "high": "High", "critical": "Highest"}


class DeliverableParseFailure(ValueError):
    """Raised when a model answer holds no usable deliverable list."""


@dataclass(slots=True)
class DeliverableDraft:
    """A work item before it is persisted against a requirement."""

    title: str
    description: str
    type: str = "task"
    priority: Priority = "medium"
    story_points: int | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)

    def as_values(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "priority": self.priority,
            "story_points": self.story_points,
            "acceptance_criteria": list(self.acceptance_criteria),
            "dependencies": list(self.dependencies),
            "labels": list(self.labels),
        }


@dataclass(slots=True)
class GenerationResult:
    deliverables: list[DeliverableDraft]
    used_fallback: bool = False
    reason: str | None = None
    model: str | None = None


def _coerce_type(value: Any) -> str:
    lowered = str(value or "").strip().lower()
    if lowered in DELIVERABLE_TYPES:
        return lowered
    return TYPE_ALIASES.get(lowered, "task")


def _coerce_points(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        return int(round(value)) if value >= 0 else None
    if isinstance(value, str):
        digits = "".join(ch for ch in value if ch.isdigit())
        return int(digits) if digits else None
    return None


def _coerce_priority(value: Any) -> Priority:
    lowered = str(value or "").strip().lower()
    if lowered == "highest":
        return "critical"
    if lowered == "lowest":
        return "low"
    return infer_priority(lowered)


def _criteria(value: Any) -> list[str]:
    if isinstance(value, str):
        return [clean_text(line) for line in value.splitlines() if clean_text(line)]
    return coerce_str_list(value)


def normalize_entry(item: Any) -> DeliverableDraft | None:
    if not isinstance(item, dict):
        return None
    title = clean_text(str(item.get("title") or item.get("summary") or ""))
    if not title:
        return None
    criteria = item.get("acceptanceCriteria", item.get("acceptance_criteria"))
    points = item.get("storyPoints", item.get("story_points", item.get("points")))
    return DeliverableDraft(
        title=title[:200],
        description=clean_text(str(item.get("description") or "")) or title,
        type=_coerce_type(item.get("type") or item.get("issueType")),
        priority=_coerce_priority(item.get("priority")),
        story_points=_coerce_points(points),
        acceptance_criteria=_criteria(criteria),
        dependencies=coerce_str_list(item.get("dependencies")),
        labels=[label.lower() for label in coerce_str_list(item.get("labels"))],
    )


def parse_deliverables(text: str) -> list[DeliverableDraft]:
    """Parse a model answer into drafts or raise DeliverableParseFailure."""
    try:
        payload = decode_json(text)
    except ValueError as exc:
        raise DeliverableParseFailure(str(exc)) from exc

    if isinstance(payload, dict):
        for key in ("deliverables", "items", "work_items", "workItems"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
    if not isinstance(payload, list):
        raise DeliverableParseFailure(
            f"Expected a JSON array of deliverables, got {type(payload).__name__}."
        )

    drafts = [draft for draft in (normalize_entry(item) for item in payload) if draft]
    if not drafts:
        raise DeliverableParseFailure("The deliverable array held no valid entries.")
    return drafts


def fallback_deliverables(requirement: Requirement) -> list[DeliverableDraft]:
    """The fixed epic, story and task used when generation fails."""
    title = requirement.title.strip() or f"Requirement {requirement.id}"
    return [
        DeliverableDraft(
            title=f"{title} - Implementation",
            description=f"Implement the capabilities described in '{title}'.",
            type="epic",
            priority="high",
            story_points=None,
            acceptance_criteria=[
                "All accepted use cases are implemented",
                "The solution passes review and testing",
            ],
            labels=["epic", "fallback"],
        ),
        DeliverableDraft(
            title=f"{title} - Core user flow",
            description="As a user, I want the primary flow of the requirement so that I "
            "get its main value.",
            type="story",
            priority="medium",
            story_points=5,
            acceptance_criteria=[
                "The primary flow works end to end",
                "Validation errors are shown to the user",
            ],
            dependencies=[f"{title} - Implementation"],
            labels=["story", "fallback"],
        ),
        DeliverableDraft(
            title=f"{title} - Technical setup",
            description="Set up the services, data model and configuration the "
            "requirement needs.",
            type="task",
            priority="medium",
            story_points=3,
            acceptance_criteria=["Environments are configured", "The data model is migrated"],
            dependencies=[f"{title} - Implementation"],
            labels=["task", "fallback"],
        ),
    ]


class DeliverableGenerator:
    """Second-stage model call that breaks a requirement into work items."""

    def __init__(self, cascade: ModelCascade, template: DeliverablesTemplate | None = None) -> None:
        self.cascade = cascade
        self.template = template or DeliverablesTemplate()

    async def generate(self, requirement: Requirement) -> GenerationResult:
        prompt = self.template.render(requirement.title, requirement.content)
        try:
            answer = await self.cascade.generate(prompt)
        except ModelUnavailable as exc:
            logger.warning(
                "deliverable generation for requirement %s fell back: %s", requirement.id, exc
            )
            return GenerationResult(
                deliverables=fallback_deliverables(requirement),
                used_fallback=True,
                reason=f"model_unavailable: {exc}",
            )
        try:
            drafts = parse_deliverables(answer.text)
        except DeliverableParseFailure as exc:
            logger.warning("DeliverableParseFailure for requirement %s: %s", requirement.id, exc)
            return GenerationResult(
                deliverables=fallback_deliverables(requirement),
                used_fallback=True,
                reason=f"parse_failure: {exc}",
                model=answer.model,
            )
        logger.info("generated %d deliverables for requirement %s", len(drafts), requirement.id)
        return GenerationResult(deliverables=drafts, model=answer.model)


def export_projection(deliverables: list[Deliverable]) -> list[dict[str, Any]]:
    """Ticket-system import view; derived from the deliverables, never stored."""
    return [
        {
            "summary": item.title,
            "description": item.description,
            "issueType": ISSUE_TYPES.get(item.type, "Task"),
            "priority": JIRA_PRIORITIES.get(item.priority, "Medium"),
            "storyPoints": item.story_points,
            "acceptanceCriteria": list(item.acceptance_criteria),
            "labels": list(item.labels),
            "components": [],
            "fixVersions": [],
        }
        for item in deliverables
    ]
