from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, Literal

Priority = Literal["low", "medium", "high", "critical"]
UseCaseKind = Literal["functional", "non_functional"]
UseCaseStatus = Literal[
    "draft",
    "pending_review",
    "approved",
    "rejected",
    "assigned",
    "in_development",
    "completed",
]
RequirementStatus = Literal["draft", "accepted"]
DeliverableType = Literal["epic", "story", "task", "bug"]
DeliverableStatus = Literal["todo", "in_progress", "review", "done"]
AssignmentStatus = Literal["pending", "accepted", "completed", "rejected"]
JobStatus = Literal["pending", "running", "completed", "failed"]
EntityType = Literal["requirement", "use_case", "deliverable", "assignment", "source"]

PRIORITIES: tuple[str, ...] = ("low", "medium", "high", "critical")
DELIVERABLE_TYPES: tuple[str, ...] = ("epic", "story", "task", "bug")
ASSIGNMENT_STATUSES: tuple[str, ...] = ("pending", "accepted", "completed", "rejected")
JOB_TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed")


def utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def isoformat(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat()


class _Record:
    """Mixin giving slotted dataclasses a JSON-friendly round trip."""

    __slots__ = ()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        names = {item.name for item in fields(cls)}  # type: ignore[arg-type]
        return cls(**{key: value for key, value in data.items() if key in names})


@dataclass(slots=True)
class User(_Record):
    id: int
    username: str
    full_name: str
    role: str
    groups: list[str] = field(default_factory=list)
    is_active: bool = True

    @property
    def is_architect(self) -> bool:
        return self.role.startswith("architect")


@dataclass(slots=True)
class Source(_Record):
    url: str
    title: str = ""
    headings: list[str] = field(default_factory=list)
    body: str = ""
    links: list[dict[str, str]] = field(default_factory=list)

    def as_prompt_context(self) -> str:
        lines = [f"URL: {self.url}"]
        if self.title:
            lines.append(f"Title: {self.title}")
        if self.headings:
            lines.append("Headings: " + "; ".join(self.headings))
        if self.links:
            rendered = ", ".join(f"{link['text']} ({link['href']})" for link in self.links)
            lines.append(f"Links: {rendered}")
        lines.append("")
        lines.append(self.body)
        return "\n".join(lines).strip()


@dataclass(slots=True)
class Requirement(_Record):
    id: int
    title: str
    content: str
    created_by: int
    status: RequirementStatus = "draft"
    source_url: str | None = None
    version: int = 1
    project_id: int | None = None
    accepted_by: int | None = None
    accepted_at: str | None = None
    assigned_role: str | None = None
    assigned_pm: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: isoformat(utcnow()))
    updated_at: str = field(default_factory=lambda: isoformat(utcnow()))


@dataclass(slots=True)
class UseCase(_Record):
    id: int
    title: str
    description: str
    created_by: int
    uc_id: str = ""
    kind: UseCaseKind = "functional"
    actors: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    priority: Priority = "medium"
    status: UseCaseStatus = "draft"
    requirement_id: int | None = None
    project_id: int | None = None
    assigned_to: int | None = None
    assigned_role: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: isoformat(utcnow()))
    updated_at: str = field(default_factory=lambda: isoformat(utcnow()))


@dataclass(slots=True)
class Deliverable(_Record):
    id: int
    requirement_id: int
    title: str
    description: str
    type: DeliverableType = "task"
    priority: Priority = "medium"
    story_points: int | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    status: DeliverableStatus = "todo"
    created_at: str = field(default_factory=lambda: isoformat(utcnow()))


@dataclass(slots=True)
class Assignment(_Record):
    id: int
    entity_type: EntityType
    entity_id: int
    from_user_id: int | None
    to_user_id: int | None = None
    to_role: str | None = None
    due_date: str | None = None
    comments: str = ""
    status: AssignmentStatus = "pending"
    created_at: str = field(default_factory=lambda: isoformat(utcnow()))


@dataclass(slots=True)
class ActivityLogEntry(_Record):
    id: int
    user_id: int | None
    action: str
    entity_type: EntityType
    entity_id: int | None
    details: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: isoformat(utcnow()))


@dataclass(slots=True)
class Job(_Record):
    id: int
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = "pending"
    result: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0
    created_at: str = field(default_factory=lambda: isoformat(utcnow()))
    updated_at: str = field(default_factory=lambda: isoformat(utcnow()))

    @property
    def done(self) -> bool:
        return self.status in JOB_TERMINAL_STATUSES


DEFAULT_USERS: list[dict[str, Any]] = [
    {
        "username": "john.ba.maker",
        "full_name": "John Smith",
        "role": "business_analyst_maker",
        "groups": ["BA Team", "Makers"],
    },
    {
        "username": "linda.ba.checker",
        "full_name": "Linda Thompson",
        "role": "business_analyst_checker",
        "groups": ["BA Team", "Checkers", "Product Owners"],
    },
    {
        "username": "alex.arch.maker",
        "full_name": "Alex Johnson",
        "role": "architect_maker",
        "groups": ["Architecture Team", "Makers"],
    },
    {
        "username": "mike.arch.checker",
        "full_name": "Mike Rodriguez",
        "role": "architect_checker",
        "groups": ["Architecture Team", "Checkers", "Architecture Leads"],
    },
    {
        "username": "sarah.scrum",
        "full_name": "Sarah Williams",
        "role": "scrum_master",
        "groups": ["Scrum Masters", "Project Managers"],
    },
    {
        "username": "emma.designer",
        "full_name": "Emma Chen",
        "role": "ui_designer",
        "groups": ["Design Team"],
    },
]
