from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from reqflow.domain import (
    DEFAULT_USERS,
    ActivityLogEntry,
    Assignment,
    Deliverable,
    Job,
    Requirement,
    UseCase,
    User,
)
from reqflow.state.store import ArtifactStore, NotFound

RecordT = TypeVar("RecordT")

NAMESPACE_FOR: dict[type, str] = {
    User: "users",
    Requirement: "requirements",
    UseCase: "use_cases",
    Deliverable: "deliverables",
    Assignment: "assignments",
    ActivityLogEntry: "activity",
    Job: "jobs",
}


class Repository:
    """Typed access to an ArtifactStore."""

    def __init__(self, store: ArtifactStore) -> None:
        self.store = store

    def create(self, record_type: type[RecordT], **values: Any) -> RecordT:
        namespace = NAMESPACE_FOR[record_type]
        record = record_type(id=self.store.next_id(namespace), **values)
        self.store.put(namespace, record.id, record.to_dict())  # type: ignore[attr-defined]
        return record

    def save(self, record: Any) -> None:
        namespace = NAMESPACE_FOR[type(record)]
        self.store.put(namespace, record.id, record.to_dict())

    def find(self, record_type: type[RecordT], item_id: int) -> RecordT | None:
        payload = self.store.get(NAMESPACE_FOR[record_type], item_id)
        if payload is None:
            return None
        return record_type.from_dict(payload)  # type: ignore[attr-defined]

    def get(self, record_type: type[RecordT], item_id: int) -> RecordT:
        record = self.find(record_type, item_id)
        if record is None:
            raise NotFound(NAMESPACE_FOR[record_type], item_id)
        return record

    def all(
        self,
        record_type: type[RecordT],
        predicate: Callable[[RecordT], bool] | None = None,
    ) -> list[RecordT]:
        records = [
            record_type.from_dict(payload)  # type: ignore[attr-defined]
            for payload in self.store.list(NAMESPACE_FOR[record_type])
        ]
        if predicate is None:
            return records
        return [record for record in records if predicate(record)]

    def users_with_role(self, prefix: str) -> list[User]:
        return self.all(User, lambda user: user.is_active and user.role.startswith(prefix))

    def use_cases_for(self, requirement_id: int) -> list[UseCase]:
        return self.all(UseCase, lambda use_case: use_case.requirement_id == requirement_id)

    def deliverables_for(self, requirement_id: int) -> list[Deliverable]:
        return self.all(Deliverable, lambda item: item.requirement_id == requirement_id)

    def activity_for(self, entity_type: str, entity_id: int) -> list[ActivityLogEntry]:
        return self.all(
            ActivityLogEntry,
            lambda entry: entry.entity_type == entity_type and entry.entity_id == entity_id,
        )

    def recent_activity(self, limit: int = 20) -> list[ActivityLogEntry]:
        entries = self.all(ActivityLogEntry)
        return list(reversed(entries))[: max(0, limit)]

    def seed_users(self) -> list[User]:
        existing = self.all(User)
        if existing:
            return existing
        return [
            self.create(User, **dict(data, groups=list(data.get("groups", []))))
            for data in DEFAULT_USERS
        ]
