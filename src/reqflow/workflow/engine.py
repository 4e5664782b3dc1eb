from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from reqflow.domain import (
    ASSIGNMENT_STATUSES,
    ActivityLogEntry,
    Assignment,
    Requirement,
    UseCase,
    User,
    isoformat,
    utcnow,
)
from reqflow.state.locks import KeyedLocks
from reqflow.state.repository import Repository
from reqflow.workflow.fsm import RequirementFSM, UseCaseFSM

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class WorkflowEngine:
    """Drives use cases and requirements through their review lifecycle.

    Every mutation runs under the artifact's lock and writes exactly one
    activity entry. Illegal triggers raise ``InvalidTransition`` before
    anything is saved or logged.
    """

    def __init__(
        self,
        repository: Repository,
        *,
        locks: KeyedLocks | None = None,
        clock: Clock = utcnow,
        architect_due_days: int = 7,
    ) -> None:
        self.repository = repository
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self.architect_due_days = architect_due_days

    def _now(self) -> str:
        return isoformat(self.clock())

    def log_activity(
        self,
        user_id: int | None,
        action: str,
        entity_type: str,
        entity_id: int | None,
        details: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> ActivityLogEntry:
        return self.repository.create(
            ActivityLogEntry,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
            metadata=dict(metadata or {}),
            created_at=self._now(),
        )

    def record_degradation(
        self,
        kind: str,
        details: str,
        *,
        user_id: int | None = None,
        entity_type: str = "source",
        entity_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityLogEntry:
        logger.warning("degraded:%s %s", kind, details)
        return self.log_activity(
            user_id, f"degraded:{kind}", entity_type, entity_id, details, metadata
        )

    # ---- use cases ----

    def _fire_use_case(self, use_case: UseCase, trigger: str) -> str:
        previous = use_case.status
        fsm = UseCaseFSM(use_case.id, use_case.status)
        use_case.status = fsm.fire(trigger)  # type: ignore[assignment]
        use_case.updated_at = self._now()
        return previous

    async def submit_for_review(self, use_case_id: int, acting_user_id: int) -> UseCase:
        async with self.locks.hold("use_cases", use_case_id):
            use_case = self.repository.get(UseCase, use_case_id)
            previous = self._fire_use_case(use_case, "submit")
            self.repository.save(use_case)
            self.log_activity(
                acting_user_id,
                "submitted_for_review",
                "use_case",
                use_case.id,
                f"Use case '{use_case.title}' submitted for review",
                {"from": previous, "to": use_case.status},
            )
            return use_case

    def _first_architect(self) -> User | None:
        architects = self.repository.users_with_role("architect")
        return min(architects, key=lambda user: user.id) if architects else None

    async def approve(self, use_case_id: int, acting_user_id: int) -> UseCase:
        async with self.locks.hold("use_cases", use_case_id):
            use_case = self.repository.get(UseCase, use_case_id)
            previous = self._fire_use_case(use_case, "approve")
            use_case.metadata["approved_by"] = acting_user_id
            use_case.metadata["approved_at"] = use_case.updated_at

            metadata: dict[str, Any] = {"from": previous, "to": use_case.status}
            architect = self._first_architect()
            if architect is not None:
                due = self.clock() + timedelta(days=self.architect_due_days)
                assignment = self.repository.create(
                    Assignment,
                    entity_type="use_case",
                    entity_id=use_case.id,
                    from_user_id=acting_user_id,
                    to_user_id=architect.id,
                    to_role=architect.role,
                    due_date=isoformat(due),
                    comments=(
                        f"Use case '{use_case.title}' approved and handed off for "
                        "architecture review."
                    ),
                    created_at=self._now(),
                )
                use_case.assigned_to = architect.id
                use_case.assigned_role = architect.role
                metadata["assignment_id"] = assignment.id
                metadata["assigned_to"] = architect.id
            else:
                logger.info("no architect available for use case %s", use_case.id)

            self.repository.save(use_case)
            self.log_activity(
                acting_user_id,
                "approved",
                "use_case",
                use_case.id,
                f"Use case '{use_case.title}' approved",
                metadata,
            )
            return use_case

    async def reject(
        self, use_case_id: int, acting_user_id: int, reason: str | None = None
    ) -> UseCase:
        async with self.locks.hold("use_cases", use_case_id):
            use_case = self.repository.get(UseCase, use_case_id)
            previous = self._fire_use_case(use_case, "reject")
            use_case.metadata["rejection_reason"] = reason
            use_case.metadata["rejected_by"] = acting_user_id
            use_case.metadata["rejected_at"] = use_case.updated_at
            self.repository.save(use_case)
            self.log_activity(
                acting_user_id,
                "rejected",
                "use_case",
                use_case.id,
                f"Use case '{use_case.title}' rejected" + (f": {reason}" if reason else ""),
                {"from": previous, "to": use_case.status, "reason": reason},
            )
            return use_case

    async def revise(self, use_case_id: int, acting_user_id: int) -> UseCase:
        async with self.locks.hold("use_cases", use_case_id):
            use_case = self.repository.get(UseCase, use_case_id)
            previous = self._fire_use_case(use_case, "revise")
            reason = use_case.metadata.pop("rejection_reason", None)
            if reason:
                use_case.metadata["previous_rejection_reason"] = reason
            self.repository.save(use_case)
            self.log_activity(
                acting_user_id,
                "revised",
                "use_case",
                use_case.id,
                f"Use case '{use_case.title}' returned to draft",
                {"from": previous, "to": use_case.status},
            )
            return use_case

    async def assign_use_case(
        self,
        use_case_id: int,
        acting_user_id: int,
        *,
        to_user_id: int | None = None,
        to_role: str | None = None,
        comments: str = "",
    ) -> tuple[UseCase, Assignment]:
        async with self.locks.hold("use_cases", use_case_id):
            use_case = self.repository.get(UseCase, use_case_id)
            previous = self._fire_use_case(use_case, "assign")
            if to_user_id is None and to_role is None:
                to_user_id = use_case.assigned_to
                to_role = use_case.assigned_role
            if to_user_id is None and to_role is None:
                raise ValueError("An assignee user or role is required.")
            if to_user_id is not None:
                assignee = self.repository.get(User, to_user_id)
                to_role = to_role or assignee.role

            assignment = self.repository.create(
                Assignment,
                entity_type="use_case",
                entity_id=use_case.id,
                from_user_id=acting_user_id,
                to_user_id=to_user_id,
                to_role=to_role,
                comments=comments,
                created_at=self._now(),
            )
            use_case.assigned_to = to_user_id
            use_case.assigned_role = to_role
            self.repository.save(use_case)
            self.log_activity(
                acting_user_id,
                "assigned",
                "use_case",
                use_case.id,
                f"Use case '{use_case.title}' assigned to {to_role or f'user {to_user_id}'}",
                {
                    "from": previous,
                    "to": use_case.status,
                    "assignment_id": assignment.id,
                    "to_user_id": to_user_id,
                    "to_role": to_role,
                },
            )
            return use_case, assignment

    async def _simple_use_case_transition(
        self, use_case_id: int, acting_user_id: int, trigger: str, action: str, verb: str
    ) -> UseCase:
        async with self.locks.hold("use_cases", use_case_id):
            use_case = self.repository.get(UseCase, use_case_id)
            previous = self._fire_use_case(use_case, trigger)
            self.repository.save(use_case)
            self.log_activity(
                acting_user_id,
                action,
                "use_case",
                use_case.id,
                f"Use case '{use_case.title}' {verb}",
                {"from": previous, "to": use_case.status},
            )
            return use_case

    async def start_development(self, use_case_id: int, acting_user_id: int) -> UseCase:
        return await self._simple_use_case_transition(
            use_case_id,
            acting_user_id,
            "start_development",
            "development_started",
            "moved to development",
        )

    async def complete(self, use_case_id: int, acting_user_id: int) -> UseCase:
        return await self._simple_use_case_transition(
            use_case_id, acting_user_id, "complete", "completed", "completed"
        )

    # ---- requirements ----

    async def accept(self, requirement_id: int, acting_user_id: int) -> Requirement:
        async with self.locks.hold("requirements", requirement_id):
            requirement = self.repository.get(Requirement, requirement_id)
            if requirement.status == "accepted":
                return requirement
            previous = requirement.status
            fsm = RequirementFSM(requirement.id, requirement.status)
            requirement.status = fsm.fire("accept")  # type: ignore[assignment]
            requirement.accepted_by = acting_user_id
            requirement.accepted_at = self._now()
            requirement.updated_at = requirement.accepted_at
            self.repository.save(requirement)
            self.log_activity(
                acting_user_id,
                "accepted",
                "requirement",
                requirement.id,
                f"Requirement '{requirement.title}' accepted",
                {"from": previous, "to": requirement.status},
            )
            return requirement

    async def update_requirement_content(
        self,
        requirement_id: int,
        acting_user_id: int,
        content: str,
        *,
        title: str | None = None,
    ) -> Requirement:
        async with self.locks.hold("requirements", requirement_id):
            requirement = self.repository.get(Requirement, requirement_id)
            requirement.content = content
            if title:
                requirement.title = title
            requirement.version += 1
            requirement.updated_at = self._now()
            self.repository.save(requirement)
            self.log_activity(
                acting_user_id,
                "updated",
                "requirement",
                requirement.id,
                f"Requirement '{requirement.title}' updated to version {requirement.version}",
                {"version": requirement.version},
            )
            return requirement

    # ---- handoffs ----

    def _subject(self, entity_type: str, entity_id: int) -> Requirement | UseCase:
        if entity_type == "requirement":
            return self.repository.get(Requirement, entity_id)
        if entity_type == "use_case":
            return self.repository.get(UseCase, entity_id)
        raise ValueError(f"Assignments cannot target '{entity_type}'.")

    async def assign_to_role(
        self,
        entity_type: str,
        entity_id: int,
        acting_user_id: int,
        to_role: str,
        *,
        to_user_id: int | None = None,
        due_date: str | None = None,
        comments: str = "",
    ) -> Assignment:
        namespace = "requirements" if entity_type == "requirement" else "use_cases"
        async with self.locks.hold(namespace, entity_id):
            subject = self._subject(entity_type, entity_id)
            if to_user_id is not None:
                self.repository.get(User, to_user_id)
            assignment = self.repository.create(
                Assignment,
                entity_type=entity_type,
                entity_id=entity_id,
                from_user_id=acting_user_id,
                to_user_id=to_user_id,
                to_role=to_role,
                due_date=due_date,
                comments=comments,
                created_at=self._now(),
            )
            subject.assigned_role = to_role
            if isinstance(subject, UseCase) and to_user_id is not None:
                subject.assigned_to = to_user_id
            subject.updated_at = self._now()
            self.repository.save(subject)
            self.log_activity(
                acting_user_id,
                "handoff",
                entity_type,
                entity_id,
                f"{entity_type.replace('_', ' ').capitalize()} '{subject.title}' handed off "
                f"to {to_role}",
                {"assignment_id": assignment.id, "to_role": to_role, "to_user_id": to_user_id},
            )
            return assignment

    async def assign_to_pm(
        self, requirement_id: int, acting_user_id: int, pm_id: int
    ) -> tuple[Requirement, Assignment]:
        async with self.locks.hold("requirements", requirement_id):
            requirement = self.repository.get(Requirement, requirement_id)
            manager = self.repository.get(User, pm_id)
            assignment = self.repository.create(
                Assignment,
                entity_type="requirement",
                entity_id=requirement.id,
                from_user_id=acting_user_id,
                to_user_id=manager.id,
                to_role=manager.role,
                comments=f"Requirement '{requirement.title}' assigned for delivery planning.",
                created_at=self._now(),
            )
            requirement.assigned_pm = manager.id
            requirement.updated_at = self._now()
            self.repository.save(requirement)
            self.log_activity(
                acting_user_id,
                "assigned_to_pm",
                "requirement",
                requirement.id,
                f"Requirement '{requirement.title}' assigned to {manager.full_name}",
                {"assignment_id": assignment.id, "pm_id": manager.id},
            )
            return requirement, assignment

    async def update_assignment_status(
        self, assignment_id: int, acting_user_id: int, status: str
    ) -> Assignment:
        if status not in ASSIGNMENT_STATUSES:
            raise ValueError(f"Unknown assignment status '{status}'.")
        async with self.locks.hold("assignments", assignment_id):
            assignment = self.repository.get(Assignment, assignment_id)
            previous = assignment.status
            assignment.status = status  # type: ignore[assignment]
            self.repository.save(assignment)
            self.log_activity(
                acting_user_id,
                f"assignment_{status}",
                "assignment",
                assignment.id,
                f"Assignment {assignment.id} marked {status}",
                {"from": previous, "to": status},
            )
            return assignment
