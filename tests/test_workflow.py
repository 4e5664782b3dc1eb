import asyncio
from datetime import UTC, datetime

import pytest

from reqflow.domain import ActivityLogEntry, Assignment, Requirement, UseCase, User
from reqflow.state import MemoryStore, NotFound, Repository
from reqflow.workflow import InvalidTransition, UseCaseFSM, WorkflowEngine

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)


def _engine(*, seed: bool = True) -> tuple[WorkflowEngine, Repository]:
    repository = Repository(MemoryStore())
    if seed:
        repository.seed_users()
    else:
        repository.create(User, username="ba", full_name="Ba Only", role="business_analyst")
    return WorkflowEngine(repository, clock=lambda: NOW), repository


def _use_case(repository: Repository, status: str = "draft") -> UseCase:
    return repository.create(
        UseCase,
        title="Pay by card",
        description="Customer pays with a card.",
        created_by=1,
        status=status,
    )


def _actions(repository: Repository, entity_type: str, entity_id: int) -> list[str]:
    return [entry.action for entry in repository.activity_for(entity_type, entity_id)]


def test_fsm_rejects_unknown_status_and_lists_triggers() -> None:
    fsm = UseCaseFSM(1, "pending_review")

    assert sorted(fsm.get_available_triggers()) == ["approve", "reject"]
    assert fsm.can("approve")
    assert not fsm.can("complete")
    with pytest.raises(InvalidTransition):
        UseCaseFSM(1, "archived")


def test_approve_hands_off_to_first_architect() -> None:
    engine, repository = _engine()
    use_case = _use_case(repository, status="pending_review")

    approved = asyncio.run(engine.approve(use_case.id, 2))

    assert approved.status == "approved"
    assert approved.assigned_to == 3
    assert approved.assigned_role == "architect_maker"
    (assignment,) = repository.all(Assignment)
    assert assignment.to_user_id == 3
    assert assignment.from_user_id == 2
    assert assignment.due_date == "2026-03-09T09:30:00+00:00"
    assert "Pay by card" in assignment.comments
    entries = repository.activity_for("use_case", use_case.id)
    assert [entry.action for entry in entries] == ["approved"]
    assert entries[0].metadata["assignment_id"] == assignment.id
    assert repository.get(UseCase, use_case.id).status == "approved"


def test_approve_without_architects_creates_no_assignment() -> None:
    engine, repository = _engine(seed=False)
    use_case = _use_case(repository, status="pending_review")

    approved = asyncio.run(engine.approve(use_case.id, 1))

    assert approved.status == "approved"
    assert approved.assigned_to is None
    assert repository.all(Assignment) == []
    assert _actions(repository, "use_case", use_case.id) == ["approved"]


@pytest.mark.parametrize("status", ["draft", "approved", "rejected", "completed"])
def test_illegal_approve_changes_nothing(status: str) -> None:
    engine, repository = _engine()
    use_case = _use_case(repository, status=status)

    with pytest.raises(InvalidTransition) as excinfo:
        asyncio.run(engine.approve(use_case.id, 2))

    assert excinfo.value.current == status
    assert excinfo.value.trigger == "approve"
    assert repository.get(UseCase, use_case.id).status == status
    assert repository.all(ActivityLogEntry) == []
    assert repository.all(Assignment) == []


def test_reject_then_revise_keeps_reason_history() -> None:
    engine, repository = _engine()
    use_case = _use_case(repository)

    async def scenario() -> UseCase:
        await engine.submit_for_review(use_case.id, 1)
        rejected = await engine.reject(use_case.id, 2, "Missing error flows")
        assert rejected.status == "rejected"
        assert rejected.metadata["rejection_reason"] == "Missing error flows"
        assert rejected.metadata["rejected_by"] == 2
        return await engine.revise(use_case.id, 1)

    revised = asyncio.run(scenario())

    assert revised.status == "draft"
    assert "rejection_reason" not in revised.metadata
    assert revised.metadata["previous_rejection_reason"] == "Missing error flows"
    assert _actions(repository, "use_case", use_case.id) == [
        "submitted_for_review",
        "rejected",
        "revised",
    ]


def test_delivery_flow_after_approval() -> None:
    engine, repository = _engine()
    use_case = _use_case(repository, status="pending_review")

    async def scenario() -> tuple[UseCase, Assignment]:
        await engine.approve(use_case.id, 2)
        _, assignment = await engine.assign_use_case(use_case.id, 3, comments="Build it")
        await engine.start_development(use_case.id, 3)
        return await engine.complete(use_case.id, 3), assignment

    completed, assignment = asyncio.run(scenario())

    assert completed.status == "completed"
    assert assignment.to_user_id == 3
    assert assignment.to_role == "architect_maker"
    assert assignment.comments == "Build it"
    assert _actions(repository, "use_case", use_case.id) == [
        "approved",
        "assigned",
        "development_started",
        "completed",
    ]


def test_assign_requires_an_assignee() -> None:
    engine, repository = _engine(seed=False)
    use_case = _use_case(repository, status="approved")

    with pytest.raises(ValueError, match="assignee"):
        asyncio.run(engine.assign_use_case(use_case.id, 1))


def test_accept_is_idempotent() -> None:
    engine, repository = _engine()
    requirement = repository.create(Requirement, title="Checkout", content="...", created_by=1)

    async def scenario() -> tuple[Requirement, Requirement]:
        first = await engine.accept(requirement.id, 2)
        second = await engine.accept(requirement.id, 4)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.status == second.status == "accepted"
    assert second.accepted_at == first.accepted_at == "2026-03-02T09:30:00+00:00"
    assert second.accepted_by == 2
    assert _actions(repository, "requirement", requirement.id) == ["accepted"]


def test_update_content_bumps_version() -> None:
    engine, repository = _engine()
    requirement = repository.create(Requirement, title="Checkout", content="v1", created_by=1)

    updated = asyncio.run(
        engine.update_requirement_content(requirement.id, 1, "v2", title="Checkout v2")
    )

    assert updated.version == 2
    assert updated.content == "v2"
    assert repository.get(Requirement, requirement.id).title == "Checkout v2"
    assert _actions(repository, "requirement", requirement.id) == ["updated"]


def test_assign_to_role_and_pm() -> None:
    engine, repository = _engine()
    requirement = repository.create(Requirement, title="Checkout", content="...", created_by=1)

    async def scenario() -> tuple[Assignment, Assignment]:
        handoff = await engine.assign_to_role(
            "requirement", requirement.id, 1, "architect", due_date="2026-04-01"
        )
        _, planning = await engine.assign_to_pm(requirement.id, 1, 5)
        return handoff, planning

    handoff, planning = asyncio.run(scenario())

    stored = repository.get(Requirement, requirement.id)
    assert handoff.to_role == "architect"
    assert handoff.due_date == "2026-04-01"
    assert planning.to_user_id == 5
    assert planning.to_role == "scrum_master"
    assert stored.assigned_role == "architect"
    assert stored.assigned_pm == 5
    assert _actions(repository, "requirement", requirement.id) == ["handoff", "assigned_to_pm"]


def test_assign_to_role_rejects_unknown_targets() -> None:
    engine, _ = _engine()

    with pytest.raises(ValueError):
        asyncio.run(engine.assign_to_role("deliverable", 1, 1, "developer"))
    with pytest.raises(NotFound):
        asyncio.run(engine.assign_to_role("requirement", 99, 1, "developer"))


def test_update_assignment_status() -> None:
    engine, repository = _engine()
    assignment = repository.create(
        Assignment, entity_type="use_case", entity_id=1, from_user_id=1, to_role="architect"
    )

    updated = asyncio.run(engine.update_assignment_status(assignment.id, 3, "accepted"))

    assert updated.status == "accepted"
    assert _actions(repository, "assignment", assignment.id) == ["assignment_accepted"]
    with pytest.raises(ValueError, match="Unknown assignment status"):
        asyncio.run(engine.update_assignment_status(assignment.id, 3, "lost"))
