import asyncio

import httpx
import pytest

from reqflow.acquisition import fetch_source
from reqflow.backends import ModelClient, ModelInvocationError, RenderedPrompt
from reqflow.config import ReqflowConfig
from reqflow.domain import ActivityLogEntry, Deliverable, Requirement, UseCase
from reqflow.pipeline import APOLOGY, REQUIREMENT_ACTIONS, role_suggestions
from reqflow.runtime import Runtime, load_runtime
from reqflow.workflow import InvalidTransition

PAGE = """
<html><head><title>Acme Checkout</title></head>
<body><main><h1>Checkout</h1><p>Customers pay with cards and can request refunds.</p></main></body>
</html>
"""

BRIEF_PAGE = """
<html><head><title>Spec</title></head>
<body><h1>Overview</h1><h2>Login</h2><p>Members sign in and out of the portal.</p></body>
</html>
"""

REQUIREMENTS_ANSWER = """**PROJECT OVERVIEW:**
Project Name: Checkout Revamp
Strategic Vision: A faster checkout that lets customers pay and get refunds without calls.

**FUNCTIONAL USE CASES:**

### UC-001: Pay by card
Actor: Customer
Goal: Pay for the cart with a saved or new card and receive a receipt.
Priority: High

### UC-002: Request refund
Actor: Customer, Support agent
Goal: Ask for a refund on a recent order and follow its progress.
Depends on: UC-001

**NON-FUNCTIONAL REQUIREMENTS:**

### NFR-001: Availability
The checkout is available 99.9% of the time each month.
"""

DELIVERABLES_ANSWER = """{"deliverables": [
  {"title": "Checkout epic", "type": "epic", "priority": "high"},
  {"title": "Card payment form", "type": "story", "storyPoints": 5},
  {"title": "Refund endpoint", "type": "task", "storyPoints": 3}
]}"""


class IntentClient(ModelClient):
    """Answers by prompt intent; exceptions are raised instead of returned."""

    name = "fake"

    def __init__(self, answers: dict[str, str | Exception]) -> None:
        self.answers = answers
        self.prompts: list[RenderedPrompt] = []

    async def generate(self, prompt: RenderedPrompt, *, model: str) -> str:
        _ = model
        self.prompts.append(prompt)
        answer = self.answers.get(prompt.intent, "")
        if isinstance(answer, Exception):
            raise answer
        return answer


def _page(request: httpx.Request) -> httpx.Response:
    if request.url.host == "acme.test":
        return httpx.Response(200, html=PAGE)
    if request.url.host == "example.com":
        return httpx.Response(200, html=BRIEF_PAGE)
    return httpx.Response(404)


def _runtime(answers: dict[str, str | Exception]) -> tuple[Runtime, IntentClient]:
    config = ReqflowConfig.default()
    config.models.max_retries = 0
    client = IntentClient(answers)
    runtime = load_runtime(config, client=client, transport=httpx.MockTransport(_page))
    return runtime, client


def _actions(runtime: Runtime) -> list[str]:
    return [entry.action for entry in runtime.repository.all(ActivityLogEntry)]


def test_url_message_creates_requirement_and_use_cases() -> None:
    runtime, client = _runtime({"url_requirements": REQUIREMENTS_ANSWER})

    result = asyncio.run(
        runtime.pipeline.analyze("Please analyse https://acme.test/checkout.", 1)
    )

    assert result.intent == "url_requirements"
    assert result.source_url == "https://acme.test/checkout"
    assert result.extracted_title == "Acme Checkout"
    assert result.offer_actions is True
    assert result.suggestions == REQUIREMENT_ACTIONS
    assert result.degraded == []
    assert "Customers pay with cards" in client.prompts[0].user

    requirement = runtime.repository.get(Requirement, result.requirement_id)
    assert requirement.source_url == "https://acme.test/checkout"
    assert requirement.metadata["extraction_method"] == "markdown"
    use_cases = runtime.repository.use_cases_for(requirement.id)
    assert [use_case.id for use_case in use_cases] == result.use_case_ids
    assert [(uc.uc_id, uc.title) for uc in use_cases] == [
        ("UC-F-001", "Pay by card"),
        ("UC-F-002", "Request refund"),
        ("UC-NF-001", "Availability"),
    ]
    assert use_cases[0].priority == "high"
    assert use_cases[1].dependencies == ["UC-001"]
    assert all(use_case.status == "draft" for use_case in use_cases)
    assert _actions(runtime) == ["created"] * 4


def test_fetch_failure_is_recorded_and_analysis_continues() -> None:
    runtime, _ = _runtime({"project_requirements": REQUIREMENTS_ANSWER})

    result = asyncio.run(
        runtime.pipeline.analyze("Build a checkout system like https://down.test/brief", 1)
    )

    assert result.degraded == ["fetch"]
    assert result.intent == "project_requirements"
    assert result.extracted_title == "Checkout Revamp"
    assert result.requirement_id is not None
    (entry,) = runtime.repository.all(ActivityLogEntry, lambda e: e.action.startswith("degraded"))
    assert entry.action == "degraded:fetch"
    assert entry.metadata["reason"] == "HTTP 404"


def test_model_outage_returns_apology() -> None:
    failure = ModelInvocationError("no key", retriable=False)
    runtime, client = _runtime({"project_requirements": failure})

    result = asyncio.run(runtime.pipeline.analyze("Build a booking platform for vets", 1))

    assert result.response_text == APOLOGY
    assert result.offer_actions is False
    assert result.requirement_id is None
    assert result.degraded == ["model"]
    assert len(client.prompts) == len(runtime.config.models.candidates)
    assert runtime.repository.all(Requirement) == []
    assert _actions(runtime) == ["degraded:model"]
    assert runtime.store.get_metrics()["model_exhausted_count"] == 1


def test_unstructured_answer_degrades_to_catch_all() -> None:
    runtime, _ = _runtime({"project_requirements": "Happy to help, tell me more about it."})

    result = asyncio.run(runtime.pipeline.analyze("Create a project tracker application", 1))

    assert result.degraded == ["extraction"]
    assert len(result.use_case_ids) == 1
    assert "degraded:extraction" in _actions(runtime)


def test_guidance_question_returns_role_suggestions() -> None:
    runtime, _ = _runtime({"sdlc_guidance": "Plan capacity first."})

    result = asyncio.run(runtime.pipeline.analyze("How do we plan performance work?", 5))

    assert result.response_text == "Plan capacity first."
    assert result.requirement_id is None
    assert result.suggestions == role_suggestions("scrum_master", "performance")
    assert "Define SLA targets" in result.suggestions
    assert runtime.repository.all(UseCase) == []


def test_role_suggestions_default_to_business_analyst() -> None:
    assert role_suggestions(None, "")[0] == "Create detailed use case"
    assert role_suggestions("developer", "security review")[-1] == "Plan compliance audit"


def test_generate_deliverables_persists_items() -> None:
    runtime, _ = _runtime(
        {"project_requirements": REQUIREMENTS_ANSWER, "deliverables": DELIVERABLES_ANSWER}
    )

    async def scenario():
        result = await runtime.pipeline.analyze("Build a checkout system", 1)
        await runtime.engine.accept(result.requirement_id, 1)
        return await runtime.pipeline.generate_deliverables(result.requirement_id, 1)

    batch = asyncio.run(scenario())

    assert batch.count == 3
    assert not batch.used_fallback
    assert [item.type for item in batch.deliverables] == ["epic", "story", "task"]
    assert len(runtime.repository.deliverables_for(batch.requirement_id)) == 3
    assert batch.export_projection()[0]["issueType"] == "Epic"
    assert _actions(runtime)[-1] == "deliverables_generated"


def test_generate_deliverables_falls_back_on_garbage() -> None:
    runtime, _ = _runtime(
        {"project_requirements": REQUIREMENTS_ANSWER, "deliverables": "not json"}
    )

    async def scenario():
        result = await runtime.pipeline.analyze("Build a checkout system", 1)
        await runtime.engine.accept(result.requirement_id, 1)
        return await runtime.pipeline.generate_deliverables(result.requirement_id, 1)

    batch = asyncio.run(scenario())

    assert batch.used_fallback
    assert batch.count == 3
    assert runtime.repository.all(Deliverable)[0].title == "Checkout Revamp - Implementation"
    assert "degraded:deliverable_parse" in _actions(runtime)


def test_generate_deliverables_requires_accepted_requirement() -> None:
    runtime, client = _runtime(
        {"project_requirements": REQUIREMENTS_ANSWER, "deliverables": DELIVERABLES_ANSWER}
    )

    async def scenario():
        result = await runtime.pipeline.analyze("Build a checkout system", 1)
        return await runtime.pipeline.generate_deliverables(result.requirement_id, 1)

    with pytest.raises(InvalidTransition, match="while it is 'draft'"):
        asyncio.run(scenario())

    assert runtime.repository.all(Deliverable) == []
    assert [prompt.intent for prompt in client.prompts] == ["project_requirements"]
    assert "deliverables_generated" not in _actions(runtime)


def test_url_brief_flows_into_use_cases() -> None:
    answer = "### UC-001: Login\nUser logs in with email.\n### UC-002: Logout\nUser logs out."
    runtime, client = _runtime({"url_requirements": answer})
    transport = httpx.MockTransport(_page)

    source = asyncio.run(fetch_source("https://example.com/spec", transport=transport))
    result = asyncio.run(runtime.pipeline.analyze("Review https://example.com/spec please", 1))

    assert source.title == "Spec"
    assert source.headings == ["Overview", "Login"]
    assert result.intent == "url_requirements"
    assert result.degraded == []
    assert "Headings: Overview; Login" in client.prompts[0].user
    requirement = runtime.repository.get(Requirement, result.requirement_id)
    assert requirement.title == "Spec"
    use_cases = runtime.repository.use_cases_for(requirement.id)
    assert [use_case.title for use_case in use_cases] == ["Login", "Logout"]
    assert [use_case.priority for use_case in use_cases] == ["medium", "medium"]
