from __future__ import annotations

from enum import Enum
from importlib import resources

from reqflow.backends.base import RenderedPrompt
from reqflow.domain import Source

CREATE_KEYWORDS = ("create", "build", "design", "develop")
PROJECT_KEYWORDS = ("project", "application", "system", "platform")


class PromptIntent(str, Enum):
    URL_REQUIREMENTS = "url_requirements"
    PROJECT_REQUIREMENTS = "project_requirements"
    SDLC_GUIDANCE = "sdlc_guidance"
    DELIVERABLES = "deliverables"


def select_intent(message: str, *, source_available: bool) -> PromptIntent:
    if source_available:
        return PromptIntent.URL_REQUIREMENTS
    lowered = (message or "").lower()
    if any(word in lowered for word in CREATE_KEYWORDS) and any(
        word in lowered for word in PROJECT_KEYWORDS
    ):
        return PromptIntent.PROJECT_REQUIREMENTS
    return PromptIntent.SDLC_GUIDANCE


STRUCTURED_BLOCK_INSTRUCTIONS = """
Start your answer with one fenced ```json block holding the same content as
the markdown document that follows it, in this shape:
{"project_name": str, "summary": str, "use_cases": [{"title": str,
"description": str, "kind": "functional" | "non_functional",
"priority": "low" | "medium" | "high" | "critical", "actors": [str],
"dependencies": [str]}]}
""".strip()


class PromptTemplate:
    intent: PromptIntent = PromptIntent.SDLC_GUIDANCE
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software delivery assistant."

    def __init__(self, *, structured_output: bool = True) -> None:
        self.structured_output = structured_output
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("reqflow.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    def _prompt(self, user: str, *, json_mode: bool = False) -> RenderedPrompt:
        return RenderedPrompt(
            system=self.system_prompt,
            user=user.strip(),
            intent=self.intent.value,
            json_mode=json_mode,
        )


class UrlRequirementsTemplate(PromptTemplate):
    intent = PromptIntent.URL_REQUIREMENTS
    prompt_file = "requirements.md"
    fallback_prompt = """
You are a senior business analyst. Produce a structured requirements document
with a PROJECT OVERVIEW, FUNCTIONAL USE CASES (### UC-001: Title) and
NON-FUNCTIONAL REQUIREMENTS sections.
"""

    def render(self, message: str, source: Source) -> RenderedPrompt:
        parts = [
            "Analyse the following web page and write the requirements document for the",
            "system it describes.",
            "",
            "User request:",
            message,
            "",
            "Page content:",
            source.as_prompt_context(),
        ]
        if self.structured_output:
            parts.extend(["", STRUCTURED_BLOCK_INSTRUCTIONS])
        return self._prompt("\n".join(parts))


class ProjectRequirementsTemplate(UrlRequirementsTemplate):
    intent = PromptIntent.PROJECT_REQUIREMENTS

    def render(self, message: str, source: Source | None = None) -> RenderedPrompt:
        if source is not None:
            return super().render(message, source)
        parts = [
            "Write the requirements document for the following project request:",
            f'"{message}"',
            "",
            "Cover 4-8 functional use cases and 3-7 non-functional requirements.",
        ]
        if self.structured_output:
            parts.extend(["", STRUCTURED_BLOCK_INSTRUCTIONS])
        return self._prompt("\n".join(parts))


class SdlcGuidanceTemplate(PromptTemplate):
    intent = PromptIntent.SDLC_GUIDANCE
    prompt_file = "sdlc_guidance.md"
    fallback_prompt = """
You are an assistant specialised in SDLC management. Be concise, practical and
role-specific.
"""

    def render(self, message: str, role: str = "business_analyst") -> RenderedPrompt:
        return self._prompt(f"Current user role: {role}\n\n{message}")


class DeliverablesTemplate(PromptTemplate):
    intent = PromptIntent.DELIVERABLES
    prompt_file = "deliverables.md"
    fallback_prompt = """
You are an agile delivery lead. Decompose the requirement into epics, stories
and tasks. Respond with JSON only.
"""

    def render(self, title: str, content: str) -> RenderedPrompt:
        if self.structured_output:
            shape = 'Return a JSON object of the form {"deliverables": [ ... ]}.'
        else:
            shape = "Return only a JSON array of work items, with no prose around it."
        user = "\n".join(
            [
                f"Requirement: {title}",
                "",
                content,
                "",
                "Decompose this requirement into 5-12 work items.",
                shape,
            ]
        )
        return self._prompt(user, json_mode=self.structured_output)


class TemplateEngine:
    """Maps an intent to its template; rendering is pure."""

    def __init__(self, *, structured_output: bool = True) -> None:
        self.url_requirements = UrlRequirementsTemplate(structured_output=structured_output)
        self.project_requirements = ProjectRequirementsTemplate(
            structured_output=structured_output
        )
        self.sdlc_guidance = SdlcGuidanceTemplate(structured_output=structured_output)
        self.deliverables = DeliverablesTemplate(structured_output=structured_output)

    def for_intent(self, intent: PromptIntent) -> PromptTemplate:
        mapping: dict[PromptIntent, PromptTemplate] = {
            PromptIntent.URL_REQUIREMENTS: self.url_requirements,
            PromptIntent.PROJECT_REQUIREMENTS: self.project_requirements,
            PromptIntent.SDLC_GUIDANCE: self.sdlc_guidance,
            PromptIntent.DELIVERABLES: self.deliverables,
        }
        return mapping[intent]

    def build(
        self,
        intent: PromptIntent,
        message: str,
        *,
        source: Source | None = None,
        role: str = "business_analyst",
    ) -> RenderedPrompt:
        if intent is PromptIntent.URL_REQUIREMENTS:
            if source is None:
                raise ValueError("URL requirements prompts need a fetched source.")
            return self.url_requirements.render(message, source)
        if intent is PromptIntent.PROJECT_REQUIREMENTS:
            return self.project_requirements.render(message, source)
        if intent is PromptIntent.SDLC_GUIDANCE:
            return self.sdlc_guidance.render(message, role)
        raise ValueError("Deliverable prompts are rendered from a requirement.")
