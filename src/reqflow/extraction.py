"""Turn free-form model answers into use case records.

Two paths exist. When the model honoured the structured-output request, the
fenced (or bare) JSON document is decoded and validated. Otherwise the
markdown convention documented in ``reqflow/prompts/requirements.md`` is
scanned line by line. The scanner is best effort: it never raises, and if it
finds nothing it synthesises a single catch-all record so no content is lost.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from reqflow.domain import PRIORITIES, Priority, UseCaseKind

logger = logging.getLogger(__name__)

DESCRIPTION_LIMIT = 2000
TITLE_LIMIT = 80
MAX_FUNCTIONAL = 8
MAX_NON_FUNCTIONAL = 7

FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
RECORD_START_PATTERN = re.compile(
    r"^\s*(?:[-*]\s+)?"
    r"(?:\d+\.\s*\*\*|\*\*\s*\d+\.|#{1,6}\s+\S|\**\s*(?:UC|NFR|FR)-|\**\s*use case\s+\d+)",
    re.IGNORECASE,
)
STRONG_START_PATTERN = re.compile(
    r"^\s*(?:[-*]\s+)?(?:#{1,6}\s*)?"
    r"(?:\d+\.\s*\*\*|\*\*\s*\d+\.|\**\s*(?:UC|NFR|FR)-\w|\**\s*use case\s+\d+)",
    re.IGNORECASE,
)
RECORD_ID_PATTERN = re.compile(
    r"^\s*(?:[-*]\s+)?(?:#{1,6}\s*)?\**\s*(?:(?:UC|NFR|FR)-\w|use case\s+\d+)",
    re.IGNORECASE,
)
RECORD_MARKER_PATTERN = re.compile(
    r"^\s*(?:[-*]\s+)?(?:#{1,6}\s*|\d+\.\s*|\*\*|__)*"
    r"(?:\s*(?:UC|NFR|FR)-[\w.-]*\s*[:.)-]?|\s*use case\s+\d+\s*[:.)-]?|\s*\d+\.)?\s*",
    re.IGNORECASE,
)
EMPHASIS_PATTERN = re.compile(r"\*\*|__|`")
BULLET_PATTERN = re.compile(r"^\s*(?:[-*+•]\s+)+")
WHITESPACE_PATTERN = re.compile(r"\s+")
ACTOR_FIELD = re.compile(r"^\W*actors?\W*:\s*(.+)$", re.IGNORECASE)
DEPENDENCY_FIELD = re.compile(r"^\W*(?:depends on|dependencies)\W*:\s*(.+)$", re.IGNORECASE)
PRIORITY_FIELD = re.compile(r"^\W*priority\W*:\s*(.+)$", re.IGNORECASE)
PROJECT_NAME_FIELD = re.compile(r"project name\W*:\s*(.+)$", re.IGNORECASE)
VISION_FIELD = re.compile(r"(?:strategic vision|summary|overview)\W*:\s*(.+)$", re.IGNORECASE)
LIST_SPLIT = re.compile(r"\s*(?:,|;|\band\b)\s*", re.IGNORECASE)
PRIORITY_KEYWORDS: tuple[tuple[Priority, re.Pattern[str]], ...] = (
    ("critical", re.compile(r"\bcritical\b", re.IGNORECASE)),
    ("high", re.compile(r"\bhigh\b", re.IGNORECASE)),
    ("low", re.compile(r"\blow\b", re.IGNORECASE)),
)
NONE_VALUES = {"none", "n/a", "na", "-", "nothing"}


class ExtractionDegraded(UserWarning):
    """Signals that the catch-all record was synthesised."""


@dataclass(slots=True)
class ExtractedUseCase:
    title: str
    description: str
    kind: UseCaseKind = "functional"
    priority: Priority = "medium"
    actors: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ExtractionResult:
    records: list[ExtractedUseCase] = field(default_factory=list)
    project_name: str = ""
    summary: str = ""
    method: str = "markdown"
    degraded: bool = False

    def of_kind(self, kind: UseCaseKind) -> list[ExtractedUseCase]:
        return [record for record in self.records if record.kind == kind]


def _collapse(text: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def clean_text(text: str) -> str:
    without_emphasis = EMPHASIS_PATTERN.sub("", text or "")
    lines = [BULLET_PATTERN.sub("", line) for line in without_emphasis.splitlines()]
    return _collapse(" ".join(lines))


def infer_priority(text: str, default: Priority = "medium") -> Priority:
    for priority, pattern in PRIORITY_KEYWORDS:
        if pattern.search(text or ""):
            return priority
    return default


def _coerce_priority(value: Any) -> Priority:
    if isinstance(value, str) and value.strip().lower() in PRIORITIES:
        return value.strip().lower()  # type: ignore[return-value]
    return infer_priority(str(value or ""))


def _coerce_kind(value: Any, default: UseCaseKind = "functional") -> UseCaseKind:
    lowered = str(value or "").lower().replace("-", "_").replace(" ", "_")
    if lowered.startswith("non"):
        return "non_functional"
    if lowered.startswith("functional"):
        return "functional"
    return default


def _split_list(value: str) -> list[str]:
    items = []
    for part in LIST_SPLIT.split(clean_text(value)):
        item = part.strip(" .")
        if item and item.lower() not in NONE_VALUES and item not in items:
            items.append(item)
    return items


def coerce_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return _split_list(value)
    if isinstance(value, (list, tuple)):
        items = [clean_text(str(item)) for item in value if item is not None]
        return [item for item in items if item and item.lower() not in NONE_VALUES]
    return [clean_text(str(value))]


# ---- JSON path ----


def _json_candidates(text: str) -> list[str]:
    candidates = [block.strip() for block in FENCE_PATTERN.findall(text)]
    candidates.append(text.strip())
    for match in re.finditer(r"[\[{]", text):
        candidates.append(text[match.start() :])
    return candidates


def decode_json(raw_text: str) -> Any:
    """Decode the first JSON document found in a model answer.

    Raises ``ValueError`` when no candidate decodes.
    """
    decoder = json.JSONDecoder()
    for candidate in _json_candidates(raw_text or ""):
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass
        try:
            parsed, _ = decoder.raw_decode(candidate)
            return parsed
        except json.JSONDecodeError:
            continue
    snippet = _collapse(raw_text or "")
    snippet = (snippet[:200] + "...") if len(snippet) > 200 else snippet
    raise ValueError(f"No JSON document found in response. Snippet: {snippet}")


def _structured_record(item: Any, default_kind: UseCaseKind) -> ExtractedUseCase | None:
    if not isinstance(item, dict):
        return None
    title = clean_text(str(item.get("title") or item.get("name") or ""))[:TITLE_LIMIT]
    description = clean_text(str(item.get("description") or item.get("goal") or ""))
    if not title or not description:
        return None
    actors = item.get("actors", item.get("actor"))
    return ExtractedUseCase(
        title=title,
        description=description[:DESCRIPTION_LIMIT],
        kind=_coerce_kind(item.get("kind") or item.get("type"), default_kind),
        priority=_coerce_priority(item.get("priority")),
        actors=coerce_str_list(actors),
        dependencies=coerce_str_list(item.get("dependencies")),
    )


def extract_structured(text: str) -> ExtractionResult | None:
    """Return records from a JSON answer, or ``None`` when there is none."""
    if not text or ("{" not in text and "[" not in text):
        return None
    try:
        payload = decode_json(text)
    except ValueError:
        return None

    groups: list[tuple[Any, UseCaseKind]] = []
    if isinstance(payload, list):
        groups.append((payload, "functional"))
    elif isinstance(payload, dict):
        for key, kind in (
            ("use_cases", "functional"),
            ("useCases", "functional"),
            ("functional", "functional"),
            ("requirements", "non_functional"),
            ("non_functional", "non_functional"),
            ("nonFunctional", "non_functional"),
        ):
            if isinstance(payload.get(key), list):
                groups.append((payload[key], kind))
    else:
        return None

    records: list[ExtractedUseCase] = []
    for items, kind in groups:
        for item in items:
            record = _structured_record(item, kind)
            if record is not None:
                records.append(record)
    if not records:
        return None

    result = ExtractionResult(records=_apply_limits(records), method="json")
    if isinstance(payload, dict):
        result.project_name = clean_text(str(payload.get("project_name") or ""))[:TITLE_LIMIT]
        result.summary = clean_text(str(payload.get("summary") or ""))
    return result


# ---- markdown path ----


def _is_heading_like(line: str) -> bool:
    stripped = line.strip()
    if not stripped:
        return False
    if stripped.startswith(("#", "**", "__")):
        return True
    return len(stripped) < 80 and stripped.endswith(":")


def _section_kind(line: str) -> UseCaseKind | None:
    if not _is_heading_like(line):
        return None
    lowered = line.lower()
    if re.search(r"non[\s-]?functional", lowered):
        if "requirement" in lowered or "use case" in lowered:
            return "non_functional"
        return None
    if "functional" in lowered and ("use case" in lowered or "requirement" in lowered):
        return "functional"
    return None


def _is_terminator(line: str) -> bool:
    if not _is_heading_like(line):
        return False
    lowered = line.lower()
    return (
        "innovation" in lowered
        or "technical recommendation" in lowered
        or lowered.strip().startswith("**technical")
    )


def _title_from_header(line: str) -> str:
    title = RECORD_MARKER_PATTERN.sub("", line, count=1)
    title = clean_text(title)
    # "Title: goal text" keeps the part before the colon
    if ":" in title:
        head = title.split(":", 1)[0].strip()
        if head:
            title = head
    return title.strip(" .-")[:TITLE_LIMIT]


class _OpenRecord:
    __slots__ = ("kind", "title", "header", "lines", "length", "actors", "dependencies", "priority")

    def __init__(self, kind: UseCaseKind, header: str) -> None:
        self.kind = kind
        self.header = header
        self.title = _title_from_header(header)
        remainder = clean_text(RECORD_MARKER_PATTERN.sub("", header, count=1))
        self.lines: list[str] = [remainder] if remainder else []
        self.length = len(remainder)
        self.actors: list[str] = []
        self.dependencies: list[str] = []
        self.priority: Priority | None = None

    def add(self, line: str) -> None:
        stripped = line.strip()
        if actor := ACTOR_FIELD.match(stripped):
            self.actors.extend(a for a in _split_list(actor.group(1)) if a not in self.actors)
        elif dependency := DEPENDENCY_FIELD.match(stripped):
            self.dependencies.extend(
                d for d in _split_list(dependency.group(1)) if d not in self.dependencies
            )
        elif priority := PRIORITY_FIELD.match(stripped):
            self.priority = infer_priority(priority.group(1))
        if self.length >= DESCRIPTION_LIMIT:
            return
        self.lines.append(stripped)
        self.length += len(stripped) + 1

    def flush(self, index: int) -> ExtractedUseCase:
        description = clean_text("\n".join(self.lines))[:DESCRIPTION_LIMIT]
        label = "Functional" if self.kind == "functional" else "Non-Functional"
        title = self.title or f"{label} Requirement {index}"
        priority = infer_priority(self.header, default=self.priority or "medium")
        return ExtractedUseCase(
            title=title,
            description=description or title,
            kind=self.kind,
            priority=priority,
            actors=list(self.actors),
            dependencies=list(self.dependencies),
        )


def _scan(text: str, kind: UseCaseKind | None) -> list[ExtractedUseCase]:
    records: list[ExtractedUseCase] = []
    current: _OpenRecord | None = None
    in_section = kind is None
    section_kind: UseCaseKind = kind or "functional"
    lines = text.splitlines()
    # explicit UC-style headers win over plain markdown headings
    start_pattern = (
        STRONG_START_PATTERN
        if any(STRONG_START_PATTERN.match(line) for line in lines)
        else RECORD_START_PATTERN
    )

    def flush() -> None:
        nonlocal current
        if current is not None:
            records.append(current.flush(len(records) + 1))
            current = None

    for line in lines:
        # an identified header is a record even when its title names a section
        identified = RECORD_ID_PATTERN.match(line) is not None
        found = None if identified else _section_kind(line)
        if found is not None:
            if kind is None:
                flush()
                in_section = True
                section_kind = found
                continue
            if found == kind:
                flush()
                in_section = True
                continue
            if in_section:
                break
            continue
        if not identified and _is_terminator(line):
            flush()
            if kind is not None and in_section:
                break
            in_section = False
            continue
        if not in_section:
            continue
        if start_pattern.match(line):
            flush()
            current = _OpenRecord(section_kind, line)
            continue
        if current is not None and line.strip():
            if "each use case must include" in line.lower():
                continue
            current.add(line)
    flush()
    return records


def _catch_all(text: str, kind: UseCaseKind) -> ExtractedUseCase:
    summary = clean_text(text)
    title = extract_title(text) or "Requirements Summary"
    return ExtractedUseCase(
        title=title[:TITLE_LIMIT],
        description=summary[:DESCRIPTION_LIMIT] or "The model returned no content.",
        kind=kind,
    )


def _degraded(text: str, kind: UseCaseKind, *, source: str = "") -> ExtractionResult:
    warning = ExtractionDegraded(
        f"No use case records detected{' in ' + source if source else ''}; "
        "synthesised a catch-all record."
    )
    logger.warning("%s: %s", type(warning).__name__, warning)
    return ExtractionResult(
        records=[_catch_all(text, kind)],
        project_name=extract_title(text),
        summary=extract_summary(text),
        method="catch_all",
        degraded=True,
    )


def parse_use_cases(
    text: str,
    kind: UseCaseKind | None = None,
    *,
    catch_all: bool = True,
) -> ExtractionResult:
    """Scan a markdown answer for use case records of ``kind``.

    ``kind=None`` scans the whole answer and assigns each record the kind of
    the section it appears in (functional by default).
    """
    text = text or ""
    try:
        records = _scan(text, kind)
    except Exception:  # never fail on odd input
        logger.exception("markdown extraction crashed; using catch-all record")
        records = []
    if not records:
        if catch_all:
            return _degraded(text, kind or "functional", source=kind or "")
        return ExtractionResult(method="markdown")
    return ExtractionResult(
        records=records,
        project_name=extract_title(text),
        summary=extract_summary(text),
        method="markdown",
    )


def _apply_limits(
    records: list[ExtractedUseCase],
    max_functional: int = MAX_FUNCTIONAL,
    max_non_functional: int = MAX_NON_FUNCTIONAL,
) -> list[ExtractedUseCase]:
    functional = [r for r in records if r.kind == "functional"][:max_functional]
    non_functional = [r for r in records if r.kind == "non_functional"][:max_non_functional]
    return functional + non_functional


def analyze_use_cases(
    text: str,
    *,
    max_functional: int = MAX_FUNCTIONAL,
    max_non_functional: int = MAX_NON_FUNCTIONAL,
) -> ExtractionResult:
    """Best available extraction for a requirements answer."""
    text = text or ""
    structured = extract_structured(text)
    if structured is not None:
        structured.records = _apply_limits(
            structured.records, max_functional, max_non_functional
        )
        structured.project_name = structured.project_name or extract_title(text)
        structured.summary = structured.summary or extract_summary(text)
        return structured

    markdown = _strip_json_blocks(text)
    functional = parse_use_cases(markdown, "functional", catch_all=False).records
    non_functional = parse_use_cases(markdown, "non_functional", catch_all=False).records
    records = functional + non_functional
    if not records:
        records = parse_use_cases(markdown, None, catch_all=False).records
    if not records:
        return _degraded(markdown, "functional")
    return ExtractionResult(
        records=_apply_limits(records, max_functional, max_non_functional),
        project_name=extract_title(markdown),
        summary=extract_summary(markdown),
        method="markdown",
    )


def _strip_json_blocks(text: str) -> str:
    return re.sub(r"```json\s*.*?```", "", text, flags=re.DOTALL | re.IGNORECASE).strip()


def display_text(text: str) -> str:
    """The answer as shown to people: markdown only, JSON blocks removed."""
    stripped = _strip_json_blocks(text or "")
    return stripped or (text or "").strip()


# ---- title and summary ----


def _meaningful_lines(text: str) -> list[str]:
    lines = []
    for line in (text or "").splitlines():
        cleaned = clean_text(line.lstrip("#"))
        if cleaned and not cleaned.startswith("```") and len(cleaned) > 3:
            lines.append(cleaned)
    return lines


def extract_title(text: str) -> str:
    """Project name line, else the first heading, else the first meaningful line."""
    for line in (text or "").splitlines():
        match = PROJECT_NAME_FIELD.search(line)
        if match:
            name = clean_text(match.group(1)).strip(" .")
            if name:
                return name[:TITLE_LIMIT]
    for line in (text or "").splitlines():
        if line.lstrip().startswith("#") and _section_kind(line) is None:
            heading = clean_text(line.lstrip().lstrip("#"))
            if heading:
                return heading[:TITLE_LIMIT]
    lines = _meaningful_lines(_strip_json_blocks(text or ""))
    if not lines:
        return ""
    return lines[0].rstrip(":")[:TITLE_LIMIT]


def extract_summary(text: str, limit: int = 500) -> str:
    for line in (text or "").splitlines():
        match = VISION_FIELD.search(line)
        if match:
            summary = clean_text(match.group(1))
            if summary:
                return summary[:limit]
    for line in _meaningful_lines(_strip_json_blocks(text or "")):
        if len(line) > 40 and not line.endswith(":"):
            return line[:limit]
    return ""
