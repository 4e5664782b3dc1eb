from __future__ import annotations

from collections import Counter
from datetime import datetime

from reqflow.domain import Requirement, UseCase, isoformat


def _status_counts(statuses: list[str]) -> str:
    if not statuses:
        return "none"
    counts = Counter(statuses)
    return ", ".join(f"{status}: {counts[status]}" for status in sorted(counts))


def _render_use_case(use_case: UseCase) -> list[str]:
    lines = [
        f"#### {use_case.uc_id or f'UC-{use_case.id}'}: {use_case.title}",
        "",
        f"- Kind: {use_case.kind.replace('_', '-')}",
        f"- Priority: {use_case.priority}",
        f"- Status: {use_case.status}",
    ]
    if use_case.actors:
        lines.append(f"- Actors: {', '.join(use_case.actors)}")
    if use_case.dependencies:
        lines.append(f"- Depends on: {', '.join(use_case.dependencies)}")
    lines.extend(["", use_case.description, ""])
    return lines


def render_export(
    requirements: list[Requirement],
    use_cases: list[UseCase],
    generated_at: datetime,
) -> str:
    """Markdown document with Overview, Requirements and Use Cases, in that order."""
    requirements = sorted(requirements, key=lambda item: item.id)
    use_cases = sorted(use_cases, key=lambda item: item.id)
    known_ids = {requirement.id for requirement in requirements}

    lines = [
        "# Requirements Export",
        "",
        f"Generated: {isoformat(generated_at)}",
        "",
        "## Overview",
        "",
        f"- Requirements: {len(requirements)} "
        f"({_status_counts([item.status for item in requirements])})",
        f"- Use cases: {len(use_cases)} ({_status_counts([item.status for item in use_cases])})",
        "",
        "## Requirements",
        "",
    ]
    if not requirements:
        lines.extend(["_No requirements yet._", ""])
    for requirement in requirements:
        lines.append(f"### REQ-{requirement.id}: {requirement.title}")
        lines.append("")
        lines.append(f"- Status: {requirement.status}")
        lines.append(f"- Version: {requirement.version}")
        if requirement.source_url:
            lines.append(f"- Source: {requirement.source_url}")
        if requirement.accepted_at:
            lines.append(f"- Accepted: {requirement.accepted_at}")
        summary = requirement.metadata.get("summary") if requirement.metadata else None
        if summary:
            lines.extend(["", summary])
        lines.append("")

    lines.extend(["## Use Cases", ""])
    if not use_cases:
        lines.extend(["_No use cases yet._", ""])
    for requirement in requirements:
        linked = [item for item in use_cases if item.requirement_id == requirement.id]
        if not linked:
            continue
        lines.extend([f"### REQ-{requirement.id}: {requirement.title}", ""])
        for use_case in linked:
            lines.extend(_render_use_case(use_case))

    unlinked = [item for item in use_cases if item.requirement_id not in known_ids]
    if unlinked:
        lines.extend(["### Unlinked", ""])
        for use_case in unlinked:
            lines.extend(_render_use_case(use_case))

    return "\n".join(lines).rstrip() + "\n"
