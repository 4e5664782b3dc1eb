from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx

from reqflow.backends import (
    ModelCandidate,
    ModelCascade,
    ModelClient,
    OpenAIModelClient,
    RetryPolicy,
)
from reqflow.config import ReqflowConfig
from reqflow.jobs import JobQueue
from reqflow.pipeline import AnalysisPipeline
from reqflow.state import ArtifactStore, JsonFileStore, KeyedLocks, MemoryStore, Repository
from reqflow.templates import TemplateEngine
from reqflow.workflow import WorkflowEngine


@dataclass(slots=True)
class Runtime:
    config: ReqflowConfig
    store: ArtifactStore
    repository: Repository
    engine: WorkflowEngine
    cascade: ModelCascade
    pipeline: AnalysisPipeline
    jobs: JobQueue


def _record_model_event(store: ArtifactStore, event: dict[str, Any]) -> None:
    metrics = store.get_metrics()
    events = metrics.get("model_events", [])
    if not isinstance(events, list):
        events = []
    event_payload = dict(event)
    event_payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
    events.append(event_payload)
    metrics["model_events"] = events[-200:]

    if event.get("event") == "model_retry":
        metrics["model_retry_count"] = int(metrics.get("model_retry_count", 0)) + 1
    if event.get("event") == "model_fallback_success":
        metrics["model_fallback_count"] = int(metrics.get("model_fallback_count", 0)) + 1
    if event.get("event") == "model_cascade_exhausted":
        metrics["model_exhausted_count"] = int(metrics.get("model_exhausted_count", 0)) + 1

    store.set_metrics(metrics)


def build_store(config: ReqflowConfig, root: Path | None = None) -> ArtifactStore:
    if config.state.backend == "json":
        state_path = Path(config.state.path)
        if not state_path.is_absolute():
            state_path = (root or Path.cwd()) / state_path
        return JsonFileStore(state_path)
    return MemoryStore()


def build_cascade(
    config: ReqflowConfig,
    store: ArtifactStore,
    client: ModelClient | None = None,
) -> ModelCascade:
    models = config.models
    client = client or OpenAIModelClient(
        api_key_env=models.api_key_env,
        max_output_tokens=models.max_output_tokens,
        temperature=models.temperature,
        timeout_seconds=models.attempt_timeout_seconds,
    )
    policy = RetryPolicy(
        max_retries=max(0, int(models.max_retries)),
        backoff_seconds=max(0.0, float(models.retry_backoff_seconds)),
        attempt_timeout_seconds=max(1.0, float(models.attempt_timeout_seconds)),
        total_timeout_seconds=max(1.0, float(models.total_timeout_seconds)),
    )
    candidates = [
        ModelCandidate(name=client.name, client=client, model=model)
        for model in models.candidates
    ]
    return ModelCascade(
        candidates,
        retry_policy=policy,
        event_hook=lambda event: _record_model_event(store, event),
    )


def load_runtime(
    config: ReqflowConfig,
    *,
    root: Path | None = None,
    store: ArtifactStore | None = None,
    client: ModelClient | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    store = store or build_store(config, root)
    repository = Repository(store)
    if config.workflow.seed_users:
        repository.seed_users()
    engine = WorkflowEngine(
        repository,
        locks=KeyedLocks(),
        architect_due_days=config.workflow.architect_due_days,
    )
    cascade = build_cascade(config, store, client)
    pipeline = AnalysisPipeline(
        repository=repository,
        engine=engine,
        cascade=cascade,
        templates=TemplateEngine(structured_output=config.models.structured_output),
        acquisition=config.acquisition,
        extraction=config.extraction,
        transport=transport,
    )
    jobs = JobQueue(repository, workers=config.server.job_workers)

    async def _analyze_job(payload: dict[str, Any]) -> dict[str, Any]:
        result = await pipeline.analyze(
            str(payload.get("message") or ""),
            int(payload.get("acting_user_id") or config.workflow.default_acting_user_id),
            payload.get("project_id"),
        )
        return result.to_dict()

    jobs.register("analyze", _analyze_job)
    return Runtime(
        config=config,
        store=store,
        repository=repository,
        engine=engine,
        cascade=cascade,
        pipeline=pipeline,
        jobs=jobs,
    )
