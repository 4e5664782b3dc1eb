import tomllib
from pathlib import Path

import pytest

from reqflow import __version__
from reqflow.config import ReqflowConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "reqflow.toml"
    config = ReqflowConfig.default()
    config.models.candidates = ["gpt-4o", "gpt-4o-mini"]
    config.models.max_retries = 3
    config.models.structured_output = False
    config.acquisition.timeout_seconds = 4.5
    config.extraction.max_functional = 5
    config.workflow.architect_due_days = 10
    config.server.port = 9001
    config.state.backend = "json"
    config.state.path = "state-dir"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.models.candidates == ["gpt-4o", "gpt-4o-mini"]
    assert loaded.models.max_retries == 3
    assert loaded.models.structured_output is False
    assert loaded.models.total_timeout_seconds == 60.0
    assert loaded.acquisition.timeout_seconds == 4.5
    assert loaded.acquisition.body_limit == 8000
    assert loaded.extraction.max_functional == 5
    assert loaded.extraction.max_non_functional == 7
    assert loaded.workflow.architect_due_days == 10
    assert loaded.server.port == 9001
    assert loaded.state.backend == "json"
    assert loaded.state.path == "state-dir"


def test_missing_config_file_gives_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("REQFLOW_MODELS", raising=False)
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.to_dict() == ReqflowConfig.default().to_dict()


def test_models_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REQFLOW_MODELS", "model-a, model-b,,")
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.models.candidates == ["model-a", "model-b"]


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ReqflowConfig.default())

    for section in ("models", "acquisition", "extraction", "workflow", "server", "state"):
        assert f"[{section}]" in rendered
    assert "total_timeout_seconds = 60" in rendered
    assert 'candidates = ["gpt-4o-mini", "gpt-4o", "gpt-4.1-mini"]' in rendered
    assert "structured_output = true" in rendered


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
