import tomllib
from pathlib import Path

import pytest

from workflow_creator import __version__
from workflow_creator.config import WorkflowConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "workflow.toml"
    config = WorkflowConfig.default()
    config.matching.acceptance_threshold = 0.75
    config.matching.max_fallbacks = 1
    config.matching.tier_order = ["small", "large"]
    config.execution.max_concurrency = 8
    config.execution.max_retries = 3
    config.execution.retry_backoff_seconds = 0.25
    config.execution.graceful_degradation = True
    config.aggregation.default_strategy = "consensus"
    config.state.runs_dir = "runs"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.matching.acceptance_threshold == 0.75
    assert loaded.matching.max_fallbacks == 1
    assert loaded.matching.tier_order == ["small", "large"]
    assert loaded.matching.adjacent_tier_bonus == 0.8
    assert loaded.execution.max_concurrency == 8
    assert loaded.execution.max_retries == 3
    assert loaded.execution.retry_backoff_seconds == 0.25
    assert loaded.execution.backoff_multiplier == 2.0
    assert loaded.execution.graceful_degradation is True
    assert loaded.aggregation.default_strategy == "consensus"
    assert loaded.state.runs_dir == "runs"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(WorkflowConfig.default())

    for section in ("[matching]", "[execution]", "[aggregation]", "[state]"):
        assert section in rendered
    assert "acceptance_threshold = 0.5" in rendered
    assert "max_retries = 2" in rendered
    assert "cancel_grace_seconds" in rendered
    assert 'default_strategy = "merge"' in rendered
    assert 'tier_order = ["fast", "standard", "high"]' in rendered


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == WorkflowConfig.default()


def test_invalid_config_values_are_rejected() -> None:
    with pytest.raises(ValueError, match="acceptance_threshold"):
        WorkflowConfig.from_dict({"matching": {"acceptance_threshold": 1.5}})
    with pytest.raises(ValueError, match="aggregation strategy"):
        WorkflowConfig.from_dict({"aggregation": {"default_strategy": "vote"}})
    with pytest.raises(ValueError, match="tier_order"):
        WorkflowConfig.from_dict({"matching": {"tier_order": []}})


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
