from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AggregationStrategy = Literal["merge", "consensus", "priority"]
AGGREGATION_STRATEGIES: tuple[str, ...] = ("merge", "consensus", "priority")


@dataclass(slots=True)
class MatchingConfig:
    acceptance_threshold: float = 0.5
    max_fallbacks: int = 2
    tier_order: list[str] = field(default_factory=lambda: ["fast", "standard", "high"])
    exact_tier_bonus: float = 1.0
    adjacent_tier_bonus: float = 0.8
    distant_tier_bonus: float = 0.5


@dataclass(slots=True)
class ExecutionConfig:
    max_concurrency: int = 4
    max_retries: int = 2
    retry_backoff_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    task_timeout_seconds: float = 300.0
    cancel_grace_seconds: float = 5.0
    graceful_degradation: bool = False


@dataclass(slots=True)
class AggregationConfig:
    default_strategy: AggregationStrategy = "merge"


@dataclass(slots=True)
class StateConfig:
    runs_dir: str = ".workflow/runs"


@dataclass(slots=True)
class WorkflowConfig:
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> WorkflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> WorkflowConfig:
        config = cls(
            matching=MatchingConfig(**data.get("matching", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            aggregation=AggregationConfig(**data.get("aggregation", {})),
            state=StateConfig(**data.get("state", {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        threshold = self.matching.acceptance_threshold
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"acceptance_threshold must be within [0, 1], got {threshold}")
        if self.aggregation.default_strategy not in AGGREGATION_STRATEGIES:
            raise ValueError(
                f"Unsupported aggregation strategy: {self.aggregation.default_strategy}"
            )
        if not self.matching.tier_order:
            raise ValueError("tier_order must list at least one tier.")

    def to_dict(self) -> dict:
        return {
            "matching": {
                "acceptance_threshold": self.matching.acceptance_threshold,
                "max_fallbacks": self.matching.max_fallbacks,
                "tier_order": list(self.matching.tier_order),
                "exact_tier_bonus": self.matching.exact_tier_bonus,
                "adjacent_tier_bonus": self.matching.adjacent_tier_bonus,
                "distant_tier_bonus": self.matching.distant_tier_bonus,
            },
            "execution": {
                "max_concurrency": self.execution.max_concurrency,
                "max_retries": self.execution.max_retries,
                "retry_backoff_seconds": self.execution.retry_backoff_seconds,
                "backoff_multiplier": self.execution.backoff_multiplier,
                "task_timeout_seconds": self.execution.task_timeout_seconds,
                "cancel_grace_seconds": self.execution.cancel_grace_seconds,
                "graceful_degradation": self.execution.graceful_degradation,
            },
            "aggregation": {
                "default_strategy": self.aggregation.default_strategy,
            },
            "state": {
                "runs_dir": self.state.runs_dir,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WorkflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["matching", "execution", "aggregation", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WorkflowConfig:
    if not path.exists():
        return WorkflowConfig.default()
    return WorkflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: WorkflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
