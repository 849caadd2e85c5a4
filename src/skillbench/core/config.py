"""Oracle configuration.

Read from cli_config.json at the workspace root and merged over defaults.
$SKILLBENCH_MODEL overrides the model for a single process.
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from skillbench.core.store import get_workspace_dir, read_json, write_json


@dataclass
class OracleConfig:
    backend: str = "cli"  # "cli" | "dspy"
    cli_path: str = "claude"
    default_model: str = "sonnet"
    default_timeout_seconds: float = 60
    score_timeout_seconds: float = 30
    collaborator_timeout_seconds: float = 60
    default_retry_count: int = 2
    rate_limit_wait_seconds: float = 30

    @classmethod
    def from_dict(cls, data: dict) -> "OracleConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)


def get_cli_config_path() -> Path:
    return get_workspace_dir() / "cli_config.json"


def load_oracle_config() -> OracleConfig:
    data = read_json(get_cli_config_path())
    config = OracleConfig.from_dict(data if isinstance(data, dict) else {})
    model = os.environ.get("SKILLBENCH_MODEL")
    if model:
        config.default_model = model
    return config


def save_oracle_config(config: OracleConfig) -> None:
    write_json(get_cli_config_path(), config.to_dict())


def run_settings(project_config: dict, oracle_config: OracleConfig) -> tuple[str, float]:
    """Return (model, timeout seconds) for a project's test runs."""
    overrides = project_config.get("cli_config") or {}
    model = overrides.get("model") or oracle_config.default_model
    timeout = overrides.get("timeout_seconds") or oracle_config.default_timeout_seconds
    return model, float(timeout)
