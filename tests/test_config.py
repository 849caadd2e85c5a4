"""Tests for configuration and the file store."""

import orjson
import pytest

from skillbench.core.config import (
    OracleConfig,
    get_cli_config_path,
    load_oracle_config,
    run_settings,
    save_oracle_config,
)
from skillbench.core.errors import NotFoundError
from skillbench.core.store import (
    find_project_dir,
    get_workspace_dir,
    read_json,
    update_project_config,
    write_json,
)

from conftest import make_project


def test_workspace_dir_from_env(workspace):
    assert get_workspace_dir() == workspace
    assert workspace.is_dir()


def test_defaults_without_config_file(workspace):
    config = load_oracle_config()
    assert config == OracleConfig()
    assert config.default_model == "sonnet"
    assert config.default_retry_count == 2


def test_config_file_merges_over_defaults(workspace):
    get_cli_config_path().write_bytes(
        orjson.dumps({"default_model": "opus", "default_timeout_seconds": 120, "unknown": 1})
    )
    config = load_oracle_config()
    assert config.default_model == "opus"
    assert config.default_timeout_seconds == 120
    assert config.cli_path == "claude"


def test_model_env_override(workspace, monkeypatch):
    save_oracle_config(OracleConfig(default_model="opus"))
    monkeypatch.setenv("SKILLBENCH_MODEL", "haiku")
    assert load_oracle_config().default_model == "haiku"


def test_run_settings_project_override():
    oracle_config = OracleConfig(default_model="sonnet", default_timeout_seconds=60)
    assert run_settings({}, oracle_config) == ("sonnet", 60.0)
    project = {"cli_config": {"model": "opus", "timeout_seconds": 90}}
    assert run_settings(project, oracle_config) == ("opus", 90.0)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def test_write_json_replaces_whole_document(tmp_path):
    path = tmp_path / "nested" / "doc.json"
    write_json(path, {"a": 1, "b": 2})
    write_json(path, {"a": 3})
    assert read_json(path) == {"a": 3}
    assert [p.name for p in path.parent.iterdir()] == ["doc.json"]


def test_read_json_missing_or_invalid(tmp_path):
    assert read_json(tmp_path / "missing.json") is None
    bad = tmp_path / "bad.json"
    bad.write_text("{oops")
    assert read_json(bad) is None


def test_find_project_dir(workspace):
    project_id, _ = make_project([("alpha", "alpha text")])
    project_dir = find_project_dir(project_id)
    assert project_dir.name == project_id

    update_project_config(project_dir, status="paused")
    assert read_json(project_dir / "config.json")["status"] == "paused"

    with pytest.raises(NotFoundError):
        find_project_dir("nope")
