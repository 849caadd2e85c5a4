"""Tests for the oracle client (skillbench.core.oracle)."""

import subprocess

import orjson
import pytest

from skillbench.core.config import OracleConfig
from skillbench.core.errors import (
    OracleExecutionError,
    OracleModelError,
    OracleNotAvailable,
    OracleOutputParseError,
    OracleRateLimited,
    OracleTimeout,
)
from skillbench.core.oracle import (
    CliOracle,
    OracleResponse,
    RetryingOracle,
    build_oracle,
    parse_structured_output,
)


def _completed(stdout="", stderr="", returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _patch_run(monkeypatch, result=None, exc=None):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs))
        if exc is not None:
            raise exc
        return result

    monkeypatch.setattr("skillbench.core.oracle.subprocess.run", fake_run)
    return calls


# ---------------------------------------------------------------------------
# parse_structured_output
# ---------------------------------------------------------------------------


def test_parse_direct_json():
    assert parse_structured_output('{"a": 1}') == {"a": 1}


def test_parse_fenced_block():
    text = 'Here you go:\n```json\n{"scores": {"total": 3}}\n```\nDone.'
    assert parse_structured_output(text) == {"scores": {"total": 3}}


def test_parse_brace_span():
    text = 'The result is {"ok": true} as requested'
    assert parse_structured_output(text) == {"ok": True}


def test_parse_failure_raises():
    with pytest.raises(OracleOutputParseError):
        parse_structured_output("no json here")


def test_parse_rejects_non_object():
    with pytest.raises(OracleOutputParseError):
        parse_structured_output("[1, 2, 3]")


# ---------------------------------------------------------------------------
# CliOracle
# ---------------------------------------------------------------------------


def test_cli_oracle_success(monkeypatch, tmp_path):
    monkeypatch.setenv("CLAUDECODE", "1")
    payload = orjson.dumps({"result": "hello", "duration_ms": 42}).decode()
    calls = _patch_run(monkeypatch, _completed(stdout=payload))

    response = CliOracle(OracleConfig()).generate(
        "prompt text", system_instructions="be nice", working_dir=tmp_path, model="opus"
    )

    assert response == OracleResponse(text="hello", duration_ms=42)
    cmd, kwargs = calls[0]
    assert cmd[0] == "claude"
    assert cmd[cmd.index("--model") + 1] == "opus"
    assert cmd[cmd.index("--system-prompt") + 1] == "be nice"
    assert kwargs["input"] == "prompt text"
    assert kwargs["cwd"] == tmp_path
    assert "CLAUDECODE" not in kwargs["env"]


def test_cli_oracle_omits_system_prompt(monkeypatch):
    calls = _patch_run(monkeypatch, _completed(stdout='{"result": "x"}'))
    CliOracle(OracleConfig()).generate("p")
    assert "--system-prompt" not in calls[0][0]


def test_cli_oracle_timeout(monkeypatch):
    _patch_run(monkeypatch, exc=subprocess.TimeoutExpired(cmd="claude", timeout=1))
    with pytest.raises(OracleTimeout):
        CliOracle(OracleConfig()).generate("p", timeout=1)


def test_cli_oracle_missing_binary(monkeypatch):
    _patch_run(monkeypatch, exc=FileNotFoundError("claude"))
    with pytest.raises(OracleNotAvailable):
        CliOracle(OracleConfig()).generate("p")


def test_cli_oracle_rate_limited(monkeypatch):
    _patch_run(monkeypatch, _completed(stderr="Error: 429 rate limit exceeded", returncode=1))
    with pytest.raises(OracleRateLimited):
        CliOracle(OracleConfig()).generate("p")


def test_cli_oracle_execution_error(monkeypatch):
    _patch_run(monkeypatch, _completed(stderr="segfault", returncode=2))
    with pytest.raises(OracleExecutionError) as exc_info:
        CliOracle(OracleConfig()).generate("p")
    assert exc_info.value.code == "EXECUTION_ERROR"
    assert "exit code 2" in exc_info.value.message


def test_cli_oracle_unparseable_stdout(monkeypatch):
    _patch_run(monkeypatch, _completed(stdout="not json"))
    with pytest.raises(OracleOutputParseError):
        CliOracle(OracleConfig()).generate("p")


def test_cli_oracle_model_error(monkeypatch):
    _patch_run(monkeypatch, _completed(stdout='{"is_error": true, "result": "overloaded"}'))
    with pytest.raises(OracleModelError):
        CliOracle(OracleConfig()).generate("p")


# ---------------------------------------------------------------------------
# RetryingOracle
# ---------------------------------------------------------------------------


class _Flaky:
    def __init__(self, errors):
        self.errors = list(errors)
        self.calls = 0

    def generate(self, prompt, **kwargs):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return OracleResponse(text="ok", duration_ms=1)


def test_retry_recovers():
    inner = _Flaky([OracleTimeout("slow")])
    sleeps = []
    oracle = RetryingOracle(inner, retries=2, sleep=sleeps.append)
    assert oracle.generate("p").text == "ok"
    assert inner.calls == 2
    assert sleeps == []


def test_retry_waits_on_rate_limit():
    inner = _Flaky([OracleRateLimited("429")])
    sleeps = []
    oracle = RetryingOracle(inner, retries=2, rate_limit_wait=7, sleep=sleeps.append)
    oracle.generate("p")
    assert sleeps == [7]


def test_retry_exhausted_raises_last_error():
    inner = _Flaky([OracleTimeout("1"), OracleTimeout("2"), OracleExecutionError("3")])
    with pytest.raises(OracleExecutionError):
        RetryingOracle(inner, retries=2, sleep=lambda s: None).generate("p")
    assert inner.calls == 3


def test_no_retries_raises_first_error():
    inner = _Flaky([OracleTimeout("1")])
    with pytest.raises(OracleTimeout):
        RetryingOracle(inner, retries=0, sleep=lambda s: None).generate("p")
    assert inner.calls == 1


def test_retry_does_not_retry_not_available():
    inner = _Flaky([OracleNotAvailable("missing")])
    with pytest.raises(OracleNotAvailable):
        RetryingOracle(inner, retries=2, sleep=lambda s: None).generate("p")
    assert inner.calls == 1


def test_build_oracle_wraps_cli_backend():
    oracle = build_oracle(OracleConfig(default_retry_count=4))
    assert isinstance(oracle, RetryingOracle)
    assert isinstance(oracle.inner, CliOracle)
    assert oracle.retries == 4
