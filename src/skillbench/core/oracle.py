"""Oracle client: the external text-generation/scoring service.

Every call (task execution, rubric scoring, analysis, recomposition) goes
through the same ``generate`` contract and either returns text plus a
duration or raises one of the typed OracleError subclasses.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

import orjson

from skillbench.core.config import OracleConfig
from skillbench.core.errors import (
    OracleError,
    OracleExecutionError,
    OracleModelError,
    OracleNotAvailable,
    OracleOutputParseError,
    OracleRateLimited,
    OracleTimeout,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_PATTERN = re.compile(r"rate.?limit|429", re.IGNORECASE)


@dataclass
class OracleResponse:
    text: str
    duration_ms: int = 0


class Oracle(Protocol):
    def generate(
        self,
        prompt: str,
        *,
        system_instructions: str | None = None,
        working_dir: Path | None = None,
        timeout: float | None = None,
        model: str | None = None,
    ) -> OracleResponse: ...


def parse_structured_output(text: str) -> dict:
    """Extract a JSON object from oracle output.

    Tries a direct parse, then a fenced code block, then the span from the
    first ``{`` to the last ``}``.

    Raises:
        OracleOutputParseError: If none of the strategies yields an object.
    """
    candidates = [text]
    match = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if match:
        candidates.append(match.group(1).strip())
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            parsed = orjson.loads(candidate)
        except orjson.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise OracleOutputParseError(f"no JSON object in output ({len(text)} chars)")


class CliOracle:
    """Runs the model CLI in print mode, one process per call."""

    def __init__(self, config: OracleConfig) -> None:
        self.config = config

    def _command(self, model: str, system_instructions: str | None) -> list[str]:
        cmd = [
            self.config.cli_path,
            "--print",
            "--output-format",
            "json",
            "--model",
            model,
            # Non-interactive runs cannot answer permission prompts
            "--dangerously-skip-permissions",
        ]
        if system_instructions:
            cmd.extend(["--system-prompt", system_instructions])
        return cmd

    def generate(
        self,
        prompt: str,
        *,
        system_instructions: str | None = None,
        working_dir: Path | None = None,
        timeout: float | None = None,
        model: str | None = None,
    ) -> OracleResponse:
        model = model or self.config.default_model
        timeout = timeout or self.config.default_timeout_seconds
        cwd = working_dir or Path.cwd()

        env = os.environ.copy()
        # A nested CLI refuses to start when it sees its parent's marker
        env.pop("CLAUDECODE", None)

        logger.debug(
            "oracle call start model=%s prompt_len=%d cwd=%s", model, len(prompt), cwd
        )
        start = time.monotonic()
        try:
            result = subprocess.run(
                self._command(model, system_instructions),
                input=prompt,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=cwd,
                env=env,
            )
        except subprocess.TimeoutExpired:
            logger.warning("oracle call timed out model=%s timeout=%ss", model, timeout)
            raise OracleTimeout(f"no response within {timeout}s")
        except FileNotFoundError:
            logger.error("oracle CLI not found: %s", self.config.cli_path)
            raise OracleNotAvailable(f"CLI not found: {self.config.cli_path}")
        except OSError as e:
            raise OracleExecutionError(str(e)) from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if RATE_LIMIT_PATTERN.search(stderr):
                logger.warning("oracle rate-limited model=%s", model)
                raise OracleRateLimited(stderr[:300])
            logger.error(
                "oracle execution error model=%s exit=%d stderr=%s",
                model,
                result.returncode,
                stderr[:300],
            )
            raise OracleExecutionError(
                f"exit code {result.returncode}: {stderr[:300]}"
            )

        try:
            payload = orjson.loads(result.stdout)
        except orjson.JSONDecodeError:
            logger.error("oracle output not JSON: %s", result.stdout[:200])
            raise OracleOutputParseError(result.stdout[:200])
        if not isinstance(payload, dict):
            raise OracleOutputParseError(result.stdout[:200])

        if payload.get("is_error"):
            raise OracleModelError(str(payload.get("result", ""))[:300])

        elapsed_ms = int((time.monotonic() - start) * 1000)
        return OracleResponse(
            text=payload.get("result") or "",
            duration_ms=int(payload.get("duration_ms") or elapsed_ms),
        )


class DspyOracle:
    """Oracle backed by a dspy language model instead of the CLI."""

    def __init__(self, config: OracleConfig) -> None:
        import dspy

        self.config = config
        self._dspy = dspy
        self._models: dict[str, object] = {}

    def _lm(self, model: str):
        if model not in self._models:
            self._models[model] = self._dspy.LM(model)
        return self._models[model]

    def generate(
        self,
        prompt: str,
        *,
        system_instructions: str | None = None,
        working_dir: Path | None = None,
        timeout: float | None = None,
        model: str | None = None,
    ) -> OracleResponse:
        model = model or self.config.default_model
        messages = []
        if system_instructions:
            messages.append({"role": "system", "content": system_instructions})
        messages.append({"role": "user", "content": prompt})

        start = time.monotonic()
        try:
            outputs = self._lm(model)(
                messages=messages,
                timeout=timeout or self.config.default_timeout_seconds,
            )
        except Exception as e:
            message = str(e)
            if "timeout" in message.lower():
                raise OracleTimeout(message[:300]) from e
            if RATE_LIMIT_PATTERN.search(message):
                raise OracleRateLimited(message[:300]) from e
            raise OracleExecutionError(message[:300]) from e

        if not outputs:
            raise OracleModelError("model returned no output")
        text = outputs[0]
        if isinstance(text, dict):
            text = text.get("text", "")
        return OracleResponse(
            text=str(text), duration_ms=int((time.monotonic() - start) * 1000)
        )


class RetryingOracle:
    """Retries failed calls; rate-limited calls wait before the next attempt."""

    def __init__(
        self,
        inner: Oracle,
        retries: int = 2,
        rate_limit_wait: float = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.inner = inner
        self.retries = retries
        self.rate_limit_wait = rate_limit_wait
        self._sleep = sleep

    def generate(self, prompt: str, **kwargs) -> OracleResponse:
        attempts = max(self.retries, 0) + 1
        for attempt in range(attempts):
            try:
                return self.inner.generate(prompt, **kwargs)
            except OracleNotAvailable:
                raise
            except OracleError as e:
                if attempt + 1 >= attempts:
                    logger.error("oracle retries exhausted: %s", e.describe())
                    raise
                if isinstance(e, OracleRateLimited):
                    logger.warning(
                        "rate-limited, waiting %ss before retry %d/%d",
                        self.rate_limit_wait,
                        attempt + 1,
                        self.retries,
                    )
                    self._sleep(self.rate_limit_wait)
                else:
                    logger.warning(
                        "oracle call failed (%s), retry %d/%d",
                        e.code,
                        attempt + 1,
                        self.retries,
                    )


def build_oracle(config: OracleConfig) -> Oracle:
    """Construct the configured oracle backend wrapped in retries."""
    if config.backend == "dspy":
        inner: Oracle = DspyOracle(config)
    else:
        inner = CliOracle(config)
    return RetryingOracle(
        inner,
        retries=config.default_retry_count,
        rate_limit_wait=config.rate_limit_wait_seconds,
    )
