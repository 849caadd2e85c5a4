"""Error taxonomy for skillbench.

State errors are caller-contract violations and are raised synchronously.
Oracle errors are raised by the oracle client and converted into failed
result records (or round failures) at the call boundary.
"""

ALREADY_RUNNING = "ALREADY_RUNNING"
NOT_RUNNING = "NOT_RUNNING"
NOT_PAUSED = "NOT_PAUSED"
NOT_FOUND = "NOT_FOUND"


class SkillbenchError(Exception):
    """Base class for all errors carrying a machine-readable code."""

    code = "UNKNOWN"

    def __init__(self, message: str = "", code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(self.describe())

    def describe(self) -> str:
        if self.message:
            return f"{self.code}: {self.message}"
        return self.code


class StateError(SkillbenchError):
    """A run or iteration was asked to do something its state forbids."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message, code=code)


class NotFoundError(StateError):
    def __init__(self, message: str = "") -> None:
        super().__init__(NOT_FOUND, message)


class CollaboratorError(SkillbenchError):
    """An analysis, recompose or test-run step failed mid-round."""


# ---------------------------------------------------------------------------
# Oracle failures
# ---------------------------------------------------------------------------


class OracleError(SkillbenchError):
    code = "ORACLE_ERROR"


class OracleTimeout(OracleError):
    code = "TIMEOUT"


class OracleRateLimited(OracleError):
    code = "RATE_LIMITED"


class OracleExecutionError(OracleError):
    code = "EXECUTION_ERROR"


class OracleModelError(OracleError):
    code = "MODEL_ERROR"


class OracleOutputParseError(OracleError):
    code = "OUTPUT_PARSE_ERROR"


class OracleNotAvailable(OracleError):
    code = "NOT_AVAILABLE"
