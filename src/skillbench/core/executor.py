"""Task executor: runs one skill x case unit and scores the output.

Execution and scoring are judged independently. An execution failure
produces a failed record with no score; a scoring failure leaves a
completed record with ``scores: null``.
"""

import logging

from skillbench.core.errors import OracleError
from skillbench.core.models import COMPLETED, FAILED, Case, ResultRecord, Score, Task
from skillbench.core.oracle import Oracle, parse_structured_output
from skillbench.core.store import now_iso, write_json

logger = logging.getLogger(__name__)

SCORE_PROMPT_TEMPLATE = """You are an expert code reviewer. Score the generated result below objectively against the rubric.

## Test input
{test_input}

## Expected output description
{expected_output}

## Actual output
{actual_output}

## Rubric (100 points total)
Score each of the six dimensions:

1. functional_correctness (0-30)
   - Does the code implement what the test input asks for?
   - Is the core logic correct?
   - Does it meet the key requirements of the expected output?

2. robustness (0-20)
   - Are error cases caught and handled?
   - Are edge cases (empty, huge, invalid input) covered?

3. readability (0-15)
   - Are names meaningful and is the structure easy to follow?
   - Are comments present where needed (not excessive)?

4. conciseness (0-15)
   - Is there redundant or duplicated logic?

5. complexity_control (0-10)
   - Is unnecessary nesting avoided? Are functions split sensibly?

6. format_compliance (0-10)
   - Does it follow the language's usual conventions (PEP 8, ESLint, ...)?

## Requirements
1. Output ONLY JSON, with no text, explanation or Markdown fences around it.
2. The total field must equal the sum of the six dimensions.

## Response format
{{
  "scores": {{
    "functional_correctness": <integer 0-30>,
    "robustness": <integer 0-20>,
    "readability": <integer 0-15>,
    "conciseness": <integer 0-15>,
    "complexity_control": <integer 0-10>,
    "format_compliance": <integer 0-10>,
    "total": <sum of the six>
  }},
  "reasoning": "<one short justification per dimension, as name(score/max): reason; ...>"
}}"""


def build_score_prompt(case: Case, actual_output: str) -> str:
    return SCORE_PROMPT_TEMPLATE.format(
        test_input=case.input,
        expected_output=case.expected_output,
        actual_output=actual_output,
    )


class TaskExecutor:
    """Executes tasks against an oracle under one run's settings."""

    def __init__(
        self,
        oracle: Oracle,
        *,
        model: str,
        timeout: float,
        score_timeout: float = 30,
    ) -> None:
        self.oracle = oracle
        self.model = model
        self.timeout = timeout
        self.score_timeout = score_timeout

    def score(self, task: Task, actual_output: str) -> Score:
        """Ask the oracle to grade an output against the rubric.

        Raises:
            OracleError: If the call fails or the response has no JSON.
            ValueError: If the JSON lacks a usable score.
        """
        response = self.oracle.generate(
            build_score_prompt(task.case, actual_output),
            working_dir=task.working_dir,
            timeout=self.score_timeout,
            model=self.model,
        )
        return Score.from_response(parse_structured_output(response.text))

    def execute(self, task: Task) -> ResultRecord:
        """Run one task, persist its result record and return it.

        Oracle failures never escape; they become a failed record.
        """
        skill_id, case_id = task.key
        task.working_dir.mkdir(parents=True, exist_ok=True)
        logger.info("task start skill=%s case=%s model=%s", skill_id, case_id, self.model)

        record = ResultRecord(
            case_id=case_id,
            skill_id=skill_id,
            status=COMPLETED,
            skill_version=task.skill.version,
            baseline_id=task.baseline.ref_id,
            baseline_version=task.baseline.version,
            executed_at=now_iso(),
            input=task.case.input,
            expected_output=task.case.expected_output,
            model_version=self.model,
        )

        try:
            response = self.oracle.generate(
                task.case.input,
                system_instructions=task.skill_content,
                working_dir=task.working_dir,
                timeout=self.timeout,
                model=self.model,
            )
            record.actual_output = response.text
            record.duration_ms = response.duration_ms
        except OracleError as e:
            record.status = FAILED
            record.error = e.describe()
            logger.error(
                "task execution failed skill=%s case=%s code=%s: %s",
                skill_id,
                case_id,
                e.code,
                e.message,
            )

        if record.status == COMPLETED:
            try:
                record.score = self.score(task, record.actual_output)
                record.score_evaluated_at = now_iso()
                logger.info(
                    "task scored skill=%s case=%s total=%s",
                    skill_id,
                    case_id,
                    record.score.total,
                )
            except (OracleError, ValueError) as e:
                code = getattr(e, "code", "INVALID_SCORE")
                logger.warning(
                    "scoring failed (non-fatal) skill=%s case=%s code=%s: %s",
                    skill_id,
                    case_id,
                    code,
                    e,
                )

        write_json(task.result_path, record.to_dict())
        return record
