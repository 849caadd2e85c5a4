"""Skill recomposition from analysed advantage segments.

Merges the segments chosen from ``analysis_report.json`` and the user's
retention rules into a new skill prompt. When called from the iteration
loop, a tail with the score history, the round's strategy and any
stagnant dimensions steers the rewrite.
"""

import logging
import random
import threading
import uuid

from skillbench.core.analysis import analysis_report_path
from skillbench.core.config import OracleConfig
from skillbench.core.errors import CollaboratorError, SkillbenchError
from skillbench.core.models import COMPLETED, DIMENSIONS, FAILED
from skillbench.core.oracle import Oracle
from skillbench.core.ports import Callback
from skillbench.core.store import (
    find_project_dir,
    load_project_config,
    now_iso,
    read_json,
    save_skill,
    summary_path,
    write_json,
)

logger = logging.getLogger(__name__)

RECOMPOSE_PROMPT = """You are an experienced prompt engineer. Merge the advantage segments of several skills below, honouring the user's retention rules, into one better skill prompt.

## Source skills
{source_skills_info}

## Segments to keep
{selected_segments}

## Retention rules
{user_retention_rules}

## Guidelines
1. Keep every selected segment; do not drop or change its core meaning.
2. Combine the strongest constraints each skill brings for robustness, readability and the other dimensions.
3. Use one consistent output-format description and remove contradictions and redundancy.
4. Keep the instructions clear and concise; do not pile on requirements.
5. The result must be a complete prompt, ready to use, with no notes or commentary.

{meta_prompt_tail}## Output
Output only the full recomposed skill prompt text, with no explanation, heading or JSON wrapper."""

STRATEGY_GUIDANCE = {
    "SEGMENT_EXPLORE": (
        "Strategy for this round: SEGMENT_EXPLORE. Bring in advantage segments that earlier rounds did not use.",
        "Blend the new segments into the existing text rather than appending them.",
    ),
    "CROSS_POLLINATE": (
        "Strategy for this round: CROSS_POLLINATE. Reach across the original skills and take the best structure from several sources.",
        "Re-read the source segments without holding on to last round's prompt structure.",
    ),
}


def detect_stagnant_dimensions(score_history: list[dict]) -> list[str]:
    """Dimensions whose score did not improve over the last two rounds."""
    if len(score_history) < 2:
        return []
    previous, latest = (h.get("score_breakdown") or {} for h in score_history[-2:])
    return [
        dim
        for dim in DIMENSIONS
        if previous.get(dim) is not None
        and latest.get(dim) is not None
        and latest[dim] <= previous[dim]
    ]


def build_meta_prompt_tail(
    score_history: list[dict] | None,
    strategy: str | None,
    focus_dimension: str | None = None,
) -> str:
    if not score_history:
        return ""

    lines = ["## Score history"]
    for h in score_history:
        delta = ""
        if h.get("score_delta") is not None:
            delta = f" ({h['score_delta']:+.1f})"
        label = f" ({h['strategy']})" if h.get("strategy") else ""
        breakdown = " | ".join(
            f"{dim} {value}" for dim, value in (h.get("score_breakdown") or {}).items()
        )
        lines.append(
            f"Round {h['round']}{label}: total {float(h['avg_score']):.1f}{delta}  {breakdown}"
        )
    lines.append("")

    if strategy == "DIMENSION_FOCUS" and focus_dimension:
        lines.append(
            f"Strategy for this round: DIMENSION_FOCUS. Improve the {focus_dimension} dimension first."
        )
        lines.append(
            "Sharpen the instructions or constraints behind that dimension without trading away the others."
        )
    elif strategy in STRATEGY_GUIDANCE:
        lines.extend(STRATEGY_GUIDANCE[strategy])

    stagnant = detect_stagnant_dimensions(score_history)
    if stagnant:
        lines.append(f"Stagnant dimensions (no gain over 2 rounds): {', '.join(stagnant)}")
        lines.append("Target these dimensions in this round.")

    lines.append("")
    return "\n".join(lines)


def select_segments(
    segments: list[dict],
    selected_ids: list[str] | None,
    strategy: str | None = None,
    rng: random.Random | None = None,
) -> list[dict]:
    """Pick the segments to merge.

    Uses the user's selection if any, otherwise every segment. RANDOM_SUBSET
    then keeps a random half (at least one), preserving report order.
    """
    if selected_ids:
        chosen = [s for s in segments if s.get("id") in selected_ids]
    else:
        chosen = list(segments)

    if strategy == "RANDOM_SUBSET" and len(chosen) > 1:
        rng = rng or random.Random()
        k = max(1, (len(chosen) + 1) // 2)
        keep = set(rng.sample(range(len(chosen)), k))
        chosen = [s for i, s in enumerate(chosen) if i in keep]
    return chosen


def build_recompose_prompt(
    project_dir,
    params: dict,
    rng: random.Random | None = None,
) -> tuple[str, list[dict]]:
    """Return the prompt and the segments it embeds.

    Raises:
        CollaboratorError: NO_ANALYSIS if the project has no analysis report.
    """
    report = read_json(analysis_report_path(project_dir))
    if not isinstance(report, dict):
        raise CollaboratorError("Analysis report not found. Run analysis first.", code="NO_ANALYSIS")

    summary = read_json(summary_path(project_dir)) or {}
    scores = {r["skill_id"]: r.get("avg_score", 0) for r in summary.get("ranking", [])}
    strategy = params.get("strategy") or "GREEDY"
    selected = select_segments(
        report.get("advantage_segments") or [],
        params.get("selected_segment_ids"),
        strategy,
        rng,
    )

    seen = set()
    source_lines = []
    for seg in selected:
        if seg.get("skill_id") in seen:
            continue
        seen.add(seg.get("skill_id"))
        source_lines.append(f"- {seg.get('skill_name', '')} (avg score {scores.get(seg.get('skill_id'), 0)})")

    segments_text = "\n\n".join(
        f"Segment {i} (from {s.get('skill_name', '')}, type: {s.get('type', '')}):\n{s.get('content', '')}"
        for i, s in enumerate(selected, start=1)
    )

    tail = build_meta_prompt_tail(
        params.get("score_history"), strategy, params.get("focus_dimension")
    )
    prompt = RECOMPOSE_PROMPT.format(
        source_skills_info="\n".join(source_lines) or "No source information",
        selected_segments=segments_text or "No segments selected",
        user_retention_rules=params.get("retention_rules") or "None",
        meta_prompt_tail=tail + "\n" if tail else "",
    )
    return prompt, selected


class OracleRecomposer:
    """Recompose collaborator that asks the oracle for the new skill text."""

    def __init__(
        self,
        oracle: Oracle,
        oracle_config: OracleConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.oracle = oracle
        self.oracle_config = oracle_config or OracleConfig()
        self.rng = rng or random.Random()

    def recompose(self, project_dir, params: dict) -> dict:
        """Produce recomposed text synchronously; returns the preview."""
        prompt, selected = build_recompose_prompt(project_dir, params, self.rng)
        response = self.oracle.generate(
            prompt,
            working_dir=project_dir / ".claude",
            timeout=self.oracle_config.collaborator_timeout_seconds,
            model=self.oracle_config.default_model,
        )
        return {
            "content": response.text,
            "segment_count": len(selected),
            "source_skill_count": len({s.get("skill_id") for s in selected}),
        }

    def execute_recompose(
        self, project_id: str, params: dict, on_complete: Callback | None = None
    ) -> dict:
        """Start recomposition in the background and return its task id.

        Raises:
            NotFoundError: If the project does not exist.
        """
        project_dir = find_project_dir(project_id)
        task_id = str(uuid.uuid4())
        strategy = params.get("strategy") or "GREEDY"

        def _run() -> None:
            try:
                preview = self.recompose(project_dir, params)
            except (SkillbenchError, OSError) as e:
                detail = e.describe() if isinstance(e, SkillbenchError) else str(e)
                logger.error(
                    "recompose failed project=%s strategy=%s: %s", project_id, strategy, detail
                )
                event = {"project_id": project_id, "task_id": task_id, "status": FAILED, "error": detail}
            else:
                logger.info(
                    "recompose completed project=%s strategy=%s segments=%d",
                    project_id,
                    strategy,
                    preview["segment_count"],
                )
                event = {
                    "project_id": project_id,
                    "task_id": task_id,
                    "status": COMPLETED,
                    "preview": preview,
                }
            if on_complete:
                on_complete(event)

        threading.Thread(target=_run, name=f"skillbench-recompose-{task_id[:8]}", daemon=True).start()
        return {"task_id": task_id}

    def save_recomposed_skill(self, project_id: str, content: str, meta: dict) -> dict:
        """Store recomposed text as a new skill asset with provenance.

        Raises:
            SkillbenchError: INVALID_PARAMS if content or required meta is missing.
            NotFoundError: If the project does not exist.
        """
        if not content:
            raise SkillbenchError("content is required", code="INVALID_PARAMS")
        if not all(meta.get(key) for key in ("name", "purpose", "provider")):
            raise SkillbenchError(
                "meta.name, meta.purpose and meta.provider are required", code="INVALID_PARAMS"
            )

        project_dir = find_project_dir(project_id)
        config = load_project_config(project_dir)
        report = read_json(analysis_report_path(project_dir)) or {}

        saved = save_skill(
            content,
            {
                "name": meta["name"],
                "purpose": meta["purpose"],
                "provider": meta["provider"],
                "description": meta.get("description", ""),
                "source": "recomposed",
            },
        )

        versions = {s["ref_id"]: s.get("version", "v1") for s in config.get("skills", [])}
        sources: dict[str, dict] = {}
        for seg in report.get("advantage_segments") or []:
            entry = sources.setdefault(
                seg.get("skill_id"),
                {
                    "skill_id": seg.get("skill_id"),
                    "skill_name": seg.get("skill_name", ""),
                    "skill_version": versions.get(seg.get("skill_id"), "v1"),
                    "contributed_segments": [],
                },
            )
            entry["contributed_segments"].append(seg.get("id"))

        write_json(
            saved["path"] / "provenance.json",
            {
                "type": "recomposed",
                "source_project_id": project_id,
                "source_project_name": config.get("name", ""),
                "user_retention_rules": meta.get("retention_rules", ""),
                "source_skills": list(sources.values()),
                "created_at": now_iso(),
            },
        )
        logger.info("recomposed skill saved project=%s skill=%s", project_id, saved["skill_id"])
        return {"skill_id": saved["skill_id"], "version": saved["version"]}
