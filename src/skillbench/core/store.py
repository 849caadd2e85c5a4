"""File-backed storage for skillbench.

Storage layout (all under $SKILLBENCH_HOME, default ~/.skillbench/):
  cli_config.json                     - oracle configuration
  skills/<skill_id>/content.txt       - skill asset text
  skills/<skill_id>/meta.json         - skill asset metadata
  projects/<dir>/config.json          - project config, run status, progress
  projects/<dir>/results/<skill_id>/<case_id>.json - one result per task
  projects/<dir>/results/summary.json - ranked summary of the last run
  projects/<dir>/iterations/          - round snapshots and final reports

Every document is read and replaced whole. The store has no locking of
its own; writers serialize per project.
"""

import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path

import orjson

from skillbench.core.errors import NotFoundError


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Workspace paths
# ---------------------------------------------------------------------------


def get_workspace_dir() -> Path:
    """Return the workspace root, creating it if needed."""
    override = os.environ.get("SKILLBENCH_HOME")
    root = Path(override) if override else Path.home() / ".skillbench"
    root.mkdir(parents=True, exist_ok=True)
    return root


def get_projects_dir() -> Path:
    projects_dir = get_workspace_dir() / "projects"
    projects_dir.mkdir(parents=True, exist_ok=True)
    return projects_dir


def get_skills_dir() -> Path:
    skills_dir = get_workspace_dir() / "skills"
    skills_dir.mkdir(parents=True, exist_ok=True)
    return skills_dir


# ---------------------------------------------------------------------------
# Document I/O
# ---------------------------------------------------------------------------


def read_json(path: Path) -> dict | list | None:
    """Read a JSON document, returning None if it is missing or unreadable."""
    try:
        return orjson.loads(path.read_bytes())
    except FileNotFoundError:
        return None
    except orjson.JSONDecodeError:
        return None


def write_json(path: Path, data) -> None:
    """Replace a JSON document atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    tmp.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2))
    os.replace(tmp, path)


def read_text(path: Path) -> str:
    try:
        return path.read_text()
    except FileNotFoundError:
        return ""


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def list_project_dirs() -> list[Path]:
    return sorted(d for d in get_projects_dir().iterdir() if d.is_dir())


def find_project_dir(project_id: str) -> Path:
    """Locate a project directory by the id stored in its config.json.

    Raises:
        NotFoundError: If no project carries that id.
    """
    for project_dir in list_project_dirs():
        config = read_json(project_dir / "config.json")
        if isinstance(config, dict) and config.get("id") == project_id:
            return project_dir
    raise NotFoundError(f"Project not found: {project_id}")


def load_project_config(project_dir: Path) -> dict:
    config = read_json(project_dir / "config.json")
    if not isinstance(config, dict):
        raise NotFoundError(f"Project config missing: {project_dir}")
    return config


def save_project_config(project_dir: Path, config: dict) -> None:
    config["updated_at"] = now_iso()
    write_json(project_dir / "config.json", config)


def update_project_config(project_dir: Path, **fields) -> dict:
    """Read-modify-write the project config with the given top-level fields."""
    config = load_project_config(project_dir)
    config.update(fields)
    save_project_config(project_dir, config)
    return config


def result_path(project_dir: Path, skill_id: str, case_id: str) -> Path:
    return project_dir / "results" / skill_id / f"{case_id}.json"


def summary_path(project_dir: Path) -> Path:
    return project_dir / "results" / "summary.json"


def iterations_dir(project_dir: Path) -> Path:
    return project_dir / "iterations"


def skill_working_dir(project_dir: Path, skill_id: str) -> Path:
    """Isolated working directory for one skill's oracle sessions."""
    return project_dir / ".claude" / f"skill_{skill_id[:8]}"


# ---------------------------------------------------------------------------
# Skill assets
# ---------------------------------------------------------------------------


def save_skill(content: str, meta: dict) -> dict:
    """Store a new skill asset and return its id, version and path."""
    skill_id = str(uuid.uuid4())
    skill_dir = get_skills_dir() / skill_id
    skill_dir.mkdir(parents=True, exist_ok=True)

    (skill_dir / "content.txt").write_text(content)
    record = {
        "id": skill_id,
        "version": meta.get("version", "v1"),
        "created_at": now_iso(),
        **{k: v for k, v in meta.items() if k not in ("id", "version")},
    }
    write_json(skill_dir / "meta.json", record)
    return {"skill_id": skill_id, "version": record["version"], "path": skill_dir}


def find_skill_dir(skill_id: str) -> Path:
    skill_dir = get_skills_dir() / skill_id
    if not (skill_dir / "content.txt").exists():
        raise NotFoundError(f"Skill not found: {skill_id}")
    return skill_dir


def load_skill_meta(skill_id: str) -> dict:
    meta = read_json(find_skill_dir(skill_id) / "meta.json")
    return meta if isinstance(meta, dict) else {}


def copy_skill_into_project(skill_id: str, project_dir: Path, local_dir: str) -> str:
    """Copy a skill asset into the project's skills/ folder.

    Returns the project-relative local path.
    """
    source = find_skill_dir(skill_id)
    dest = project_dir / "skills" / local_dir
    if dest.exists():
        shutil.rmtree(dest)
    shutil.copytree(source, dest)
    return f"skills/{local_dir}"
