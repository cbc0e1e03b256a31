from __future__ import annotations
import subprocess
from pathlib import Path
import yaml

from .config import (
    PP_TOOL_VERSION,
    DATAREPO_CONFIG_FILENAME,
    DATAREPO_DEFAULTS,
    load_config,
    save_config,
)
from .gitutils import has_origin
from .logger import get_logger

logger = get_logger(__name__)

TABLES_DIRNAME = "tables"
DOCUMENTS_DIRNAME = "documents"


def init_local_repo(repo_path: Path) -> Path:
    repo_path = repo_path.expanduser().resolve()
    repo_path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=repo_path, stdout=subprocess.DEVNULL)
    return repo_path


def write_datarepo_config(repo_path: Path, *, timezone: str | None = None) -> Path:
    datarepo_config = {
        "productionportal_version": PP_TOOL_VERSION,
        **DATAREPO_DEFAULTS,
    }
    if timezone:
        datarepo_config["timezone"] = timezone
    config_file = repo_path / DATAREPO_CONFIG_FILENAME
    with open(config_file, "w") as f:
        f.write(
            "# This file is a generated scaffold by ProductionPortal.\n"
            "# It is safe to edit and customize for your repository.\n"
        )
        yaml.safe_dump(datarepo_config, f, sort_keys=False)
    # Table files and uploaded knowledge-base documents live under these
    (repo_path / TABLES_DIRNAME).mkdir(parents=True, exist_ok=True)
    (repo_path / DOCUMENTS_DIRNAME).mkdir(parents=True, exist_ok=True)
    keep = repo_path / TABLES_DIRNAME / ".gitkeep"
    if not keep.exists():
        keep.write_text("")
    return config_file


def set_default_datarepo(repo_path: Path) -> None:
    cfg = load_config()
    cfg["default_datarepo"] = str(repo_path)
    save_config(cfg)


def initial_commit_and_optional_push(repo_path: Path, has_remote: bool) -> None:
    subprocess.run(["git", "add", DATAREPO_CONFIG_FILENAME, TABLES_DIRNAME], cwd=repo_path)
    subprocess.run(["git", "commit", "-m", "Initial ProductionPortal datarepo config"], cwd=repo_path, stdout=subprocess.DEVNULL)
    if has_remote and has_origin(repo_path):
        subprocess.run(["git", "branch", "-M", "main"], cwd=repo_path)
        pr = subprocess.run(["git", "push", "-u", "origin", "main"], cwd=repo_path)
        if pr.returncode != 0:
            logger.warning("Could not push to remote 'origin'.")


def create_or_clone(target_path: Path, remote_url: str | None) -> Path:
    if remote_url:
        subprocess.run(["git", "clone", remote_url, str(target_path)], check=True)
        return target_path.expanduser().resolve()
    return init_local_repo(target_path)
