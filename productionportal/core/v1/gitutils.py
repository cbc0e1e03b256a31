import subprocess
from pathlib import Path

from .logger import get_logger

logger = get_logger(__name__)


def is_git_repo(repo_path: Path) -> bool:
    ck = subprocess.run(["git", "-C", str(repo_path), "rev-parse", "--is-inside-work-tree"], capture_output=True)
    return ck.returncode == 0


def has_origin(repo_path: Path) -> bool:
    remotes = subprocess.run(["git", "remote"], cwd=repo_path, capture_output=True, text=True)
    return "origin" in (remotes.stdout or "").split()


def git_push(repo_path: Path) -> bool:
    """Push HEAD to origin. Returns False (with a warning) on failure."""
    pr = subprocess.run(["git", "push", "origin", "HEAD"], cwd=repo_path, capture_output=True, text=True)
    if pr.returncode != 0:
        logger.warning("git push failed: %s", (pr.stderr or pr.stdout or "").strip())
        return False
    return True
