"""Version string logged at startup and printed by ``lockinbot --version``.

``LOCKINBOT_VERSION`` wins when set (container builds pass it in). Otherwise
the installed package version is used, with the short git commit appended
when the bot runs from a checkout.
"""
from __future__ import annotations

import os
import subprocess
from importlib import metadata
from pathlib import Path

REPO_DIR = Path(__file__).resolve().parent.parent


def _commit_from_head(repo_dir: Path) -> str | None:
    head = repo_dir / ".git" / "HEAD"
    if not head.is_file():
        return None
    ref = head.read_text().strip()
    if not ref.startswith("ref:"):
        return ref[:7]
    target = repo_dir / ".git" / ref.split(" ", 1)[1]
    return target.read_text().strip()[:7] if target.is_file() else None


def git_commit(repo_dir: Path = REPO_DIR) -> str | None:
    """Short hash of the checked-out commit, or None outside a checkout."""
    try:
        out = subprocess.check_output(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=repo_dir,
            stderr=subprocess.DEVNULL,
        )
    except (OSError, subprocess.CalledProcessError):
        return _commit_from_head(repo_dir)
    return out.decode().strip() or None


def get_version() -> str:
    override = os.getenv("LOCKINBOT_VERSION")
    if override:
        return override
    try:
        release = metadata.version("lockinbot")
    except metadata.PackageNotFoundError:
        release = "0+unknown"
    commit = git_commit()
    return f"{release}+g{commit}" if commit else release
