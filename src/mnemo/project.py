"""
mnemo project detection -- pick the scope a CLI invocation works in.

Order: explicit value, $MNEMO_PROJECT, git remote ``origin`` as
``owner/repo``, git top-level directory name, current directory name,
then ``"unknown"``.
"""

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger("mnemo.project")

_SSH_RE = re.compile(r"^[\w.-]+@[^:/]+:(.+)$")
_URL_RE = re.compile(r"^[a-z][a-z0-9+.-]*://[^/]+/(.+)$", re.IGNORECASE)


def parse_git_remote(url: str) -> str:
    """Reduce a remote URL to ``owner/repo``.

    Examples:
        git@github.com:owner/repo.git -> owner/repo
        https://github.com/owner/repo.git -> owner/repo
        ssh://git@gitlab.com/group/sub/repo -> sub/repo
    Unrecognized strings are returned without their ``.git`` suffix.
    """
    url = url.strip().rstrip("/").removesuffix(".git")
    ssh_match = _SSH_RE.match(url)
    if ssh_match:
        return ssh_match.group(1)
    url_match = _URL_RE.match(url)
    if url_match:
        parts = [p for p in url_match.group(1).split("/") if p]
        if len(parts) >= 2:
            return f"{parts[-2]}/{parts[-1]}"
        if parts:
            return parts[0]
    return url


def _git(*args: str, cwd: Optional[Path] = None) -> Optional[str]:
    env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd else None,
            env=env,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("git %s failed: %s", " ".join(args), e)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def detect_project(explicit: Optional[str] = None, cwd: Optional[Path] = None) -> str:
    """Return a non-empty project id for ``cwd`` (default: the current directory)."""
    if explicit and explicit.strip():
        return explicit.strip()

    env_project = os.environ.get("MNEMO_PROJECT", "").strip()
    if env_project:
        return env_project

    remote = _git("remote", "get-url", "origin", cwd=cwd)
    if remote:
        project = parse_git_remote(remote)
        if project:
            return project

    root = _git("rev-parse", "--show-toplevel", cwd=cwd)
    if root and Path(root).name:
        return Path(root).name

    try:
        name = Path(cwd or os.getcwd()).resolve().name
    except OSError:
        name = ""
    return name or "unknown"
