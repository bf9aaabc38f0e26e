"""
Co-change mining: how often two files change in the same commit.

Reads ``git log --name-only`` for the ingestion root.  A root that is not a
git work tree (or a missing ``git`` binary) simply yields no scores.
"""

from __future__ import annotations

import logging
import subprocess
from collections import Counter
from itertools import combinations
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

_COMMIT_MARK = "\x1e"
GIT_TIMEOUT = 30.0


def _run_git(args: list[str], cwd: str, timeout: float = GIT_TIMEOUT) -> tuple[bool, str]:
    """Run a git command in *cwd* and return ``(success, stdout)``."""
    try:
        result = subprocess.run(
            ["git", "-C", cwd, *args],
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning("git %s timed out after %.1fs in %s", args[0], timeout, cwd)
        return False, ""
    except OSError as e:
        return False, str(e)
    return result.returncode == 0, result.stdout


def is_git_work_tree(root: str, timeout: float = GIT_TIMEOUT) -> bool:
    ok, output = _run_git(["rev-parse", "--is-inside-work-tree"], root, timeout)
    return ok and output.strip() == "true"


def parse_git_log(output: str) -> list[list[str]]:
    """Split ``git log --name-only`` output (with commit marks) into file lists."""
    commits: list[list[str]] = []
    for chunk in output.split(_COMMIT_MARK):
        files = [line.strip() for line in chunk.splitlines() if line.strip()]
        if files:
            commits.append(files)
    return commits


def cochange_scores(
    commits: Iterable[list[str]],
    max_files_per_commit: int = 50,
    known_files: Optional[set[str]] = None,
) -> dict[tuple[str, str], float]:
    """
    Score each file pair as ``together / min(changes_a, changes_b)``.

    Commits touching more than *max_files_per_commit* (tracked) files are
    skipped: bulk renames and reformatting say nothing about coupling.
    Keys are sorted ``(a, b)`` tuples with ``a < b``.
    """
    changes: Counter = Counter()
    together: Counter = Counter()
    for files in commits:
        tracked = sorted({f for f in files if known_files is None or f in known_files})
        if len(tracked) < 1 or len(tracked) > max_files_per_commit:
            continue
        changes.update(tracked)
        together.update(combinations(tracked, 2))
    scores: dict[tuple[str, str], float] = {}
    for (a, b), count in together.items():
        denom = min(changes[a], changes[b])
        if denom:
            scores[(a, b)] = round(count / denom, 6)
    return scores


def mine_cochange(
    root: str,
    max_commits: int = 500,
    max_files_per_commit: int = 50,
    known_files: Optional[set[str]] = None,
    timeout: float = GIT_TIMEOUT,
) -> dict[tuple[str, str], float]:
    """
    Return co-change scores for files under *root* (paths relative to it).

    Parameters
    ----------
    root:
        Ingestion root; may be a subdirectory of the work tree.
    max_commits:
        How far back to look.
    max_files_per_commit:
        Commits touching more files than this are ignored.
    known_files:
        Restrict scores to these relative paths (the ingested files).
    timeout:
        Seconds each git call may take; a timeout counts as a git failure.
    """
    if not is_git_work_tree(root, timeout):
        logger.debug("%s is not a git work tree; skipping co-change mining", root)
        return {}
    ok, output = _run_git(
        ["log", "--name-only", "--relative", f"-n{int(max_commits)}",
         "--pretty=format:%x1e"],
        root,
        timeout,
    )
    if not ok:
        logger.warning("git log failed in %s; co-change scores unavailable", root)
        return {}
    scores = cochange_scores(parse_git_log(output), max_files_per_commit, known_files)
    logger.info("Co-change: %d file pairs from up to %d commits", len(scores), max_commits)
    return scores
