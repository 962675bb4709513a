"""
OVERWATCH GIT PUBLISHER
Commit and push updated files so the static dashboard picks them up

A missing repository or any git failure is logged and swallowed: the files
are already written locally, a failed push must not fail the job.
"""

import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 60


def commit_stamp(now: Optional[datetime] = None) -> str:
    """'YYYY-MM-DD HH:MM UTC'"""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return now.strftime("%Y-%m-%d %H:%M UTC")


class GitPublisher:
    """Thin wrapper over the git CLI for one working tree"""

    def __init__(self, repo_root: Union[str, Path], remote: str = "origin", branch: str = "main"):
        self.repo_root = Path(repo_root)
        self.remote = remote
        self.branch = branch

    def _git(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", *args],
            cwd=str(self.repo_root),
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT,
            check=True,
        )

    def is_repo(self) -> bool:
        try:
            result = self._git("rev-parse", "--is-inside-work-tree")
        except (OSError, subprocess.SubprocessError):
            return False
        return result.stdout.strip() == "true"

    def publish(self, files: List[str], message: str) -> bool:
        """Stage, commit and push `files`; True only when a push happened"""
        if not self.is_repo():
            logger.warning("[git] Not a git repo, skipping push")
            return False

        try:
            self._git("add", *files)
            staged = self._git("diff", "--cached", "--name-only").stdout.strip()
            if not staged:
                logger.info("[git] Nothing new to commit")
                return False
            logger.info(f'[git] Committing: "{message}"')
            self._git("commit", "-m", message)
            self._git("push", self.remote, self.branch)
        except subprocess.CalledProcessError as e:
            logger.error(f"[git] {' '.join(e.cmd[1:3])} failed: {(e.stderr or '').strip()}")
            logger.error("[git] Files were written but NOT pushed")
            return False
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"[git] {e}")
            logger.error("[git] Files were written but NOT pushed")
            return False

        logger.info("[git] Push successful")
        return True

