"""Best-effort ``git add`` / ``git commit`` for checklist edits."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class GitClient:
    """Runs git in ``repo_dir``. Failures are logged and reported as ``False``."""

    def __init__(self, repo_dir: Path, *, executable: str = "git") -> None:
        self.repo_dir = repo_dir
        self.executable = executable

    def _run(self, *args: str) -> bool:
        try:
            completed = subprocess.run(  # noqa: S603
                [self.executable, *args],
                cwd=self.repo_dir,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as error:
            logger.warning("git %s failed to start: %s", args[0], error)
            return False
        if completed.returncode != 0:
            logger.warning(
                "git %s exited with code %s: %s",
                args[0],
                completed.returncode,
                (completed.stderr or completed.stdout).strip(),
            )
            return False
        return True

    def add(self, path: Path) -> bool:
        return self._run("add", "--", str(path))

    def commit(self, message: str) -> bool:
        return self._run("commit", "-m", message)
