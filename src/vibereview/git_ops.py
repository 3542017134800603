from __future__ import annotations

from pathlib import Path
import logging

from vibereview.observability import log_event
from vibereview.shell import CommandError, run, run_process


LOGGER = logging.getLogger("vibereview.git_ops")


class WorkspaceGit:
    """Git operations on the local checkout being reviewed."""

    def __init__(self, cwd: Path) -> None:
        self.cwd = cwd

    def current_branch(self) -> str:
        branch = self._git("rev-parse", "--abbrev-ref", "HEAD").strip()
        if not branch or branch == "HEAD":
            raise RuntimeError("unable to resolve current git branch")
        return branch

    def head_sha(self) -> str:
        sha = self._git("rev-parse", "HEAD").strip().lower()
        if not sha:
            raise RuntimeError("unable to resolve current HEAD sha")
        return sha

    def status_lines(self) -> tuple[str, ...]:
        output = self._git("status", "--porcelain")
        return tuple(line for line in output.splitlines() if line.strip())

    def is_clean(self) -> bool:
        return not self.status_lines()

    def has_tracked_changes(self) -> bool:
        for line in self.status_lines():
            if line.lstrip().startswith("?? "):
                continue
            return True
        return False

    def commit_all(self, message: str) -> bool:
        """Stage everything and commit; return False when there was nothing to commit."""

        if self.is_clean():
            return False
        self._git("add", "-A")
        result = run_process(["git", "-C", str(self.cwd), "commit", "-m", message])
        if not result.ok:
            combined = f"{result.stdout}\n{result.stderr}"
            if "nothing to commit" in combined:
                return False
            raise CommandError(
                f"git commit failed: {result.stderr.strip() or result.stdout.strip()}",
                argv=result.argv,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        log_event(LOGGER, "git_commit", cwd=str(self.cwd), message=message)
        return True

    def push(self) -> None:
        log_event(LOGGER, "git_push", cwd=str(self.cwd))
        self._git("push", "-u", "origin", "HEAD")

    def _git(self, *args: str) -> str:
        return run(["git", "-C", str(self.cwd), *args])
