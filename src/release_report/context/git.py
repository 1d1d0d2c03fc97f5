"""Git log reader for release windows.

Runs ``git log <from>..<to>`` in the configured repository and parses the
output into ``Commit`` objects, newest first (git's default order).
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

from release_report.errors import GitError
from release_report.schemas import Commit, ReleaseWindow

FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"
LOG_FORMAT = f"%H{FIELD_SEP}%aI{FIELD_SEP}%s{RECORD_SEP}"


class GitClientProtocol(Protocol):
    """Protocol for reading the commits of a release window."""

    async def log(self, window: ReleaseWindow) -> list[Commit]:
        """Return the commits in ``window``, newest first."""
        ...


def parse_log_output(output: str) -> list[Commit]:
    """Parse ``git log`` output produced with ``LOG_FORMAT``."""
    commits = []
    for record in output.split(RECORD_SEP):
        record = record.strip("\n")
        if not record:
            continue
        parts = record.split(FIELD_SEP)
        if len(parts) != 3:
            raise GitError(f"Unexpected git log record: {record!r}")
        commit_hash, date, message = parts
        commits.append(Commit(hash=commit_hash, date=date, message=message))
    return commits


class GitClient:
    """Reads commit history by running the ``git`` executable."""

    def __init__(self, repo_path: str | Path = ".") -> None:
        self._repo_path = Path(repo_path)

    async def log(self, window: ReleaseWindow) -> list[Commit]:
        """Return the commits reachable from ``to`` but not from ``from``.

        Raises:
            GitError: If git is missing or the refs do not resolve
        """
        command = [
            "git",
            "log",
            f"--format={LOG_FORMAT}",
            f"{window.from_ref}..{window.to_ref}",
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self._repo_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise GitError("git executable not found") from exc

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise GitError(
                f"git log {window.from_ref}..{window.to_ref} failed: "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return parse_log_output(stdout.decode(errors="replace"))


class MockGitClient:
    """Mock git client serving predefined commit lists per window."""

    def __init__(self, logs: dict[tuple[str, str], list[Commit]] | None = None) -> None:
        """Initialize with predefined logs.

        Args:
            logs: ``(from, to)`` -> commits, newest first. Unknown windows
                  return an empty list.
        """
        self._logs = logs or {}

    async def log(self, window: ReleaseWindow) -> list[Commit]:
        return list(self._logs.get((window.from_ref, window.to_ref), []))
