"""Commit deduplication and story id extraction.

A release is described by a list of windows: every window but the last is a
past release, the last one is the release being reported. Commits that were
cherry-picked or rebased into an earlier release get a new hash, so a commit
is identified across windows by its author date plus message instead.

Story ids come from commit subjects written as ``[#1234] Fix the thing`` (the
``#`` is optional). Only the first reference in a message counts.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from release_report.schemas import Commit

STORY_REFERENCE_RE = re.compile(r"(^|\s+)\[#?(\d+)")


@dataclass
class DedupResult:
    """Outcome of removing previously released commits from a window.

    Attributes:
        commits: Commits of the current window that were not released before
        duplicates: Commits dropped because an earlier window already had them
        previous_date: Earliest commit date of the immediately preceding window
        current_date: Latest commit date of the current window
    """

    commits: list[Commit] = field(default_factory=list)
    duplicates: list[Commit] = field(default_factory=list)
    previous_date: datetime | None = None
    current_date: datetime | None = None


def extract_identifier(message: str) -> str | None:
    """Return the story id referenced by a commit message, if any."""
    match = STORY_REFERENCE_RE.search(message)
    if match is None:
        return None
    return match.group(2)


def extract_identifiers(commits: Iterable[Commit | str]) -> set[str]:
    """Collect the distinct story ids referenced by a sequence of commits.

    Args:
        commits: ``Commit`` objects or bare commit messages

    Returns:
        Set of story ids as strings
    """
    identifiers = set()
    for commit in commits:
        message = commit if isinstance(commit, str) else commit.message
        identifier = extract_identifier(message)
        if identifier is not None:
            identifiers.add(identifier)
    return identifiers


def _earliest(commits: Sequence[Commit]) -> datetime | None:
    if not commits:
        return None
    return min(commit.timestamp for commit in commits)


def _latest(commits: Sequence[Commit]) -> datetime | None:
    if not commits:
        return None
    return max(commit.timestamp for commit in commits)


def deduplicate_commits(
    current: Sequence[Commit],
    previous: Sequence[Sequence[Commit]] = (),
) -> DedupResult:
    """Drop commits of the current window that already shipped earlier.

    Args:
        current: Commits of the release being reported
        previous: Commit lists of earlier releases, oldest release first

    Returns:
        A DedupResult. With no previous windows every commit is kept and no
        dates are derived.
    """
    if not previous:
        return DedupResult(commits=list(current))

    released = {commit.dedup_key for window in previous for commit in window}

    result = DedupResult()
    for commit in current:
        if commit.dedup_key in released:
            result.duplicates.append(commit)
        else:
            result.commits.append(commit)

    if current:
        result.previous_date = _earliest(previous[-1])
        result.current_date = _latest(current)

    return result
