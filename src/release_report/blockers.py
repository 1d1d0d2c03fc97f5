"""Blocker-graph closure resolution.

Stories reference the stories blocking them through free-text blocker
entries like ``#1234 needs the new endpoint``. A release report wants to show
those blockers as real stories, including blockers that never appeared in
the release's commits, and blockers of blockers, and so on.

The resolver runs a worklist:

1. Fetch the raw blocker entries of every story not visited yet.
2. Collect the referenced ids that are not in the collection yet.
3. Fetch those stories concurrently, mark them ``transient`` and append them.
4. Repeat with the newly added stories until a pass adds nothing.
5. Replace every blocker entry that references a collected story with that
   exact story object.

Each id is fetched at most once, so the loop ends after at most as many
passes as there are distinct ids. Failures are tolerated one story at a
time; only a pass where every request found the tracker unreachable aborts.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable, Sequence
from typing import Any, Protocol, TypeVar

from pydantic import ValidationError

from release_report.errors import TrackerUnavailableError
from release_report.logging_config import get_logger
from release_report.schemas import BlockerRecord, WorkItem

logger = get_logger(__name__)

T = TypeVar("T")


class BlockerSourceProtocol(Protocol):
    """What the resolver needs from the tracker."""

    async def fetch_blockers(self, item: WorkItem) -> Any:
        """Return the raw blocker entries of a story (ideally a list)."""
        ...

    async def fetch_work_item(self, story_id: int) -> WorkItem | None:
        """Return a story by id, or ``None`` if it does not resolve."""
        ...


def normalize_blockers(raw: Any) -> list[BlockerRecord]:
    """Turn a blocker payload into records.

    Anything that is not a list becomes an empty list. Entries that cannot be
    read as a blocker are skipped.
    """
    if not isinstance(raw, list):
        return []
    records = []
    for entry in raw:
        if isinstance(entry, BlockerRecord):
            records.append(entry)
            continue
        try:
            records.append(BlockerRecord.model_validate(entry))
        except ValidationError:
            logger.warning("malformed_blocker_skipped", entry=repr(entry))
    return records


async def gather_tolerant(
    calls: Sequence[Awaitable[T]],
    what: str,
    keys: Sequence[Any],
) -> list[T | None]:
    """Await calls concurrently, turning individual failures into ``None``.

    Raises:
        TrackerUnavailableError: If every call failed because the tracker
            could not be reached
    """
    results = await asyncio.gather(*calls, return_exceptions=True)

    unavailable = [r for r in results if isinstance(r, TrackerUnavailableError)]
    if results and len(unavailable) == len(results):
        raise unavailable[0]

    values: list[T | None] = []
    for key, result in zip(keys, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.warning(f"{what}_failed", key=key, error=str(result))
            values.append(None)
        else:
            values.append(result)
    return values


async def _attach_raw_blockers(
    items: Sequence[WorkItem], source: BlockerSourceProtocol
) -> None:
    payloads = await gather_tolerant(
        [source.fetch_blockers(item) for item in items],
        "blocker_fetch",
        [item.id for item in items],
    )
    for item, payload in zip(items, payloads):
        item.blockers = normalize_blockers(payload)


def _referenced_ids(items: Iterable[WorkItem]) -> list[int]:
    ids: dict[int, None] = {}
    for item in items:
        for blocker in item.blockers or []:
            if isinstance(blocker, BlockerRecord) and blocker.referenced_id is not None:
                ids[blocker.referenced_id] = None
    return list(ids)


async def resolve_blocker_closure(
    items: Iterable[WorkItem],
    source: BlockerSourceProtocol,
) -> list[WorkItem]:
    """Close a story collection under "blocked by" references.

    Args:
        items: Stories with ids unique within the collection
        source: Where blocker entries and missing stories are fetched from

    Returns:
        The input stories followed by every transitively referenced story
        that could be fetched. Blocker entries that match a collected story
        are replaced by that story object; the rest stay ``BlockerRecord``.

    Raises:
        TrackerUnavailableError: If a whole pass failed to reach the tracker
    """
    closure: list[WorkItem] = []
    index: dict[int, WorkItem] = {}
    for item in items:
        if item.id not in index:
            index[item.id] = item
            closure.append(item)

    attempted: set[int] = set(index)
    pending = [item for item in closure if item.blockers is None]
    passes = 0

    while pending:
        passes += 1
        await _attach_raw_blockers(pending, source)

        missing = [i for i in _referenced_ids(pending) if i not in attempted]
        attempted.update(missing)
        if not missing:
            break

        fetched = await gather_tolerant(
            [source.fetch_work_item(story_id) for story_id in missing],
            "blocker_story_fetch",
            missing,
        )

        pending = []
        for story in fetched:
            if not isinstance(story, WorkItem) or story.id in index:
                continue
            story.transient = True
            index[story.id] = story
            closure.append(story)
            pending.append(story)

        logger.debug(
            "blocker_pass_complete",
            pass_number=passes,
            requested=len(missing),
            added=len(pending),
        )

    for item in closure:
        item.blockers = [
            index.get(blocker.referenced_id, blocker)
            if isinstance(blocker, BlockerRecord) and blocker.referenced_id is not None
            else blocker
            for blocker in item.blockers or []
        ]

    return closure
