"""Tests for blocker-graph closure resolution.

The resolver is exercised against MockTrackerClient, which validates a
fresh WorkItem on every fetch, so identity assertions here really check that
the resolver reuses the objects it already holds.

Run with: pytest tests/test_blockers.py -v
"""

from __future__ import annotations

import pytest

from release_report.blockers import normalize_blockers, resolve_blocker_closure
from release_report.context.tracker import MockTrackerClient
from release_report.errors import TrackerUnavailableError
from release_report.schemas import BlockerRecord, WorkItem


def story_payload(story_id: int, story_type: str = "feature", **extra) -> dict:
    return {
        "id": story_id,
        "kind": "story",
        "story_type": story_type,
        "name": f"Story {story_id}",
        **extra,
    }


def item(story_id: int, story_type: str = "feature") -> WorkItem:
    return WorkItem.model_validate(story_payload(story_id, story_type))


# ---------------------------------------------------------------------------
# Blocker Payload Tests
# ---------------------------------------------------------------------------


class TestNormalizeBlockers:
    """Tests for normalize_blockers."""

    def test_non_list_becomes_empty(self) -> None:
        assert normalize_blockers(None) == []
        assert normalize_blockers({"code": "unfound_resource"}) == []
        assert normalize_blockers("oops") == []

    def test_entries_become_records(self) -> None:
        records = normalize_blockers([{"id": 9, "description": "#12 waiting"}])
        assert records == [BlockerRecord(id=9, description="#12 waiting")]
        assert records[0].referenced_id == 12

    def test_malformed_entries_are_skipped(self) -> None:
        records = normalize_blockers([{"description": ["not", "text"]}, {"description": "ok"}])
        assert [r.description for r in records] == ["ok"]

    def test_free_text_blocker_has_no_reference(self) -> None:
        assert BlockerRecord(description="Waiting on legal").referenced_id is None
        assert BlockerRecord(description="see #12").referenced_id is None


# ---------------------------------------------------------------------------
# Closure Tests
# ---------------------------------------------------------------------------


class TestResolveBlockerClosure:
    """Tests for resolve_blocker_closure."""

    @pytest.mark.asyncio
    async def test_no_blockers(self) -> None:
        stories = [item(1), item(2)]
        tracker = MockTrackerClient()

        closure = await resolve_blocker_closure(stories, tracker)

        assert closure == stories
        assert all(story.blockers == [] for story in closure)
        assert tracker.story_requests == []

    @pytest.mark.asyncio
    async def test_blocker_inside_collection_resolves_to_same_object(self) -> None:
        first, second = item(1), item(2)
        tracker = MockTrackerClient(blockers={1: [{"description": "#2 API first"}]})

        closure = await resolve_blocker_closure([first, second], tracker)

        assert len(closure) == 2
        assert first.blockers[0] is second
        assert tracker.story_requests == []
        assert not second.transient

    @pytest.mark.asyncio
    async def test_missing_blockers_fetched_transitively(self) -> None:
        """1 -> 2 -> 3: both blockers are fetched and marked transient."""
        tracker = MockTrackerClient(
            stories={2: story_payload(2), 3: story_payload(3, "chore")},
            blockers={
                1: [{"description": "#2 needs endpoint"}],
                2: [{"description": "#3 needs schema"}],
            },
        )
        root = item(1)

        closure = await resolve_blocker_closure([root], tracker)

        assert [story.id for story in closure] == [1, 2, 3]
        assert [story.transient for story in closure] == [False, True, True]
        two, three = closure[1], closure[2]
        assert root.blockers[0] is two
        assert two.blockers[0] is three
        assert three.blockers == []

    @pytest.mark.asyncio
    async def test_shared_blocker_fetched_once_and_shared(self) -> None:
        """Two stories blocked by the same missing story share one object."""
        tracker = MockTrackerClient(
            stories={9: story_payload(9)},
            blockers={
                1: [{"description": "#9"}],
                2: [{"description": "#9 also"}],
            },
        )
        one, two = item(1), item(2)

        closure = await resolve_blocker_closure([one, two], tracker)

        assert tracker.story_requests == [9]
        assert len(closure) == 3
        assert one.blockers[0] is two.blockers[0] is closure[2]

    @pytest.mark.asyncio
    async def test_cycle_terminates(self) -> None:
        tracker = MockTrackerClient(
            stories={2: story_payload(2)},
            blockers={
                1: [{"description": "#2"}],
                2: [{"description": "#1"}],
            },
        )
        root = item(1)

        closure = await resolve_blocker_closure([root], tracker)

        assert [story.id for story in closure] == [1, 2]
        assert root.blockers[0] is closure[1]
        assert closure[1].blockers[0] is root
        assert tracker.story_requests == [2]

    @pytest.mark.asyncio
    async def test_failed_and_wrong_kind_fetches_are_dropped(self) -> None:
        """Failures stay as unresolved records and do not stop the others."""
        tracker = MockTrackerClient(
            stories={
                3: story_payload(3),
                4: {"id": 4, "kind": "epic", "name": "Not a story"},
            },
            blockers={1: [
                {"description": "#2 gone"},
                {"description": "#3 fine"},
                {"description": "#4 epic"},
                {"description": "#5 broken"},
                {"description": "Waiting on vendor"},
            ]},
            failing_ids=[5],
        )
        root = item(1)

        closure = await resolve_blocker_closure([root], tracker)

        assert [story.id for story in closure] == [1, 3]
        resolved = root.blockers
        assert isinstance(resolved[0], BlockerRecord)
        assert resolved[1] is closure[1]
        assert isinstance(resolved[2], BlockerRecord)
        assert isinstance(resolved[3], BlockerRecord)
        assert resolved[4].description == "Waiting on vendor"

    @pytest.mark.asyncio
    async def test_failed_id_is_not_requested_again(self) -> None:
        tracker = MockTrackerClient(
            stories={2: story_payload(2)},
            blockers={
                1: [{"description": "#404"}, {"description": "#2"}],
                2: [{"description": "#404"}],
            },
        )

        await resolve_blocker_closure([item(1)], tracker)

        assert sorted(tracker.story_requests) == [2, 404]

    @pytest.mark.asyncio
    async def test_malformed_payload_is_empty(self) -> None:
        tracker = MockTrackerClient(blockers={1: {"error": "nope"}})
        root = item(1)

        await resolve_blocker_closure([root], tracker)

        assert root.blockers == []

    @pytest.mark.asyncio
    async def test_idempotent_on_closed_collection(self) -> None:
        tracker = MockTrackerClient(
            stories={2: story_payload(2)},
            blockers={1: [{"description": "#2"}, {"description": "#77 gone"}]},
        )
        closure = await resolve_blocker_closure([item(1)], tracker)
        blocker_lists = [list(story.blockers) for story in closure]
        requests_before = (list(tracker.story_requests), list(tracker.blocker_requests))

        again = await resolve_blocker_closure(closure, tracker)

        assert len(again) == len(closure)
        assert all(a is b for a, b in zip(again, closure))
        for story, before in zip(again, blocker_lists):
            assert all(x is y for x, y in zip(story.blockers, before))
        assert (tracker.story_requests, tracker.blocker_requests) == requests_before

    @pytest.mark.asyncio
    async def test_input_list_is_not_mutated(self) -> None:
        tracker = MockTrackerClient(
            stories={2: story_payload(2)},
            blockers={1: [{"description": "#2"}]},
        )
        stories = [item(1)]

        closure = await resolve_blocker_closure(stories, tracker)

        assert len(stories) == 1
        assert len(closure) == 2

    @pytest.mark.asyncio
    async def test_tracker_unavailable_is_fatal(self) -> None:
        tracker = MockTrackerClient(unavailable=True)

        with pytest.raises(TrackerUnavailableError):
            await resolve_blocker_closure([item(1)], tracker)
