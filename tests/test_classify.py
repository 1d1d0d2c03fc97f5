"""Tests for story classification.

Covers the label rules, review requirements, feature flag extraction and
rollout readiness, plus estimate totals and display order.

Run with: pytest tests/test_classify.py -v
"""

from __future__ import annotations

import pytest

from release_report.classify import (
    annotate_labels,
    annotate_reviews,
    apply_flag_states,
    belongs_in_report,
    display_sorted,
    estimate_sum,
    extract_feature_flags,
    flags_to_look_up,
    is_carried_over,
    ready_for_flag_rollout,
)
from release_report.config import ReviewTypeIds
from release_report.schemas import FeatureFlag, Review, WorkItem

TYPE_IDS = ReviewTypeIds(code=[1], qa=[2], design=[3], feature_flag=[4])


def story(story_id: int = 1, story_type: str = "feature", **fields) -> WorkItem:
    return WorkItem(id=story_id, kind=story_type, **fields)


def review(type_id: int, status: str = "pass") -> Review:
    return Review(review_type_id=type_id, status=status)


def flag(full_name: str, enabled: bool | None = None) -> FeatureFlag:
    container, name = full_name.split(".")
    return FeatureFlag(full_name=full_name, container=container, name=name, enabled=enabled)


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------


class TestLabels:
    def test_label_annotations(self) -> None:
        item = story(labels=["new consumer", "prototype", "spike"])
        annotate_labels(item)
        assert item.is_consumer is True
        assert item.is_aggregator is True
        assert item.is_spike is True
        assert item.is_obsolete is False

    def test_obsolete_story_left_out(self) -> None:
        item = story(labels=["obsolete"])
        annotate_labels(item)
        assert belongs_in_report(item) is False

    def test_carried_over_story_left_out(self) -> None:
        item = story(labels=["close out and carry over"])
        annotate_labels(item)
        assert is_carried_over(item) is True
        assert belongs_in_report(item) is False

    def test_plain_story_belongs(self) -> None:
        item = story(labels=["frontend"])
        annotate_labels(item)
        assert belongs_in_report(item) is True


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


class TestAnnotateReviews:
    """Tests for annotate_reviews."""

    def test_no_reviews(self) -> None:
        item = story()
        annotate_reviews(item, [], TYPE_IDS)
        assert item.requires_code_review is True
        assert item.requires_qa_review is True
        assert item.requires_design_review is False
        assert item.has_feature_flag_reviews is False
        assert item.requires_feature_flag_review is False

    def test_all_passed(self) -> None:
        item = story()
        annotate_reviews(item, [review(1), review(2), review(3)], TYPE_IDS)
        assert item.requires_code_review is False
        assert item.requires_qa_review is False
        assert item.requires_design_review is False

    def test_one_failing_code_review(self) -> None:
        item = story()
        annotate_reviews(item, [review(1), review(1, "revise")], TYPE_IDS)
        assert item.requires_code_review is True

    def test_chore_needs_no_qa_review(self) -> None:
        item = story(story_type="chore")
        annotate_reviews(item, [review(1)], TYPE_IDS)
        assert item.requires_qa_review is False

    def test_spike_feature_needs_no_qa_review(self) -> None:
        item = story(labels=["spike"])
        annotate_labels(item)
        annotate_reviews(item, [], TYPE_IDS)
        assert item.requires_qa_review is False

    def test_chore_with_open_qa_review(self) -> None:
        item = story(story_type="chore")
        annotate_reviews(item, [review(2, "in_review")], TYPE_IDS)
        assert item.requires_qa_review is True

    def test_bug_needs_qa_review(self) -> None:
        item = story(story_type="bug")
        annotate_reviews(item, [review(1)], TYPE_IDS)
        assert item.requires_qa_review is True

    def test_feature_flag_reviews(self) -> None:
        pending = story(1)
        annotate_reviews(pending, [review(4, "unstarted")], TYPE_IDS)
        assert pending.has_feature_flag_reviews is True
        assert pending.requires_feature_flag_review is True
        assert pending.passes_feature_flag_review is False

        passed = story(2)
        annotate_reviews(passed, [review(4)], TYPE_IDS)
        assert passed.requires_feature_flag_review is False
        assert passed.passes_feature_flag_review is True

    def test_unknown_review_types_ignored(self) -> None:
        item = story(story_type="chore")
        annotate_reviews(item, [review(99, "revise")], TYPE_IDS)
        assert item.requires_code_review is True
        assert item.requires_design_review is False
        assert len(item.reviews) == 1


# ---------------------------------------------------------------------------
# Feature Flags
# ---------------------------------------------------------------------------


class TestExtractFeatureFlags:
    """Tests for extract_feature_flags."""

    def test_single_flag(self) -> None:
        flags = extract_feature_flags("Behind checkout.newFlow for now")
        assert [f.full_name for f in flags] == ["checkout.newFlow"]
        assert flags[0].container == "checkout"
        assert flags[0].name == "newFlow"

    def test_flag_on_its_own_line(self) -> None:
        flags = extract_feature_flags("Flags:\nsearch.fuzzy\nother text")
        assert [f.full_name for f in flags] == ["search.fuzzy"]

    def test_adjacent_flags(self) -> None:
        flags = extract_feature_flags("search.fuzzy search.ranking")
        assert [f.full_name for f in flags] == ["search.fuzzy", "search.ranking"]

    @pytest.mark.parametrize(
        "description",
        [
            "Updated app.js and build.gradle",
            "See Main.java",
            "logo.png was replaced",
            "set core.hooksPath",
        ],
    )
    def test_file_names_are_not_flags(self, description: str) -> None:
        assert extract_feature_flags(description) == []

    @pytest.mark.parametrize(
        "description",
        [
            "https://example.com/checkout.newFlow",
            "src/checkout.newFlow",
            "foo.bar.baz is a longer dotted name",
            "Capital.letters are not flags",
            "",
        ],
    )
    def test_not_flags(self, description: str) -> None:
        assert extract_feature_flags(description) == []

    def test_dashboard_url(self) -> None:
        flags = extract_feature_flags(
            "checkout.newFlow",
            app_key="app123",
            dashboard_url="https://flags.example.com/{app_key}?filter={flag}",
        )
        assert flags[0].url == "https://flags.example.com/app123?filter=checkout.newFlow"


class TestFlagLookup:
    def test_stories_without_flag_reviews_lose_their_flags(self) -> None:
        reviewed = story(1, has_feature_flag_reviews=True, flags=[flag("a.one")])
        unreviewed = story(2, flags=[flag("a.two")])

        wanted = flags_to_look_up([reviewed, unreviewed])

        assert [f.full_name for f in wanted] == ["a.one"]
        assert unreviewed.flags == []

    def test_shared_flags_listed_once(self) -> None:
        first = story(1, has_feature_flag_reviews=True, flags=[flag("a.one")])
        second = story(2, has_feature_flag_reviews=True, flags=[flag("a.one"), flag("a.two")])
        assert [f.full_name for f in flags_to_look_up([first, second])] == ["a.one", "a.two"]

    def test_apply_flag_states_defaults_to_off(self) -> None:
        item = story(flags=[flag("a.one"), flag("a.two")])
        apply_flag_states([item], {"a.one": True})
        assert item.flag_values == [True, False]


class TestReadyForFlagRollout:
    """Tests for ready_for_flag_rollout."""

    def test_accepted_story_with_disabled_flag(self) -> None:
        item = story(1, current_state="accepted", flags=[flag("a.one", False)])
        assert ready_for_flag_rollout([item]) == [item]

    def test_already_enabled_is_not_listed(self) -> None:
        item = story(1, current_state="accepted", flags=[flag("a.one", True)])
        assert ready_for_flag_rollout([item]) == []

    def test_story_without_flags_is_not_listed(self) -> None:
        item = story(1, current_state="accepted")
        assert ready_for_flag_rollout([item]) == []

    def test_unaccepted_story_is_not_listed(self) -> None:
        item = story(1, current_state="delivered", flags=[flag("a.one", False)])
        assert ready_for_flag_rollout([item]) == []

    def test_held_back_by_unaccepted_story_sharing_flag(self) -> None:
        done = story(1, current_state="accepted", flags=[flag("a.one", False)])
        pending = story(2, current_state="started", flags=[flag("a.one", False)])
        assert ready_for_flag_rollout([done, pending]) == []

    def test_unrelated_unaccepted_story_does_not_hold_back(self) -> None:
        done = story(1, current_state="accepted", flags=[flag("a.one", False)])
        other = story(2, current_state="started", flags=[flag("a.two", False)])
        assert ready_for_flag_rollout([done, other]) == [done]


# ---------------------------------------------------------------------------
# Totals and Ordering
# ---------------------------------------------------------------------------


class TestTotalsAndOrder:
    def test_estimate_sum(self) -> None:
        items = [story(1, estimate=3), story(2, estimate=None), story(3, estimate=2)]
        assert estimate_sum(items) == 5

    def test_estimate_sum_empty(self) -> None:
        assert estimate_sum([]) == 0

    def test_display_order(self) -> None:
        items = [
            story(1, "chore"),
            story(2, "bug"),
            story(3, "feature"),
            story(4, "bug"),
            story(5, "feature"),
        ]
        assert [item.id for item in display_sorted(items)] == [3, 5, 2, 4, 1]
