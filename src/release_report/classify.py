"""Story classification for the release report.

Deterministic rules that turn raw tracker data into the annotations the
report sections filter on:
- label-derived flags (consumer, aggregator, spike, obsolete)
- which reviews a story still needs
- which feature flags a story ships behind, and whether they are on
- estimate totals and display order

All functions mutate the stories they are given; none fetch anything.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from release_report.config import ReviewTypeIds
from release_report.schemas import FeatureFlag, Review, StoryKind, WorkItem

# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------

CARRY_OVER_LABELS = frozenset({"close out and carry over"})
OBSOLETE_LABELS = frozenset({"obsolete"})
CONSUMER_LABELS = frozenset({"new consumer", "consumer"})
AGGREGATOR_LABELS = frozenset({"prototype", "aggregator"})
SPIKE_LABELS = frozenset({"spike"})


def _has_label(item: WorkItem, labels: frozenset[str]) -> bool:
    return any(label in labels for label in item.labels)


def is_carried_over(item: WorkItem) -> bool:
    """Story was closed out in an earlier release and carried over."""
    return _has_label(item, CARRY_OVER_LABELS)


def annotate_labels(item: WorkItem) -> None:
    item.is_consumer = _has_label(item, CONSUMER_LABELS)
    item.is_aggregator = _has_label(item, AGGREGATOR_LABELS)
    item.is_spike = _has_label(item, SPIKE_LABELS)
    item.is_obsolete = _has_label(item, OBSOLETE_LABELS)


def belongs_in_report(item: WorkItem) -> bool:
    """Carried-over and obsolete stories are left out of the report body."""
    return not is_carried_over(item) and not item.is_obsolete


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


def _not_passed(reviews: Sequence[Review]) -> bool:
    return any(review.status != "pass" for review in reviews)


def annotate_reviews(
    item: WorkItem, reviews: Iterable[Review], type_ids: ReviewTypeIds
) -> None:
    """Work out which reviews a story still needs.

    Rules:
    - Code review is required unless there is at least one code review
      and all of them passed.
    - QA review is required for bugs and non-spike features that have no QA
      review yet, and for any story with a QA review that has not passed.
    - Design and feature-flag reviews are required only while one of them
      has not passed.
    """
    item.reviews = [review for review in reviews if review.kind == "review"]

    def of_type(ids: list[int]) -> list[Review]:
        return [review for review in item.reviews if review.review_type_id in ids]

    code = of_type(type_ids.code)
    qa = of_type(type_ids.qa)
    design = of_type(type_ids.design)
    feature_flag = of_type(type_ids.feature_flag)

    needs_qa_by_kind = item.kind == StoryKind.BUG or (
        item.kind == StoryKind.FEATURE and not item.is_spike
    )

    item.requires_code_review = not code or _not_passed(code)
    item.requires_design_review = _not_passed(design)
    item.requires_qa_review = (needs_qa_by_kind and not qa) or _not_passed(qa)

    item.has_feature_flag_reviews = bool(feature_flag)
    item.requires_feature_flag_review = _not_passed(feature_flag)
    item.passes_feature_flag_review = bool(feature_flag) and not _not_passed(feature_flag)


# ---------------------------------------------------------------------------
# Feature flags
# ---------------------------------------------------------------------------

# container.name, not part of a path, URL, file name or longer dotted name
FLAG_NAME_RE = re.compile(r"(^|[^\w.?/])([a-z]\w+\.[a-z]\w+)([^\w.?/]|$)", re.MULTILINE)

# Dotted names in descriptions that are file names, not flags.
NOT_A_FLAG_RE = re.compile(r"^(js|ts|png|gradle|io|kt|java|hookspath)$", re.IGNORECASE)


def extract_feature_flags(
    description: str,
    app_key: str = "",
    dashboard_url: str = "",
) -> list[FeatureFlag]:
    """Find ``container.name`` flag references in a story description.

    Args:
        description: Story description
        app_key: Flag service application id, used in dashboard links
        dashboard_url: Link template with ``{app_key}`` and ``{flag}``

    Returns:
        Flags in order of appearance
    """
    flags = []
    position = 0
    while True:
        match = FLAG_NAME_RE.search(description, position)
        if match is None:
            break
        # The trailing delimiter may start the next reference.
        position = match.end(2)
        full_name = match.group(2)
        container, name = full_name.split(".")
        if NOT_A_FLAG_RE.match(name):
            continue
        url = dashboard_url.format(app_key=app_key, flag=full_name) if dashboard_url else ""
        flags.append(
            FeatureFlag(full_name=full_name, container=container, name=name, url=url)
        )
    return flags


def attach_flag_names(
    items: Iterable[WorkItem], app_key: str = "", dashboard_url: str = ""
) -> None:
    for item in items:
        item.flags = extract_feature_flags(item.description, app_key, dashboard_url)


def flags_to_look_up(items: Iterable[WorkItem]) -> list[FeatureFlag]:
    """Keep flags only on stories with flag reviews and list them once each."""
    unique: dict[str, FeatureFlag] = {}
    for item in items:
        if not item.has_feature_flag_reviews:
            item.flags = []
        for flag in item.flags:
            unique.setdefault(flag.full_name, flag)
    return list(unique.values())


def apply_flag_states(items: Iterable[WorkItem], states: dict[str, bool]) -> None:
    for item in items:
        for flag in item.flags:
            flag.enabled = states.get(flag.full_name, False)


def ready_for_flag_rollout(items: Sequence[WorkItem]) -> list[WorkItem]:
    """Accepted stories with a disabled flag that nothing else holds back.

    A flag can be turned on once every other story using any of the same
    flags is accepted too.
    """
    ready = []
    for item in items:
        if item.state != "accepted":
            continue
        if all(flag.enabled for flag in item.flags):
            continue
        names = {flag.full_name for flag in item.flags}
        sharing = [
            other
            for other in items
            if other is not item and any(flag.full_name in names for flag in other.flags)
        ]
        if all(other.state == "accepted" for other in sharing):
            ready.append(item)
    return ready


# ---------------------------------------------------------------------------
# Totals and ordering
# ---------------------------------------------------------------------------

DISPLAY_ORDER = {StoryKind.FEATURE: 1, StoryKind.BUG: 2, StoryKind.CHORE: 3}


def estimate_sum(items: Iterable[WorkItem]) -> int | float:
    """Total points; unestimated stories count as zero."""
    return sum(item.estimate or 0 for item in items)


def display_sorted(items: Iterable[WorkItem]) -> list[WorkItem]:
    """Features, then bugs, then chores, otherwise keeping the given order."""
    return sorted(items, key=lambda item: DISPLAY_ORDER.get(item.kind, len(DISPLAY_ORDER) + 1))
