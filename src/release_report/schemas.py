"""Pydantic models for the data that flows through a release report.

Stories arrive from the tracker as JSON and are validated into ``WorkItem``
objects once. From then on they are shared, mutable objects: the blocker
resolver attaches other ``WorkItem`` instances to them and the classifiers
add review and flag annotations in place. Nothing here is persisted.

Key design decisions:
- Tracker field names are accepted through aliases (``story_type``,
  ``current_state``) so raw API payloads validate directly
- ``WorkItem`` allows extra attributes, which report sections may attach
- Identity matters: a story reachable through two blocker paths is a single
  object, so code compares work items with ``is``, never ``==``
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

BLOCKER_REFERENCE_RE = re.compile(r"^#\s*(\d+)")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class StoryKind(str, Enum):
    """Tracker story type.

    FEATURE, BUG and CHORE are the kinds a report counts and lists.
    RELEASE markers are accepted so they validate, but never displayed.
    """

    FEATURE = "feature"
    BUG = "bug"
    CHORE = "chore"
    RELEASE = "release"


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


class ReleaseWindow(BaseModel):
    """A ``(from, to)`` commit range identifying one release's history."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_ref: str = Field(..., alias="from", description="Exclusive start ref")
    to_ref: str = Field(..., alias="to", description="Inclusive end ref")


class Commit(BaseModel):
    """A single commit as reported by ``git log``.

    Attributes:
        hash: Full commit hash
        message: Commit subject line
        date: Author date exactly as git printed it (ISO-8601)
    """

    model_config = ConfigDict(frozen=True)

    hash: str = Field(..., description="Commit hash")
    message: str = Field(..., description="Commit subject")
    date: str = Field(..., description="Author date, ISO-8601")

    @property
    def timestamp(self) -> datetime:
        return datetime.fromisoformat(self.date.replace("Z", "+00:00"))

    @property
    def dedup_key(self) -> str:
        """Key shared by a commit and its cherry-picked or rebased copies."""
        return self.date + self.message


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class BlockerRecord(BaseModel):
    """A raw blocker entry from the tracker.

    Blockers are free text. By convention a blocker that refers to another
    story starts with ``#<story id>``.
    """

    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    description: str = ""
    resolved: bool = False

    @property
    def referenced_id(self) -> int | None:
        match = BLOCKER_REFERENCE_RE.match(self.description)
        if match is None:
            return None
        return int(match.group(1))


class Review(BaseModel):
    """A review attached to a story (code, QA, design or feature flag)."""

    model_config = ConfigDict(extra="ignore")

    kind: str = "review"
    review_type_id: int | None = None
    status: str = "unstarted"


class FeatureFlag(BaseModel):
    """A feature flag mentioned in a story description.

    Attributes:
        full_name: ``container.name`` as written in the description
        container: Flag container (namespace) part
        name: Flag name part
        url: Link to the flag in the flag dashboard
        enabled: Current flag state, ``None`` until looked up
    """

    full_name: str
    container: str
    name: str
    url: str = ""
    enabled: bool | None = None


class WorkItem(BaseModel):
    """A tracker story and everything the report learns about it.

    The first block of fields comes from the tracker. ``transient`` and
    ``blockers`` are owned by the blocker resolver; the remaining fields are
    annotations written by ``release_report.classify``.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow",
        arbitrary_types_allowed=True,
    )

    id: int = Field(..., description="Tracker story id")
    kind: StoryKind = Field(..., alias="story_type", description="Story type")
    state: str = Field("unstarted", alias="current_state", description="Workflow state")
    name: str = Field("", description="Story title")
    description: str = Field("", description="Free-text description")
    estimate: int | float | None = Field(None, description="Point estimate")
    labels: list[str] = Field(default_factory=list, description="Label names, in order")
    project_id: int | None = None
    accepted_at: datetime | None = None

    transient: bool = Field(
        False, description="Discovered only through blocker references"
    )
    blockers: list[Union[WorkItem, BlockerRecord]] | None = Field(
        None, description="Unset until the blocker resolver has visited the story"
    )

    flags: list[FeatureFlag] = Field(default_factory=list)
    reviews: list[Review] = Field(default_factory=list)
    is_consumer: bool = False
    is_aggregator: bool = False
    is_spike: bool = False
    is_obsolete: bool = False
    requires_code_review: bool = False
    requires_qa_review: bool = False
    requires_design_review: bool = False
    has_feature_flag_reviews: bool = False
    requires_feature_flag_review: bool = False
    passes_feature_flag_review: bool = False

    @field_validator("labels", mode="before")
    @classmethod
    def _label_names(cls, value: Any) -> Any:
        """Accept tracker label objects and keep the names of real labels."""
        if not isinstance(value, list):
            return value
        names = []
        for label in value:
            if isinstance(label, dict):
                if label.get("kind", "label") == "label" and "name" in label:
                    names.append(label["name"])
            else:
                names.append(label)
        return names

    @field_validator("description", "name", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def label_names(self) -> list[str]:
        return self.labels

    @property
    def has_flags(self) -> bool:
        return len(self.flags) > 0

    @property
    def flag_values(self) -> list[bool | None]:
        return [flag.enabled for flag in self.flags]

    def __repr__(self) -> str:
        # The default repr would walk blocker cycles.
        return f"WorkItem(id={self.id!r}, kind={self.kind.value!r}, state={self.state!r})"

    __str__ = __repr__


WorkItem.model_rebuild()


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


@dataclass
class KindSummary:
    """Story count and points for one story kind."""

    label: str
    count: int
    points: int | float


@dataclass
class ReportSection:
    """A titled list of stories.

    Attributes:
        header: Section heading
        items: Selected stories, in selection order
        show_review_links: Link stories needing code review to their reviews
    """

    header: str
    items: list[WorkItem] = field(default_factory=list)
    show_review_links: bool = False


@dataclass
class ReleaseReport:
    """Everything the markdown report is rendered from.

    Attributes:
        summary: Counts and points of the release's own stories by kind
        sections: Report sections in display order
        story_ids: Story ids referenced by the release's commits
        duplicates: Commits dropped because an earlier release shipped them
        stories: Every story in the report, including transient blockers
    """

    summary: list[KindSummary] = field(default_factory=list)
    sections: list[ReportSection] = field(default_factory=list)
    story_ids: list[str] = field(default_factory=list)
    duplicates: list[Commit] = field(default_factory=list)
    stories: list[WorkItem] = field(default_factory=list)
