"""Markdown rendering of a release report.

The output is meant to be pasted into a release ticket or chat message:

    3 Features (8 points)
    1 Chore (0 points)
    2 Bugs (3 points)
    &nbsp;
    &nbsp;
    &nbsp;
    # Stories requiring code review:

    #4521 [feature] Checkout redesign [Flag (off)](https://...) [Upsource](https://...)

The ``&nbsp;`` lines keep a visible gap between sections in renderers that
collapse blank lines.
"""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import quote

from release_report.classify import display_sorted
from release_report.schemas import ReleaseReport, WorkItem

SECTION_GAP = "&nbsp;\n&nbsp;\n&nbsp;"


# ---------------------------------------------------------------------------
# Code review links
# ---------------------------------------------------------------------------


def review_search_url(base_url: str, query: str) -> str:
    return f"{base_url.rstrip('/')}?query={quote(query, safe='')}"


def story_reviews_url(base_url: str, branch: str, item: WorkItem) -> str:
    return review_search_url(base_url, f"branch: {branch} and {item.id}")


def unclosed_reviews_url(base_url: str, branch: str, story_ids: Iterable[str]) -> str:
    ids = " or ".join(str(story_id) for story_id in story_ids)
    return review_search_url(base_url, f"branch: {branch} and not #{{closed review}} and ({ids})")


def unattached_commits_url(base_url: str, branch: str) -> str:
    return review_search_url(
        base_url, f"branch: {branch} and not #{{closed review}} and not #{{open review}}"
    )


# ---------------------------------------------------------------------------
# Report pieces
# ---------------------------------------------------------------------------


def _plural(count: int | float, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def summary_line(label: str, count: int, points: int | float) -> str:
    return f"{_plural(count, label)} ({_plural(points, 'point')})"


def flag_text(item: WorkItem) -> str:
    if not item.has_feature_flag_reviews:
        return "(no flags)"
    if not item.flags:
        return "(description missing flag)"
    return " ".join(
        f"[Flag ({'on' if flag.enabled else 'off'})]({flag.url})" for flag in item.flags
    )


def story_line(item: WorkItem, review_url: str | None = None) -> str:
    parts = [
        f"#{item.id} [{item.kind.value}] {item.name.strip()}",
        flag_text(item),
        f"[Upsource]({review_url})" if review_url else "",
    ]
    return " ".join(part for part in parts if part)


def render_section(
    header: str,
    items: Iterable[WorkItem],
    review_base_url: str | None = None,
    branch: str = "master",
) -> str:
    """Render one section; an empty section renders as an empty string.

    When ``review_base_url`` is given, stories still needing code review get
    a link to their reviews.
    """
    stories = display_sorted(items)
    if not stories:
        return ""

    lines = [SECTION_GAP, f"# {header}:", ""]
    for item in stories:
        link = None
        if review_base_url and item.requires_code_review:
            link = story_reviews_url(review_base_url, branch, item)
        lines.append(story_line(item, link))
    return "\n".join(lines)


def render_report(
    report: ReleaseReport,
    review_base_url: str | None = None,
    branch: str = "master",
) -> str:
    """Render a complete report as markdown."""
    blocks = [
        "\n".join(summary_line(s.label, s.count, s.points) for s in report.summary)
    ]
    for section in report.sections:
        rendered = render_section(
            section.header,
            section.items,
            review_base_url if section.show_review_links else None,
            branch,
        )
        if rendered:
            blocks.append(rendered)

    if review_base_url:
        blocks.append(
            "\n".join(
                [
                    SECTION_GAP,
                    "# Upsource:",
                    "",
                    "[Commits with open or no reviews]"
                    f"({unclosed_reviews_url(review_base_url, branch, report.story_ids)})",
                    "[Commits with no attached review]"
                    f"({unattached_commits_url(review_base_url, branch)})",
                ]
            )
        )

    return "\n".join(blocks) + "\n"
