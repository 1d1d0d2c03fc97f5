"""Release report orchestrator.

This module ties together all the components:
- Commit deduplication and story id extraction (commits.py)
- Tracker, git and flag-service collaborators (context/)
- Blocker closure (blockers.py)
- Classification (classify.py)
- Section filtering (filters.py)
- Markdown rendering (rendering.py)

The builder follows this flow:
1. Read the commits of every configured release window
2. Drop commits an earlier release already shipped
3. Fetch the stories the remaining commits reference, plus stories accepted
   since the previous release
4. Drop carried-over and obsolete stories
5. Pull in every story they are blocked by
6. Annotate flags, reviews and flag states
7. Select the stories of every section and return the report
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from release_report.blockers import gather_tolerant, resolve_blocker_closure
from release_report.classify import (
    annotate_labels,
    annotate_reviews,
    apply_flag_states,
    attach_flag_names,
    belongs_in_report,
    estimate_sum,
    flags_to_look_up,
    ready_for_flag_rollout,
)
from release_report.commits import DedupResult, deduplicate_commits, extract_identifiers
from release_report.config import DEFAULT_CONFIG_PATH, ReportConfig, load_config
from release_report.context.flags import FeatureFlagClientProtocol, FlagServiceClient
from release_report.context.git import GitClient, GitClientProtocol
from release_report.context.tracker import PivotalTrackerClient, TrackerClientProtocol
from release_report.errors import ReleaseReportError
from release_report.filters import apply_where
from release_report.logging_config import get_logger, setup_logging
from release_report.rendering import render_report
from release_report.schemas import (
    KindSummary,
    ReleaseReport,
    ReportSection,
    StoryKind,
    WorkItem,
)

logger = get_logger(__name__)

SUMMARY_KINDS = [
    (StoryKind.FEATURE, "Feature"),
    (StoryKind.CHORE, "Chore"),
    (StoryKind.BUG, "Bug"),
]


class ReleaseReportBuilder:
    """Builds a release report from git, the tracker and the flag service.

    Usage:
        builder = ReleaseReportBuilder(config, git=git, tracker=tracker, flags=flags)
        report = await builder.build()
    """

    def __init__(
        self,
        config: ReportConfig,
        git: GitClientProtocol,
        tracker: TrackerClientProtocol,
        flags: FeatureFlagClientProtocol,
        show_duplicates: bool = True,
    ) -> None:
        """Initialize the builder with its collaborators.

        Args:
            config: Validated report configuration
            git: Source of release window commits
            tracker: Source of stories, blockers and reviews
            flags: Source of feature flag states
            show_duplicates: Log the commits dropped as already released
        """
        self.config = config
        self.git = git
        self.tracker = tracker
        self.flags = flags
        self.show_duplicates = show_duplicates

    async def collect_commits(self) -> DedupResult:
        """Read every release window and deduplicate the last one."""
        logs = await asyncio.gather(*(self.git.log(w) for w in self.config.releases))
        result = deduplicate_commits(logs[-1], logs[:-1])

        if result.duplicates and self.show_duplicates:
            logger.warning(
                "duplicate_commits_removed",
                count=len(result.duplicates),
                messages=[commit.message for commit in result.duplicates],
            )
        return result

    async def fetch_release_stories(
        self, story_ids: list[str], commits: DedupResult
    ) -> list[WorkItem]:
        """Fetch the stories referenced by commits or accepted since last release."""
        fetched = await self.tracker.fetch_work_items([int(i) for i in story_ids])
        stories = [story for story in fetched if story is not None]

        if commits.previous_date is None or commits.current_date is None:
            return stories

        known = {story.id for story in stories}
        for story in await self.tracker.fetch_accepted_after(commits.previous_date):
            if story.id in known:
                continue
            if story.accepted_at is None or story.accepted_at < commits.current_date:
                continue
            known.add(story.id)
            stories.append(story)
        return stories

    async def annotate(self, stories: list[WorkItem]) -> None:
        """Attach flag names, review requirements and flag states."""
        flag_config = self.config.flags
        attach_flag_names(stories, flag_config.app_key, flag_config.dashboard_url)

        reviews = await gather_tolerant(
            [self.tracker.fetch_reviews(story) for story in stories],
            "review_fetch",
            [story.id for story in stories],
        )
        for story, story_reviews in zip(stories, reviews):
            annotate_reviews(story, story_reviews or [], self.config.tracker.review_type_ids)

        states = await self.flags.fetch_flag_states(flags_to_look_up(stories))
        apply_flag_states(stories, states)

    def build_sections(
        self,
        stories: list[WorkItem],
        on_release: list[WorkItem],
        all_stories: list[WorkItem],
    ) -> list[ReportSection]:
        sections = [
            ReportSection("Stories to have flags turned on", ready_for_flag_rollout(stories))
        ]

        for section in self.config.sections:
            candidates = all_stories if section.stories == "all" else on_release
            selected = apply_where(candidates, section.where)
            if section.attach is not None:
                for story in selected:
                    setattr(story, section.attach.key, section.attach.value)
            sections.append(ReportSection(section.header, selected))

        sections.extend(
            [
                ReportSection(
                    "Stories requiring code review",
                    [s for s in on_release if s.requires_code_review],
                    show_review_links=True,
                ),
                ReportSection(
                    "Stories requiring QA review",
                    [
                        s
                        for s in on_release
                        if s.requires_qa_review and not s.has_feature_flag_reviews
                    ],
                ),
                ReportSection(
                    "Stories requiring design review",
                    [
                        s
                        for s in on_release
                        if s.requires_design_review
                        and not s.has_feature_flag_reviews
                        and not s.is_aggregator
                    ],
                ),
                ReportSection(
                    "Stories requiring feature flag reviews",
                    [s for s in on_release if s.requires_feature_flag_review],
                ),
            ]
        )
        return sections

    async def build(self) -> ReleaseReport:
        """Run the full pipeline.

        Returns:
            The assembled ReleaseReport

        Raises:
            GitError: If a release window cannot be read
            TrackerUnavailableError: If the tracker cannot be reached
        """
        commits = await self.collect_commits()
        story_ids = sorted(extract_identifiers(commits.commits), key=int)
        logger.info(
            "commits_collected",
            commits=len(commits.commits),
            duplicates=len(commits.duplicates),
            story_ids=len(story_ids),
        )

        all_stories = await self.fetch_release_stories(story_ids, commits)
        for story in all_stories:
            annotate_labels(story)

        stories = [story for story in all_stories if belongs_in_report(story)]
        stories = await resolve_blocker_closure(stories, self.tracker)
        await self.annotate(stories)

        on_release = [story for story in stories if not story.transient]
        logger.info(
            "stories_classified",
            release=len(on_release),
            transient=len(stories) - len(on_release),
            excluded=len(all_stories) - len(on_release),
        )

        summary = []
        for kind, label in SUMMARY_KINDS:
            of_kind = [story for story in on_release if story.kind == kind]
            summary.append(KindSummary(label, len(of_kind), estimate_sum(of_kind)))

        return ReleaseReport(
            summary=summary,
            sections=self.build_sections(stories, on_release, all_stories),
            story_ids=story_ids,
            duplicates=commits.duplicates,
            stories=stories,
        )


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------


async def _run(config: ReportConfig, show_duplicates: bool) -> str:
    tracker_config = config.tracker
    async with PivotalTrackerClient(
        project_id=tracker_config.project_id,
        token=tracker_config.token,
        base_url=tracker_config.base_url,
        max_concurrency=tracker_config.max_concurrency,
    ) as tracker:
        builder = ReleaseReportBuilder(
            config,
            git=GitClient(config.repo_path),
            tracker=tracker,
            flags=FlagServiceClient(
                app_key=config.flags.app_key,
                api_key=config.flags.api_key,
                environment=config.flags.environment,
                base_url=config.flags.base_url,
            ),
            show_duplicates=show_duplicates,
        )
        report = await builder.build()
    return render_report(report, config.review_base_url, config.branch_name)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Usage:
        release-report release --config release-report.yaml
        release-report --no-dupes > report.md
    """
    parser = argparse.ArgumentParser(
        prog="release-report",
        description="Generate release info as markdown",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="release",
        choices=["release"],
        help="Generate release info (the default)",
    )
    parser.add_argument(
        "--config", "-c",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to the report configuration (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--no-dupes", "--no-duplicate-header",
        dest="show_duplicates",
        action="store_false",
        help="Do not log the duplicate commits removed before the report",
    )
    parser.add_argument(
        "--output", "-o",
        type=str,
        help="Write the report to a file instead of stdout",
    )
    args = parser.parse_args(argv)

    setup_logging()

    try:
        config = load_config(args.config)
        markdown = asyncio.run(_run(config, args.show_duplicates))
    except ReleaseReportError as e:
        logger.error("report_failed", error=str(e), error_type=type(e).__name__)
        return 1

    if args.output:
        Path(args.output).write_text(markdown)
        logger.info("report_written", path=args.output)
    else:
        sys.stdout.write(markdown)
    return 0


if __name__ == "__main__":
    sys.exit(main())
