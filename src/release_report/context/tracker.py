"""Issue tracker client for fetching stories, blockers and reviews.

The tracker speaks the Pivotal Tracker REST v5 API. The report needs:
- stories by id (from commit references and blocker references)
- the blockers of a story
- the reviews of a story
- stories accepted after a point in time

Design notes:
- Uses httpx for async HTTP requests, one shared client per run
- An asyncio.Semaphore bounds the number of requests in flight
- Transport errors are retried with tenacity; once retries are exhausted the
  tracker counts as unreachable and ``TrackerUnavailableError`` is raised
- Any other failure for a single story resolves to ``None`` / ``[]`` so one
  bad story never sinks the report
- Uses a Protocol so the builder doesn't depend on the concrete client

API docs: https://www.pivotaltracker.com/help/api/rest/v5
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Iterable, Mapping
from datetime import datetime
from types import TracebackType
from typing import Any, Protocol

import httpx
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from release_report.blockers import gather_tolerant, normalize_blockers
from release_report.errors import TrackerUnavailableError
from release_report.logging_config import get_logger
from release_report.schemas import BlockerRecord, Review, WorkItem

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Protocol (Interface)
# ---------------------------------------------------------------------------


class TrackerClientProtocol(Protocol):
    """Protocol defining everything the report reads from the tracker."""

    async def fetch_work_item(self, story_id: int) -> WorkItem | None:
        """Fetch one story; ``None`` if it does not resolve to a story."""
        ...

    async def fetch_work_items(self, story_ids: Iterable[int]) -> list[WorkItem | None]:
        """Fetch several stories concurrently, preserving order."""
        ...

    async def fetch_blockers(self, item: WorkItem) -> list[BlockerRecord]:
        """Fetch the blocker entries of a story."""
        ...

    async def fetch_reviews(self, item: WorkItem) -> list[Review]:
        """Fetch the reviews of a story."""
        ...

    async def fetch_accepted_after(self, moment: datetime) -> list[WorkItem]:
        """Fetch the project's stories accepted after a point in time."""
        ...


def _story_from_payload(payload: Any) -> WorkItem | None:
    """Validate a story payload, rejecting errors and non-story resources."""
    if not isinstance(payload, Mapping) or payload.get("kind", "story") != "story":
        return None
    try:
        return WorkItem.model_validate(payload)
    except ValidationError as exc:
        logger.warning("story_payload_invalid", story_id=payload.get("id"), error=str(exc))
        return None


def _reviews_from_payload(payload: Any) -> list[Review]:
    if not isinstance(payload, list):
        return []
    reviews = []
    for entry in payload:
        if isinstance(entry, Mapping) and entry.get("kind") == "review":
            reviews.append(Review.model_validate(entry))
    return reviews


# ---------------------------------------------------------------------------
# Concrete Implementation
# ---------------------------------------------------------------------------


class PivotalTrackerClient:
    """Pivotal Tracker API client using httpx.

    Usage:
        async with PivotalTrackerClient(project_id=123, token="...") as tracker:
            story = await tracker.fetch_work_item(4521)
    """

    BASE_URL = "https://www.pivotaltracker.com/services/v5"

    def __init__(
        self,
        project_id: int,
        token: str | None = None,
        base_url: str | None = None,
        max_concurrency: int = 8,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the tracker client.

        Args:
            project_id: Tracker project the release belongs to
            token: API token. Falls back to the TRACKER_TOKEN environment
                   variable if not provided.
            base_url: API root, defaults to the public v5 endpoint
            max_concurrency: Maximum number of requests in flight
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.project_id = project_id
        self._token = token or os.environ.get("TRACKER_TOKEN", "")
        self._headers: dict[str, str] = {"Accept": "application/json"}
        if self._token:
            self._headers["X-TrackerToken"] = self._token
        self._base_url = base_url or self.BASE_URL
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> PivotalTrackerClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=30.0,
                transport=self._transport,
            )
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _send(self, path: str, params: dict[str, Any] | None) -> httpx.Response:
        return await self._http().get(path, params=params)

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET a tracker resource and decode it.

        Returns:
            The decoded JSON body, or ``None`` when the resource is missing
            or the response is unusable

        Raises:
            TrackerUnavailableError: If the tracker cannot be reached or
                rejects the credentials
        """
        async with self._semaphore:
            try:
                resp = await self._send(path, params)
            except httpx.TransportError as exc:
                raise TrackerUnavailableError(f"Tracker unreachable: {exc}") from exc

        if resp.status_code in (401, 403):
            raise TrackerUnavailableError(
                f"Tracker rejected credentials ({resp.status_code}) for {path}"
            )
        if resp.is_error:
            logger.warning("tracker_request_failed", path=path, status=resp.status_code)
            return None

        try:
            return resp.json()
        except ValueError:
            logger.warning("tracker_response_not_json", path=path)
            return None

    def _story_path(self, item: WorkItem, resource: str) -> str:
        project_id = item.project_id or self.project_id
        return f"/projects/{project_id}/stories/{item.id}/{resource}"

    async def fetch_work_item(self, story_id: int) -> WorkItem | None:
        return _story_from_payload(await self._get_json(f"/stories/{story_id}"))

    async def fetch_work_items(self, story_ids: Iterable[int]) -> list[WorkItem | None]:
        ids = list(story_ids)
        return await gather_tolerant(
            [self.fetch_work_item(story_id) for story_id in ids], "story_fetch", ids
        )

    async def fetch_blockers(self, item: WorkItem) -> list[BlockerRecord]:
        return normalize_blockers(await self._get_json(self._story_path(item, "blockers")))

    async def fetch_reviews(self, item: WorkItem) -> list[Review]:
        return _reviews_from_payload(await self._get_json(self._story_path(item, "reviews")))

    async def fetch_accepted_after(self, moment: datetime) -> list[WorkItem]:
        """Fetch stories accepted after ``moment``.

        The API takes the cutoff as milliseconds since the epoch.
        """
        payload = await self._get_json(
            f"/projects/{self.project_id}/stories",
            params={"accepted_after": int(moment.timestamp() * 1000)},
        )
        if not isinstance(payload, list):
            return []
        stories = [_story_from_payload(entry) for entry in payload]
        return [story for story in stories if story is not None]


# ---------------------------------------------------------------------------
# Mock Implementation (for testing)
# ---------------------------------------------------------------------------


class MockTrackerClient:
    """Mock tracker that serves predefined payloads.

    Every fetch validates a fresh ``WorkItem``, just like the real API would
    return a fresh JSON document, so callers cannot rely on the mock to hand
    out shared objects. Requests are recorded for assertions.

    Usage:
        tracker = MockTrackerClient(
            stories={1: {"id": 1, "kind": "story", "story_type": "bug"}},
            blockers={1: [{"description": "#2 waiting on API"}]},
        )
    """

    def __init__(
        self,
        stories: dict[int, dict] | None = None,
        blockers: dict[int, Any] | None = None,
        reviews: dict[int, list[dict]] | None = None,
        accepted: list[dict] | None = None,
        failing_ids: Iterable[int] = (),
        unavailable: bool = False,
    ) -> None:
        """Initialize with predefined payloads.

        Args:
            stories: story id -> raw story payload
            blockers: story id -> raw blocker payload (any shape)
            reviews: story id -> raw review payloads
            accepted: raw payloads returned by fetch_accepted_after
            failing_ids: story ids whose fetch raises an error
            unavailable: raise TrackerUnavailableError from every call
        """
        self._stories = stories or {}
        self._blockers = blockers or {}
        self._reviews = reviews or {}
        self._accepted = accepted or []
        self._failing_ids = set(failing_ids)
        self._unavailable = unavailable

        self.story_requests: list[int] = []
        self.blocker_requests: list[int] = []
        self.review_requests: list[int] = []
        self.accepted_requests: list[datetime] = []

    def _check_available(self) -> None:
        if self._unavailable:
            raise TrackerUnavailableError("mock tracker is unavailable")

    async def fetch_work_item(self, story_id: int) -> WorkItem | None:
        self.story_requests.append(story_id)
        self._check_available()
        if story_id in self._failing_ids:
            raise RuntimeError(f"mock failure for story {story_id}")
        return _story_from_payload(self._stories.get(story_id))

    async def fetch_work_items(self, story_ids: Iterable[int]) -> list[WorkItem | None]:
        ids = list(story_ids)
        return await gather_tolerant(
            [self.fetch_work_item(story_id) for story_id in ids], "story_fetch", ids
        )

    async def fetch_blockers(self, item: WorkItem) -> Any:
        self.blocker_requests.append(item.id)
        self._check_available()
        return self._blockers.get(item.id, [])

    async def fetch_reviews(self, item: WorkItem) -> list[Review]:
        self.review_requests.append(item.id)
        self._check_available()
        return _reviews_from_payload(self._reviews.get(item.id, []))

    async def fetch_accepted_after(self, moment: datetime) -> list[WorkItem]:
        self.accepted_requests.append(moment)
        self._check_available()
        stories = [_story_from_payload(entry) for entry in self._accepted]
        return [story for story in stories if story is not None]
