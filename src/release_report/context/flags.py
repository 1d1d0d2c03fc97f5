"""Feature-flag state lookup.

Stories mention the feature flags they ship behind as ``container.name`` in
their description. The report shows whether each flag is currently on, which
it learns from the flag service (CloudBees Feature Management, formerly
Rollout) public API.

A flag the service does not know about counts as off, matching the SDK's
default for unregistered flags.

API docs: https://docs.cloudbees.com/docs/cloudbees-feature-management-rest-api
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from typing import Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from release_report.errors import FlagServiceError
from release_report.logging_config import get_logger
from release_report.schemas import FeatureFlag

logger = get_logger(__name__)


class FeatureFlagClientProtocol(Protocol):
    """Protocol for looking up the current state of feature flags."""

    async def fetch_flag_states(self, flags: Iterable[FeatureFlag]) -> dict[str, bool]:
        """Return ``full_name -> enabled`` for every requested flag."""
        ...


class FlagServiceClient:
    """Looks flag states up through the flag service REST API.

    One request lists every flag of the application environment; states are
    then picked out by name.
    """

    BASE_URL = "https://x-api.rollout.io/public-api"

    def __init__(
        self,
        app_key: str,
        api_key: str | None = None,
        environment: str = "Production",
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the flag client.

        Args:
            app_key: Application id in the flag service
            api_key: API token. Falls back to the FLAG_API_KEY environment
                     variable if not provided.
            environment: Environment whose flag states are reported
            base_url: API root, defaults to the public endpoint
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._app_key = app_key
        self._environment = environment
        self._base_url = base_url or self.BASE_URL
        self._transport = transport
        api_key = api_key or os.environ.get("FLAG_API_KEY", "")
        self._headers: dict[str, str] = {"Accept": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _list_flags(self) -> list[dict]:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=30.0,
            transport=self._transport,
        ) as client:
            resp = await client.get(
                f"/applications/{self._app_key}/{self._environment}/flags"
            )
            resp.raise_for_status()
            data = resp.json()
        return data if isinstance(data, list) else []

    async def fetch_flag_states(self, flags: Iterable[FeatureFlag]) -> dict[str, bool]:
        """Look up the requested flags.

        Raises:
            FlagServiceError: If the flag service cannot be queried
        """
        wanted = {flag.full_name for flag in flags}
        if not wanted:
            return {}

        try:
            entries = await self._list_flags()
        except (httpx.HTTPError, ValueError) as exc:
            raise FlagServiceError(f"Flag service lookup failed: {exc}") from exc

        known = {
            entry.get("name"): bool(entry.get("enabled", False))
            for entry in entries
            if isinstance(entry, dict)
        }
        missing = sorted(wanted - set(known))
        if missing:
            logger.info("flags_not_registered", flags=missing)
        return {name: known.get(name, False) for name in wanted}


class MockFeatureFlagClient:
    """Mock flag client with fixed states; unknown flags are off."""

    def __init__(self, states: dict[str, bool] | None = None) -> None:
        self._states = states or {}
        self.requested: list[str] = []

    async def fetch_flag_states(self, flags: Iterable[FeatureFlag]) -> dict[str, bool]:
        names = {flag.full_name for flag in flags}
        self.requested.extend(sorted(names))
        return {name: self._states.get(name, False) for name in names}
