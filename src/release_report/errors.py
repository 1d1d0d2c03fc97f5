"""Exception hierarchy for release report generation."""

from __future__ import annotations


class ReleaseReportError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(ReleaseReportError):
    """The report configuration file is missing, unreadable or invalid."""


class FilterConfigError(ConfigError):
    """A section's ``where`` expression names an unknown command or is malformed."""


class TrackerUnavailableError(ReleaseReportError):
    """The issue tracker could not be reached at all."""


class GitError(ReleaseReportError):
    """Running ``git`` failed."""


class FlagServiceError(ReleaseReportError):
    """Feature flag states could not be looked up."""
