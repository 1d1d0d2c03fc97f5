"""Report configuration loaded from YAML.

The configuration describes where the data comes from (repository, tracker
project, flag service), which release windows to compare and which extra
sections the report should contain. JSON files work as well, since JSON is a
subset of YAML.

Example:

    repo_path: .
    branch_name: master
    tracker:
      project_id: 123456
      review_type_ids:
        code: [101]
        qa: [102]
        design: [103]
        feature_flag: [104]
    flags:
      app_key: 5e1c0ffee
    review_base_url: https://upsource.example.com/web
    releases:
      - {from: v1.0.0, to: v1.1.0}
      - {from: v1.1.0, to: HEAD}
    sections:
      - header: Consumer bugs
        where:
          - equals: {kind: bug}
          - includes: {labels: [consumer, new consumer]}

Every section's ``where`` expression is parsed while the file is loaded, so
a typo in a command name stops the run before anything is fetched.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from release_report.errors import ConfigError
from release_report.filters import Where, parse_where
from release_report.schemas import ReleaseWindow

DEFAULT_CONFIG_PATH = "release-report.yaml"


class ReviewTypeIds(BaseModel):
    """Tracker review type ids, grouped by what the review checks."""

    code: list[int] = Field(default_factory=list)
    qa: list[int] = Field(default_factory=list)
    design: list[int] = Field(default_factory=list)
    feature_flag: list[int] = Field(default_factory=list)


class TrackerConfig(BaseModel):
    project_id: int
    token: str | None = None
    base_url: str | None = None
    max_concurrency: int = Field(8, gt=0)
    review_type_ids: ReviewTypeIds = Field(default_factory=ReviewTypeIds)


class FlagServiceConfig(BaseModel):
    app_key: str = ""
    api_key: str | None = None
    environment: str = "Production"
    base_url: str | None = None
    dashboard_url: str = "https://app.rollout.io/app/{app_key}/flags?filter={flag}"


class AttachConfig(BaseModel):
    """Attribute written onto every story a section selects."""

    key: str
    value: Any = True


class SectionConfig(BaseModel):
    """A configured report section.

    Attributes:
        header: Section heading
        stories: "release" selects among the release's own stories, "all"
                 also includes obsolete and carried-over ones
        where: Filter expression, parsed at load time
        attach: Optional attribute to set on the selected stories
    """

    header: str
    stories: Literal["release", "all"] = "release"
    where: Any = Field(default_factory=tuple)
    attach: AttachConfig | None = None

    @field_validator("where", mode="before")
    @classmethod
    def _parse_where(cls, value: Any) -> Where:
        return parse_where(value)


class ReportConfig(BaseModel):
    """Top-level configuration loaded from YAML."""

    repo_path: str = "."
    branch_name: str = "master"
    tracker: TrackerConfig
    flags: FlagServiceConfig = Field(default_factory=FlagServiceConfig)
    review_base_url: str | None = None
    releases: list[ReleaseWindow] = Field(..., min_length=1)
    sections: list[SectionConfig] = Field(default_factory=list)


def load_config(path: str | Path = DEFAULT_CONFIG_PATH) -> ReportConfig:
    """Load and validate a report configuration file.

    Args:
        path: Path to the YAML (or JSON) configuration file.

    Returns:
        A validated ReportConfig.

    Raises:
        ConfigError: If the file is missing, is not valid YAML or fails
            validation.
        FilterConfigError: If a section's where expression is invalid.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        raw = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    try:
        return ReportConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid report config in {path}: {exc}") from exc
