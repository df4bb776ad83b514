"""Configuration schema for gdm.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, Field, field_validator

# Work-item batch endpoint accepts at most this many ids per request
MAX_BATCH_SIZE = 200


class RemoteConfig(BaseModel):
    """Remote the release branches are reconciled against."""

    name: str = Field(
        default="origin",
        description="Name of the configured git remote",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Remote name cannot be empty")
        return v


class GitSettings(BaseModel):
    """Timeouts and retry policy for networked git operations."""

    timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Upper bound for a single fetch or push",
    )
    fetch_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Extra fetch attempts before the run is aborted (push is never retried)",
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay between fetch attempts",
    )


class WorkTrackingConfig(BaseModel):
    """Azure DevOps work-tracking settings."""

    organization: str = Field(
        default="",
        description="Organization name (empty = work-item lookup disabled)",
    )
    project: str = Field(
        default="",
        description="Project holding work items and the git repository",
    )
    repository: str = Field(
        default="",
        description="Repository name or id pull requests are opened against",
    )
    base_url: str = Field(
        default="https://dev.azure.com",
        description="Service root; the organization is appended",
    )
    api_version: str = Field(
        default="7.1",
        description="REST api-version query parameter",
    )
    batch_size: int = Field(
        default=MAX_BATCH_SIZE,
        ge=1,
        le=MAX_BATCH_SIZE,
        description="Ids per work-item batch request",
    )
    max_concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Batch requests in flight at once",
    )
    error_policy: Literal["omit", "fail"] = Field(
        default="omit",
        description="How the service treats ids it cannot return",
    )
    fields: List[str] = Field(
        default_factory=lambda: [
            "System.Id",
            "System.Title",
            "System.State",
            "System.WorkItemType",
        ],
        description="Work-item fields requested from the service",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout per request",
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def enabled(self) -> bool:
        return bool(self.organization and self.project)


class ReleaseConfig(BaseModel):
    """How the pull request for a release is worded."""

    title_template: str = Field(
        default="Release {date}: {target} into {base}",
        description="Title template. Placeholders: {date}, {base}, {target}, {ahead}",
    )
    draft: bool = Field(
        default=False,
        description="Open the pull request as a draft",
    )
    max_description_length: int = Field(
        default=4000,
        ge=100,
        description="Description is truncated beyond this many characters",
    )

    @field_validator("title_template")
    @classmethod
    def validate_title_template(cls, v: str) -> str:
        try:
            v.format(date="", base="", target="", ahead=0)
        except (KeyError, IndexError) as e:
            raise ValueError(f"Unknown placeholder in title template: {e}")
        return v


class GdmConfig(BaseModel):
    """Root configuration model."""

    version: int = Field(
        default=1,
        ge=1,
        description="Config schema version",
    )

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    git: GitSettings = Field(default_factory=GitSettings)
    work_tracking: WorkTrackingConfig = Field(default_factory=WorkTrackingConfig)
    release: ReleaseConfig = Field(default_factory=ReleaseConfig)

    @classmethod
    def default(cls) -> "GdmConfig":
        """Create config with all defaults."""
        return cls()
