"""
Configuration system using Pydantic for type-safe settings management.

This module provides the configuration classes for the coordination engine:
the remote gateway, branching policies, conflict prediction, coordination
switches, release defaults and the repositories to register.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from devflow.enums import BranchType, RepositoryRole
from devflow.exceptions import ConfigurationError
from devflow.exceptions import ValidationError as DevflowValidationError
from devflow.models.domain import BranchPolicy, RepositoryDescriptor, SyncSpec

DEFAULT_CRITICAL_PATTERNS: list[str] = [
    # dependency manifests
    r"(^|/)package\.json$",
    r"(^|/)(package-lock\.json|yarn\.lock|pnpm-lock\.yaml)$",
    r"(^|/)requirements[^/]*\.txt$",
    r"(^|/)(pyproject\.toml|setup\.py|setup\.cfg|Pipfile|Pipfile\.lock|poetry\.lock)$",
    r"(^|/)(go\.mod|go\.sum|Cargo\.toml|Cargo\.lock|pom\.xml|build\.gradle(\.kts)?)$",
    # CI definitions
    r"(^|/)\.github/workflows/",
    r"(^|/)\.gitlab-ci\.yml$",
    r"(^|/)Jenkinsfile$",
    # build and environment configuration
    r"(^|/)Dockerfile[^/]*$",
    r"(^|/)docker-compose[^/]*\.ya?ml$",
    r"(^|/)Makefile$",
    r"(^|/)config/",
    r"(^|/)\.env",
    # schema
    r"(^|/)database/",
    r"(^|/)migrations/",
]


class GatewayConfig(BaseModel):
    """Remote hosting service configuration."""

    provider_type: Literal["github"] = Field(default="github", description="Type of hosting service")
    base_url: HttpUrl = Field(
        default="https://api.github.com",
        validate_default=True,
        description="API base URL (GitHub Enterprise supported)",
    )
    api_token: str = Field(..., description="API token; supports ${ENV} interpolation in YAML")
    timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")


class BranchPolicyConfig(BaseModel):
    """Policy for one branch type."""

    prefix: str
    base_ref: str
    protection_rules: list[str] = Field(default_factory=list)
    auto_merge: bool = False
    priority: str | None = None

    def to_policy(self) -> BranchPolicy:
        return BranchPolicy(
            prefix=self.prefix,
            base_ref=self.base_ref,
            protection_rules=tuple(self.protection_rules),
            auto_merge=self.auto_merge,
            priority=self.priority,
        )


def _default_strategies() -> dict[BranchType, BranchPolicyConfig]:
    return {
        BranchType.FEATURE: BranchPolicyConfig(
            prefix="feature/",
            base_ref="main",
            protection_rules=["require-pr-reviews", "dismiss-stale-reviews"],
            auto_merge=False,
        ),
        BranchType.BUGFIX: BranchPolicyConfig(
            prefix="bugfix/",
            base_ref="main",
            protection_rules=["require-pr-reviews"],
            auto_merge=True,
        ),
        BranchType.HOTFIX: BranchPolicyConfig(
            prefix="hotfix/",
            base_ref="production",
            protection_rules=["require-pr-reviews", "require-status-checks"],
            auto_merge=True,
            priority="high",
        ),
        BranchType.RELEASE: BranchPolicyConfig(
            prefix="release/",
            base_ref="develop",
            protection_rules=["require-pr-reviews", "require-approvals:2"],
            auto_merge=False,
        ),
    }


class BranchingConfig(BaseModel):
    """Smart branching configuration."""

    issue_key: str = Field(default="DEVFLOW", description="Key placed before the issue number in branch names")
    slug_max_length: int = Field(default=50, ge=0, le=200, description="Maximum length of the title slug")
    strategies: dict[BranchType, BranchPolicyConfig] = Field(default_factory=_default_strategies)

    @model_validator(mode="after")
    def fill_missing_strategies(self) -> BranchingConfig:
        """Partial overrides keep the defaults for the other branch types."""
        defaults = _default_strategies()
        for branch_type, policy in defaults.items():
            self.strategies.setdefault(branch_type, policy)
        return self

    def policies(self) -> dict[BranchType, BranchPolicy]:
        return {branch_type: cfg.to_policy() for branch_type, cfg in self.strategies.items()}


class ConflictConfig(BaseModel):
    """Conflict prediction configuration."""

    critical_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_CRITICAL_PATTERNS))
    large_change_threshold: int = Field(default=50, ge=0, description="Changed lines flagged as high volume")

    @field_validator("critical_patterns")
    @classmethod
    def validate_patterns(cls, patterns: list[str]) -> list[str]:
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid critical path pattern {pattern!r}: {e}") from e
        return patterns


class CoordinationConfig(BaseModel):
    """Cross-repository coordination switches."""

    enable_conflict_prevention: bool = Field(
        default=True, description="Fail fast when a coordinated branch already exists anywhere"
    )
    enable_dependency_tracking: bool = Field(default=True, description="Order repositories by dependencies")
    enable_auto_sync: bool = Field(default=False, description="Run per-repository auto-sync timers")
    sync_interval: float = Field(default=300.0, gt=0, description="Seconds between auto-sync firings")
    continue_on_error: bool = Field(
        default=False, description="Default for requests that do not say whether to continue on error"
    )


class ReleaseSettings(BaseModel):
    """Release orchestration defaults."""

    base_branch: str = Field(default="develop", description="Ref release branches are cut from")
    version_file: str = Field(default="package.json", description="Version manifest rewritten per repository")
    rollback_branches: bool = Field(
        default=False,
        description="Also delete created release branches on failure (releases are always deleted)",
    )
    strict_checks: bool = Field(default=False, description="Abort when a pre-release check fails")
    back_merge_base: str = Field(default="main", description="Branch release branches are merged back into")
    create_back_merge_pr: bool = Field(default=False, description="Open back-merge pull requests after release")


class RepositoryConfig(BaseModel):
    """Repository to register at startup."""

    owner: str = Field(..., description="Repository owner/organization")
    name: str = Field(..., description="Repository name")
    role: str = Field(default=RepositoryRole.STANDARD.value, description="critical, standard or caller-defined")
    dependencies: list[str] = Field(default_factory=list, description="owner/name of repositories depended on")
    auto_sync: dict[str, Any] | None = Field(default=None, description="Sync spec run by the auto-sync timer")

    @field_validator("dependencies")
    @classmethod
    def validate_dependencies(cls, dependencies: list[str]) -> list[str]:
        for dep in dependencies:
            if dep.count("/") != 1 or dep.startswith("/") or dep.endswith("/"):
                raise ValueError(f"Dependency must be owner/name, got: {dep!r}")
        return dependencies

    @field_validator("auto_sync")
    @classmethod
    def validate_auto_sync(cls, auto_sync: dict[str, Any] | None) -> dict[str, Any] | None:
        if auto_sync is not None:
            try:
                SyncSpec.from_mapping(auto_sync)
            except DevflowValidationError as e:
                raise ValueError(e.message) from e
        return auto_sync

    def to_descriptor(self) -> RepositoryDescriptor:
        return RepositoryDescriptor(
            owner=self.owner,
            name=self.name,
            role=self.role,
            dependencies=frozenset(self.dependencies),
            auto_sync=SyncSpec.from_mapping(self.auto_sync) if self.auto_sync else None,
        )


class DevflowSettings(BaseSettings):
    """Main settings.

    Combines all configuration sections and provides YAML loading with
    environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="DEVFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    gateway: GatewayConfig
    branching: BranchingConfig = Field(default_factory=BranchingConfig)
    conflicts: ConflictConfig = Field(default_factory=ConflictConfig)
    coordination: CoordinationConfig = Field(default_factory=CoordinationConfig)
    release: ReleaseSettings = Field(default_factory=ReleaseSettings)
    repositories: list[RepositoryConfig] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, config_path: str) -> DevflowSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} syntax.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            DevflowSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Comment lines are left untouched.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
