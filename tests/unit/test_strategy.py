"""Tests for devflow/engine/strategy.py - label to branch type resolution and naming."""

import pytest

from devflow.config.settings import BranchingConfig, BranchPolicyConfig
from devflow.engine.strategy import BranchStrategyResolver, resolve_branch_type, slugify
from devflow.enums import BranchType
from devflow.models.domain import Issue

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def resolver() -> BranchStrategyResolver:
    """Resolver with the default policies."""
    return BranchStrategyResolver()


# =============================================================================
# Branch type resolution
# =============================================================================


class TestResolveBranchType:
    """Tests for resolve_branch_type."""

    @pytest.mark.parametrize(
        "labels,expected",
        [
            (["enhancement"], BranchType.FEATURE),
            (["feature"], BranchType.FEATURE),
            (["bug"], BranchType.BUGFIX),
            (["bugfix"], BranchType.BUGFIX),
            (["critical"], BranchType.HOTFIX),
            (["hotfix"], BranchType.HOTFIX),
            (["release"], BranchType.RELEASE),
            ([], BranchType.FEATURE),
            (["documentation", "question"], BranchType.FEATURE),
        ],
    )
    def test_single_labels(self, labels, expected) -> None:
        """Should map each recognized label to its branch type."""
        assert resolve_branch_type(labels) == expected

    def test_hotfix_wins_over_bug(self) -> None:
        """Should prefer hotfix when an issue is both critical and a bug."""
        assert resolve_branch_type(["bug", "critical"]) == BranchType.HOTFIX

    def test_release_wins_over_feature(self) -> None:
        """Should prefer release over bugfix and feature."""
        assert resolve_branch_type(["enhancement", "bug", "release"]) == BranchType.RELEASE

    def test_case_insensitive(self) -> None:
        """Should compare labels case-insensitively."""
        assert resolve_branch_type(["Bug"]) == BranchType.BUGFIX
        assert resolve_branch_type(["CRITICAL"]) == BranchType.HOTFIX

    def test_label_objects(self) -> None:
        """Should accept provider label objects with a name key."""
        assert resolve_branch_type([{"name": "bug", "color": "d73a4a"}]) == BranchType.BUGFIX


# =============================================================================
# Slugs
# =============================================================================


class TestSlugify:
    """Tests for slugify."""

    def test_basic(self) -> None:
        """Should lower-case and hyphenate words."""
        assert slugify("Add new feature") == "add-new-feature"

    def test_drops_punctuation(self) -> None:
        """Should drop characters outside letters, digits and hyphens."""
        assert slugify("Fix: crash on login (iOS)!") == "fix-crash-on-login-ios"

    def test_collapses_whitespace(self) -> None:
        """Should collapse whitespace runs into one hyphen."""
        assert slugify("  spaced   out\ttitle ") == "spaced-out-title"

    def test_truncates(self) -> None:
        """Should truncate to the maximum length."""
        assert slugify("a" * 80) == "a" * 50
        assert slugify("abcdef", max_length=3) == "abc"

    def test_empty_title(self) -> None:
        """Should return an empty slug for an empty title."""
        assert slugify("") == ""


# =============================================================================
# Resolver
# =============================================================================


class TestBranchStrategyResolver:
    """Tests for BranchStrategyResolver.resolve."""

    def test_feature_branch_name(self, resolver, sample_issue) -> None:
        """Should build the feature branch name from key, number and slug."""
        descriptor = resolver.resolve(sample_issue)

        assert descriptor.name == "feature/DEVFLOW-42-add-new-feature"
        assert descriptor.type == BranchType.FEATURE
        assert descriptor.base_ref == "main"
        assert descriptor.issue is sample_issue

    def test_bug_resolves_to_bugfix(self, resolver) -> None:
        """Should resolve bug issues to bugfix branches from main with auto-merge."""
        descriptor = resolver.resolve(Issue(number=7, title="Login fails", labels=["bug"]))

        assert descriptor.name == "bugfix/DEVFLOW-7-login-fails"
        assert descriptor.base_ref == "main"
        assert descriptor.policy.auto_merge is True

    def test_critical_resolves_to_hotfix(self, resolver) -> None:
        """Should resolve critical issues to hotfix branches from production."""
        descriptor = resolver.resolve(Issue(number=9, title="Outage", labels=["critical", "bug"]))

        assert descriptor.type == BranchType.HOTFIX
        assert descriptor.name == "hotfix/DEVFLOW-9-outage"
        assert descriptor.base_ref == "production"
        assert descriptor.policy.priority == "high"

    def test_no_labels_resolves_to_feature(self, resolver) -> None:
        """Should fall back to feature when no label is recognized."""
        descriptor = resolver.resolve(Issue(number=3, title="Something"))

        assert descriptor.type == BranchType.FEATURE

    def test_release_uses_develop(self, resolver) -> None:
        """Should cut release branches from develop."""
        descriptor = resolver.resolve(Issue(number=5, title="Cut 2.0", labels=["release"]))

        assert descriptor.base_ref == "develop"
        assert "require-approvals:2" in descriptor.policy.protection_rules

    def test_base_ref_override(self, resolver, sample_issue) -> None:
        """Should use an explicit base ref over the policy's."""
        descriptor = resolver.resolve(sample_issue, base_ref="develop")

        assert descriptor.base_ref == "develop"

    def test_empty_title_keeps_trailing_hyphen(self, resolver) -> None:
        """Should still produce a name when the title is empty."""
        descriptor = resolver.resolve(Issue(number=11, title=""))

        assert descriptor.name == "feature/DEVFLOW-11-"

    def test_from_config(self) -> None:
        """Should take issue key, slug length and policy overrides from config."""
        config = BranchingConfig(
            issue_key="ACME",
            slug_max_length=5,
            strategies={BranchType.FEATURE: BranchPolicyConfig(prefix="feat/", base_ref="trunk")},
        )
        resolver = BranchStrategyResolver.from_config(config)

        descriptor = resolver.resolve(Issue(number=1, title="Add new feature"))

        assert descriptor.name == "feat/ACME-1-add-n"
        assert descriptor.base_ref == "trunk"
        # Other types keep their defaults
        assert resolver.policy_for(BranchType.HOTFIX).base_ref == "production"

    def test_deterministic(self, resolver, sample_issue) -> None:
        """Should resolve the same issue to the same name every time."""
        assert resolver.resolve(sample_issue).name == resolver.resolve(sample_issue).name
