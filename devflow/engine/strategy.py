"""
Branch strategy resolution.

Maps an issue's labels to a branch type and policy, and derives the branch
name. Resolution is pure: nothing here touches the remote service.

Example:
    >>> resolver = BranchStrategyResolver()
    >>> issue = Issue(number=42, title="Add new feature", labels=["enhancement"])
    >>> resolver.resolve(issue).name
    'feature/DEVFLOW-42-add-new-feature'
"""

import re
from collections.abc import Iterable, Mapping
from typing import Any

from devflow.config.settings import BranchingConfig
from devflow.enums import BranchType
from devflow.models.domain import BranchDescriptor, BranchPolicy, Issue

# Highest priority first
LABEL_PRIORITY: list[tuple[BranchType, frozenset[str]]] = [
    (BranchType.HOTFIX, frozenset({"critical", "hotfix"})),
    (BranchType.RELEASE, frozenset({"release"})),
    (BranchType.BUGFIX, frozenset({"bug", "bugfix"})),
    (BranchType.FEATURE, frozenset({"enhancement", "feature"})),
]


def resolve_branch_type(labels: Iterable[Any]) -> BranchType:
    """Pick the branch type for a set of labels.

    Labels may be strings or mappings with a ``name`` key and are compared
    case-insensitively. Unrecognized or missing labels resolve to feature.
    """
    names = {(label["name"] if isinstance(label, Mapping) else str(label)).lower() for label in labels}

    for branch_type, recognized in LABEL_PRIORITY:
        if names & recognized:
            return branch_type
    return BranchType.FEATURE


def slugify(title: str, max_length: int = 50) -> str:
    """Lower-case, drop punctuation, join words with hyphens, truncate."""
    slug = re.sub(r"[^a-z0-9\s-]", "", (title or "").lower())
    slug = re.sub(r"\s+", "-", slug.strip())
    return slug[:max_length]


class BranchStrategyResolver:
    """Resolves issues to branch descriptors under a fixed set of policies."""

    def __init__(
        self,
        policies: Mapping[BranchType, BranchPolicy] | None = None,
        issue_key: str = "DEVFLOW",
        slug_max_length: int = 50,
    ) -> None:
        self.policies = dict(policies) if policies is not None else BranchingConfig().policies()
        self.issue_key = issue_key
        self.slug_max_length = slug_max_length

    @classmethod
    def from_config(cls, config: BranchingConfig) -> "BranchStrategyResolver":
        return cls(policies=config.policies(), issue_key=config.issue_key, slug_max_length=config.slug_max_length)

    def policy_for(self, branch_type: BranchType) -> BranchPolicy:
        return self.policies[branch_type]

    def branch_name(self, issue: Issue, policy: BranchPolicy) -> str:
        slug = slugify(issue.title, self.slug_max_length)
        return f"{policy.prefix}{self.issue_key}-{issue.number}-{slug}"

    def resolve(self, issue: Issue, base_ref: str | None = None) -> BranchDescriptor:
        """Resolve an issue to its branch.

        Args:
            issue: Originating issue
            base_ref: Override for the policy's base ref

        Returns:
            Descriptor of the branch to create
        """
        branch_type = resolve_branch_type(issue.labels)
        policy = self.policy_for(branch_type)

        return BranchDescriptor(
            name=self.branch_name(issue, policy),
            type=branch_type,
            base_ref=base_ref or policy.base_ref,
            issue=issue,
            policy=policy,
        )
