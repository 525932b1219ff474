"""Workflow coordination engine.

Key Components:
    - BranchStrategyResolver: Issue labels to branch type, policy and name
    - SmartBranchCreator: Issue branch creation with optional follow-ups
    - ConflictPredictor: Critical-path merge-risk heuristic
    - PullRequestAutomator: Issue-linked pull requests
    - RepositoryRegistry: Registered repositories and their dependencies
    - CrossRepoCoordinator: Dependency-ordered multi-repository operations
      with compensating rollback
    - RepositorySynchronizer / AutoSyncScheduler: File, branch and tag sync
    - ReleaseOrchestrator: Five-phase coordinated releases
    - WorkflowEngine: Facade wiring all of the above
"""
