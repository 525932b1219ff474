"""devflow: cross-repository workflow coordination engine.

Maps issues to branch strategies, opens linked pull requests, predicts merge
risk, and coordinates branch, pull request, sync and release operations
across interdependent repositories with compensating rollback.

Example:
    >>> from devflow import WorkflowEngine
    >>> from devflow.config.settings import DevflowSettings
    >>> engine = WorkflowEngine.from_settings(DevflowSettings.from_yaml("devflow.yaml"))
"""

from devflow.engine.orchestrator import WorkflowEngine

__version__ = "0.1.0"

__all__ = ["WorkflowEngine", "__version__"]
