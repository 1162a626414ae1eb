"""Services for the AutoFlow engine."""

from autoflow.services.action_executor import ActionExecutor
from autoflow.services.credential_manager import CredentialLifecycleManager
from autoflow.services.engine import WorkflowEngine, build_engine, get_engine
from autoflow.services.trigger_poller import TriggerPoller, matches_filters
from autoflow.services.workflow_runner import WorkflowRunner

__all__ = [
    "ActionExecutor",
    "CredentialLifecycleManager",
    "TriggerPoller",
    "WorkflowEngine",
    "WorkflowRunner",
    "build_engine",
    "get_engine",
    "matches_filters",
]
