"""Trigger polling with at-most-once delivery per external event.

Order of operations for every batch of events, polled or pushed:
1. Claim each event in the dedup ledger, in provider order; already-claimed
   events are dropped
2. Apply the trigger's filters (``keywords``, ``min_score``) to the claimed
   events

Claiming happens before filtering, so an event that fails a filter stays
marked and is never reconsidered, even if the filter changes later. Claiming
also happens before execution: a crash between the two loses the event rather
than risking a duplicate post or message.
"""

import logging
from typing import Any

from autoflow.db.dedup_ledger import DedupLedger
from autoflow.errors import WorkflowValidationError
from autoflow.models.event import ExternalEvent
from autoflow.models.workflow import Workflow
from autoflow.services.credential_manager import CredentialLifecycleManager

logger = logging.getLogger(__name__)


def parse_keywords(raw: Any) -> list[str]:
    """Normalize a ``keywords`` setting (comma-separated string or list).

    Raises:
        WorkflowValidationError: If the setting is neither a string nor a list
    """
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    elif not isinstance(raw, list | tuple):
        raise WorkflowValidationError(
            f"keywords must be a string or a list, got {type(raw).__name__}"
        )
    return [str(k).strip().lower() for k in raw if str(k).strip()]


def parse_min_score(raw: Any) -> float | None:
    """Normalize a ``min_score`` setting; unset, empty and 0 mean no threshold.

    Raises:
        WorkflowValidationError: If the setting is not a number
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise WorkflowValidationError("min_score must be a number, got bool")
    try:
        threshold = float(raw)
    except (TypeError, ValueError) as e:
        raise WorkflowValidationError(f"min_score must be a number, got {raw!r}") from e
    return threshold or None


def validate_filters(config: dict[str, Any]) -> None:
    """Reject trigger filter settings that could not be applied to events."""
    parse_keywords(config.get("keywords"))
    parse_min_score(config.get("min_score"))


def matches_filters(event: ExternalEvent, config: dict[str, Any]) -> bool:
    """Check an event against the trigger's keyword and score filters."""
    keywords = parse_keywords(config.get("keywords"))
    if keywords:
        text = event.text.lower()
        if not any(keyword in text for keyword in keywords):
            return False

    min_score = parse_min_score(config.get("min_score"))
    if min_score is not None:
        if event.score is None or event.score < min_score:
            return False

    return True


class TriggerPoller:
    """Detects new trigger events for workflows."""

    def __init__(self, lifecycle: CredentialLifecycleManager, ledger: DedupLedger) -> None:
        self._lifecycle = lifecycle
        self._ledger = ledger

    async def fetch(self, workflow: Workflow) -> list[ExternalEvent]:
        """Fetch the trigger source's current window of events."""
        trigger = workflow.trigger
        return await self._lifecycle.fetch_events(
            workflow.user_id,
            trigger.service_name,
            trigger.event_type,
            trigger.configuration,
        )

    async def accept(self, workflow: Workflow, events: list[ExternalEvent]) -> list[ExternalEvent]:
        """Claim, then filter, a batch of events for a workflow.

        Returns:
            Events that were newly claimed and pass the trigger's filters,
            in the order given
        """
        trigger = workflow.trigger
        claimed: list[ExternalEvent] = []

        for event in events:
            try:
                is_new = await self._ledger.claim(
                    workflow.user_id, trigger.service_name, event.id, event.scope
                )
            except Exception:
                # Ledger write failures never abort the cycle; the event goes out unmarked
                logger.exception(
                    f"Failed to record {trigger.service_name} event {event.id} "
                    f"for workflow {workflow.id}; delivering anyway"
                )
                is_new = True

            if is_new:
                claimed.append(event)

        accepted = [event for event in claimed if matches_filters(event, trigger.configuration)]

        logger.info(
            f"Workflow {workflow.id}: {len(events)} fetched, {len(claimed)} new, "
            f"{len(accepted)} matching filters"
        )
        return accepted

    async def poll(self, workflow: Workflow) -> list[ExternalEvent]:
        """Run one poll: fetch through the lifecycle manager, then accept."""
        events = await self.fetch(workflow)
        return await self.accept(workflow, events)
