"""
Database lifecycle state machine.

This module decides which action a reconciliation pass takes for a resource
and validates the phase transitions the reconciler writes to status.

Phases (``status.status``):
- Pending: Resource accepted, nothing done yet
- Creating: CREATE DATABASE in progress
- Created: Database exists and its identifier is recorded
- Syncing: Drift detected, ALTER in progress
- Synced: Live configuration matches the spec
- Error: Last pass failed; re-evaluated on the next pass

Usage:
    >>> from mssql_operator.core.state_machine import DatabaseStateMachine, ReconcileAction
    >>>
    >>> DatabaseStateMachine.decide(is_deleting=False, has_finalizer=True, database_id=None)
    <ReconcileAction.CREATE: 'create'>
    >>> DatabaseStateMachine.can_transition(DatabasePhase.CREATED, DatabasePhase.SYNCED)
    True
"""

from enum import Enum
from typing import Dict, Optional, Set

import structlog

from mssql_operator.models.database import DatabasePhase

logger = structlog.get_logger(__name__)


class ReconcileAction(str, Enum):
    """What a reconciliation pass does"""
    CREATE = "create"
    SYNC = "sync"
    ALTER = "alter"
    DELETE = "delete"
    WAIT = "wait"
    NONE = "none"


class DatabaseStateMachine:
    """
    State machine for the Database resource lifecycle.

    Error is reachable from every phase and is never sticky: the next pass
    starts over from whatever the resource and the server look like.
    """

    TRANSITIONS: Dict[DatabasePhase, Set[DatabasePhase]] = {
        DatabasePhase.PENDING: {
            DatabasePhase.CREATING,
            DatabasePhase.CREATED,
            DatabasePhase.SYNCED,  # Identifier recovered from the annotation
            DatabasePhase.ERROR,
        },
        DatabasePhase.CREATING: {
            DatabasePhase.CREATED,
            DatabasePhase.ERROR,
        },
        DatabasePhase.CREATED: {
            DatabasePhase.SYNCING,
            DatabasePhase.SYNCED,
            DatabasePhase.ERROR,
        },
        DatabasePhase.SYNCING: {
            DatabasePhase.SYNCED,
            DatabasePhase.ERROR,
        },
        DatabasePhase.SYNCED: {
            DatabasePhase.SYNCING,
            DatabasePhase.ERROR,
        },
        DatabasePhase.ERROR: {
            DatabasePhase.CREATING,
            DatabasePhase.CREATED,
            DatabasePhase.SYNCING,
            DatabasePhase.SYNCED,
        },
    }

    # Phase written when an action completes successfully
    RESULT_PHASE: Dict[ReconcileAction, DatabasePhase] = {
        ReconcileAction.CREATE: DatabasePhase.CREATED,
        ReconcileAction.SYNC: DatabasePhase.SYNCED,
        ReconcileAction.ALTER: DatabasePhase.SYNCED,
    }

    @classmethod
    def decide(
        cls,
        is_deleting: bool,
        has_finalizer: bool,
        database_id: Optional[str],
    ) -> ReconcileAction:
        """
        Pick the action for a pass.

        Once an identifier is recorded, create is never chosen again.

        Example:
            >>> DatabaseStateMachine.decide(True, True, "ABC123")
            <ReconcileAction.DELETE: 'delete'>
            >>> DatabaseStateMachine.decide(True, False, "ABC123")
            <ReconcileAction.NONE: 'none'>
            >>> DatabaseStateMachine.decide(False, True, "ABC123")
            <ReconcileAction.SYNC: 'sync'>
        """
        if is_deleting:
            return ReconcileAction.DELETE if has_finalizer else ReconcileAction.NONE
        if not database_id:
            return ReconcileAction.CREATE
        return ReconcileAction.SYNC

    @classmethod
    def can_transition(
        cls,
        from_phase: Optional[DatabasePhase],
        to_phase: DatabasePhase
    ) -> bool:
        """
        Check if a phase transition is valid.

        A resource without a phase is Pending; staying in the same phase is
        always allowed.
        """
        current = from_phase or DatabasePhase.PENDING
        if current == to_phase:
            return True
        return to_phase in cls.TRANSITIONS.get(current, set())

    @classmethod
    def validate_transition(
        cls,
        from_phase: Optional[DatabasePhase],
        to_phase: DatabasePhase,
        resource_key: Optional[str] = None
    ) -> None:
        """
        Validate a phase transition and raise if it is not allowed.

        Raises:
            ValueError: If transition is not allowed

        Example:
            >>> DatabaseStateMachine.validate_transition(
            ...     DatabasePhase.CREATING,
            ...     DatabasePhase.SYNCING,
            ... )
            Traceback (most recent call last):
                ...
            ValueError: Invalid phase transition from Creating to Syncing
        """
        if not cls.can_transition(from_phase, to_phase):
            current = from_phase or DatabasePhase.PENDING
            error_msg = f"Invalid phase transition from {current.value} to {to_phase.value}"
            if resource_key:
                error_msg += f" for {resource_key}"

            logger.error(
                "invalid_phase_transition",
                resource=resource_key,
                from_phase=current.value,
                to_phase=to_phase.value,
                allowed_phases=sorted(p.value for p in cls.TRANSITIONS.get(current, set())),
            )
            raise ValueError(error_msg)

    @classmethod
    def phase_for_result(cls, action: ReconcileAction) -> Optional[DatabasePhase]:
        """Phase written after ``action`` succeeds, if any."""
        return cls.RESULT_PHASE.get(action)
