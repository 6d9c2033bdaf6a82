"""
ORM-level append-only enforcement for history rows.

    session.flush()
         │
         ▼
    [before_update] ──▶ _check_*()  ──▶ ImmutableRecordError
    [before_delete] ──▶ _check_*()  ──▶ ImmutableRecordError
         │
         ▼
    SQL sent to the database (only if every check passes)

Protected entities:

    Entity                  | When immutable
    ------------------------|------------------------------------------------
    TransitionRecord        | always (from creation)
    StagePerformanceMetric  | once ``exited_at`` has been set (closed)
    Reminder                | always, except flipping ``sent`` to True

Usage:
    from jobflow.models.immutability import register_immutability_listeners
    register_immutability_listeners()   # called once by create_app
"""

import logging

from sqlalchemy import event, inspect

from jobflow.core.exceptions import ImmutableRecordError
from jobflow.models.base import stored_value

logger = logging.getLogger(__name__)

REMINDER_MUTABLE_FIELDS = frozenset({"sent", "sent_at"})


def _has_changes(target) -> bool:
    return any(attr.history.has_changes() for attr in inspect(target).attrs)


def _blocked(entity_type, target, operation, reason):
    logger.error(
        "Immutability violation blocked: %s %s id=%s",
        operation, entity_type, target.id,
        extra={"event_type": "immutability_violation"},
    )
    raise ImmutableRecordError(entity_type, target.id, reason)


# ── Transition records ───────────────────────────────────────────────────────

def _check_transition_record_update(mapper, connection, target):
    if not _has_changes(target):
        return
    _blocked("TransitionRecord", target, "UPDATE",
             "Transition records are append-only and cannot be modified")


def _check_transition_record_delete(mapper, connection, target):
    _blocked("TransitionRecord", target, "DELETE",
             "Transition records cannot be deleted")


# ── Stage performance metrics ────────────────────────────────────────────────

def _metric_was_closed(connection, target) -> bool:
    return stored_value(connection, target, "exited_at") is not None


def _check_metric_update(mapper, connection, target):
    if _has_changes(target) and _metric_was_closed(connection, target):
        _blocked("StagePerformanceMetric", target, "UPDATE",
                 "Closed stage metrics cannot be modified")


def _check_metric_delete(mapper, connection, target):
    if target.exited_at is not None:
        _blocked("StagePerformanceMetric", target, "DELETE",
                 "Closed stage metrics cannot be deleted")


# ── Reminders ────────────────────────────────────────────────────────────────

def _check_reminder_update(mapper, connection, target):
    for attr in inspect(target).attrs:
        if not attr.history.has_changes():
            continue
        if attr.key not in REMINDER_MUTABLE_FIELDS:
            _blocked("Reminder", target, "UPDATE",
                     f"Cannot modify field '{attr.key}' on a reminder")
    sent = inspect(target).attrs.sent.history
    if sent.added and not sent.added[0] and stored_value(connection, target, "sent"):
        _blocked("Reminder", target, "UPDATE", "A sent reminder cannot be marked unsent")


_LISTENERS = None


def _listeners():
    global _LISTENERS
    if _LISTENERS is None:
        from jobflow.models.history import StagePerformanceMetric, TransitionRecord
        from jobflow.models.reminder import Reminder

        _LISTENERS = (
            (TransitionRecord, "before_update", _check_transition_record_update),
            (TransitionRecord, "before_delete", _check_transition_record_delete),
            (StagePerformanceMetric, "before_update", _check_metric_update),
            (StagePerformanceMetric, "before_delete", _check_metric_delete),
            (Reminder, "before_update", _check_reminder_update),
        )
    return _LISTENERS


def register_immutability_listeners():
    """Register every append-only listener (idempotent)."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)
