# read_state.py — Read-state transitions for messages and notifications
#
#   NOT_READ ──mark_read──▶ READ     (no reverse transition)
#
# Single-item transitions reject an already-READ entity; the bulk variant
# skips READ items instead.

from typing import Iterable

from exceptions import BadRequestError
from models import ReadStatus

INITIAL_STATUS = ReadStatus.NOT_READ

_TRANSITIONS = {
    ReadStatus.NOT_READ: {ReadStatus.READ},
    ReadStatus.READ: set(),
}


class AlreadyReadError(BadRequestError):
    default_message = "already read"


def can_transition(current: ReadStatus, target: ReadStatus) -> bool:
    return target in _TRANSITIONS.get(ReadStatus(current), set())


def require_unread(entity) -> None:
    """Raise AlreadyReadError unless the entity can still be marked read"""
    if not can_transition(entity.status, ReadStatus.READ):
        raise AlreadyReadError()


def mark_read(entity):
    require_unread(entity)
    entity.status = ReadStatus.READ
    return entity


def mark_all_read(entities: Iterable) -> int:
    """Mark every NOT_READ entity as READ. Returns how many changed."""
    changed = 0
    for entity in entities:
        if can_transition(entity.status, ReadStatus.READ):
            entity.status = ReadStatus.READ
            changed += 1
    return changed
