"""Processing status state machine.

Every edge is licensed by exactly one action:

    claim     PENDING    -> PROCESSING
    complete  PROCESSING -> COMPLETED
    fail      PROCESSING -> FAILED
    requeue   FAILED     -> PENDING   (explicit operator action)
    purge     COMPLETED  -> PENDING   (retention sweeper)
"""

import uuid
from enum import Enum
from typing import Optional

from lesson_media.modules.asset.errors import InvalidStatusTransitionError
from lesson_media.modules.asset.models import ProcessingStatus


class StatusAction(str, Enum):
    """Actions that move an asset between statuses."""
    CLAIM = "claim"
    COMPLETE = "complete"
    FAIL = "fail"
    REQUEUE = "requeue"
    PURGE = "purge"


TRANSITIONS: dict[tuple[ProcessingStatus, StatusAction], ProcessingStatus] = {
    (ProcessingStatus.PENDING, StatusAction.CLAIM): ProcessingStatus.PROCESSING,
    (ProcessingStatus.PROCESSING, StatusAction.COMPLETE): ProcessingStatus.COMPLETED,
    (ProcessingStatus.PROCESSING, StatusAction.FAIL): ProcessingStatus.FAILED,
    (ProcessingStatus.FAILED, StatusAction.REQUEUE): ProcessingStatus.PENDING,
    (ProcessingStatus.COMPLETED, StatusAction.PURGE): ProcessingStatus.PENDING,
}


def next_status(
    current: ProcessingStatus,
    action: StatusAction,
    asset_id: Optional[uuid.UUID] = None,
) -> ProcessingStatus:
    """Resolve the status an action leads to.

    Raises:
        InvalidStatusTransitionError: If the action is not licensed from current
    """
    target = TRANSITIONS.get((ProcessingStatus(current), StatusAction(action)))
    if target is None:
        raise InvalidStatusTransitionError(current, action, asset_id)
    return target


def allowed_actions(current: ProcessingStatus) -> set[StatusAction]:
    return {action for (status, action) in TRANSITIONS if status == current}


def reachable_statuses(current: ProcessingStatus) -> set[ProcessingStatus]:
    """Statuses reachable in one step from current."""
    return {target for (status, _), target in TRANSITIONS.items() if status == current}


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    return target in reachable_statuses(current)
