"""Errors raised by media asset persistence and status tracking."""

import uuid
from typing import Any, Optional


class MediaAssetNotFoundError(Exception):
    """Raised when an asset id does not resolve to a record."""

    def __init__(self, asset_id: Any):
        self.asset_id = asset_id
        super().__init__(f"Media asset {asset_id} not found")


class InvalidStatusTransitionError(Exception):
    """Raised when an action is not licensed from the current status."""

    def __init__(self, current: Any, action: Any, asset_id: Optional[uuid.UUID] = None):
        self.current = current
        self.action = action
        self.asset_id = asset_id
        current_value = getattr(current, "value", current)
        action_value = getattr(action, "value", action)
        target = f" for asset {asset_id}" if asset_id else ""
        super().__init__(
            f"Cannot {action_value} from status {current_value}{target}"
        )
