from typing import Optional

from outbound.control_panel.api import ControlPanelError
from outbound.senders import PermanentSendError, SendError, Sender
from outbound.services.sync_coordinator import SyncError

# 4xx responses worth retrying
RETRYABLE_CLIENT_STATUSES = {408, 429}


def is_permanent(error: ControlPanelError) -> bool:
    code = error.status_code
    return code is not None and 400 <= code < 500 and code not in RETRYABLE_CLIENT_STATUSES


class ControlPanelSyncSender(Sender):
    """Runs `control_panel_sync` tasks through the sync coordinator."""

    def __init__(self, coordinator):
        self.coordinator = coordinator

    def send(self, kind, payload: dict) -> Optional[dict]:
        try:
            entity_type = payload["entity_type"]
            entity_id = int(payload["entity_id"])
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentSendError(f"Malformed sync payload: {e}") from e

        try:
            result = self.coordinator.sync_entity(entity_type, entity_id, payload.get("control_panel"))
        except SyncError as e:
            raise PermanentSendError(str(e)) from e
        except ControlPanelError as e:
            if is_permanent(e):
                raise PermanentSendError(str(e)) from e
            raise SendError(str(e)) from e
        return result.to_dict()
