# roomsync/client/delete_flow.py
from __future__ import annotations

import logging
from typing import Any, Optional

from roomsync.client.api_client import ApiClientError
from roomsync.client.auth_gate import DeleteGate
from roomsync.client.data_manager import BulkDeleteResult, DataManager
from roomsync.client.events import NOTIFICATION, EventBus
from roomsync.client.schedule_view import ScheduleView
from roomsync.services.meeting_rules import MeetingNotFoundError, meeting_label

logger = logging.getLogger(__name__)


class DeleteFlow:
    """
    Multi-select deletion on the schedule grid.

    Every entry into delete mode goes through the one-shot delete
    challenge. Confirming deletes the selection, reports one aggregated
    notification, leaves delete mode and reloads from the server.
    """

    def __init__(
        self,
        manager: DataManager,
        view: ScheduleView,
        gate: DeleteGate,
        bus: EventBus,
    ) -> None:
        self.manager = manager
        self.view = view
        self.gate = gate
        self.bus = bus
        self.confirming = False

    @property
    def active(self) -> bool:
        return self.view.delete_mode

    def enter(self, password: Optional[str]) -> None:
        """Raises AuthenticationFailed / AuthenticationLocked on a bad secret."""
        self.gate.verify(password)
        self.confirming = False
        self.view.enter_delete_mode()
        logger.info("Delete mode entered")

    def toggle(self, meeting_id: str) -> bool:
        return self.view.toggle_selection(meeting_id)

    def cancel(self) -> None:
        self.confirming = False
        if self.view.delete_mode:
            self.view.exit_delete_mode()

    def handle_key(self, key: str) -> bool:
        """Escape leaves delete mode; returns whether the key was consumed."""
        if key == "Escape" and self.active:
            self.cancel()
            return True
        return False

    def confirmation(self) -> list[str]:
        """Labels of the selected meetings, shown before deleting."""
        self.confirming = True
        labels = []
        for meeting in self.view.selected_meetings():
            labels.append(f"{meeting.get('room')} {meeting.get('date')}: {meeting_label(meeting)}")
        return labels

    def _notify(self, level: str, message: str) -> None:
        self.bus.emit(NOTIFICATION, {"level": level, "message": message})

    async def execute(self) -> BulkDeleteResult:
        ids = [m["id"] for m in self.view.selected_meetings()]
        if not ids:
            self._notify("warning", "No meetings selected")
            return BulkDeleteResult()

        if len(ids) > 1:
            result = await self.manager.remove_many(ids)
        else:
            result = BulkDeleteResult()
            try:
                result.deleted.append(await self.manager.remove(ids[0]))
            except (MeetingNotFoundError, ApiClientError) as exc:
                result.failed[ids[0]] = str(exc)
            self._notify("success" if result.ok else "error", result.summary())

        if result.failed:
            logger.warning("Failed to delete meetings: %s", ", ".join(result.failed))
        self.cancel()
        await self.manager.force_refresh()
        return result

    def state(self) -> dict[str, Any]:
        return {
            "deleteMode": self.active,
            "selected": sorted(self.view.selected),
            "confirming": self.confirming,
        }
