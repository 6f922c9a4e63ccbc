"""Room-based fan-out of session lifecycle events over WebSockets.

Rooms are keyed by survey id. Delivery is best-effort and at-most-once:
nothing is stored, and an observer that joins late has missed what came
before (the dashboard refreshes by polling for that).
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Set

import anyio.from_thread
from fastapi import WebSocket

log = logging.getLogger(__name__)

SESSION_STARTED = "session_started"
NEW_RESPONSE = "new_response"
SESSION_COMPLETED = "session_completed"
ANALYSIS_READY = "analysis_ready"
ADMIN_TYPING_VIEW = "admin_typing_view"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventHub:
    def __init__(self):
        self.rooms: Dict[int, Set[WebSocket]] = {}

    def join(self, survey_id: int, ws: WebSocket) -> None:
        self.rooms.setdefault(survey_id, set()).add(ws)

    def leave(self, survey_id: int, ws: WebSocket) -> None:
        members = self.rooms.get(survey_id)
        if not members:
            return
        members.discard(ws)
        if not members:
            self.rooms.pop(survey_id, None)

    async def broadcast(self, survey_id: int, event: str, data: Dict[str, Any], skip: WebSocket | None = None) -> int:
        """Send to every member of the room; returns how many got it."""
        delivered = 0
        for ws in list(self.rooms.get(survey_id, ())):
            if ws is skip:
                continue
            try:
                await ws.send_json({"event": event, "data": data})
                delivered += 1
            except Exception as e:  # dead socket; drop it
                log.debug("dropping observer of survey %s: %s", survey_id, e)
                self.leave(survey_id, ws)
        return delivered

    def emit(self, survey_id: int, event: str, data: Dict[str, Any]) -> None:
        """Fire an event from synchronous route code.

        Sync FastAPI routes run in AnyIO worker threads, so the broadcast is
        handed back to the event loop. Outside such a thread there is no one
        to deliver to and the event is dropped.
        """
        try:
            anyio.from_thread.run(self.broadcast, survey_id, event, data)
        except RuntimeError:
            log.debug("no event loop, dropped %s for survey %s", event, survey_id)
        except Exception as e:
            log.warning("failed to emit %s for survey %s: %s", event, survey_id, e)
