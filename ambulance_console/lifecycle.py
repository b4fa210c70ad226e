from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Union

from .gateway import ApiGateway
from .models import (
    TERMINAL_STATUSES,
    EmergencyRequest,
    RequestStatus,
    RequestStatusHistory,
    ServiceHistory,
    ServiceStatus,
    naive_utc,
)


# ============================================
# Status presentation
# ============================================
STATUS_TONES = {
    "PENDING": "yellow",
    "DISPATCHED": "blue",
    "IN_PROGRESS": "blue",
    "ARRIVED": "green",
    "COMPLETED": "gray",
    "CANCELLED": "red",
}

STATUS_ICONS = {
    "PENDING": "clock",
    "DISPATCHED": "navigation",
    "IN_PROGRESS": "navigation",
    "ARRIVED": "map-pin",
    "COMPLETED": "check-circle",
    "CANCELLED": "alert-circle",
}

STATUS_MESSAGES = {
    "PENDING": "Your request has been received and is being processed.",
    "DISPATCHED": "An ambulance has been dispatched to your location.",
    "IN_PROGRESS": "The ambulance is on its way to your location.",
    "ARRIVED": "The ambulance has arrived at your location.",
    "COMPLETED": "The emergency service has been completed.",
    "CANCELLED": "This request has been cancelled.",
}

Status = Union[RequestStatus, ServiceStatus, str]


def _key(status: Status) -> str:
    return (status.value if hasattr(status, "value") else str(status or "")).upper()


def status_label(status: Status) -> str:
    return _key(status).replace("_", " ")


def status_tone(status: Status) -> str:
    return STATUS_TONES.get(_key(status), "gray")


def status_icon(status: Status) -> str:
    return STATUS_ICONS.get(_key(status), "clock")


def status_message(status: Status) -> str:
    return STATUS_MESSAGES.get(_key(status), "Status unknown.")


def is_terminal(status: Status) -> bool:
    return _key(status) in {s.value for s in TERMINAL_STATUSES}


def format_request_number(request_id: Optional[int]) -> str:
    return f"#{str(request_id or 0).zfill(4)}"


# ============================================
# Timeline
# ============================================
@dataclass(frozen=True)
class TimelineEntry:
    status: str
    label: str
    tone: str
    icon: str
    notes: Optional[str]
    changed_by: Optional[str]
    created_at: Optional[datetime]
    # draws the connector down to the next entry
    continues: bool

    def to_wire(self) -> dict:
        return {
            "status": self.status,
            "label": self.label,
            "tone": self.tone,
            "icon": self.icon,
            "notes": self.notes,
            "changedBy": self.changed_by,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "continues": self.continues,
        }


def sort_history(history: Iterable[RequestStatusHistory]) -> List[RequestStatusHistory]:
    return sorted(history, key=lambda entry: naive_utc(entry.created_at))


def build_timeline(history: Iterable[RequestStatusHistory], current_status: Status) -> List[TimelineEntry]:
    ordered = sort_history(history)
    if not ordered:
        return [
            TimelineEntry(
                status=_key(current_status),
                label=status_label(current_status),
                tone=status_tone(current_status),
                icon=status_icon(current_status),
                notes="Current status",
                changed_by=None,
                created_at=None,
                continues=False,
            )
        ]

    timeline = []
    for index, entry in enumerate(ordered):
        is_last = index == len(ordered) - 1
        timeline.append(
            TimelineEntry(
                status=entry.new_status.value,
                label=status_label(entry.new_status),
                tone=status_tone(entry.new_status),
                icon=status_icon(entry.new_status),
                notes=entry.notes,
                changed_by=entry.changed_by,
                created_at=entry.created_at,
                continues=not is_last and not is_terminal(entry.new_status),
            )
        )
    return timeline


# ============================================
# Transitions
# ============================================
class StatusLifecycle:
    """
    Status reads and writes for requests and service records. Any status may
    follow any other; the backend's resulting record is what gets shown.
    """

    def __init__(self, gateway: ApiGateway):
        self.gateway = gateway

    async def request_view(self, request_id: int) -> dict:
        request = await self.gateway.requests.get(request_id)
        history = request.status_history
        if not history:
            history = await self.gateway.requests.status_history(request_id)
        return render_request(request, history)

    async def transition_request(self, request_id: int, status: RequestStatus,
                                 notes: Optional[str] = None) -> EmergencyRequest:
        return await self.gateway.requests.update_status(request_id, status, notes)

    async def transition_service(self, record_id: int, status: ServiceStatus,
                                 notes: Optional[str] = None) -> ServiceHistory:
        return await self.gateway.service_history.update_status(record_id, status, notes)

    async def complete_service(self, record_id: int) -> ServiceHistory:
        return await self.gateway.service_history.mark_completed(record_id)

    async def dispatch(self, request_id: int) -> EmergencyRequest:
        dispatched = await self.gateway.dispatch.dispatch_ambulance(request_id)
        if dispatched is None:
            dispatched = await self.gateway.requests.get(request_id)
        return dispatched

    async def assign(self, request_id: int, ambulance_id: int) -> EmergencyRequest:
        return await self.gateway.requests.assign(request_id, ambulance_id)


def render_request(request: EmergencyRequest, history: Optional[List[RequestStatusHistory]] = None) -> dict:
    if history is None:
        history = request.status_history
    return {
        "number": format_request_number(request.id),
        "request": request.to_wire(),
        "status": {
            "value": request.status.value,
            "label": status_label(request.status),
            "tone": status_tone(request.status),
            "icon": status_icon(request.status),
            "message": status_message(request.status),
            "terminal": request.is_terminal,
        },
        "timeline": [entry.to_wire() for entry in build_timeline(history, request.status)],
    }
