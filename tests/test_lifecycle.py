import asyncio
from datetime import datetime, timezone

from ambulance_console.lifecycle import (
    StatusLifecycle,
    build_timeline,
    format_request_number,
    render_request,
    status_label,
    status_message,
    status_tone,
)
from ambulance_console.models import EmergencyRequest, RequestStatus, RequestStatusHistory, ServiceStatus

from conftest import signed_in


def _entry(status, minute, notes=None):
    return RequestStatusHistory(new_status=status, created_at=datetime(2024, 3, 1, 8, minute), notes=notes)


def test_timeline_is_ordered_by_time():
    history = [
        _entry(RequestStatus.ARRIVED, 30),
        _entry(RequestStatus.PENDING, 10),
        _entry(RequestStatus.DISPATCHED, 20),
    ]
    timeline = build_timeline(history, RequestStatus.ARRIVED)

    assert [entry.status for entry in timeline] == ["PENDING", "DISPATCHED", "ARRIVED"]
    assert [entry.continues for entry in timeline] == [True, True, False]


def test_terminal_entries_have_no_connector():
    history = [
        _entry(RequestStatus.PENDING, 1),
        _entry(RequestStatus.CANCELLED, 2),
        _entry(RequestStatus.PENDING, 3, notes="Reopened"),
        _entry(RequestStatus.COMPLETED, 4),
    ]
    timeline = build_timeline(history, RequestStatus.COMPLETED)

    assert [entry.continues for entry in timeline] == [True, False, True, False]


def test_empty_history_shows_current_status():
    timeline = build_timeline([], RequestStatus.PENDING)

    assert len(timeline) == 1
    assert timeline[0].status == "PENDING"
    assert timeline[0].notes == "Current status"
    assert not timeline[0].continues


def test_status_presentation():
    assert status_label(RequestStatus.IN_PROGRESS) == "IN PROGRESS"
    assert status_label("out_of_service") == "OUT OF SERVICE"
    assert status_tone(RequestStatus.CANCELLED) == "red"
    assert status_tone("SOMETHING_NEW") == "gray"
    assert status_message(RequestStatus.ARRIVED) == "The ambulance has arrived at your location."
    assert status_message("SOMETHING_NEW") == "Status unknown."
    assert format_request_number(7) == "#0007"
    assert format_request_number(12345) == "#12345"


def test_render_request_shape():
    request = EmergencyRequest(id=7, status=RequestStatus.COMPLETED, status_history=[
        _entry(RequestStatus.PENDING, 1), _entry(RequestStatus.COMPLETED, 2),
    ])
    view = render_request(request)

    assert view["number"] == "#0007"
    assert view["status"]["terminal"] is True
    assert view["status"]["tone"] == "gray"
    assert [entry["status"] for entry in view["timeline"]] == ["PENDING", "COMPLETED"]
    assert view["timeline"][0]["createdAt"] == "2024-03-01T08:01:00"


def test_request_view_reads_history_endpoint_when_record_has_none(backend, gateway, credentials):
    signed_in(credentials)
    record = backend.add_request()
    record["statusHistory"] = []
    lifecycle = StatusLifecycle(gateway)

    view = asyncio.run(lifecycle.request_view(7))

    assert view["timeline"][0]["notes"] == "Current status"
    assert "/requests/7/status-history" in backend.paths("GET")


def test_transition_appends_one_history_entry(backend, gateway, credentials):
    signed_in(credentials)
    backend.add_request()
    lifecycle = StatusLifecycle(gateway)

    updated = asyncio.run(lifecycle.transition_request(7, RequestStatus.DISPATCHED, "Unit LAG-101"))

    assert updated.status == RequestStatus.DISPATCHED
    assert len(updated.status_history) == 1
    assert updated.status_history[0].old_status == RequestStatus.PENDING
    assert updated.status_history[0].changed_by == "admin"


def test_dispatch_falls_back_to_reading_the_request(backend, gateway, credentials):
    signed_in(credentials)
    backend.add_request()
    backend.empty_dispatch = True

    dispatched = asyncio.run(StatusLifecycle(gateway).dispatch(7))

    assert dispatched.status == RequestStatus.DISPATCHED
    assert dispatched.ambulance.license_plate == "LAG-101"
    assert backend.paths()[-2:] == ["/dispatch/7", "/requests/7"]


def test_service_transitions(backend, gateway, credentials):
    signed_in(credentials)
    lifecycle = StatusLifecycle(gateway)

    async def scenario():
        arrived = await lifecycle.transition_service(2, ServiceStatus.ARRIVED, "At the scene")
        return arrived, await lifecycle.complete_service(2)

    arrived, completed = asyncio.run(scenario())
    assert arrived.status == ServiceStatus.ARRIVED
    assert arrived.notes == "At the scene"
    assert completed.status == ServiceStatus.COMPLETED
    assert completed.completion_time is not None


def test_timeline_orders_mixed_offset_and_naive_timestamps():
    history = [
        RequestStatusHistory(new_status=RequestStatus.ARRIVED,
                             created_at=datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)),
        _entry(RequestStatus.PENDING, 10),
        RequestStatusHistory(new_status=RequestStatus.DISPATCHED,
                             created_at=datetime.fromisoformat("2024-03-01T09:20:00+01:00")),
    ]

    timeline = build_timeline(history, RequestStatus.ARRIVED)

    assert [entry.status for entry in timeline] == ["PENDING", "DISPATCHED", "ARRIVED"]
