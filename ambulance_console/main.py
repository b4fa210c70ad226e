"""
Ambulance Dispatch Console
FastAPI service: session, request intake, fleet and patient admin, live feed relay
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Awaitable, Callable, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import (
    DEFAULT_PAGE_SIZE,
    FEED_PAGE_SIZE,
    LOG_LEVEL,
    RECENT_REQUESTS_LIMIT,
    SESSION_STORE_PATH,
    USER_DETAILS_PAGE_SIZE,
)
from .errors import AuthError, ConsoleError, NetworkError, ServerError, ValidationError
from .gateway import ApiGateway
from .geocoding import geocode_with_nominatim, mock_coordinates, reverse_geocode
from .lifecycle import StatusLifecycle, render_request
from .live_feed import AMBULANCE_STATUS_CHANGE, REQUEST_STATUS_CHANGE, LiveFeed
from .models import (
    AmbulanceCreate,
    AmbulanceStatus,
    AmbulanceStatusUpdate,
    AssignAmbulance,
    EmergencyRequest,
    EmergencyRequestCreate,
    LoginForm,
    PasswordChange,
    PatientCreate,
    RegisterForm,
    RequestStatus,
    RequestStatusUpdate,
    ServiceStatusUpdate,
)
from .notifications import Notifier
from .pagination import ListView, all_of, date_range_predicate, paginate, search_predicate, status_predicate
from .session import SessionState
from .storage import CredentialStore, FileStore, MemoryStore


# ============================================
# Logging
# ============================================
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("ambulance_console")


# ============================================
# WebSocket Connection Manager
# ============================================
class ConnectionManager:
    """Manages all connected dashboard WebSocket clients."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.active_connections.append(ws)
        logger.info(f"Dashboard client connected. Total: {len(self.active_connections)}")

    def disconnect(self, ws: WebSocket):
        if ws in self.active_connections:
            self.active_connections.remove(ws)
        logger.info(f"Dashboard client disconnected. Total: {len(self.active_connections)}")

    async def broadcast(self, data: dict):
        """Relay a live feed message to ALL connected dashboard clients."""
        disconnected = []
        for conn in self.active_connections:
            try:
                await conn.send_json(data)
            except Exception:
                disconnected.append(conn)
        for conn in disconnected:
            self.active_connections.remove(conn)

    async def close_all(self, code: int = 1008):
        """Drop every dashboard client, e.g. once the staff session ends."""
        for conn in list(self.active_connections):
            try:
                await conn.close(code=code)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.warning(f"Dashboard client already closed: {e}")
        self.active_connections.clear()


# ============================================
# Services shared by every route
# ============================================
@dataclass
class ConsoleServices:
    credentials: CredentialStore
    gateway: ApiGateway
    session: SessionState
    live_feed: LiveFeed
    lifecycle: StatusLifecycle
    notifier: Notifier
    ws_manager: ConnectionManager
    views: Dict[str, ListView] = field(default_factory=dict)
    geocode_client: Optional[httpx.AsyncClient] = None

    async def relay(self, message: dict) -> None:
        """Live feed listener: forward to dashboards only while a staff session is active."""
        if self.session.is_staff:
            await self.ws_manager.broadcast(message)
        elif self.ws_manager.active_connections:
            await self.ws_manager.close_all()

    def view(self, name: str, search_fields, page_size: int = DEFAULT_PAGE_SIZE) -> ListView:
        if name not in self.views:
            self.views[name] = ListView([], search_fields, page_size)
        return self.views[name]


def build_services(
    credentials: Optional[CredentialStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **feed_options,
) -> ConsoleServices:
    credentials = credentials or CredentialStore(FileStore(SESSION_STORE_PATH), MemoryStore())
    notifier = Notifier()
    gateway = ApiGateway(credentials, transport=transport)
    session = SessionState(gateway, credentials)
    live_feed = LiveFeed(gateway, on_error=notifier.error, **feed_options)
    return ConsoleServices(
        credentials=credentials,
        gateway=gateway,
        session=session,
        live_feed=live_feed,
        lifecycle=StatusLifecycle(gateway),
        notifier=notifier,
        ws_manager=ConnectionManager(),
    )


# ============================================
# App Lifespan (startup/shutdown)
# ============================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    svc: ConsoleServices = app.state.services
    await svc.session.init()
    svc.live_feed.subscribe(svc.relay)
    await svc.live_feed.start()
    logger.info("Ambulance console started")
    yield
    await svc.live_feed.close()
    await svc.gateway.aclose()
    logger.info("Ambulance console stopped")


# ============================================
# Error mapping
# ============================================
async def console_error_handler(request: Request, exc: ConsoleError):
    if isinstance(exc, AuthError):
        return JSONResponse(status_code=401, content={"error": exc.message, "redirect": "/login"})
    if isinstance(exc, ValidationError):
        return JSONResponse(
            status_code=exc.status_code or 400,
            content={"error": exc.message, "field": exc.field, "fieldErrors": exc.field_errors()},
        )
    if isinstance(exc, ServerError):
        return JSONResponse(status_code=502, content={"error": exc.message})
    if isinstance(exc, NetworkError):
        return JSONResponse(status_code=503, content={"error": exc.message})
    return JSONResponse(status_code=500, content={"error": exc.message})


# ============================================
# Route guards
# ============================================
def get_services(request: Request) -> ConsoleServices:
    return request.app.state.services


def require_session(svc: ConsoleServices = Depends(get_services)) -> ConsoleServices:
    if svc.session.loading:
        raise HTTPException(status_code=503, detail="Session is still loading")
    if not svc.session.is_authenticated:
        raise HTTPException(status_code=401, detail="Not signed in")
    return svc


def require_staff(svc: ConsoleServices = Depends(require_session)) -> ConsoleServices:
    if not svc.session.is_staff:
        raise HTTPException(status_code=403, detail="Dispatcher or admin only")
    return svc


def require_admin(svc: ConsoleServices = Depends(require_session)) -> ConsoleServices:
    if not svc.session.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return svc


async def _or_empty(fetch: Callable[[], Awaitable[list]], label: str) -> list:
    """One fetch in a dashboard batch; a failure leaves the rest of the batch intact."""
    try:
        return await fetch()
    except ConsoleError as e:
        logger.error(f"Dashboard fetch of {label} failed: {e}")
        return []


def _wire(items) -> List[dict]:
    return [item.to_wire() for item in items]


router = APIRouter(prefix="/console")


# ============================================
# ROUTE: Session
# ============================================
@router.post("/auth/login")
async def login(form: LoginForm, svc: ConsoleServices = Depends(get_services)):
    user = await svc.session.login(form.username, form.password, form.remember_me)
    return {
        "user": user.to_wire(),
        "redirect": "/admin/dashboard" if svc.session.is_admin else "/dashboard",
    }


@router.post("/auth/register")
async def register(form: RegisterForm, svc: ConsoleServices = Depends(get_services)):
    await svc.notifier.track(
        svc.gateway.auth.register(form),
        "Registration successful", "Registration failed",
        description="Please login with your new account",
    )
    return {"message": "Registered", "redirect": "/login"}


@router.post("/auth/logout")
async def logout(svc: ConsoleServices = Depends(get_services)):
    if svc.session.is_authenticated:
        try:
            await svc.gateway.auth.logout()
        except ConsoleError as e:
            logger.warning(f"Server-side logout failed, clearing local session anyway: {e}")
    svc.session.logout()
    svc.views.clear()
    await svc.ws_manager.close_all()
    return {"message": "Logged out", "redirect": "/login"}


@router.get("/session")
async def session_info(svc: ConsoleServices = Depends(get_services)):
    session = svc.session
    return {
        "loading": session.loading,
        "isAuthenticated": session.is_authenticated,
        "isAdmin": session.is_admin,
        "isDispatcher": session.is_dispatcher,
        "user": session.user.to_wire() if session.user else None,
    }


@router.put("/me/password")
async def change_password(form: PasswordChange, svc: ConsoleServices = Depends(require_session)):
    await svc.notifier.track(
        svc.gateway.users.change_password(form.current_password, form.new_password),
        "Password changed", "Failed to change password",
    )
    return {"message": "Password changed"}


# ============================================
# ROUTE: Emergency Requests
# ============================================
@router.post("/requests")
async def submit_request(form: EmergencyRequestCreate, svc: ConsoleServices = Depends(get_services)):
    created = await svc.notifier.track(
        svc.gateway.requests.create(form),
        "Request submitted successfully", "Failed to submit request",
    )
    return {"request": created.to_wire(), "redirect": f"/request/success/{created.id}"}


@router.get("/requests/mine")
async def my_requests(
    search: str = "",
    status: str = "all",
    page: Optional[int] = Query(None, ge=1),
    svc: ConsoleServices = Depends(require_session),
):
    view = svc.view("request-history", ("location", "emergency_description", "user_name"))
    view.set_items(await svc.gateway.requests.mine())
    view.set_search(search)
    view.set_status(status)
    return view.go_to(page or view.page).to_wire(lambda r: r.to_wire())


@router.get("/requests/{request_id}")
async def request_status(request_id: int, svc: ConsoleServices = Depends(get_services)):
    return await svc.lifecycle.request_view(request_id)


async def _echo_request(svc: ConsoleServices, request: EmergencyRequest) -> None:
    await svc.live_feed.handle_message({"type": REQUEST_STATUS_CHANGE, "payload": request.to_wire()})


@router.patch("/requests/{request_id}/status")
async def update_request_status(request_id: int, body: RequestStatusUpdate,
                                svc: ConsoleServices = Depends(require_staff)):
    updated = await svc.notifier.track(
        svc.lifecycle.transition_request(request_id, body.status, body.notes),
        "Request status updated", "Failed to update request status",
    )
    await _echo_request(svc, updated)
    return render_request(updated)


@router.post("/requests/{request_id}/dispatch")
async def dispatch_request(request_id: int, svc: ConsoleServices = Depends(require_staff)):
    dispatched = await svc.notifier.track(
        svc.lifecycle.dispatch(request_id),
        "Ambulance dispatched", "Dispatch failed",
        description="Ambulance has been assigned to the request",
    )
    await _echo_request(svc, dispatched)
    return render_request(dispatched)


@router.patch("/requests/{request_id}/assign")
async def assign_ambulance(request_id: int, body: AssignAmbulance, svc: ConsoleServices = Depends(require_staff)):
    assigned = await svc.notifier.track(
        svc.lifecycle.assign(request_id, body.ambulance_id),
        "Ambulance assigned", "Failed to assign ambulance",
    )
    await _echo_request(svc, assigned)
    return render_request(assigned)


# ============================================
# ROUTE: Dashboards
# ============================================
@router.get("/dashboard")
async def admin_dashboard(svc: ConsoleServices = Depends(require_staff)):
    gateway = svc.gateway

    async def fetch_requests():
        return (await gateway.requests.list(0, FEED_PAGE_SIZE)).content

    requests, ambulances, users = await asyncio.gather(
        _or_empty(fetch_requests, "requests"),
        _or_empty(gateway.ambulances.list, "ambulances"),
        _or_empty(gateway.users.list, "users"),
    )
    pending = [r for r in requests if r.status == RequestStatus.PENDING]
    return {
        "stats": {
            "totalRequests": len(requests),
            "activeRequests": len([r for r in requests if not r.is_terminal]),
            "availableAmbulances": len([a for a in ambulances if a.effective_status == AmbulanceStatus.AVAILABLE]),
            "totalAmbulances": len(ambulances),
        },
        "pendingRequests": _wire(pending),
        "ambulances": _wire(ambulances),
        "users": _wire(users),
    }


@router.get("/user-dashboard")
async def user_dashboard(svc: ConsoleServices = Depends(require_session)):
    requests = await svc.gateway.requests.mine()
    return {
        "user": svc.session.user.to_wire(),
        "activeRequests": _wire([r for r in requests if not r.is_terminal]),
        "recentRequests": _wire(requests[:RECENT_REQUESTS_LIMIT]),
        "totalRequests": len(requests),
    }


# ============================================
# ROUTE: Live Feed
# ============================================
@router.get("/live")
async def live_snapshot(svc: ConsoleServices = Depends(require_staff)):
    return svc.live_feed.snapshot()


@router.post("/live/refresh")
async def live_refresh(svc: ConsoleServices = Depends(require_staff)):
    await svc.live_feed.refresh()
    return svc.live_feed.snapshot()


@router.get("/map")
async def map_markers(svc: ConsoleServices = Depends(require_staff)):
    markers = []
    for ambulance in svc.live_feed.ambulances:
        where = ambulance.current_location or ambulance.location
        if not where:
            continue
        lat, lng = mock_coordinates(where)
        status = ambulance.effective_status
        markers.append({"kind": "ambulance", "id": ambulance.id, "label": ambulance.license_plate,
                        "status": status.value if status else None, "lat": lat, "lng": lng})
    for request in svc.live_feed.active_requests:
        if not request.location:
            continue
        lat, lng = mock_coordinates(request.location)
        markers.append({"kind": "request", "id": request.id, "label": request.patient_name,
                        "status": request.status.value, "lat": lat, "lng": lng})
    return {"markers": markers}


@router.get("/geocode")
async def geocode(address: str = Query(..., min_length=1), svc: ConsoleServices = Depends(require_staff)):
    found = await geocode_with_nominatim(address, client=svc.geocode_client)
    lat, lng = found or mock_coordinates(address)
    return {
        "address": address,
        "lat": lat,
        "lng": lng,
        "label": reverse_geocode(lat, lng),
        "approximate": found is None,
    }


# ============================================
# ROUTE: Fleet
# ============================================
@router.get("/ambulances")
async def list_ambulances(available: bool = False, svc: ConsoleServices = Depends(require_staff)):
    if available:
        return _wire(await svc.gateway.ambulances.available())
    return _wire(await svc.gateway.ambulances.list())


@router.post("/ambulances")
async def create_ambulance(form: AmbulanceCreate, svc: ConsoleServices = Depends(require_admin)):
    created = await svc.notifier.track(
        svc.gateway.ambulances.create(form),
        "Ambulance created", "Failed to create ambulance",
        description="New ambulance has been added to the fleet",
    )
    return created.to_wire()


@router.put("/ambulances/{ambulance_id}")
async def update_ambulance(ambulance_id: int, form: AmbulanceCreate, svc: ConsoleServices = Depends(require_admin)):
    updated = await svc.notifier.track(
        svc.gateway.ambulances.update(ambulance_id, form),
        "Ambulance updated", "Failed to update ambulance",
    )
    return updated.to_wire()


@router.patch("/ambulances/{ambulance_id}/status")
async def update_ambulance_status(ambulance_id: int, body: AmbulanceStatusUpdate,
                                  svc: ConsoleServices = Depends(require_staff)):
    if not await svc.live_feed.update_ambulance_status(ambulance_id, body.status):
        raise HTTPException(status_code=502, detail="Failed to update ambulance status")
    svc.notifier.success("Ambulance status updated", "Ambulance status has been updated")
    return {"id": ambulance_id, "status": body.status.value}


@router.post("/ambulances/{ambulance_id}/available")
async def mark_ambulance_available(ambulance_id: int, svc: ConsoleServices = Depends(require_admin)):
    ambulance = await svc.notifier.track(
        svc.gateway.ambulances.mark_available(ambulance_id),
        "Ambulance marked available", "Failed to mark ambulance available",
    )
    if ambulance is None:
        ambulance = await svc.gateway.ambulances.get(ambulance_id)
    await svc.live_feed.handle_message(
        {"type": AMBULANCE_STATUS_CHANGE, "payload": {"id": ambulance_id, "status": AmbulanceStatus.AVAILABLE.value}}
    )
    return ambulance.to_wire()


@router.delete("/ambulances/{ambulance_id}")
async def delete_ambulance(ambulance_id: int, svc: ConsoleServices = Depends(require_admin)):
    await svc.notifier.track(
        svc.gateway.ambulances.delete(ambulance_id),
        "Ambulance deleted", "Failed to delete ambulance",
    )
    return {"message": f"Ambulance {ambulance_id} deleted"}


# ============================================
# ROUTE: Patients
# ============================================
@router.get("/patients")
async def list_patients(search: str = "", page: int = Query(1, ge=1), svc: ConsoleServices = Depends(require_admin)):
    patients = await svc.gateway.patients.list()
    result = paginate(patients, search_predicate(search, ("name", "contact")), page, DEFAULT_PAGE_SIZE)
    return result.to_wire(lambda p: p.to_wire())


@router.post("/patients")
async def create_patient(form: PatientCreate, svc: ConsoleServices = Depends(require_admin)):
    created = await svc.notifier.track(
        svc.gateway.patients.create(form),
        "Patient created", "Failed to create patient",
        description="New patient record has been added",
    )
    return created.to_wire()


@router.put("/patients/{patient_id}")
async def update_patient(patient_id: int, form: PatientCreate, svc: ConsoleServices = Depends(require_admin)):
    updated = await svc.notifier.track(
        svc.gateway.patients.update(patient_id, form),
        "Patient updated", "Failed to update patient",
    )
    return updated.to_wire()


@router.post("/patients/{patient_id}/archive")
async def archive_patient(patient_id: int, svc: ConsoleServices = Depends(require_admin)):
    await svc.notifier.track(
        svc.gateway.patients.soft_delete(patient_id),
        "Patient archived", "Failed to archive patient",
    )
    return {"message": f"Patient {patient_id} archived"}


@router.delete("/patients/{patient_id}")
async def delete_patient(patient_id: int, svc: ConsoleServices = Depends(require_admin)):
    await svc.notifier.track(
        svc.gateway.patients.hard_delete(patient_id),
        "Patient deleted", "Failed to delete patient",
    )
    return {"message": f"Patient {patient_id} deleted"}


# ============================================
# ROUTE: Service History
# ============================================
@router.get("/service-history")
async def service_history(
    status: str = "all",
    start: Optional[date] = None,
    end: Optional[date] = None,
    svc: ConsoleServices = Depends(require_admin),
):
    start_at = datetime.combine(start, time.min) if start else None
    end_at = datetime.combine(end, time(23, 59, 59)) if end else None
    if start_at and end_at:
        records = await svc.gateway.service_history.by_date_range(start_at, end_at)
    else:
        records = await svc.gateway.service_history.list()

    predicate = all_of(status_predicate(status), date_range_predicate(start_at, end_at))
    return [
        {**record.to_wire(), "durationMinutes": record.duration_minutes}
        for record in records if predicate(record)
    ]


@router.patch("/service-history/{record_id}/status")
async def update_service_status(record_id: int, body: ServiceStatusUpdate,
                                svc: ConsoleServices = Depends(require_staff)):
    updated = await svc.notifier.track(
        svc.lifecycle.transition_service(record_id, body.status, body.notes),
        "Service status updated", "Failed to update service",
        description="Service history has been updated",
    )
    return updated.to_wire()


@router.post("/service-history/{record_id}/complete")
async def complete_service(record_id: int, svc: ConsoleServices = Depends(require_staff)):
    completed = await svc.notifier.track(
        svc.lifecycle.complete_service(record_id),
        "Service completed", "Failed to complete service",
    )
    return completed.to_wire()


# ============================================
# ROUTE: Users
# ============================================
@router.get("/users")
async def list_users(search: str = "", page: int = Query(1, ge=1), svc: ConsoleServices = Depends(require_admin)):
    users = await svc.gateway.users.list()
    fields = ("username", "email", "first_name", "last_name")
    return paginate(users, search_predicate(search, fields), page, DEFAULT_PAGE_SIZE).to_wire(lambda u: u.to_wire())


@router.get("/users/{user_id}")
async def user_details(user_id: int, page: int = Query(1, ge=1), svc: ConsoleServices = Depends(require_admin)):
    user, requests = await asyncio.gather(
        svc.gateway.users.get(user_id),
        svc.gateway.requests.by_user(user_id),
    )
    return {
        "user": user.to_wire(),
        "requests": paginate(requests, page=page, page_size=USER_DETAILS_PAGE_SIZE).to_wire(lambda r: r.to_wire()),
    }


# ============================================
# ROUTE: Notifications
# ============================================
@router.get("/notifications")
async def notifications(svc: ConsoleServices = Depends(get_services)):
    return [note.model_dump(mode="json") for note in svc.notifier.recent()]


@router.delete("/notifications")
async def dismiss_notifications(svc: ConsoleServices = Depends(get_services)):
    svc.notifier.dismiss_all()
    return {"message": "Notifications dismissed"}


relay = APIRouter()


# ============================================
# WebSocket: live feed relay for dashboards
# ============================================
@relay.websocket("/ws/live")
async def websocket_live(ws: WebSocket):
    svc: ConsoleServices = ws.app.state.services
    if not svc.session.is_staff:
        logger.warning("Rejected dashboard client without a staff session")
        await ws.close(code=1008)
        return
    await svc.ws_manager.connect(ws)
    try:
        await ws.send_json({"type": "SNAPSHOT", "payload": svc.live_feed.snapshot()})
        while True:
            data = await ws.receive_text()
            if data == "ping":
                await ws.send_json({"type": "pong"})
    except WebSocketDisconnect:
        svc.ws_manager.disconnect(ws)


# ============================================
# Health Check
# ============================================
@relay.get("/api/health")
async def health_check(request: Request):
    svc: ConsoleServices = request.app.state.services
    return {
        "status": "healthy",
        "service": "Ambulance Dispatch Console",
        "timestamp": datetime.utcnow().isoformat(),
        "liveFeed": svc.live_feed.state.value,
        "websocket_clients": len(svc.ws_manager.active_connections),
    }


# ============================================
# FastAPI App
# ============================================
def create_app(services: Optional[ConsoleServices] = None) -> FastAPI:
    app = FastAPI(
        title="Ambulance Dispatch Console",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services or build_services()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ConsoleError, console_error_handler)
    app.include_router(router)
    app.include_router(relay)
    return app


app = create_app()


# ============================================
# Run with: uvicorn ambulance_console.main:app --host 0.0.0.0 --port 8000 --reload
# ============================================
