"""
Live Feed Synchronizer
In-memory mirror of ambulances and requests, kept current by a WebSocket push
channel. While the channel is down an interval poll job runs and a reconnect
is scheduled; once the channel reopens polling stops.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from websockets.exceptions import WebSocketException

from .config import ENABLE_WEBSOCKET, FEED_PAGE_SIZE, POLL_INTERVAL, RECONNECT_DELAY, WS_URL
from .errors import ConsoleError
from .gateway import ApiGateway
from .models import AmbulanceData, AmbulanceStatus, EmergencyRequest, RequestStatus

logger = logging.getLogger("ambulance_console")

POLL_JOB_ID = "live-feed-poll"
RECONNECT_JOB_ID = "live-feed-reconnect"

AMBULANCES_UPDATE = "AMBULANCES_UPDATE"
REQUESTS_UPDATE = "REQUESTS_UPDATE"
AMBULANCE_STATUS_CHANGE = "AMBULANCE_STATUS_CHANGE"
REQUEST_STATUS_CHANGE = "REQUEST_STATUS_CHANGE"
NEW_EMERGENCY_REQUEST = "NEW_EMERGENCY_REQUEST"

Listener = Callable[[dict], Awaitable[Any]]


class FeedState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


def _merge(items: list, patch: dict) -> list:
    """Return a new list where the item sharing patch['id'] has patch's fields applied."""
    target_id = patch.get("id")
    merged = []
    for item in items:
        if target_id is not None and item.id == target_id:
            data = item.model_dump(by_alias=True)
            data.update(patch)
            item = type(item).model_validate(data)
        merged.append(item)
    return merged


class LiveFeed:
    def __init__(
        self,
        gateway: ApiGateway,
        ws_url: str = WS_URL,
        poll_interval: float = POLL_INTERVAL,
        reconnect_delay: float = RECONNECT_DELAY,
        enable_websocket: bool = ENABLE_WEBSOCKET,
        page_size: int = FEED_PAGE_SIZE,
        on_error: Optional[Callable[[str], Any]] = None,
        connect: Optional[Callable[[str], Any]] = None,
    ):
        self.gateway = gateway
        self.ws_url = ws_url
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.enable_websocket = enable_websocket
        self.page_size = page_size
        self.on_error = on_error
        self._connect = connect or websockets.connect

        self.scheduler = AsyncIOScheduler()
        self.state = FeedState.IDLE
        self.loading = True
        self.ambulances: List[AmbulanceData] = []
        self.requests: List[EmergencyRequest] = []

        self._listeners: List[Listener] = []
        self._channel_task: Optional[asyncio.Task] = None

    # ============================================
    # Lifecycle
    # ============================================
    async def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
        await self.refresh()
        if self.enable_websocket:
            self._open_channel()
        else:
            self._start_polling()

    async def close(self) -> None:
        """Tear down the socket, the poll job and any pending reconnect."""
        self.state = FeedState.CLOSED
        self._stop_polling()
        self._cancel_reconnect()
        task, self._channel_task = self._channel_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Live feed closed")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def connected(self) -> bool:
        return self.state == FeedState.CONNECTED

    @property
    def polling(self) -> bool:
        return self.scheduler.get_job(POLL_JOB_ID) is not None

    @property
    def reconnect_pending(self) -> bool:
        return self.scheduler.get_job(RECONNECT_JOB_ID) is not None

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ============================================
    # Push channel
    # ============================================
    def _open_channel(self) -> None:
        self.state = FeedState.CONNECTING
        self._channel_task = asyncio.create_task(self._run_channel())

    async def _run_channel(self) -> None:
        try:
            async with self._connect(self.ws_url) as socket:
                self._enter_connected()
                async for raw in socket:
                    await self.handle_message(raw)
            logger.info("Live feed channel closed by server")
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.error(f"Live feed channel error: {e}")
            self._report_error("WebSocket connection error")
        if self.state != FeedState.CLOSED:
            self._enter_disconnected()

    def _enter_connected(self) -> None:
        self.state = FeedState.CONNECTED
        self._stop_polling()
        self._cancel_reconnect()
        logger.info(f"Live feed connected to {self.ws_url}")

    def _enter_disconnected(self) -> None:
        self.state = FeedState.DISCONNECTED
        self._start_polling()
        run_date = datetime.now(self.scheduler.timezone) + timedelta(seconds=self.reconnect_delay)
        self.scheduler.add_job(self._reconnect, "date", run_date=run_date, id=RECONNECT_JOB_ID, replace_existing=True)
        logger.warning(f"Live feed disconnected, reconnecting in {self.reconnect_delay}s")

    async def _reconnect(self) -> None:
        if self.state != FeedState.DISCONNECTED:
            return
        logger.info("Attempting live feed reconnection...")
        self._open_channel()

    def _cancel_reconnect(self) -> None:
        if self.scheduler.get_job(RECONNECT_JOB_ID):
            self.scheduler.remove_job(RECONNECT_JOB_ID)

    # ============================================
    # Polling fallback
    # ============================================
    def _start_polling(self) -> None:
        if self.polling:
            return
        self.scheduler.add_job(
            self.poll, "interval", seconds=self.poll_interval, id=POLL_JOB_ID,
            max_instances=1, coalesce=True,
        )
        logger.info(f"Starting polling fallback every {self.poll_interval}s")

    def _stop_polling(self) -> None:
        if self.polling:
            self.scheduler.remove_job(POLL_JOB_ID)
            logger.info("Polling fallback stopped")

    async def poll(self) -> None:
        try:
            ambulances, page = await asyncio.gather(
                self.gateway.ambulances.list(),
                self.gateway.requests.list(0, self.page_size),
            )
        except ConsoleError as e:
            logger.error(f"Polling error: {e}")
            return
        await self._replace(ambulances, page.content)

    # ============================================
    # Fetch-all
    # ============================================
    async def refresh(self) -> None:
        """One immediate fetch-all regardless of connection state."""
        self.loading = True
        try:
            ambulances, requests = await asyncio.gather(self._ambulances_or_empty(), self._requests_or_empty())
            await self._replace(ambulances, requests)
        finally:
            self.loading = False

    async def _ambulances_or_empty(self) -> List[AmbulanceData]:
        try:
            return await self.gateway.ambulances.list()
        except ConsoleError as e:
            logger.error(f"Error fetching ambulances: {e}")
            return []

    async def _requests_or_empty(self) -> List[EmergencyRequest]:
        try:
            return (await self.gateway.requests.list(0, self.page_size)).content
        except ConsoleError as e:
            logger.error(f"Error fetching requests: {e}")
            return []

    async def _replace(self, ambulances: List[AmbulanceData], requests: List[EmergencyRequest]) -> None:
        self.ambulances = list(ambulances)
        self.requests = list(requests)
        await self._publish({"type": AMBULANCES_UPDATE, "payload": [a.to_wire() for a in self.ambulances]})
        await self._publish({"type": REQUESTS_UPDATE, "payload": [r.to_wire() for r in self.requests]})

    # ============================================
    # Messages
    # ============================================
    def apply_message(self, raw: Any) -> Optional[dict]:
        """Apply one push message to local state. Returns it when applied, None when dropped."""
        try:
            message = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError as e:
            logger.error(f"Error parsing live feed message: {e}")
            return None
        if not isinstance(message, dict):
            return None

        kind = message.get("type")
        payload = message.get("payload")
        if payload is None:
            return None

        try:
            if kind == AMBULANCES_UPDATE:
                self.ambulances = [AmbulanceData.model_validate(a) for a in payload]
            elif kind == REQUESTS_UPDATE:
                self.requests = [EmergencyRequest.model_validate(r) for r in payload]
            elif kind == AMBULANCE_STATUS_CHANGE:
                self.ambulances = _merge(self.ambulances, payload)
            elif kind == REQUEST_STATUS_CHANGE:
                self.requests = _merge(self.requests, payload)
            elif kind == NEW_EMERGENCY_REQUEST:
                created = EmergencyRequest.model_validate(payload)
                self.requests = [created] + [r for r in self.requests if created.id is None or r.id != created.id]
            else:
                logger.debug(f"Ignoring live feed message type {kind}")
                return None
        except (ValueError, AttributeError, TypeError) as e:
            logger.error(f"Dropping malformed {kind} message: {e}")
            return None
        return message

    async def handle_message(self, raw: Any) -> None:
        message = self.apply_message(raw)
        if message is not None:
            await self._publish(message)

    async def _publish(self, message: dict) -> None:
        for listener in list(self._listeners):
            try:
                await listener(message)
            except Exception as e:
                logger.error(f"Live feed listener failed: {e}")

    # ============================================
    # Optimistic mutation
    # ============================================
    async def update_ambulance_status(self, ambulance_id: int, status: AmbulanceStatus) -> bool:
        """
        Apply the status locally first, then call the backend. On failure the
        ambulance is put back to its last known server state.
        """
        previous = next((a for a in self.ambulances if a.id == ambulance_id), None)
        self.ambulances = [
            a.model_copy(update={"status": status}) if a.id == ambulance_id else a
            for a in self.ambulances
        ]
        try:
            await self.gateway.ambulances.update_status(ambulance_id, status)
        except ConsoleError as e:
            logger.error(f"Error updating ambulance {ambulance_id} status, rolling back: {e}")
            if previous is not None:
                self.ambulances = [previous if a.id == ambulance_id else a for a in self.ambulances]
            self._report_error("Failed to update ambulance status")
            return False
        await self._publish({"type": AMBULANCE_STATUS_CHANGE, "payload": {"id": ambulance_id, "status": status.value}})
        return True

    def _report_error(self, message: str) -> None:
        if self.on_error:
            self.on_error(message)

    # ============================================
    # Derived views
    # ============================================
    @property
    def active_requests(self) -> List[EmergencyRequest]:
        return [r for r in self.requests if not r.is_terminal]

    @property
    def stats(self) -> Dict[str, int]:
        def count_ambulances(status):
            return len([a for a in self.ambulances if a.effective_status == status])

        return {
            "totalAmbulances": len(self.ambulances),
            "availableAmbulances": count_ambulances(AmbulanceStatus.AVAILABLE),
            "dispatchedAmbulances": count_ambulances(AmbulanceStatus.DISPATCHED),
            "onDutyAmbulances": count_ambulances(AmbulanceStatus.ON_DUTY),
            "totalRequests": len(self.requests),
            "pendingRequests": len([r for r in self.requests if r.status == RequestStatus.PENDING]),
            "activeRequests": len(self.active_requests),
        }

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "connected": self.connected,
            "polling": self.polling,
            "loading": self.loading,
            "ambulances": [a.to_wire() for a in self.ambulances],
            "requests": [r.to_wire() for r in self.requests],
            "stats": self.stats,
        }
