"""
Remote Data Gateway
Typed wrappers around the dispatch REST API. Every call carries the stored
bearer token; a 401 anywhere purges credentials before AuthError is raised.
"""

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Union

import httpx
import pydantic

from .config import API_BASE_URL, REQUEST_TIMEOUT
from .errors import AuthError, NetworkError, ServerError, error_for_status
from .models import (
    AmbulanceCreate,
    AmbulanceData,
    AmbulanceStatus,
    AuthResponse,
    EmergencyRequest,
    EmergencyRequestCreate,
    PaginatedResponse,
    Patient,
    PatientCreate,
    RegisterForm,
    RequestStatus,
    RequestStatusHistory,
    ServiceHistory,
    ServiceStatus,
    User,
)
from .storage import CredentialStore

logger = logging.getLogger("ambulance_console")


def _parse(model, data):
    """Validate a response body; a body that doesn't fit the model is a ServerError."""
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        name = getattr(model, "__name__", str(model))
        logger.error(f"Malformed {name} in response: {e}")
        raise ServerError(f"Malformed response: expected {name}", body=data) from e


def _parse_list(model, data) -> list:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ServerError(f"Malformed response: expected a list of {model.__name__}", body=data)
    return [_parse(model, item) for item in data]


def _status_value(status: Union[str, RequestStatus, ServiceStatus, AmbulanceStatus]) -> str:
    return status.value if hasattr(status, "value") else str(status)


class ApiGateway:
    """Owns the HTTP client and the resource groups built on it."""

    def __init__(
        self,
        credentials: CredentialStore,
        base_url: str = API_BASE_URL,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_unauthorized: Optional[Callable[[], None]] = None,
    ):
        self.credentials = credentials
        self.on_unauthorized = on_unauthorized
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

        self.auth = AuthAPI(self)
        self.ambulances = AmbulanceAPI(self)
        self.requests = RequestAPI(self)
        self.dispatch = DispatchAPI(self)
        self.patients = PatientAPI(self)
        self.service_history = ServiceHistoryAPI(self)
        self.users = UserAPI(self)

    async def request(self, method: str, path: str, json: Any = None, params: Optional[dict] = None) -> Any:
        headers = {}
        token = self.credentials.token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        try:
            response = await self.client.request(method, path, json=json, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        body = self._decode(response)
        if response.is_error:
            error = error_for_status(response.status_code, body, response.reason_phrase)
            if isinstance(error, AuthError):
                self._force_logout(method, path)
            raise error
        return body

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _force_logout(self, method: str, path: str) -> None:
        logger.warning(f"401 on {method} {path}, clearing stored credentials")
        self.credentials.purge()
        if self.on_unauthorized:
            self.on_unauthorized()

    async def aclose(self) -> None:
        await self.client.aclose()


class _Resource:
    def __init__(self, gateway: ApiGateway):
        self.gateway = gateway

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        return await self.gateway.request(method, path, **kwargs)


# ============================================
# /auth
# ============================================
class AuthAPI(_Resource):
    async def login(self, username: str, password: str) -> AuthResponse:
        data = await self._call("POST", "/auth/login", json={"username": username, "password": password})
        return _parse(AuthResponse, data)

    async def register(self, form: RegisterForm) -> Any:
        return await self._call("POST", "/auth/register", json=form.to_wire())

    async def logout(self) -> None:
        await self._call("POST", "/auth/logout")

    async def refresh_token(self) -> AuthResponse:
        data = await self._call("POST", "/auth/refresh-token")
        return _parse(AuthResponse, data)


# ============================================
# /ambulances
# ============================================
class AmbulanceAPI(_Resource):
    async def list(self) -> List[AmbulanceData]:
        return _parse_list(AmbulanceData, await self._call("GET", "/ambulances"))

    async def available(self) -> List[AmbulanceData]:
        return _parse_list(AmbulanceData, await self._call("GET", "/ambulances/available"))

    async def get(self, ambulance_id: int) -> AmbulanceData:
        return _parse(AmbulanceData, await self._call("GET", f"/ambulances/{ambulance_id}"))

    async def create(self, form: AmbulanceCreate) -> AmbulanceData:
        return _parse(AmbulanceData, await self._call("POST", "/ambulances", json=form.to_wire()))

    async def update(self, ambulance_id: int, form: AmbulanceCreate) -> AmbulanceData:
        data = await self._call("PUT", f"/ambulances/{ambulance_id}", json=form.to_wire())
        return _parse(AmbulanceData, data)

    async def patch(self, ambulance_id: int, fields: dict) -> AmbulanceData:
        data = await self._call("PATCH", f"/ambulances/{ambulance_id}", json=fields)
        return _parse(AmbulanceData, data)

    async def update_status(self, ambulance_id: int, status: Union[str, AmbulanceStatus]) -> Optional[AmbulanceData]:
        data = await self._call("PATCH", f"/ambulances/{ambulance_id}/status", json={"status": _status_value(status)})
        return _parse(AmbulanceData, data) if isinstance(data, dict) else None

    async def mark_available(self, ambulance_id: int) -> Optional[AmbulanceData]:
        return await self.update_status(ambulance_id, AmbulanceStatus.AVAILABLE)

    async def delete(self, ambulance_id: int) -> None:
        await self._call("DELETE", f"/ambulances/{ambulance_id}")


# ============================================
# /requests
# ============================================
class RequestAPI(_Resource):
    async def create(self, form: EmergencyRequestCreate) -> EmergencyRequest:
        return _parse(EmergencyRequest, await self._call("POST", "/requests", json=form.to_wire()))

    async def list(self, page: int = 0, size: int = 100, sort: Optional[str] = None) -> PaginatedResponse[EmergencyRequest]:
        """Server-side page. Older backends answer with a bare list."""
        data = await self._call("GET", "/requests", params={"page": page, "size": size, "sort": sort})
        if isinstance(data, list):
            content = _parse_list(EmergencyRequest, data)
            return PaginatedResponse[EmergencyRequest](
                content=content, total_elements=len(content), total_pages=1 if content else 0,
                size=len(content), number=0,
            )
        return _parse(PaginatedResponse[EmergencyRequest], data or {})

    async def get(self, request_id: int) -> EmergencyRequest:
        return _parse(EmergencyRequest, await self._call("GET", f"/requests/{request_id}"))

    async def status_history(self, request_id: int) -> List[RequestStatusHistory]:
        return _parse_list(RequestStatusHistory, await self._call("GET", f"/requests/{request_id}/status-history"))

    async def mine(self) -> List[EmergencyRequest]:
        return _parse_list(EmergencyRequest, await self._call("GET", "/requests/my"))

    async def by_user(self, user_id: int) -> List[EmergencyRequest]:
        return _parse_list(EmergencyRequest, await self._call("GET", f"/requests/user/{user_id}"))

    async def by_patient(self, patient_id: int) -> List[EmergencyRequest]:
        return _parse_list(EmergencyRequest, await self._call("GET", f"/requests/patient/{patient_id}"))

    async def update_status(self, request_id: int, status: Union[str, RequestStatus],
                            notes: Optional[str] = None) -> EmergencyRequest:
        body = {"status": _status_value(status)}
        if notes:
            body["notes"] = notes
        return _parse(EmergencyRequest, await self._call("PATCH", f"/requests/{request_id}/status", json=body))

    async def assign(self, request_id: int, ambulance_id: int) -> EmergencyRequest:
        data = await self._call("PATCH", f"/requests/{request_id}/assign", json={"ambulanceId": ambulance_id})
        return _parse(EmergencyRequest, data)


# ============================================
# /dispatch
# ============================================
class DispatchAPI(_Resource):
    async def dispatch_ambulance(self, request_id: int) -> Optional[EmergencyRequest]:
        data = await self._call("POST", f"/dispatch/{request_id}")
        return _parse(EmergencyRequest, data) if isinstance(data, dict) else None


# ============================================
# /patients
# ============================================
class PatientAPI(_Resource):
    async def list(self) -> List[Patient]:
        return _parse_list(Patient, await self._call("GET", "/patients"))

    async def create(self, form: PatientCreate) -> Patient:
        return _parse(Patient, await self._call("POST", "/patients", json=form.to_wire()))

    async def update(self, patient_id: int, form: PatientCreate) -> Patient:
        return _parse(Patient, await self._call("PUT", f"/patients/{patient_id}", json=form.to_wire()))

    async def soft_delete(self, patient_id: int) -> None:
        await self._call("PATCH", f"/patients/{patient_id}/soft-delete")

    async def hard_delete(self, patient_id: int) -> None:
        await self._call("DELETE", f"/patients/{patient_id}")


# ============================================
# /service-history
# ============================================
class ServiceHistoryAPI(_Resource):
    async def list(self) -> List[ServiceHistory]:
        return _parse_list(ServiceHistory, await self._call("GET", "/service-history"))

    async def by_status(self, status: Union[str, ServiceStatus]) -> List[ServiceHistory]:
        return _parse_list(ServiceHistory, await self._call("GET", f"/service-history/status/{_status_value(status)}"))

    async def by_date_range(self, start: datetime, end: datetime) -> List[ServiceHistory]:
        params = {"start": start.isoformat(), "end": end.isoformat()}
        return _parse_list(ServiceHistory, await self._call("GET", "/service-history/date-range", params=params))

    async def update_status(self, record_id: int, status: Union[str, ServiceStatus],
                            notes: Optional[str] = None) -> ServiceHistory:
        body = {"status": _status_value(status), "notes": notes or ""}
        data = await self._call("PATCH", f"/service-history/{record_id}/status", json=body)
        return _parse(ServiceHistory, data)

    async def mark_completed(self, record_id: int) -> ServiceHistory:
        return _parse(ServiceHistory, await self._call("PATCH", f"/service-history/{record_id}/complete"))


# ============================================
# /users
# ============================================
class UserAPI(_Resource):
    async def list(self) -> List[User]:
        return _parse_list(User, await self._call("GET", "/users"))

    async def get(self, user_id: int) -> User:
        return _parse(User, await self._call("GET", f"/users/{user_id}"))

    async def me(self) -> User:
        return _parse(User, await self._call("GET", "/users/me"))

    async def create(self, fields: dict) -> User:
        return _parse(User, await self._call("POST", "/users", json=fields))

    async def update(self, user_id: int, fields: dict) -> User:
        return _parse(User, await self._call("PUT", f"/users/{user_id}", json=fields))

    async def patch(self, user_id: int, fields: dict) -> User:
        return _parse(User, await self._call("PATCH", f"/users/{user_id}", json=fields))

    async def delete(self, user_id: int) -> None:
        await self._call("DELETE", f"/users/{user_id}")

    async def change_password(self, current_password: str, new_password: str) -> None:
        body = {"currentPassword": current_password, "newPassword": new_password}
        await self._call("PUT", "/users/me/password", json=body)
