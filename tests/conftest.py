import copy
import json
import re
from datetime import datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from ambulance_console.gateway import ApiGateway
from ambulance_console.main import build_services, create_app
from ambulance_console.storage import CredentialStore, MemoryStore, Persistence

BASE_URL = "http://backend.test/api"


class FakeBackend:
    """In-memory dispatch API answering over httpx.MockTransport."""

    def __init__(self):
        self.calls = []
        self.fail = {}
        self.hooks = {}
        self.revoked = set()
        self.bare_request_list = False
        self.empty_dispatch = False
        self.clock = datetime(2024, 3, 1, 8, 0, 0)

        self.users = {
            "admin": {"id": 1, "username": "admin", "password": "admin123", "role": "ADMIN",
                      "email": "admin@rapidcare.test", "firstName": "Ada", "lastName": "Admin"},
            "dispatch": {"id": 2, "username": "dispatch", "password": "dispatch123", "role": "DISPATCHER",
                         "email": "dispatch@rapidcare.test", "firstName": "Dan", "lastName": "Desk"},
            "jane": {"id": 3, "username": "jane", "password": "jane123", "role": "USER",
                     "email": "jane@rapidcare.test", "firstName": "Jane", "lastName": "Doe"},
        }
        self.ambulances = {
            1: {"id": 1, "licensePlate": "LAG-101", "driverName": "Tunde", "currentLocation": "Ikeja General",
                "status": "AVAILABLE"},
            2: {"id": 2, "licensePlate": "LAG-202", "driverName": "Bola", "currentLocation": "Victoria Island",
                "status": "ON_DUTY"},
        }
        self.requests = {}
        self.next_request_id = 7
        self.next_history_id = 1
        self.patients = {
            1: {"id": 1, "name": "Musa Bello", "contact": "+2348012345678", "medicalNotes": "Asthma"},
            2: {"id": 2, "name": "Ngozi Obi", "contact": "+2348098765432", "medicalNotes": ""},
        }
        self.service_history = {
            1: {"id": 1, "requestId": 1, "ambulanceId": 1, "status": "COMPLETED", "notes": "",
                "arrivalTime": "2024-02-10T09:00:00", "completionTime": "2024-02-10T09:45:00",
                "createdAt": "2024-02-10T08:30:00"},
            2: {"id": 2, "requestId": 2, "ambulanceId": 2, "status": "IN_PROGRESS", "notes": "",
                "createdAt": "2024-02-20T14:00:00"},
        }

    # ----------------------------------------
    # helpers
    # ----------------------------------------
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def now(self) -> str:
        self.clock += timedelta(minutes=1)
        return self.clock.isoformat()

    def token_for(self, username: str) -> str:
        return f"token-{username}"

    def user_for(self, request: httpx.Request):
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        token = header[len("Bearer "):]
        if token in self.revoked:
            return None
        for user in self.users.values():
            if self.token_for(user["username"]) == token:
                return user
        return None

    def paths(self, method: str = None):
        return [path for m, path, _ in self.calls if method is None or m == method]

    def add_request(self, **fields) -> dict:
        record = {
            "id": self.next_request_id,
            "userName": "Jane Doe",
            "patientName": "John Doe",
            "userContact": "+2348012345678",
            "location": "12 Allen Avenue, Ikeja",
            "emergencyDescription": "Chest pain",
            "status": "PENDING",
            "createdAt": self.now(),
            "statusHistory": [],
        }
        record.update(fields)
        self.requests[record["id"]] = record
        self.next_request_id += 1
        return record

    def _append_history(self, record: dict, new_status: str, notes, changed_by: str) -> None:
        record["statusHistory"].append({
            "id": self.next_history_id,
            "oldStatus": record["status"],
            "newStatus": new_status,
            "notes": notes,
            "changedBy": changed_by,
            "createdAt": self.now(),
        })
        self.next_history_id += 1
        record["status"] = new_status

    @staticmethod
    def _json(status_code: int, body=None) -> httpx.Response:
        if body is None:
            return httpx.Response(status_code)
        return httpx.Response(status_code, json=body)

    # ----------------------------------------
    # routing
    # ----------------------------------------
    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/api"):
            path = path[len("/api"):]
        method = request.method
        self.calls.append((method, path, request))

        hook = self.hooks.get((method, path))
        if hook:
            hook()
        if (method, path) in self.fail:
            status_code, body = self.fail[(method, path)]
            return self._json(status_code, body)

        body = json.loads(request.content) if request.content else None

        if path == "/auth/login" and method == "POST":
            user = self.users.get(body.get("username"))
            if not user or user["password"] != body.get("password"):
                return self._json(401, {"message": "Invalid credentials"})
            return self._json(200, {"token": self.token_for(user["username"]),
                                    "username": user["username"], "role": user["role"]})
        if path == "/auth/register" and method == "POST":
            return self._json(201, {"message": "User registered successfully"})

        public_request = (method == "POST" and path == "/requests") or (
            method == "GET" and re.fullmatch(r"/requests/\d+", path)
        )
        user = self.user_for(request)
        if user is None and not public_request:
            return self._json(401, {"message": "Unauthorized"})

        if path == "/auth/logout":
            return self._json(200)

        # users
        if path == "/users/me":
            return self._json(200, self._public_user(user))
        if path == "/users":
            return self._json(200, [self._public_user(u) for u in self.users.values()])
        match = re.fullmatch(r"/users/(\d+)", path)
        if match:
            found = [u for u in self.users.values() if u["id"] == int(match.group(1))]
            return self._json(200, self._public_user(found[0])) if found else self._json(404, {"message": "User not found"})

        # ambulances
        if path == "/ambulances" and method == "GET":
            return self._json(200, list(copy.deepcopy(self.ambulances).values()))
        if path == "/ambulances/available":
            return self._json(200, [a for a in self.ambulances.values() if a["status"] == "AVAILABLE"])
        match = re.fullmatch(r"/ambulances/(\d+)/status", path)
        if match and method == "PATCH":
            ambulance = self.ambulances[int(match.group(1))]
            ambulance["status"] = body["status"]
            return self._json(200, copy.deepcopy(ambulance))
        match = re.fullmatch(r"/ambulances/(\d+)", path)
        if match:
            ambulance_id = int(match.group(1))
            if method == "DELETE":
                self.ambulances.pop(ambulance_id, None)
                return self._json(204)
            return self._json(200, copy.deepcopy(self.ambulances[ambulance_id]))

        # requests
        if path == "/requests" and method == "POST":
            if not body.get("patientName"):
                return self._json(400, {"message": "patientName must not be blank"})
            record = self.add_request(**body)
            return self._json(201, copy.deepcopy(record))
        if path == "/requests" and method == "GET":
            content = list(copy.deepcopy(self.requests).values())
            if self.bare_request_list:
                return self._json(200, content)
            return self._json(200, {"content": content, "totalElements": len(content), "totalPages": 1,
                                    "size": int(request.url.params.get("size", 100)),
                                    "number": int(request.url.params.get("page", 0))})
        if path == "/requests/my":
            mine = [r for r in self.requests.values() if r.get("userName") == f"{user['firstName']} {user['lastName']}"]
            return self._json(200, copy.deepcopy(mine))
        match = re.fullmatch(r"/requests/user/(\d+)", path)
        if match:
            owner = [u for u in self.users.values() if u["id"] == int(match.group(1))][0]
            name = f"{owner['firstName']} {owner['lastName']}"
            return self._json(200, [r for r in copy.deepcopy(self.requests).values() if r.get("userName") == name])
        match = re.fullmatch(r"/requests/(\d+)/status-history", path)
        if match:
            return self._json(200, copy.deepcopy(self.requests[int(match.group(1))]["statusHistory"]))
        match = re.fullmatch(r"/requests/(\d+)/status", path)
        if match and method == "PATCH":
            record = self.requests[int(match.group(1))]
            self._append_history(record, body["status"], body.get("notes"), user["username"])
            return self._json(200, copy.deepcopy(record))
        match = re.fullmatch(r"/requests/(\d+)/assign", path)
        if match and method == "PATCH":
            record = self.requests[int(match.group(1))]
            record["ambulance"] = copy.deepcopy(self.ambulances[body["ambulanceId"]])
            return self._json(200, copy.deepcopy(record))
        match = re.fullmatch(r"/requests/(\d+)", path)
        if match:
            record = self.requests.get(int(match.group(1)))
            return self._json(200, copy.deepcopy(record)) if record else self._json(404, {"message": "Request not found"})

        # dispatch
        match = re.fullmatch(r"/dispatch/(\d+)", path)
        if match and method == "POST":
            record = self.requests[int(match.group(1))]
            available = [a for a in self.ambulances.values() if a["status"] == "AVAILABLE"]
            if not available:
                return self._json(409, {"message": "No ambulance available"})
            available[0]["status"] = "DISPATCHED"
            record["ambulance"] = copy.deepcopy(available[0])
            self._append_history(record, "DISPATCHED", "Ambulance dispatched", user["username"])
            if self.empty_dispatch:
                return self._json(200)
            return self._json(200, copy.deepcopy(record))

        # patients
        if path == "/patients" and method == "GET":
            return self._json(200, list(copy.deepcopy(self.patients).values()))
        if path == "/patients" and method == "POST":
            patient = dict(body, id=max(self.patients) + 1)
            self.patients[patient["id"]] = patient
            return self._json(201, patient)
        match = re.fullmatch(r"/patients/(\d+)/soft-delete", path)
        if match:
            self.patients[int(match.group(1))]["deleted"] = True
            return self._json(200)
        match = re.fullmatch(r"/patients/(\d+)", path)
        if match and method == "DELETE":
            self.patients.pop(int(match.group(1)), None)
            return self._json(204)

        # service history
        if path in ("/service-history", "/service-history/date-range"):
            return self._json(200, list(copy.deepcopy(self.service_history).values()))
        match = re.fullmatch(r"/service-history/(\d+)/complete", path)
        if match:
            record = self.service_history[int(match.group(1))]
            record["status"] = "COMPLETED"
            record["completionTime"] = self.now()
            return self._json(200, copy.deepcopy(record))
        match = re.fullmatch(r"/service-history/(\d+)/status", path)
        if match:
            record = self.service_history[int(match.group(1))]
            record["status"] = body["status"]
            record["notes"] = body.get("notes", "")
            return self._json(200, copy.deepcopy(record))

        return self._json(404, {"message": f"No route for {method} {path}"})

    @staticmethod
    def _public_user(user: dict) -> dict:
        return {k: v for k, v in user.items() if k != "password"}


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def credentials():
    return CredentialStore(MemoryStore(), MemoryStore())


def signed_in(credentials: CredentialStore, username: str = "admin", role: str = "ADMIN",
              persistence: Persistence = Persistence.EPHEMERAL) -> CredentialStore:
    credentials.save(f"token-{username}", {"username": username, "role": role}, persistence)
    return credentials


@pytest.fixture
def gateway(backend, credentials):
    return ApiGateway(credentials, base_url=BASE_URL, transport=backend.transport())


@pytest.fixture
def services(backend, credentials):
    return build_services(credentials=credentials, transport=backend.transport(), enable_websocket=False)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def login(client: TestClient, username: str, password: str, remember: bool = False):
    response = client.post("/console/auth/login",
                           json={"username": username, "password": password, "rememberMe": remember})
    assert response.status_code == 200, response.text
    return response.json()
