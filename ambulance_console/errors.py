"""
Error taxonomy for calls against the remote dispatch API.

Every gateway call either returns a parsed body or raises one of the
ConsoleError subclasses below.
"""

import json
from typing import Any, Dict, Iterable, Optional


# Form fields the backend may name in a validation message, with the text
# shown next to the field when it does.
FIELD_MESSAGES = {
    "patientName": "Please enter patient name",
    "userContact": "Please enter a valid contact number",
    "location": "Please provide a detailed location",
    "emergencyDescription": "Please provide a short description of the emergency",
    "username": "Username must be between 3 and 20 characters",
    "email": "Invalid email address",
    "phoneNumber": "Invalid phone number format",
    "licensePlate": "License plate is required",
    "driverName": "Driver name is required",
}


class ConsoleError(Exception):
    """Base class for failed gateway calls."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class NetworkError(ConsoleError):
    """No response: connection refused, DNS failure or timeout."""


class AuthError(ConsoleError):
    """401 from the backend. Credentials are already purged when this is raised."""


class ValidationError(ConsoleError):
    """4xx with a structured or free-text message."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None,
                 known_fields: Iterable[str] = FIELD_MESSAGES):
        super().__init__(message, status_code, body)
        self.field = match_field(message, known_fields)

    def field_errors(self) -> Dict[str, str]:
        if not self.field:
            return {}
        return {self.field: FIELD_MESSAGES.get(self.field, self.message)}


class ServerError(ConsoleError):
    """5xx from the backend."""


def extract_message(body: Any, fallback: str = "") -> str:
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
        if message:
            return str(message)
        return json.dumps(body)
    if isinstance(body, str) and body:
        return body
    return fallback


def match_field(message: str, known_fields: Iterable[str] = FIELD_MESSAGES) -> Optional[str]:
    lowered = (message or "").lower()
    for field in known_fields:
        if field.lower() in lowered:
            return field
    return None


def error_for_status(status_code: int, body: Any, reason: str = "") -> ConsoleError:
    message = extract_message(body, fallback=reason or f"HTTP {status_code}")
    if status_code == 401:
        return AuthError(message, status_code, body)
    if 400 <= status_code < 500:
        return ValidationError(message, status_code, body)
    return ServerError(message, status_code, body)
