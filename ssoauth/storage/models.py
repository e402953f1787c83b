from __future__ import annotations

import json
from dataclasses import asdict, dataclass

SESSION_SEPARATOR = ":"


@dataclass(frozen=True)
class SessionKey:
    """One authenticated device binding for one user (``userID:deviceID``)."""

    user_id: str
    device_id: str

    def __str__(self) -> str:
        return f"{self.user_id}{SESSION_SEPARATOR}{self.device_id}"

    @classmethod
    def parse(cls, session_id: str) -> "SessionKey":
        if not isinstance(session_id, str):
            raise ValueError("session id must be a string")
        parts = session_id.split(SESSION_SEPARATOR)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(f"invalid session format: {session_id}")
        return cls(user_id=parts[0], device_id=parts[1])


@dataclass
class UserProfile:
    id: str
    email: str
    name: str = ""
    role: str = "user"


@dataclass
class PendingRegistration:
    session_id: str
    code: str
    name: str
    email: str
    password: str

    @staticmethod
    def session_for(email: str) -> str:
        return f"user:{email}"

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "PendingRegistration":
        data = json.loads(raw)
        return cls(
            session_id=data["session_id"],
            code=data["code"],
            name=data.get("name", ""),
            email=data["email"],
            password=data["password"],
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
