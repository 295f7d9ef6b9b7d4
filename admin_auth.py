"""
admin_auth.py — Cookie-backed admin sessions.

Admins are identified by email against the configured allow-list. A login
issues an opaque session id stored in the `admin_session` cookie; every
valid use pushes the expiry forward by the configured session length.
"""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from config import Settings
from errors import BadRequestError, UnauthorizedError

logger = logging.getLogger(__name__)

SESSION_COOKIE = "admin_session"

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
}

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_session_id(now: Optional[float] = None) -> str:
    ms = int((now if now is not None else time.time()) * 1000)
    return secrets.token_hex(32) + to_base36(ms)


@dataclass
class AdminSession:
    id: str
    email: str
    created_at: float
    expires_at: float


class AdminSessionStore:
    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        self.settings = settings
        self._clock = clock
        self._sessions: dict[str, AdminSession] = {}

    @property
    def duration_seconds(self) -> float:
        return self.settings.admin_session_hours * 3600

    def is_admin_email(self, email: str) -> bool:
        return email.strip().lower() in self.settings.admin_email_list

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if now > s.expires_at]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info(f"[admin] purged {len(expired)} expired session(s), active={len(self._sessions)}")
        return len(expired)

    def login(self, email: Optional[str]) -> AdminSession:
        if not email or not email.strip():
            raise BadRequestError("Email is required")
        if not self.is_admin_email(email):
            logger.warning(f"[admin] login refused email={email}")
            raise UnauthorizedError("Access denied. Not an authorized admin.")

        now = self._clock()
        session = AdminSession(
            id=generate_session_id(now),
            email=email.strip().lower(),
            created_at=now,
            expires_at=now + self.duration_seconds,
        )
        self._sessions[session.id] = session
        logger.info(f"[admin] session created email={session.email}")
        return session

    def validate(self, session_id: Optional[str]) -> Optional[AdminSession]:
        """Return the live session and extend it, or None when unknown or expired."""
        self.purge_expired()
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        session.expires_at = self._clock() + self.duration_seconds
        return session

    def logout(self, session_id: Optional[str]) -> bool:
        session = self._sessions.pop(session_id, None) if session_id else None
        if session is not None:
            logger.info(f"[admin] session destroyed email={session.email}")
        return session is not None

    def active_count(self) -> int:
        self.purge_expired()
        return len(self._sessions)
