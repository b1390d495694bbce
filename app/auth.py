from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from fastapi import HTTPException, Request, status

from app.security.passwords import first_match, hash_secret, verify_secret

logger = logging.getLogger(__name__)


class AccessLevel(str, Enum):
    FULL = 'FULL'
    VIEW = 'VIEW'
    REQUESTER = 'REQUESTER'
    NONE = 'NONE'

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    AccessLevel.FULL: 'Full access',
    AccessLevel.VIEW: 'View only',
    AccessLevel.REQUESTER: 'Requester',
    AccessLevel.NONE: 'Anonymous',
}

FULL_ONLY = frozenset({AccessLevel.FULL})
REQUEST_WRITERS = frozenset({AccessLevel.FULL, AccessLevel.REQUESTER})
# levels whose local changes may be pushed to the shared store
PUSH_LEVELS = REQUEST_WRITERS


class PermissionDeniedError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    message: str | None = None


def check_access(level: AccessLevel, allowed: frozenset[AccessLevel] = FULL_ONLY) -> AccessDecision:
    if level == AccessLevel.NONE:
        return AccessDecision(False, 'You must sign in before making changes')
    if level not in allowed:
        return AccessDecision(False, 'Insufficient permission for this action')
    return AccessDecision(True)


def ensure_access(level: AccessLevel, allowed: frozenset[AccessLevel] = FULL_ONLY) -> None:
    decision = check_access(level, allowed)
    if not decision.allowed:
        logger.warning('Denied %s action for level %s', sorted(a.value for a in allowed), level.value)
        raise PermissionDeniedError(decision.message or 'Permission denied')


class Authenticator(Protocol):
    def authenticate(self, secret: str) -> AccessLevel: ...

    def verify_admin_secret(self, secret: str | None) -> bool: ...


class SharedSecretAuthenticator:
    """Maps three shared secrets to access levels; a fourth confirms destructive actions."""

    def __init__(self, *, full: str, view: str, requester: str, admin: str) -> None:
        self._hashes = [
            (AccessLevel.FULL, hash_secret(full)),
            (AccessLevel.VIEW, hash_secret(view)),
            (AccessLevel.REQUESTER, hash_secret(requester)),
        ]
        self._admin_hash = hash_secret(admin)

    @classmethod
    def from_settings(cls, settings) -> SharedSecretAuthenticator:
        return cls(
            full=settings.password_full,
            view=settings.password_view,
            requester=settings.password_requester,
            admin=settings.admin_secret,
        )

    def authenticate(self, secret: str) -> AccessLevel:
        return first_match(secret, self._hashes) or AccessLevel.NONE

    def verify_admin_secret(self, secret: str | None) -> bool:
        return verify_secret(secret, self._admin_hash)


def require_access(*allowed: AccessLevel):
    """Route dependency rejecting requests whose process session lacks ``allowed``."""
    allowed_set = frozenset(allowed) or FULL_ONLY

    def _dep(request: Request) -> None:
        session = request.app.state.session
        decision = check_access(session.access_level, allowed_set)
        if decision.allowed:
            return
        code = status.HTTP_401_UNAUTHORIZED if session.access_level == AccessLevel.NONE else status.HTTP_403_FORBIDDEN
        raise HTTPException(status_code=code, detail=decision.message)

    return _dep
