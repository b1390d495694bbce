from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field

from app.auth import AccessLevel

logger = logging.getLogger(__name__)


def _session_key() -> str:
    return secrets.token_urlsafe(12)


@dataclass
class SessionContext:
    """Per-process session: who is editing and with which access level."""

    access_level: AccessLevel = AccessLevel.NONE
    display_name: str | None = None
    session_key: str = field(default_factory=_session_key)

    @property
    def authenticated(self) -> bool:
        return self.access_level != AccessLevel.NONE

    @property
    def user_label(self) -> str:
        if self.display_name and self.display_name.strip():
            return self.display_name.strip()
        return self.access_level.label

    def login(self, access_level: AccessLevel, display_name: str | None = None) -> None:
        self.access_level = access_level
        if display_name is not None:
            self.display_name = display_name
        logger.info('Session %s signed in as %s', self.session_key, access_level.value)

    def logout(self) -> None:
        logger.info('Session %s signed out', self.session_key)
        self.access_level = AccessLevel.NONE
