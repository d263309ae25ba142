"""
Persisted session state: bearer credential and the signed-in admin profile.

The token is read at channel-connect time and on every REST call. It is cleared
on logout or when the backend rejects it; in the latter case every registered
"unauthenticated" listener is called so the hosting application can react.
"""

import os
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fly8sync.logging_config import get_logger

logger = get_logger("session")

UnauthenticatedListener = Callable[[str], Any]


class SessionStore:
    """
    Stores credentials in a JSON file (``~/.fly8sync/session.json`` by default).

    Usage:
        session = SessionStore(config.session_file)
        session.save(token, admin_profile)
        session.add_unauthenticated_listener(lambda reason: ...)
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._token: Optional[str] = None
        self._user: Optional[Dict[str, Any]] = None
        self._listeners: List[UnauthenticatedListener] = []
        self._load()

    def _load(self) -> bool:
        """Load session from file"""
        if not self.path.exists():
            return False
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            self._token = data.get("token")
            self._user = data.get("user")
            return True
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load session from {self.path}: {e}")
            return False

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump({"token": self._token, "user": self._user}, f, indent=2)
        # Secure the file (Unix only)
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            pass

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self._user

    @property
    def user_id(self) -> Optional[str]:
        if not self._user:
            return None
        return self._user.get("_id") or self._user.get("id")

    def is_authenticated(self) -> bool:
        return bool(self._token and self._user)

    def save(self, token: str, user: Dict[str, Any]) -> None:
        self._token = token
        self._user = user
        self._persist()

    def update_user(self, user: Dict[str, Any]) -> None:
        self._user = user
        self._persist()

    def clear(self) -> None:
        """Clear stored credentials"""
        self._token = None
        self._user = None
        if self.path.exists():
            self.path.unlink()

    def add_unauthenticated_listener(self, listener: UnauthenticatedListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def notify_unauthenticated(self, reason: str = "unauthorized") -> None:
        """Drop the credential and tell listeners the session is gone"""
        had_session = self.is_authenticated()
        self.clear()
        if had_session:
            logger.warning(f"Session ended by backend: {reason}")
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.log_error_with_context(e, context="unauthenticated listener")
