from __future__ import annotations

import secrets
import threading


class SessionStore:
    """Client identities that have presented the access token.

    Entries live until the process exits; there is no de-authorization.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._authorized: set[str] = set()

    def add(self, identity: str) -> None:
        with self._lock:
            self._authorized.add(identity)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._authorized

    def __len__(self) -> int:
        """Number of authorized identities."""
        with self._lock:
            return len(self._authorized)


class SessionGate:
    def __init__(self, token: str, store: SessionStore, enabled: bool = True) -> None:
        self.token = token
        self.store = store
        self.enabled = enabled

    def check(self, identity: str, presented: str | None) -> bool:
        """Return True when the request may be routed.

        A matching token moves the identity to the authorized set for good.
        """
        if not self.enabled:
            return True
        if identity in self.store:
            return True
        if presented is not None and self.token and secrets.compare_digest(
            presented.encode("utf-8"), self.token.encode("utf-8")
        ):
            self.store.add(identity)
            return True
        return False
