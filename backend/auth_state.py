from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Callable, List, Optional

from db import AuthSession, AuthSubscription, AuthUser, SupabaseAuth

logger = logging.getLogger(__name__)

RoleLookup = Callable[[str], Optional[str]]
StateListener = Callable[["AuthState"], None]


@dataclass(frozen=True)
class AuthState:
    user: Optional[AuthUser] = None
    role: Optional[str] = None
    loading: bool = True

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    def to_dict(self) -> dict:
        return {
            "user": self.user.to_dict() if self.user else None,
            "role": self.role,
            "loading": self.loading,
        }


ANONYMOUS = AuthState(user=None, role=None, loading=False)


class AuthStateResolver:
    """
    Single owner of the {user, role, loading} view of the current session.

    Sessions arrive through ingest() only: from the auth client's change
    notifications and from the one-shot read done by start(). Every ingest
    takes a new generation number; a role lookup publishes only if no newer
    session has been ingested meanwhile, so overlapping resolutions settle on
    the latest session.
    """

    def __init__(self, auth: SupabaseAuth, role_lookup: RoleLookup, *, executor: Optional[Executor] = None) -> None:
        self._auth = auth
        self._role_lookup = role_lookup
        self._executor = executor
        self._lock = threading.Lock()
        self._state = AuthState()
        self._generation = 0
        self._listeners: List[StateListener] = []
        self._subscription: Optional[AuthSubscription] = None
        self._stopped = False

    @property
    def state(self) -> AuthState:
        with self._lock:
            return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def start(self) -> None:
        # Listen first, then read the current session in case sign-in already happened.
        self._subscription = self._auth.on_auth_state_change(self._on_auth_event)
        self.ingest(self._auth.get_session())

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            self._listeners.clear()
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_auth_event(self, event: str, session: Optional[AuthSession]) -> None:
        logger.debug("resolver saw %s", event)
        self.ingest(session)

    def ingest(self, session: Optional[AuthSession]) -> None:
        user = session.user if session is not None else None
        with self._lock:
            if self._stopped:
                return
            self._generation += 1
            generation = self._generation
        if user is None:
            self._publish(generation, ANONYMOUS)
            return
        if self._executor is not None:
            self._executor.submit(self._resolve, generation, user)
        else:
            self._resolve(generation, user)

    def _resolve(self, generation: int, user: AuthUser) -> None:
        try:
            role = self._role_lookup(user.id)
        except Exception:
            logger.exception("Role lookup failed for %s", user.id)
            role = None
        self._publish(generation, AuthState(user=user, role=role, loading=False))

    def _publish(self, generation: int, state: AuthState) -> None:
        with self._lock:
            if self._stopped or generation != self._generation:
                return
            self._state = state
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("Auth state listener failed")
