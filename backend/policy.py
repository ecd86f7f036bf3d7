from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from auth_state import AuthState

LANDING_PATH = "/"


class RouteOutcome(str, Enum):
    LOADING = "loading"
    ANONYMOUS = "anonymous"
    AUTHORIZED = "authorized"
    MISROUTED = "misrouted"


@dataclass(frozen=True)
class RouteDecision:
    outcome: RouteOutcome
    redirect: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome is RouteOutcome.AUTHORIZED


def dashboard_path(role: Optional[str]) -> str:
    """Where a session with this role belongs; role-less sessions go to the landing page."""
    return f"/{role}" if role else LANDING_PATH


def decide_route(state: AuthState, allowed_role: str) -> RouteDecision:
    """
    Gate a role-specific view on the resolver's current state.
    Only an exact role match renders; anything else names where to go instead.
    """
    if state.loading:
        return RouteDecision(RouteOutcome.LOADING)
    if state.user is None:
        return RouteDecision(RouteOutcome.ANONYMOUS, redirect=LANDING_PATH)
    if state.role != allowed_role:
        return RouteDecision(RouteOutcome.MISROUTED, redirect=dashboard_path(state.role))
    return RouteDecision(RouteOutcome.AUTHORIZED)
