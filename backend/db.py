# db.py
from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests
from requests import RequestException
from dotenv import load_dotenv

_ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(_ENV_PATH)

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"


@dataclass(frozen=True)
class SupabaseConfig:
    url: str
    anon_key: str
    service_role_key: Optional[str] = None
    timeout_s: float = 10.0

    @property
    def api_key(self) -> str:
        return self.service_role_key or self.anon_key


class SupabaseError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, response_text: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text
        self.payload: Any = None

    @property
    def message(self) -> str:
        """Backend-supplied message when the response carried one, else the generic one."""
        if isinstance(self.payload, dict):
            for key in ("msg", "message", "error_description", "error"):
                val = self.payload.get(key)
                if isinstance(val, str) and val.strip():
                    return val.strip()
        return super().__str__()

    def __str__(self) -> str:
        base = super().__str__()
        details = []
        if self.status_code is not None:
            details.append(f"status={self.status_code}")
        if self.response_text:
            details.append(f"response={self.response_text}")
        if not details:
            return base
        return f"{base} ({', '.join(details)})"


def _raise_for_response(resp: requests.Response, method: str, url: str) -> None:
    if resp.ok:
        return
    err = SupabaseError(
        f"Supabase request failed ({method} {url})",
        status_code=resp.status_code,
        response_text=resp.text,
    )
    try:
        err.payload = resp.json()
    except ValueError:
        err.payload = None
    raise err


def _decode_body(resp: requests.Response) -> Any:
    if not resp.text:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


# -----------------------------
# Auth (GoTrue)
# -----------------------------
@dataclass(frozen=True)
class AuthUser:
    id: str
    email: Optional[str] = None
    created_at: Optional[str] = None
    user_metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["AuthUser"]:
        if not isinstance(payload, dict):
            return None
        user_id = str(payload.get("id") or "").strip()
        if not user_id:
            return None
        meta = payload.get("user_metadata")
        return cls(
            id=user_id,
            email=payload.get("email"),
            created_at=payload.get("created_at"),
            user_metadata=dict(meta) if isinstance(meta, dict) else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "created_at": self.created_at}


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    user: AuthUser
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    token_type: str = "bearer"

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["AuthSession"]:
        if not isinstance(payload, dict):
            return None
        token = payload.get("access_token")
        user = AuthUser.from_payload(payload.get("user"))
        if not token or user is None:
            return None
        expires_at = payload.get("expires_at")
        if expires_at is None and payload.get("expires_in") is not None:
            try:
                expires_at = int(time.time()) + int(payload["expires_in"])
            except (TypeError, ValueError):
                expires_at = None
        return cls(
            access_token=str(token),
            user=user,
            refresh_token=payload.get("refresh_token"),
            expires_at=int(expires_at) if expires_at is not None else None,
            token_type=str(payload.get("token_type") or "bearer"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "token_type": self.token_type,
        }


@dataclass(frozen=True)
class AuthResponse:
    user: Optional[AuthUser]
    session: Optional[AuthSession]


AuthListener = Callable[[str, Optional[AuthSession]], None]


class AuthSubscription:
    def __init__(self, auth: "SupabaseAuth", callback: AuthListener) -> None:
        self._auth = auth
        self.callback = callback

    def unsubscribe(self) -> None:
        self._auth._remove_listener(self)


class SupabaseAuth:
    """
    GoTrue client holding one current session, like the browser SDK does.
    Listeners registered with on_auth_state_change are told about every transition.
    """

    def __init__(self, cfg: SupabaseConfig, http: Optional[requests.Session] = None) -> None:
        self._cfg = cfg
        self._base_url = f"{cfg.url.rstrip('/')}/auth/v1"
        self._http = http or requests.Session()
        self._session: Optional[AuthSession] = None
        self._subscriptions: List[AuthSubscription] = []
        self._lock = threading.Lock()

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        return {
            "apikey": self._cfg.anon_key,
            "Authorization": f"Bearer {access_token or self._cfg.anon_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Any] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            resp = self._http.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(access_token),
                timeout=self._cfg.timeout_s,
            )
        except RequestException as exc:
            raise SupabaseError(
                f"Supabase auth request failed ({method} {url})",
                response_text=str(exc),
            ) from exc
        _raise_for_response(resp, method, url)
        return _decode_body(resp)

    def sign_up(
        self,
        email: str,
        password: str,
        *,
        data: Optional[Dict[str, Any]] = None,
        redirect_to: Optional[str] = None,
    ) -> AuthResponse:
        params = {"redirect_to": redirect_to} if redirect_to else None
        body = self._request(
            "POST",
            "signup",
            params=params,
            json_body={"email": email, "password": password, "data": data or {}},
        )
        # With email confirmation on, GoTrue answers with the bare user object.
        session = AuthSession.from_payload(body)
        if session is not None:
            self._set_session(session, SIGNED_IN)
            return AuthResponse(user=session.user, session=session)
        user = AuthUser.from_payload(body.get("user") if isinstance(body, dict) and "user" in body else body)
        return AuthResponse(user=user, session=None)

    def sign_in_with_password(self, email: str, password: str) -> AuthResponse:
        body = self._request(
            "POST",
            "token",
            params={"grant_type": "password"},
            json_body={"email": email, "password": password},
        )
        session = AuthSession.from_payload(body)
        if session is None:
            raise SupabaseError("Supabase sign-in returned no session", response_text=str(body))
        self._set_session(session, SIGNED_IN)
        return AuthResponse(user=session.user, session=session)

    def sign_out(self, access_token: Optional[str] = None) -> None:
        token = access_token
        if token is None and self._session is not None:
            token = self._session.access_token
        if token:
            self._request("POST", "logout", access_token=token)
        self._set_session(None, SIGNED_OUT)

    def get_user(self, access_token: str) -> Optional[AuthUser]:
        body = self._request("GET", "user", access_token=access_token)
        return AuthUser.from_payload(body)

    def get_session(self) -> Optional[AuthSession]:
        with self._lock:
            return self._session

    def set_session(self, session: Optional[AuthSession]) -> None:
        event = SIGNED_OUT if session is None else TOKEN_REFRESHED
        self._set_session(session, event)

    def notify_user_updated(self) -> None:
        """Re-announce the current session so observers re-read data tied to the user."""
        session = self.get_session()
        if session is not None:
            self._set_session(session, USER_UPDATED)

    def on_auth_state_change(self, callback: AuthListener) -> AuthSubscription:
        sub = AuthSubscription(self, callback)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def _remove_listener(self, sub: AuthSubscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def _set_session(self, session: Optional[AuthSession], event: str) -> None:
        with self._lock:
            self._session = session
            listeners = list(self._subscriptions)
        logger.debug("auth state change: %s (%d listener(s))", event, len(listeners))
        for sub in listeners:
            sub.callback(event, session)


# -----------------------------
# PostgREST
# -----------------------------
class SupabaseClient:
    def __init__(self, cfg: SupabaseConfig, access_token: Optional[str] = None, http: Optional[requests.Session] = None) -> None:
        self._cfg = cfg
        self._base_url = f"{cfg.url.rstrip('/')}/rest/v1"
        self._session = http or requests.Session()
        self._access_token = access_token

    @property
    def config(self) -> SupabaseConfig:
        return self._cfg

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        bearer = self._access_token or self._cfg.api_key
        headers = {
            "apikey": self._cfg.api_key,
            "Authorization": f"Bearer {bearer}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Any] = None,
        prefer: Optional[str] = None,
    ) -> Any:
        url = f"{self._base_url}/{path.lstrip('/')}" if path else self._base_url
        try:
            resp = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(prefer),
                timeout=self._cfg.timeout_s,
            )
        except RequestException as exc:
            raise SupabaseError(
                f"Supabase request failed ({method} {url})",
                response_text=str(exc),
            ) from exc
        _raise_for_response(resp, method, url)
        return _decode_body(resp)

    def table(self, name: str) -> "SupabaseTable":
        return SupabaseTable(self, name)

    def rpc(self, fn: str, args: Dict[str, Any]) -> Any:
        """Call a Postgres function; scalar results come back as-is (None for SQL null)."""
        return self.request("POST", f"rpc/{fn}", json_body=args)

    def auth_client(self) -> SupabaseAuth:
        """A fresh auth client with its own session slot, sharing the HTTP pool."""
        return SupabaseAuth(self._cfg, http=self._session)

    def for_session(self, session: Optional[AuthSession]) -> "SupabaseClient":
        """
        Table access on behalf of a signed-in user (row-level security applies).
        With a service-role key configured, the same client is returned.
        """
        if session is None or self._cfg.service_role_key:
            return self
        return SupabaseClient(self._cfg, access_token=session.access_token, http=self._session)


class SupabaseTable:
    def __init__(self, client: SupabaseClient, name: str) -> None:
        self._client = client
        self._name = name

    def select(
        self,
        *,
        filters: Optional[Dict[str, Any]] = None,
        columns: str = "*",
        limit: Optional[int] = None,
        order: Optional[Any] = None,
    ) -> Any:
        params: Dict[str, str] = {"select": columns}
        _apply_filters(params, filters)
        if order:
            if isinstance(order, (tuple, list)) and len(order) == 2:
                col, direction = order
                params["order"] = f"{col}.{direction}"
            else:
                params["order"] = str(order)
        if limit is not None:
            params["limit"] = str(int(limit))
        return self._client.request("GET", self._name, params=params) or []

    def insert(self, rows: Any, *, returning: bool = True) -> Any:
        payload = rows if isinstance(rows, list) else [rows]
        prefer = "return=representation" if returning else "return=minimal"
        return self._client.request("POST", self._name, json_body=payload, prefer=prefer) or []

    def update(self, values: Dict[str, Any], *, filters: Dict[str, Any], returning: bool = False) -> Any:
        params: Dict[str, str] = {}
        _apply_filters(params, filters)
        prefer = "return=representation" if returning else "return=minimal"
        return self._client.request("PATCH", self._name, params=params, json_body=values, prefer=prefer) or []


_client: Optional[SupabaseClient] = None


def _format_filter_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _apply_filters(params: Dict[str, str], filters: Optional[Dict[str, Any]]) -> None:
    if not filters:
        return
    for key, value in filters.items():
        if isinstance(value, tuple) and len(value) == 2:
            op, raw_val = value
            if op == "in":
                if isinstance(raw_val, (list, tuple)):
                    joined = ",".join(_format_filter_value(v) for v in raw_val)
                else:
                    joined = _format_filter_value(raw_val)
                params[key] = f"in.({joined})"
            else:
                params[key] = f"{op}.{_format_filter_value(raw_val)}"
        else:
            params[key] = f"eq.{_format_filter_value(value)}"


def _read_env(*keys: str) -> Optional[str]:
    for key in keys:
        val = os.getenv(key)
        if val:
            return val.strip()
    return None


def _load_config() -> SupabaseConfig:
    url = _read_env("SUPABASE_URL", "VITE_SUPABASE_URL")
    anon_key = _read_env(
        "SUPABASE_ANON_KEY",
        "SUPABASE_PUBLISHABLE_KEY",
        "VITE_SUPABASE_PUBLISHABLE_KEY",
    )
    service_role_key = _read_env("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_ROLE")

    if not url:
        raise RuntimeError("Missing required env var: SUPABASE_URL")
    if not anon_key:
        raise RuntimeError("Missing required env var: SUPABASE_ANON_KEY")

    timeout_s_val = _read_env("SUPABASE_TIMEOUT_S")
    timeout_s = 10.0
    if timeout_s_val:
        try:
            timeout_s = float(timeout_s_val)
        except ValueError:
            timeout_s = 10.0

    return SupabaseConfig(url=url, anon_key=anon_key, service_role_key=service_role_key, timeout_s=timeout_s)


def get_db() -> SupabaseClient:
    global _client
    if _client is not None:
        return _client

    cfg = _load_config()
    _client = SupabaseClient(cfg)
    return _client


def ping(db: Optional[SupabaseClient] = None) -> bool:
    """
    Fast health check: returns True if Supabase responds.
    Raises exception if it cannot connect.
    """
    client = db or get_db()
    try:
        client.table("user_roles").select(columns="user_id", limit=1)
    except SupabaseError as exc:
        text = (exc.response_text or "").lower()
        if exc.status_code == 404 and ("pgrst205" in text or "could not find the table" in text):
            raise RuntimeError(
                "Supabase schema is missing required tables "
                "(user_roles, profiles, patients, patient_activities)."
            ) from exc
        raise
    return True
