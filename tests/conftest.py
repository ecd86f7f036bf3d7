"""Pytest configuration and fixtures.

Supabase is replaced by an in-memory backend sitting behind the real client
classes: only the HTTP hop (``SupabaseClient.request`` / ``SupabaseAuth._request``)
is swapped, so filters, RPC calls and session handling run as in production.
User-owned tables answer the anon role the way row-level security does:
no rows on reads, a rejection on inserts.
"""

import hashlib
import hmac
import json
import uuid
from typing import Any, Dict, List, Optional, Tuple

import pytest

from api import create_app
from auth import CredentialIssuer, _b64url_encode
from db import SupabaseAuth, SupabaseClient, SupabaseConfig, SupabaseError

JWT_SECRET = "test-jwt-secret"
SERVICE_ROLE_BEARER = "service-role-key"
USER_SCOPED_TABLES = ("profiles", "patients", "patient_activities")


def supabase_error(status: int, payload: Dict[str, Any]) -> SupabaseError:
    err = SupabaseError("Supabase request failed", status_code=status, response_text=json.dumps(payload))
    err.payload = payload
    return err


class FakeBackend:
    """Just enough of GoTrue + PostgREST for the portal's flows."""

    def __init__(self, autoconfirm: bool = True) -> None:
        self.autoconfirm = autoconfirm
        self.users: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            "user_roles": [],
            "profiles": [],
            "patients": [],
            "patient_activities": [],
        }
        self.failures: Dict[str, SupabaseError] = {}
        self.calls: List[str] = []
        # (method, table, bearer) for every PostgREST table request
        self.rest_calls: List[Tuple[str, str, Optional[str]]] = []
        self._clock = 0

    # helpers -------------------------------------------------------------
    def fail(self, key: str, status: int = 400, message: str = "boom") -> None:
        self.failures[key] = supabase_error(status, {"message": message})

    def _check_failure(self, key: str) -> None:
        self.calls.append(key)
        if key in self.failures:
            raise self.failures[key]

    def _now(self) -> str:
        self._clock += 1
        return f"2026-01-01T00:{self._clock // 60:02d}:{self._clock % 60:02d}+00:00"

    def add_user(self, email: str, password: str, role: Optional[str] = None, **profile: Any) -> str:
        user_id = str(uuid.uuid4())
        self.users[user_id] = {
            "id": user_id,
            "email": email,
            "password": password,
            "created_at": self._now(),
            "user_metadata": {},
        }
        self.tables["profiles"].append({"user_id": user_id, "full_name": None, "license_number": None, **profile})
        if role:
            self.tables["user_roles"].append({"user_id": user_id, "role": role})
        return user_id

    def issue_token(self, user_id: str) -> str:
        token = f"token-{uuid.uuid4()}"
        self.tokens[token] = user_id
        return token

    def _public_user(self, user_id: str) -> Dict[str, Any]:
        user = self.users[user_id]
        return {k: v for k, v in user.items() if k != "password"}

    def _session_payload(self, user_id: str) -> Dict[str, Any]:
        return {
            "access_token": self.issue_token(user_id),
            "refresh_token": "refresh",
            "token_type": "bearer",
            "expires_in": 3600,
            "user": self._public_user(user_id),
        }

    # GoTrue --------------------------------------------------------------
    def auth(self, method: str, path: str, params: Optional[Dict[str, str]], json_body: Any, access_token: Optional[str]) -> Any:
        self._check_failure(f"auth:{path}")
        if path == "signup":
            email = json_body["email"]
            if any(u["email"] == email for u in self.users.values()):
                raise supabase_error(422, {"code": 422, "msg": "User already registered"})
            if len(json_body.get("password") or "") < 6:
                raise supabase_error(422, {"code": 422, "msg": "Password should be at least 6 characters."})
            user_id = self.add_user(email, json_body["password"])
            self.users[user_id]["user_metadata"] = dict(json_body.get("data") or {})
            self.users[user_id]["redirect_to"] = (params or {}).get("redirect_to")
            if self.autoconfirm:
                return self._session_payload(user_id)
            return self._public_user(user_id)
        if path == "token":
            for user_id, user in self.users.items():
                if user["email"] == json_body["email"] and user["password"] == json_body["password"]:
                    return self._session_payload(user_id)
            raise supabase_error(400, {"error": "invalid_grant", "error_description": "Invalid login credentials"})
        if path == "logout":
            self.tokens.pop(access_token, None)
            return None
        if path == "user":
            user_id = self.tokens.get(access_token or "")
            if not user_id:
                raise supabase_error(401, {"msg": "invalid JWT"})
            return self._public_user(user_id)
        raise AssertionError(f"unexpected auth call {method} {path}")

    # PostgREST -----------------------------------------------------------
    def rest(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]],
        json_body: Any,
        bearer: Optional[str] = None,
    ) -> Any:
        if path.startswith("rpc/"):
            fn = path[len("rpc/"):]
            self._check_failure(f"rpc:{fn}")
            return self._rpc(fn, json_body or {})

        self._check_failure(f"{method}:{path}")
        self.rest_calls.append((method, path, bearer))
        rows = self.tables[path]
        if path in USER_SCOPED_TABLES and not self._is_caller(bearer):
            # Row-level security: the anon role sees no rows and may not write any.
            if method == "POST":
                raise supabase_error(401, {"code": "42501", "message": f"new row violates row-level security policy for table \"{path}\""})
            return []
        if method == "GET":
            return self._select(rows, params or {})
        if method == "POST":
            inserted = []
            for row in json_body:
                row = dict(row)
                if path == "user_roles" and any(r["user_id"] == row["user_id"] for r in rows):
                    raise supabase_error(409, {"message": 'duplicate key value violates unique constraint "user_roles_user_id_key"'})
                row.setdefault("id", str(uuid.uuid4()))
                row.setdefault("created_at", self._now())
                if path == "patients":
                    row.setdefault("patient_id", f"PAT-{len(rows) + 1:04d}")
                rows.append(row)
                inserted.append(dict(row))
            return inserted
        if method == "PATCH":
            matched = self._select(rows, params or {}, copy=False)
            for row in matched:
                row.update(json_body)
            return [dict(r) for r in matched]
        raise AssertionError(f"unexpected rest call {method} {path}")

    def _is_caller(self, bearer: Optional[str]) -> bool:
        return bearer == SERVICE_ROLE_BEARER or bearer in self.tokens

    def _select(self, rows: List[Dict[str, Any]], params: Dict[str, str], copy: bool = True) -> List[Dict[str, Any]]:
        out = []
        for row in rows:
            ok = True
            for key, cond in params.items():
                if key in ("select", "order", "limit"):
                    continue
                op, _, value = cond.partition(".")
                assert op == "eq", f"fake backend only supports eq filters, got {cond}"
                if str(row.get(key)) != value:
                    ok = False
                    break
            if ok:
                out.append(row)
        order = params.get("order")
        if order:
            col, _, direction = order.partition(".")
            out.sort(key=lambda r: str(r.get(col) or ""), reverse=direction.startswith("desc"))
        if "limit" in params:
            out = out[: int(params["limit"])]
        return [dict(r) for r in out] if copy else out

    def _rpc(self, fn: str, args: Dict[str, Any]) -> Any:
        if fn == "get_user_role":
            for row in self.tables["user_roles"]:
                if row["user_id"] == args["_user_id"]:
                    return row["role"]
            return None
        if fn == "license_number_exists":
            return any(p.get("license_number") == args["p_license_number"] for p in self.tables["profiles"])
        if fn == "get_email_by_license":
            for p in self.tables["profiles"]:
                if p.get("license_number") == args["p_license_number"]:
                    return self.users[p["user_id"]]["email"]
            return None
        raise AssertionError(f"unexpected rpc {fn}")


FAKE_CONFIG = SupabaseConfig(url="http://supabase.test", anon_key="anon-key")
SERVICE_CONFIG = SupabaseConfig(url="http://supabase.test", anon_key="anon-key", service_role_key=SERVICE_ROLE_BEARER)


class FakeAuth(SupabaseAuth):
    def __init__(self, backend: FakeBackend) -> None:
        super().__init__(FAKE_CONFIG)
        self.backend = backend

    def _request(self, method, path, *, params=None, json_body=None, access_token=None):
        return self.backend.auth(method, path, params, json_body, access_token)


class FakeSupabase(SupabaseClient):
    def __init__(self, backend: FakeBackend, cfg: SupabaseConfig = FAKE_CONFIG, access_token: Optional[str] = None) -> None:
        super().__init__(cfg, access_token=access_token)
        self.backend = backend

    def request(self, method, path, *, params=None, json_body=None, prefer=None):
        bearer = self._access_token or (SERVICE_ROLE_BEARER if self.config.service_role_key else None)
        return self.backend.rest(method, path, params, json_body, bearer)

    def auth_client(self) -> FakeAuth:
        return FakeAuth(self.backend)

    def for_session(self, session):
        scoped = super().for_session(session)
        if scoped is self:
            return self
        return FakeSupabase(self.backend, self.config, access_token=session.access_token)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def db(backend):
    return FakeSupabase(backend)


@pytest.fixture
def auth_client(db):
    return db.auth_client()


@pytest.fixture
def issuer(db, auth_client):
    return CredentialIssuer(db, auth_client)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for key in ("SUPABASE_JWT_SECRET", "JWT_SECRET", "SUPABASE_JWT_AUD", "JWT_AUD", "DOCTOR_EMAIL_DOMAIN"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("SITE_URL", "http://portal.test")


class StubCompleter:
    """Stands in for the gateway call; records what it was sent."""

    def __init__(self, reply: str = "Stay hydrated and rest.", error: Optional[Exception] = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: List[List[Dict[str, str]]] = []

    def __call__(self, messages: List[Dict[str, str]]) -> str:
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def completer():
    return StubCompleter()


@pytest.fixture
def app(db, completer):
    app = create_app(db=db, chat_complete=completer)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def make_jwt(claims: Dict[str, Any], secret: str = JWT_SECRET) -> str:
    header = _b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}).encode("utf-8"))
    payload = _b64url_encode(json.dumps(claims).encode("utf-8"))
    signing_input = f"{header}.{payload}".encode("utf-8")
    sig = _b64url_encode(hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest())
    return f"{header}.{payload}.{sig}"


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
