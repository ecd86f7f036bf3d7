from __future__ import annotations

import logging
import os
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Flask, g, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError as PayloadError

from auth import (
    CredentialIssuer,
    IntegrityGapError,
    SignInError,
    SignOutError,
    SignupError,
    TokenError,
    ValidationError,
    resolve_role,
    user_from_token,
)
from auth_state import ANONYMOUS, AuthState, AuthStateResolver
from chatbot import CORS_HEADERS, Completer, handle_chat
from db import AuthSession, SupabaseClient, SupabaseError, get_db, ping
from models import ActivityCreate, PatientCheck, PatientCreate, coerce_role
from policy import RouteOutcome, decide_route
from repos import ActivityRepo, PatientRepo, ProfileRepo, RoleRepo

logger = logging.getLogger(__name__)

API_PREFIX = "/api"


def _error(message: str, status: int, **extra: Any) -> Any:
    body: Dict[str, Any] = {"error": message}
    body.update(extra)
    return jsonify(body), status


def _parse_json_body() -> Optional[Dict[str, Any]]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        return None
    return payload


def _payload_error_message(exc: PayloadError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    msg = str(first.get("msg") or "invalid value")
    return f"{loc}: {msg}" if loc else msg


def _bearer_token() -> Optional[str]:
    parts = request.headers.get("Authorization", "").strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def _auth_payload(user: Any, session: Optional[AuthSession], role: Optional[str]) -> Dict[str, Any]:
    return {
        "user": user.to_dict() if user else None,
        "session": session.to_dict() if session else None,
        "role": role,
    }


def create_app(
    *,
    db: Optional[SupabaseClient] = None,
    chat_complete: Optional[Completer] = None,
    check_db: bool = False,
) -> Flask:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = Flask(__name__)
    # Vercel env vars: set SUPABASE_URL, SUPABASE_ANON_KEY, SUPABASE_JWT_SECRET and
    # LOVABLE_API_KEY in Project Settings > Environment Variables.
    CORS(app, resources={rf"{API_PREFIX}/*": {"origins": "*"}}, send_wildcard=True)

    db = db or get_db()
    if check_db:
        ping(db)

    @app.errorhandler(SupabaseError)
    def _handle_supabase_error(exc: SupabaseError) -> Any:
        logger.warning("Supabase error reached the app: %s", exc)
        return _error("Backend database is unavailable. Try again shortly.", 503)

    @app.errorhandler(ValidationError)
    def _handle_validation_error(exc: ValidationError) -> Any:
        return _error(str(exc), 400)

    @app.errorhandler(TokenError)
    def _handle_token_error(exc: TokenError) -> Any:
        return _error(str(exc), 401, redirect="/")

    def _issuer() -> CredentialIssuer:
        # Fresh auth client per request: the server never shares a session slot.
        return CredentialIssuer(db, db.auth_client())

    def _request_auth_state() -> Tuple[AuthState, Optional[SupabaseClient]]:
        """Resolved state for the bearer token, plus a client that queries as that caller."""
        token = _bearer_token()
        if not token:
            return ANONYMOUS, None
        auth_client = db.auth_client()
        user = user_from_token(token, auth_client)
        session = AuthSession(access_token=token, user=user)
        caller_db = db.for_session(session)
        roles = RoleRepo(caller_db)
        resolver = AuthStateResolver(auth_client, lambda user_id: resolve_role(roles, user_id))
        resolver.ingest(session)
        return resolver.state, caller_db

    def require_role(allowed_role: str) -> Callable:
        def decorator(view: Callable) -> Callable:
            @wraps(view)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                state, caller_db = _request_auth_state()
                decision = decide_route(state, allowed_role)
                if decision.outcome is RouteOutcome.ANONYMOUS:
                    return _error("Authentication required", 401, redirect=decision.redirect)
                if not decision.allowed:
                    return _error(f"This area is for {allowed_role}s only", 403, redirect=decision.redirect)
                g.auth_state = state
                g.db = caller_db
                return view(*args, **kwargs)

            return wrapper

        return decorator

    # -----------------------------
    # Auth
    # -----------------------------
    @app.route(f"{API_PREFIX}/auth/signup", methods=["POST"])
    def signup() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Request body must be a JSON object", 400)
        role = coerce_role(payload.get("role"))
        if role is None:
            return _error('role must be one of "doctor","patient"', 400)
        password = str(payload.get("password") or "")
        full_name = str(payload.get("fullName") or "").strip()
        issuer = _issuer()
        try:
            if role == "doctor":
                result = issuer.sign_up_doctor(str(payload.get("licenseNumber") or ""), password, full_name)
            else:
                result = issuer.sign_up_patient(str(payload.get("email") or ""), password, full_name, role)
        except (SignupError, IntegrityGapError) as exc:
            return _error(str(exc), 400)
        return jsonify(_auth_payload(result.user, result.session, role)), 201

    @app.route(f"{API_PREFIX}/auth/login", methods=["POST"])
    def login() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Request body must be a JSON object", 400)
        role = coerce_role(payload.get("role"))
        if role is None:
            return _error('role must be one of "doctor","patient"', 400)
        password = str(payload.get("password") or "")
        issuer = _issuer()
        try:
            if role == "doctor":
                result = issuer.sign_in_doctor(str(payload.get("licenseNumber") or ""), password)
            else:
                result = issuer.sign_in_patient(str(payload.get("email") or ""), password)
        except SignInError as exc:
            return _error(str(exc), 401)
        resolved = resolve_role(RoleRepo(db.for_session(result.session)), result.user.id)
        return jsonify(_auth_payload(result.user, result.session, resolved))

    @app.route(f"{API_PREFIX}/auth/logout", methods=["POST"])
    def logout() -> Any:
        token = _bearer_token()
        if not token:
            return _error("Missing Authorization Bearer token", 401)
        try:
            _issuer().sign_out(token)
        except SignOutError as exc:
            return _error(str(exc), 500)
        return "", 204

    @app.route(f"{API_PREFIX}/auth/me", methods=["GET"])
    def me() -> Any:
        state, caller_db = _request_auth_state()
        body = state.to_dict()
        profile = ProfileRepo(caller_db).get(state.user_id) if caller_db is not None else None
        body["profile"] = profile
        return jsonify(body)

    # -----------------------------
    # Doctor: patient records
    # -----------------------------
    @app.route(f"{API_PREFIX}/patients", methods=["GET"])
    @require_role("doctor")
    def list_patients() -> Any:
        return jsonify({"patients": PatientRepo(g.db).list_for_doctor(g.auth_state.user_id)})

    @app.route(f"{API_PREFIX}/patients", methods=["POST"])
    @require_role("doctor")
    def add_patient() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Request body must be a JSON object", 400)
        try:
            data = PatientCreate.model_validate(payload)
        except PayloadError as exc:
            return _error(_payload_error_message(exc), 400)
        if not data.name:
            return _error("Patient name is required", 400)
        row = PatientRepo(g.db).create(g.auth_state.user_id, data)
        return jsonify({"patient": row}), 201

    @app.route(f"{API_PREFIX}/patients/<patient_row_id>/checks", methods=["POST"])
    @require_role("doctor")
    def log_patient_check(patient_row_id: str) -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Request body must be a JSON object", 400)
        try:
            data = PatientCheck.model_validate(payload)
        except PayloadError as exc:
            return _error(_payload_error_message(exc), 400)
        patients = PatientRepo(g.db)
        patient = patients.get(patient_row_id, g.auth_state.user_id)
        if not patient:
            return _error("Patient not found", 404)
        row = patients.log_check(patient, data.service, data.notes)
        return jsonify({"patient": row})

    # -----------------------------
    # Patient: activity log
    # -----------------------------
    @app.route(f"{API_PREFIX}/activities", methods=["GET"])
    @require_role("patient")
    def list_activities() -> Any:
        return jsonify({"activities": ActivityRepo(g.db).list_for_user(g.auth_state.user_id)})

    @app.route(f"{API_PREFIX}/activities", methods=["POST"])
    @require_role("patient")
    def log_activity() -> Any:
        payload = _parse_json_body()
        if payload is None:
            return _error("Request body must be a JSON object", 400)
        try:
            data = ActivityCreate.model_validate(payload)
        except PayloadError as exc:
            return _error(_payload_error_message(exc), 400)
        row = ActivityRepo(g.db).log(g.auth_state.user_id, data)
        return jsonify({"activity": row}), 201

    # -----------------------------
    # Chat proxy
    # -----------------------------
    @app.route(f"{API_PREFIX}/chatbot", methods=["POST", "OPTIONS"])
    def chatbot() -> Any:
        if request.method == "OPTIONS":
            return "", 200, CORS_HEADERS
        body, status = handle_chat(request.get_json(silent=True), complete=chat_complete)
        return jsonify(body), status, CORS_HEADERS

    @app.route(f"{API_PREFIX}/health", methods=["GET"])
    def health() -> Any:
        check = request.args.get("check", "").strip().lower()
        if check in {"supabase", "db"}:
            try:
                ping(db)
            except (SupabaseError, RuntimeError) as exc:
                return jsonify({"status": "error", "supabase": "error", "message": str(exc)}), 500
            return jsonify({"status": "ok", "supabase": "ok"})
        return jsonify({"status": "ok"})

    return app


if __name__ == "__main__":
    app = create_app(check_db=True)
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
