from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from db import AuthResponse, AuthSession, AuthUser, SupabaseAuth, SupabaseClient, SupabaseError
from repos import LicenseDirectory, ProfileRepo, RoleRepo

logger = logging.getLogger(__name__)

DEFAULT_DOCTOR_EMAIL_DOMAIN = "doctor.medicare.local"
DEFAULT_SITE_URL = "http://localhost:5173"

NO_USER_RETURNED = "No user returned from signup"
DUPLICATE_LICENSE = "This license number is already registered"
DOCTOR_NOT_FOUND = "Doctor account not found. Please sign up using a valid license number."
SIGN_OUT_FAILED = "Failed to sign out. Please try again."


class AuthError(RuntimeError):
    pass


class ValidationError(AuthError):
    """A required field is missing; raised before any network call."""


class SignupError(AuthError):
    pass


class DuplicateLicenseError(SignupError):
    pass


class IntegrityGapError(AuthError):
    """
    The auth account exists but a follow-up write failed.
    Nothing is rolled back: the account is left without a complete role/profile.
    """

    def __init__(self, message: str, user_id: str) -> None:
        super().__init__(message)
        self.user_id = user_id


class RoleAssignmentError(IntegrityGapError):
    pass


class ProfileUpdateError(IntegrityGapError):
    pass


class SignInError(AuthError):
    pass


class DoctorNotFoundError(SignInError):
    pass


class SignOutError(AuthError):
    pass


class TokenError(AuthError):
    pass


@dataclass(frozen=True)
class AuthResult:
    user: AuthUser
    session: Optional[AuthSession]


def doctor_email_domain() -> str:
    return (os.getenv("DOCTOR_EMAIL_DOMAIN") or DEFAULT_DOCTOR_EMAIL_DOMAIN).strip()


def site_url() -> str:
    return (os.getenv("SITE_URL") or DEFAULT_SITE_URL).strip()


def pseudo_email_for_license(license_number: str, domain: Optional[str] = None) -> str:
    """
    Synthetic login email for a doctor. A pure function of the license number:
    'MD-12.345' and 'md12345' map to the same address.
    """
    local = re.sub(r"[^a-z0-9]", "", (license_number or "").lower())
    return f"{local}@{domain or doctor_email_domain()}"


def _require(value: Optional[str], message: str) -> str:
    if not value or not value.strip():
        raise ValidationError(message)
    return value


def resolve_role(roles: RoleRepo, user_id: str) -> Optional[str]:
    """Role for a user, or None. Lookup failures are logged and read as 'no role'."""
    try:
        return roles.role_for_user(user_id)
    except SupabaseError as exc:
        logger.warning("Error fetching user role for %s: %s", user_id, exc.message)
        return None


class CredentialIssuer:
    """
    Signup/sign-in flows for both roles against one auth client.

    Signup is three separate writes (account, role row, profile row) with no
    compensation: if the role or profile write fails, the account stays behind.
    """

    def __init__(self, db: SupabaseClient, auth: SupabaseAuth) -> None:
        self.db = db
        self.auth = auth
        self.licenses = LicenseDirectory(db)

    # -----------------------------
    # Signup
    # -----------------------------
    def sign_up_patient(self, email: str, password: str, full_name: str, role: str = "patient") -> AuthResult:
        _require(email, "Email is required")
        _require(password, "Password is required")
        resp = self._create_account(email, password, {"full_name": full_name})
        self._provision(resp, role=role, full_name=full_name)
        return AuthResult(user=resp.user, session=resp.session)

    def sign_up_doctor(self, license_number: str, password: str, full_name: str) -> AuthResult:
        _require(license_number, "Medical license number is required")
        _require(full_name, "Full name is required")
        _require(password, "Password is required")

        try:
            taken = self.licenses.exists(license_number)
        except SupabaseError as exc:
            raise SignupError(exc.message) from exc
        if taken:
            raise DuplicateLicenseError(DUPLICATE_LICENSE)

        email = pseudo_email_for_license(license_number)
        resp = self._create_account(
            email,
            password,
            {"full_name": full_name, "license_number": license_number},
        )
        self._provision(resp, role="doctor", full_name=full_name, license_number=license_number)
        return AuthResult(user=resp.user, session=resp.session)

    def _create_account(self, email: str, password: str, metadata: Dict[str, Any]) -> AuthResponse:
        try:
            resp = self.auth.sign_up(email, password, data=metadata, redirect_to=site_url())
        except SupabaseError as exc:
            raise SignupError(exc.message) from exc
        if resp.user is None:
            raise SignupError(NO_USER_RETURNED)
        return resp

    def _provision(
        self,
        resp: AuthResponse,
        *,
        role: str,
        full_name: str,
        license_number: Optional[str] = None,
    ) -> None:
        user_id = resp.user.id
        db = self.db.for_session(resp.session)
        try:
            RoleRepo(db).assign(user_id, role)
        except SupabaseError as exc:
            logger.error("Account %s created but role assignment failed: %s", user_id, exc.message)
            raise RoleAssignmentError(exc.message, user_id) from exc
        try:
            ProfileRepo(db).update(user_id, full_name=full_name, license_number=license_number)
        except SupabaseError as exc:
            logger.error("Account %s created but profile update failed: %s", user_id, exc.message)
            raise ProfileUpdateError(exc.message, user_id) from exc
        # The sign-in notification went out before the role row existed.
        if resp.session is not None:
            self.auth.notify_user_updated()

    # -----------------------------
    # Sign-in / sign-out
    # -----------------------------
    def sign_in_patient(self, email: str, password: str) -> AuthResult:
        _require(email, "Email is required")
        _require(password, "Password is required")
        return self._password_sign_in(email, password)

    def sign_in_doctor(self, license_number: str, password: str) -> AuthResult:
        _require(license_number, "Please enter your medical license number")
        _require(password, "Password is required")
        try:
            email = self.licenses.email_for(license_number)
        except SupabaseError as exc:
            raise SignInError(exc.message) from exc
        if not email:
            raise DoctorNotFoundError(DOCTOR_NOT_FOUND)
        return self._password_sign_in(email, password)

    def _password_sign_in(self, email: str, password: str) -> AuthResult:
        try:
            resp = self.auth.sign_in_with_password(email, password)
        except SupabaseError as exc:
            raise SignInError(exc.message) from exc
        return AuthResult(user=resp.user, session=resp.session)

    def sign_out(self, access_token: Optional[str] = None) -> None:
        try:
            self.auth.sign_out(access_token)
        except SupabaseError as exc:
            logger.warning("Sign-out rejected: %s", exc.message)
            raise SignOutError(SIGN_OUT_FAILED) from exc


# -----------------------------
# Bearer tokens presented to the HTTP API
# -----------------------------
def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def jwt_secret() -> Optional[str]:
    return os.getenv("SUPABASE_JWT_SECRET") or os.getenv("JWT_SECRET")


def verify_supabase_jwt(token: str, secret: str) -> Dict[str, Any]:
    parts = token.split(".")
    if len(parts) != 3:
        raise TokenError("Malformed JWT")

    try:
        header_raw = _b64url_decode(parts[0])
        payload_raw = _b64url_decode(parts[1])
    except ValueError as exc:
        raise TokenError("Invalid JWT encoding") from exc
    try:
        header = json.loads(header_raw.decode("utf-8"))
        payload = json.loads(payload_raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TokenError("Invalid JWT JSON") from exc

    if header.get("alg") != "HS256":
        raise TokenError("Unsupported JWT alg")

    signing_input = f"{parts[0]}.{parts[1]}".encode("utf-8")
    expected_sig = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    expected_b64 = _b64url_encode(expected_sig)
    signature_segment = parts[2].rstrip("=")
    if not hmac.compare_digest(expected_b64, signature_segment):
        raise TokenError("Invalid JWT signature")

    exp = payload.get("exp")
    if exp is not None:
        try:
            exp_val = int(exp)
        except (TypeError, ValueError):
            raise TokenError("Invalid JWT exp") from None
        if int(time.time()) >= exp_val:
            raise TokenError("JWT expired")

    aud = (os.getenv("SUPABASE_JWT_AUD") or os.getenv("JWT_AUD") or "").strip()
    if aud:
        payload_aud = payload.get("aud")
        if isinstance(payload_aud, list):
            valid = aud in payload_aud
        else:
            valid = payload_aud == aud
        if not valid:
            raise TokenError("JWT aud mismatch")

    return payload


def user_from_token(token: str, auth: SupabaseAuth) -> AuthUser:
    """
    Identify the caller behind a bearer token. Verified locally when the JWT
    secret is configured, otherwise by asking the auth server.
    """
    secret = jwt_secret()
    if secret:
        claims = verify_supabase_jwt(token, secret)
        user_id = str(claims.get("sub") or "").strip()
        if not user_id:
            raise TokenError("JWT missing user id")
        return AuthUser(id=user_id, email=claims.get("email"))
    try:
        user = auth.get_user(token)
    except SupabaseError as exc:
        raise TokenError(exc.message) from exc
    if user is None:
        raise TokenError("Invalid session token")
    return user
