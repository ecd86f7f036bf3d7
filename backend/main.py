from __future__ import annotations

import getpass
import shlex
from typing import Any, Dict, List, Optional

from auth import AuthError, CredentialIssuer, resolve_role
from auth_state import AuthState, AuthStateResolver
from chatbot import ChatTranscript, handle_chat
from db import SupabaseError, get_db, ping
from policy import dashboard_path
from repos import ActivityRepo, PatientRepo, ProfileRepo, RoleRepo


def print_help() -> None:
    print(
        "\nCommands:\n"
        "  signup patient <email> <full name...>\n"
        "  signup doctor <license_number> <full name...>\n"
        "  login patient <email>\n"
        "  login doctor <license_number>\n"
        "  logout\n"
        "  whoami\n"
        "  patients               # doctor: list your patients\n"
        "  activities             # patient: list your logged activities\n"
        "  chat <message text...>\n"
        "  quit\n"
    )


def format_rows(rows: List[Dict[str, Any]], keys: List[str]) -> None:
    for row in rows:
        print("  " + " | ".join(str(row.get(k) if row.get(k) is not None else "-") for k in keys))


def _describe(state: AuthState) -> str:
    if state.loading:
        return "resolving session..."
    if state.user is None:
        return "signed out"
    return f"{state.user.email} (role={state.role or 'none'}, home={dashboard_path(state.role)})"


def main() -> None:
    # Boot
    print("Starting MediCare+ CLI...")
    ping()

    db = get_db()
    auth_client = db.auth_client()
    issuer = CredentialIssuer(db, auth_client)
    roles = RoleRepo(db)
    resolver = AuthStateResolver(auth_client, lambda user_id: resolve_role(roles, user_id))
    resolver.subscribe(lambda state: print(f"[auth] {_describe(state)}"))
    resolver.start()

    transcript = ChatTranscript()

    def _session_db():
        return db.for_session(auth_client.get_session())

    def _password() -> Optional[str]:
        try:
            return getpass.getpass("Password: ")
        except (EOFError, KeyboardInterrupt):
            return None

    print_help()

    while True:
        try:
            raw = input("\n> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nExiting.")
            resolver.stop()
            return

        if not raw:
            continue

        try:
            parts = shlex.split(raw)
        except ValueError as exc:
            print(f"Could not parse command: {exc}")
            continue
        cmd = parts[0].lower()

        if cmd in ("quit", "exit"):
            print("Bye.")
            resolver.stop()
            return

        if cmd in ("help", "?"):
            print_help()
            continue

        try:
            if cmd == "signup":
                if len(parts) < 4 or parts[1] not in ("doctor", "patient"):
                    print("Usage: signup <doctor|patient> <license_number|email> <full name...>")
                    continue
                role, ident, full_name = parts[1], parts[2], " ".join(parts[3:])
                password = _password()
                if password is None:
                    continue
                if role == "doctor":
                    result = issuer.sign_up_doctor(ident, password, full_name)
                    print(f"Account created! Welcome to MediCare+, Doctor. ({result.user.email})")
                else:
                    issuer.sign_up_patient(ident, password, full_name)
                    print("Account created! Check your inbox to verify your email.")
                continue

            if cmd == "login":
                if len(parts) < 3 or parts[1] not in ("doctor", "patient"):
                    print("Usage: login <doctor|patient> <license_number|email>")
                    continue
                password = _password()
                if password is None:
                    continue
                if parts[1] == "doctor":
                    issuer.sign_in_doctor(parts[2], password)
                    print("Welcome back, Doctor!")
                else:
                    issuer.sign_in_patient(parts[2], password)
                    print("Welcome back!")
                continue

            if cmd == "logout":
                issuer.sign_out()
                print("Signed out.")
                continue

            if cmd == "whoami":
                state = resolver.state
                print(_describe(state))
                if state.user_id:
                    profile = ProfileRepo(_session_db()).get(state.user_id) or {}
                    if profile.get("full_name"):
                        print(f"Name: {profile['full_name']}")
                continue

            if cmd == "patients":
                state = resolver.state
                if state.role != "doctor":
                    print(f"Doctors only. Your home is {dashboard_path(state.role)}.")
                    continue
                rows = PatientRepo(_session_db()).list_for_doctor(state.user_id)
                if not rows:
                    print("(no patients yet)")
                else:
                    format_rows(rows, ["patient_id", "name", "age", "gender", "created_at"])
                continue

            if cmd == "activities":
                state = resolver.state
                if state.role != "patient":
                    print(f"Patients only. Your home is {dashboard_path(state.role)}.")
                    continue
                rows = ActivityRepo(_session_db()).list_for_user(state.user_id)
                if not rows:
                    print("(no activity yet)")
                else:
                    format_rows(rows, ["service_used", "notes", "created_at"])
                continue

            if cmd == "chat":
                text = raw[len("chat"):].strip()
                if not text:
                    print("Usage: chat <message text...>")
                    continue
                reply = transcript.send(
                    text,
                    is_authenticated=resolver.state.user is not None,
                    transport=lambda body: handle_chat(body)[0],
                )
                if reply is not None:
                    print(f"Assistant: {reply.content}")
                if transcript.show_auth_prompt:
                    print("Log in to continue: login doctor <license_number> | login patient <email>")
                continue
        except AuthError as exc:
            print(f"Error: {exc}")
            continue
        except SupabaseError as exc:
            print(f"Error: {exc.message}")
            continue

        print("Unknown command.")
        print_help()


if __name__ == "__main__":
    main()
