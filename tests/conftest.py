"""Shared test fixtures for savekeep.

``FakeServer`` is an in-process stand-in for the SaveKeep server,
mounted on an ``httpx.MockTransport``. It implements the auth routes
(with refresh-token rotation and reuse detection), sync up/down and the
per-record routes, and keeps every record per owner the way the real
server does.
"""

from __future__ import annotations

import itertools
import json
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
import pytest

from savekeep.config import SaveKeepConfig
from savekeep.models import RecordKind, datetime_to_ms, ms_to_datetime, now_ms
from savekeep.runtime import SaveKeepRuntime
from savekeep.session import SessionState
from savekeep.sync.wire import encode_upload

ACCESS_TTL_MS = 10 * 60 * 1000
REFRESH_TTL_MS = 60 * 24 * 60 * 60 * 1000


def _reply(status_code: int, status: str, message: Any, data: Any = None) -> httpx.Response:
    body = {"status": status, "message": message}
    if data is not None:
        body["data"] = data
    return httpx.Response(status_code, json=body)


def _error(status_code: int, message: str) -> httpx.Response:
    return _reply(status_code, "error", message)


def _iso(ms: int) -> str:
    return ms_to_datetime(ms).isoformat()


def _ms(value: str) -> int:
    return datetime_to_ms(datetime.fromisoformat(value.replace("Z", "+00:00")))


class FakeServer:
    """In-memory SaveKeep server behind an httpx MockTransport."""

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.passwords: dict[str, str] = {}
        self.sessions: dict[int, dict[str, Any]] = {}
        self.access_tokens: dict[str, dict[str, Any]] = {}
        self.refresh_tokens: dict[str, dict[str, Any]] = {}
        self.records: dict[RecordKind, dict[tuple[int, str], dict[str, Any]]] = {
            kind: {} for kind in RecordKind
        }
        self._ids = itertools.count(1)
        self._record_ids = itertools.count(100)
        self.calls: list[tuple[str, str]] = []
        self.offline = False
        self.fail_status: Optional[int] = None
        self.malformed = False
        self.reject_uuids: set[str] = set()
        self.forbid_records = False
        self.transport = httpx.MockTransport(self.handle)

    # --- helpers for tests ---

    def add_user(self, username: str, password: str, role: str = "user") -> dict[str, Any]:
        user = {
            "id": next(self._ids),
            "username": username,
            "displayname": username.title(),
            "email": f"{username}@example.com",
            "emailConfirmed": False,
            "role": role,
        }
        self.users[username] = user
        self.passwords[username] = password
        return user

    def put_record(self, owner: int, record) -> dict[str, Any]:
        """Store a local record server-side as if it had been uploaded."""
        wire = encode_upload(record)
        return self._upsert(owner, record.kind, wire)

    def count(self, path: str) -> int:
        return sum(1 for _, p in self.calls if p == path)

    def stored(self, owner: int, kind: RecordKind) -> list[dict[str, Any]]:
        return [r for (o, _), r in self.records[kind].items() if o == owner]

    # --- token bookkeeping ---

    def _issue(self, session_id: int) -> dict[str, Any]:
        now = now_ms()
        access, refresh = secrets.token_hex(16), secrets.token_hex(16)
        self.access_tokens[access] = {"session": session_id, "expires": now + ACCESS_TTL_MS}
        self.refresh_tokens[refresh] = {"session": session_id, "used": False}
        return {
            "accesstoken": access,
            "refreshtoken": refresh,
            "accessExpiresAt": _iso(now + ACCESS_TTL_MS),
            "refreshExpiresAt": _iso(now + REFRESH_TTL_MS),
        }

    def _open_session(self, user: dict[str, Any]) -> dict[str, Any]:
        session_id = next(self._ids)
        self.sessions[session_id] = {"user": user["username"], "active": True}
        return {"user": user, "session": self._issue(session_id)}

    def _bearer(self, request: httpx.Request) -> str:
        header = request.headers.get("Authorization", "")
        return header[len("Bearer "):] if header.startswith("Bearer ") else ""

    def _auth(self, request: httpx.Request) -> Optional[dict[str, Any]]:
        token = self.access_tokens.get(self._bearer(request))
        if token is None or token["expires"] <= now_ms():
            return None
        session = self.sessions[token["session"]]
        if not session["active"]:
            return None
        return self.users[session["user"]]

    # --- routing ---

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.lstrip("/")
        self.calls.append((request.method, path))
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_status is not None:
            return _error(self.fail_status, "Injected failure")
        if self.malformed:
            return httpx.Response(200, text="<html>gateway</html>")

        body = json.loads(request.content) if request.content else None
        if path.startswith("api/auth/"):
            return self._auth_route(request, path[len("api/auth/"):], body)

        user = self._auth(request)
        if user is None:
            return _error(401, "Unauthorized")
        if path == "api/sync/up":
            return self._sync_up(user, body or {})
        if path == "api/sync/down":
            return self._sync_down(user, parse_qs(request.url.query.decode()))
        if path == "api/user/quota":
            usage = sum(r.get("size", 0) for r in self.stored(user["id"], RecordKind.SAVES))
            return _reply(200, "ok", "Quota", {"usage": usage, "quota": 1_000_000})
        if path == "api/user/sessions":
            return httpx.Response(200, json=[
                {"id": sid, "active": True}
                for sid, s in self.sessions.items()
                if s["user"] == user["username"] and s["active"]
            ])
        if path == "api/user/self" and request.method == "PATCH":
            return self._update_self(user, body or {})
        if path.startswith("api/user/session/") and request.method == "DELETE":
            return self._drop_session(user, path.rsplit("/", 1)[-1])
        return self._record_route(user, request.method, path, body or {})

    def _auth_route(self, request: httpx.Request, route: str, body: Any) -> httpx.Response:
        if route == "login":
            username = body.get("username", "")
            match = next(
                (u for u in self.users.values() if username in (u["username"], u["email"])),
                None,
            )
            if match is None:
                return _error(404, "User does not exist")
            if self.passwords[match["username"]] != body.get("password"):
                return _error(400, "Invalid password")
            return _reply(200, "ok", "Logged in", self._open_session(match))

        if route == "register":
            if body.get("username") in self.users:
                return _error(409, "User already exists")
            user = self.add_user(body["username"], body["password"])
            user["email"] = body.get("email", user["email"])
            return _reply(201, "ok", "Registered", self._open_session(user))

        if route == "refresh":
            token = self.refresh_tokens.get(self._bearer(request))
            if token is None:
                return _error(403, "Invalid refresh token")
            session = self.sessions[token["session"]]
            if token["used"] or not session["active"]:
                session["active"] = False
                return _error(403, "Invalid refresh token. Either reused or invalidated.")
            token["used"] = True
            user = self.users[session["user"]]
            return _reply(200, "ok", "Refreshed", {
                "user": user, "session": self._issue(token["session"]),
            })

        user = self._auth(request)
        if user is None:
            return _error(401, "Unauthorized")
        if route == "logout":
            self.sessions[self.access_tokens[self._bearer(request)]["session"]]["active"] = False
            return _reply(200, "ok", "Logged out")
        if route == "self":
            return httpx.Response(200, json=user)
        return _error(404, "Not found")

    def _update_self(self, user: dict[str, Any], body: dict[str, Any]) -> httpx.Response:
        username = body.get("username")
        if username and username != user["username"] and username in self.users:
            return _error(400, "Username is already taken")
        email = body.get("email")
        if email and any(u["email"] == email for u in self.users.values() if u is not user):
            return _error(400, "Email is already taken")
        if "password" in body:
            self.passwords[user["username"]] = body["password"]
        for field in ("displayname", "email"):
            if field in body:
                user[field] = body[field]
        if username and username != user["username"]:
            old = user["username"]
            self.users[username] = self.users.pop(old)
            self.passwords[username] = self.passwords.pop(old)
            for session in self.sessions.values():
                if session["user"] == old:
                    session["user"] = username
            user["username"] = username
        return _reply(200, "ok", "Updated your account", user)

    def _drop_session(self, user: dict[str, Any], raw_id: str) -> httpx.Response:
        try:
            session = self.sessions[int(raw_id)]
        except (ValueError, KeyError):
            return _error(500, "An error has occurred when trying to complete request")
        if session["user"] != user["username"]:
            return _error(500, "An error has occurred when trying to complete request")
        session["active"] = False
        return _reply(200, "ok", "Session invalidated")

    # --- records ---

    def _validate(self, kind: RecordKind, raw: Any) -> Optional[dict[str, Any]]:
        if not isinstance(raw, dict) or not raw.get("uuid"):
            return {"issues": [{"path": ["uuid"], "message": "Required"}]}
        if kind is RecordKind.SAVES and (not raw.get("data") or not raw.get("hash")):
            return {"issues": [{"path": ["data"], "message": "String must contain at least 1 character(s)"}]}
        if kind is RecordKind.CHARS and not raw.get("gameId"):
            return {"issues": [{"path": ["gameId"], "message": "Required"}]}
        return None

    def _upsert(self, owner: int, kind: RecordKind, raw: dict[str, Any]) -> dict[str, Any]:
        key = (owner, raw["uuid"])
        existing = self.records[kind].get(key)
        record = {k: v for k, v in raw.items() if k not in ("id", "remoteId")}
        record["id"] = existing["id"] if existing else next(self._record_ids)
        record["ownerId"] = owner
        self.records[kind][key] = record
        return record

    def _sync_up(self, user: dict[str, Any], body: dict[str, Any]) -> httpx.Response:
        errors: list[Any] = []
        for kind in RecordKind:
            for raw in body.get(kind.value, []):
                problem = self._validate(kind, raw)
                if problem is not None:
                    errors.append(problem)
                    continue
                if raw["uuid"] in self.reject_uuids:
                    errors.append(f"Database error on {kind.label} {raw['uuid']}")
                    continue
                self._upsert(user["id"], kind, raw)
        return _reply(200, "ok", "Synced", {"errors": errors})

    def _sync_down(self, user: dict[str, Any], query: dict[str, list[str]]) -> httpx.Response:
        try:
            cutoff = _ms(query["cutoffPoint"][0])
        except (KeyError, ValueError):
            return _error(400, "Invalid cutoffPoint")
        include_archived = query.get("includeArchived", ["false"])[0] == "true"
        skip_archived = cutoff == 0 and not include_archived

        data: dict[str, list[dict[str, Any]]] = {}
        for kind in RecordKind:
            data[kind.value] = []
            if query.get(kind.value, ["true"])[0] != "true":
                continue
            for record in self.stored(user["id"], kind):
                if skip_archived and record.get("archived"):
                    continue
                if _ms(record["updatedAt"]) < cutoff:
                    continue
                data[kind.value].append(dict(record))
        return _reply(200, "ok", "Sync data", data)

    def _record_route(
        self, user: dict[str, Any], method: str, path: str, body: dict[str, Any]
    ) -> httpx.Response:
        if self.forbid_records:
            return _error(403, "Invalid auth data")
        parts = path.split("/")
        try:
            kind = RecordKind(parts[1])
        except (IndexError, ValueError):
            return _error(404, "Not found")
        if method == "POST" and parts[2:] == ["new"]:
            problem = self._validate(kind, body)
            if problem is not None:
                return _reply(400, "error", problem)
            return _reply(200, "ok", "Created", self._upsert(user["id"], kind, body))
        if method == "PATCH" and len(parts) == 4 and parts[2] == "uuid":
            body = {**body, "uuid": parts[3]}
            problem = self._validate(kind, body)
            if problem is not None:
                return _reply(400, "error", problem)
            return _reply(200, "ok", "Updated", self._upsert(user["id"], kind, body))
        return _error(404, "Not found")


@pytest.fixture
def savekeep_home(tmp_path: Path) -> Path:
    """Provide a temporary SaveKeep home directory for testing."""
    home = tmp_path / ".savekeep"
    home.mkdir()
    return home


@pytest.fixture
def fake_server() -> FakeServer:
    """A fake server with one registered user, alice/secret."""
    server = FakeServer()
    server.add_user("alice", "secret")
    return server


@pytest.fixture
def make_runtime(savekeep_home: Path, fake_server: FakeServer):
    """Factory for runtimes wired to the fake server with a memory store."""

    def _make(home: Optional[Path] = None, **overrides: Any) -> SaveKeepRuntime:
        config = SaveKeepConfig(
            store_backend="memory", archive_grace_seconds=0.05, **overrides,
        )
        return SaveKeepRuntime(
            home or savekeep_home, config=config, transport=fake_server.transport,
        )

    return _make


@pytest.fixture
def runtime(make_runtime) -> SaveKeepRuntime:
    return make_runtime()


async def sign_in(runtime: SaveKeepRuntime, username: str = "alice",
                  password: str = "secret") -> SessionState:
    """Log in through the session manager and return the new state."""
    result = await runtime.sessions.login(SessionState(), username, password)
    assert result.success, result.message
    return result.state
