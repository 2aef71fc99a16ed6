"""
Session manager -- who is signed in, and whether the server may be used.

The session is a value. Every operation takes a ``SessionState`` and
hands back a new one inside an ``ActionResult``; nothing here mutates
shared state behind the caller's back. Each new value carries a
``version`` one higher than the value it came from.

Token lifecycle:

    login/register  ->  access token (~10 min) + refresh token (~60 days)
    access expired  ->  GET api/auth/refresh with the refresh token
                        (the server rotates: the old refresh token dies)
    401/403/404     ->  forced logout, profile kept, reason recorded
    no answer / 5xx ->  tokens untouched, session marked unreachable

Two refreshes racing with the same refresh token would look like a
reuse attempt to the server and kill the whole session line, so
refreshes are single-flight per refresh token. The manager also
remembers which pair replaced each rotated refresh token, so a caller
still holding an older state is handed the newer pair instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from .audit import audit_event
from .channel import Channel, ChannelResponse
from .errors import ConnectivityError, ErrorKind
from .models import datetime_to_ms, now_ms

logger = logging.getLogger("savekeep.session")

SESSION_FILE = "session.json"
LAST_COMMIT_FILE = "last_commit"

REJECTED_STATUSES = frozenset({401, 403, 404})
"""Statuses that mean the credential itself is no good."""

_datetime_adapter = TypeAdapter(datetime)


class Role(str, Enum):
    """Account role. Limited accounts may sign in but never sync."""

    USER = "user"
    ADMIN = "admin"
    LIMITED = "limited"


class SessionTokens(BaseModel):
    """Bearer token pair with millisecond expiries.

    Accepts both the local field names and the server's
    (``accesstoken``, ``accessExpiresAt``, ...) so one model reads the
    persisted session file and the login/refresh payload alike.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(
        default="", validation_alias=AliasChoices("access_token", "accesstoken")
    )
    refresh_token: str = Field(
        default="", validation_alias=AliasChoices("refresh_token", "refreshtoken")
    )
    access_expires_at: int = Field(
        default=0,
        validation_alias=AliasChoices("access_expires_at", "accessExpiresAt"),
    )
    refresh_expires_at: int = Field(
        default=0,
        validation_alias=AliasChoices("refresh_expires_at", "refreshExpiresAt"),
    )

    @field_validator("access_expires_at", "refresh_expires_at", mode="before")
    @classmethod
    def _coerce_expiry(cls, value: Any) -> Any:
        if value is None or value == "":
            return 0
        if isinstance(value, (str, datetime)):
            return datetime_to_ms(_datetime_adapter.validate_python(value))
        return value

    def access_valid(self, now: int) -> bool:
        return bool(self.access_token) and now < self.access_expires_at

    def refresh_valid(self, now: int) -> bool:
        return bool(self.refresh_token) and now < self.refresh_expires_at


class UserInfo(BaseModel):
    """Profile fields the server returns for the signed-in account."""

    id: int
    username: str
    displayname: str = ""
    email: str = ""
    email_confirmed: bool = Field(
        default=False,
        validation_alias=AliasChoices("email_confirmed", "emailConfirmed"),
    )
    role: Role = Role.USER


class AuthPayload(BaseModel):
    """``data`` of a successful login, register or refresh reply."""

    user: UserInfo
    session: SessionTokens


class AccountPatch(BaseModel):
    """Fields a user may change on their own account."""

    displayname: Optional[str] = Field(default=None, min_length=3, max_length=64)
    username: Optional[str] = Field(default=None, min_length=3, max_length=32)
    email: Optional[str] = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: Optional[str] = Field(default=None, min_length=3, max_length=256)

    @field_validator("displayname", "username", "email", "password", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("username", "email")
    @classmethod
    def _lower(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else value


class SessionState(BaseModel):
    """Everything the device knows about its session.

    Identity is bound while there is a user id and a refresh token.
    ``online_mode`` is the user's choice; ``online`` is reachability.
    """

    model_config = ConfigDict(frozen=True)

    version: int = 0
    user_id: Optional[int] = None
    username: str = ""
    displayname: str = ""
    email: str = ""
    email_confirmed: bool = False
    role: Role = Role.USER
    tokens: SessionTokens = Field(default_factory=SessionTokens)
    online: bool = False
    offline_reason: str = ""
    online_mode: bool = True
    sync_period: int = 300

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None and bool(self.tokens.refresh_token)

    def evolve(self, **changes: Any) -> SessionState:
        """Return a copy with *changes* applied and the version bumped."""
        return self.model_copy(update={**changes, "version": self.version + 1})

    def went_online(self) -> SessionState:
        return self.evolve(online=True, offline_reason="")

    def went_offline(self, reason: str) -> SessionState:
        """Mark unreachable. The first reason sticks until back online."""
        return self.evolve(online=False, offline_reason=self.offline_reason or reason)

    def with_profile(self, user: UserInfo) -> SessionState:
        return self.evolve(
            user_id=user.id,
            username=user.username,
            displayname=user.displayname,
            email=user.email,
            email_confirmed=user.email_confirmed,
            role=user.role,
        )

    def signed_out(self, keep_profile: bool = True) -> SessionState:
        """Drop both tokens; optionally forget who the user was too."""
        changes: dict[str, Any] = {"tokens": SessionTokens(), "online": False}
        if not keep_profile:
            changes.update(
                user_id=None,
                username="",
                displayname="",
                email="",
                email_confirmed=False,
                role=Role.USER,
                offline_reason="",
            )
        return self.evolve(**changes)


@dataclass
class ActionResult:
    """Outcome of a session operation.

    ``state`` is always the state to carry on with, success or not.
    """

    success: bool
    state: SessionState
    message: str = ""
    error: Optional[ErrorKind] = None
    data: Any = None


class SessionManager:
    """Owns every transition of the session state.

    Args:
        channel: Network channel to the server.
        home: SaveKeep home directory (session file, audit log).
        clock: Millisecond wall clock, injectable for tests.
    """

    def __init__(
        self,
        channel: Channel,
        home: Path,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.channel = channel
        self.home = Path(home).expanduser()
        self.clock = clock
        self._inflight: dict[str, asyncio.Task] = {}
        # old refresh token -> the pair that replaced it
        self._rotated: dict[str, SessionTokens] = {}

    # --- persistence ---

    def load_persisted(self) -> SessionState:
        """Restore the session from disk.

        Connectivity is never trusted across restarts. An expired
        refresh token clears both tokens but keeps the profile.
        """
        path = self.home / SESSION_FILE
        if not path.exists():
            return SessionState()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to load session: %s", exc)
            return self._migrate({})

        try:
            state = SessionState.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "Failed to restore session (%d errors), attempting migration",
                exc.error_count(),
            )
            state = self._migrate(raw)

        state = state.evolve(online=False, offline_reason="")
        tokens = state.tokens
        if (tokens.access_token or tokens.refresh_token) and not tokens.refresh_valid(
            self.clock()
        ):
            logger.info("Refresh token expired, clearing session tokens")
            state = state.evolve(tokens=SessionTokens())
        return state

    def _migrate(self, raw: Any) -> SessionState:
        """Keep every field of *raw* that still validates on its own."""
        kept: dict[str, Any] = {}
        if isinstance(raw, dict):
            for name in SessionState.model_fields:
                if name not in raw:
                    continue
                try:
                    SessionState.model_validate({name: raw[name]})
                except ValidationError:
                    logger.debug("Dropping unreadable session field %s", name)
                    continue
                kept[name] = raw[name]
        state = SessionState.model_validate(kept)
        self.commit(state)
        return state

    def commit(self, state: SessionState) -> None:
        """Persist the session state.

        A state still holding a rotated token pair is written with the
        newest pair, so a restart never presents a dead refresh token.
        """
        state = self.adopt_rotated(state)
        self.home.mkdir(parents=True, exist_ok=True)
        (self.home / SESSION_FILE).write_text(
            state.model_dump_json(indent=2), encoding="utf-8"
        )

    def mark_committed(self, state: SessionState, at: Optional[int] = None) -> None:
        """Record the last successful commit time (the next cutoff).

        Only written while online: offline edits must still be picked
        up by the next sync.
        """
        if not self.is_online(state):
            return
        self.home.mkdir(parents=True, exist_ok=True)
        (self.home / LAST_COMMIT_FILE).write_text(
            str(at if at is not None else self.clock()), encoding="utf-8"
        )

    def last_commit_time(self) -> int:
        path = self.home / LAST_COMMIT_FILE
        if not path.exists():
            return 0
        try:
            return int(path.read_text(encoding="utf-8").strip())
        except (ValueError, OSError) as exc:
            logger.warning("Unreadable last commit time: %s", exc)
            return 0

    # --- gating ---

    @staticmethod
    def is_online(
        state: Optional[SessionState], require_full_access: bool = False
    ) -> bool:
        """Single predicate gating every network attempt.

        Args:
            state: Session to check.
            require_full_access: Also refuse limited accounts.
        """
        if state is None:
            return False
        online = state.authenticated and state.online_mode and state.online
        if online and require_full_access:
            online = state.role != Role.LIMITED
        return online

    def set_online_mode(self, state: SessionState, enabled: bool) -> SessionState:
        """Switch between online-enabled and offline-by-choice."""
        new_state = state.evolve(online_mode=enabled)
        self.commit(new_state)
        return new_state

    # --- transitions ---

    def _unreachable(
        self, state: SessionState, reason: str, message: str = ""
    ) -> ActionResult:
        new_state = state.went_offline(reason)
        self.commit(new_state)
        logger.warning("%s", reason)
        return ActionResult(
            False, new_state, message or reason, ErrorKind.CONNECTIVITY
        )

    def mark_unreachable(self, state: SessionState, reason: str) -> ActionResult:
        """Record a connectivity failure seen by another component."""
        return self._unreachable(state, reason)

    def revoke(
        self,
        state: SessionState,
        reason: str,
        message: str = "Could not login",
        error: ErrorKind = ErrorKind.AUTHENTICATION,
    ) -> ActionResult:
        """Forced logout: clear tokens, keep the profile, record why."""
        self._rotated.clear()
        new_state = state.signed_out(keep_profile=True).evolve(offline_reason=reason)
        self.commit(new_state)
        logger.warning("Session revoked: %s", reason)
        audit_event(self.home, "FORCED_LOGOUT", reason, user=state.username or None)
        return ActionResult(False, new_state, message, error)

    def _accept_auth_reply(
        self, state: SessionState, response: ChannelResponse, action: str
    ) -> ActionResult:
        reply = response.reply()
        if reply is None:
            return self._unreachable(
                state,
                f"{action} failed. Server sent incorrect data",
                "Server sent incorrect data, see log for details",
            )
        if not reply.ok:
            return self._unreachable(
                state, f"{action} failed. {reply.message}", str(reply.message)
            )
        try:
            payload = AuthPayload.model_validate(reply.data)
        except ValidationError as exc:
            logger.warning("%s reply rejected: %s", action, exc)
            return self._unreachable(
                state,
                f"{action} failed. Server sent incorrect data",
                "Server sent incorrect data, see log for details",
            )

        new_state = (
            state.with_profile(payload.user)
            .evolve(tokens=payload.session)
            .went_online()
        )
        self.commit(new_state)
        message = reply.message if isinstance(reply.message, str) else ""
        return ActionResult(True, new_state, message)

    def adopt_rotated(self, state: SessionState) -> SessionState:
        """Swap in the newest token pair if *state* predates a rotation.

        Callers may hold an older state (a pending cascade, a background
        sync) whose refresh token has since been rotated. Presenting it
        again would look like reuse to the server.
        """
        tokens = state.tokens
        while tokens.refresh_token in self._rotated:
            tokens = self._rotated[tokens.refresh_token]
        if tokens is state.tokens:
            return state
        logger.debug("Adopting rotated token pair for state v%d", state.version)
        return state.evolve(tokens=tokens)

    async def ensure_fresh_access_token(self, state: SessionState) -> ActionResult:
        """Make sure the access token is usable, refreshing if needed."""
        state = self.adopt_rotated(state)
        if state.tokens.access_valid(self.clock()):
            return ActionResult(True, state)
        if not state.tokens.refresh_token:
            return ActionResult(
                False, state, "Not logged in", ErrorKind.AUTHENTICATION
            )
        return await self.refresh(state)

    async def refresh(self, state: SessionState) -> ActionResult:
        """Rotate the token pair. Single-flight per refresh token.

        Callers presenting the same refresh token while a refresh is in
        flight wait for that one and share its result. Callers presenting
        a token that was already rotated get the newer pair without
        contacting the server.
        """
        adopted = self.adopt_rotated(state)
        if adopted is not state and adopted.tokens.access_valid(self.clock()):
            return ActionResult(True, adopted)
        state = adopted
        key = state.tokens.refresh_token
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(state))
            self._inflight[key] = task
            task.add_done_callback(lambda _t: self._inflight.pop(key, None))
        else:
            logger.debug("Joining in-flight refresh")
        return await asyncio.shield(task)

    async def _refresh(self, state: SessionState) -> ActionResult:
        if not state.tokens.refresh_valid(self.clock()):
            return self.revoke(state, "Refresh failed. Session expired", "Session expired")

        try:
            response = await self.channel.request(
                "GET", "api/auth/refresh", token=state.tokens.refresh_token,
            )
        except ConnectivityError as exc:
            return self._unreachable(
                state, "Refresh failed. Server did not respond", exc.message
            )

        if response.status_code in REJECTED_STATUSES:
            return self.revoke(
                state,
                "Refresh failed. Could not login",
                response.message("Could not login"),
            )
        if not response.ok:
            if response.server_error:
                reason = (
                    "Refresh failed. Please check your internet "
                    "connection and relogin"
                )
            else:
                reason = "Refresh failed. Server refused to refresh session"
            return self._unreachable(
                state, reason, response.message("Server did not respond")
            )

        result = self._accept_auth_reply(state, response, "Refresh")
        if result.success:
            self._rotated[state.tokens.refresh_token] = result.state.tokens
            logger.info("Session refreshed for %s", result.state.username)
            audit_event(self.home, "REFRESH", "Token pair rotated", user=result.state.username)
        return result

    async def _credentials(
        self, state: SessionState, action: str, path: str, body: dict[str, str]
    ) -> ActionResult:
        try:
            response = await self.channel.request("POST", path, json=body)
        except ConnectivityError as exc:
            return self._unreachable(
                state, f"{action} failed. Server did not respond", exc.message
            )

        if response.server_error:
            return self._unreachable(
                state,
                f"{action} failed. Server did not respond",
                response.message("Server did not respond"),
            )
        if not response.ok:
            message = response.message(f"{action} refused")
            logger.info("%s refused: %s", action, message)
            return ActionResult(False, state, message, ErrorKind.AUTHENTICATION)

        result = self._accept_auth_reply(state, response, action)
        if result.success:
            audit_event(self.home, action.upper(), f"{action} succeeded", user=result.state.username)
        return result

    async def login(
        self, state: SessionState, username: str, password: str
    ) -> ActionResult:
        """Exchange a username (or email) and password for a token pair."""
        return await self._credentials(
            state, "Login", "api/auth/login",
            {"username": username, "password": password},
        )

    async def register(
        self, state: SessionState, username: str, email: str, password: str
    ) -> ActionResult:
        """Create an account and sign in to it."""
        return await self._credentials(
            state, "Register", "api/auth/register",
            {"username": username, "email": email, "password": password},
        )

    async def logout(self, state: SessionState) -> ActionResult:
        """Tell the server (best effort), then forget the session locally."""
        if state.tokens.access_token:
            try:
                await self.channel.request(
                    "POST", "api/auth/logout", token=state.tokens.access_token,
                )
            except ConnectivityError:
                logger.info("Logout notification not delivered")

        self._rotated.clear()
        new_state = state.signed_out(keep_profile=False)
        self.commit(new_state)
        audit_event(self.home, "LOGOUT", "Session cleared", user=state.username or None)
        return ActionResult(True, new_state, "Logged out")

    async def init(self, state: SessionState) -> ActionResult:
        """Startup path: revalidate a persisted session against the server."""
        now = self.clock()
        if state.tokens.access_valid(now) or state.tokens.refresh_valid(now):
            return await self.update_self(state)
        if state.tokens.access_token or state.tokens.refresh_token:
            return self.revoke(state, "Session expired", "Session expired")
        return ActionResult(False, state, "Not logged in", ErrorKind.AUTHENTICATION)

    async def authorized_request(
        self,
        state: SessionState,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        revoke_on: frozenset[int] = REJECTED_STATUSES,
        rejection: ErrorKind = ErrorKind.AUTHENTICATION,
    ) -> tuple[ActionResult, Optional[ChannelResponse]]:
        """Refresh if needed, then send one bearer-authenticated request.

        Statuses in *revoke_on* force a logout; transport failures and
        5xx mark the session unreachable. Any other response comes back
        to the caller to interpret.

        Returns:
            The session result and the response (None when it failed).
        """
        fresh = await self.ensure_fresh_access_token(state)
        if not fresh.success:
            return fresh, None
        state = fresh.state

        try:
            response = await self.channel.request(
                method, path,
                token=state.tokens.access_token, json=json, params=params,
            )
        except ConnectivityError as exc:
            return self._unreachable(
                state, "Connection failed. Server did not respond", exc.message
            ), None

        if response.status_code in revoke_on:
            return self.revoke(
                state,
                f"{method} {path} rejected ({response.status_code})",
                response.message("Could not login"),
                rejection,
            ), None
        if response.server_error:
            return self._unreachable(
                state,
                "Connection failed. Server error",
                response.message("Server error"),
            ), None
        return ActionResult(True, state), response

    async def update_self(self, state: SessionState) -> ActionResult:
        """Reload the profile; marks the session reachable on success."""
        result, response = await self.authorized_request(state, "GET", "api/auth/self")
        if response is None:
            return result
        state = result.state
        if not response.ok:
            return self._unreachable(
                state,
                "Connection failed. Server refused",
                response.message("Server refused"),
            )
        try:
            info = UserInfo.model_validate(response.body)
        except ValidationError as exc:
            logger.warning("Profile reply rejected: %s", exc)
            return self._unreachable(
                state,
                "Connection failed. Server sent incorrect data",
                "Server sent incorrect data, see log for details",
            )
        new_state = state.with_profile(info).went_online()
        self.commit(new_state)
        return ActionResult(True, new_state)

    async def update_account(
        self, state: SessionState, patch: AccountPatch
    ) -> ActionResult:
        """Change profile fields or password on the server."""
        if not self.is_online(state):
            return ActionResult(False, state, "Offline", ErrorKind.CONNECTIVITY)
        result, response = await self.authorized_request(
            state, "PATCH", "api/user/self",
            json=patch.model_dump(exclude_none=True),
            revoke_on=frozenset({401}),
        )
        if response is None:
            return result
        if not response.ok:
            return ActionResult(
                False, result.state, response.message("Update refused"),
                ErrorKind.VALIDATION,
            )
        data = response.body.get("data") if isinstance(response.body, dict) else None
        new_state = result.state
        if isinstance(data, dict):
            changes = {
                k: v for k, v in data.items()
                if k in ("username", "displayname", "email") and isinstance(v, str)
            }
            new_state = new_state.evolve(**changes)
            self.commit(new_state)
        return ActionResult(True, new_state, "Account updated")

    async def fetch_sessions(self, state: SessionState) -> ActionResult:
        """List the account's server-side sessions (``data`` is a list)."""
        if not self.is_online(state):
            return ActionResult(False, state, "Offline", ErrorKind.CONNECTIVITY, data=[])
        result, response = await self.authorized_request(
            state, "GET", "api/user/sessions", revoke_on=frozenset({401}),
        )
        if response is None or not response.ok or not isinstance(response.body, list):
            return ActionResult(False, result.state, result.message, result.error, data=[])
        return ActionResult(True, result.state, data=response.body)

    async def drop_session(self, state: SessionState, session_id: int) -> ActionResult:
        """Invalidate one server-side session of this account."""
        if not self.is_online(state):
            return ActionResult(False, state, "Offline", ErrorKind.CONNECTIVITY)
        result, response = await self.authorized_request(
            state, "DELETE", f"api/user/session/{session_id}",
            revoke_on=frozenset({401}),
        )
        if response is None:
            return result
        if not response.ok:
            return ActionResult(
                False, result.state, response.message("Session not dropped"),
                ErrorKind.VALIDATION,
            )
        return ActionResult(True, result.state, "Session dropped")

    async def request_quota(self, state: SessionState) -> ActionResult:
        """Storage usage and quota (``data`` is ``{usage, quota}``)."""
        empty = {"usage": 0, "quota": 0}
        if not self.is_online(state):
            return ActionResult(False, state, "Offline", ErrorKind.CONNECTIVITY, data=empty)
        result, response = await self.authorized_request(
            state, "GET", "api/user/quota", revoke_on=frozenset({401}),
        )
        if response is None or not response.ok:
            return ActionResult(False, result.state, result.message, result.error, data=empty)
        reply = response.reply()
        if reply is None or not isinstance(reply.data, dict):
            return ActionResult(False, result.state, "Server sent incorrect data", data=empty)
        return ActionResult(True, result.state, data=reply.data)
