"""
Follow-session lifecycle.

A Session is created by start() and owns its dedup ledger, activity feed and
high-water mark for its whole lifetime. SessionStateMachine is the only thing
that mutates it: user commands (start/pause/resume/stop/retry) and the poll
loop's reports (cycle error, recovery, committed scrobbles) all go through it,
under one lock, and every change is pushed to subscribers as an immutable
SessionSnapshot.
"""

from __future__ import annotations
import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable

from errors import InvalidTransitionError, LassoError, UnauthorizedError
from feed import ActivityFeed
from lastfm_source import validate_username
from ledger import DedupLedger
from models import PlayRecord, ScrobbleEvent, SessionError

log = logging.getLogger("session")


class SessionState(str, enum.Enum):
    NOT_STARTED = "not-started"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERRORED = "errored"


S = SessionState

# Every legal (from -> to) edge; anything else is an InvalidTransitionError
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    S.NOT_STARTED: frozenset({S.ACTIVE, S.ERRORED}),
    S.ACTIVE: frozenset({S.PAUSED, S.STOPPED, S.ERRORED}),
    S.PAUSED: frozenset({S.ACTIVE, S.STOPPED, S.ERRORED}),
    # ERRORED -> PAUSED only when recovering an error raised while paused
    S.ERRORED: frozenset({S.ACTIVE, S.PAUSED, S.STOPPED}),
    S.STOPPED: frozenset(),
}

# States each user command may be issued from
COMMANDS: dict[str, frozenset[SessionState]] = {
    "start": frozenset({S.NOT_STARTED, S.STOPPED}),
    "pause": frozenset({S.ACTIVE}),
    "resume": frozenset({S.PAUSED}),
    "stop": frozenset({S.ACTIVE, S.PAUSED, S.ERRORED}),
    "retry": frozenset({S.ERRORED}),
}


class Session:
    def __init__(self, target_username: str, *, ledger: DedupLedger, feed: ActivityFeed, now: float):
        self.id = uuid.uuid4().hex
        self.target_username = target_username
        self.state = S.NOT_STARTED
        self.created_at = now
        self.last_transition_at = now
        self.error: SessionError | None = None
        # Plays that started before the follow began are not relayed
        self.high_water_mark = int(now)
        self.ledger = ledger
        self.feed = feed
        self.resume_state: SessionState | None = None

    def move(self, to: SessionState, now: float) -> None:
        if to not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Cannot move from {self.state.value} to {to.value}")
        log.info("Session %s (%s): %s -> %s", self.id[:8], self.target_username,
                 self.state.value, to.value)
        self.state = to
        self.last_transition_at = now

    def __repr__(self):
        return f"<Session {self.id[:8]} {self.target_username} {self.state.value}>"


@dataclass(frozen=True)
class SessionSnapshot:
    state: SessionState
    session_id: str | None = None
    target_username: str | None = None
    error: SessionError | None = None
    feed: tuple[ScrobbleEvent, ...] = ()
    scrobble_count: int = 0
    created_at: float | None = None
    last_transition_at: float | None = None

    @property
    def feed_visible(self) -> bool:
        return self.state in (S.ACTIVE, S.PAUSED, S.ERRORED)


Listener = Callable[[SessionSnapshot], None]


class SessionStateMachine:
    def __init__(self, resolve_user: Callable[[str], str], *, dedup_tolerance: int = 60,
                 dedup_capacity: int = 500, feed_capacity: int = 50,
                 clock: Callable[[], float] = time.time):
        self._resolve_user = resolve_user
        self.dedup_tolerance = dedup_tolerance
        self.dedup_capacity = dedup_capacity
        self.feed_capacity = feed_capacity
        self.clock = clock
        self._lock = threading.RLock()
        self._session: Session | None = None
        self._listeners: list[Listener] = []

    # -------- read side --------
    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._session.state if self._session else S.NOT_STARTED

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            s = self._session
            if s is None:
                return SessionSnapshot(state=S.NOT_STARTED)
            return SessionSnapshot(
                state=s.state,
                session_id=s.id,
                target_username=s.target_username,
                error=s.error,
                feed=s.feed.snapshot(),
                scrobble_count=s.feed.total,
                created_at=s.created_at,
                last_transition_at=s.last_transition_at,
            )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def _notify(self) -> None:
        snap = self.snapshot()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snap)
            except Exception:
                log.exception("Session listener %r failed", listener)

    def _require(self, command: str) -> Session | None:
        state = self.state
        if state not in COMMANDS[command]:
            msg = f"Cannot {command} while session is {state.value}"
            if state is S.ERRORED and command in ("pause", "resume"):
                msg += "; use retry to poll again or stop to end the session"
            raise InvalidTransitionError(msg)
        return self._session

    # -------- user commands --------
    def start(self, target_username: str) -> Session:
        """Validate and resolve the target, then open a fresh Active session.

        Raises InvalidUsernameError, UnknownUserError, InvalidTransitionError, or a
        transient error if the account lookup itself failed. State is unchanged on failure.
        """
        name = validate_username(target_username)
        with self._lock:
            self._require("start")
        # Network lookup runs outside the lock so other commands stay responsive
        canonical = self._resolve_user(name)
        with self._lock:
            self._require("start")
            now = self.clock()
            session = Session(
                canonical,
                ledger=DedupLedger(self.dedup_tolerance, self.dedup_capacity),
                feed=ActivityFeed(self.feed_capacity),
                now=now,
            )
            session.move(S.ACTIVE, now)
            self._session = session
        self._notify()
        return session

    def pause(self) -> None:
        with self._lock:
            self._require("pause").move(S.PAUSED, self.clock())
        self._notify()

    def resume(self) -> None:
        with self._lock:
            self._require("resume").move(S.ACTIVE, self.clock())
        self._notify()

    def stop(self) -> None:
        with self._lock:
            session = self._require("stop")
            session.move(S.STOPPED, self.clock())
            session.ledger.clear()
            session.feed.clear()
            session.error = None
            session.resume_state = None
        self._notify()

    def retry(self) -> None:
        with self._lock:
            session = self._require("retry")
            session.error = None
            session.resume_state = None
            session.move(S.ACTIVE, self.clock())
        self._notify()

    # -------- poll loop reports --------
    def is_current(self, session: Session) -> bool:
        with self._lock:
            return session is self._session and session.state is not S.STOPPED

    def is_pollable(self, session: Session) -> bool:
        with self._lock:
            if session is not self._session:
                return False
            if session.state is S.ACTIVE:
                return True
            return (session.state is S.ERRORED
                    and session.resume_state is S.ACTIVE
                    and not (session.error and session.error.fatal))

    def report_cycle_error(self, session: Session, err: LassoError) -> bool:
        with self._lock:
            if not self.is_current(session):
                return False
            now = self.clock()
            session.error = SessionError(
                kind=err.kind,
                message=str(err) or err.kind.value,
                occurred_at=now,
                fatal=isinstance(err, UnauthorizedError),
            )
            if session.state is not S.ERRORED:
                session.resume_state = session.state
                session.move(S.ERRORED, now)
        self._notify()
        return True

    def report_cycle_recovered(self, session: Session) -> bool:
        with self._lock:
            if not self.is_current(session) or session.error is None:
                return False
            if session.error.fatal:
                return False
            session.error = None
            if session.state is S.ERRORED:
                session.move(session.resume_state or S.ACTIVE, self.clock())
                session.resume_state = None
        self._notify()
        return True

    def commit_scrobble(self, session: Session, play: PlayRecord, event: ScrobbleEvent) -> bool:
        """Apply one successful submission. Returns False if the session was stopped meanwhile."""
        with self._lock:
            if not self.is_current(session):
                return False
            session.ledger.record(play.track_id, play.played_at)
            session.feed.append(event)
            session.high_water_mark = max(session.high_water_mark, play.played_at)
        self._notify()
        return True
