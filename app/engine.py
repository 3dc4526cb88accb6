import logging
import threading
import time
from typing import Callable

from coordinator import PollLoopCoordinator
from models import SessionError
from session import SessionSnapshot, SessionState, SessionStateMachine

log = logging.getLogger("lasso")

Alert = Callable[..., None]


def _no_alert(level: str, title: str, message: str, extra: dict | None = None):
    pass


class SessionEngine:
    """Command surface for the UI: start/pause/resume/stop/retry plus state snapshots.

    Owns the state machine and the poll loop of the current session. Commands return
    the new snapshot or raise a LassoError; they never wait on network I/O of the
    poll loop (stop signals the worker and returns, the next start joins it).
    """

    def __init__(self, source, sink, *, poll_interval: float = 30.0, dedup_tolerance: int = 60,
                 dedup_capacity: int = 500, feed_capacity: int = 50,
                 mirror_now_playing: bool = True, alert: Alert = _no_alert,
                 clock: Callable[[], float] = time.time, run_loop: bool = True):
        self.source = source
        self.sink = sink
        self.poll_interval = poll_interval
        self.mirror_now_playing = mirror_now_playing
        self.clock = clock
        self.run_loop = run_loop
        self._alert = alert
        self.machine = SessionStateMachine(
            source.resolve_user,
            dedup_tolerance=dedup_tolerance,
            dedup_capacity=dedup_capacity,
            feed_capacity=feed_capacity,
            clock=clock,
        )
        self._loop: PollLoopCoordinator | None = None
        self._loop_lock = threading.Lock()
        self._last_error: SessionError | None = None
        self.machine.subscribe(self._on_change)

    # -------- commands --------
    def start(self, username: str) -> SessionSnapshot:
        session = self.machine.start(username)
        with self._loop_lock:
            old = self._loop
            if old is not None and not old.stop(wait=True, timeout=self.poll_interval):
                log.warning("Previous poll loop still draining; it will not touch the new session")
            self._loop = PollLoopCoordinator(
                self.machine, session, self.source, self.sink,
                poll_interval=self.poll_interval,
                mirror_now_playing=self.mirror_now_playing,
                clock=self.clock,
            )
            if self.run_loop:
                self._loop.start()
        self._send("INFO", "Session started", f"Following {session.target_username}.")
        return self.snapshot()

    def pause(self) -> SessionSnapshot:
        self.machine.pause()
        return self.snapshot()

    def resume(self) -> SessionSnapshot:
        self.machine.resume()
        self._wake()
        return self.snapshot()

    def stop(self) -> SessionSnapshot:
        session = self.machine.session
        self.machine.stop()
        with self._loop_lock:
            if self._loop is not None:
                self._loop.stop(wait=False)
        self._send("INFO", "Session stopped",
                   f"Stopped following {session.target_username if session else '?'}.")
        return self.snapshot()

    def retry(self) -> SessionSnapshot:
        self.machine.retry()
        self._wake()
        return self.snapshot()

    def poll_once(self) -> int:
        """Run one poll cycle on the caller's thread (console `poll`, tests)."""
        with self._loop_lock:
            loop = self._loop
        return loop.run_cycle() if loop is not None else 0

    def close(self, timeout: float | None = 5.0) -> None:
        with self._loop_lock:
            if self._loop is not None:
                self._loop.stop(wait=True, timeout=timeout)

    # -------- state out --------
    def snapshot(self) -> SessionSnapshot:
        return self.machine.snapshot()

    def subscribe(self, listener: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        return self.machine.subscribe(listener)

    # -------- internals --------
    def _wake(self) -> None:
        with self._loop_lock:
            if self._loop is not None:
                self._loop.wake()

    def _send(self, level: str, title: str, message: str, extra: dict | None = None) -> None:
        try:
            self._alert(level, title, message, extra)
        except Exception as e:
            log.debug("Alert delivery failed: %s", e)

    def _on_change(self, snap: SessionSnapshot) -> None:
        err = snap.error
        if err is None or err == self._last_error:
            self._last_error = err
            return
        # Alert only on a change of error kind, not on every failing cycle
        repeat = self._last_error is not None and self._last_error.kind == err.kind
        self._last_error = err
        if repeat:
            return
        level = "ERROR" if err.fatal else "WARNING"
        title = "Last.fm authentication failed" if err.fatal else "Follow session error"
        self._send(level, title, err.message, {
            "target": snap.target_username,
            "kind": err.kind.value,
            "state": snap.state.value,
        })
        if err.fatal:
            log.error("Session for %s halted: %s. Re-authenticate, then retry or stop + start.",
                      snap.target_username, err.message)

    @property
    def state(self) -> SessionState:
        return self.machine.state
