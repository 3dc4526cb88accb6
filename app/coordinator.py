"""Poll loop: one worker thread per follow session."""
import logging
import threading
import time
from typing import Callable

from errors import LassoError, LastFMUnknownError
from models import PlayRecord, ScrobbleEvent
from session import Session, SessionStateMachine

log = logging.getLogger("coordinator")


class PollLoopCoordinator:
    """Drives fetch -> dedup -> submit -> feed cycles for a single session.

    The worker only polls while the state machine says the session is pollable.
    Pause is honoured between cycles; stop wakes the worker, which exits once any
    in-flight call returns, and a stopped session never receives further writes.
    """

    def __init__(self, machine: SessionStateMachine, session: Session, source, sink, *,
                 poll_interval: float = 30.0, mirror_now_playing: bool = True,
                 clock: Callable[[], float] = time.time):
        self.machine = machine
        self.session = session
        self.source = source
        self.sink = sink
        self.poll_interval = poll_interval
        self.mirror_now_playing = mirror_now_playing
        self.clock = clock
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._now_playing_id: str | None = None

    # -------- worker control --------
    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name=f"poll-{self.session.target_username}",
            daemon=True,
        )
        self._thread.start()
        log.info("Poll loop started for %s (interval %.0fs)",
                 self.session.target_username, self.poll_interval)

    def wake(self) -> None:
        self._wake.set()

    def stop(self, wait: bool = True, timeout: float | None = None) -> bool:
        """Signal the worker to exit; with wait=True, join it. Returns True once it has exited."""
        self._stop.set()
        self._wake.set()
        t = self._thread
        if t is None or t is threading.current_thread():
            return True
        if wait:
            t.join(timeout)
        return not t.is_alive()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while True:
            self._wake.clear()
            if self._stop.is_set() or not self.machine.is_current(self.session):
                break
            if self.machine.is_pollable(self.session):
                try:
                    self.run_cycle()
                except Exception as e:
                    # Never let a cycle kill the loop
                    log.exception("Poll cycle crashed for %s", self.session.target_username)
                    self.machine.report_cycle_error(self.session, LastFMUnknownError(str(e)))
            self._wake.wait(timeout=self.poll_interval)
        log.info("Poll loop for %s exited", self.session.target_username)

    # -------- one cycle --------
    def _report(self, step: str, err: LassoError) -> None:
        if err.transient:
            log.warning("%s failed for %s (%s): %s; will retry next cycle",
                        step, self.session.target_username, err.kind.value, err)
        else:
            log.error("%s failed for %s (%s): %s",
                      step, self.session.target_username, err.kind.value, err)
        self.machine.report_cycle_error(self.session, err)

    def _mirror(self, plays: list[PlayRecord]) -> None:
        current = next((p for p in plays if p.now_playing), None)
        if current is None:
            self._now_playing_id = None
            return
        if current.track_id == self._now_playing_id:
            return
        self._now_playing_id = current.track_id
        log.debug("Now playing for %s: %s — %s",
                  self.session.target_username, current.artist, current.title)
        self.sink.update_now_playing(artist=current.artist, title=current.title, album=current.album)

    def run_cycle(self) -> int:
        """Run one poll cycle synchronously. Returns the number of scrobbles committed."""
        session = self.session
        if not self.machine.is_pollable(session):
            return 0

        ledger = session.ledger
        since = session.high_water_mark - ledger.tolerance
        # Entries that can still match this window stay in the ledger
        ledger.trim(since - ledger.tolerance)

        try:
            plays = self.source.fetch_recent_plays(session.target_username, since)
        except LassoError as e:
            self._report("Fetch", e)
            return 0

        if not self.machine.is_current(session):
            log.debug("Session stopped during fetch; discarding %s plays", len(plays))
            return 0

        if self.mirror_now_playing:
            self._mirror(plays)

        # Now-playing tracks wait until the source resolves them
        hwm = session.high_water_mark
        pending = []
        for p in plays:
            if p.played_at is None or ledger.seen(p.track_id, p.played_at):
                continue
            if p.played_at < hwm:
                # Relaying it now would put the follower's history out of order
                log.debug("Dropping late play %s — %s at %s (already relayed through %s)",
                          p.artist, p.title, p.played_at, hwm)
                continue
            pending.append(p)
        pending.sort(key=lambda p: p.played_at)
        log.debug("Cycle for %s: %s fetched, %s new", session.target_username, len(plays), len(pending))

        committed = 0
        for play in pending:
            if not self.machine.is_current(session):
                log.info("Session stopped mid-cycle; dropping %s pending plays", len(pending) - committed)
                return committed
            # Same play can appear twice in one batch
            if ledger.seen(play.track_id, play.played_at):
                continue
            try:
                self.sink.submit_scrobble(
                    artist=play.artist, title=play.title, album=play.album, timestamp=play.played_at,
                )
            except LassoError as e:
                # Later plays wait for this one so the follower's history keeps its order
                self._report("Scrobble", e)
                return committed

            event = ScrobbleEvent.from_play(play, self.clock())
            if not self.machine.commit_scrobble(session, play, event):
                log.info("Session stopped before commit; discarding %s — %s", play.artist, play.title)
                return committed
            committed += 1
            log.info("Scrobbled: %s — %s%s (from %s)", play.artist, play.title,
                     f" [{play.album}]" if play.album else "", session.target_username)

        self.machine.report_cycle_recovered(session)
        return committed
