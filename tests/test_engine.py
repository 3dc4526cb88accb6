import time

import pytest

from conftest import FakeSink, FakeSource, play
from engine import SessionEngine
from errors import (
    InvalidTransitionError, InvalidUsernameError, NetworkError, RateLimitedError,
    UnauthorizedError, UnknownUserError,
)
from models import ErrorKind, PlayRecord
from session import SessionState


def test_follow_alice_relays_plays_in_order(engine, source, sink):
    snap = engine.start("alice")
    assert snap.state is SessionState.ACTIVE
    assert snap.target_username == "alice"

    source.plays = [play("Song A", 100), play("Song B", 200)]
    assert engine.poll_once() == 2

    assert sink.titles == ["Song A", "Song B"]
    snap = engine.snapshot()
    assert [e.title for e in snap.feed] == ["Song B", "Song A"]
    assert snap.scrobble_count == 2
    assert snap.error is None


def test_unknown_user_leaves_session_not_started(engine):
    with pytest.raises(UnknownUserError):
        engine.start("doesnotexist123")
    assert engine.state is SessionState.NOT_STARTED
    assert engine.snapshot().session_id is None


@pytest.mark.parametrize("name", ["", "   ", "1alice", "a", "has space", "x" * 16])
def test_malformed_username_rejected(engine, name):
    with pytest.raises(InvalidUsernameError):
        engine.start(name)
    assert engine.state is SessionState.NOT_STARTED


def test_canonical_username_is_stored(source, sink):
    source.users["alice"] = "Alice"
    eng = SessionEngine(source, sink, clock=lambda: 50.0, run_loop=False)
    assert eng.start(" alice ").target_username == "Alice"


def test_no_duplicates_across_cycles_and_pause_resume(engine, source, sink):
    engine.start("alice")
    source.plays = [play("Song A", 100), play("Song B", 200)]
    engine.poll_once()
    engine.poll_once()
    engine.pause()
    engine.resume()
    engine.poll_once()

    assert sink.titles == ["Song A", "Song B"]
    assert engine.snapshot().scrobble_count == 2


def test_submissions_sorted_oldest_first(engine, source, sink):
    engine.start("alice")
    source.plays = [play("C", 300), play("A", 100), play("B", 200)]
    engine.poll_once()
    assert [s[3] for s in sink.submitted] == [100, 200, 300]


def test_play_within_tolerance_is_same_play(engine, source, sink):
    engine.start("alice")
    source.plays = [play("Loop", 100), play("loop ", 130, artist="ARTIST", album="album")]
    engine.poll_once()
    assert len(sink.submitted) == 1

    # A genuine repeat listen later on is relayed
    source.plays.append(play("Loop", 400))
    engine.poll_once()
    assert [s[3] for s in sink.submitted] == [100, 400]


def test_pause_is_non_lossy(engine, source, sink):
    engine.start("alice")
    engine.poll_once()
    engine.pause()

    source.plays = [play("Queued", 120)]
    assert engine.poll_once() == 0
    assert sink.submitted == []

    engine.resume()
    assert engine.poll_once() == 1
    engine.poll_once()
    assert sink.titles == ["Queued"]


def test_stop_then_start_resets_ledger_and_feed(engine, source, sink):
    engine.start("alice")
    source.plays = [play("Song A", 100)]
    engine.poll_once()

    snap = engine.stop()
    assert snap.state is SessionState.STOPPED
    assert not snap.feed_visible
    assert snap.feed == ()

    old_id = snap.session_id
    snap = engine.start("alice")
    assert snap.session_id != old_id
    assert snap.feed == ()
    assert snap.scrobble_count == 0
    assert snap.feed_visible
    assert engine.machine.session.ledger.size() == 0


def test_transient_fetch_errors_auto_recover(engine, source, sink):
    engine.start("alice")
    source.plays = [play("Song C", 300)]
    source.failures = [NetworkError("connection reset"), RateLimitedError("Rate limit exceeded")]

    engine.poll_once()
    snap = engine.snapshot()
    assert snap.state is SessionState.ERRORED
    assert snap.error.kind is ErrorKind.NETWORK

    engine.poll_once()
    snap = engine.snapshot()
    assert snap.state is SessionState.ERRORED
    assert snap.error.kind is ErrorKind.RATE_LIMITED
    assert sink.submitted == []

    engine.poll_once()
    snap = engine.snapshot()
    assert snap.state is SessionState.ACTIVE
    assert snap.error is None
    assert sink.titles == ["Song C"]


def test_failed_submit_defers_rest_of_cycle(engine, source, sink):
    engine.start("alice")
    source.plays = [play("A", 100), play("B", 200), play("C", 300)]
    sink.failures = [None, NetworkError("timeout")]

    assert engine.poll_once() == 1
    assert engine.state is SessionState.ERRORED
    assert engine.machine.session.high_water_mark == 100

    assert engine.poll_once() == 2
    assert sink.titles == ["A", "B", "C"]
    assert engine.state is SessionState.ACTIVE


def test_now_playing_waits_until_resolved(engine, source, sink):
    engine.start("alice")
    source.plays = [play("Done", 100), PlayRecord("Artist", "Playing", None, None)]
    engine.poll_once()
    assert sink.titles == ["Done"]
    assert sink.now_playing == [("Artist", "Playing")]

    # Same now-playing track is mirrored only once
    engine.poll_once()
    assert sink.now_playing == [("Artist", "Playing")]

    source.plays = [play("Done", 100), play("Playing", 300)]
    engine.poll_once()
    assert sink.titles == ["Done", "Playing"]


def test_mirror_can_be_disabled(source, sink):
    eng = SessionEngine(source, sink, clock=lambda: 50.0, run_loop=False, mirror_now_playing=False)
    eng.start("alice")
    source.plays = [PlayRecord("Artist", "Playing", None, None)]
    eng.poll_once()
    assert sink.now_playing == []


def test_plays_before_session_start_are_skipped(source, sink):
    eng = SessionEngine(source, sink, clock=lambda: 1000.0, run_loop=False)
    eng.start("alice")
    source.plays = [play("Old", 100), play("New", 1100)]
    eng.poll_once()
    assert sink.titles == ["New"]
    assert source.fetches[-1] == ("alice", 1000 - 60)


def test_unauthorized_halts_polling_until_retry(engine, source, sink, alerts):
    engine.start("alice")
    source.plays = [play("A", 100)]
    sink.failures = [UnauthorizedError("Invalid session key")]

    engine.poll_once()
    snap = engine.snapshot()
    assert snap.state is SessionState.ERRORED
    assert snap.error.fatal
    assert ("ERROR", "Last.fm authentication failed") in alerts

    fetches = len(source.fetches)
    engine.poll_once()
    assert len(source.fetches) == fetches

    with pytest.raises(InvalidTransitionError):
        engine.pause()

    engine.retry()
    assert engine.state is SessionState.ACTIVE
    engine.poll_once()
    assert sink.titles == ["A"]


def test_stop_allowed_from_errored(engine, source):
    engine.start("alice")
    source.failures = [NetworkError("down")]
    engine.poll_once()
    assert engine.state is SessionState.ERRORED
    assert engine.stop().state is SessionState.STOPPED


def test_invalid_transitions_leave_state_unchanged(engine):
    with pytest.raises(InvalidTransitionError):
        engine.pause()
    with pytest.raises(InvalidTransitionError):
        engine.stop()
    assert engine.state is SessionState.NOT_STARTED

    engine.start("alice")
    with pytest.raises(InvalidTransitionError):
        engine.resume()
    with pytest.raises(InvalidTransitionError):
        engine.start("bob")
    with pytest.raises(InvalidTransitionError):
        engine.retry()
    assert engine.state is SessionState.ACTIVE
    assert engine.snapshot().target_username == "alice"


def test_stop_during_cycle_discards_results(engine, source, sink):
    engine.start("alice")
    source.plays = [play("A", 100), play("B", 200)]
    sink.on_submit = engine.stop

    assert engine.poll_once() == 0
    snap = engine.snapshot()
    assert snap.state is SessionState.STOPPED
    assert snap.feed == ()
    assert snap.scrobble_count == 0
    # The first submit reached the sink; nothing after stop did
    assert sink.titles == ["A"]


def test_subscribers_receive_snapshots(engine, source):
    seen = []
    unsubscribe = engine.subscribe(lambda snap: seen.append(snap.state))
    engine.start("alice")
    engine.pause()
    unsubscribe()
    engine.resume()
    assert seen == [SessionState.ACTIVE, SessionState.PAUSED]


def test_repeated_error_kind_alerts_once(engine, source, alerts):
    engine.start("alice")
    source.failures = [NetworkError("a"), NetworkError("b")]
    engine.poll_once()
    engine.poll_once()
    warnings = [a for a in alerts if a[0] == "WARNING"]
    assert len(warnings) == 1
    assert ("INFO", "Session started") in alerts


def test_background_loop_relays_and_stops():
    source, sink = FakeSource(), FakeSink()
    source.plays = [play("Song A", 100), play("Song B", 200)]
    eng = SessionEngine(source, sink, poll_interval=0.05, clock=lambda: 50.0)
    eng.start("alice")
    try:
        deadline = time.monotonic() + 5
        while len(sink.submitted) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert sink.titles == ["Song A", "Song B"]

        eng.pause()
        eng.resume()
        time.sleep(0.15)
        assert sink.titles == ["Song A", "Song B"]
    finally:
        eng.stop()
        eng.close()
    assert eng._loop is not None and not eng._loop.running


def test_late_arriving_play_is_not_relayed_out_of_order(engine, source, sink):
    engine.start("alice")
    source.plays = [play("X", 1000)]
    engine.poll_once()

    source.plays = [play("Y", 990), play("X", 1000)]
    engine.poll_once()

    ts = [s[3] for s in sink.submitted]
    assert ts == sorted(ts)
    assert sink.titles == ["X"]


def test_retry_after_failed_submit_keeps_order(engine, source, sink):
    engine.start("alice")
    source.plays = [play("A", 100), play("B", 200)]
    sink.failures = [None, NetworkError("reset")]
    engine.poll_once()

    source.plays = [play("D", 90), play("A", 100), play("B", 200)]
    engine.poll_once()

    ts = [s[3] for s in sink.submitted]
    assert ts == sorted(ts) == [100, 200]
    assert engine.state is SessionState.ACTIVE


def test_resume_from_errored_points_to_retry(engine, source):
    engine.start("alice")
    engine.pause()
    engine.machine.report_cycle_error(engine.machine.session, NetworkError("late failure"))
    assert engine.state is SessionState.ERRORED

    with pytest.raises(InvalidTransitionError, match="retry"):
        engine.resume()
    assert engine.retry().state is SessionState.ACTIVE
