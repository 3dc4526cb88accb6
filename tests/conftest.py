import pytest

from engine import SessionEngine
from errors import UnknownUserError
from models import PlayRecord


class FakeSource:
    """In-memory stand-in for LastFMSource."""

    def __init__(self, users=("alice", "bob")):
        self.users = {u.lower(): u for u in users}
        self.plays: list[PlayRecord] = []
        self.failures: list[Exception] = []
        self.fetches: list[tuple] = []

    def resolve_user(self, username):
        try:
            return self.users[username.lower()]
        except KeyError:
            raise UnknownUserError(f"User not found: {username}")

    def fetch_recent_plays(self, username, since=None):
        self.fetches.append((username, since))
        if self.failures:
            raise self.failures.pop(0)
        return list(self.plays)


class FakeSink:
    """Records submissions; `failures` is consumed one entry per submit (None = succeed)."""

    def __init__(self):
        self.submitted: list[tuple] = []
        self.failures: list[Exception | None] = []
        self.now_playing: list[tuple] = []
        self.on_submit = None

    def submit_scrobble(self, *, artist, title, album, timestamp):
        if self.on_submit:
            self.on_submit()
        if self.failures:
            exc = self.failures.pop(0)
            if exc is not None:
                raise exc
        self.submitted.append((artist, title, album, timestamp))

    def update_now_playing(self, *, artist, title, album=None, duration=None):
        self.now_playing.append((artist, title))

    @property
    def titles(self):
        return [s[1] for s in self.submitted]


def play(title, played_at, artist="Artist", album="Album"):
    return PlayRecord(artist=artist, title=title, album=album, played_at=played_at)


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def engine(source, sink, alerts):
    eng = SessionEngine(
        source, sink,
        clock=lambda: 50.0,
        run_loop=False,
        alert=lambda level, title, message, extra=None: alerts.append((level, title)),
    )
    yield eng
    eng.close()
