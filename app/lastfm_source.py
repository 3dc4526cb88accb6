import logging
import re

import pylast

from errors import InvalidUsernameError
from lastfm_client import TimedCaller
from models import PlayRecord

log = logging.getLogger("lastfm")

# Last.fm signup rule: 2-15 chars, starts with a letter
USERNAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{1,14}$")


def validate_username(username: str | None) -> str:
    name = (username or "").strip()
    if not name:
        raise InvalidUsernameError("Username is required")
    if not USERNAME_RE.match(name):
        raise InvalidUsernameError(f"'{name}' is not a valid Last.fm username")
    return name


class LastFMSource:
    """
    Scrobble source: reads a target user's recent and now-playing tracks.
    Tolerant of odd payloads: tracks without artist/title are skipped, a missing
    or unparsable timestamp is treated as "now playing".
    """
    def __init__(self, network: pylast.LastFMNetwork, timeout: float = 15.0, limit: int = 50):
        self.network = network
        self.limit = limit
        self._caller = TimedCaller(timeout, "lastfm-source")

    def _to_int(self, s):
        if s is None or s == "": return None
        try:
            return int(float(s))
        except (TypeError, ValueError):
            return None

    def _text(self, v):
        if v is None: return None
        name = getattr(v, "name", v)
        name = str(name).strip()
        return name or None

    def resolve_user(self, username: str) -> str:
        """Return the canonical spelling of `username`; raises UnknownUserError if it doesn't exist."""
        name = validate_username(username)
        user = self.network.get_user(name)
        return self._caller.call(user.get_name, properly_capitalized=True) or name

    def _fetch(self, username: str, since: int | None):
        user = self.network.get_user(username)
        kwargs = {"limit": self.limit, "cacheable": False}
        if since is not None:
            kwargs["time_from"] = int(since)
        played = user.get_recent_tracks(**kwargs)
        now = user.get_now_playing()
        return played, now

    def fetch_recent_plays(self, username: str, since: int | None = None) -> list[PlayRecord]:
        played, now = self._caller.call(self._fetch, username, since)

        plays = []
        for p in played or []:
            track = getattr(p, "track", None)
            artist = self._text(getattr(track, "artist", None))
            title = self._text(getattr(track, "title", None))
            if not artist or not title:
                log.debug("Skipping recent track without artist/title: %r", p)
                continue
            plays.append(PlayRecord(
                artist=artist,
                title=title,
                album=self._text(getattr(p, "album", None)),
                played_at=self._to_int(getattr(p, "timestamp", None)),
            ))

        if now is not None:
            artist = self._text(getattr(now, "artist", None))
            title = self._text(getattr(now, "title", None))
            if artist and title:
                plays.append(PlayRecord(artist=artist, title=title, album=None, played_at=None))

        log.debug("Fetched %s plays for %s since %s", len(plays), username, since)
        return plays

    def close(self):
        self._caller.close()
