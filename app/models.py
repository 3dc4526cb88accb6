from __future__ import annotations

import enum
from dataclasses import dataclass


def _norm(s: str | None) -> str:
    # Case-insensitive, whitespace-collapsed form used for track identity
    return " ".join((s or "").split()).casefold()


class ErrorKind(str, enum.Enum):
    INVALID_USERNAME = "invalid-username"
    UNKNOWN_USER = "unknown-user"
    INVALID_TRANSITION = "invalid-transition"
    RATE_LIMITED = "rate-limited"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN = "unknown"


# -------------------------
# Source-side observation of a single play
# -------------------------
@dataclass(frozen=True)
class PlayRecord:
    artist: str
    title: str
    album: str | None = None
    played_at: int | None = None  # unix seconds; None while "now playing"

    @property
    def track_id(self) -> str:
        return "\x1f".join((_norm(self.artist), _norm(self.title), _norm(self.album)))

    @property
    def now_playing(self) -> bool:
        return self.played_at is None


@dataclass(frozen=True)
class ScrobbleEvent:
    track_id: str
    artist: str
    title: str
    album: str | None
    played_at: int
    scrobbled_at: float

    @classmethod
    def from_play(cls, play: PlayRecord, scrobbled_at: float) -> "ScrobbleEvent":
        return cls(
            track_id=play.track_id,
            artist=play.artist,
            title=play.title,
            album=play.album,
            played_at=int(play.played_at),
            scrobbled_at=scrobbled_at,
        )


@dataclass(frozen=True)
class SessionError:
    kind: ErrorKind
    message: str
    occurred_at: float
    fatal: bool = False
