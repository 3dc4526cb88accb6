import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

import pylast

from errors import (
    LassoError, LastFMUnknownError, NetworkError, RateLimitedError,
    RequestTimeoutError, UnauthorizedError, UnknownUserError,
)

log = logging.getLogger("lastfm")

# Last.fm API error codes
_AUTH_CODES = {4, 9, 10, 14, 26}  # auth failed, invalid session, invalid key, token expired, suspended key
_RATE_LIMIT_CODES = {29}
_UNKNOWN_USER_CODES = {6}         # "User not found" comes back as invalid parameters
_NETWORK_CODES = {11, 16}         # service offline, temporarily unavailable


def build_network(api_key: str, api_secret: str, session_key: str | None = None,
                  username: str | None = None, password_md5: str | None = None) -> pylast.LastFMNetwork:
    """Create the shared pylast network; credentials stay opaque to the rest of the app."""
    if session_key:
        log.info("Using Last.fm session key auth")
        network = pylast.LastFMNetwork(
            api_key=api_key,
            api_secret=api_secret,
            session_key=session_key,
        )
    elif username and password_md5:
        log.info("Using Last.fm username + MD5 password auth")
        network = pylast.LastFMNetwork(
            api_key=api_key,
            api_secret=api_secret,
            username=username,
            password_hash=password_md5,
        )
    else:
        raise ValueError("Missing Last.fm credentials")
    # pylast throttles to at most 5 calls per second
    network.enable_rate_limit()
    return network


def _ws_code(e: pylast.WSError) -> int | None:
    try:
        return int(e.get_id())
    except (TypeError, ValueError):
        return None


def translate_error(e: Exception) -> LassoError:
    """Map a pylast failure onto the app's error taxonomy."""
    if isinstance(e, LassoError):
        return e
    if isinstance(e, pylast.WSError):
        code = _ws_code(e)
        msg = str(e)
        if code in _AUTH_CODES:
            return UnauthorizedError(msg)
        if code in _RATE_LIMIT_CODES:
            return RateLimitedError(msg)
        if code in _UNKNOWN_USER_CODES:
            return UnknownUserError(msg)
        if code in _NETWORK_CODES:
            return NetworkError(f"Last.fm unavailable ({code}): {msg}")
        return LastFMUnknownError(f"Last.fm API error {code}: {msg}")
    return NetworkError(str(e))


class TimedCaller:
    """Runs blocking pylast calls on a small pool so each one has a hard deadline."""

    def __init__(self, timeout: float, name: str):
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix=name)

    def call(self, fn, *args, **kwargs):
        future = self._pool.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            raise RequestTimeoutError(f"Last.fm call timed out after {self.timeout}s")
        except (pylast.WSError, pylast.NetworkError, pylast.MalformedResponseError) as e:
            raise translate_error(e) from e
        except LassoError:
            raise
        except Exception as e:
            raise NetworkError(str(e)) from e

    def close(self):
        self._pool.shutdown(wait=False, cancel_futures=True)


class LastFMClient:
    """Scrobble sink: update-now-playing + scrobbling for the authenticated follower."""

    def __init__(self, network: pylast.LastFMNetwork, timeout: float = 15.0):
        self.network = network
        self._caller = TimedCaller(timeout, "lastfm-sink")

    def update_now_playing(self, *, artist: str, title: str, album: str | None = None,
                           duration: int | None = None):
        """Push a Now Playing update. Non-fatal on failure."""
        try:
            self._caller.call(
                self.network.update_now_playing,
                artist=artist, title=title, album=album, duration=duration,
            )
        except UnauthorizedError as e:
            log.warning("update_now_playing rejected credentials: %s", e)
        except LassoError as e:
            # NOW PLAYING failures aren't critical; log at DEBUG
            log.debug("update_now_playing failed: %s", e)

    def submit_scrobble(self, *, artist: str, title: str, album: str | None, timestamp: int):
        """Submit a scrobble to Last.fm with a start timestamp (unix seconds).

        Raises UnauthorizedError, RateLimitedError, NetworkError (incl. RequestTimeoutError)
        or LastFMUnknownError.
        """
        try:
            self._caller.call(
                self.network.scrobble,
                artist=artist, title=title, album=album, timestamp=int(timestamp),
            )
        except UnknownUserError as e:
            # Code 6 on track.scrobble means bad parameters, not a missing user
            raise LastFMUnknownError(f"Last.fm rejected scrobble parameters: {e}") from e

    def close(self):
        self._caller.close()
