import os
import logging
from datetime import datetime

from engine import SessionEngine
from errors import LassoError
from lastfm_client import LastFMClient, build_network
from lastfm_source import LastFMSource
from notifier import from_env as alerter_from_env
from session import SessionSnapshot

# -------------------------
# Configuration via ENV VARS
# -------------------------
POLL_INTERVAL = max(5, int(os.getenv("POLL_INTERVAL", "30")))
REQUEST_TIMEOUT = max(1, int(os.getenv("REQUEST_TIMEOUT", "15")))
DEDUP_TOLERANCE = max(1, int(os.getenv("DEDUP_TOLERANCE", "60")))
DEDUP_CAPACITY = max(10, int(os.getenv("DEDUP_CAPACITY", "500")))
FEED_CAPACITY = max(1, int(os.getenv("FEED_CAPACITY", "50")))
FETCH_LIMIT = min(200, max(1, int(os.getenv("FETCH_LIMIT", "50"))))
MIRROR_NOW_PLAYING = os.getenv("MIRROR_NOW_PLAYING", "1").strip().lower() in ("1", "true", "yes")
TARGET_USERNAME = os.getenv("TARGET_USERNAME", "").strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LASTFM_API_KEY = os.getenv("LASTFM_API_KEY")
LASTFM_API_SECRET = os.getenv("LASTFM_API_SECRET")
LASTFM_SESSION_KEY = os.getenv("LASTFM_SESSION_KEY")
LASTFM_USERNAME = os.getenv("LASTFM_USERNAME")
LASTFM_PASSWORD_MD5 = os.getenv("LASTFM_PASSWORD_MD5")

# -------------------------
# Logging setup
# -------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    force=True,  # ensure our config is used even if libs pre-configure logging
)
log = logging.getLogger("lasso")

HELP = """Commands:
  start <username>   follow a Last.fm user
  pause | resume     suspend / continue relaying
  stop               end the session (asks for confirmation)
  retry              leave the error state and poll again
  poll               run one poll cycle now
  status             show session state and recent scrobbles
  quit               exit"""


def render(snap: SessionSnapshot) -> str:
    lines = [f"Status: {snap.state.value}"]
    if snap.target_username:
        lines[0] += f" | following {snap.target_username} | scrobbles: {snap.scrobble_count}"
    if snap.error:
        lines.append(f"Error ({snap.error.kind.value}): {snap.error.message}")
    if snap.feed_visible:
        lines.append("Recent scrobbles:")
        if not snap.feed:
            lines.append("  No scrobbles yet")
        for ev in snap.feed[:10]:
            when = datetime.fromtimestamp(ev.played_at).strftime("%H:%M")
            album = f" [{ev.album}]" if ev.album else ""
            lines.append(f"  {when}  {ev.artist} — {ev.title}{album}")
    return "\n".join(lines)


def handle(engine: SessionEngine, line: str) -> bool:
    """Run one console command. Returns False when the user wants to quit."""
    cmd, _, arg = line.strip().partition(" ")
    cmd = cmd.lower()
    if not cmd:
        return True
    if cmd in ("quit", "exit"):
        return False
    try:
        if cmd == "start":
            print(render(engine.start(arg)))
        elif cmd == "pause":
            print(render(engine.pause()))
        elif cmd == "resume":
            print(render(engine.resume()))
        elif cmd == "stop":
            target = engine.snapshot().target_username
            if input(f"Stop following {target}? [y/N] ").strip().lower() in ("y", "yes"):
                print(render(engine.stop()))
        elif cmd == "retry":
            print(render(engine.retry()))
        elif cmd == "poll":
            print(f"Relayed {engine.poll_once()} scrobble(s)")
        elif cmd == "status":
            print(render(engine.snapshot()))
        else:
            print(HELP)
    except LassoError as e:
        print(f"Error ({e.kind.value}): {e}")
    return True


def main():
    # Validate Last.fm configuration up-front for clear errors
    if not LASTFM_API_KEY or not LASTFM_API_SECRET:
        raise SystemExit("LASTFM_API_KEY and LASTFM_API_SECRET are required")

    if not (LASTFM_SESSION_KEY or (LASTFM_USERNAME and LASTFM_PASSWORD_MD5)):
        raise SystemExit("Provide LASTFM_SESSION_KEY or LASTFM_USERNAME + LASTFM_PASSWORD_MD5")

    network = build_network(
        api_key=LASTFM_API_KEY,
        api_secret=LASTFM_API_SECRET,
        session_key=LASTFM_SESSION_KEY,
        username=LASTFM_USERNAME,
        password_md5=LASTFM_PASSWORD_MD5,
    )
    source = LastFMSource(network, timeout=REQUEST_TIMEOUT, limit=FETCH_LIMIT)
    sink = LastFMClient(network, timeout=REQUEST_TIMEOUT)
    engine = SessionEngine(
        source, sink,
        poll_interval=POLL_INTERVAL,
        dedup_tolerance=DEDUP_TOLERANCE,
        dedup_capacity=DEDUP_CAPACITY,
        feed_capacity=FEED_CAPACITY,
        mirror_now_playing=MIRROR_NOW_PLAYING,
        alert=alerter_from_env(),
    )

    last_state = [None]

    def on_change(snap: SessionSnapshot):
        if snap.state is not last_state[0]:
            last_state[0] = snap.state
            log.info("Session state: %s", snap.state.value)

    engine.subscribe(on_change)
    log.info("Lasso ready. Poll interval: %ss, timeout: %ss, dedup tolerance: %ss",
             POLL_INTERVAL, REQUEST_TIMEOUT, DEDUP_TOLERANCE)

    try:
        if TARGET_USERNAME:
            handle(engine, f"start {TARGET_USERNAME}")
        print(HELP)
        while True:
            try:
                line = input("lasso> ")
            except EOFError:
                break
            if not handle(engine, line):
                break
    except KeyboardInterrupt:
        log.info("Shutting down…")
    finally:
        engine.close()
        source.close()
        sink.close()


if __name__ == "__main__":
    main()
