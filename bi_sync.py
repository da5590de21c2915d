# /bi_sync.py
"""
Bi Sync (no UI)
- Keeps pairs of files or folders mirrored in both directions.
- Pairs come from ~/.bi-sync-files.json (or --config), each with its own ignore list.
  The bundled config.json fallback only exists in a source checkout.
- Newest modification time wins; an older side never overwrites a newer one.
- Source roots are watched from startup; destination roots only once the
  initial copy activity has drained (lock registry empty).
- Paths taking part in a copy stay locked for a short cooldown afterwards so
  the copy's own change events do not bounce back as a reverse sync.
- An hourly reconciliation pass re-syncs every pair in both directions to
  heal missed events and changes made while the process was down.
- Styled console output:
  - COPY green
  - SKIP orange
  - copy failures / errors red
  - file paths white
  - folder paths light brown
- Log file is always plain (no color codes).

Config
  {
    "syncs": [
      {"from": "./notes", "to": "/mnt/share/notes", "ignored": ["/.git"], "type": "dir"}
    ]
  }

Usage
  pip install watchdog colorama
  python bi_sync.py
  python bi_sync.py --config ./pairs.json --log-dir ./logs --reconcile-interval 600
"""

from __future__ import annotations

import argparse
import datetime as dt
import errno
import json
import logging
import os
import queue
import shutil
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from colorama import init as colorama_init
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

USER_CONFIG_PATH = Path.home() / ".bi-sync-files.json"
BUNDLED_CONFIG_PATH = Path(__file__).resolve().parent / "config.json"

# Tunables. The cooldown is a debounce heuristic: it assumes the destination's
# change notification for a finished copy arrives within this window.
LOCK_COOLDOWN_SEC = 1.0
WATCH_POLL_INTERVAL_SEC = 5.0
RECONCILE_INTERVAL_SEC = 60.0 * 60.0
LEG_B_DELAY_SEC = 5.0

KIND_FILE = "file"
KIND_DIR = "dir"
KINDS = (KIND_FILE, KIND_DIR)

FORWARD = "forward"
REVERSE = "reverse"

STATE_UNWATCHED = "unwatched"
STATE_SOURCE_WATCHING = "source_watching"
STATE_BOTH_WATCHING = "both_watching"

# read-only access, nothing to propagate
IGNORED_EVENT_TYPES = {"opened", "closed_no_write"}


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"
    CYAN = "\x1b[36m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "SKIP": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "TOUCH": Ansi.LIGHT_BROWN,
    "WATCH": Ansi.CYAN,
    "RECONCILE": Ansi.CYAN,
    "COPY_FAIL": Ansi.RED,
}


def _supports_color(stream) -> bool:
    isatty = getattr(stream, "isatty", None)
    if isatty is None:
        return False
    try:
        return bool(isatty())
    except ValueError:
        # closed stream
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        path_text = getattr(record, "path_text", None)
        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if getattr(record, "is_dir", False) else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "bi_sync") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()

    logger = logging.getLogger("bi_sync")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(logging.INFO)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else path.is_dir()
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class SyncPair:
    source: Path
    destination: Path
    ignored: tuple[str, ...] = ()
    kind: str = KIND_DIR


@dataclass(frozen=True)
class AppConfig:
    pairs: list[SyncPair]
    config_path: Path
    log_dir: Path
    lock_cooldown_sec: float
    watch_poll_interval_sec: float
    reconcile_interval_sec: float
    leg_b_delay_sec: float


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Keep pairs of files or folders mirrored in both directions.")
    p.add_argument("--config", type=str, default=None, help=f"Sync pair config (default: {USER_CONFIG_PATH}).")
    p.add_argument("--log-dir", type=str, default=".", help="Directory for log files.")
    p.add_argument(
        "--lock-cooldown",
        type=float,
        default=LOCK_COOLDOWN_SEC,
        help="Seconds a synced path stays locked after its copy finishes.",
    )
    p.add_argument(
        "--watch-poll-interval",
        type=float,
        default=WATCH_POLL_INTERVAL_SEC,
        help="Seconds between checks for quiescence before destination watching starts.",
    )
    p.add_argument(
        "--reconcile-interval",
        type=float,
        default=RECONCILE_INTERVAL_SEC,
        help="Seconds between full reconciliation passes.",
    )
    p.add_argument(
        "--leg-b-delay",
        type=float,
        default=LEG_B_DELAY_SEC,
        help="Seconds between the forward and reverse legs of a reconciliation pass.",
    )
    return p.parse_args(argv)


def find_config_file(explicit: Optional[Path], logger: Optional[logging.Logger] = None) -> Path:
    """
    --config, then ~/.bi-sync-files.json, then the config.json next to this
    module. That last one only exists in a source checkout; installed copies
    must use one of the first two.
    """
    if explicit is not None:
        return explicit
    if USER_CONFIG_PATH.exists():
        return USER_CONFIG_PATH
    if not BUNDLED_CONFIG_PATH.exists():
        raise ValueError(f"No config found. Create {USER_CONFIG_PATH} or pass --config.")
    if logger is not None:
        logger.warning("No %s found, using bundled %s", USER_CONFIG_PATH, BUNDLED_CONFIG_PATH)
    return BUNDLED_CONFIG_PATH


def load_config(path: Path) -> dict:
    if not path.exists():
        raise ValueError(f"Config file does not exist: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Config file is not valid JSON: {path} | {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Config file must hold a JSON object: {path}")
    return data


def parse_pairs(raw: dict, base: Optional[Path] = None) -> list[SyncPair]:
    """
    Turn the "syncs" list of a config document into resolved SyncPairs.
    Entries keep their configured order.
    """
    syncs = raw.get("syncs")
    if not isinstance(syncs, list) or not syncs:
        raise ValueError('Config needs a non-empty "syncs" list.')

    pairs: list[SyncPair] = []
    for i, item in enumerate(syncs):
        if not isinstance(item, dict):
            raise ValueError(f"syncs[{i}] must be an object.")
        for key in ("from", "to"):
            if not isinstance(item.get(key), str) or not item[key].strip():
                raise ValueError(f'syncs[{i}] is missing "{key}".')

        ignored = item.get("ignored") or []
        if not isinstance(ignored, list) or not all(isinstance(x, str) for x in ignored):
            raise ValueError(f'syncs[{i}].ignored must be a list of strings.')
        # an empty pattern is a substring of every path
        ignored = [x for x in ignored if x]

        kind = item.get("type", KIND_DIR)
        if kind not in KINDS:
            raise ValueError(f'syncs[{i}].type must be one of {", ".join(KINDS)}, got {kind!r}.')

        pairs.append(
            SyncPair(
                source=resolve_path(item["from"], base),
                destination=resolve_path(item["to"], base),
                ignored=tuple(ignored),
                kind=kind,
            )
        )
    return validate_pairs(pairs)


def build_effective_config(args: argparse.Namespace, logger: Optional[logging.Logger] = None) -> AppConfig:
    config_path = find_config_file(Path(args.config).expanduser() if args.config else None, logger)
    pairs = parse_pairs(load_config(config_path))
    return AppConfig(
        pairs=pairs,
        config_path=config_path,
        log_dir=Path(args.log_dir).expanduser(),
        lock_cooldown_sec=max(0.0, float(args.lock_cooldown)),
        watch_poll_interval_sec=max(0.1, float(args.watch_poll_interval)),
        reconcile_interval_sec=max(1.0, float(args.reconcile_interval)),
        leg_b_delay_sec=max(0.0, float(args.leg_b_delay)),
    )


# -------------------------
# Path resolution
# -------------------------

def resolve_path(raw: str, base: Optional[Path] = None) -> Path:
    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = (base or Path.cwd()) / p
    return p.resolve()


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def validate_pairs(pairs: list[SyncPair]) -> list[SyncPair]:
    for pair in pairs:
        if pair.source == pair.destination:
            raise ValueError(f"Source and destination must be different: {pair.source}")
        if _is_subpath(pair.destination, pair.source):
            raise ValueError(f"Destination must NOT be inside source (would cause loops): {pair.destination}")
        if _is_subpath(pair.source, pair.destination):
            raise ValueError(f"Source must NOT be inside destination (would cause loops): {pair.source}")
    return pairs


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def materialize(path: Path, kind: str) -> None:
    """Create an empty directory or empty file at path when nothing is there."""
    if kind == KIND_DIR:
        path.mkdir(parents=True, exist_ok=True)
    else:
        ensure_parent(path)
        path.touch(exist_ok=True)


def prepare_pairs(pairs: Iterable[SyncPair], logger: logging.Logger) -> None:
    for pair in pairs:
        for path in (pair.source, pair.destination):
            if path.exists():
                continue
            try:
                materialize(path, pair.kind)
                action = "MKDIR" if pair.kind == KIND_DIR else "TOUCH"
                log_action(logger, action, f"(startup) {path}", path=path, is_dir=pair.kind == KIND_DIR)
            except OSError as e:
                log_action(logger, "COPY_FAIL", f"could not create {path} | {e}", level=logging.ERROR)


# -------------------------
# Sync lock
# -------------------------

class SyncLock:
    """
    Registry of paths taking part in an in-flight (or just finished) copy.

    Both paths of a sync are acquired together or not at all. Release is
    deferred by cooldown_sec so the copy's own change events arrive while the
    paths are still held and get rejected instead of starting a reverse sync.
    """

    def __init__(self, cooldown_sec: float = LOCK_COOLDOWN_SEC):
        self.cooldown_sec = cooldown_sec
        self._held: set[str] = set()
        self._cond = threading.Condition()
        self._timers: set[threading.Timer] = set()

    def try_acquire(self, path_a: Path, path_b: Path) -> bool:
        keys = {str(path_a), str(path_b)}
        with self._cond:
            if keys & self._held:
                return False
            self._held |= keys
            return True

    def release(self, path_a: Path, path_b: Path) -> None:
        keys = {str(path_a), str(path_b)}
        if self.cooldown_sec <= 0:
            self._discard(keys)
            return

        timer = threading.Timer(self.cooldown_sec, self._expire, args=(keys,))
        timer.daemon = True
        with self._cond:
            self._timers.add(timer)
        timer.start()

    def _expire(self, keys: set[str]) -> None:
        with self._cond:
            self._timers = {t for t in self._timers if t.is_alive() and t is not threading.current_thread()}
        self._discard(keys)

    def _discard(self, keys: set[str]) -> None:
        with self._cond:
            self._held -= keys
            if not self._held:
                self._cond.notify_all()

    def is_held(self, path: Path) -> bool:
        with self._cond:
            return str(path) in self._held

    def is_empty(self) -> bool:
        with self._cond:
            return not self._held

    def held(self) -> set[str]:
        with self._cond:
            return set(self._held)

    def wait_until_empty(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._held, timeout=timeout)

    def cancel_pending(self) -> None:
        """Stop outstanding cooldown timers and drop every held path."""
        with self._cond:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        with self._cond:
            self._held.clear()
            self._cond.notify_all()


# -------------------------
# Ignore + copy helpers
# -------------------------

def should_include(candidate: Path, ignored: Iterable[str]) -> bool:
    # plain substring containment: "git" also excludes "digit.txt"
    text = str(candidate)
    for pattern in ignored:
        if pattern and pattern in text:
            return False
    return True


def copy_tree(src: Path, dst: Path, include: Callable[[Path], bool]) -> None:
    """
    Copy src onto dst recursively, overwriting existing entries.
    include() is asked for every entry, src itself first; a rejected
    directory skips its whole subtree. Timestamps are carried over.
    """
    if not include(src):
        return

    if src.is_dir():
        dst.mkdir(parents=True, exist_ok=True)
        for child in sorted(src.iterdir()):
            copy_tree(child, dst / child.name, include)
        shutil.copystat(src, dst)
        return

    ensure_parent(dst)
    shutil.copy2(src, dst)


def newest_mtime_ns(path: Path, ignored: Iterable[str] = ()) -> int:
    """
    Modification time of a file, or of a directory tree: the newest mtime of
    the directory itself and every included descendant.
    """
    ignored = tuple(ignored)
    newest = path.stat().st_mtime_ns
    if not path.is_dir():
        return newest

    stack = [path]
    while stack:
        current = stack.pop()
        with os.scandir(current) as it:
            for entry in it:
                if not should_include(Path(entry.path), ignored):
                    continue
                try:
                    newest = max(newest, entry.stat().st_mtime_ns)
                    if entry.is_dir(follow_symlinks=False):
                        stack.append(Path(entry.path))
                except FileNotFoundError:
                    # removed while walking
                    continue
    return newest


def _is_locked_error(exc: BaseException) -> bool:
    winerror = getattr(exc, "winerror", None)
    if winerror == 32:  # ERROR_SHARING_VIOLATION
        return True
    err = getattr(exc, "errno", None)
    return err in {errno.EACCES, errno.EPERM}


# -------------------------
# Sync engine
# -------------------------

class SyncEngine:
    def __init__(
        self,
        lock: SyncLock,
        logger: logging.Logger,
        copier: Callable[[Path, Path, Callable[[Path], bool]], None] = copy_tree,
    ):
        self.lock = lock
        self.logger = logger
        self.copier = copier

    def sync(self, src: Path, dst: Path, ignored: Iterable[str] = ()) -> bool:
        """
        Copy src over dst when dst is missing or src is strictly newer.

        Returns True when a copy ran (successfully or not). Never raises:
        missing sources, lock contention and copy failures end up in the log.
        """
        src, dst = Path(src), Path(dst)
        ignored = tuple(ignored)
        try:
            if not src.exists():
                log_action(self.logger, "SKIP", f"source missing: {src}", path=src, is_dir=False, level=logging.WARNING)
                return False

            dst_is_new = not dst.exists()
            if not dst_is_new and newest_mtime_ns(src, ignored) <= newest_mtime_ns(dst, ignored):
                return False
        except Exception as e:
            log_action(self.logger, "COPY_FAIL", f"stat failed {src} -> {dst} | {e}", level=logging.ERROR)
            return False

        if not self.lock.try_acquire(src, dst):
            self.logger.debug("busy, skipped %s -> %s", src, dst)
            return False

        try:
            self._copy(src, dst, ignored, dst_is_new)
        finally:
            self.lock.release(src, dst)
        return True

    def _copy(self, src: Path, dst: Path, ignored: tuple[str, ...], dst_is_new: bool) -> None:
        is_dir = src.is_dir()
        try:
            if dst_is_new:
                materialize(dst, KIND_DIR if is_dir else KIND_FILE)
                log_action(self.logger, "MKDIR" if is_dir else "TOUCH", f"(new destination) {dst}", path=dst, is_dir=is_dir)

            self.copier(src, dst, lambda candidate: should_include(candidate, ignored))
            log_action(self.logger, "COPY", f"{src} -> {dst}", path=dst, is_dir=is_dir)
        except Exception as e:
            level = logging.WARNING if _is_locked_error(e) else logging.ERROR
            log_action(self.logger, "COPY_FAIL", f"{src} -> {dst} | {e}", path=dst, is_dir=is_dir, level=level)


# -------------------------
# Watching
# -------------------------

@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    path: str
    origin: Path
    target: Path
    ignored: tuple[str, ...] = ()
    direction: str = FORWARD


class WatchSubscription(FileSystemEventHandler):
    """Feeds filesystem events under one root into the coordinator queue."""

    def __init__(
        self,
        root: Path,
        target: Path,
        ignored: tuple[str, ...],
        direction: str,
        events: "queue.Queue[Optional[ChangeEvent]]",
        root_is_file: bool = False,
    ):
        super().__init__()
        self.root = root
        self.target = target
        self.ignored = ignored
        self.direction = direction
        self.events = events
        self.root_is_file = root_is_file

    @property
    def watch_path(self) -> Path:
        return self.root.parent if self.root_is_file else self.root

    def _relevant(self, path: str) -> bool:
        if not path:
            return False
        if self.root_is_file and Path(path) != self.root:
            return False
        return should_include(Path(path), self.ignored)

    def on_any_event(self, event):
        if event.event_type in IGNORED_EVENT_TYPES:
            return

        src_path = os.fsdecode(event.src_path)
        dest_path = os.fsdecode(getattr(event, "dest_path", "") or "")
        path = next((p for p in (src_path, dest_path) if self._relevant(p)), None)
        if path is None:
            return

        self.events.put(
            ChangeEvent(
                kind=event.event_type,
                path=path,
                origin=self.root,
                target=self.target,
                ignored=self.ignored,
                direction=self.direction,
            )
        )


class WatchCoordinator:
    """
    Owns the watch subscriptions of every pair.

    Per pair: unwatched -> source_watching (at start) -> both_watching (once
    the lock registry is first seen empty). Destination roots are not watched
    earlier because the initial copies would show up there as fresh changes.
    """

    def __init__(
        self,
        pairs: list[SyncPair],
        engine: SyncEngine,
        lock: SyncLock,
        logger: logging.Logger,
        poll_interval_sec: float = WATCH_POLL_INTERVAL_SEC,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        self.pairs = pairs
        self.engine = engine
        self.lock = lock
        self.logger = logger
        self.poll_interval_sec = poll_interval_sec
        self.observer = observer_factory()
        self.events: "queue.Queue[Optional[ChangeEvent]]" = queue.Queue()
        self.subscriptions: list[WatchSubscription] = []
        self.failed_roots: list[Path] = []
        self.destinations_active = threading.Event()
        self._states = [STATE_UNWATCHED] * len(pairs)
        self._guard = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def state(self, index: int) -> str:
        with self._guard:
            return self._states[index]

    def states(self) -> list[str]:
        with self._guard:
            return list(self._states)

    def _subscribe(self, root: Path, target: Path, pair: SyncPair, direction: str) -> Optional[WatchSubscription]:
        """
        Schedule one subscription. A root that cannot be watched (missing,
        unmounted share) is logged and recorded in failed_roots; the other
        pairs carry on. Reconciliation still covers that pair.
        """
        is_dir = pair.kind == KIND_DIR
        sub = WatchSubscription(
            root=root,
            target=target,
            ignored=pair.ignored,
            direction=direction,
            events=self.events,
            root_is_file=pair.kind == KIND_FILE,
        )
        try:
            self.observer.schedule(sub, str(sub.watch_path), recursive=not sub.root_is_file)
        except OSError as e:
            self.failed_roots.append(root)
            log_action(self.logger, "WATCH", f"({direction}) FAILED {root} | {e}", path=root, is_dir=is_dir, level=logging.ERROR)
            return None
        self.subscriptions.append(sub)
        log_action(self.logger, "WATCH", f"({direction}) {root}", path=root, is_dir=is_dir)
        return sub

    def subscribe_sources(self) -> None:
        with self._guard:
            for i, pair in enumerate(self.pairs):
                if self._states[i] != STATE_UNWATCHED:
                    continue
                self._subscribe(pair.source, pair.destination, pair, FORWARD)
                self._states[i] = STATE_SOURCE_WATCHING

    def activate_destinations(self) -> bool:
        """Start reverse watching on every pair. Only the first call does anything."""
        with self._guard:
            if self.destinations_active.is_set():
                return False
            for i, pair in enumerate(self.pairs):
                self._subscribe(pair.destination, pair.source, pair, REVERSE)
                self._states[i] = STATE_BOTH_WATCHING
            self.destinations_active.set()
        self.logger.info("Destination watching active for %d pair(s)", len(self.pairs))
        return True

    def enqueue_initial(self) -> None:
        for pair in self.pairs:
            self.events.put(
                ChangeEvent(
                    kind="initial",
                    path=str(pair.source),
                    origin=pair.source,
                    target=pair.destination,
                    ignored=pair.ignored,
                    direction=FORWARD,
                )
            )

    def handle(self, event: ChangeEvent) -> None:
        log_action(self.logger, "EVENT", f"{event.path} has been {event.kind} ({event.direction})")
        self.engine.sync(event.origin, event.target, event.ignored)

    def process_pending(self) -> int:
        handled = 0
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return handled
            if event is None:
                continue
            self.handle(event)
            handled += 1

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self.events.get(timeout=0.5)
            except queue.Empty:
                continue
            if event is None:
                break
            try:
                self.handle(event)
            except Exception as e:
                log_action(self.logger, "COPY_FAIL", f"dispatch error: {event.path} | {e}", level=logging.ERROR)

    def _activation_loop(self) -> None:
        # give the initial events a chance to take their locks first
        if self._stop_event.wait(self.poll_interval_sec):
            return
        while not self._stop_event.is_set():
            if self.lock.wait_until_empty(timeout=self.poll_interval_sec):
                try:
                    self.activate_destinations()
                except Exception as e:
                    log_action(self.logger, "WATCH", f"destination activation error: {e}", level=logging.ERROR)
                return

    def start(self) -> None:
        # a running observer starts each emitter as it is scheduled, so one
        # unreachable root fails on its own instead of failing observer.start()
        self.observer.start()
        self.subscribe_sources()
        self.enqueue_initial()
        for target, name in ((self._dispatch_loop, "bi-sync-dispatch"), (self._activation_loop, "bi-sync-activate")):
            t = threading.Thread(target=target, name=name, daemon=True)
            t.start()
            self._threads.append(t)
        self.logger.info("Watching %d pair(s)", len(self.pairs))

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        self.events.put(None)
        self.observer.stop()
        self.observer.join(timeout=timeout)
        for t in self._threads:
            t.join(timeout=timeout)


# -------------------------
# Reconciliation thread
# -------------------------

class ReconciliationScheduler(threading.Thread):
    def __init__(
        self,
        pairs: list[SyncPair],
        engine: SyncEngine,
        lock: SyncLock,
        logger: logging.Logger,
        stop_event: threading.Event,
        interval_sec: float = RECONCILE_INTERVAL_SEC,
        leg_b_delay_sec: float = LEG_B_DELAY_SEC,
    ):
        super().__init__(daemon=True, name="bi-sync-reconcile")
        self.pairs = pairs
        self.engine = engine
        self.lock = lock
        self.logger = logger
        self.stop_event = stop_event
        self.interval_sec = interval_sec
        self.leg_b_delay_sec = leg_b_delay_sec

    def run(self) -> None:
        self.logger.info("RECONCILE: started (interval=%.1fs)", self.interval_sec)
        next_due = time.monotonic() + self.interval_sec
        while not self.stop_event.wait(max(0.0, next_due - time.monotonic())):
            try:
                self.run_cycle()
            except Exception as e:
                log_action(self.logger, "COPY_FAIL", f"RECONCILE loop error: {e}", level=logging.ERROR)

            # fixed period; cycles that overran their slot are dropped, not queued
            next_due += self.interval_sec
            now = time.monotonic()
            while next_due <= now:
                next_due += self.interval_sec
        self.logger.info("RECONCILE: stopped")

    def run_leg_a(self) -> int:
        return sum(self.engine.sync(p.source, p.destination, p.ignored) for p in self.pairs)

    def run_leg_b(self) -> int:
        return sum(self.engine.sync(p.destination, p.source, p.ignored) for p in self.pairs)

    def _await_quiescence(self, deadline: float) -> bool:
        """Wait until the lock is empty or time.monotonic() passes deadline."""
        while not self.stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self.lock.is_empty()
            if self.lock.wait_until_empty(timeout=min(remaining, 0.5)):
                return True
        return False

    def run_cycle(self) -> bool:
        """One reconciliation pass. Returns True when the reverse leg ran."""
        if not self.lock.is_empty():
            log_action(self.logger, "RECONCILE", "skipped, syncs in flight", level=logging.INFO)
            return False

        started = time.monotonic()
        copied = self.run_leg_a()
        log_action(self.logger, "RECONCILE", f"forward leg done ({copied} copied)")

        # leg B is due leg_b_delay_sec after leg A started, and gives up when the next cycle is due
        if self.stop_event.wait(max(0.0, started + self.leg_b_delay_sec - time.monotonic())):
            return False
        if not self._await_quiescence(started + self.interval_sec):
            log_action(self.logger, "RECONCILE", "reverse leg skipped, syncs still in flight")
            return False

        copied = self.run_leg_b()
        log_action(self.logger, "RECONCILE", f"reverse leg done ({copied} copied)")
        return True


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logger = setup_logger(Path(args.log_dir).expanduser())

    try:
        cfg = build_effective_config(args, logger)
    except ValueError as e:
        logger.error("Config error: %s", e)
        return 2

    logger.info("Config: %s", cfg.config_path)
    for pair in cfg.pairs:
        logger.info("Pair (%s): %s <-> %s", pair.kind, pair.source, pair.destination)

    prepare_pairs(cfg.pairs, logger)

    lock = SyncLock(cooldown_sec=cfg.lock_cooldown_sec)
    engine = SyncEngine(lock, logger)
    coordinator = WatchCoordinator(cfg.pairs, engine, lock, logger, poll_interval_sec=cfg.watch_poll_interval_sec)

    stop_event = threading.Event()
    scheduler = ReconciliationScheduler(
        cfg.pairs,
        engine,
        lock,
        logger,
        stop_event,
        interval_sec=cfg.reconcile_interval_sec,
        leg_b_delay_sec=cfg.leg_b_delay_sec,
    )

    logger.info("Starting watcher... (Ctrl+C to stop)")
    coordinator.start()
    scheduler.start()

    try:
        while not stop_event.wait(0.5):
            pass
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        stop_event.set()
        coordinator.stop()
        scheduler.join(timeout=10)
        lock.cancel_pending()
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
