#!/usr/bin/env python3
"""Incremental e-hentai gallery mirror.

Architecture:
- Page walker: fetch the listing page adjacent to the stored cursor, detect ban
  notices and sit out the cooldown, extract (gid, token, posted) entries.
- Metadata batcher: resolve page entries through the gdata API in batches.
- Ingestor: upsert galleries, torrents and tags into SQLite.
- Sync controller: resume from the newest stored gallery and walk forward until
  the listing returns an empty page.

Every write is idempotent, so an interrupted run is repaired by the next one.
"""

from __future__ import annotations

import argparse
import asyncio
import copy
import datetime as dt
import json
import logging
import os
import re
import sqlite3
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import requests
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text


LOGGER = logging.getLogger("eh-sync")


DEFAULT_CONFIG: Dict[str, Any] = {
    "database": {
        "path": "eh_sync.sqlite3",
    },
    "sync": {
        "cooldown_seconds": 3,
        "retry_count": 3,
        "retry_delay_seconds": 1,
        "timeout_seconds": 15,
        "batch_size": 25,
        "ban_safety_margin_seconds": 10,
        "max_ban_cooldowns": 8,
    },
    "runtime": {
        "log_file_path": "logs/eh_sync.log",
        "log_file_max_bytes": 10485760,
        "log_file_backup_count": 5,
        "log_level": "INFO",
        "console_mode": "dashboard",
        "dashboard_event_lines": 6,
    },
}

ENV_OVERRIDES: Tuple[Tuple[str, Tuple[str, str]], ...] = (
    ("DB_PATH", ("database", "path")),
    ("SYNC_COOLDOWN", ("sync", "cooldown_seconds")),
    ("SYNC_RETRY_COUNT", ("sync", "retry_count")),
    ("LOG_LEVEL", ("runtime", "log_level")),
)

SITES: Dict[str, str] = {
    "e-hentai": "e-hentai.org",
    "exhentai": "exhentai.org",
}

SUPPORTED_CONSOLE_MODES = {"dashboard", "raw"}

API_URL = "https://api.e-hentai.org/api.php"
MAX_BATCH_SIZE = 25

REQUIRED_COOKIES: Tuple[str, ...] = ("igneous", "ipb_pass_hash", "ipb_member_id")
LOCAL_COOKIE_FILE = Path(".cookies")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/75.0.3770.142 Safari/537.36"
)

LISTING_QUERY = (
    "f_cats=0&advsearch=1&f_sname=on&f_stags=on&f_sh=&f_spf=&f_spt=&f_sfl=on&f_sfu=on"
)

LISTING_ENTRY_PATTERN = re.compile(
    r"gid=(\d+).*?t=([0-9a-f]{10}).*?>(\d{4}-\d{2}-\d{2}\s\d{2}:\d{2})<"
)

BAN_PATTERN = re.compile(
    r"""
    the\s+ban\s+expires\s+in
    [\s,]*(?:(?:and\s+)?(?P<days>\d+)\s*days?)?
    [\s,]*(?:(?:and\s+)?(?P<hours>\d+)\s*hours?)?
    [\s,]*(?:(?:and\s+)?(?P<minutes>\d+)\s*minutes?)?
    [\s,]*(?:(?:and\s+)?(?P<seconds>\d+)\s*seconds?)?
    """,
    re.IGNORECASE | re.VERBOSE,
)

UNIQUE_ERROR_CODES = frozenset(
    {
        sqlite3.SQLITE_CONSTRAINT_UNIQUE,
        sqlite3.SQLITE_CONSTRAINT_PRIMARYKEY,
    }
)

SleepFunc = Callable[[float], Awaitable[Any]]


class SyncError(Exception):
    """Base class for every error this tool raises on purpose."""


class ConfigError(SyncError):
    pass


class CookieError(SyncError):
    pass


class FetchError(SyncError):
    """A listing page could not be fetched within the retry budget."""


class BanLimitExceeded(FetchError):
    pass


class RecordError(SyncError):
    """A single gallery record cannot be stored (e.g. unparseable posted)."""


class StoreError(SyncError):
    pass


class UniqueViolation(StoreError):
    pass


class ConstraintViolation(StoreError):
    pass


class StoreUnavailable(StoreError):
    pass


def now_epoch() -> int:
    return int(time.time())


def to_iso(ts: int) -> str:
    return dt.datetime.fromtimestamp(ts, dt.timezone.utc).astimezone().strftime(
        "%d-%m-%y %H:%M:%S"
    )


def format_cutoff(ts: int) -> str:
    return dt.datetime.fromtimestamp(ts, dt.timezone.utc).strftime("%Y-%m-%d %H:%M") + " UTC+0"


def entry_date(posted: str) -> str:
    try:
        return dt.datetime.strptime(posted, "%Y-%m-%d %H:%M").strftime("%Y-%m-%d")
    except ValueError:
        return posted


def parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def lenient_int(value: Any) -> int:
    parsed = parse_int(value)
    return 0 if parsed is None else parsed


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    path: Optional[Path],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Build the runtime config: defaults <- config file <- environment.

    The config file is optional; callers decide whether a missing file is worth
    a warning.
    """
    loaded: Dict[str, Any] = {}
    if path is not None and path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

    config = merge_dict(DEFAULT_CONFIG, loaded)

    env = os.environ if environ is None else environ
    for env_name, (section, key) in ENV_OVERRIDES:
        raw_value = str(env.get(env_name, "")).strip()
        if raw_value:
            config[section][key] = raw_value

    try:
        sync_cfg = config["sync"]
        sync_cfg["cooldown_seconds"] = max(0.0, float(sync_cfg["cooldown_seconds"]))
        sync_cfg["retry_count"] = max(1, int(sync_cfg["retry_count"]))
        sync_cfg["retry_delay_seconds"] = max(0.0, float(sync_cfg["retry_delay_seconds"]))
        sync_cfg["timeout_seconds"] = max(1, int(sync_cfg["timeout_seconds"]))
        sync_cfg["batch_size"] = max(1, min(MAX_BATCH_SIZE, int(sync_cfg["batch_size"])))
        sync_cfg["ban_safety_margin_seconds"] = max(
            0, int(sync_cfg["ban_safety_margin_seconds"])
        )
        sync_cfg["max_ban_cooldowns"] = max(1, int(sync_cfg["max_ban_cooldowns"]))

        runtime_cfg = config["runtime"]
        runtime_cfg["log_file_max_bytes"] = max(1024, int(runtime_cfg["log_file_max_bytes"]))
        runtime_cfg["log_file_backup_count"] = max(0, int(runtime_cfg["log_file_backup_count"]))
        runtime_cfg["dashboard_event_lines"] = max(
            3, min(20, int(runtime_cfg["dashboard_event_lines"]))
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric config value: {exc}") from exc

    db_path = str(config["database"].get("path") or "").strip()
    if not db_path:
        raise ConfigError("database.path must not be empty")
    config["database"]["path"] = db_path

    log_file_path = str(config["runtime"].get("log_file_path") or "").strip()
    config["runtime"]["log_file_path"] = log_file_path or "logs/eh_sync.log"

    console_mode = str(config["runtime"].get("console_mode", "dashboard")).strip().lower()
    if console_mode not in SUPPORTED_CONSOLE_MODES:
        raise ConfigError(
            "Invalid runtime.console_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_CONSOLE_MODES))
        )
    config["runtime"]["console_mode"] = console_mode

    return config


def load_cookie_file(path: Path) -> str:
    """Render the three login cookies from a browser export as a Cookie header."""
    try:
        cookies = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CookieError(f"Cannot read cookie file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise CookieError(f"Cookie file {path} is not valid JSON: {exc}") from exc
    if not isinstance(cookies, list):
        raise CookieError(f"Cookie file {path} must contain a JSON array of cookies")

    values: Dict[str, str] = {}
    for cookie in cookies:
        if not isinstance(cookie, dict):
            continue
        name = str(cookie.get("name") or "")
        if name in REQUIRED_COOKIES:
            values[name] = str(cookie.get("value") or "")

    for name in REQUIRED_COOKIES:
        if not values.get(name):
            raise CookieError(f"required cookie {name} not found in {path}")
    return "; ".join(f"{name}={values[name]}" for name in REQUIRED_COOKIES)


def resolve_cookies(
    site: str,
    *,
    cookie_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    local_cookie_file: Path = LOCAL_COOKIE_FILE,
) -> str:
    if cookie_file is not None:
        cookies = load_cookie_file(cookie_file)
        LOGGER.info("Using %s with provided cookie file", site)
        return cookies

    env = os.environ if environ is None else environ
    env_cookie = str(env.get("COOKIE", "")).strip()
    if env_cookie:
        LOGGER.info("Using cookie from environment variable for %s", site)
        return env_cookie

    if site == "exhentai":
        raise CookieError(
            "For exhentai, --cookie-file must be provided or COOKIE env variable must be set"
        )

    try:
        local_cookie = local_cookie_file.read_text(encoding="utf-8").strip()
    except OSError:
        local_cookie = ""
    if local_cookie:
        LOGGER.info("Using %s with cookies from %s", site, local_cookie_file)
        return local_cookie

    LOGGER.warning(
        "No %s file found and COOKIE env variable not set, proceeding without cookies",
        local_cookie_file,
    )
    return ""


@dataclass
class APIResponse:
    status: int
    headers: Dict[str, str]
    data: Any
    text: str
    error: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass(frozen=True)
class PageEntry:
    gid: str
    token: str
    posted: str


@dataclass
class TorrentInfo:
    hash: str
    name: str = ""
    added: str = ""
    tsize: str = ""
    fsize: str = ""

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "TorrentInfo":
        return cls(
            hash=str(payload.get("hash") or "").strip(),
            name=str(payload.get("name") or ""),
            added=str(payload.get("added") or ""),
            tsize=str(payload.get("tsize") or ""),
            fsize=str(payload.get("fsize") or ""),
        )


@dataclass
class GalleryRecord:
    """One gmetadata item as returned by the API (text fields left unparsed)."""

    gid: int
    token: str
    posted: str
    archiver_key: str = ""
    title: str = ""
    title_jpn: str = ""
    category: str = ""
    thumb: str = ""
    uploader: str = ""
    filecount: str = ""
    filesize: int = 0
    expunged: bool = False
    rating: str = ""
    torrentcount: str = ""
    parent_gid: str = ""
    torrents: List[TorrentInfo] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "GalleryRecord":
        gid = parse_int(payload.get("gid"))
        if gid is None:
            raise ValueError(f"gmetadata item without a numeric gid: {payload.get('gid')!r}")

        raw_torrents = payload.get("torrents")
        torrents = [
            TorrentInfo.from_api(item)
            for item in (raw_torrents if isinstance(raw_torrents, list) else [])
            if isinstance(item, dict)
        ]
        raw_tags = payload.get("tags")
        tags = [
            str(tag).strip()
            for tag in (raw_tags if isinstance(raw_tags, list) else [])
            if str(tag).strip()
        ]
        return cls(
            gid=gid,
            token=str(payload.get("token") or ""),
            posted=str(payload.get("posted") or ""),
            archiver_key=str(payload.get("archiver_key") or ""),
            title=str(payload.get("title") or ""),
            title_jpn=str(payload.get("title_jpn") or ""),
            category=str(payload.get("category") or ""),
            thumb=str(payload.get("thumb") or ""),
            uploader=str(payload.get("uploader") or ""),
            filecount=str(payload.get("filecount") or ""),
            filesize=lenient_int(payload.get("filesize")),
            expunged=bool(payload.get("expunged")),
            rating=str(payload.get("rating") or ""),
            torrentcount=str(payload.get("torrentcount") or ""),
            parent_gid=str(payload.get("parent_gid") or ""),
            torrents=torrents,
            tags=tags,
        )


@dataclass
class MetadataResult:
    records: List[GalleryRecord] = field(default_factory=list)
    requested_batches: int = 0
    failed_batches: int = 0
    empty_batches: int = 0


@dataclass
class IngestResult:
    gid: int
    torrents_inserted: int = 0
    torrents_existing: int = 0
    torrent_errors: int = 0
    tags_linked: int = 0
    tag_errors: int = 0


@dataclass
class SyncSummary:
    start_cursor: str
    final_cursor: str
    pages: int = 0
    page_entries: int = 0
    api_records: int = 0
    ingested: int = 0
    failed_records: int = 0
    failed_batches: int = 0


@dataclass
class DashboardEvent:
    timestamp: int
    level: str
    message: str
    count: int = 1


class DashboardEventBuffer:
    """Ring buffer of recent warnings; repeats inside the window are folded."""

    def __init__(self, *, max_lines: int, dedupe_window_seconds: int = 30, max_message_length: int = 160):
        self.dedupe_window_seconds = max(1, int(dedupe_window_seconds))
        self.max_message_length = max(40, int(max_message_length))
        self._events: deque[DashboardEvent] = deque(maxlen=max(1, int(max_lines)))
        self._lock = threading.Lock()

    def add(self, *, level: str, message: str, now_ts: Optional[int] = None) -> None:
        ts = now_epoch() if now_ts is None else int(now_ts)
        level_name = str(level or "INFO").upper()
        text = " ".join(str(message or "").split()) or "-"
        if len(text) > self.max_message_length:
            text = text[: self.max_message_length - 3] + "..."

        with self._lock:
            last = self._events[-1] if self._events else None
            if (
                last is not None
                and last.level == level_name
                and last.message == text
                and ts - last.timestamp <= self.dedupe_window_seconds
            ):
                last.count += 1
                last.timestamp = ts
                return
            self._events.append(DashboardEvent(timestamp=ts, level=level_name, message=text))

    def snapshot(self) -> List[DashboardEvent]:
        with self._lock:
            return list(self._events)


class LiveAwareConsoleHandler(logging.StreamHandler):
    def __init__(self, *, live_active: threading.Event, allow_while_live: bool):
        super().__init__()
        self.live_active = live_active
        self.allow_while_live = bool(allow_while_live)

    def emit(self, record: logging.LogRecord) -> None:
        if self.live_active.is_set() and not self.allow_while_live:
            return
        clean_record = logging.makeLogRecord(record.__dict__.copy())
        # Tracebacks go to the log file only.
        clean_record.exc_info = None
        clean_record.exc_text = None
        clean_record.stack_info = None
        super().emit(clean_record)


class DashboardEventHandler(logging.Handler):
    def __init__(self, *, buffer: DashboardEventBuffer, min_level: int = logging.WARNING):
        super().__init__(level=min_level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.add(level=record.levelname, message=record.getMessage())
        except Exception:
            self.handleError(record)


@dataclass
class LoggingRuntime:
    live_active: threading.Event
    event_buffer: DashboardEventBuffer
    log_file_path: Path


def configure_logging(config: Dict[str, Any], *, debug: bool = False) -> LoggingRuntime:
    runtime_cfg = config.get("runtime", {})
    level_name = "DEBUG" if debug else runtime_cfg.get("log_level", "INFO")
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    log_path = Path(str(runtime_cfg.get("log_file_path", "logs/eh_sync.log"))).expanduser()
    if not log_path.is_absolute():
        log_path = (Path.cwd() / log_path).resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    event_buffer = DashboardEventBuffer(
        max_lines=int(runtime_cfg.get("dashboard_event_lines", 6)),
    )
    live_active = threading.Event()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=int(runtime_cfg.get("log_file_max_bytes", 10485760)),
        backupCount=int(runtime_cfg.get("log_file_backup_count", 5)),
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = LiveAwareConsoleHandler(
        live_active=live_active,
        allow_while_live=runtime_cfg.get("console_mode") == "raw" or level <= logging.DEBUG,
    )
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(DashboardEventHandler(buffer=event_buffer))

    for noisy in ("urllib3", "requests", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return LoggingRuntime(
        live_active=live_active,
        event_buffer=event_buffer,
        log_file_path=log_path,
    )


def classify_sqlite_error(exc: sqlite3.Error) -> StoreError:
    if isinstance(exc, sqlite3.IntegrityError):
        if getattr(exc, "sqlite_errorcode", None) in UNIQUE_ERROR_CODES:
            return UniqueViolation(str(exc))
        return ConstraintViolation(str(exc))
    return StoreUnavailable(str(exc))


class GalleryStore:
    """SQLite persistence for galleries, torrents and tags.

    Every write commits on its own. Integrity failures are re-raised as
    UniqueViolation or ConstraintViolation; anything else means the store is
    unusable and surfaces as StoreUnavailable.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = path
        try:
            self.conn = sqlite3.connect(path)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Cannot open database {path}: {exc}") from exc
        self.conn.row_factory = sqlite3.Row
        try:
            self._init_schema()
        except sqlite3.Error as exc:
            self.conn.close()
            raise StoreUnavailable(f"Cannot initialize database {path}: {exc}") from exc

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gallery (
                    gid INTEGER PRIMARY KEY,
                    token TEXT NOT NULL,
                    archiver_key TEXT,
                    title TEXT,
                    title_jpn TEXT,
                    category TEXT,
                    thumb TEXT,
                    uploader TEXT,
                    posted INTEGER NOT NULL,
                    filecount INTEGER NOT NULL DEFAULT 0,
                    filesize INTEGER NOT NULL DEFAULT 0,
                    expunged INTEGER NOT NULL DEFAULT 0,
                    rating TEXT,
                    torrentcount INTEGER NOT NULL DEFAULT 0,
                    root_gid INTEGER NOT NULL DEFAULT 0,
                    bytorrent INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_gallery_posted
                ON gallery (posted)
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS torrent (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    gid INTEGER NOT NULL,
                    name TEXT,
                    hash TEXT NOT NULL,
                    addedstr TEXT,
                    fsizestr TEXT,
                    uploader TEXT,
                    expunged INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (gid, hash)
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tag (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gid_tid (
                    gid INTEGER NOT NULL,
                    tid INTEGER NOT NULL,
                    PRIMARY KEY (gid, tid)
                )
                """
            )

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            with self.conn:
                return self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise classify_sqlite_error(exc) from exc

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise classify_sqlite_error(exc) from exc

    def last_gid(self) -> int:
        row = self._fetchone("SELECT gid FROM gallery ORDER BY gid DESC LIMIT 1")
        return int(row["gid"]) if row else 0

    def newest_posted(self) -> Optional[int]:
        row = self._fetchone("SELECT MAX(posted) AS posted FROM gallery")
        if row is None or row["posted"] is None:
            return None
        return int(row["posted"])

    def offset_gid(self, offset_hours: int) -> int:
        """Newest gid posted at least offset_hours before the newest stored post."""
        newest = self.newest_posted()
        if newest is None:
            return self.last_gid()
        threshold = newest - int(offset_hours) * 3600
        row = self._fetchone(
            """
            SELECT gid FROM gallery
            WHERE posted <= ?
            ORDER BY posted DESC, gid DESC
            LIMIT 1
            """,
            (threshold,),
        )
        if row is None:
            return self.last_gid()
        return int(row["gid"])

    def newest_gallery(self) -> Optional[sqlite3.Row]:
        return self._fetchone(
            "SELECT gid, posted FROM gallery ORDER BY posted DESC, gid DESC LIMIT 1"
        )

    def get_gallery(self, gid: int) -> Optional[sqlite3.Row]:
        return self._fetchone("SELECT * FROM gallery WHERE gid = ?", (gid,))

    def gallery_tags(self, gid: int) -> List[str]:
        try:
            rows = self.conn.execute(
                """
                SELECT tag.name FROM gid_tid
                JOIN tag ON tag.id = gid_tid.tid
                WHERE gid_tid.gid = ?
                ORDER BY tag.name
                """,
                (gid,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise classify_sqlite_error(exc) from exc
        return [str(row["name"]) for row in rows]

    def table_counts(self) -> Dict[str, int]:
        row = self._fetchone(
            """
            SELECT
                (SELECT COUNT(*) FROM gallery) AS galleries,
                (SELECT COUNT(*) FROM torrent) AS torrents,
                (SELECT COUNT(*) FROM tag) AS tags,
                (SELECT COUNT(*) FROM gid_tid) AS tag_links
            """
        )
        return {
            "galleries": int(row["galleries"]),
            "torrents": int(row["torrents"]),
            "tags": int(row["tags"]),
            "tag_links": int(row["tag_links"]),
        }

    def upsert_gallery(
        self,
        *,
        gid: int,
        token: str,
        archiver_key: str,
        title: str,
        title_jpn: str,
        category: str,
        thumb: str,
        uploader: str,
        posted: int,
        filecount: int,
        filesize: int,
        expunged: bool,
        rating: str,
        torrentcount: int,
        root_gid: int,
    ) -> None:
        self._execute(
            """
            INSERT INTO gallery(
                gid,
                token,
                archiver_key,
                title,
                title_jpn,
                category,
                thumb,
                uploader,
                posted,
                filecount,
                filesize,
                expunged,
                rating,
                torrentcount,
                root_gid,
                bytorrent
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            ON CONFLICT(gid) DO UPDATE SET
                token=excluded.token,
                archiver_key=excluded.archiver_key,
                title=excluded.title,
                title_jpn=excluded.title_jpn,
                category=excluded.category,
                thumb=excluded.thumb,
                uploader=excluded.uploader,
                posted=excluded.posted,
                filecount=excluded.filecount,
                filesize=excluded.filesize,
                expunged=excluded.expunged,
                rating=excluded.rating,
                torrentcount=excluded.torrentcount,
                root_gid=excluded.root_gid
            """,
            (
                gid,
                token,
                archiver_key,
                title,
                title_jpn,
                category,
                thumb,
                uploader,
                posted,
                filecount,
                filesize,
                1 if expunged else 0,
                rating,
                torrentcount,
                root_gid,
            ),
        )

    def insert_torrent(self, gid: int, torrent: TorrentInfo, uploader: str) -> bool:
        """Returns False when the torrent is already stored under this gallery."""
        try:
            self._execute(
                """
                INSERT INTO torrent (gid, name, hash, addedstr, fsizestr, uploader, expunged)
                VALUES (?, ?, ?, ?, ?, ?, 0)
                """,
                (gid, torrent.name, torrent.hash, torrent.added, torrent.fsize, uploader),
            )
        except UniqueViolation:
            return False
        return True

    def find_tag_id(self, name: str) -> Optional[int]:
        row = self._fetchone("SELECT id FROM tag WHERE name = ?", (name,))
        return int(row["id"]) if row else None

    def get_or_create_tag(self, name: str) -> int:
        tag_id = self.find_tag_id(name)
        if tag_id is not None:
            return tag_id
        try:
            cursor = self._execute("INSERT INTO tag (name) VALUES (?)", (name,))
        except UniqueViolation:
            # Someone else inserted the name between our lookup and insert.
            tag_id = self.find_tag_id(name)
            if tag_id is None:
                raise ConstraintViolation(f"tag {name!r} missing after duplicate insert")
            return tag_id
        return int(cursor.lastrowid)

    def link_tag(self, gid: int, tag_id: int) -> bool:
        try:
            self._execute("INSERT INTO gid_tid (gid, tid) VALUES (?, ?)", (gid, tag_id))
        except UniqueViolation:
            return False
        return True


class BanMonitor:
    """Detects the listing's ban notice and sits out the cooldown."""

    def __init__(
        self,
        *,
        safety_margin_seconds: int = 10,
        sleep: SleepFunc = asyncio.sleep,
        status: Optional["SyncDashboard"] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.safety_margin_seconds = max(0, int(safety_margin_seconds))
        self.sleep = sleep
        self.status = status
        self.log = logger or LOGGER

    def detect(self, body: str) -> Tuple[bool, int]:
        match = BAN_PATTERN.search(body or "")
        if match is None:
            return False, 0
        days, hours, minutes, seconds = (
            lenient_int(match.group(name)) for name in ("days", "hours", "minutes", "seconds")
        )
        total = days * 86400 + hours * 3600 + minutes * 60 + seconds
        if total <= 0:
            return False, 0
        return True, total + self.safety_margin_seconds

    async def cooldown(self, wait_seconds: int) -> None:
        total = max(0, int(wait_seconds))
        self.log.warning(
            "Ban cooldown: waiting %ss (until %s).",
            total,
            to_iso(now_epoch() + total),
        )
        if self.status is not None:
            self.status.begin_ban_cooldown(total)
        try:
            for elapsed in range(1, total + 1):
                await self.sleep(1)
                if self.status is not None:
                    self.status.update_ban_cooldown(elapsed)
        finally:
            if self.status is not None:
                self.status.end_ban_cooldown()
        self.log.info("Ban cooldown finished after %ss.", total)


class HTTPClient:
    """Blocking requests calls run in a worker thread, retried with a fixed delay.

    request() never raises for transport problems. After the last attempt it
    returns the final APIResponse with ``error`` set.
    """

    def __init__(
        self,
        *,
        timeout_seconds: int,
        max_retries: int,
        retry_delay_seconds: float = 1.0,
        sleep: SleepFunc = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self.sleep = sleep
        self.log = logger or LOGGER

    async def request(
        self,
        *,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        expect_json: bool = False,
    ) -> APIResponse:
        last_response = APIResponse(status=0, headers={}, data=None, text="", error="not attempted")

        for attempt in range(1, self.max_retries + 1):
            try:
                raw_resp = await asyncio.to_thread(
                    requests.request,
                    method,
                    url,
                    headers=headers,
                    json=json_body,
                    timeout=self.timeout_seconds,
                )
                text = raw_resp.text or ""
            except requests.RequestException as exc:
                last_response = APIResponse(
                    status=0, headers={}, data=None, text="", error=str(exc)
                )
            else:
                response = APIResponse(
                    status=raw_resp.status_code,
                    headers={str(k).lower(): str(v) for k, v in raw_resp.headers.items()},
                    data=None,
                    text=text,
                )
                if not response.ok:
                    response.error = f"HTTP status code: {response.status}"
                elif expect_json:
                    try:
                        response.data = json.loads(text)
                    except ValueError as exc:
                        response.error = f"invalid JSON response: {exc}"
                if not response.error:
                    return response
                last_response = response

            self.log.warning(
                "Error calling %s %s on attempt %s/%s: %s",
                method,
                url,
                attempt,
                self.max_retries,
                last_response.error,
            )
            if attempt < self.max_retries:
                await self.sleep(self.retry_delay_seconds)

        return last_response


def parse_listing(body: str) -> List[PageEntry]:
    """Extract (gid, token, posted) triples in document order, first gid wins."""
    entries: List[PageEntry] = []
    seen = set()
    for gid, token, posted in LISTING_ENTRY_PATTERN.findall(body or ""):
        if gid in seen:
            continue
        seen.add(gid)
        entries.append(PageEntry(gid=gid, token=token, posted=posted))
    return entries


class PageWalker:
    def __init__(
        self,
        *,
        host: str,
        cookies: str,
        http: HTTPClient,
        ban_monitor: BanMonitor,
        max_ban_cooldowns: int = 8,
        parser: Callable[[str], List[PageEntry]] = parse_listing,
        logger: Optional[logging.Logger] = None,
    ):
        self.host = host
        self.cookies = cookies
        self.http = http
        self.ban_monitor = ban_monitor
        self.max_ban_cooldowns = max(1, int(max_ban_cooldowns))
        self.parser = parser
        self.log = logger or LOGGER

    def listing_url(self, cursor: str) -> str:
        return f"https://{self.host}/?prev={cursor}&{LISTING_QUERY}"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*",
            "Accept-Language": "en-US;q=0.9,en;q=0.8",
            "DNT": "1",
            "Referer": f"https://{self.host}",
            "Upgrade-Insecure-Requests": "1",
            "User-Agent": USER_AGENT,
        }
        if self.cookies:
            headers["Cookie"] = self.cookies
        return headers

    async def fetch_page(self, cursor: str) -> List[PageEntry]:
        """Entries of the listing page after ``cursor``, newest first.

        Raises FetchError when the page cannot be fetched, or BanLimitExceeded
        when the ban notice keeps coming back.
        """
        url = self.listing_url(cursor)
        cooldowns = 0
        while True:
            response = await self.http.request(method="GET", url=url, headers=self._headers())
            if response.error:
                raise FetchError(
                    f"fetching {url} failed after {self.http.max_retries} attempts: {response.error}"
                )

            banned, wait_seconds = self.ban_monitor.detect(response.text)
            if not banned:
                break
            if cooldowns >= self.max_ban_cooldowns:
                raise BanLimitExceeded(
                    f"still banned after {cooldowns} cooldowns while fetching prev={cursor}"
                )
            cooldowns += 1
            self.log.info(
                "Detected ban message. Initiating cooldown %s/%s for %s seconds.",
                cooldowns,
                self.max_ban_cooldowns,
                wait_seconds,
            )
            await self.ban_monitor.cooldown(wait_seconds)

        entries = self.parser(response.text)
        self.log.debug("Parsed %s entries from prev=%s", len(entries), cursor)
        return entries


API_HEADERS: Dict[str, str] = {
    "Accept": "application/json;q=0.9,*/*",
    "Accept-Language": "en-US;q=0.9,en;q=0.8",
    "Content-Type": "application/json",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
    "User-Agent": USER_AGENT,
}

ChunkCallback = Callable[[List[GalleryRecord], int, int], None]


class MetadataBatcher:
    def __init__(
        self,
        *,
        http: HTTPClient,
        batch_size: int = MAX_BATCH_SIZE,
        api_url: str = API_URL,
        status: Optional["SyncDashboard"] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.http = http
        self.batch_size = max(1, min(MAX_BATCH_SIZE, int(batch_size)))
        self.api_url = api_url
        self.status = status
        self.log = logger or LOGGER

    def chunks(self, entries: Sequence[PageEntry]) -> List[Sequence[PageEntry]]:
        return [
            entries[i : i + self.batch_size] for i in range(0, len(entries), self.batch_size)
        ]

    def build_payload(self, chunk: Sequence[PageEntry]) -> Dict[str, Any]:
        gidlist: List[List[Any]] = []
        for entry in chunk:
            gid = parse_int(entry.gid)
            if gid is None:
                self.log.error("Error converting gid %r to int; skipping entry.", entry.gid)
                continue
            gidlist.append([gid, entry.token])
        return {"method": "gdata", "gidlist": gidlist, "namespace": 1}

    async def fetch_batch(
        self, chunk: Sequence[PageEntry], index: int, total: int
    ) -> Optional[List[GalleryRecord]]:
        """Returns None when the batch failed; an empty list when it had nothing."""
        payload = self.build_payload(chunk)
        if not payload["gidlist"]:
            self.log.warning("[API] Batch %s/%s has no valid gids; skipping.", index, total)
            return []

        response = await self.http.request(
            method="POST",
            url=self.api_url,
            headers=API_HEADERS,
            json_body=payload,
            expect_json=True,
        )
        if response.error:
            self.log.error(
                "[API] Batch %s/%s failed after %s attempts: %s",
                index,
                total,
                self.http.max_retries,
                response.error,
            )
            return None

        items = response.data.get("gmetadata") if isinstance(response.data, dict) else None
        if not isinstance(items, list):
            self.log.error(
                "[API] Batch %s/%s returned an unexpected payload: %s",
                index,
                total,
                response.text[:240],
            )
            return None

        records: List[GalleryRecord] = []
        for item in items:
            if not isinstance(item, dict):
                self.log.warning("[API] Ignoring non-object gmetadata item: %r", item)
                continue
            if item.get("error"):
                self.log.warning(
                    "[API] gid %s rejected by API: %s", item.get("gid"), item.get("error")
                )
                continue
            try:
                records.append(GalleryRecord.from_api(item))
            except ValueError as exc:
                self.log.warning("[API] Ignoring malformed gmetadata item: %s", exc)
        return records

    async def fetch_metadata(
        self,
        entries: Sequence[PageEntry],
        on_chunk: Optional[ChunkCallback] = None,
    ) -> MetadataResult:
        chunks = self.chunks(entries)
        result = MetadataResult(requested_batches=len(chunks))
        total = len(chunks)

        for index, chunk in enumerate(chunks, start=1):
            records = await self.fetch_batch(chunk, index, total)
            if records is None:
                result.failed_batches += 1
            elif not records:
                self.log.error("API response returned no entries for batch %s/%s", index, total)
                result.empty_batches += 1
            else:
                result.records.extend(records)
                if on_chunk is not None:
                    on_chunk(records, index, total)

            if self.status is not None:
                self.status.update_batches(
                    done=index, total=total, failed=result.failed_batches
                )

        return result


class Ingestor:
    """Writes one API record: gallery first, then its torrents and tags.

    Per-torrent and per-tag failures are logged and counted. A bad ``posted``
    value raises RecordError for the whole record. StoreUnavailable is never
    caught here.
    """

    def __init__(self, store: GalleryStore, logger: Optional[logging.Logger] = None):
        self.store = store
        self.log = logger or LOGGER

    def ingest(self, record: GalleryRecord) -> IngestResult:
        posted = parse_int(record.posted)
        if posted is None:
            raise RecordError(f"parsing posted time for gid {record.gid}: {record.posted!r}")

        self.store.upsert_gallery(
            gid=record.gid,
            token=record.token,
            archiver_key=record.archiver_key,
            title=record.title,
            title_jpn=record.title_jpn,
            category=record.category,
            thumb=record.thumb,
            uploader=record.uploader,
            posted=posted,
            filecount=lenient_int(record.filecount),
            filesize=record.filesize,
            expunged=record.expunged,
            rating=record.rating,
            torrentcount=lenient_int(record.torrentcount),
            root_gid=lenient_int(record.parent_gid),
        )
        self.log.debug("Upserted gallery gid %s", record.gid)

        result = IngestResult(gid=record.gid)
        for torrent in record.torrents:
            if not torrent.hash:
                self.log.error("Torrent %r for gid %s has no hash; skipping.", torrent.name, record.gid)
                result.torrent_errors += 1
                continue
            try:
                inserted = self.store.insert_torrent(record.gid, torrent, record.uploader)
            except ConstraintViolation as exc:
                self.log.error("Error saving torrent for gid %s: %s", record.gid, exc)
                result.torrent_errors += 1
                continue
            if inserted:
                result.torrents_inserted += 1
            else:
                result.torrents_existing += 1

        for tag_name in record.tags:
            try:
                tag_id = self.store.get_or_create_tag(tag_name)
                self.store.link_tag(record.gid, tag_id)
            except ConstraintViolation as exc:
                self.log.error("Error saving tag %r for gid %s: %s", tag_name, record.gid, exc)
                result.tag_errors += 1
                continue
            result.tags_linked += 1
        return result


class SyncController:
    """Resumable crawl loop: start cursor, then page -> metadata -> ingest."""

    def __init__(
        self,
        *,
        store: GalleryStore,
        walker: PageWalker,
        batcher: MetadataBatcher,
        ingestor: Ingestor,
        cooldown_seconds: float,
        offset_hours: int = 0,
        sleep: SleepFunc = asyncio.sleep,
        status: Optional["SyncDashboard"] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.walker = walker
        self.batcher = batcher
        self.ingestor = ingestor
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self.offset_hours = int(offset_hours or 0)
        self.sleep = sleep
        self.status = status
        self.log = logger or LOGGER
        self.summary: Optional[SyncSummary] = None

    def determine_start(self) -> str:
        if self.offset_hours > 0:
            gid = self.store.offset_gid(self.offset_hours)
            self.log.info("Using offset gid: %s (offset=%sh)", gid, self.offset_hours)
        else:
            gid = self.store.last_gid()
            self.log.info("Got last gid = %s", gid)
        return str(gid)

    def _ingest_records(self, records: List[GalleryRecord], summary: SyncSummary) -> None:
        for record in records:
            try:
                self.ingestor.ingest(record)
            except (RecordError, ConstraintViolation) as exc:
                summary.failed_records += 1
                self.log.error("Error saving gallery %s: %s", record.gid, exc)
                continue
            summary.ingested += 1

    async def run(self) -> SyncSummary:
        cursor = self.determine_start()
        summary = SyncSummary(start_cursor=cursor, final_cursor=cursor)
        self.summary = summary
        if self.status is not None:
            self.status.begin_sync(cursor)

        while True:
            if self.status is not None:
                self.status.set_phase("Cooldown")
            await self.sleep(self.cooldown_seconds)

            if self.status is not None:
                self.status.begin_page(cursor)
            self.log.debug("Fetching page from %s", self.walker.listing_url(cursor))
            entries = await self.walker.fetch_page(cursor)

            if not entries:
                self.log.info("No new entries found after prev=%s. Exiting loop.", cursor)
                break

            summary.pages += 1
            summary.page_entries += len(entries)
            if self.status is not None:
                self.status.set_phase("Metadata")

            metadata = await self.batcher.fetch_metadata(
                entries,
                on_chunk=lambda records, _index, _total: self._ingest_records(records, summary),
            )
            summary.api_records += len(metadata.records)
            summary.failed_batches += metadata.failed_batches

            cursor = entries[0].gid
            summary.final_cursor = cursor

            newest_date = entry_date(entries[0].posted)
            self.log.info(
                "Page %s: newest=%s entries=%s api=%s failed_batches=%s next prev=%s",
                summary.pages,
                newest_date,
                len(entries),
                len(metadata.records),
                metadata.failed_batches,
                cursor,
            )
            if self.status is not None:
                self.status.complete_page(
                    page_entries=len(entries),
                    api_entries=len(metadata.records),
                    newest_date=newest_date,
                    next_cursor=cursor,
                    summary=summary,
                )

        if self.status is not None:
            self.status.set_phase("Done")
        return summary


class SyncDashboard:
    """In-process terminal dashboard rendered with rich."""

    LABEL_WIDTH = 18
    BAR_WIDTH = 30

    def __init__(
        self,
        *,
        store: GalleryStore,
        site: str,
        event_buffer: DashboardEventBuffer,
        event_lines: int = 6,
        refresh_seconds: float = 0.5,
    ):
        self.store = store
        self.site = site
        self.event_buffer = event_buffer
        self.event_lines = max(3, int(event_lines))
        self.refresh_seconds = max(0.1, float(refresh_seconds))
        self.started_at = now_epoch()

        self.phase = "Idle"
        self.start_cursor = "-"
        self.cursor = "-"
        self.next_cursor = "-"
        self.page_started_at = 0

        self.last_page_entries = 0
        self.last_api_entries = 0
        self.newest_date = "-"
        self.batches_done = 0
        self.batches_total = 0
        self.batches_failed = 0

        self.totals = SyncSummary(start_cursor="-", final_cursor="-")

        self.ban_total = 0
        self.ban_done = 0
        self.ban_until = 0
        self.ban_count = 0

        self._last_db_refresh = 0.0
        self._db_refresh_interval = 2.0
        self.store_snapshot: Dict[str, int] = {"galleries": 0, "torrents": 0, "tags": 0, "tag_links": 0}
        self.newest_gid = 0

    def set_phase(self, phase: str) -> None:
        self.phase = phase

    def begin_sync(self, cursor: str) -> None:
        self.start_cursor = cursor
        self.cursor = cursor

    def begin_page(self, cursor: str) -> None:
        self.phase = "Fetching page"
        self.cursor = cursor
        self.page_started_at = now_epoch()
        self.batches_done = 0
        self.batches_total = 0
        self.batches_failed = 0

    def update_batches(self, *, done: int, total: int, failed: int) -> None:
        self.batches_done = max(0, int(done))
        self.batches_total = max(0, int(total))
        self.batches_failed = max(0, int(failed))

    def complete_page(
        self,
        *,
        page_entries: int,
        api_entries: int,
        newest_date: str,
        next_cursor: str,
        summary: SyncSummary,
    ) -> None:
        self.last_page_entries = page_entries
        self.last_api_entries = api_entries
        self.newest_date = newest_date
        self.next_cursor = next_cursor
        self.totals = copy.copy(summary)

    def begin_ban_cooldown(self, total_seconds: int) -> None:
        self.phase = "Ban cooldown"
        self.ban_total = max(0, int(total_seconds))
        self.ban_done = 0
        self.ban_until = now_epoch() + self.ban_total
        self.ban_count += 1

    def update_ban_cooldown(self, elapsed_seconds: int) -> None:
        self.ban_done = max(0, min(int(elapsed_seconds), self.ban_total))

    def end_ban_cooldown(self) -> None:
        self.phase = "Fetching page"
        self.ban_total = 0
        self.ban_done = 0
        self.ban_until = 0

    @staticmethod
    def _render_bar(total: int, completed: int, width: int = BAR_WIDTH) -> Any:
        if total <= 0:
            return Text("-")
        return ProgressBar(total=total, completed=max(0, min(completed, total)), width=width)

    @staticmethod
    def _format_duration(seconds: int) -> str:
        hours, rem = divmod(max(0, int(seconds)), 3600)
        minutes, secs = divmod(rem, 60)
        if hours > 0:
            return f"{hours:02d}:{minutes:02d}:{secs:02d}"
        return f"{minutes:02d}:{secs:02d}"

    def _grid(self, label_style: str) -> Table:
        table = Table.grid(expand=True, padding=(0, 1))
        table.add_column(no_wrap=True, style=label_style, width=self.LABEL_WIDTH)
        table.add_column(no_wrap=True, overflow="crop", ratio=1)
        return table

    def _refresh_from_db(self, force: bool = False) -> None:
        now_mono = time.monotonic()
        if not force and now_mono - self._last_db_refresh < self._db_refresh_interval:
            return
        self._last_db_refresh = now_mono
        self.store_snapshot = self.store.table_counts()
        self.newest_gid = self.store.last_gid()

    def _render_sync_panel(self) -> Panel:
        table = self._grid("bold cyan")
        table.add_row("Cursor", f"prev={self.cursor} next={self.next_cursor} start={self.start_cursor}")
        table.add_row("Newest entry", self.newest_date)
        table.add_row(
            "Last page",
            f"entries={self.last_page_entries} api={self.last_api_entries}",
        )
        batches = Table.grid(padding=(0, 1))
        batches.add_row(
            self._render_bar(self.batches_total, self.batches_done),
            f"{self.batches_done}/{self.batches_total} failed={self.batches_failed}",
        )
        table.add_row("Batches", batches)
        table.add_row(
            "Totals",
            (
                f"pages={self.totals.pages} entries={self.totals.page_entries} "
                f"api={self.totals.api_records} saved={self.totals.ingested} "
                f"failed={self.totals.failed_records} "
                f"failed_batches={self.totals.failed_batches}"
            ),
        )
        return Panel(table, title="Sync", border_style="cyan", title_align="left")

    def _render_ban_panel(self) -> Panel:
        table = self._grid("bold red")
        if self.ban_total > 0:
            bar = Table.grid(padding=(0, 1))
            bar.add_row(
                self._render_bar(self.ban_total, self.ban_done),
                f"{self.ban_done}/{self.ban_total}s until={to_iso(self.ban_until)}",
            )
            table.add_row("Ban cooldown", bar)
        else:
            table.add_row("Ban cooldown", "-")
        table.add_row("Cooldowns run", str(self.ban_count))
        return Panel(table, title="Ban", border_style="red", title_align="left")

    def _render_events_panel(self) -> Panel:
        table = self._grid("bold yellow")
        rendered = []
        for entry in reversed(self.event_buffer.snapshot()[-self.event_lines :]):
            level = "WARN" if entry.level == "WARNING" else entry.level
            suffix = f" x{entry.count}" if entry.count > 1 else ""
            rendered.append((f"{to_iso(entry.timestamp)} {level}", f"{entry.message}{suffix}"))
        while len(rendered) < self.event_lines:
            rendered.append(("-", "-"))
        for when, message in rendered:
            table.add_row(when, message)
        return Panel(table, title="Events", border_style="yellow", title_align="left")

    def _render_store_panel(self) -> Panel:
        table = self._grid("bold magenta")
        table.add_row(
            "Local DB",
            (
                f"galleries={self.store_snapshot['galleries']} "
                f"torrents={self.store_snapshot['torrents']} "
                f"tags={self.store_snapshot['tags']} "
                f"links={self.store_snapshot['tag_links']}"
            ),
        )
        table.add_row("Newest gid", str(self.newest_gid or "-"))
        return Panel(table, title="Store", border_style="magenta", title_align="left")

    def render(self) -> Group:
        uptime = self._format_duration(now_epoch() - self.started_at)
        header = Text(
            f"eh-sync {self.site} | uptime={uptime} | phase={self.phase}",
            style="bold",
        )
        return Group(
            header,
            self._render_sync_panel(),
            self._render_ban_panel(),
            self._render_events_panel(),
            self._render_store_panel(),
        )

    async def run(self, stop_event: asyncio.Event) -> None:
        self._refresh_from_db(force=True)
        with Live(
            self.render(),
            auto_refresh=False,
            transient=False,
            screen=False,
        ) as live:
            while not stop_event.is_set():
                self._refresh_from_db(force=False)
                live.update(self.render(), refresh=True)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.refresh_seconds)
                except asyncio.TimeoutError:
                    pass
            self._refresh_from_db(force=True)
            live.update(self.render(), refresh=True)


def build_report(store: GalleryStore) -> Dict[str, Any]:
    newest = store.newest_gallery()
    return {
        "total_entries": store.table_counts()["galleries"],
        "last_gid": int(newest["gid"]) if newest else None,
        "cutoff": format_cutoff(int(newest["posted"])) if newest else None,
    }


def render_report(report: Dict[str, Any], console: Optional[Console] = None) -> None:
    last_gid = report.get("last_gid")
    cutoff = report.get("cutoff") or "-"
    LOGGER.info(
        "FINAL REPORT: total entries=%s last posted ID=%s cutoff=%s",
        report.get("total_entries"),
        last_gid if last_gid is not None else "-",
        cutoff,
    )

    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold green", no_wrap=True)
    table.add_column(no_wrap=True)
    table.add_row("Total entries in database", str(report.get("total_entries", 0)))
    table.add_row("Last posted ID", str(last_gid) if last_gid is not None else "-")
    table.add_row("Cutoff time", cutoff)
    (console or Console()).print(
        Panel(table, title="FINAL REPORT", border_style="green", title_align="left")
    )


async def run_app(
    config: Dict[str, Any],
    logging_runtime: LoggingRuntime,
    *,
    site: str,
    offset_hours: int = 0,
    cookie_file: Optional[Path] = None,
) -> Dict[str, Any]:
    host = SITES[site]
    cookies = resolve_cookies(site, cookie_file=cookie_file)

    db_path = Path(config["database"]["path"]).expanduser().resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = GalleryStore(db_path)

    sync_cfg = config["sync"]
    stop_event = asyncio.Event()
    dashboard_task: Optional[asyncio.Task] = None

    try:
        dashboard = SyncDashboard(
            store=store,
            site=site,
            event_buffer=logging_runtime.event_buffer,
            event_lines=int(config["runtime"]["dashboard_event_lines"]),
        )
        http = HTTPClient(
            timeout_seconds=sync_cfg["timeout_seconds"],
            max_retries=sync_cfg["retry_count"],
            retry_delay_seconds=sync_cfg["retry_delay_seconds"],
        )
        walker = PageWalker(
            host=host,
            cookies=cookies,
            http=http,
            ban_monitor=BanMonitor(
                safety_margin_seconds=sync_cfg["ban_safety_margin_seconds"],
                status=dashboard,
            ),
            max_ban_cooldowns=sync_cfg["max_ban_cooldowns"],
        )
        controller = SyncController(
            store=store,
            walker=walker,
            batcher=MetadataBatcher(
                http=http,
                batch_size=sync_cfg["batch_size"],
                status=dashboard,
            ),
            ingestor=Ingestor(store),
            cooldown_seconds=sync_cfg["cooldown_seconds"],
            offset_hours=offset_hours,
            status=dashboard,
        )

        LOGGER.info("Database: %s", db_path)
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        LOGGER.info(
            "Starting sync: site=%s offset=%sh cooldown=%ss retry_count=%s batch_size=%s",
            site,
            offset_hours,
            sync_cfg["cooldown_seconds"],
            sync_cfg["retry_count"],
            sync_cfg["batch_size"],
        )

        if config["runtime"]["console_mode"] == "dashboard":
            logging_runtime.live_active.set()
            dashboard_task = asyncio.create_task(dashboard.run(stop_event), name="dashboard")

        try:
            summary = await controller.run()
        finally:
            stop_event.set()
            if dashboard_task is not None:
                await dashboard_task
            logging_runtime.live_active.clear()
            if controller.summary is not None:
                LOGGER.info(
                    "Sync progress: start=%s final=%s pages=%s entries=%s api=%s saved=%s failed=%s failed_batches=%s",
                    controller.summary.start_cursor,
                    controller.summary.final_cursor,
                    controller.summary.pages,
                    controller.summary.page_entries,
                    controller.summary.api_records,
                    controller.summary.ingested,
                    controller.summary.failed_records,
                    controller.summary.failed_batches,
                )

        LOGGER.info("Sync complete at prev=%s.", summary.final_cursor)
        return build_report(store)
    finally:
        store.close()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Incrementally mirror e-hentai/exhentai gallery metadata into SQLite",
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to config JSON file (default: config.json)",
    )
    parser.add_argument(
        "--site",
        choices=sorted(SITES),
        default="e-hentai",
        help="Target site: 'e-hentai' or 'exhentai'",
    )
    parser.add_argument(
        "--offset",
        type=int,
        default=0,
        help=(
            "Static offset (in hours) to adjust the initial fetch starting point. "
            "Sync restarts from the newest gallery posted at least this many hours "
            "before the newest stored gallery."
        ),
    )
    parser.add_argument(
        "--cookie-file",
        default=None,
        help="Path to cookie JSON file (required for exhentai unless COOKIE is set)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    config_path = Path(args.config).expanduser().resolve()

    try:
        config = load_config(config_path)
    except ConfigError as exc:
        print(f"[FATAL] Could not load config: {exc}")
        return 1

    logging_runtime = configure_logging(config, debug=args.debug)
    if not config_path.exists():
        LOGGER.warning(
            "Config file %s not found. Falling back to defaults and environment variables.",
            config_path,
        )

    cookie_file = Path(args.cookie_file).expanduser() if args.cookie_file else None

    try:
        report = asyncio.run(
            run_app(
                config,
                logging_runtime,
                site=args.site,
                offset_hours=args.offset,
                cookie_file=cookie_file,
            )
        )
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 0
    except SyncError as exc:
        LOGGER.error("Error: %s", exc)
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 1
    except Exception:
        LOGGER.exception("Fatal runtime error")
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 1

    render_report(report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
