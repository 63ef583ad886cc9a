#!/usr/bin/env python3
"""Bangumi -> Komga metadata sync job.

Architecture:
- Link phase: for every Komga series that has neither a Bangumi link nor the
  processed tag, search Bangumi by series name and attach a "Bangumi" link
  pointing at the first match.
- Enrich phase: for every linked series that is not yet processed, fetch the
  Bangumi subject, map it onto Komga series metadata (status, summary,
  publisher, tags, alternate titles), write it back and replace the cover.

Each phase runs every eligible series as its own task behind a small
semaphore and waits for all of them before moving on. Nothing is persisted
locally: the processed tag written into Komga is what keeps later runs from
repeating work.
"""

from __future__ import annotations

import argparse
import asyncio
import copy
import json
import logging
import mimetypes
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union
from urllib.parse import quote, urlsplit

import requests
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text


LOGGER = logging.getLogger("bgm-komga")


DEFAULT_CONFIG: Dict[str, Any] = {
    "komga": {
        "base_url": "",
        "username": "",
        "password": "",
        "libraries": [],
        "page_size": 500,
        "timeout_seconds": 30,
    },
    "bangumi": {
        "base_url": "https://api.bgm.tv",
        "access_token": "",
        "subject_type": 1,
        "user_agent": "bgm-komga/0.1.0",
        "timeout_seconds": 20,
        "image_timeout_seconds": 60,
    },
    "runtime": {
        "link_concurrency": 2,
        "enrich_concurrency": 3,
        "log_file_path": "logs/bgm_komga.log",
        "log_file_max_bytes": 10485760,
        "log_file_backup_count": 5,
        "log_level": "INFO",
        "console_mode": "dashboard",
        "debug_raw_console_logs": False,
        "dashboard_event_lines": 8,
        "dashboard_event_dedupe_window_seconds": 30,
        "dashboard_event_max_message_length": 160,
    },
}

# Flat keys of the original config.json layout -> (section, key).
LEGACY_CONFIG_KEYS: Dict[str, Tuple[str, str]] = {
    "komga_url": ("komga", "base_url"),
    "komga_username": ("komga", "username"),
    "komga_password": ("komga", "password"),
    "libraries": ("komga", "libraries"),
    "bgm_key": ("bangumi", "access_token"),
}

SUPPORTED_CONSOLE_MODES: Set[str] = {
    "dashboard",
    "raw",
}

PLACEHOLDER_MARKERS: Tuple[str, ...] = (
    "YOUR_",
    "YOUR-",
    "CHANGEME",
    "REPLACE_ME",
)

BANGUMI_LINK_LABEL = "Bangumi"
BANGUMI_SUBJECT_URL = "https://bgm.tv/subject/"
PROCESSED_TAG = "已挂削"
ENDED_INFOBOX_KEY = "结束"
PUBLISHER_INFOBOX_KEY = "出版社"

STATUS_ONGOING = "ONGOING"
STATUS_ENDED = "ENDED"

COVER_EXTENSIONS: Set[str] = {".jpg", ".jpeg", ".png", ".webp", ".gif"}


def now_epoch() -> int:
    return int(time.time())


def to_iso(ts: int) -> str:
    return time.strftime("%d-%m-%y %H:%M:%S", time.localtime(ts))


def is_network_unavailable_error(exc: requests.RequestException) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    marker_text = str(exc).lower()
    markers = (
        "nameresolutionerror",
        "failed to resolve",
        "temporary failure in name resolution",
        "network is unreachable",
        "no route to host",
        "connection refused",
    )
    if any(marker in marker_text for marker in markers):
        return True
    cause = getattr(exc, "__cause__", None)
    if isinstance(cause, (socket.gaierror, TimeoutError, OSError)):
        return True
    return False


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def upgrade_legacy_config(loaded: Dict[str, Any]) -> Dict[str, Any]:
    """Map the flat ``komga_url``/``bgm_key`` layout onto the nested one."""
    if not any(key in loaded for key in LEGACY_CONFIG_KEYS):
        return loaded

    upgraded = {k: v for k, v in loaded.items() if k not in LEGACY_CONFIG_KEYS}
    for legacy_key, (section, key) in LEGACY_CONFIG_KEYS.items():
        if legacy_key not in loaded:
            continue
        target = upgraded.setdefault(section, {})
        if not isinstance(target, dict):
            raise ValueError(f"Config section '{section}' must be an object")
        # Nested values win over legacy ones when both are present.
        target.setdefault(key, loaded[legacy_key])
    return upgraded


def _is_placeholder(value: str) -> bool:
    return any(marker in value.upper() for marker in PLACEHOLDER_MARKERS)


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found at {path}. Create one (for example from config.example.json)."
        )

    with path.open("r", encoding="utf-8") as handle:
        loaded = json.load(handle)

    if not isinstance(loaded, dict):
        raise ValueError("Config root must be a JSON object")

    config = merge_dict(DEFAULT_CONFIG, upgrade_legacy_config(loaded))

    missing_keys = []
    for key_name in ("base_url", "username", "password"):
        raw_value = str(config["komga"].get(key_name) or "").strip()
        if not raw_value or _is_placeholder(raw_value):
            missing_keys.append(f"komga.{key_name}")
            continue
        config["komga"][key_name] = raw_value
    if missing_keys:
        raise ValueError(
            "Missing required Komga settings in config: " + ", ".join(missing_keys)
        )
    config["komga"]["base_url"] = config["komga"]["base_url"].rstrip("/")

    libraries = config["komga"].get("libraries")
    if libraries is None:
        libraries = []
    if not isinstance(libraries, list) or not all(isinstance(x, str) for x in libraries):
        raise ValueError("komga.libraries must be a list of library names")
    config["komga"]["libraries"] = [name.strip() for name in libraries if name.strip()]

    token = str(config["bangumi"].get("access_token") or "").strip()
    if token and _is_placeholder(token):
        LOGGER.warning("bangumi.access_token looks like a placeholder; ignoring it.")
        token = ""
    config["bangumi"]["access_token"] = token
    config["bangumi"]["base_url"] = str(config["bangumi"]["base_url"]).rstrip("/")
    config["bangumi"]["subject_type"] = int(config["bangumi"]["subject_type"])
    config["bangumi"]["user_agent"] = (
        str(config["bangumi"].get("user_agent") or "").strip()
        or DEFAULT_CONFIG["bangumi"]["user_agent"]
    )

    # Guardrails for values that must be positive.
    config["komga"]["page_size"] = max(1, int(config["komga"]["page_size"]))
    for section, key in (
        ("komga", "timeout_seconds"),
        ("bangumi", "timeout_seconds"),
        ("bangumi", "image_timeout_seconds"),
    ):
        config[section][key] = max(1.0, float(config[section][key]))

    runtime = config["runtime"]
    runtime["link_concurrency"] = max(1, int(runtime["link_concurrency"]))
    runtime["enrich_concurrency"] = max(1, int(runtime["enrich_concurrency"]))
    log_file_path = str(runtime.get("log_file_path", "logs/bgm_komga.log")).strip()
    runtime["log_file_path"] = log_file_path or "logs/bgm_komga.log"
    runtime["log_file_max_bytes"] = max(1024, int(runtime["log_file_max_bytes"]))
    runtime["log_file_backup_count"] = max(0, int(runtime["log_file_backup_count"]))
    runtime["dashboard_event_lines"] = max(
        3, min(20, int(runtime["dashboard_event_lines"]))
    )
    runtime["dashboard_event_dedupe_window_seconds"] = max(
        1, int(runtime["dashboard_event_dedupe_window_seconds"])
    )
    runtime["dashboard_event_max_message_length"] = max(
        60, int(runtime["dashboard_event_max_message_length"])
    )
    runtime["debug_raw_console_logs"] = bool(runtime.get("debug_raw_console_logs", False))

    console_mode = str(runtime.get("console_mode", "dashboard")).strip().lower()
    if console_mode not in SUPPORTED_CONSOLE_MODES:
        raise ValueError(
            "Invalid runtime.console_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_CONSOLE_MODES))
        )
    runtime["console_mode"] = console_mode

    return config


class SyncError(Exception):
    """Base class for errors that only affect a single series."""


class TransportError(SyncError):
    """Network failure or non-2xx response."""


class DecodeError(SyncError):
    """Response body does not have the expected shape."""


class NotFoundError(SyncError):
    """Search or lookup produced no usable record."""


class RaceLostError(SyncError):
    """A Bangumi link showed up between reading and writing a series."""


class CatalogError(SyncError):
    """Komga could not produce the series list; the run cannot continue."""


@dataclass
class APIResponse:
    status: int
    headers: Dict[str, str]
    data: Any
    text: str
    content: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class Library:
    id: str
    name: str

    @classmethod
    def from_payload(cls, payload: Any) -> Library:
        if not isinstance(payload, dict) or "id" not in payload or "name" not in payload:
            raise DecodeError(f"Malformed library record: {str(payload)[:200]}")
        return cls(id=str(payload["id"]), name=str(payload["name"]))


@dataclass(frozen=True)
class Link:
    label: str
    url: str

    def to_payload(self) -> Dict[str, str]:
        return {"label": self.label, "url": self.url}


@dataclass(frozen=True)
class AlternateTitle:
    label: str
    title: str

    def to_payload(self) -> Dict[str, str]:
        return {"label": self.label, "title": self.title}


def _str_list(value: Any, what: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise DecodeError(f"{what} must be a list")
    return [str(item) for item in value]


def _pairs(value: Any, what: str, first: str, second: str) -> List[Tuple[str, str]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise DecodeError(f"{what} must be a list")
    pairs = []
    for item in value:
        if not isinstance(item, dict) or first not in item or second not in item:
            raise DecodeError(f"Malformed {what} entry: {str(item)[:120]}")
        pairs.append((str(item[first]), str(item[second])))
    return pairs


@dataclass
class SeriesMetadata:
    status: str = STATUS_ONGOING
    summary: str = ""
    publisher: str = ""
    tags: List[str] = field(default_factory=list)
    links: List[Link] = field(default_factory=list)
    alternate_titles: List[AlternateTitle] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> SeriesMetadata:
        if not isinstance(payload, dict):
            raise DecodeError("Series metadata must be an object")
        return cls(
            status=str(payload.get("status") or STATUS_ONGOING),
            summary=str(payload.get("summary") or ""),
            publisher=str(payload.get("publisher") or ""),
            tags=_str_list(payload.get("tags"), "tags"),
            links=[
                Link(label=label, url=url)
                for label, url in _pairs(payload.get("links"), "links", "label", "url")
            ],
            alternate_titles=[
                AlternateTitle(label=label, title=title)
                for label, title in _pairs(
                    payload.get("alternateTitles"), "alternateTitles", "label", "title"
                )
            ],
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "summary": self.summary,
            "publisher": self.publisher,
            "tags": list(self.tags),
            "links": [link.to_payload() for link in self.links],
            "alternateTitles": [title.to_payload() for title in self.alternate_titles],
        }


@dataclass
class Series:
    id: str
    name: str
    library_id: str
    metadata: SeriesMetadata

    @classmethod
    def from_payload(cls, payload: Any) -> Series:
        if not isinstance(payload, dict):
            raise DecodeError("Series record must be an object")
        for key in ("id", "name", "metadata"):
            if key not in payload:
                raise DecodeError(f"Series record is missing '{key}'")
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            library_id=str(payload.get("libraryId") or ""),
            metadata=SeriesMetadata.from_payload(payload["metadata"]),
        )


def find_bangumi_link(metadata: SeriesMetadata) -> Optional[Link]:
    for link in metadata.links:
        if link.label == BANGUMI_LINK_LABEL:
            return link
    return None


def has_bangumi_link(metadata: SeriesMetadata) -> bool:
    return find_bangumi_link(metadata) is not None


def is_processed(metadata: SeriesMetadata) -> bool:
    return PROCESSED_TAG in metadata.tags


def bangumi_subject_url(subject_id: str) -> str:
    return f"{BANGUMI_SUBJECT_URL}{subject_id}"


def subject_id_from_url(url: str) -> Optional[str]:
    segments = [part for part in urlsplit(url.strip()).path.split("/") if part]
    if not segments:
        return None
    return segments[-1]


def merge_links(primary: Sequence[Link], existing: Sequence[Link]) -> List[Link]:
    merged: List[Link] = []
    seen: Set[Link] = set()
    for link in [*primary, *existing]:
        if link in seen:
            continue
        seen.add(link)
        merged.append(link)
    return merged


@dataclass(frozen=True)
class InfoboxText:
    value: str


@dataclass(frozen=True)
class InfoboxList:
    items: Tuple[str, ...]


InfoboxValue = Union[InfoboxText, InfoboxList]


def resolve_infobox_value(value: InfoboxValue) -> str:
    if isinstance(value, InfoboxText):
        return value.value
    return " ".join(value.items)


def parse_infobox_value(raw: Any) -> InfoboxValue:
    if isinstance(raw, str):
        return InfoboxText(raw)
    if isinstance(raw, list):
        items = []
        for element in raw:
            if not isinstance(element, dict) or not isinstance(element.get("v"), str):
                raise DecodeError(f"Malformed infobox list element: {str(element)[:120]}")
            items.append(element["v"])
        return InfoboxList(tuple(items))
    raise DecodeError(f"Unsupported infobox value: {str(raw)[:120]}")


@dataclass(frozen=True)
class InfoboxRow:
    key: str
    value: InfoboxValue


@dataclass
class Subject:
    id: str
    summary: str
    tags: List[str]
    infobox: List[InfoboxRow]
    cover_url: str


@dataclass
class SearchCandidate:
    id: str
    name: str
    name_cn: str


@dataclass
class CoverImage:
    content: bytes
    filename: str
    mime_type: str


def parse_subject(payload: Any, subject_id: str = "") -> Subject:
    if not isinstance(payload, dict):
        raise DecodeError("Subject record must be an object")

    summary = payload.get("summary")
    if not isinstance(summary, str):
        raise DecodeError("Subject record is missing 'summary'")

    raw_tags = payload.get("tags")
    if not isinstance(raw_tags, list):
        raise DecodeError("Subject record is missing 'tags'")
    tags = []
    for tag in raw_tags:
        if not isinstance(tag, dict) or not isinstance(tag.get("name"), str):
            raise DecodeError(f"Malformed subject tag: {str(tag)[:120]}")
        tags.append(tag["name"])

    raw_infobox = payload.get("infobox")
    if not isinstance(raw_infobox, list):
        raise DecodeError("Subject record is missing 'infobox'")
    infobox = []
    for row in raw_infobox:
        if not isinstance(row, dict) or not isinstance(row.get("key"), str) or "value" not in row:
            raise DecodeError(f"Malformed infobox row: {str(row)[:120]}")
        infobox.append(InfoboxRow(key=row["key"], value=parse_infobox_value(row["value"])))

    images = payload.get("images")
    if not isinstance(images, dict) or not isinstance(images.get("large"), str):
        raise DecodeError("Subject record is missing 'images.large'")

    return Subject(
        id=str(payload.get("id") or subject_id),
        summary=summary,
        tags=tags,
        infobox=infobox,
        cover_url=images["large"],
    )


def transform_subject(subject: Subject) -> Tuple[SeriesMetadata, str]:
    metadata = SeriesMetadata()

    if any(row.key == ENDED_INFOBOX_KEY for row in subject.infobox):
        metadata.status = STATUS_ENDED

    if subject.summary:
        metadata.summary = subject.summary

    publisher_row = next(
        (row for row in subject.infobox if row.key == PUBLISHER_INFOBOX_KEY), None
    )
    if publisher_row is not None:
        metadata.publisher = resolve_infobox_value(publisher_row.value)

    # The processed tag is what gates every later run.
    metadata.tags = [*subject.tags, PROCESSED_TAG]

    metadata.alternate_titles = [
        AlternateTitle(label=row.key, title=resolve_infobox_value(row.value))
        for row in subject.infobox
    ]

    return metadata, subject.cover_url


def parse_search_candidates(payload: Any) -> List[SearchCandidate]:
    # Bangumi answers "no results" with an error object instead of an empty list.
    if isinstance(payload, dict) and payload.get("list") is None:
        return []
    if not isinstance(payload, dict) or not isinstance(payload.get("list"), list):
        raise DecodeError(f"Unexpected search response: {str(payload)[:200]}")

    candidates = []
    for item in payload["list"]:
        if not isinstance(item, dict) or item.get("id") is None:
            raise DecodeError(f"Malformed search result: {str(item)[:120]}")
        candidates.append(
            SearchCandidate(
                id=str(item["id"]),
                name=str(item.get("name") or ""),
                name_cn=str(item.get("name_cn") or ""),
            )
        )
    return candidates


def cover_file_details(url: str, content_type: str) -> Tuple[str, str]:
    suffix = Path(urlsplit(url).path).suffix.lower()
    if suffix not in COVER_EXTENSIONS:
        suffix = ".jpg"
    mime_type = content_type.split(";", 1)[0].strip().lower()
    if not mime_type.startswith("image/"):
        mime_type = mimetypes.guess_type(f"cover{suffix}")[0] or "image/jpeg"
    return f"cover{suffix}", mime_type


@dataclass
class DashboardEvent:
    timestamp: int
    level: str
    message: str
    count: int = 1
    signature: str = ""


class DashboardEventBuffer:
    def __init__(
        self,
        *,
        max_lines: int,
        dedupe_window_seconds: int,
        max_message_length: int,
    ):
        self.max_lines = max(1, int(max_lines))
        self.dedupe_window_seconds = max(1, int(dedupe_window_seconds))
        self.max_message_length = max(40, int(max_message_length))
        self._events: deque[DashboardEvent] = deque(maxlen=self.max_lines)
        self._lock = threading.Lock()

    def _normalize_message(self, message: str) -> str:
        collapsed = " ".join(str(message or "").split())
        if not collapsed:
            return "-"
        if len(collapsed) <= self.max_message_length:
            return collapsed
        cutoff = max(1, self.max_message_length - 3)
        return f"{collapsed[:cutoff]}..."

    def add(self, *, level: str, message: str, now_ts: Optional[int] = None) -> None:
        ts = now_epoch() if now_ts is None else int(now_ts)
        level_name = str(level or "INFO").upper()
        normalized = self._normalize_message(message)
        signature = f"{level_name}:{normalized}"

        with self._lock:
            if self._events:
                last = self._events[-1]
                if (
                    last.signature == signature
                    and ts - last.timestamp <= self.dedupe_window_seconds
                ):
                    last.count += 1
                    last.timestamp = ts
                    return
            self._events.append(
                DashboardEvent(
                    timestamp=ts,
                    level=level_name,
                    message=normalized,
                    signature=signature,
                )
            )

    def snapshot(self) -> List[DashboardEvent]:
        with self._lock:
            return list(self._events)


class LiveLogState:
    def __init__(self):
        self._live_active = False
        self._lock = threading.Lock()

    def set_live_active(self, active: bool) -> None:
        with self._lock:
            self._live_active = bool(active)

    def is_live_active(self) -> bool:
        with self._lock:
            return self._live_active


class LiveAwareConsoleHandler(logging.StreamHandler):
    def __init__(self, *, live_state: LiveLogState, allow_while_live: bool):
        super().__init__()
        self.live_state = live_state
        self.allow_while_live = bool(allow_while_live)

    def emit(self, record: logging.LogRecord) -> None:
        if self.live_state.is_live_active() and not self.allow_while_live:
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
            message = record.getMessage()
            if record.exc_info:
                exc_type = record.exc_info[0].__name__ if record.exc_info[0] else "Exception"
                exc_value = str(record.exc_info[1] or "").strip()
                if exc_value:
                    message = f"{message} ({exc_type}: {exc_value})"
                else:
                    message = f"{message} ({exc_type})"
            self.buffer.add(level=record.levelname, message=message)
        except Exception:
            self.handleError(record)


@dataclass
class LoggingRuntime:
    live_state: LiveLogState
    event_buffer: DashboardEventBuffer
    log_file_path: Path


class HTTPClient:
    """Single-attempt JSON/bytes client around ``requests``.

    Failures never raise: a transport error comes back as ``status=0`` and
    callers decide what a non-2xx status means for them.
    """

    def __init__(
        self,
        timeout_seconds: float,
        *,
        auth: Optional[Tuple[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.auth = auth
        self.headers = dict(headers or {})
        self._network_error_throttle_seconds = 20
        self._last_network_error_log_at: Dict[str, int] = {}

    def _should_log_network_error(self, key: str) -> bool:
        now_ts = now_epoch()
        last = self._last_network_error_log_at.get(key, 0)
        if now_ts - last >= self._network_error_throttle_seconds:
            self._last_network_error_log_at[key] = now_ts
            return True
        return False

    async def request(
        self,
        *,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
        expect_json: bool = True,
    ) -> APIResponse:
        merged_headers = {**self.headers, **(headers or {})}
        try:
            raw_resp = await asyncio.to_thread(
                requests.request,
                method,
                url,
                params=params,
                headers=merged_headers,
                json=json_body,
                files=files,
                data=data,
                auth=self.auth,
                timeout=timeout_seconds or self.timeout_seconds,
            )
        except requests.RequestException as exc:
            if is_network_unavailable_error(exc):
                throttle_key = f"{method}:{urlsplit(url).netloc}:{exc.__class__.__name__}"
                if self._should_log_network_error(throttle_key):
                    LOGGER.warning("Network unavailable for %s %s: %s", method, url, exc)
            else:
                LOGGER.warning("HTTP error calling %s %s: %s", method, url, exc)
            return APIResponse(status=0, headers={}, data=None, text=str(exc))

        normalized_headers = {
            str(k).lower(): str(v) for k, v in raw_resp.headers.items()
        }
        if not expect_json:
            return APIResponse(
                status=raw_resp.status_code,
                headers=normalized_headers,
                data=None,
                text="",
                content=raw_resp.content or b"",
            )

        payload: Any = None
        text = raw_resp.text or ""
        if text:
            try:
                payload = raw_resp.json()
            except ValueError:
                payload = None

        if raw_resp.status_code in (401, 403):
            throttle_key = f"auth:{method}:{urlsplit(url).netloc}:{raw_resp.status_code}"
            if self._should_log_network_error(throttle_key):
                LOGGER.warning(
                    "%s from %s %s. Check credentials.",
                    raw_resp.status_code,
                    method,
                    url,
                )

        return APIResponse(
            status=raw_resp.status_code,
            headers=normalized_headers,
            data=payload,
            text=text,
        )


def ensure_ok(response: APIResponse, what: str) -> APIResponse:
    if response.ok:
        return response
    compact = " ".join(response.text.split())[:200]
    raise TransportError(f"{what} failed ({response.status}): {compact or 'no body'}")


def ensure_json(response: APIResponse, what: str, expected: type) -> Any:
    if not isinstance(response.data, expected):
        raise DecodeError(f"{what} returned unexpected body: {response.text[:200]}")
    return response.data


class KomgaClient:
    def __init__(self, *, config: Dict[str, Any]):
        self.base_url = config["base_url"].rstrip("/")
        self.page_size = int(config.get("page_size", 500))
        self.http = HTTPClient(
            timeout_seconds=config["timeout_seconds"],
            auth=(config["username"], config["password"]),
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v1/{path.lstrip('/')}"

    async def list_libraries(self) -> List[Library]:
        response = ensure_ok(
            await self.http.request(method="GET", url=self._url("libraries")),
            "Listing Komga libraries",
        )
        payload = ensure_json(response, "Listing Komga libraries", list)
        return [Library.from_payload(item) for item in payload]

    async def list_series(self, library_ids: Optional[Sequence[str]] = None) -> List[Series]:
        """Walk every page of ``/series``, optionally limited to some libraries."""
        if library_ids is not None and not library_ids:
            return []

        series: List[Series] = []
        page = 0
        while True:
            params: Dict[str, Any] = {"page": page, "size": self.page_size}
            if library_ids:
                params["library_id"] = list(library_ids)
            response = ensure_ok(
                await self.http.request(method="GET", url=self._url("series"), params=params),
                "Listing Komga series",
            )
            payload = ensure_json(response, "Listing Komga series", dict)
            content = payload.get("content")
            if not isinstance(content, list):
                raise DecodeError("Komga series page is missing 'content'")

            series.extend(Series.from_payload(item) for item in content)
            if not content or payload.get("last", True):
                break
            page += 1
        return series

    async def get_series(self, series_id: str) -> Series:
        response = ensure_ok(
            await self.http.request(method="GET", url=self._url(f"series/{series_id}")),
            f"Reading series {series_id}",
        )
        return Series.from_payload(ensure_json(response, f"Reading series {series_id}", dict))

    async def patch_series_metadata(self, series_id: str, payload: Dict[str, Any]) -> None:
        ensure_ok(
            await self.http.request(
                method="PATCH",
                url=self._url(f"series/{series_id}/metadata"),
                json_body=payload,
            ),
            f"Updating metadata of series {series_id}",
        )

    async def list_covers(self, series_id: str) -> List[str]:
        response = ensure_ok(
            await self.http.request(
                method="GET", url=self._url(f"series/{series_id}/thumbnails")
            ),
            f"Listing covers of series {series_id}",
        )
        payload = ensure_json(response, f"Listing covers of series {series_id}", list)
        cover_ids = []
        for item in payload:
            if not isinstance(item, dict) or item.get("id") is None:
                raise DecodeError(f"Malformed thumbnail record: {str(item)[:120]}")
            cover_ids.append(str(item["id"]))
        return cover_ids

    async def delete_cover(self, series_id: str, cover_id: str) -> None:
        ensure_ok(
            await self.http.request(
                method="DELETE",
                url=self._url(f"series/{series_id}/thumbnails/{cover_id}"),
                expect_json=False,
            ),
            f"Deleting cover {cover_id} of series {series_id}",
        )

    async def upload_cover(
        self, series_id: str, image: bytes, filename: str, mime_type: str
    ) -> None:
        ensure_ok(
            await self.http.request(
                method="POST",
                url=self._url(f"series/{series_id}/thumbnails"),
                files={"file": (filename, image, mime_type)},
                data={"selected": "true"},
            ),
            f"Uploading cover of series {series_id}",
        )


class BangumiClient:
    def __init__(self, *, config: Dict[str, Any]):
        self.base_url = config["base_url"].rstrip("/")
        self.subject_type = int(config.get("subject_type", 1))
        self.user_agent = config["user_agent"]
        headers = {"User-Agent": self.user_agent}
        if config.get("access_token"):
            headers["Authorization"] = f"Bearer {config['access_token']}"
        self.http = HTTPClient(timeout_seconds=config["timeout_seconds"], headers=headers)
        # Image hosts get the user agent only, never the API token.
        self.image_http = HTTPClient(
            timeout_seconds=config.get("image_timeout_seconds", 60),
            headers={"User-Agent": self.user_agent},
        )

    async def search_subjects(self, name: str) -> List[SearchCandidate]:
        # A slash would split the path segment, and %2F is refused by some proxies.
        term = " ".join(name.replace("/", " ").split())
        keyword = quote(f'"{term}"', safe="")
        response = await self.http.request(
            method="GET",
            url=f"{self.base_url}/search/subject/{keyword}",
            params={"type": self.subject_type},
        )
        if response.status == 404:
            return []
        ensure_ok(response, f"Searching Bangumi for {name!r}")
        return parse_search_candidates(response.data)

    async def get_subject(self, subject_id: str) -> Subject:
        response = await self.http.request(
            method="GET", url=f"{self.base_url}/v0/subjects/{subject_id}"
        )
        if response.status == 404:
            raise NotFoundError(f"Bangumi subject {subject_id} does not exist")
        ensure_ok(response, f"Fetching Bangumi subject {subject_id}")
        return parse_subject(response.data, subject_id)

    async def download_image(self, url: str) -> CoverImage:
        response = await self.image_http.request(method="GET", url=url, expect_json=False)
        ensure_ok(response, f"Downloading cover {url}")
        if not response.content:
            raise DecodeError(f"Cover {url} is empty")
        filename, mime_type = cover_file_details(url, response.headers.get("content-type", ""))
        return CoverImage(content=response.content, filename=filename, mime_type=mime_type)


class Resolver:
    """Series name -> Bangumi subject id, first search hit wins."""

    def __init__(self, bangumi: BangumiClient):
        self.bangumi = bangumi

    async def resolve(self, name: str) -> Optional[str]:
        try:
            candidates = await self.bangumi.search_subjects(name)
            if not candidates:
                raise NotFoundError("no search results")
        except NotFoundError as exc:
            LOGGER.info("[Resolver] %s: %s", name, exc)
            return None
        except SyncError as exc:
            LOGGER.warning("[Resolver] %s: %s", name, exc)
            return None
        return candidates[0].id


class Enricher:
    def __init__(self, bangumi: BangumiClient):
        self.bangumi = bangumi

    async def enrich(self, subject_id: str) -> Optional[Tuple[SeriesMetadata, str]]:
        try:
            subject = await self.bangumi.get_subject(subject_id)
        except SyncError as exc:
            LOGGER.warning("[Enricher] subject %s: %s", subject_id, exc)
            return None
        return transform_subject(subject)


@dataclass
class PhaseStats:
    name: str
    total: int = 0
    done: int = 0
    dispatched: int = 0
    skipped: int = 0
    written: int = 0
    failed: int = 0
    current: str = ""
    started_at: int = 0
    finished_at: int = 0

    def record(self, outcome: str) -> None:
        # Every candidate advances progress exactly once.
        self.done += 1
        if outcome == "written":
            self.written += 1
        elif outcome == "skipped":
            self.skipped += 1
        else:
            self.failed += 1


class SyncDashboard:
    """In-process terminal dashboard rendered with rich."""

    PHASE_COL_WIDTH = 8
    BAR_WIDTH = 30
    EVENTS_LABEL_WIDTH = 24

    def __init__(
        self,
        *,
        event_buffer: DashboardEventBuffer,
        event_lines: int = 8,
        refresh_seconds: float = 0.5,
    ):
        self.event_buffer = event_buffer
        self.event_lines = max(3, int(event_lines))
        self.refresh_seconds = max(0.1, float(refresh_seconds))
        self.started_at = now_epoch()
        self.phases: List[PhaseStats] = []

    def track_phase(self, stats: PhaseStats) -> None:
        self.phases.append(stats)

    @property
    def phase_label(self) -> str:
        if not self.phases:
            return "Starting"
        latest = self.phases[-1]
        if latest.finished_at:
            return f"{latest.name} done"
        return latest.name

    @staticmethod
    def _render_bar(total: int, completed: int, width: int = BAR_WIDTH) -> Any:
        if total <= 0:
            return Text("-")
        safe_done = max(0, min(int(completed), int(total)))
        return ProgressBar(total=int(total), completed=safe_done, width=width)

    @staticmethod
    def _format_duration(seconds: int) -> str:
        s = max(0, int(seconds))
        hours, rem = divmod(s, 3600)
        minutes, secs = divmod(rem, 60)
        if hours > 0:
            return f"{hours:02d}:{minutes:02d}:{secs:02d}"
        return f"{minutes:02d}:{secs:02d}"

    def _render_phases_panel(self) -> Panel:
        table = Table(expand=True, box=None, padding=(0, 1))
        table.add_column("Phase", style="bold cyan", no_wrap=True, width=self.PHASE_COL_WIDTH)
        table.add_column("Progress", no_wrap=True, width=self.BAR_WIDTH)
        table.add_column("Done", justify="right", no_wrap=True)
        table.add_column("Written", justify="right", style="green", no_wrap=True)
        table.add_column("Skipped", justify="right", style="dim", no_wrap=True)
        table.add_column("Failed", justify="right", style="red", no_wrap=True)
        table.add_column("Current", overflow="ellipsis", no_wrap=True, ratio=1)

        if not self.phases:
            table.add_row("-", Text("-"), "-", "-", "-", "-", "Listing Komga series")
        for stats in self.phases:
            current = "done" if stats.finished_at else (stats.current or "-")
            table.add_row(
                stats.name,
                self._render_bar(stats.total, stats.done),
                f"{stats.done}/{stats.total}",
                str(stats.written),
                str(stats.skipped),
                str(stats.failed),
                Text(current),
            )
        return Panel(table, title="Phases", border_style="cyan", title_align="left")

    def _render_events_panel(self) -> Panel:
        table = Table.grid(expand=True, padding=(0, 0))
        table.add_column(
            "When",
            no_wrap=True,
            style="bold yellow",
            width=self.EVENTS_LABEL_WIDTH,
            min_width=self.EVENTS_LABEL_WIDTH,
            max_width=self.EVENTS_LABEL_WIDTH,
        )
        table.add_column("Event", style="white", no_wrap=True, overflow="crop", ratio=1)

        events = self.event_buffer.snapshot()
        rendered = []
        for entry in reversed(events[-self.event_lines :]):
            level = "WARN" if entry.level == "WARNING" else entry.level
            suffix = f" x{entry.count}" if entry.count > 1 else ""
            rendered.append((f"{to_iso(entry.timestamp)} {level}", f"{entry.message}{suffix}"))

        while len(rendered) < self.event_lines:
            rendered.append(("-", "-"))

        for when, message in rendered:
            # Series names may contain brackets; never parse them as markup.
            table.add_row(when, Text(message))

        return Panel(table, title="Events", border_style="yellow", title_align="left")

    def render(self) -> Group:
        uptime = self._format_duration(now_epoch() - self.started_at)
        header = Text(
            f"bgm-komga live status | uptime={uptime} | phase={self.phase_label}",
            style="bold",
        )
        return Group(header, self._render_phases_panel(), self._render_events_panel())

    async def run(self, stop_event: asyncio.Event) -> None:
        with Live(
            self.render(),
            auto_refresh=False,
            transient=False,
            screen=False,
        ) as live:
            while not stop_event.is_set():
                live.update(self.render(), refresh=True)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.refresh_seconds)
                except asyncio.TimeoutError:
                    pass
            live.update(self.render(), refresh=True)


class SyncOrchestrator:
    """Runs the link phase, then the enrich phase, over the selected series."""

    def __init__(
        self,
        *,
        config: Dict[str, Any],
        komga: KomgaClient,
        bangumi: BangumiClient,
        status: Optional[SyncDashboard] = None,
    ):
        self.komga = komga
        self.bangumi = bangumi
        self.resolver = Resolver(bangumi)
        self.enricher = Enricher(bangumi)
        self.status = status
        self.library_names: List[str] = list(config["komga"].get("libraries") or [])
        self.link_concurrency = max(1, int(config["runtime"].get("link_concurrency", 2)))
        self.enrich_concurrency = max(1, int(config["runtime"].get("enrich_concurrency", 3)))

    async def run(self) -> Tuple[PhaseStats, PhaseStats]:
        link_stats = await self.link_phase()
        # Enrich eligibility depends on the links written above, so list again.
        enrich_stats = await self.enrich_phase()
        LOGGER.info(
            "Done: linked=%s enriched=%s failed=%s",
            link_stats.written,
            enrich_stats.written,
            link_stats.failed + enrich_stats.failed,
        )
        return link_stats, enrich_stats

    async def select_series(self) -> List[Series]:
        try:
            libraries = await self.komga.list_libraries()
            if not self.library_names:
                return await self.komga.list_series()

            wanted = set(self.library_names)
            library_ids = [library.id for library in libraries if library.name in wanted]
            unknown = wanted - {library.name for library in libraries}
            if unknown:
                LOGGER.warning(
                    "Configured libraries not found in Komga: %s",
                    ", ".join(sorted(unknown)),
                )
            return await self.komga.list_series(library_ids)
        except SyncError as exc:
            raise CatalogError(f"Could not list Komga series: {exc}") from exc

    async def link_phase(self) -> PhaseStats:
        return await self._run_phase(
            "Link",
            is_eligible=lambda s: not has_bangumi_link(s.metadata) and not is_processed(s.metadata),
            unit=self._link_one,
            limit=self.link_concurrency,
        )

    async def enrich_phase(self) -> PhaseStats:
        return await self._run_phase(
            "Enrich",
            is_eligible=lambda s: not is_processed(s.metadata) and has_bangumi_link(s.metadata),
            unit=self._enrich_one,
            limit=self.enrich_concurrency,
        )

    async def _run_phase(
        self,
        name: str,
        *,
        is_eligible: Callable[[Series], bool],
        unit: Callable[[Series], Awaitable[bool]],
        limit: int,
    ) -> PhaseStats:
        series_list = await self.select_series()
        stats = PhaseStats(name=name, total=len(series_list), started_at=now_epoch())
        if self.status is not None:
            self.status.track_phase(stats)
        LOGGER.info("[%s] %s series selected, concurrency=%s", name, stats.total, limit)

        gate = asyncio.Semaphore(limit)
        tasks = []
        for series in series_list:
            if not is_eligible(series):
                stats.record("skipped")
                continue
            stats.dispatched += 1
            tasks.append(
                asyncio.create_task(self._run_unit(stats, gate, series, unit))
            )

        await asyncio.gather(*tasks)
        stats.finished_at = now_epoch()
        LOGGER.info(
            "[%s] Finished: total=%s dispatched=%s written=%s skipped=%s failed=%s",
            name,
            stats.total,
            stats.dispatched,
            stats.written,
            stats.skipped,
            stats.failed,
        )
        return stats

    async def _run_unit(
        self,
        stats: PhaseStats,
        gate: asyncio.Semaphore,
        series: Series,
        unit: Callable[[Series], Awaitable[bool]],
    ) -> None:
        outcome = "failed"
        async with gate:
            stats.current = series.name
            try:
                outcome = "written" if await unit(series) else "failed"
            except RaceLostError as exc:
                outcome = "skipped"
                LOGGER.info("[%s] %s: %s", stats.name, series.name, exc)
            except SyncError as exc:
                LOGGER.warning("[%s] %s: %s", stats.name, series.name, exc)
            except Exception:
                LOGGER.exception("[%s] %s: unexpected failure", stats.name, series.name)
            finally:
                stats.record(outcome)

    async def _link_one(self, series: Series) -> bool:
        subject_id = await self.resolver.resolve(series.name)
        if subject_id is None:
            return False

        # Re-read right before writing; someone may have linked it meanwhile.
        current = await self.komga.get_series(series.id)
        if has_bangumi_link(current.metadata):
            raise RaceLostError("already linked, leaving existing Bangumi link")

        link = Link(label=BANGUMI_LINK_LABEL, url=bangumi_subject_url(subject_id))
        links = merge_links(current.metadata.links, [link])
        await self.komga.patch_series_metadata(
            series.id, {"links": [item.to_payload() for item in links]}
        )
        LOGGER.info("[Link] %s -> %s", series.name, link.url)
        return True

    async def _enrich_one(self, series: Series) -> bool:
        link = find_bangumi_link(series.metadata)
        subject_id = subject_id_from_url(link.url) if link is not None else None
        if not subject_id:
            raise DecodeError(f"cannot read a subject id from link {link!r}")

        enriched = await self.enricher.enrich(subject_id)
        if enriched is None:
            return False
        metadata, cover_url = enriched
        metadata.links = merge_links(metadata.links, series.metadata.links)

        await self.komga.patch_series_metadata(series.id, metadata.to_payload())
        LOGGER.info("[Enrich] %s <- subject %s", series.name, subject_id)

        if cover_url:
            try:
                # Download before deleting so a broken image keeps the old cover.
                cover = await self.bangumi.download_image(cover_url)
                await self._replace_cover(series.id, cover)
            except SyncError as exc:
                LOGGER.warning(
                    "[Enrich] %s: metadata written but cover update failed: %s",
                    series.name,
                    exc,
                )
        return True

    async def _replace_cover(self, series_id: str, cover: CoverImage) -> None:
        for cover_id in await self.komga.list_covers(series_id):
            await self.komga.delete_cover(series_id, cover_id)
        await self.komga.upload_cover(series_id, cover.content, cover.filename, cover.mime_type)


def configure_logging(config: Dict[str, Any]) -> LoggingRuntime:
    runtime_cfg = config.get("runtime", {})
    level_name = runtime_cfg.get("log_level", "INFO")
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    raw_log_path = Path(str(runtime_cfg.get("log_file_path", "logs/bgm_komga.log"))).expanduser()
    if not raw_log_path.is_absolute():
        raw_log_path = (Path.cwd() / raw_log_path).resolve()
    raw_log_path.parent.mkdir(parents=True, exist_ok=True)

    console_mode = str(runtime_cfg.get("console_mode", "dashboard")).strip().lower()
    debug_raw_console_logs = bool(runtime_cfg.get("debug_raw_console_logs", False))
    allow_raw_while_live = console_mode == "raw" or (
        level <= logging.DEBUG and debug_raw_console_logs
    )

    event_buffer = DashboardEventBuffer(
        max_lines=int(runtime_cfg.get("dashboard_event_lines", 8)),
        dedupe_window_seconds=int(runtime_cfg.get("dashboard_event_dedupe_window_seconds", 30)),
        max_message_length=int(runtime_cfg.get("dashboard_event_max_message_length", 160)),
    )
    live_state = LiveLogState()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    file_handler = RotatingFileHandler(
        raw_log_path,
        maxBytes=max(1024, int(runtime_cfg.get("log_file_max_bytes", 10485760))),
        backupCount=max(0, int(runtime_cfg.get("log_file_backup_count", 5))),
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = LiveAwareConsoleHandler(
        live_state=live_state,
        allow_while_live=allow_raw_while_live,
    )
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    event_handler = DashboardEventHandler(buffer=event_buffer, min_level=logging.WARNING)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(event_handler)

    logging.captureWarnings(True)

    # Keep third-party debug noise out of terminal output.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return LoggingRuntime(
        live_state=live_state,
        event_buffer=event_buffer,
        log_file_path=raw_log_path,
    )


async def run_sync(
    config: Dict[str, Any], *, status: Optional[SyncDashboard] = None
) -> Tuple[PhaseStats, PhaseStats]:
    orchestrator = SyncOrchestrator(
        config=config,
        komga=KomgaClient(config=config["komga"]),
        bangumi=BangumiClient(config=config["bangumi"]),
        status=status,
    )
    return await orchestrator.run()


async def run_app(config: Dict[str, Any], logging_runtime: LoggingRuntime) -> None:
    dashboard: Optional[SyncDashboard] = None
    if config["runtime"]["console_mode"] == "dashboard":
        dashboard = SyncDashboard(
            event_buffer=logging_runtime.event_buffer,
            event_lines=int(config["runtime"]["dashboard_event_lines"]),
        )

    LOGGER.info("Komga: %s", config["komga"]["base_url"])
    LOGGER.info(
        "Libraries: %s",
        ", ".join(config["komga"]["libraries"]) or "all",
    )
    LOGGER.info("Log file: %s", logging_runtime.log_file_path)

    stop_event = asyncio.Event()
    dashboard_task: Optional[asyncio.Task] = None
    if dashboard is not None:
        logging_runtime.live_state.set_live_active(True)
        dashboard_task = asyncio.create_task(dashboard.run(stop_event), name="dashboard")

    try:
        await run_sync(config, status=dashboard)
    finally:
        stop_event.set()
        if dashboard_task is not None:
            await asyncio.gather(dashboard_task, return_exceptions=True)
        logging_runtime.live_state.set_live_active(False)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Link Komga series to Bangumi subjects and import their metadata",
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to config JSON file (default: config.json)",
    )
    return parser


def main() -> int:
    parser = build_arg_parser()
    args = parser.parse_args()

    config_path = Path(args.config).expanduser().resolve()

    try:
        config = load_config(config_path)
    except Exception as exc:
        print(f"[FATAL] Could not load config: {exc}")
        return 1

    logging_runtime = configure_logging(config)

    try:
        asyncio.run(run_app(config, logging_runtime))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")
        return 0
    except Exception:
        LOGGER.exception("Fatal runtime error")
        return 1
    finally:
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
