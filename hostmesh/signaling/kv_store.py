"""Durable key-value store signaling channel and session announcements.

The durable store is the correctness backstop of the multiplexer: every
signaling message is appended to a per-session log that all peers poll at a
fixed interval. It is slower than the pub/sub bus but survives channel drops.

Two store backends are provided:

- ``FileKeyValueStore``: JSON files in a shared directory (one machine).
- ``HttpKeyValueStore``: a REST key-value service reached with ``requests``.

The same stores hold the session announcement record that participants
check before joining.
"""

import asyncio
import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import requests

from hostmesh.exceptions import TransportUnavailableError
from hostmesh.protocol import SignalingMessage, now_ms
from hostmesh.signaling.transport import Transport

logger = logging.getLogger(__name__)

SESSION_TTL = 24 * 60 * 60  # seconds an announcement stays valid
ANNOUNCE_INTERVAL = 10.0  # seconds between announcement refreshes
HTTP_TIMEOUT = 5.0  # seconds
TRIM_HEADER = b"#trimmed "

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


def signals_key(session_id: str) -> str:
    return f"signals-{session_id}"


def session_key(session_id: str) -> str:
    return f"live-session-{session_id}"


def leave_key(session_id: str) -> str:
    return f"live-leave-{session_id}"


def _is_expired(record, before_ms: int) -> bool:
    """Records without a timestamp are kept; unreadable ones are not."""
    if not isinstance(record, dict):
        return True
    timestamp = record.get("timestamp")
    if timestamp is None:
        return False
    try:
        return int(timestamp) < before_ms
    except (TypeError, ValueError):
        return True


class KeyValueStore(ABC):
    """Minimal durable store: append-only logs plus single values.

    Methods are blocking; async callers run them in a worker thread.
    """

    @abstractmethod
    def append(self, key: str, record: dict) -> None:
        """Append ``record`` to the log stored under ``key``."""

    @abstractmethod
    def read(self, key: str, cursor: int = 0) -> Tuple[List[dict], int]:
        """Return log records after ``cursor`` and the new cursor.

        Cursors are opaque to callers and stay valid across ``trim``.
        """

    @abstractmethod
    def trim(self, key: str, before_ms: int) -> None:
        """Drop the leading log records timestamped before ``before_ms``."""

    @abstractmethod
    def put(self, key: str, value: dict) -> None:
        """Store a single value."""

    @abstractmethod
    def get(self, key: str) -> Optional[dict]:
        """Return a single value, or None if absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a single value if present."""


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store, used for loopback sessions and tests."""

    def __init__(self):
        self._logs: Dict[str, List[dict]] = {}
        self._values: Dict[str, dict] = {}
        # key -> number of records dropped from the front of the log
        self._trimmed: Dict[str, int] = {}
        self._lock = threading.Lock()

    def append(self, key: str, record: dict) -> None:
        with self._lock:
            self._logs.setdefault(key, []).append(record)

    def read(self, key: str, cursor: int = 0) -> Tuple[List[dict], int]:
        with self._lock:
            log = self._logs.get(key, [])
            trimmed = self._trimmed.get(key, 0)
            offset = max(cursor - trimmed, 0)
            return list(log[offset:]), trimmed + len(log)

    def trim(self, key: str, before_ms: int) -> None:
        with self._lock:
            log = self._logs.get(key, [])
            drop = 0
            for record in log:
                if not _is_expired(record, before_ms):
                    break
                drop += 1
            if drop:
                del log[:drop]
                self._trimmed[key] = self._trimmed.get(key, 0) + drop

    def put(self, key: str, value: dict) -> None:
        with self._lock:
            self._values[key] = dict(value)

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            value = self._values.get(key)
            return dict(value) if value is not None else None

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)


class FileKeyValueStore(KeyValueStore):
    """Store backed by files in a directory shared by all local peers.

    Logs are JSON-lines files (``<key>.log``); values are JSON files
    (``<key>.json``) replaced atomically.

    Log cursors are byte offsets counted from the start of the log's whole
    history. A trimmed log starts with a ``#trimmed <bytes>`` line holding
    how many bytes were dropped, so readers seek straight to new records
    and cursors handed out before a trim keep pointing at the same record.
    """

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str, suffix: str) -> Path:
        return self.directory / f"{_SAFE_KEY.sub('_', key)}{suffix}"

    def append(self, key: str, record: dict) -> None:
        with open(self._path(key, ".log"), "a", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")

    @staticmethod
    def _read_header(f) -> Tuple[int, int]:
        """Return (trimmed bytes, header length) and leave ``f`` after the header."""
        line = f.readline()
        if line.startswith(TRIM_HEADER) and line.endswith(b"\n"):
            return int(line[len(TRIM_HEADER):]), len(line)
        f.seek(0)
        return 0, 0

    def read(self, key: str, cursor: int = 0) -> Tuple[List[dict], int]:
        path = self._path(key, ".log")
        if not path.exists():
            return [], 0
        with open(path, "rb") as f:
            trimmed, header_len = self._read_header(f)
            offset = max(cursor - trimmed, 0)
            f.seek(header_len + offset)
            data = f.read()

        # A partially written last line is picked up on the next read
        end = data.rfind(b"\n") + 1

        records = []
        for line in data[:end].splitlines():
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except ValueError:
                logger.warning(f"Skipping corrupt record in {path.name}")
        return records, trimmed + offset + end

    def trim(self, key: str, before_ms: int) -> None:
        path = self._path(key, ".log")
        if not path.exists():
            return
        with open(path, "rb") as f:
            trimmed, header_len = self._read_header(f)
            body = f.read()

        drop = 0
        dropped_records = 0
        for line in body.splitlines(keepends=True):
            if not line.endswith(b"\n"):
                break
            try:
                record = json.loads(line)
            except ValueError:
                record = None
            if not _is_expired(record, before_ms):
                break
            drop += len(line)
            dropped_records += 1
        if not drop:
            return

        tmp_path = path.with_suffix(".log.tmp")
        with open(tmp_path, "wb") as out:
            out.write(TRIM_HEADER + str(trimmed + drop).encode() + b"\n")
            out.write(body[drop:])
            # Pick up records appended while the tail was being copied
            with open(path, "rb") as f:
                f.seek(header_len + len(body))
                out.write(f.read())
        os.replace(tmp_path, path)
        logger.debug(f"Trimmed {dropped_records} expired records from {path.name}")

    def put(self, key: str, value: dict) -> None:
        path = self._path(key, ".json")
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f)
        os.replace(tmp_path, path)

    def get(self, key: str) -> Optional[dict]:
        path = self._path(key, ".json")
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning(f"Corrupt value file {path.name}")
            return None

    def delete(self, key: str) -> None:
        try:
            self._path(key, ".json").unlink()
        except FileNotFoundError:
            pass


class HttpKeyValueStore(KeyValueStore):
    """Store reached over a small REST API.

    Endpoints (relative to ``base_url``):
        POST   /kv/{key}/items          append a record
        GET    /kv/{key}/items?after=N  -> {"items": [...], "cursor": M}
        DELETE /kv/{key}/items?before=T  drop records older than T (ms)
        PUT    /kv/{key}                store a value
        GET    /kv/{key}                -> value, 404 if absent
        DELETE /kv/{key}
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = HTTP_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    def _url(self, key: str, suffix: str = "") -> str:
        return f"{self.base_url}/kv/{key}{suffix}"

    def append(self, key: str, record: dict) -> None:
        response = requests.post(
            self._url(key, "/items"), json=record, headers=self.headers, timeout=self.timeout
        )
        response.raise_for_status()

    def read(self, key: str, cursor: int = 0) -> Tuple[List[dict], int]:
        response = requests.get(
            self._url(key, "/items"),
            params={"after": cursor},
            headers=self.headers,
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        return data.get("items", []), int(data.get("cursor", cursor))

    def trim(self, key: str, before_ms: int) -> None:
        response = requests.delete(
            self._url(key, "/items"),
            params={"before": before_ms},
            headers=self.headers,
            timeout=self.timeout,
        )
        if response.status_code != 404:
            response.raise_for_status()

    def put(self, key: str, value: dict) -> None:
        response = requests.put(
            self._url(key), json=value, headers=self.headers, timeout=self.timeout
        )
        response.raise_for_status()

    def get(self, key: str) -> Optional[dict]:
        response = requests.get(self._url(key), headers=self.headers, timeout=self.timeout)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def delete(self, key: str) -> None:
        response = requests.delete(self._url(key), headers=self.headers, timeout=self.timeout)
        if response.status_code != 404:
            response.raise_for_status()


# Errors a store backend may raise while unreachable
STORE_ERRORS = (OSError, requests.RequestException, ValueError)


class KeyValueTransport(Transport):
    """Signaling channel that polls a durable store.

    Attributes:
        store: Backend holding the per-session signaling log.
        session_id: Session whose log is polled.
        poll_interval: Seconds between polls.
    """

    name = "kv-store"

    def __init__(self, store: KeyValueStore, session_id: str, poll_interval: float = 1.0):
        super().__init__()
        self.store = store
        self.session_id = session_id
        self.poll_interval = poll_interval
        self.cursor = 0
        self._poll_task: Optional[asyncio.Task] = None

    async def _start(self) -> None:
        self.available = True
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        key = signals_key(self.session_id)
        while True:
            try:
                records, self.cursor = await asyncio.to_thread(
                    self.store.read, key, self.cursor
                )
                if not self.available:
                    logger.info(f"[{self.name}] Store reachable again")
                self.available = True
                for record in records:
                    await self._dispatch_raw(record)
            except asyncio.CancelledError:
                break
            except STORE_ERRORS as e:
                if self.available:
                    logger.warning(f"[{self.name}] Poll failed: {e}")
                self.available = False
            await asyncio.sleep(self.poll_interval)

    async def send(self, message: SignalingMessage) -> None:
        try:
            await asyncio.to_thread(
                self.store.append, signals_key(self.session_id), message.to_dict()
            )
        except STORE_ERRORS as e:
            raise TransportUnavailableError(f"{self.name} append failed: {e}") from e

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        self.available = False


# =============================================================================
# Session announcements
# =============================================================================


def announce_session(store: KeyValueStore, session_id: str, host_id: Optional[str] = None) -> None:
    """Create or refresh the announcement record for a live session."""
    store.put(
        session_key(session_id),
        {"timestamp": now_ms(), "status": "active", "host": host_id},
    )
    store.delete(leave_key(session_id))


def trim_signals(
    store: KeyValueStore, session_id: str, window: float, now: Optional[int] = None
) -> None:
    """Drop signaling records older than ``window`` seconds."""
    now = now_ms() if now is None else now
    store.trim(signals_key(session_id), now - int(window * 1000))


def is_session_active(store: KeyValueStore, session_id: str, now: Optional[int] = None) -> bool:
    """True if the session was announced within the last 24 hours and not ended."""
    record = store.get(session_key(session_id))
    if not record or record.get("status") != "active":
        return False
    now = now_ms() if now is None else now
    return now - int(record.get("timestamp", 0)) < SESSION_TTL * 1000


def end_session(store: KeyValueStore, session_id: str) -> None:
    """Remove the announcement and leave an explicit end marker."""
    store.delete(session_key(session_id))
    store.put(leave_key(session_id), {"timestamp": now_ms()})


async def keep_session_announced(
    store: KeyValueStore,
    session_id: str,
    host_id: Optional[str] = None,
    interval: float = ANNOUNCE_INTERVAL,
    window: float = 30.0,
) -> None:
    """Refresh the announcement until cancelled.

    Each refresh also trims signaling records older than ``window`` seconds,
    which no peer would process anymore.
    """
    while True:
        try:
            await asyncio.to_thread(announce_session, store, session_id, host_id)
        except STORE_ERRORS as e:
            logger.warning(f"Failed to refresh session announcement: {e}")
        try:
            await asyncio.to_thread(trim_signals, store, session_id, window)
        except STORE_ERRORS as e:
            logger.warning(f"Failed to trim signaling log: {e}")
        await asyncio.sleep(interval)


def build_store(kv_url: Optional[str] = None, kv_dir: Optional[str] = None) -> Optional[KeyValueStore]:
    """Pick the configured durable store backend, if any."""
    if kv_url:
        return HttpKeyValueStore(kv_url)
    if kv_dir:
        return FileKeyValueStore(kv_dir)
    return None
