# log_catalog.py

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

LOG = logging.getLogger(__name__)

CATALOG_FILENAME = ".state.json"
LEGACY_CATALOG_FILENAME = "state.json"

LOG_FILE_PREFIX = "log_"
LOG_FILE_SUFFIX = ".px4log"


@dataclass
class LogEntry:
    """One remote log as we know it locally.

    `hash` identifies the remote log (id, utc, size). It is only used to
    notice that the remote catalog changed, not to verify content.
    """

    id: int
    utc: int
    size: int
    fetched: int = 0
    hash: str = ""

    @staticmethod
    def compute_hash(log_id: int, utc: int, size: int) -> str:
        h = hashlib.sha256()
        h.update(str(int(log_id)).encode("ascii"))
        h.update(str(int(utc)).encode("ascii"))
        h.update(str(int(size)).encode("ascii"))
        return h.hexdigest()

    @classmethod
    def from_remote(cls, log_id: int, utc: int, size: int) -> LogEntry:
        return cls(
            id=int(log_id),
            utc=int(utc),
            size=int(size),
            fetched=0,
            hash=cls.compute_hash(log_id, utc, size),
        )

    @property
    def complete(self) -> bool:
        return self.fetched >= self.size

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> LogEntry:
        entry = cls(
            id=int(raw["id"]),
            utc=int(raw["utc"]),
            size=int(raw["size"]),
            fetched=int(raw.get("fetched", 0)),
            hash=str(raw.get("hash", "")),
        )
        if entry.size < 0:
            raise ValueError(f"negative size for log {entry.id}")
        if not entry.hash:
            entry.hash = cls.compute_hash(entry.id, entry.utc, entry.size)
        # never trust a persisted value outside 0..size
        entry.fetched = max(0, min(entry.fetched, entry.size))
        return entry


def format_log_timestamp(utc: int) -> str:
    """UTC seconds -> YYYY-MM-DD-HH-MM-SS."""
    return datetime.fromtimestamp(int(utc), tz=timezone.utc).strftime("%Y-%m-%d-%H-%M-%S")


def log_filename(utc: int, in_progress: bool = True) -> str:
    """Output file name for a log.

    While a download is in progress the file is hidden (leading dot);
    the dot is dropped only once the whole log is on disk.
    """
    name = f"{LOG_FILE_PREFIX}{format_log_timestamp(utc)}{LOG_FILE_SUFFIX}"
    if in_progress:
        return "." + name
    return name


class LogCatalog:
    """
    Persistent catalog of remote logs and download progress.

    - One JSON file per log directory: {"entries": [{id, utc, size, fetched, hash}, ...]}
    - Always rewritten as a whole (write temp file, then atomic replace).
    - A legacy `state.json` is renamed to `.state.json` on construction.
    """

    def __init__(self, log_path: str) -> None:
        self._log_path = str(log_path)
        self._path = os.path.join(self._log_path, CATALOG_FILENAME)
        self.entries: List[LogEntry] = []

        os.makedirs(self._log_path, exist_ok=True)
        self.maybe_migrate()
        self.load()

    @property
    def path(self) -> str:
        return self._path

    @property
    def log_path(self) -> str:
        return self._log_path

    def __len__(self) -> int:
        return len(self.entries)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def maybe_migrate(self) -> bool:
        legacy = os.path.join(self._log_path, LEGACY_CATALOG_FILENAME)
        if not os.path.exists(legacy):
            return False

        try:
            os.replace(legacy, self._path)
        except OSError as exc:
            LOG.error("Cannot rename %s to %s: %s", legacy, self._path, exc)
            return False

        LOG.info("Renamed: %s to: %s", legacy, self._path)
        return True

    def load(self) -> bool:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                root = json.load(f)
        except FileNotFoundError:
            LOG.info("Fetch state file not present: %s", self._path)
            self.entries = []
            return False
        except (OSError, ValueError) as exc:
            LOG.warning("Fetch state file unreadable (%s): %s", exc, self._path)
            self.entries = []
            return False

        entries_any = root.get("entries", []) if isinstance(root, dict) else None
        if not isinstance(entries_any, list):
            LOG.warning("Fetch state file has no entry list: %s", self._path)
            self.entries = []
            return False

        entries: List[LogEntry] = []
        try:
            for raw in entries_any:
                entries.append(LogEntry.from_dict(raw))
        except (KeyError, TypeError, ValueError) as exc:
            LOG.warning("Fetch state file has a malformed entry (%s); starting empty", exc)
            self.entries = []
            return False

        self.entries = entries
        LOG.debug("loaded state (%d entries)", len(self.entries))
        return True

    def save(self) -> bool:
        """Rewrite the catalog file. Returns False (and logs) on I/O failure."""
        data = json.dumps({"entries": [e.to_dict() for e in self.entries]})
        tmp_path = self._path + ".tmp"

        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except OSError as exc:
            LOG.error("Could not save fetch state %s: %s", self._path, exc)
            return False

        LOG.debug("saved state")
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def entry_by_id(self, log_id: int) -> Optional[LogEntry]:
        for entry in self.entries:
            if entry.id == log_id:
                return entry
        return None

    def next_incomplete(self, reverse: bool = False) -> Optional[LogEntry]:
        ordered: Sequence[LogEntry] = self.entries
        if reverse:
            ordered = list(reversed(self.entries))
        for entry in ordered:
            if not entry.complete:
                return entry
        return None

    def total_fraction(self) -> float:
        total = sum(e.size for e in self.entries)
        if total <= 0:
            # nothing to download counts as done
            return 1.0
        return sum(e.fetched for e in self.entries) / total

    def output_path(self, entry: LogEntry, in_progress: bool = True) -> str:
        return os.path.join(self._log_path, log_filename(entry.utc, in_progress=in_progress))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, remote: Sequence[Tuple[int, int, int]]) -> int:
        """Merge a freshly listed remote catalog into ours.

        `remote` holds (id, utc, size) in position order. Entries are
        compared by hash position by position; at the first mismatch
        everything from there on is dropped and replaced by the remote
        entries (with nothing fetched). Matching entries keep their
        progress. Returns the first replaced position, or -1 if nothing
        changed.
        """
        first_change = -1

        for i, (log_id, utc, size) in enumerate(remote):
            fresh = LogEntry.from_remote(log_id, utc, size)

            if i < len(self.entries) and self.entries[i].hash == fresh.hash:
                continue

            if i < len(self.entries):
                LOG.debug("pruning state, keeping first %d entries", i)
                del self.entries[i:]

            LOG.debug("new log found: %d %d %d %s", fresh.id, fresh.utc, fresh.size, fresh.hash)
            self.entries.append(fresh)
            if first_change < 0:
                first_change = i

        if len(self.entries) > len(remote):
            LOG.debug("pruning state, remote lists only %d entries", len(remote))
            del self.entries[len(remote):]
            if first_change < 0:
                first_change = len(remote)

        return first_change
