"""
Chip registry accessor.

The verification core talks to the relational store only through the
ChipRegistry capability: three point lookups, one append-only insert and
one atomic conditional counter update. Backends:

- SqliteChipRegistry: local SQLite file (default, tests, single host)
- SupabaseChipRegistry: Supabase/PostgREST over HTTP
- InMemoryChipRegistry: process-local dicts for development
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from . import db
from .config import Settings
from .exceptions import ExportUnsupported, RegistryError
from .models import Chip, ScanEvent

logger = logging.getLogger(__name__)


def format_owner_handle(owner_id: Optional[str], username: Optional[str]) -> Optional[str]:
    """Display handle for an artwork owner: @username, else the raw owner id."""
    if not owner_id:
        return None
    if username:
        return f"@{username}"
    return owner_id


class ChipRegistry(ABC):
    """Abstract interface for chip lookups and scan persistence."""

    name = "abstract"

    @abstractmethod
    def get_chip_by_tag(self, tag_id: str) -> Optional[Chip]:
        """Return the chip presenting tag_id, or None if unknown."""
        pass

    @abstractmethod
    def get_artwork_link(self, chip_id: str) -> Optional[str]:
        """Return the artwork id the chip is bound to, or None."""
        pass

    @abstractmethod
    def get_owner_handle(self, artwork_id: str) -> Optional[str]:
        """Return the display handle of the artwork's current owner, or None."""
        pass

    @abstractmethod
    def append_scan_event(self, event: ScanEvent) -> None:
        """Append one scan event. Must never update or delete existing events."""
        pass

    @abstractmethod
    def advance_counter(self, chip_id: str, new_counter: int) -> bool:
        """
        Atomically set the chip's counter to new_counter if the stored value is lower.

        Returns:
            True if this call advanced the counter (first acceptance)
            False if the stored counter was already >= new_counter
        """
        pass

    def export_scan_events(self, chip_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        raise ExportUnsupported(f"{self.name} registry does not export scan events")

    def stats(self) -> Dict[str, int]:
        return {}


class SqliteChipRegistry(ChipRegistry):
    """Registry backed by the local SQLite database."""

    name = "sqlite"

    def __init__(self, db_path: str, timeout: float = db.BUSY_TIMEOUT_SECONDS):
        db.configure(db_path, busy_timeout=timeout)
        db.init_db()

    def _call(self, fn, *args):
        try:
            return fn(*args)
        except sqlite3.Error as e:
            raise RegistryError(f"sqlite {fn.__name__} failed: {e}") from e

    def get_chip_by_tag(self, tag_id: str) -> Optional[Chip]:
        row = self._call(db.get_chip_by_tag, tag_id)
        return Chip(**row) if row else None

    def get_artwork_link(self, chip_id: str) -> Optional[str]:
        return self._call(db.get_linked_artwork_id, chip_id)

    def get_owner_handle(self, artwork_id: str) -> Optional[str]:
        row = self._call(db.get_artwork_owner, artwork_id)
        if not row:
            return None
        return format_owner_handle(row.get("owner_id"), row.get("username"))

    def append_scan_event(self, event: ScanEvent) -> None:
        self._call(db.append_scan_event, event.model_dump(mode="json"))

    def advance_counter(self, chip_id: str, new_counter: int) -> bool:
        return self._call(db.advance_counter, chip_id, new_counter)

    def export_scan_events(self, chip_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        return self._call(db.export_scan_events, chip_id, limit)

    def stats(self) -> Dict[str, int]:
        return self._call(db.get_db_stats)


class SupabaseChipRegistry(ChipRegistry):
    """
    Registry backed by Supabase's PostgREST API, using the service role key.

    The counter advance is a single PATCH filtered on both the chip id and
    counter=lt.<new>, so Postgres applies it as one conditional UPDATE.
    """

    name = "supabase"

    def __init__(
        self,
        url: str,
        service_role_key: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None
    ):
        self._base = url.rstrip("/") + "/rest/v1"
        self._timeout = timeout
        self._session = session or requests.Session()
        self._headers = {
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Accept": "application/json",
        }

    def _request(self, method: str, table: str, params: Dict[str, str],
                 payload: Any = None, prefer: Optional[str] = None) -> Any:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            r = self._session.request(
                method,
                f"{self._base}/{table}",
                params=params,
                json=payload,
                headers=headers,
                timeout=self._timeout
            )
            r.raise_for_status()
        except requests.RequestException as e:
            raise RegistryError(f"supabase {method} {table} failed: {e}") from e
        if r.status_code == 204 or not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise RegistryError(f"supabase {method} {table} returned non-JSON body") from e

    def _select_one(self, table: str, params: Dict[str, str]) -> Optional[Dict[str, Any]]:
        params = dict(params, limit="1")
        rows = self._request("GET", table, params)
        if not rows:
            return None
        return rows[0]

    def get_chip_by_tag(self, tag_id: str) -> Optional[Chip]:
        row = self._select_one("chips", {
            "tag_id": f"eq.{tag_id}",
            "select": "id,tag_id,public_key,secret,counter",
        })
        if not row:
            return None
        row["counter"] = int(row.get("counter") or 0)
        return Chip(**row)

    def get_artwork_link(self, chip_id: str) -> Optional[str]:
        row = self._select_one("chip_artworks", {"chip_id": f"eq.{chip_id}", "select": "artwork_id"})
        return row.get("artwork_id") if row else None

    def get_owner_handle(self, artwork_id: str) -> Optional[str]:
        art = self._select_one("artworks", {"id": f"eq.{artwork_id}", "select": "owner_id"})
        if not art or not art.get("owner_id"):
            return None
        owner_id = art["owner_id"]
        prof = self._select_one("profiles", {"id": f"eq.{owner_id}", "select": "id,username"})
        return format_owner_handle(owner_id, prof.get("username") if prof else None)

    def append_scan_event(self, event: ScanEvent) -> None:
        record = event.model_dump(mode="json")
        record["ua"] = record.pop("user_agent")
        self._request("POST", "chip_scan_events", {}, payload=record, prefer="return=minimal")

    def advance_counter(self, chip_id: str, new_counter: int) -> bool:
        rows = self._request(
            "PATCH",
            "chips",
            {"id": f"eq.{chip_id}", "counter": f"lt.{new_counter}", "select": "id,counter"},
            payload={"counter": new_counter},
            prefer="return=representation"
        )
        return bool(rows) and len(rows) == 1


class InMemoryChipRegistry(ChipRegistry):
    """
    In-memory registry for development/testing.

    WARNING: Not suitable for production.
    - Not persistent across restarts
    - Not shared between processes
    """

    name = "memory"

    def __init__(self):
        self._chips: Dict[str, Dict[str, Any]] = {}
        self._links: Dict[str, str] = {}
        self._owners: Dict[str, Dict[str, Optional[str]]] = {}
        self._events: List[ScanEvent] = []
        self._lock = threading.Lock()

    def add_chip(self, chip: Chip, secret: Optional[str] = None) -> None:
        with self._lock:
            row = chip.model_dump()
            row["secret"] = secret if secret is not None else chip.secret
            self._chips[chip.tag_id] = row

    def link(self, chip_id: str, artwork_id: str) -> None:
        with self._lock:
            self._links[chip_id] = artwork_id

    def set_owner(self, artwork_id: str, owner_id: Optional[str], username: Optional[str] = None) -> None:
        with self._lock:
            self._owners[artwork_id] = {"owner_id": owner_id, "username": username}

    @property
    def events(self) -> List[ScanEvent]:
        with self._lock:
            return list(self._events)

    def get_chip_by_tag(self, tag_id: str) -> Optional[Chip]:
        with self._lock:
            row = self._chips.get(tag_id)
            return Chip(**row) if row else None

    def get_artwork_link(self, chip_id: str) -> Optional[str]:
        with self._lock:
            return self._links.get(chip_id)

    def get_owner_handle(self, artwork_id: str) -> Optional[str]:
        with self._lock:
            owner = self._owners.get(artwork_id)
        if not owner:
            return None
        return format_owner_handle(owner["owner_id"], owner["username"])

    def append_scan_event(self, event: ScanEvent) -> None:
        with self._lock:
            self._events.append(event)

    def advance_counter(self, chip_id: str, new_counter: int) -> bool:
        with self._lock:
            for row in self._chips.values():
                if row["id"] == chip_id:
                    if row["counter"] < new_counter:
                        row["counter"] = new_counter
                        return True
                    return False
        return False

    def export_scan_events(self, chip_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        events = [e for e in reversed(self.events) if not chip_id or e.chip_id == chip_id]
        return [e.model_dump(mode="json") for e in events[:limit]]


def get_registry(settings: Settings) -> ChipRegistry:
    """Build the registry selected by CHIP_REGISTRY_BACKEND."""
    if settings.registry_backend == "supabase":
        logger.info("chip registry: supabase at %s", settings.supabase_url)
        return SupabaseChipRegistry(
            url=settings.supabase_url,
            service_role_key=settings.supabase_service_role_key,
            timeout=settings.store_timeout_seconds
        )
    logger.info("chip registry: sqlite at %s", settings.db_path)
    return SqliteChipRegistry(settings.db_path, timeout=settings.store_timeout_seconds)
