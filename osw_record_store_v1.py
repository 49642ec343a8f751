"""
Offer Settlement Workflow (OSW) - Record Store
Version: 1.0.0

Durable storage contract for offers, invoices, payments and notifications
(plus the read-only profile and property tables owned elsewhere), and an
in-memory implementation used by the demo, the API default wiring and the
tests.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import copy
import threading
import uuid

from osw_enforcement_v1 import NotFound, logger

OFFERS = "offers"
INVOICES = "invoices"
PAYMENTS = "payments"
NOTIFICATIONS = "notifications"
PROFILES = "profiles"
PROPERTIES = "properties"

TABLES = (OFFERS, INVOICES, PAYMENTS, NOTIFICATIONS, PROFILES, PROPERTIES)

# ============================================
# STORE CONTRACT
# ============================================

class RecordStore(ABC):
    """
    Single-row transactional key/record store.

    Implementations raise NotFound for missing rows and StorageFailure for
    any backend error. No multi-row or multi-table transactions are offered.
    """

    @abstractmethod
    def get(self, table: str, record_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def insert(self, table: str, record: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def update(self, table: str, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def compare_and_set(
        self,
        table: str,
        record_id: str,
        expected: Dict[str, Any],
        patch: Dict[str, Any]
    ) -> bool:
        """
        Apply patch only if every key in expected matches the stored row.

        Equivalent to UPDATE ... WHERE id = :id AND <expected> returning
        whether a row was affected.
        """
        pass

    @abstractmethod
    def query(
        self,
        table: str,
        filter: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        pass

    def find_one(self, table: str, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self.query(table, filter, limit=1)
        return rows[0] if rows else None

# ============================================
# IN-MEMORY STORE
# ============================================

class InMemoryRecordStore(RecordStore):
    """In-memory record store (production would use database)."""

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in TABLES}
        self._insert_order: Dict[str, int] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if table not in self.tables:
            self.tables[table] = {}
        return self.tables[table]

    def get(self, table: str, record_id: str) -> Dict[str, Any]:
        with self._lock:
            row = self._table(table).get(record_id)
            if row is None:
                raise NotFound(f"{table} record {record_id} not found")
            return copy.deepcopy(row)

    def insert(self, table: str, record: Dict[str, Any]) -> str:
        with self._lock:
            rows = self._table(table)
            record_id = record.get('id') or str(uuid.uuid4())
            if record_id in rows:
                raise ValueError(f"{table} record {record_id} already exists")
            stored = copy.deepcopy(record)
            stored['id'] = record_id
            rows[record_id] = stored
            self._insert_order[f"{table}:{record_id}"] = len(self._insert_order)
            logger.debug(f"[STORE] Inserted {table}/{record_id}")
            return record_id

    def update(self, table: str, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = self._table(table).get(record_id)
            if row is None:
                raise NotFound(f"{table} record {record_id} not found")
            row.update(copy.deepcopy(patch))
            return copy.deepcopy(row)

    def compare_and_set(
        self,
        table: str,
        record_id: str,
        expected: Dict[str, Any],
        patch: Dict[str, Any]
    ) -> bool:
        with self._lock:
            row = self._table(table).get(record_id)
            if row is None:
                raise NotFound(f"{table} record {record_id} not found")
            for key, value in expected.items():
                if row.get(key) != value:
                    logger.info(
                        f"[STORE] CAS miss on {table}/{record_id}: "
                        f"{key}={row.get(key)!r}, expected {value!r}"
                    )
                    return False
            row.update(copy.deepcopy(patch))
            return True

    def query(
        self,
        table: str,
        filter: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [
                row for row in self._table(table).values()
                if all(row.get(key) == value for key, value in (filter or {}).items())
            ]
            if order_by:
                # ties fall back to insertion order so "latest" is stable
                rows.sort(
                    key=lambda r: (
                        r.get(order_by) is not None,
                        r.get(order_by) or "",
                        self._insert_order.get(f"{table}:{r['id']}", 0)
                    ),
                    reverse=descending
                )
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))
