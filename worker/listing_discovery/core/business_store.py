"""Business persistence backends for the identity resolver."""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Any, Dict, Optional, Set, Tuple

from psycopg2 import extras

from listing_discovery.core.collaborators import BusinessStore
from listing_discovery.core.db import get_connection
from listing_discovery.core.identity import (
    adopt_update_clause,
    compute_completeness_score,
    conflict_update_clause,
    merge_fields,
)
from listing_discovery.core.models import CRAWL_STATUSES, BusinessIdentity, utcnow

logger = logging.getLogger(__name__)

_INSERT_COLUMNS = (
    "dataset_id",
    "city_id",
    "industry_id",
    "name",
    "normalized_name",
    "address",
    "postal_code",
    "latitude",
    "longitude",
    "website",
    "email",
    "phone",
    "external_id",
    "discovery_run_id",
    "last_discovered_at",
)


def _build_upsert(conflict_target: str) -> str:
    columns = ",\n    ".join(_INSERT_COLUMNS)
    values = ",\n    ".join(f"%({column})s" for column in _INSERT_COLUMNS)
    return f"""
INSERT INTO businesses (
    {columns},
    created_at,
    updated_at
) VALUES (
    {values},
    NOW(),
    NOW()
)
ON CONFLICT {conflict_target} DO UPDATE SET
    {conflict_update_clause("businesses")}
RETURNING *, (xmax = 0) AS inserted;
"""


_UPSERT_BY_EXTERNAL_ID = _build_upsert("(dataset_id, external_id) WHERE external_id IS NOT NULL")
_UPSERT_BY_NAME = _build_upsert("(dataset_id, normalized_name) WHERE external_id IS NULL")

_SELECT_BY_EXTERNAL_ID = """
SELECT id FROM businesses
WHERE dataset_id = %(dataset_id)s AND external_id = %(external_id)s
FOR UPDATE;
"""

_ADOPT_BY_NAME = f"""
UPDATE businesses SET
    {adopt_update_clause("businesses")}
WHERE dataset_id = %(dataset_id)s
  AND normalized_name = %(normalized_name)s
  AND external_id IS NULL
RETURNING *;
"""

_UPDATE_SCORE = """
UPDATE businesses SET completeness_score = %(score)s WHERE id = %(id)s;
"""

_LINK_TO_DATASET = """
INSERT INTO dataset_businesses (dataset_id, business_id, created_at)
VALUES (%(dataset_id)s, %(business_id)s, NOW())
ON CONFLICT (dataset_id, business_id) DO NOTHING;
"""

_SELECT_BUSINESS = """
SELECT * FROM businesses WHERE id = %(id)s;
"""

_MARK_CRAWLED = """
UPDATE businesses SET
    email = COALESCE(businesses.email, %(email)s),
    phone = COALESCE(businesses.phone, %(phone)s),
    last_crawled_at = NOW(),
    crawl_status = %(status)s,
    updated_at = NOW()
WHERE id = %(id)s
RETURNING *;
"""


def _prepare_params(record: Dict[str, Any]) -> Dict[str, Any]:
    params = {column: record.get(column) for column in _INSERT_COLUMNS}
    for key in ("dataset_id", "city_id", "industry_id", "discovery_run_id"):
        if params[key] is not None:
            params[key] = str(params[key])
    if params["last_discovered_at"] is None:
        params["last_discovered_at"] = utcnow()
    return params


def _check_crawl_status(status: str) -> None:
    if status not in CRAWL_STATUSES:
        raise ValueError(f"Unknown crawl status: {status}")


class PostgresBusinessStore(BusinessStore):
    """Atomic upserts against the ``businesses`` table.

    Uniqueness is enforced by two partial unique indexes, so concurrent
    resolvers racing on the same listing converge on one row.
    """

    def upsert(self, record: Dict[str, Any]) -> Tuple[BusinessIdentity, bool]:
        params = _prepare_params(record)
        if not params["name"] or not params["normalized_name"]:
            raise ValueError("name and normalized_name are required for upsert")

        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                row = self._adopt_by_name(cur, params) if params["external_id"] else None
                if row is None:
                    cur.execute(_UPSERT_BY_EXTERNAL_ID if params["external_id"] else _UPSERT_BY_NAME, params)
                    row = dict(cur.fetchone())
                was_new = bool(row.pop("inserted", False))
                row["completeness_score"] = compute_completeness_score(row)
                cur.execute(_UPDATE_SCORE, {"score": row["completeness_score"], "id": row["id"]})
            conn.commit()

        logger.debug("Upserted business %s (%s)", row["id"], params["normalized_name"])
        return BusinessIdentity.from_row(row), was_new

    @staticmethod
    def _adopt_by_name(cur, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Attach ``external_id`` to a same-name row that has none, unless the id is already known."""
        cur.execute(_SELECT_BY_EXTERNAL_ID, params)
        if cur.fetchone() is not None:
            return None
        cur.execute(_ADOPT_BY_NAME, params)
        row = cur.fetchone()
        if row is None:
            return None
        logger.info("Business %s adopted external id %s", row["id"], params["external_id"])
        return dict(row)

    def link_to_scope(self, business_id: Any, scope_id: Any) -> None:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_LINK_TO_DATASET, {"dataset_id": str(scope_id), "business_id": business_id})
            conn.commit()

    def get(self, business_id: Any) -> Optional[BusinessIdentity]:
        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_SELECT_BUSINESS, {"id": business_id})
                row = cur.fetchone()
        return BusinessIdentity.from_row(row) if row else None

    def mark_crawled(
        self,
        business_id: Any,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        status: str = "success",
    ) -> Optional[BusinessIdentity]:
        _check_crawl_status(status)
        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_MARK_CRAWLED, {"id": business_id, "email": email, "phone": phone, "status": status})
                row = cur.fetchone()
                if row is None:
                    conn.commit()
                    return None
                row = dict(row)
                row["completeness_score"] = compute_completeness_score(row)
                cur.execute(_UPDATE_SCORE, {"score": row["completeness_score"], "id": business_id})
            conn.commit()
        return BusinessIdentity.from_row(row)


class MemoryBusinessStore(BusinessStore):
    """Lock-guarded in-process store with the same matching rules as the SQL indexes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._rows: Dict[Any, Dict[str, Any]] = {}
        self._index: Dict[tuple, Any] = {}
        self.links: Set[Tuple[Any, Any]] = set()

    @staticmethod
    def _key(row: Dict[str, Any]) -> tuple:
        if row.get("external_id"):
            return ("external_id", str(row["dataset_id"]), row["external_id"])
        return ("normalized_name", str(row["dataset_id"]), row["normalized_name"])

    def upsert(self, record: Dict[str, Any]) -> Tuple[BusinessIdentity, bool]:
        params = _prepare_params(record)
        if not params["name"] or not params["normalized_name"]:
            raise ValueError("name and normalized_name are required for upsert")

        now = utcnow()
        key = self._key(params)
        with self._lock:
            existing_id = self._index.get(key)
            if existing_id is None and params["external_id"]:
                name_key = ("normalized_name", str(params["dataset_id"]), params["normalized_name"])
                existing_id = self._index.pop(name_key, None)
            if existing_id is None:
                row = dict(params)
                row.update(id=next(self._ids), created_at=now, last_crawled_at=None, crawl_status=None)
                was_new = True
            else:
                row = merge_fields(self._rows[existing_id], params)
                was_new = False
            row["updated_at"] = now
            row["completeness_score"] = compute_completeness_score(row)
            self._rows[row["id"]] = row
            self._index[key] = row["id"]
            return BusinessIdentity.from_row(row), was_new

    def link_to_scope(self, business_id: Any, scope_id: Any) -> None:
        with self._lock:
            self.links.add((str(scope_id), business_id))

    def get(self, business_id: Any) -> Optional[BusinessIdentity]:
        with self._lock:
            row = self._rows.get(business_id)
            return BusinessIdentity.from_row(row) if row else None

    def mark_crawled(
        self,
        business_id: Any,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        status: str = "success",
    ) -> Optional[BusinessIdentity]:
        _check_crawl_status(status)
        with self._lock:
            row = self._rows.get(business_id)
            if row is None:
                return None
            row["email"] = row.get("email") or email
            row["phone"] = row.get("phone") or phone
            row["crawl_status"] = status
            row["last_crawled_at"] = row["updated_at"] = utcnow()
            row["completeness_score"] = compute_completeness_score(row)
            return BusinessIdentity.from_row(row)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)
