from __future__ import annotations

import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ..domain.models import CatalogProduct, FlyerImage, ParsedItem
from ..domain.names import name_prefixes
from ..domain.status import (
    ImageExtractionStatus,
    MatchingStatus,
    ProcessingStatus,
    coerce,
    ensure_transition,
)
from ..errors import InvalidInput, NotFound
from ..logging import get_logger
from ..paths import find_project_root, var_dir


LOG = get_logger("flyer-db")


DEFAULT_DB_FOLDER = "flyerdb"
DEFAULT_DB_FILENAME = "flyers.sqlite3"
BUSY_TIMEOUT_SECONDS = 30.0


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_id() -> str:
    return uuid.uuid4().hex


def dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

-- 1) Uploaded flyers
CREATE TABLE IF NOT EXISTS flyer_images (
  id                 TEXT PRIMARY KEY,
  storage_reference  TEXT NOT NULL,
  filename           TEXT NOT NULL,
  original_name      TEXT,
  file_size          INTEGER,
  file_type          TEXT,
  uploaded_by        TEXT,
  uploaded_at        TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
  processing_status  TEXT NOT NULL DEFAULT 'pending'
                     CHECK (processing_status IN ('pending','processing','completed','failed')),
  failure_reason     TEXT,
  updated_at         TEXT
);

-- 2) Records extracted from a flyer
CREATE TABLE IF NOT EXISTS parsed_items (
  id                       TEXT PRIMARY KEY,
  flyer_image_id           TEXT NOT NULL REFERENCES flyer_images(id) ON DELETE CASCADE,
  product_name             TEXT NOT NULL,
  product_name_mk          TEXT,
  product_name_prefixes    TEXT,            -- JSON list
  old_price                REAL,
  discount_price           REAL,
  discount_text            TEXT,
  currency                 TEXT NOT NULL DEFAULT 'MKD',
  discount_start_date      TEXT,
  discount_end_date        TEXT,
  additional_info          TEXT,            -- JSON list
  additional_info_mk       TEXT,            -- JSON list
  confidence               REAL DEFAULT 0.85,
  verified                 INTEGER NOT NULL DEFAULT 0,
  image_extraction_status  TEXT NOT NULL DEFAULT 'pending'
                           CHECK (image_extraction_status IN ('pending','processing','completed','failed','manual-review')),
  image_extraction_error   TEXT,
  extracted_images         TEXT,            -- JSON object
  image_extracted_at       TEXT,
  image_quality_score      REAL,
  matching_status          TEXT NOT NULL DEFAULT 'pending'
                           CHECK (matching_status IN ('pending','processing','completed','failed')),
  matching_error           TEXT,
  matched_products         TEXT,            -- JSON list, best first
  selected_product_id      TEXT,
  discount_applied         INTEGER NOT NULL DEFAULT 0,
  discount_percentage      REAL,
  discount_applied_at      TEXT,
  auto_discount_applied    INTEGER NOT NULL DEFAULT 0,
  auto_approval            TEXT,            -- JSON object
  created_at               TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
  updated_at               TEXT
);

-- 3) Catalog
CREATE TABLE IF NOT EXISTS products (
  id                   TEXT PRIMARY KEY,
  product_id           TEXT NOT NULL UNIQUE,
  name                 TEXT NOT NULL,
  name_mk              TEXT,
  description          TEXT,
  category             TEXT,
  old_price            REAL,
  new_price            REAL,
  discount_percentage  REAL,
  has_active_discount  INTEGER NOT NULL DEFAULT 0,
  discount_source      TEXT,                -- JSON object
  valid_from           TEXT,
  valid_to             TEXT,
  name_prefixes        TEXT,                -- JSON list
  version              INTEGER NOT NULL DEFAULT 0,
  updated_at           TEXT
);

-- 4) Auto-approval rules
CREATE TABLE IF NOT EXISTS auto_approval_rules (
  rule_id     INTEGER PRIMARY KEY,
  name        TEXT NOT NULL,
  prompt      TEXT NOT NULL,
  is_active   INTEGER NOT NULL DEFAULT 1,
  created_at  TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now'))
);

-- 5) Event queue
CREATE TABLE IF NOT EXISTS events (
  event_id    INTEGER PRIMARY KEY,
  name        TEXT NOT NULL,
  data        TEXT NOT NULL,                -- JSON object
  status      TEXT NOT NULL DEFAULT 'pending'
              CHECK (status IN ('pending','processing','done','failed')),
  attempts    INTEGER NOT NULL DEFAULT 0,
  last_error  TEXT,
  created_at  TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
  updated_at  TEXT
);

-- Helpful indexes
CREATE INDEX IF NOT EXISTS idx_items_flyer        ON parsed_items(flyer_image_id);
CREATE INDEX IF NOT EXISTS idx_items_selected     ON parsed_items(selected_product_id);
CREATE INDEX IF NOT EXISTS idx_products_name      ON products(name);
CREATE INDEX IF NOT EXISTS idx_events_status      ON events(status, event_id);
"""


class FlyerDatabase:
    """SQLite-backed flyer/catalog store.

    - Places the DB under `<repo-root>/var/flyerdb/flyers.sqlite3` unless a path is given.
    - Ensures schema on first use.
    - Connections run in autocommit mode; multi-statement writes go through
      `transaction()`, which takes the write lock up front (BEGIN IMMEDIATE).
    """

    def __init__(self, root_dir: Optional[str] = None, *, db_path: Optional[str] = None) -> None:
        if db_path:
            self.db_path = os.path.abspath(db_path)
            os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        else:
            root = find_project_root(root_dir)
            db_folder = os.path.join(var_dir(root), DEFAULT_DB_FOLDER)
            os.makedirs(db_folder, exist_ok=True)
            self.db_path = os.path.join(db_folder, DEFAULT_DB_FILENAME)
        LOG.info(f"Flyer DB path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize writers: the lock is held from the first read to commit."""
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            else:
                conn.execute("COMMIT;")

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.DatabaseError as exc:
                LOG.warning("Could not enable WAL mode: %s", exc)
            LOG.info("Ensuring flyer DB schema is present...")
            cur.executescript(SCHEMA_SQL)
            LOG.info("Flyer DB schema ensured.")

    # --------------- Flyers ---------------
    def insert_flyer(
        self,
        *,
        storage_reference: str,
        filename: str,
        original_name: Optional[str] = None,
        file_size: Optional[int] = None,
        file_type: Optional[str] = None,
        uploaded_by: Optional[str] = None,
        flyer_id: Optional[str] = None,
    ) -> FlyerImage:
        flyer_id = flyer_id or new_id()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO flyer_images (
                    id, storage_reference, filename, original_name, file_size, file_type, uploaded_by, uploaded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (flyer_id, storage_reference, filename, original_name, file_size, file_type, uploaded_by, utc_now()),
            )
        LOG.info("Registered flyer %s (%s)", flyer_id, filename)
        return self.get_flyer(flyer_id)

    def get_flyer(self, flyer_id: str) -> Optional[FlyerImage]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM flyer_images WHERE id = ?;", (flyer_id,)).fetchone()
        return FlyerImage.from_row(row) if row else None

    def set_flyer_status(
        self, flyer_id: str, target: ProcessingStatus, *, failure_reason: Optional[str] = None
    ) -> FlyerImage:
        with self.transaction() as conn:
            row = conn.execute("SELECT processing_status FROM flyer_images WHERE id = ?;", (flyer_id,)).fetchone()
            if row is None:
                raise NotFound(f"Flyer {flyer_id} not found")
            current = coerce(ProcessingStatus, row["processing_status"], ProcessingStatus.PENDING)
            ensure_transition(current, target, entity=f"flyer {flyer_id}")
            conn.execute(
                "UPDATE flyer_images SET processing_status = ?, failure_reason = ?, updated_at = ? WHERE id = ?;",
                (target.value, failure_reason, utc_now(), flyer_id),
            )
        return self.get_flyer(flyer_id)

    # --------------- Parsed items ---------------
    def insert_parsed_item(self, item: ParsedItem) -> ParsedItem:
        prefixes = item.product_name_prefixes or name_prefixes(item.product_name)
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO parsed_items (
                    id, flyer_image_id, product_name, product_name_mk, product_name_prefixes,
                    old_price, discount_price, discount_text, currency,
                    discount_start_date, discount_end_date, additional_info, additional_info_mk,
                    confidence, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    item.id,
                    item.flyer_image_id,
                    item.product_name,
                    item.product_name_mk,
                    dumps(list(prefixes)),
                    item.old_price,
                    item.discount_price,
                    item.discount_text,
                    item.currency,
                    item.discount_start_date,
                    item.discount_end_date,
                    dumps(list(item.additional_info)),
                    dumps(list(item.additional_info_mk)),
                    item.confidence,
                    item.created_at or utc_now(),
                ),
            )
        return self.get_parsed_item(item.id)

    def get_parsed_item(self, item_id: str) -> Optional[ParsedItem]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM parsed_items WHERE id = ?;", (item_id,)).fetchone()
        return ParsedItem.from_row(row) if row else None

    def require_parsed_item(self, item_id: str) -> ParsedItem:
        item = self.get_parsed_item(item_id)
        if item is None:
            raise NotFound(f"Parsed item {item_id} not found")
        return item

    def list_parsed_items(self, flyer_image_id: str) -> List[ParsedItem]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM parsed_items WHERE flyer_image_id = ? ORDER BY created_at, rowid;",
                (flyer_image_id,),
            ).fetchall()
        return [ParsedItem.from_row(r) for r in rows]

    def list_items_by_extraction_status(self, status: ImageExtractionStatus) -> List[ParsedItem]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM parsed_items WHERE image_extraction_status = ? ORDER BY rowid;",
                (status.value,),
            ).fetchall()
        return [ParsedItem.from_row(r) for r in rows]

    def set_verified(self, item_id: str, verified: bool = True) -> ParsedItem:
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE parsed_items SET verified = ?, updated_at = ? WHERE id = ?;",
                (1 if verified else 0, utc_now(), item_id),
            )
            if cur.rowcount == 0:
                raise NotFound(f"Parsed item {item_id} not found")
        return self.require_parsed_item(item_id)

    def _mutable_item_row(self, conn: sqlite3.Connection, item_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM parsed_items WHERE id = ?;", (item_id,)).fetchone()
        if row is None:
            raise NotFound(f"Parsed item {item_id} not found")
        if row["verified"]:
            raise InvalidInput(f"Parsed item {item_id} is verified and can no longer change")
        return row

    def set_extraction_status(
        self,
        item_id: str,
        target: ImageExtractionStatus,
        *,
        error: Optional[str] = None,
        extracted_images: Optional[Dict[str, Any]] = None,
        quality_score: Optional[float] = None,
    ) -> ParsedItem:
        with self.transaction() as conn:
            row = self._mutable_item_row(conn, item_id)
            current = coerce(ImageExtractionStatus, row["image_extraction_status"], ImageExtractionStatus.PENDING)
            ensure_transition(current, target, entity=f"image extraction of {item_id}")
            now = utc_now()
            if extracted_images is not None:
                conn.execute(
                    """
                    UPDATE parsed_items
                    SET image_extraction_status = ?, image_extraction_error = ?, extracted_images = ?,
                        image_quality_score = ?, image_extracted_at = ?, updated_at = ?
                    WHERE id = ?;
                    """,
                    (target.value, error, dumps(extracted_images), quality_score, now, now, item_id),
                )
            else:
                conn.execute(
                    "UPDATE parsed_items SET image_extraction_status = ?, image_extraction_error = ?, updated_at = ? WHERE id = ?;",
                    (target.value, error, now, item_id),
                )
        return self.require_parsed_item(item_id)

    def replace_extracted_images(self, item_id: str, extracted_images: Dict[str, Any]) -> None:
        """Rewrite the stored shape only; status and timestamps are left alone."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE parsed_items SET extracted_images = ?, updated_at = ? WHERE id = ?;",
                (dumps(extracted_images), utc_now(), item_id),
            )
            if cur.rowcount == 0:
                raise NotFound(f"Parsed item {item_id} not found")

    def set_matching_status(
        self,
        item_id: str,
        target: MatchingStatus,
        *,
        error: Optional[str] = None,
        matches: Optional[List[Dict[str, Any]]] = None,
    ) -> ParsedItem:
        with self.transaction() as conn:
            row = self._mutable_item_row(conn, item_id)
            current = coerce(MatchingStatus, row["matching_status"], MatchingStatus.PENDING)
            ensure_transition(current, target, entity=f"matching of {item_id}")
            if matches is not None:
                conn.execute(
                    "UPDATE parsed_items SET matching_status = ?, matching_error = ?, matched_products = ?, updated_at = ? WHERE id = ?;",
                    (target.value, error, dumps(matches), utc_now(), item_id),
                )
            else:
                conn.execute(
                    "UPDATE parsed_items SET matching_status = ?, matching_error = ?, updated_at = ? WHERE id = ?;",
                    (target.value, error, utc_now(), item_id),
                )
        return self.require_parsed_item(item_id)

    def record_auto_approval(self, item_id: str, decision: Dict[str, Any]) -> None:
        with self.transaction() as conn:
            self._mutable_item_row(conn, item_id)
            conn.execute(
                "UPDATE parsed_items SET auto_approval = ?, updated_at = ? WHERE id = ?;",
                (dumps(decision), utc_now(), item_id),
            )

    # --------------- Catalog ---------------
    def upsert_product(self, product: CatalogProduct) -> CatalogProduct:
        """Insert or update descriptive fields; discount fields are owned by the discount manager."""
        prefixes = product.name_prefixes or name_prefixes(product.name)
        with self.transaction() as conn:
            current = conn.execute(
                "SELECT old_price, has_active_discount FROM products WHERE product_id = ?;",
                (product.product_id,),
            ).fetchone()
            # new_price was derived from old_price; the two only change together
            if current is not None and current["has_active_discount"] and current["old_price"] != product.old_price:
                raise InvalidInput(
                    f"Product {product.product_id} has an active discount; remove it before changing the base price"
                )
            conn.execute(
                """
                INSERT INTO products (
                    id, product_id, name, name_mk, description, category, old_price, name_prefixes, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(product_id) DO UPDATE SET
                    name=excluded.name,
                    name_mk=excluded.name_mk,
                    description=excluded.description,
                    category=excluded.category,
                    old_price=excluded.old_price,
                    name_prefixes=excluded.name_prefixes,
                    updated_at=excluded.updated_at,
                    version=products.version + 1;
                """,
                (
                    product.id or new_id(),
                    product.product_id,
                    product.name,
                    product.name_mk,
                    product.description,
                    product.category,
                    product.old_price,
                    dumps(list(prefixes)),
                    utc_now(),
                ),
            )
        return self.get_product(product.product_id)

    def get_product(self, product_id: str) -> Optional[CatalogProduct]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM products WHERE product_id = ?;", (product_id,)).fetchone()
        return CatalogProduct.from_row(row) if row else None

    def search_products(self, keywords: Sequence[str], *, limit: int = 10) -> List[CatalogProduct]:
        """Products whose name, Macedonian name or prefix index hits any keyword.

        Ranked by the number of keywords hit, then by name.
        """
        words = [w.lower() for w in keywords if w]
        if not words:
            return []
        hit_terms = []
        params: List[Any] = []
        for word in words:
            hit_terms.append(
                "(CASE WHEN LOWER(name) LIKE ? OR LOWER(COALESCE(name_mk,'')) LIKE ?"
                " OR LOWER(COALESCE(name_prefixes,'')) LIKE ? THEN 1 ELSE 0 END)"
            )
            params.extend([f"%{word}%", f"%{word}%", f'%"{word}"%'])
        score_sql = " + ".join(hit_terms)
        sql = f"""
            SELECT * FROM (
                SELECT *, ({score_sql}) AS hits FROM products
            )
            WHERE hits > 0
            ORDER BY hits DESC, name
            LIMIT ?;
        """
        params.append(int(limit))
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [CatalogProduct.from_row(r) for r in rows]

    # --------------- Auto-approval rules ---------------
    def add_auto_approval_rule(self, name: str, prompt: str, *, is_active: bool = True) -> int:
        with self.transaction() as conn:
            if is_active:
                conn.execute("UPDATE auto_approval_rules SET is_active = 0;")
            cur = conn.execute(
                "INSERT INTO auto_approval_rules (name, prompt, is_active) VALUES (?, ?, ?) RETURNING rule_id;",
                (name, prompt, 1 if is_active else 0),
            )
            return int(cur.fetchone()[0])

    def active_auto_approval_rule(self) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM auto_approval_rules WHERE is_active = 1 ORDER BY rule_id DESC LIMIT 1;"
            ).fetchone()
        return dict(row) if row else None

    # --------------- Query helpers ---------------
    def fetch_summary(self) -> Dict[str, Any]:
        """Counts per table and per status for dashboards and the CLI."""
        with self.connect() as conn:
            counts = {}
            for table in ("flyer_images", "parsed_items", "products", "events"):
                counts[table] = int(conn.execute(f"SELECT COUNT(*) FROM {table};").fetchone()[0])
            extraction = {
                r[0]: r[1]
                for r in conn.execute(
                    "SELECT image_extraction_status, COUNT(*) FROM parsed_items GROUP BY image_extraction_status;"
                )
            }
            discounted = int(conn.execute("SELECT COUNT(*) FROM products WHERE has_active_discount = 1;").fetchone()[0])
        return {"counts": counts, "extraction": extraction, "active_discounts": discounted}
