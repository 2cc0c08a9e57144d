"""Atomic reassignment of a flyer discount between catalog products.

The manager works in three steps inside one write transaction:

1. read the parsed item, the target product and (when the item currently
   discounts a different product) the previous product into a
   ``DiscountSnapshot``;
2. ``plan_discount`` turns the snapshot into the exact set of writes without
   touching the database;
3. the writes are committed together, each product update guarded by the
   row version read in step 1.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from ..domain.models import CatalogProduct, DiscountSource, ParsedItem
from ..domain.pricing import apply_discount_percentage
from ..domain.status import DiscountSourceType
from ..errors import InvalidInput, NotFound, TransactionConflict
from ..logging import get_logger
from .db import FlyerDatabase, dumps, utc_now

LOG = get_logger("discount-manager")

CLEARED_DISCOUNT = {
    "new_price": None,
    "discount_percentage": None,
    "has_active_discount": 0,
    "discount_source": None,
    "valid_from": None,
    "valid_to": None,
}


@dataclass(frozen=True)
class DiscountSnapshot:
    item: ParsedItem
    new_product: CatalogProduct
    old_product: Optional[CatalogProduct] = None
    # True when the new product's flyer discount belongs to another item that still holds it
    held_by_other_item: bool = False


@dataclass(frozen=True)
class ProductWrite:
    product_id: str
    expected_version: int
    fields: Dict[str, Any]


@dataclass(frozen=True)
class DiscountPlan:
    product_writes: Tuple[ProductWrite, ...] = ()
    item_fields: Dict[str, Any] = field(default_factory=dict)
    discounted_price: Optional[float] = None
    cleared_product_id: Optional[str] = None
    # the product keeps an equal or larger discount it already carries
    kept_existing: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.product_writes and not self.item_fields


@dataclass(frozen=True)
class DiscountResult:
    parsed_item_id: str
    product_id: str
    discount_percentage: float
    discounted_price: Optional[float]
    previous_product_id: Optional[str]
    changed: bool
    kept_existing: bool = False

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": True,
            "parsedItemId": self.parsed_item_id,
            "productId": self.product_id,
            "discountPercentage": self.discount_percentage,
            "discountedPrice": self.discounted_price,
            "previousProductId": self.previous_product_id,
            "changed": self.changed,
        }
        if self.kept_existing:
            out["keptExisting"] = True
        return out


def validate_percentage(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"discountPercentage must be a number, got {value!r}")
    pct = float(value)
    if not 0 < pct < 100:
        raise InvalidInput(f"discountPercentage must be between 0 and 100 (exclusive), got {pct}")
    return pct


def _owned_by(product: CatalogProduct, item_id: str) -> bool:
    source = product.discount_source
    return bool(
        product.has_active_discount
        and source is not None
        and source.type == DiscountSourceType.FLYER
        and source.parsed_item_id == item_id
    )


def plan_discount(
    snapshot: DiscountSnapshot,
    discount_percentage: float,
    now: str,
    *,
    applied_by: str = "admin",
    auto: bool = False,
    confidence: float = 1.0,
    calculation_details: Optional[str] = None,
    keep_better_existing: bool = False,
) -> DiscountPlan:
    """Compute every write needed to move the item's discount onto the new product.

    With ``keep_better_existing`` a product that already carries a discount of
    at least ``discount_percentage`` from another source is left alone.
    """
    item = snapshot.item
    product = snapshot.new_product
    pct = validate_percentage(discount_percentage)

    if item.verified:
        raise InvalidInput(f"Parsed item {item.id} is verified and can no longer change")
    if (
        keep_better_existing
        and product.has_active_discount
        and not _owned_by(product, item.id)
        and (product.discount_percentage or 0) >= pct
    ):
        return DiscountPlan(discounted_price=product.new_price, kept_existing=True)
    if snapshot.held_by_other_item:
        owner = product.discount_source.parsed_item_id if product.discount_source else None
        raise TransactionConflict(
            f"Product {product.product_id} already carries a flyer discount from item {owner}"
        )
    if product.old_price is None or product.old_price <= 0:
        raise InvalidInput(f"Product {product.product_id} has no base price to discount")

    discounted = apply_discount_percentage(product.old_price, pct)

    already_applied = (
        item.selected_product_id == product.product_id
        and item.discount_applied
        and item.discount_percentage == pct
        and _owned_by(product, item.id)
        and product.discount_percentage == pct
        and product.new_price == discounted
    )
    if already_applied:
        return DiscountPlan(discounted_price=discounted)

    writes = []
    cleared: Optional[str] = None
    old = snapshot.old_product
    if old is not None and old.product_id != product.product_id and _owned_by(old, item.id):
        writes.append(ProductWrite(old.product_id, old.version, dict(CLEARED_DISCOUNT)))
        cleared = old.product_id

    source = DiscountSource(
        type=DiscountSourceType.FLYER,
        parsed_item_id=item.id,
        original_price=product.old_price,
        applied_at=now,
        applied_by=applied_by,
        confidence=confidence,
        calculation_details=calculation_details,
    )
    writes.append(
        ProductWrite(
            product.product_id,
            product.version,
            {
                "new_price": discounted,
                "discount_percentage": pct,
                "has_active_discount": 1,
                "discount_source": dumps(source.as_dict()),
                "valid_from": item.discount_start_date,
                "valid_to": item.discount_end_date,
            },
        )
    )
    item_fields = {
        "selected_product_id": product.product_id,
        "discount_applied": 1,
        "discount_applied_at": now,
        "discount_percentage": pct,
        "auto_discount_applied": 1 if auto else 0,
    }
    return DiscountPlan(
        product_writes=tuple(writes),
        item_fields=item_fields,
        discounted_price=discounted,
        cleared_product_id=cleared,
    )


class DiscountTransactionManager:
    """The only writer of catalog discount fields."""

    def __init__(self, db: FlyerDatabase) -> None:
        self.db = db

    def apply_discount(
        self,
        parsed_item_id: str,
        new_product_id: str,
        discount_percentage: Any,
        *,
        applied_by: str = "admin",
        auto: bool = False,
        confidence: float = 1.0,
        calculation_details: Optional[str] = None,
        keep_better_existing: bool = False,
        now: Optional[str] = None,
    ) -> DiscountResult:
        if not parsed_item_id or not new_product_id:
            raise InvalidInput("parsedItemId and productId are required")
        pct = validate_percentage(discount_percentage)
        now = now or utc_now()

        with self.db.transaction() as conn:
            snapshot = self._read_snapshot(conn, parsed_item_id, new_product_id)
            plan = plan_discount(
                snapshot,
                pct,
                now,
                applied_by=applied_by,
                auto=auto,
                confidence=confidence,
                calculation_details=calculation_details,
                keep_better_existing=keep_better_existing,
            )
            if plan.kept_existing:
                LOG.info(
                    "Product %s keeps its %s%% discount; %s%% from item %s is not better",
                    new_product_id,
                    snapshot.new_product.discount_percentage,
                    pct,
                    parsed_item_id,
                )
            elif plan.is_noop:
                LOG.info("Discount %s%% from item %s already on %s; nothing to do", pct, parsed_item_id, new_product_id)
            else:
                self._commit(conn, parsed_item_id, plan, now)

        if not plan.is_noop:
            LOG.info(
                "Applied %s%% discount from item %s to product %s (cleared: %s, by %s)",
                pct,
                parsed_item_id,
                new_product_id,
                plan.cleared_product_id,
                applied_by,
            )
        return DiscountResult(
            parsed_item_id=parsed_item_id,
            product_id=new_product_id,
            discount_percentage=pct,
            discounted_price=plan.discounted_price,
            previous_product_id=plan.cleared_product_id,
            changed=not plan.is_noop,
            kept_existing=plan.kept_existing,
        )

    # ---- phase 1 ---------------------------------------------------------------
    @staticmethod
    def _read_snapshot(conn: sqlite3.Connection, item_id: str, product_id: str) -> DiscountSnapshot:
        row = conn.execute("SELECT * FROM parsed_items WHERE id = ?;", (item_id,)).fetchone()
        if row is None:
            raise NotFound(f"Parsed item {item_id} not found")
        item = ParsedItem.from_row(row)

        row = conn.execute("SELECT * FROM products WHERE product_id = ?;", (product_id,)).fetchone()
        if row is None:
            raise NotFound(f"Product {product_id} not found")
        new_product = CatalogProduct.from_row(row)

        old_product = None
        if item.selected_product_id and item.selected_product_id != product_id and item.discount_applied:
            row = conn.execute(
                "SELECT * FROM products WHERE product_id = ?;", (item.selected_product_id,)
            ).fetchone()
            if row is not None:
                old_product = CatalogProduct.from_row(row)
            else:
                LOG.warning("Previously selected product %s no longer exists", item.selected_product_id)

        held = False
        source = new_product.discount_source
        if (
            new_product.has_active_discount
            and source is not None
            and source.type == DiscountSourceType.FLYER
            and source.parsed_item_id
            and source.parsed_item_id != item_id
        ):
            owner = conn.execute(
                "SELECT 1 FROM parsed_items WHERE id = ? AND selected_product_id = ? AND discount_applied = 1;",
                (source.parsed_item_id, product_id),
            ).fetchone()
            held = owner is not None

        return DiscountSnapshot(item=item, new_product=new_product, old_product=old_product, held_by_other_item=held)

    # ---- phase 3 ---------------------------------------------------------------
    @staticmethod
    def _commit(conn: sqlite3.Connection, item_id: str, plan: DiscountPlan, now: str) -> None:
        for write in plan.product_writes:
            columns = ", ".join(f"{name} = ?" for name in write.fields)
            cur = conn.execute(
                f"UPDATE products SET {columns}, version = version + 1, updated_at = ? "
                "WHERE product_id = ? AND version = ?;",
                (*write.fields.values(), now, write.product_id, write.expected_version),
            )
            if cur.rowcount != 1:
                raise TransactionConflict(
                    f"Product {write.product_id} changed concurrently (expected version {write.expected_version})"
                )

        columns = ", ".join(f"{name} = ?" for name in plan.item_fields)
        conn.execute(
            f"UPDATE parsed_items SET {columns}, updated_at = ? WHERE id = ?;",
            (*plan.item_fields.values(), now, item_id),
        )
