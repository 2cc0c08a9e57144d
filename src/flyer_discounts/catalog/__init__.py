"""SQLite store, discount transactions, image storage and the event queue."""

from .db import FlyerDatabase
from .discounts import DiscountResult, DiscountTransactionManager, plan_discount

__all__ = ["DiscountResult", "DiscountTransactionManager", "FlyerDatabase", "plan_discount"]
