"""
Stock counter changes for inventory items.

Every change is a single conditional UPDATE: the availability check lives in
the WHERE clause, so two requests racing for the last units cannot both
succeed and stock never goes negative. A zero row count means the check
failed. Each applied change is written to the stock movement log.
"""
import logging
from typing import List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.orm import Session

from pitstop.errors import InsufficientStock, NotFound, ValidationError
from pitstop.models import InventoryItem, StockMovement

logger = logging.getLogger(__name__)

items = InventoryItem.__table__

STOCK_OPERATIONS = ("add", "subtract")


class StockLedger:
    def __init__(self, db: Session, actor_id: Optional[int] = None):
        self.db = db
        self.actor_id = actor_id

    @staticmethod
    def is_low_stock(item: InventoryItem) -> bool:
        return item.is_low_stock

    def get_item(self, item_id: int) -> InventoryItem:
        item = self.db.query(InventoryItem).filter(InventoryItem.id == item_id).first()
        if not item:
            raise NotFound(f"No inventory item found with id: {item_id}")
        return item

    def adjust(self, item_id: int, quantity: int, operation: str, reason: Optional[str] = None) -> InventoryItem:
        """
        Add to or subtract from an item's stock.

        Subtraction only draws on unreserved stock (current - reserved), so
        units held for approved goods requests stay available for release.
        """
        if quantity is None or quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")
        if operation not in STOCK_OPERATIONS:
            raise ValidationError("Operation must be either 'add' or 'subtract'")

        item = self.get_item(item_id)

        if operation == "add":
            stmt = (
                update(items)
                .where(items.c.id == item_id)
                .values(current_stock=items.c.current_stock + quantity)
            )
        else:
            stmt = (
                update(items)
                .where(items.c.id == item_id)
                .where(items.c.current_stock - items.c.reserved_stock >= quantity)
                .values(current_stock=items.c.current_stock - quantity)
            )

        result = self.db.execute(stmt)
        self.db.refresh(item)
        if result.rowcount == 0:
            raise InsufficientStock(item.name, item.available_stock, quantity)

        self.record(item, operation, quantity, reason)
        return item

    def bulk_adjust(self, lines: List[dict]) -> Tuple[List[dict], List[dict]]:
        """
        Apply each line independently. A failing line leaves no trace in the
        database, so the caller can commit whatever succeeded.
        """
        results = []
        errors = []
        for index, line in enumerate(lines):
            item_id = line.get("item_id")
            try:
                item = self.adjust(item_id, line.get("quantity"), line.get("operation"), line.get("reason"))
            except HTTPException as e:
                errors.append({"index": index, "item_id": item_id, "error": e.detail})
                continue
            results.append({
                "item_id": item.id,
                "item_code": item.item_code,
                "name": item.name,
                "operation": line.get("operation"),
                "quantity": line.get("quantity"),
                "current_stock": item.current_stock,
                "is_low_stock": item.is_low_stock,
            })
        return results, errors

    def reserve(self, item_id: int, quantity: int, goods_request_id: Optional[int] = None) -> InventoryItem:
        """Hold unreserved stock for an approved goods request"""
        item = self.get_item(item_id)
        result = self.db.execute(
            update(items)
            .where(items.c.id == item_id)
            .where(items.c.current_stock - items.c.reserved_stock >= quantity)
            .values(reserved_stock=items.c.reserved_stock + quantity)
        )
        self.db.refresh(item)
        if result.rowcount == 0:
            raise InsufficientStock(item.name, item.available_stock, quantity)

        self.record(item, "reserve", quantity, "Reserved for goods request", goods_request_id)
        return item

    def consume_reserved(self, item_id: int, quantity: int, goods_request_id: Optional[int] = None) -> InventoryItem:
        """Hand out previously reserved stock: both counters drop by quantity"""
        item = self.get_item(item_id)
        result = self.db.execute(
            update(items)
            .where(items.c.id == item_id)
            .where(items.c.reserved_stock >= quantity)
            .where(items.c.current_stock >= quantity)
            .values(
                current_stock=items.c.current_stock - quantity,
                reserved_stock=items.c.reserved_stock - quantity,
            )
        )
        self.db.refresh(item)
        if result.rowcount == 0:
            raise InsufficientStock(item.name, item.reserved_stock, quantity)

        self.record(item, "release", quantity, "Released for goods request", goods_request_id)
        return item

    def record(self, item: InventoryItem, operation: str, quantity: int, reason: Optional[str] = None,
               goods_request_id: Optional[int] = None):
        self.db.add(StockMovement(
            item_id=item.id,
            operation=operation,
            quantity=quantity,
            balance_after=item.current_stock,
            reserved_after=item.reserved_stock,
            reason=reason,
            goods_request_id=goods_request_id,
            created_by=self.actor_id,
        ))
        logger.info(
            f"Stock {operation} {quantity} on {item.item_code}: "
            f"current={item.current_stock} reserved={item.reserved_stock}"
        )
