"""
Inventory catalogue and stock endpoints
"""
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
import logging

from pitstop.api.projections import item_summary
from pitstop.database import get_db
from pitstop.errors import Conflict, NotFound, ValidationError
from pitstop.models import InventoryItem, StockMovement, User
from pitstop.services.dependency import EMPLOYEE_ROLES, require_roles
from pitstop.services.identifiers import next_identifier
from pitstop.services.stock_ledger import STOCK_OPERATIONS, StockLedger
from pitstop.utils.pagination import decimal_to_float, page_envelope, paginate

router = APIRouter()
logger = logging.getLogger(__name__)

ITEM_CATEGORIES = ("parts", "tools", "fluids", "consumables")
UNITS = ("piece", "liter", "kg", "meter", "set")
ITEM_STATUSES = ("active", "inactive", "discontinued")
STOCK_MANAGERS = ("admin", "manager")


# ============ Pydantic Schemas ============

class InventoryItemCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: Literal[ITEM_CATEGORIES]
    brand: Optional[str] = Field(None, max_length=100)
    part_number: Optional[str] = Field(None, max_length=100)
    unit_price: float = Field(ge=0)
    current_stock: int = Field(0, ge=0)
    minimum_stock: int = Field(0, ge=0)
    unit: Literal[UNITS]
    supplier_name: Optional[str] = Field(None, max_length=100)
    supplier_contact: Optional[str] = Field(None, max_length=100)


class InventoryItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: Optional[Literal[ITEM_CATEGORIES]] = None
    brand: Optional[str] = Field(None, max_length=100)
    part_number: Optional[str] = Field(None, max_length=100)
    unit_price: Optional[float] = Field(None, ge=0)
    minimum_stock: Optional[int] = Field(None, ge=0)
    unit: Optional[Literal[UNITS]] = None
    supplier_name: Optional[str] = Field(None, max_length=100)
    supplier_contact: Optional[str] = Field(None, max_length=100)
    status: Optional[Literal[ITEM_STATUSES]] = None


class StockUpdate(BaseModel):
    quantity: int = Field(gt=0)
    operation: Literal[STOCK_OPERATIONS]
    reason: Optional[str] = Field(None, max_length=255)


class BulkStockLine(BaseModel):
    # Validated per line by the ledger so one bad line does not reject the batch
    item_id: int
    quantity: Optional[int] = None
    operation: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=255)


class BulkStockUpdate(BaseModel):
    updates: List[BulkStockLine] = Field(min_length=1)


# ============ Helper Functions ============

def item_to_response(item: InventoryItem) -> dict:
    return {
        "id": item.id,
        "item_code": item.item_code,
        "name": item.name,
        "description": item.description,
        "category": item.category,
        "brand": item.brand,
        "part_number": item.part_number,
        "unit_price": decimal_to_float(item.unit_price),
        "current_stock": item.current_stock,
        "reserved_stock": item.reserved_stock,
        "available_stock": item.available_stock,
        "minimum_stock": item.minimum_stock,
        "is_low_stock": item.is_low_stock,
        "unit": item.unit,
        "supplier": {
            "name": item.supplier_name,
            "contact": item.supplier_contact,
        },
        "status": item.status,
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


def movement_to_response(movement: StockMovement) -> dict:
    return {
        "id": movement.id,
        "operation": movement.operation,
        "quantity": movement.quantity,
        "balance_after": movement.balance_after,
        "reserved_after": movement.reserved_after,
        "reason": movement.reason,
        "goods_request_id": movement.goods_request_id,
        "created_by": movement.created_by,
        "created_at": movement.created_at,
    }


def get_item_or_404(db: Session, item_id: int) -> InventoryItem:
    item = db.query(InventoryItem).filter(InventoryItem.id == item_id).first()
    if not item:
        raise NotFound(f"No inventory item found with id: {item_id}")
    return item


def ensure_unique_part(db: Session, name: str, part_number: Optional[str], exclude_id: Optional[int] = None):
    if not part_number:
        return
    query = db.query(InventoryItem.id).filter(
        func.lower(InventoryItem.name) == name.lower(),
        InventoryItem.part_number == part_number
    )
    if exclude_id:
        query = query.filter(InventoryItem.id != exclude_id)
    if query.first():
        raise Conflict("Item with this name and part number already exists")


def low_stock_filter():
    return InventoryItem.current_stock <= InventoryItem.minimum_stock


# ============ Inventory Endpoints ============

@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_item(
    data: InventoryItemCreate,
    current_user: User = Depends(require_roles(*STOCK_MANAGERS)),
    db: Session = Depends(get_db)
):
    ensure_unique_part(db, data.name, data.part_number)

    try:
        item = InventoryItem(
            item_code=next_identifier(db, InventoryItem.item_code, "ITM"),
            reserved_stock=0,
            status="active",
            **data.model_dump()
        )
        db.add(item)
        db.flush()
        if item.current_stock:
            StockLedger(db, current_user.id).record(item, "add", item.current_stock, "Opening stock")
        db.commit()
        db.refresh(item)
        logger.info(f"Inventory item {item.item_code} created by {current_user.user_code}")
        return {"success": True, "message": "Inventory item created successfully", "item": item_to_response(item)}
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating inventory item: {str(e)}")
        raise


@router.get("/")
async def get_items(
    category: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    low_stock: Optional[bool] = Query(None, description="Only items at or below minimum stock"),
    search: Optional[str] = Query(None, description="Search name, code, brand or part number"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(require_roles(*EMPLOYEE_ROLES)),
    db: Session = Depends(get_db)
):
    query = db.query(InventoryItem)

    if category:
        query = query.filter(InventoryItem.category == category)
    if status:
        query = query.filter(InventoryItem.status == status)
    if low_stock:
        query = query.filter(low_stock_filter())
    if search:
        search_term = f"%{search}%"
        query = query.filter(or_(
            InventoryItem.name.ilike(search_term),
            InventoryItem.item_code.ilike(search_term),
            InventoryItem.brand.ilike(search_term),
            InventoryItem.part_number.ilike(search_term)
        ))

    items, total = paginate(query.order_by(InventoryItem.name, InventoryItem.id), page, limit)
    return page_envelope("items", [item_to_response(i) for i in items], total, page, limit)


@router.get("/search")
async def search_items(
    q: str = Query(..., min_length=2, description="Search term"),
    current_user: User = Depends(require_roles(*EMPLOYEE_ROLES)),
    db: Session = Depends(get_db)
):
    search_term = f"%{q}%"
    items = db.query(InventoryItem).filter(
        InventoryItem.status == "active",
        or_(
            InventoryItem.name.ilike(search_term),
            InventoryItem.item_code.ilike(search_term),
            InventoryItem.brand.ilike(search_term),
            InventoryItem.part_number.ilike(search_term)
        )
    ).order_by(InventoryItem.name).limit(20).all()
    return {"success": True, "count": len(items), "items": [item_summary(i) for i in items]}


@router.get("/low-stock")
async def get_low_stock_items(
    current_user: User = Depends(require_roles(*EMPLOYEE_ROLES)),
    db: Session = Depends(get_db)
):
    items = db.query(InventoryItem).filter(
        InventoryItem.status == "active",
        low_stock_filter()
    ).order_by(InventoryItem.current_stock, InventoryItem.name).all()
    return {"success": True, "count": len(items), "items": [item_to_response(i) for i in items]}


@router.get("/stats")
async def get_inventory_stats(
    current_user: User = Depends(require_roles(*STOCK_MANAGERS)),
    db: Session = Depends(get_db)
):
    active = db.query(InventoryItem).filter(InventoryItem.status == "active")
    total_items = active.count()
    low_stock_count = active.filter(low_stock_filter()).count()
    out_of_stock_count = active.filter(InventoryItem.current_stock == 0).count()
    total_value = db.query(
        func.sum(InventoryItem.current_stock * InventoryItem.unit_price)
    ).filter(InventoryItem.status == "active").scalar()

    by_category = db.query(
        InventoryItem.category,
        func.count(InventoryItem.id),
        func.sum(InventoryItem.current_stock),
        func.sum(InventoryItem.current_stock * InventoryItem.unit_price)
    ).filter(InventoryItem.status == "active").group_by(InventoryItem.category).all()

    return {
        "success": True,
        "stats": {
            "total_items": total_items,
            "low_stock_items": low_stock_count,
            "out_of_stock_items": out_of_stock_count,
            "total_inventory_value": round(decimal_to_float(total_value) or 0, 2),
            "by_category": {
                category: {
                    "count": count,
                    "total_stock": int(stock or 0),
                    "total_value": round(decimal_to_float(value) or 0, 2),
                }
                for category, count, stock, value in by_category
            },
        },
    }


@router.get("/category/{category}")
async def get_items_by_category(
    category: str,
    current_user: User = Depends(require_roles(*EMPLOYEE_ROLES)),
    db: Session = Depends(get_db)
):
    if category not in ITEM_CATEGORIES:
        raise ValidationError(f"Invalid category. Must be one of: {', '.join(ITEM_CATEGORIES)}")
    items = db.query(InventoryItem).filter(
        InventoryItem.category == category,
        InventoryItem.status == "active"
    ).order_by(InventoryItem.name).all()
    return {"success": True, "count": len(items), "items": [item_to_response(i) for i in items]}


@router.get("/item/{item_code}")
async def get_item_by_code(
    item_code: str,
    current_user: User = Depends(require_roles(*EMPLOYEE_ROLES)),
    db: Session = Depends(get_db)
):
    item = db.query(InventoryItem).filter(InventoryItem.item_code == item_code.upper()).first()
    if not item:
        raise NotFound(f"No inventory item found with code: {item_code}")
    return {"success": True, "item": item_to_response(item)}


@router.patch("/bulk-update-stock")
async def bulk_update_stock(
    data: BulkStockUpdate,
    current_user: User = Depends(require_roles(*STOCK_MANAGERS)),
    db: Session = Depends(get_db)
):
    """Apply each line on its own; lines that fail are reported and the rest are kept"""
    ledger = StockLedger(db, current_user.id)
    try:
        results, errors = ledger.bulk_adjust([line.model_dump() for line in data.updates])
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Error in bulk stock update: {str(e)}")
        raise

    logger.info(
        f"Bulk stock update by {current_user.user_code}: {len(results)} applied, {len(errors)} failed"
    )
    return {
        "success": True,
        "message": f"Processed {len(results)} updates with {len(errors)} errors",
        "processed": len(results),
        "error_count": len(errors),
        "results": results,
        "errors": errors,
    }


@router.get("/{item_id}")
async def get_item(
    item_id: int,
    current_user: User = Depends(require_roles(*EMPLOYEE_ROLES)),
    db: Session = Depends(get_db)
):
    item = get_item_or_404(db, item_id)
    return {"success": True, "item": item_to_response(item)}


@router.patch("/{item_id}")
async def update_item(
    item_id: int,
    data: InventoryItemUpdate,
    current_user: User = Depends(require_roles(*STOCK_MANAGERS)),
    db: Session = Depends(get_db)
):
    """Catalogue fields only. Stock moves through the stock endpoints."""
    item = get_item_or_404(db, item_id)
    updates = data.model_dump(exclude_unset=True)

    if "name" in updates or "part_number" in updates:
        ensure_unique_part(
            db,
            updates.get("name") or item.name,
            updates.get("part_number", item.part_number),
            exclude_id=item.id
        )

    try:
        for field, value in updates.items():
            if value is None and field in ("name", "category", "unit_price", "minimum_stock", "unit", "status"):
                continue
            setattr(item, field, value)
        db.commit()
        db.refresh(item)
        logger.info(f"Inventory item {item.item_code} updated by {current_user.user_code}")
        return {"success": True, "message": "Inventory item updated successfully", "item": item_to_response(item)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating inventory item: {str(e)}")
        raise


@router.delete("/{item_id}")
async def delete_item(
    item_id: int,
    current_user: User = Depends(require_roles("admin")),
    db: Session = Depends(get_db)
):
    item = get_item_or_404(db, item_id)
    item.status = "discontinued"
    db.commit()
    logger.info(f"Inventory item {item.item_code} discontinued by {current_user.user_code}")
    return {"success": True, "message": "Inventory item discontinued successfully", "item": item_to_response(item)}


@router.patch("/{item_id}/stock")
async def update_stock(
    item_id: int,
    data: StockUpdate,
    current_user: User = Depends(require_roles(*STOCK_MANAGERS)),
    db: Session = Depends(get_db)
):
    ledger = StockLedger(db, current_user.id)
    try:
        item = ledger.adjust(item_id, data.quantity, data.operation, data.reason)
        db.commit()
        db.refresh(item)
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating stock: {str(e)}")
        raise

    message = "Stock updated successfully"
    if item.is_low_stock:
        message += ". Warning: item is at or below minimum stock"
    return {"success": True, "message": message, "item": item_to_response(item)}


@router.get("/{item_id}/movements")
async def get_stock_movements(
    item_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_roles(*STOCK_MANAGERS)),
    db: Session = Depends(get_db)
):
    get_item_or_404(db, item_id)
    query = db.query(StockMovement).filter(StockMovement.item_id == item_id).order_by(StockMovement.id.desc())
    movements, total = paginate(query, page, limit)
    return page_envelope("movements", [movement_to_response(m) for m in movements], total, page, limit)
