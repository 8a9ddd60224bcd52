"""
Goods request endpoints.

Approval holds stock for every line and release hands it out, so a unit can
never be promised to two approved requests.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import func, update
from sqlalchemy.orm import Session
import logging

from pitstop.api.projections import item_summary, user_summary
from pitstop.database import get_db
from pitstop.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from pitstop.models import GoodsRequest, GoodsRequestLine, InventoryItem, Job, User
from pitstop.services import transitions
from pitstop.services.dependency import require_roles, require_roles_or_department
from pitstop.services.identifiers import next_identifier
from pitstop.services.stock_ledger import StockLedger
from pitstop.utils.pagination import page_envelope, paginate

router = APIRouter()
logger = logging.getLogger(__name__)

REQUESTERS = ("service_advisor", "manager", "admin")
APPROVER_ROLES = ("admin", "manager")
APPROVER_DEPARTMENTS = ("management",)

require_approver = require_roles_or_department(APPROVER_ROLES, APPROVER_DEPARTMENTS)

goods_requests = GoodsRequest.__table__


# ============ Pydantic Schemas ============

class GoodsRequestItem(BaseModel):
    item_id: int
    quantity: int = Field(ge=1)
    purpose: Optional[str] = Field(None, max_length=255)


class GoodsRequestCreate(BaseModel):
    job_id: int
    items: List[GoodsRequestItem] = Field(min_length=1)
    notes: Optional[str] = Field(None, max_length=1000)


class GoodsRequestUpdate(BaseModel):
    items: Optional[List[GoodsRequestItem]] = Field(None, min_length=1)
    notes: Optional[str] = Field(None, max_length=1000)


class GoodsRequestRejection(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


# ============ Helper Functions ============

def goods_request_to_response(goods_request: GoodsRequest) -> dict:
    job = goods_request.job
    return {
        "id": goods_request.id,
        "request_code": goods_request.request_code,
        "job": {
            "id": job.id,
            "job_code": job.job_code,
            "title": job.title,
            "status": job.status,
        } if job else None,
        "requested_by": user_summary(goods_request.requester),
        "items": [
            {
                "id": line.id,
                "item": item_summary(line.item),
                "quantity": line.quantity,
                "purpose": line.purpose,
            }
            for line in goods_request.lines
        ],
        "status": goods_request.status,
        "notes": goods_request.notes,
        "approved_by": user_summary(goods_request.approver),
        "approved_at": goods_request.approved_at,
        "rejection_reason": goods_request.rejection_reason,
        "released_by": user_summary(goods_request.releaser),
        "released_at": goods_request.released_at,
        "created_at": goods_request.created_at,
        "updated_at": goods_request.updated_at,
    }


def get_goods_request_or_404(db: Session, request_id: int) -> GoodsRequest:
    goods_request = db.query(GoodsRequest).filter(GoodsRequest.id == request_id).first()
    if not goods_request:
        raise NotFound(f"No goods request found with id: {request_id}")
    return goods_request


def is_approver(user: User) -> bool:
    return user.role in APPROVER_ROLES or (user.is_employee and user.department in APPROVER_DEPARTMENTS)


def build_lines(db: Session, items: List[GoodsRequestItem]) -> List[GoodsRequestLine]:
    """Every requested item must exist and be active"""
    item_ids = {line.item_id for line in items}
    found = {
        item.id: item
        for item in db.query(InventoryItem).filter(InventoryItem.id.in_(item_ids)).all()
    }
    for item_id in item_ids:
        item = found.get(item_id)
        if item is None:
            raise NotFound(f"Inventory item {item_id} not found")
        if item.status != "active":
            raise ValidationError(f"Inventory item {item.name} is not active")

    return [
        GoodsRequestLine(item_id=line.item_id, quantity=line.quantity, purpose=line.purpose)
        for line in items
    ]


def ensure_pending_owner(goods_request: GoodsRequest, user: User, action: str):
    if goods_request.requested_by != user.id:
        raise Forbidden(f"Not authorized to {action} this goods request")
    if goods_request.status != "pending":
        raise ValidationError(f"Only pending goods requests can be {action}d")


def stock_lines(goods_request: GoodsRequest) -> List[dict]:
    """Requested quantity against unreserved stock, summed per item"""
    requested = {}
    for line in goods_request.lines:
        requested[line.item_id] = requested.get(line.item_id, 0) + line.quantity
    by_id = {line.item_id: line.item for line in goods_request.lines}
    return [
        {
            "item_name": by_id[item_id].name,
            "requested": quantity,
            "available": by_id[item_id].available_stock,
        }
        for item_id, quantity in requested.items()
    ]


def claim_transition(db: Session, goods_request: GoodsRequest, result: transitions.TransitionResult):
    """
    Move the stored row from the status we read to the new one.

    The status check lives in the WHERE clause, so when two approvers act on
    the same request only the first UPDATE matches a row.
    """
    current = goods_request.status
    claimed = db.execute(
        update(goods_requests)
        .where(goods_requests.c.id == goods_request.id)
        .where(goods_requests.c.status == current)
        .values(status=result.status, **result.stamps)
    )
    if claimed.rowcount == 0:
        db.refresh(goods_request)
        raise InvalidTransition("goods request", goods_request.status, result.status)
    result.apply_to(goods_request)


# ============ Goods Request Endpoints ============

@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_goods_request(
    data: GoodsRequestCreate,
    current_user: User = Depends(require_roles(*REQUESTERS)),
    db: Session = Depends(get_db)
):
    job = db.query(Job).filter(Job.id == data.job_id).first()
    if not job:
        raise NotFound("Job not found")
    if transitions.JOB.is_terminal(job.status):
        raise ValidationError(f"Cannot request goods for a {job.status} job")

    try:
        goods_request = GoodsRequest(
            request_code=next_identifier(db, GoodsRequest.request_code, "GR"),
            job_id=job.id,
            requested_by=current_user.id,
            status="pending",
            notes=data.notes,
            lines=build_lines(db, data.items),
        )
        db.add(goods_request)
        db.commit()
        db.refresh(goods_request)
        logger.info(f"Goods request {goods_request.request_code} created by {current_user.user_code}")
        return {
            "success": True,
            "message": "Goods request created successfully",
            "goods_request": goods_request_to_response(goods_request),
        }
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating goods request: {str(e)}")
        raise


@router.get("/")
async def get_goods_requests(
    status: Optional[str] = Query(None),
    job_id: Optional[int] = Query(None),
    requested_by: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(require_approver),
    db: Session = Depends(get_db)
):
    query = db.query(GoodsRequest)
    if status:
        query = query.filter(GoodsRequest.status == status)
    if job_id:
        query = query.filter(GoodsRequest.job_id == job_id)
    if requested_by:
        query = query.filter(GoodsRequest.requested_by == requested_by)

    requests, total = paginate(query.order_by(GoodsRequest.created_at.desc(), GoodsRequest.id.desc()), page, limit)
    return page_envelope("goods_requests", [goods_request_to_response(r) for r in requests], total, page, limit)


@router.get("/my-requests")
async def get_my_goods_requests(
    status: Optional[str] = Query(None),
    current_user: User = Depends(require_roles(*REQUESTERS)),
    db: Session = Depends(get_db)
):
    query = db.query(GoodsRequest).filter(GoodsRequest.requested_by == current_user.id)
    if status:
        query = query.filter(GoodsRequest.status == status)
    requests = query.order_by(GoodsRequest.created_at.desc(), GoodsRequest.id.desc()).all()
    return {"success": True, "count": len(requests), "goods_requests": [goods_request_to_response(r) for r in requests]}


@router.get("/pending")
async def get_pending_goods_requests(
    current_user: User = Depends(require_approver),
    db: Session = Depends(get_db)
):
    requests = db.query(GoodsRequest).filter(
        GoodsRequest.status == "pending"
    ).order_by(GoodsRequest.created_at, GoodsRequest.id).all()
    return {"success": True, "count": len(requests), "goods_requests": [goods_request_to_response(r) for r in requests]}


@router.get("/stats")
async def get_goods_request_stats(
    current_user: User = Depends(require_approver),
    db: Session = Depends(get_db)
):
    by_status = dict(db.query(GoodsRequest.status, func.count(GoodsRequest.id)).group_by(GoodsRequest.status).all())
    released_units = db.query(func.sum(GoodsRequestLine.quantity)).join(GoodsRequest).filter(
        GoodsRequest.status == "released"
    ).scalar()
    return {
        "success": True,
        "stats": {
            "total_requests": sum(by_status.values()),
            "by_status": {s: by_status.get(s, 0) for s in transitions.GOODS_REQUEST.states},
            "released_units": int(released_units or 0),
        },
    }


@router.get("/{request_id}")
async def get_goods_request(
    request_id: int,
    current_user: User = Depends(require_roles(*REQUESTERS, "technician", "cashier")),
    db: Session = Depends(get_db)
):
    goods_request = get_goods_request_or_404(db, request_id)
    if goods_request.requested_by != current_user.id and not is_approver(current_user):
        raise Forbidden("Not authorized to view this goods request")
    return {"success": True, "goods_request": goods_request_to_response(goods_request)}


@router.patch("/{request_id}")
async def update_goods_request(
    request_id: int,
    data: GoodsRequestUpdate,
    current_user: User = Depends(require_roles(*REQUESTERS)),
    db: Session = Depends(get_db)
):
    goods_request = get_goods_request_or_404(db, request_id)
    ensure_pending_owner(goods_request, current_user, "update")

    try:
        if data.items is not None:
            goods_request.lines = build_lines(db, data.items)
        if data.notes is not None:
            goods_request.notes = data.notes
        db.commit()
        db.refresh(goods_request)
        logger.info(f"Goods request {goods_request.request_code} updated by {current_user.user_code}")
        return {
            "success": True,
            "message": "Goods request updated successfully",
            "goods_request": goods_request_to_response(goods_request),
        }
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating goods request: {str(e)}")
        raise


@router.delete("/{request_id}")
async def delete_goods_request(
    request_id: int,
    current_user: User = Depends(require_roles(*REQUESTERS)),
    db: Session = Depends(get_db)
):
    goods_request = get_goods_request_or_404(db, request_id)
    ensure_pending_owner(goods_request, current_user, "delete")

    request_code = goods_request.request_code
    db.delete(goods_request)
    db.commit()
    logger.info(f"Goods request {request_code} deleted by {current_user.user_code}")
    return {"success": True, "message": "Goods request deleted successfully"}


@router.patch("/{request_id}/approve")
async def approve_goods_request(
    request_id: int,
    current_user: User = Depends(require_approver),
    db: Session = Depends(get_db)
):
    goods_request = get_goods_request_or_404(db, request_id)
    result = transitions.GOODS_REQUEST.transition(goods_request.status, "approved", {
        "actor_id": current_user.id,
        "lines": stock_lines(goods_request),
    })

    ledger = StockLedger(db, current_user.id)
    try:
        claim_transition(db, goods_request, result)
        for line in goods_request.lines:
            ledger.reserve(line.item_id, line.quantity, goods_request.id)
        db.commit()
        db.refresh(goods_request)
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error approving goods request: {str(e)}")
        raise

    logger.info(f"Goods request {goods_request.request_code} approved by {current_user.user_code}")
    return {
        "success": True,
        "message": "Goods request approved successfully",
        "goods_request": goods_request_to_response(goods_request),
    }


@router.patch("/{request_id}/reject")
async def reject_goods_request(
    request_id: int,
    data: GoodsRequestRejection,
    current_user: User = Depends(require_approver),
    db: Session = Depends(get_db)
):
    goods_request = get_goods_request_or_404(db, request_id)
    result = transitions.GOODS_REQUEST.transition(goods_request.status, "rejected", {
        "actor_id": current_user.id,
        "reason": data.reason,
    })
    claim_transition(db, goods_request, result)
    db.commit()
    db.refresh(goods_request)
    logger.info(f"Goods request {goods_request.request_code} rejected by {current_user.user_code}")
    return {
        "success": True,
        "message": "Goods request rejected",
        "goods_request": goods_request_to_response(goods_request),
    }


@router.patch("/{request_id}/release")
async def release_goods(
    request_id: int,
    current_user: User = Depends(require_approver),
    db: Session = Depends(get_db)
):
    goods_request = get_goods_request_or_404(db, request_id)
    result = transitions.GOODS_REQUEST.transition(goods_request.status, "released", {
        "actor_id": current_user.id,
    })

    ledger = StockLedger(db, current_user.id)
    try:
        claim_transition(db, goods_request, result)
        for line in goods_request.lines:
            ledger.consume_reserved(line.item_id, line.quantity, goods_request.id)
        db.commit()
        db.refresh(goods_request)
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error releasing goods: {str(e)}")
        raise

    logger.info(f"Goods request {goods_request.request_code} released by {current_user.user_code}")
    return {
        "success": True,
        "message": "Goods released successfully",
        "goods_request": goods_request_to_response(goods_request),
    }
