"""
Lifecycle rules for bookings, jobs, invoices, leave requests and goods requests.

Each machine holds an allowed-transition table plus guards keyed by the
target status. `transition()` runs every guard first and only then returns
the new status with the fields to stamp, so a rejected move changes nothing.
Callers apply the result inside the same database transaction as any
dependent writes (stock reservations and so on).
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from pitstop.errors import InsufficientStock, InvalidTransition, ValidationError

Guard = Callable[[str, str, dict], Optional[dict]]

PAYMENT_METHODS = ("cash", "card", "bank_transfer", "online")
INVOICE_PAYMENT_FIELDS = frozenset({"payment_method", "paid_at", "notes"})


@dataclass
class TransitionResult:
    status: str
    stamps: dict = field(default_factory=dict)

    def apply_to(self, entity):
        entity.status = self.status
        for name, value in self.stamps.items():
            setattr(entity, name, value)
        return entity


class LifecycleMachine:
    def __init__(self, entity: str, table: Dict[str, Iterable[str]], guards: Dict[str, List[Guard]] = None):
        self.entity = entity
        self.table: Dict[str, FrozenSet[str]] = {state: frozenset(targets) for state, targets in table.items()}
        self.guards = guards or {}

    @property
    def states(self) -> FrozenSet[str]:
        states = set(self.table)
        for targets in self.table.values():
            states |= targets
        return frozenset(states)

    def allowed_from(self, current: str) -> FrozenSet[str]:
        return self.table.get(current, frozenset())

    def can_transition(self, current: str, requested: str) -> bool:
        return requested in self.allowed_from(current)

    def is_terminal(self, status: str) -> bool:
        return not self.allowed_from(status)

    def transition(self, current: str, requested: str, context: dict = None) -> TransitionResult:
        if not self.can_transition(current, requested):
            raise InvalidTransition(self.entity, current, requested)

        context = dict(context or {})
        context.setdefault("now", datetime.utcnow())

        stamps = {}
        for guard in self.guards.get(requested, []):
            stamps.update(guard(current, requested, context) or {})
        return TransitionResult(status=requested, stamps=stamps)


# ============ Guards ============

def stamp_completed_at(current, requested, context):
    return {"completed_at": context["now"]}


def require_labourer(current, requested, context):
    if context.get("labourer_count", 0) < 1:
        raise ValidationError("At least one labourer must be assigned before work can start")
    if context.get("started_at") is None:
        return {"started_at": context["now"]}
    return {}


def freeze_job_hours(current, requested, context):
    actual_hours = Decimal(str(context.get("logged_hours", 0)))
    hourly_rate = Decimal(str(context.get("hourly_rate", 0)))
    return {
        "completed_at": context["now"],
        "actual_hours": actual_hours,
        "labour_cost": actual_hours * hourly_rate,
    }


def require_payment_method(current, requested, context):
    payment_method = context.get("payment_method")
    if not payment_method:
        raise ValidationError("Payment method is required when marking invoice as paid")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method: {payment_method}")
    return {
        "payment_method": payment_method,
        "paid_at": context.get("paid_at") or context["now"],
    }


def stamp_decision(current, requested, context):
    return {"approved_by": context.get("actor_id"), "approved_at": context["now"]}


def require_rejection_reason(current, requested, context):
    reason = (context.get("reason") or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required")
    return {
        "approved_by": context.get("actor_id"),
        "approved_at": context["now"],
        "rejection_reason": reason,
    }


def require_stock_for_lines(current, requested, context):
    # Each line: {"item_name", "requested", "available"}
    for line in context.get("lines", []):
        if line["available"] < line["requested"]:
            raise InsufficientStock(line["item_name"], line["available"], line["requested"])
    return {}


def stamp_release(current, requested, context):
    return {"released_by": context.get("actor_id"), "released_at": context["now"]}


# ============ Machines ============

BOOKING = LifecycleMachine(
    "booking",
    {
        "pending": {"inspecting", "cancelled"},
        "inspecting": {"working", "cancelled"},
        "working": {"completed", "cancelled"},
        "completed": set(),
        "cancelled": set(),
    },
    guards={"completed": [stamp_completed_at]},
)

JOB = LifecycleMachine(
    "job",
    {
        "pending": {"working", "cancelled"},
        "working": {"completed", "on_hold", "cancelled"},
        "on_hold": {"working", "cancelled"},
        "completed": set(),
        "cancelled": set(),
    },
    guards={
        "working": [require_labourer],
        "completed": [freeze_job_hours],
    },
)

# Moves a technician may make on a job they are assigned to
TECHNICIAN_JOB_MOVES = {
    "pending": {"working"},
    "working": {"completed", "on_hold"},
    "on_hold": {"working"},
}

INVOICE = LifecycleMachine(
    "invoice",
    {
        "draft": {"pending", "paid", "cancelled"},
        "pending": {"paid", "cancelled"},
        "paid": set(),
        "cancelled": set(),
    },
    guards={"paid": [require_payment_method]},
)

LEAVE = LifecycleMachine(
    "leave request",
    {
        "pending": {"approved", "rejected"},
        "approved": set(),
        "rejected": set(),
    },
    guards={
        "approved": [stamp_decision],
        "rejected": [require_rejection_reason],
    },
)

GOODS_REQUEST = LifecycleMachine(
    "goods request",
    {
        "pending": {"approved", "rejected"},
        "approved": {"released"},
        "rejected": set(),
        "released": set(),
    },
    guards={
        "approved": [require_stock_for_lines, stamp_decision],
        "rejected": [require_rejection_reason],
        "released": [stamp_release],
    },
)


def check_invoice_edit(status: str, fields: Iterable[str]):
    """Paid and cancelled invoices only accept payment metadata and notes"""
    if not INVOICE.is_terminal(status):
        return
    blocked = sorted(set(fields) - INVOICE_PAYMENT_FIELDS)
    if blocked:
        raise ValidationError(
            f"Cannot modify {', '.join(blocked)} on a {status} invoice. "
            f"Only payment method, payment date and notes can be changed"
        )


def check_payment_kept(status: str, updates: dict):
    """A paid invoice cannot lose its payment method or payment date"""
    if status != "paid":
        return
    cleared = [name for name in ("payment_method", "paid_at") if name in updates and updates[name] is None]
    if cleared:
        raise ValidationError("A paid invoice must keep its payment method and payment date")
