"""
Human-readable identifier allocation (BK00005, JOB00012, C00003, MEC004, ...).

Each namespace keeps its last number in a `sequence_counters` row. The row is
seeded once from the highest identifier already stored, then every allocation
is a single atomic increment, so concurrent creators never draw the same
number and unrelated prefixes never wait on each other.
"""
import logging

from sqlalchemy import insert, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from pitstop.models import SequenceCounter, User

logger = logging.getLogger(__name__)

ROLE_PREFIXES = {
    "customer": "C",
    "technician": "T",
    "service_advisor": "SA",
    "manager": "M",
    "admin": "A",
    "cashier": "CS",
}

DEPARTMENT_PREFIXES = {
    "mechanical": "MEC",
    "electrical": "ELE",
    "bodywork": "BOD",
    "detailing": "DET",
    "customer_service": "CS",
    "management": "MGT",
    "front_desk": "FD",
}

counters = SequenceCounter.__table__


def counter_key(column, prefix: str) -> str:
    return f"{column.class_.__tablename__}.{column.key}:{prefix}"


def highest_existing_number(db: Session, column, prefix: str) -> int:
    """Largest numeric suffix among identifiers that are exactly `prefix` + digits"""
    highest = 0
    for (value,) in db.query(column).filter(column.like(f"{prefix}%")):
        suffix = value[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest


def _seed_counter(db: Session, key: str, start: int):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(counters).values(key=key, value=start).on_conflict_do_nothing(index_elements=["key"])
    elif dialect == "sqlite":
        stmt = sqlite_insert(counters).values(key=key, value=start).on_conflict_do_nothing(index_elements=["key"])
    else:
        stmt = insert(counters).values(key=key, value=start)
    db.execute(stmt)


def next_identifier(db: Session, column, prefix: str, width: int = 5) -> str:
    """
    Allocate the next identifier for `column` under `prefix`.

    The first call for a namespace seeds the counter from existing rows,
    so after "BK00041" the next value is "BK00042" even if rows in between
    were deleted. Allocated numbers are never handed out twice.
    """
    key = counter_key(column, prefix)

    existing = db.execute(counters.select().where(counters.c.key == key)).first()
    if existing is None:
        start = highest_existing_number(db, column, prefix)
        _seed_counter(db, key, start)
        logger.info(f"Seeded identifier sequence {key} at {start}")

    number = db.execute(
        update(counters)
        .where(counters.c.key == key)
        .values(value=counters.c.value + 1)
        .returning(counters.c.value)
    ).scalar_one()

    return f"{prefix}{number:0{width}d}"


def next_user_code(db: Session, role: str) -> str:
    return next_identifier(db, User.user_code, ROLE_PREFIXES[role])


def next_employee_id(db: Session, department: str) -> str:
    return next_identifier(db, User.employee_id, DEPARTMENT_PREFIXES[department], width=3)
