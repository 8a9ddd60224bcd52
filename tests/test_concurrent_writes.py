"""
Parallel writers, each with its own session on a file-backed SQLite database.

The barrier makes every thread finish its reads before any of them writes,
so the check in each guarded operation sees the same stale state.
"""
import asyncio
import threading
from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pitstop.api import goods_requests as goods_api
from pitstop.database import Base
from pitstop.errors import InsufficientStock, InvalidTransition
from pitstop.models import (
    Booking, GoodsRequest, GoodsRequestLine, InventoryItem, Job, StockMovement, User, Vehicle
)
from pitstop.services.auth import register_failed_login
from pitstop.services.identifiers import next_identifier
from pitstop.services.stock_ledger import StockLedger

BARRIER_TIMEOUT = 10


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'workshop.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def run_in_threads(session_factory, work, count=2):
    """Run work(db) in `count` threads; returns ("ok", value) or ("error", exc) per thread"""
    outcomes = [None] * count

    def runner(index):
        db = session_factory()
        try:
            outcomes[index] = ("ok", work(db))
        except Exception as e:
            db.rollback()
            outcomes[index] = ("error", e)
        finally:
            db.close()

    threads = [threading.Thread(target=runner, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


def successes(outcomes):
    return [value for kind, value in outcomes if kind == "ok"]


def failures(outcomes):
    return [value for kind, value in outcomes if kind == "error"]


def add_user(db, role, code, email, **fields):
    user = User(
        user_code=code,
        email=email,
        hashed_password="not-a-real-hash",
        role=role,
        status="active",
        first_name="Nimal",
        last_name="Silva",
        phone_number="+94771234567",
        login_attempts=0,
        **fields,
    )
    db.add(user)
    db.flush()
    return user


def add_item(db, current_stock=10, reserved_stock=0):
    item = InventoryItem(
        item_code="ITM00001",
        name="Oil Filter",
        category="parts",
        unit_price=12,
        current_stock=current_stock,
        reserved_stock=reserved_stock,
        minimum_stock=1,
        unit="piece",
        status="active",
    )
    db.add(item)
    db.flush()
    return item


def seed_goods_request(session_factory, status="pending", quantity=3, current_stock=10, reserved_stock=0):
    """Returns (manager id, goods request id, item id)"""
    db = session_factory()
    try:
        manager = add_user(db, "manager", "M00001", "manager@pitstop.test",
                           department="management", employee_id="MGT001")
        customer = add_user(db, "customer", "C00001", "customer@pitstop.test")
        vehicle = Vehicle(
            vehicle_code="VEH00001", registration_number="CAB-1234", owner_id=customer.id,
            make="Toyota", model="Axio", year=2017, fuel_type="petrol", transmission="automatic",
        )
        db.add(vehicle)
        db.flush()
        booking = Booking(
            booking_code="BK00001", customer_id=customer.id, vehicle_id=vehicle.id,
            service_type="maintenance", scheduled_date=date.today() + timedelta(days=1),
            time_slot="09:00-11:00", status="inspecting",
        )
        db.add(booking)
        db.flush()
        job = Job(
            job_code="JOB00001", booking_id=booking.id, title="Oil service",
            description="Replace oil and filter", category="maintenance", estimated_hours=1,
        )
        db.add(job)
        item = add_item(db, current_stock=current_stock, reserved_stock=reserved_stock)
        db.flush()
        goods_request = GoodsRequest(
            request_code="GR00001", job_id=job.id, requested_by=manager.id, status=status,
            lines=[GoodsRequestLine(item_id=item.id, quantity=quantity)],
        )
        db.add(goods_request)
        db.commit()
        return manager.id, goods_request.id, item.id
    finally:
        db.close()


def wait_after_reading_request(monkeypatch, barrier):
    original = goods_api.get_goods_request_or_404

    def read_then_wait(db, request_id):
        goods_request = original(db, request_id)
        barrier.wait(timeout=BARRIER_TIMEOUT)
        return goods_request

    monkeypatch.setattr(goods_api, "get_goods_request_or_404", read_then_wait)


def load_item(session_factory, item_id):
    db = session_factory()
    try:
        item = db.get(InventoryItem, item_id)
        return item.current_stock, item.reserved_stock
    finally:
        db.close()


class TestGoodsRequestRace:
    def test_parallel_approvals_reserve_once(self, session_factory, monkeypatch):
        manager_id, request_id, item_id = seed_goods_request(session_factory)
        wait_after_reading_request(monkeypatch, threading.Barrier(2))

        def approve(db):
            manager = db.get(User, manager_id)
            return asyncio.run(goods_api.approve_goods_request(request_id, current_user=manager, db=db))

        outcomes = run_in_threads(session_factory, approve)

        assert len(successes(outcomes)) == 1
        assert [type(e) for e in failures(outcomes)] == [InvalidTransition]
        assert load_item(session_factory, item_id) == (10, 3)

        db = session_factory()
        try:
            reservations = db.query(StockMovement).filter(StockMovement.operation == "reserve").count()
            assert reservations == 1
            assert db.get(GoodsRequest, request_id).status == "approved"
        finally:
            db.close()

    def test_parallel_releases_consume_once(self, session_factory, monkeypatch):
        # Another approved request holds 3 more units of the same item
        manager_id, request_id, item_id = seed_goods_request(
            session_factory, status="approved", current_stock=10, reserved_stock=6
        )
        wait_after_reading_request(monkeypatch, threading.Barrier(2))

        def release(db):
            manager = db.get(User, manager_id)
            return asyncio.run(goods_api.release_goods(request_id, current_user=manager, db=db))

        outcomes = run_in_threads(session_factory, release)

        assert len(successes(outcomes)) == 1
        assert [type(e) for e in failures(outcomes)] == [InvalidTransition]
        assert load_item(session_factory, item_id) == (7, 3)

    def test_approve_and_reject_race(self, session_factory, monkeypatch):
        manager_id, request_id, item_id = seed_goods_request(session_factory)
        wait_after_reading_request(monkeypatch, threading.Barrier(2))
        turn = iter(["approve", "reject"])
        lock = threading.Lock()

        def decide(db):
            with lock:
                action = next(turn)
            manager = db.get(User, manager_id)
            if action == "approve":
                return asyncio.run(goods_api.approve_goods_request(request_id, current_user=manager, db=db))
            rejection = goods_api.GoodsRequestRejection(reason="Wrong part number")
            return asyncio.run(goods_api.reject_goods_request(request_id, rejection, current_user=manager, db=db))

        outcomes = run_in_threads(session_factory, decide)

        assert len(successes(outcomes)) == 1
        db = session_factory()
        try:
            final_status = db.get(GoodsRequest, request_id).status
        finally:
            db.close()
        expected_reserved = 3 if final_status == "approved" else 0
        assert load_item(session_factory, item_id) == (10, expected_reserved)


class TestStockSubtractRace:
    def test_last_units_go_to_one_caller(self, session_factory, monkeypatch):
        db = session_factory()
        item_id = add_item(db, current_stock=5).id
        db.commit()
        db.close()

        barrier = threading.Barrier(2)
        original = StockLedger.get_item

        def read_then_wait(self, item_id):
            item = original(self, item_id)
            barrier.wait(timeout=BARRIER_TIMEOUT)
            return item

        monkeypatch.setattr(StockLedger, "get_item", read_then_wait)

        def subtract(db):
            item = StockLedger(db).adjust(item_id, 3, "subtract", "Workshop use")
            db.commit()
            return item.current_stock

        outcomes = run_in_threads(session_factory, subtract)

        assert successes(outcomes) == [2]
        assert [type(e) for e in failures(outcomes)] == [InsufficientStock]
        assert load_item(session_factory, item_id) == (2, 0)


class TestIdentifierRace:
    def test_parallel_allocations_are_distinct(self, session_factory):
        barrier = threading.Barrier(6)

        def allocate(db):
            barrier.wait(timeout=BARRIER_TIMEOUT)
            code = next_identifier(db, Booking.booking_code, "BK")
            db.commit()
            return code

        outcomes = run_in_threads(session_factory, allocate, count=6)

        assert failures(outcomes) == []
        assert sorted(successes(outcomes)) == [f"BK{n:05d}" for n in range(1, 7)]


class TestFailedLoginRace:
    def test_every_parallel_failure_counts(self, session_factory):
        db = session_factory()
        user_id = add_user(db, "customer", "C00001", "login@pitstop.test").id
        db.commit()
        db.close()

        barrier = threading.Barrier(5)

        def fail_login(db):
            user = db.get(User, user_id)
            barrier.wait(timeout=BARRIER_TIMEOUT)
            attempts = register_failed_login(db, user)
            db.commit()
            return attempts

        outcomes = run_in_threads(session_factory, fail_login, count=5)

        assert failures(outcomes) == []
        assert sorted(successes(outcomes)) == [1, 2, 3, 4, 5]

        db = session_factory()
        try:
            user = db.get(User, user_id)
            assert user.login_attempts == 5
            assert user.is_locked
        finally:
            db.close()
