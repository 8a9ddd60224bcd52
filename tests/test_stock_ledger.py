import pytest

from pitstop.errors import InsufficientStock, NotFound, ValidationError
from pitstop.models import StockMovement
from pitstop.services.stock_ledger import StockLedger


class TestAdjust:
    def test_add_increases_stock(self, db, make_item):
        item = make_item(current_stock=5)
        updated = StockLedger(db).adjust(item.id, 3, "add", "Delivery")
        db.commit()
        assert updated.current_stock == 8

    def test_subtract_within_stock(self, db, make_item):
        item = make_item(current_stock=5)
        updated = StockLedger(db).adjust(item.id, 5, "subtract")
        db.commit()
        assert updated.current_stock == 0

    def test_subtract_more_than_stock_fails(self, db, make_item):
        item = make_item(current_stock=3)
        with pytest.raises(InsufficientStock) as exc:
            StockLedger(db).adjust(item.id, 4, "subtract")
        assert exc.value.available == 3
        assert exc.value.requested == 4
        db.rollback()
        db.refresh(item)
        assert item.current_stock == 3

    def test_subtract_leaves_reserved_units_alone(self, db, make_item):
        item = make_item(current_stock=5, reserved_stock=4)
        with pytest.raises(InsufficientStock):
            StockLedger(db).adjust(item.id, 2, "subtract")

    @pytest.mark.parametrize("quantity", [0, -1, None])
    def test_quantity_must_be_positive(self, db, make_item, quantity):
        item = make_item()
        with pytest.raises(ValidationError):
            StockLedger(db).adjust(item.id, quantity, "add")

    def test_unknown_operation(self, db, make_item):
        item = make_item()
        with pytest.raises(ValidationError):
            StockLedger(db).adjust(item.id, 1, "set")

    def test_unknown_item(self, db):
        with pytest.raises(NotFound):
            StockLedger(db).adjust(999, 1, "add")

    def test_movement_is_recorded(self, db, make_item, make_user):
        manager = make_user("manager")
        item = make_item(current_stock=5)
        StockLedger(db, manager.id).adjust(item.id, 2, "subtract", "Workshop use")
        db.commit()

        movement = db.query(StockMovement).filter(StockMovement.item_id == item.id).one()
        assert movement.operation == "subtract"
        assert movement.quantity == 2
        assert movement.balance_after == 3
        assert movement.created_by == manager.id


class TestBulkAdjust:
    def test_failed_lines_are_reported_and_others_applied(self, db, make_item):
        oil = make_item(name="Engine Oil", current_stock=10)
        filters = make_item(name="Oil Filter", current_stock=1)

        results, errors = StockLedger(db).bulk_adjust([
            {"item_id": oil.id, "quantity": 4, "operation": "subtract"},
            {"item_id": filters.id, "quantity": 2, "operation": "subtract"},
            {"item_id": 999, "quantity": 1, "operation": "add"},
            {"item_id": filters.id, "quantity": 6, "operation": "add"},
        ])
        db.commit()

        assert [r["item_id"] for r in results] == [oil.id, filters.id]
        assert [(e["index"], e["item_id"]) for e in errors] == [(1, filters.id), (2, 999)]
        assert errors[0]["error"].startswith("Insufficient stock for Oil Filter")

        db.refresh(oil)
        db.refresh(filters)
        assert oil.current_stock == 6
        assert filters.current_stock == 7


class TestReservations:
    def test_reserve_holds_available_stock(self, db, make_item):
        item = make_item(current_stock=5)
        updated = StockLedger(db).reserve(item.id, 3)
        assert updated.reserved_stock == 3
        assert updated.available_stock == 2

    def test_reserve_beyond_available_fails(self, db, make_item):
        item = make_item(current_stock=5, reserved_stock=3)
        with pytest.raises(InsufficientStock) as exc:
            StockLedger(db).reserve(item.id, 3)
        assert exc.value.available == 2

    def test_consume_reserved_drops_both_counters(self, db, make_item):
        item = make_item(current_stock=5, reserved_stock=3)
        updated = StockLedger(db).consume_reserved(item.id, 3)
        assert updated.current_stock == 2
        assert updated.reserved_stock == 0

    def test_consume_more_than_reserved_fails(self, db, make_item):
        item = make_item(current_stock=5, reserved_stock=1)
        with pytest.raises(InsufficientStock):
            StockLedger(db).consume_reserved(item.id, 2)

    def test_low_stock_flag(self, db, make_item):
        item = make_item(current_stock=2, minimum_stock=2)
        assert StockLedger.is_low_stock(item)
        updated = StockLedger(db).adjust(item.id, 1, "add")
        assert not StockLedger.is_low_stock(updated)
