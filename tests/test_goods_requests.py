import pytest

from pitstop.models import InventoryItem, StockMovement


@pytest.fixture
def pending_request(client, headers_for, make_job, make_item):
    """A service advisor's pending request for 5 brake pads"""
    def factory(stock=10, quantity=5):
        advisor, headers = headers_for("service_advisor")
        job = make_job()
        item = make_item(name="Brake Pad", current_stock=stock)
        response = client.post("/api/goods-requests/", headers=headers, json={
            "job_id": job.id,
            "items": [{"item_id": item.id, "quantity": quantity, "purpose": "Front axle"}],
        })
        assert response.status_code == 201
        return response.json()["goods_request"], item, headers
    return factory


class TestCreateGoodsRequest:
    def test_create(self, pending_request):
        goods_request, item, _ = pending_request()
        assert goods_request["request_code"] == "GR00001"
        assert goods_request["status"] == "pending"
        assert goods_request["items"][0]["item"]["id"] == item.id

    def test_unknown_item(self, client, headers_for, make_job):
        _, headers = headers_for("service_advisor")
        job = make_job()
        response = client.post("/api/goods-requests/", headers=headers,
                               json={"job_id": job.id, "items": [{"item_id": 999, "quantity": 1}]})
        assert response.status_code == 404

    def test_completed_job(self, client, headers_for, make_job, make_item):
        _, headers = headers_for("service_advisor")
        job = make_job(status="completed")
        item = make_item()
        response = client.post("/api/goods-requests/", headers=headers,
                               json={"job_id": job.id, "items": [{"item_id": item.id, "quantity": 1}]})
        assert response.status_code == 400

    def test_technician_cannot_request(self, client, headers_for, make_job, make_item):
        _, headers = headers_for("technician")
        response = client.post("/api/goods-requests/", headers=headers,
                               json={"job_id": make_job().id, "items": [{"item_id": make_item().id, "quantity": 1}]})
        assert response.status_code == 403


class TestApproval:
    def test_approve_reserves_stock(self, client, db, headers_for, pending_request):
        goods_request, item, _ = pending_request(stock=10, quantity=5)
        manager, headers = headers_for("manager")

        response = client.patch(f"/api/goods-requests/{goods_request['id']}/approve", headers=headers)
        assert response.status_code == 200
        body = response.json()["goods_request"]
        assert body["status"] == "approved"
        assert body["approved_by"]["id"] == manager.id

        db.expire_all()
        item = db.get(InventoryItem, item.id)
        assert item.current_stock == 10
        assert item.reserved_stock == 5
        assert item.available_stock == 5

    def test_insufficient_stock_keeps_request_pending(self, client, db, headers_for, pending_request):
        goods_request, item, _ = pending_request(stock=3, quantity=5)
        _, headers = headers_for("admin")

        response = client.patch(f"/api/goods-requests/{goods_request['id']}/approve", headers=headers)
        assert response.status_code == 400
        assert response.json()["msg"] == "Insufficient stock for Brake Pad. Available: 3, Requested: 5"

        fetched = client.get(f"/api/goods-requests/{goods_request['id']}", headers=headers).json()
        assert fetched["goods_request"]["status"] == "pending"
        db.expire_all()
        assert db.get(InventoryItem, item.id).reserved_stock == 0

    def test_second_approval_cannot_take_reserved_units(self, client, headers_for, make_job, pending_request):
        first, item, advisor_headers = pending_request(stock=6, quantity=5)
        _, headers = headers_for("manager")
        client.patch(f"/api/goods-requests/{first['id']}/approve", headers=headers)

        second = client.post("/api/goods-requests/", headers=advisor_headers, json={
            "job_id": make_job().id, "items": [{"item_id": item.id, "quantity": 2}],
        }).json()["goods_request"]
        response = client.patch(f"/api/goods-requests/{second['id']}/approve", headers=headers)
        assert response.status_code == 400

    def test_management_department_can_approve(self, client, headers_for, pending_request):
        goods_request, _, _ = pending_request()
        _, headers = headers_for("service_advisor", department="management")
        response = client.patch(f"/api/goods-requests/{goods_request['id']}/approve", headers=headers)
        assert response.status_code == 200

    def test_other_departments_cannot_approve(self, client, headers_for, pending_request):
        goods_request, _, _ = pending_request()
        _, headers = headers_for("cashier")
        response = client.patch(f"/api/goods-requests/{goods_request['id']}/approve", headers=headers)
        assert response.status_code == 403

    def test_reject_requires_reason(self, client, headers_for, pending_request):
        goods_request, _, _ = pending_request()
        _, headers = headers_for("manager")
        response = client.patch(f"/api/goods-requests/{goods_request['id']}/reject", json={"reason": ""},
                                headers=headers)
        assert response.status_code == 400

        response = client.patch(f"/api/goods-requests/{goods_request['id']}/reject",
                                json={"reason": "Use refurbished stock"}, headers=headers)
        body = response.json()["goods_request"]
        assert body["status"] == "rejected"
        assert body["rejection_reason"] == "Use refurbished stock"


class TestRelease:
    def test_release_consumes_reservation(self, client, db, headers_for, pending_request):
        goods_request, item, _ = pending_request(stock=10, quantity=5)
        _, headers = headers_for("manager")
        client.patch(f"/api/goods-requests/{goods_request['id']}/approve", headers=headers)

        response = client.patch(f"/api/goods-requests/{goods_request['id']}/release", headers=headers)
        assert response.status_code == 200
        assert response.json()["goods_request"]["status"] == "released"

        db.expire_all()
        item = db.get(InventoryItem, item.id)
        assert item.current_stock == 5
        assert item.reserved_stock == 0
        operations = [m.operation for m in db.query(StockMovement).filter(StockMovement.item_id == item.id)]
        assert operations == ["reserve", "release"]

    def test_release_before_approval(self, client, headers_for, pending_request):
        goods_request, _, _ = pending_request()
        _, headers = headers_for("manager")
        response = client.patch(f"/api/goods-requests/{goods_request['id']}/release", headers=headers)
        assert response.status_code == 400


class TestOwnership:
    def test_owner_updates_pending_request(self, client, pending_request):
        goods_request, _, headers = pending_request()
        response = client.patch(f"/api/goods-requests/{goods_request['id']}", json={"notes": "Urgent"},
                                headers=headers)
        assert response.json()["goods_request"]["notes"] == "Urgent"

    def test_other_requester_cannot_delete(self, client, headers_for, pending_request):
        goods_request, _, _ = pending_request()
        _, headers = headers_for("service_advisor")
        response = client.delete(f"/api/goods-requests/{goods_request['id']}", headers=headers)
        assert response.status_code == 403

    def test_approved_request_cannot_be_deleted(self, client, headers_for, pending_request):
        goods_request, _, owner_headers = pending_request()
        _, headers = headers_for("manager")
        client.patch(f"/api/goods-requests/{goods_request['id']}/approve", headers=headers)
        response = client.delete(f"/api/goods-requests/{goods_request['id']}", headers=owner_headers)
        assert response.status_code == 400
