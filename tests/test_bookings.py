from datetime import date, timedelta

TOMORROW = (date.today() + timedelta(days=1)).isoformat()


def booking_payload(customer_id, vehicle_id, **overrides):
    payload = {
        "customer_id": customer_id,
        "vehicle_id": vehicle_id,
        "service_type": "repair",
        "scheduled_date": TOMORROW,
        "time_slot": "09:00-11:00",
        "description": "Grinding noise from the front brakes",
        "priority": "high",
    }
    payload.update(overrides)
    return payload


class TestCreateBooking:
    def test_cashier_creates_booking(self, client, headers_for, make_user, make_vehicle):
        _, headers = headers_for("cashier")
        customer = make_user("customer")
        vehicle = make_vehicle(customer)

        response = client.post("/api/bookings/", json=booking_payload(customer.id, vehicle.id), headers=headers)
        assert response.status_code == 201
        booking = response.json()["booking"]
        assert booking["booking_code"] == "BK00001"
        assert booking["status"] == "pending"
        assert booking["vehicle"]["id"] == vehicle.id

    def test_same_slot_is_taken(self, client, headers_for, make_user, make_vehicle):
        _, headers = headers_for("cashier")
        customer = make_user("customer")
        vehicle = make_vehicle(customer)
        client.post("/api/bookings/", json=booking_payload(customer.id, vehicle.id), headers=headers)

        response = client.post("/api/bookings/", json=booking_payload(customer.id, vehicle.id), headers=headers)
        assert response.status_code == 400
        assert response.json()["msg"] == "Vehicle already has a booking for this date and time slot"

        other_slot = booking_payload(customer.id, vehicle.id, time_slot="13:00-15:00")
        assert client.post("/api/bookings/", json=other_slot, headers=headers).status_code == 201

    def test_cancelled_booking_frees_slot(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("cashier")
        customer = make_user("customer")
        cancelled = make_booking(customer, status="cancelled")

        payload = booking_payload(customer.id, cancelled.vehicle_id)
        assert client.post("/api/bookings/", json=payload, headers=headers).status_code == 201

    def test_vehicle_must_belong_to_customer(self, client, headers_for, make_user, make_vehicle):
        _, headers = headers_for("cashier")
        customer = make_user("customer")
        vehicle = make_vehicle(make_user("customer"))
        response = client.post("/api/bookings/", json=booking_payload(customer.id, vehicle.id), headers=headers)
        assert response.status_code == 400
        assert response.json()["msg"] == "Vehicle does not belong to this customer"

    def test_past_date_rejected(self, client, headers_for, make_user, make_vehicle):
        _, headers = headers_for("cashier")
        customer = make_user("customer")
        vehicle = make_vehicle(customer)
        yesterday = (date.today() - timedelta(days=1)).isoformat()
        response = client.post("/api/bookings/", json=booking_payload(customer.id, vehicle.id, scheduled_date=yesterday),
                               headers=headers)
        assert response.status_code == 400

    def test_technician_cannot_book(self, client, headers_for, make_user, make_vehicle):
        _, headers = headers_for("technician")
        customer = make_user("customer")
        vehicle = make_vehicle(customer)
        response = client.post("/api/bookings/", json=booking_payload(customer.id, vehicle.id), headers=headers)
        assert response.status_code == 403


class TestBookingWorkflow:
    def test_assign_inspector_starts_inspection(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("cashier")
        booking = make_booking(make_user("customer"))
        advisor = make_user("service_advisor")

        response = client.patch(f"/api/bookings/{booking.id}/assign-inspector",
                                json={"inspector_id": advisor.id}, headers=headers)
        assert response.status_code == 200
        body = response.json()["booking"]
        assert body["status"] == "inspecting"
        assert body["assigned_inspector"]["id"] == advisor.id
        assert len(body["notes"]) == 1

    def test_inspector_must_be_service_advisor(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("manager")
        booking = make_booking(make_user("customer"))
        technician = make_user("technician")
        response = client.patch(f"/api/bookings/{booking.id}/assign-inspector",
                                json={"inspector_id": technician.id}, headers=headers)
        assert response.status_code == 400

    def test_invalid_status_jump(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("manager")
        booking = make_booking(make_user("customer"))
        response = client.patch(f"/api/bookings/{booking.id}/status", json={"status": "completed"}, headers=headers)
        assert response.status_code == 400
        assert response.json()["msg"] == "Invalid booking status transition from pending to completed"

    def test_completion_stamps_time(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("service_advisor")
        booking = make_booking(make_user("customer"), status="working")
        response = client.patch(f"/api/bookings/{booking.id}/status", json={"status": "completed"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["booking"]["completed_at"] is not None

    def test_cancel_with_reason(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("cashier")
        booking = make_booking(make_user("customer"))
        response = client.patch(f"/api/bookings/{booking.id}/cancel", json={"reason": "Customer travelling"},
                                headers=headers)
        body = response.json()["booking"]
        assert body["status"] == "cancelled"
        assert body["notes"][0]["note"] == "Booking cancelled: Customer travelling"

    def test_cannot_cancel_completed(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("cashier")
        booking = make_booking(make_user("customer"), status="completed")
        response = client.patch(f"/api/bookings/{booking.id}/cancel", headers=headers)
        assert response.status_code == 400


class TestBookingAccess:
    def test_customer_sees_only_own_bookings(self, client, headers_for, make_user, make_booking):
        customer, headers = headers_for("customer")
        make_booking(customer)
        make_booking(make_user("customer"))
        body = client.get("/api/bookings/", headers=headers).json()
        assert body["total"] == 1
        assert body["bookings"][0]["customer"]["id"] == customer.id

    def test_customer_cannot_open_other_booking(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("customer")
        other = make_booking(make_user("customer"))
        assert client.get(f"/api/bookings/{other.id}", headers=headers).status_code == 403

    def test_add_note(self, client, headers_for, make_user, make_booking):
        advisor, headers = headers_for("service_advisor")
        booking = make_booking(make_user("customer"))
        response = client.post(f"/api/bookings/{booking.id}/notes", json={"note": "Customer waiting on site"},
                               headers=headers)
        assert response.status_code == 201
        note = response.json()["booking"]["notes"][0]
        assert note["added_by"]["id"] == advisor.id
