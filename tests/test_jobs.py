from datetime import datetime, timedelta

from pitstop.models import GoodsRequest


def job_payload(**overrides):
    payload = {
        "title": "Replace brake pads",
        "description": "Front pads worn below service limit",
        "category": "repair",
        "priority": "high",
        "estimated_hours": 2.5,
        "required_skills": ["brake_systems"],
        "required_tools": [{"name": "Torque wrench"}],
        "required_materials": [{"name": "Brake pad set", "quantity": 1, "unit": "set"}],
    }
    payload.update(overrides)
    return payload


class TestCreateJob:
    def test_create_for_booking_under_inspection(self, client, headers_for, make_user, make_booking):
        advisor, headers = headers_for("service_advisor")
        booking = make_booking(make_user("customer"), status="inspecting")

        response = client.post(f"/api/jobs/booking/{booking.id}", json=job_payload(), headers=headers)
        assert response.status_code == 201
        job = response.json()["job"]
        assert job["job_code"] == "JOB00001"
        assert job["status"] == "pending"
        assert job["requirements"]["skills"] == ["brake_systems"]
        assert job["created_by"]["id"] == advisor.id

    def test_create_with_booking_in_body(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("manager")
        booking = make_booking(make_user("customer"), status="inspecting")
        response = client.post("/api/jobs/", json=job_payload(booking_id=booking.id), headers=headers)
        assert response.status_code == 201
        assert response.json()["job"]["booking"]["id"] == booking.id

    def test_booking_must_be_under_inspection(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("service_advisor")
        booking = make_booking(make_user("customer"), status="pending")
        response = client.post(f"/api/jobs/booking/{booking.id}", json=job_payload(), headers=headers)
        assert response.status_code == 400
        assert response.json()["msg"] == "Jobs can only be created for bookings under inspection"

    def test_technician_cannot_create(self, client, headers_for, make_user, make_booking):
        _, headers = headers_for("technician")
        booking = make_booking(make_user("customer"), status="inspecting")
        response = client.post(f"/api/jobs/booking/{booking.id}", json=job_payload(), headers=headers)
        assert response.status_code == 403


class TestAssignLabourers:
    def test_assign_skilled_technician(self, client, headers_for, make_user, make_job):
        _, headers = headers_for("service_advisor")
        job = make_job(required_skills=["brake_systems"])
        technician = make_user("technician", specializations=["brake_systems"])

        response = client.patch(f"/api/jobs/{job.id}/assign-labourers",
                                json={"labourer_ids": [technician.id]}, headers=headers)
        assert response.status_code == 200
        labourers = response.json()["job"]["assigned_labourers"]
        assert [entry["labourer"]["id"] for entry in labourers] == [technician.id]

    def test_no_matching_skills(self, client, headers_for, make_user, make_job):
        _, headers = headers_for("service_advisor")
        job = make_job(required_skills=["electrical"])
        technician = make_user("technician", specializations=["painting"])
        response = client.patch(f"/api/jobs/{job.id}/assign-labourers",
                                json={"labourer_ids": [technician.id]}, headers=headers)
        assert response.status_code == 400
        assert response.json()["msg"] == "None of the selected labourers have the required skills"

    def test_only_technicians(self, client, headers_for, make_user, make_job):
        _, headers = headers_for("service_advisor")
        job = make_job()
        cashier = make_user("cashier")
        response = client.patch(f"/api/jobs/{job.id}/assign-labourers",
                                json={"labourer_ids": [cashier.id]}, headers=headers)
        assert response.status_code == 400

    def test_only_pending_jobs(self, client, headers_for, make_user, make_job):
        _, headers = headers_for("service_advisor")
        technician = make_user("technician")
        job = make_job(status="working", labourers=[technician])
        response = client.patch(f"/api/jobs/{job.id}/assign-labourers",
                                json={"labourer_ids": [technician.id]}, headers=headers)
        assert response.status_code == 400


class TestJobStatus:
    def test_start_requires_labourer(self, client, headers_for, make_job):
        _, headers = headers_for("service_advisor")
        job = make_job()
        response = client.patch(f"/api/jobs/{job.id}/status", json={"status": "working"}, headers=headers)
        assert response.status_code == 400

    def test_assigned_technician_starts_job(self, client, headers_for, make_job):
        technician, headers = headers_for("technician")
        job = make_job(labourers=[technician])
        response = client.patch(f"/api/jobs/{job.id}/status", json={"status": "working"}, headers=headers)
        assert response.status_code == 200
        body = response.json()["job"]
        assert body["status"] == "working"
        assert body["started_at"] is not None

    def test_unassigned_technician_is_refused(self, client, headers_for, make_user, make_job):
        _, headers = headers_for("technician")
        job = make_job(labourers=[make_user("technician")])
        response = client.patch(f"/api/jobs/{job.id}/status", json={"status": "working"}, headers=headers)
        assert response.status_code == 403
        assert response.json()["msg"] == "Access denied. Job not assigned to you"

    def test_technician_cannot_cancel(self, client, headers_for, make_job):
        technician, headers = headers_for("technician")
        job = make_job(status="working", labourers=[technician])
        response = client.patch(f"/api/jobs/{job.id}/status", json={"status": "cancelled"}, headers=headers)
        assert response.status_code == 400

    def test_manager_can_cancel(self, client, headers_for, make_job):
        _, headers = headers_for("manager")
        job = make_job(status="working")
        response = client.patch(f"/api/jobs/{job.id}/status", json={"status": "cancelled"}, headers=headers)
        assert response.json()["job"]["status"] == "cancelled"


class TestWorkLog:
    def test_log_hours_and_complete(self, client, headers_for, make_job):
        technician, headers = headers_for("technician")
        job = make_job(status="working", labourers=[technician])
        start = datetime(2025, 6, 2, 9, 0)

        response = client.post(f"/api/jobs/{job.id}/work-log", headers=headers, json={
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=2, minutes=30)).isoformat(),
            "description": "Removed calipers and replaced pads",
        })
        assert response.status_code == 201
        body = response.json()["job"]
        assert body["actual_hours"] == 2.5
        assert body["labour_cost"] == 125.0
        assert body["assigned_labourers"][0]["hours_worked"] == 2.5

        response = client.patch(f"/api/jobs/{job.id}/status", json={"status": "completed"}, headers=headers)
        body = response.json()["job"]
        assert body["status"] == "completed"
        assert body["labour_cost"] == 125.0
        assert body["completed_at"] is not None

    def test_end_before_start(self, client, headers_for, make_job):
        technician, headers = headers_for("technician")
        job = make_job(status="working", labourers=[technician])
        response = client.post(f"/api/jobs/{job.id}/work-log", headers=headers, json={
            "start_time": "2025-06-02T12:00:00",
            "end_time": "2025-06-02T11:00:00",
        })
        assert response.status_code == 400

    def test_pending_job_rejects_logs(self, client, headers_for, make_job):
        technician, headers = headers_for("technician")
        job = make_job(labourers=[technician])
        response = client.post(f"/api/jobs/{job.id}/work-log", headers=headers, json={
            "start_time": "2025-06-02T09:00:00",
            "end_time": "2025-06-02T10:00:00",
        })
        assert response.status_code == 400


class TestInspectionsAndVisibility:
    def test_post_inspection_needs_completed_job(self, client, headers_for, make_job):
        _, headers = headers_for("service_advisor")
        job = make_job(status="working")
        response = client.post(f"/api/jobs/{job.id}/inspection", json={"phase": "post", "approved": True},
                               headers=headers)
        assert response.status_code == 400

    def test_approved_post_inspection(self, client, headers_for, make_job):
        advisor, headers = headers_for("service_advisor")
        job = make_job(status="completed")
        response = client.post(f"/api/jobs/{job.id}/inspection", headers=headers, json={
            "phase": "post", "condition": "good", "quality_rating": 5, "approved": True,
        })
        body = response.json()["job"]
        assert body["inspections"]["post"]["approved"] is True
        assert body["inspected_by"]["id"] == advisor.id
        assert body["approved_at"] is not None

    def test_technician_lists_only_assigned_jobs(self, client, headers_for, make_user, make_job):
        technician, headers = headers_for("technician")
        mine = make_job(labourers=[technician])
        make_job(labourers=[make_user("technician")])
        body = client.get("/api/jobs/", headers=headers).json()
        assert body["total"] == 1
        assert body["jobs"][0]["id"] == mine.id

    def test_delete_blocked_by_goods_requests(self, client, db, headers_for, make_job):
        manager, headers = headers_for("manager")
        job = make_job()
        db.add(GoodsRequest(request_code="GR00001", job_id=job.id, requested_by=manager.id, status="pending"))
        db.commit()
        response = client.delete(f"/api/jobs/{job.id}", headers=headers)
        assert response.status_code == 400
