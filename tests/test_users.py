from test_auth import registration_payload


def technician_payload(**overrides):
    payload = registration_payload(email="sunil@pitstop.lk", role="technician")
    payload["profile"]["nic"] = "198512345678"
    del payload["customer_details"]
    payload["employee_details"] = {
        "department": "mechanical",
        "specializations": ["engine_repair", "brake_systems"],
        "base_salary": 85000,
        "commission_rate": 5,
    }
    payload.update(overrides)
    return payload


class TestCreateAccounts:
    def test_admin_creates_technician(self, client, headers_for):
        _, headers = headers_for("admin")
        response = client.post("/api/users/", json=technician_payload(), headers=headers)
        assert response.status_code == 201
        user = response.json()["user"]
        assert user["role"] == "technician"
        assert user["user_code"].startswith("T")
        assert user["employee_details"]["employee_id"].startswith("MEC")
        assert user["employee_details"]["specializations"] == ["engine_repair", "brake_systems"]

    def test_staff_account_needs_employee_details(self, client, headers_for):
        _, headers = headers_for("admin")
        payload = technician_payload()
        del payload["employee_details"]
        response = client.post("/api/users/", json=payload, headers=headers)
        assert response.status_code == 400

    def test_manager_cannot_create_admin(self, client, headers_for):
        _, headers = headers_for("manager")
        payload = technician_payload(role="admin")
        response = client.post("/api/users/", json=payload, headers=headers)
        assert response.status_code == 400
        assert response.json()["msg"] == "Only administrators can create admin accounts"

    def test_customer_cannot_create_accounts(self, client, headers_for):
        _, headers = headers_for("customer")
        response = client.post("/api/users/", json=technician_payload(), headers=headers)
        assert response.status_code == 403


class TestListAndManage:
    def test_list_filters_by_role(self, client, headers_for, make_user):
        _, headers = headers_for("admin")
        make_user("technician")
        make_user("technician")
        make_user("customer")

        response = client.get("/api/users/", params={"role": "technician"}, headers=headers)
        body = response.json()
        assert body["total"] == 2
        assert body["current_page"] == 1
        assert all(u["role"] == "technician" for u in body["users"])

    def test_delete_terminates_account(self, client, headers_for, make_user):
        _, headers = headers_for("admin")
        customer = make_user("customer")
        response = client.delete(f"/api/users/{customer.id}", headers=headers)
        assert response.status_code == 200
        assert response.json()["user"]["status"] == "terminated"

        fetched = client.get(f"/api/users/{customer.id}", headers=headers)
        assert fetched.json()["user"]["status"] == "terminated"

    def test_cannot_delete_self(self, client, headers_for):
        admin, headers = headers_for("admin")
        response = client.delete(f"/api/users/{admin.id}", headers=headers)
        assert response.status_code == 400

    def test_loyalty_points_raise_tier(self, client, headers_for, make_user):
        _, headers = headers_for("service_advisor")
        customer = make_user("customer")
        response = client.patch(f"/api/users/{customer.id}/loyalty-points", json={"points": 2500}, headers=headers)
        assert response.status_code == 200
        assert response.json()["customer_details"] == {"loyalty_points": 2500, "membership_tier": "silver"}

    def test_loyalty_points_only_for_customers(self, client, headers_for, make_user):
        _, headers = headers_for("manager")
        technician = make_user("technician")
        response = client.patch(f"/api/users/{technician.id}/loyalty-points", json={"points": 10}, headers=headers)
        assert response.status_code == 400

    def test_technicians_grouped_by_specialization(self, client, headers_for, make_user):
        _, headers = headers_for("service_advisor")
        make_user("technician", specializations=["diagnostics"])
        make_user("technician", specializations=["diagnostics", "painting"])

        response = client.get("/api/users/technicians/by-specialization",
                              params={"specialization": "diagnostics"}, headers=headers)
        assert response.json()["count"] == 2

    def test_unknown_user(self, client, headers_for):
        _, headers = headers_for("admin")
        response = client.get("/api/users/9999", headers=headers)
        assert response.status_code == 404
        assert response.json() == {"success": False, "msg": "No user found with id: 9999"}
