from datetime import datetime, timedelta

from pitstop.models import User
from pitstop.utils.security import create_access_token, hash_token

from conftest import PASSWORD, auth_headers


def registration_payload(**overrides):
    payload = {
        "email": "nimal@example.com",
        "password": "Secret1234",
        "profile": {
            "first_name": "Nimal",
            "last_name": "Perera",
            "phone_number": "0771234567",
            "address": {
                "street": "12 Galle Road",
                "city": "Colombo",
                "province": "Western",
                "postal_code": "00300",
            },
            "nic": "199012345678",
            "date_of_birth": "1990-04-12",
        },
        "customer_details": {
            "emergency_contact": {
                "name": "Kamala Perera",
                "phone_number": "0777654321",
                "relationship": "spouse",
            }
        },
    }
    payload.update(overrides)
    return payload


class TestRegistration:
    def test_register_customer(self, client):
        response = client.post("/api/auth/register", json=registration_payload())
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["access_token"]
        assert body["user"]["user_code"] == "C00001"
        assert body["user"]["role"] == "customer"
        assert body["user"]["email_verified"] is False

    def test_phone_is_normalised(self, client, db):
        client.post("/api/auth/register", json=registration_payload())
        user = db.query(User).filter(User.email == "nimal@example.com").one()
        assert user.phone_number == "+94771234567"

    def test_duplicate_email_is_rejected(self, client):
        client.post("/api/auth/register", json=registration_payload())
        payload = registration_payload()
        payload["profile"]["nic"] = "199112345678"
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_staff_role_cannot_self_register(self, client):
        response = client.post("/api/auth/register", json=registration_payload(role="admin"))
        assert response.status_code == 400

    def test_missing_emergency_contact(self, client):
        payload = registration_payload()
        del payload["customer_details"]
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 400
        assert response.json()["msg"].startswith("customer_details")

    def test_too_young(self, client):
        payload = registration_payload()
        payload["profile"]["date_of_birth"] = (datetime.utcnow().date() - timedelta(days=365 * 10)).isoformat()
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 400


class TestLogin:
    def test_login_success(self, client, make_user):
        user = make_user("customer", email="login@example.com")
        response = client.post("/api/auth/login", json={"email": "login@example.com", "password": PASSWORD})
        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "bearer"
        assert body["user"]["id"] == user.id

    def test_wrong_password(self, client, make_user):
        make_user("customer", email="login@example.com")
        response = client.post("/api/auth/login", json={"email": "login@example.com", "password": "wrong-pass"})
        assert response.status_code == 401
        assert response.json() == {"success": False, "msg": "Invalid credentials"}

    def test_lockout_after_repeated_failures(self, client, db, make_user):
        make_user("customer", email="login@example.com")
        for _ in range(5):
            response = client.post("/api/auth/login", json={"email": "login@example.com", "password": "wrong-pass"})
            assert response.status_code == 401

        response = client.post("/api/auth/login", json={"email": "login@example.com", "password": PASSWORD})
        assert response.status_code == 423

        db.expire_all()
        user = db.query(User).filter(User.email == "login@example.com").one()
        assert user.login_attempts == 5
        assert user.lock_until > datetime.utcnow()

    def test_expired_lock_allows_login(self, client, make_user):
        make_user(
            "customer", email="login@example.com",
            login_attempts=5, lock_until=datetime.utcnow() - timedelta(minutes=1)
        )
        response = client.post("/api/auth/login", json={"email": "login@example.com", "password": PASSWORD})
        assert response.status_code == 200

    def test_inactive_account(self, client, make_user):
        make_user("customer", email="login@example.com", status="suspended")
        response = client.post("/api/auth/login", json={"email": "login@example.com", "password": PASSWORD})
        assert response.status_code == 403


class TestAuthorizationGate:
    def test_missing_token(self, client):
        response = client.get("/api/auth/profile")
        assert response.status_code == 401
        assert response.json()["msg"] == "No token provided, authorization denied"

    def test_garbage_token(self, client):
        response = client.get("/api/auth/profile", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    def test_token_for_deleted_user(self, client):
        token = create_access_token(data={"sub": "4242"})
        response = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_locked_user_is_blocked(self, client, make_user):
        user = make_user("technician", lock_until=datetime.utcnow() + timedelta(minutes=10))
        response = client.get("/api/auth/profile", headers=auth_headers(user))
        assert response.status_code == 423

    def test_terminated_user_is_blocked(self, client, make_user):
        user = make_user("technician", status="terminated")
        response = client.get("/api/auth/profile", headers=auth_headers(user))
        assert response.status_code == 403

    def test_profile(self, client, headers_for):
        user, headers = headers_for("manager")
        response = client.get("/api/auth/profile", headers=headers)
        assert response.status_code == 200
        assert response.json()["user"]["employee_details"]["employee_id"] == user.employee_id


class TestEmailVerificationAndReset:
    def test_verify_email(self, client, db, make_user):
        user = make_user("customer", email_verified=False,
                         email_verification_token=hash_token("verify-me"),
                         email_verification_expires=datetime.utcnow() + timedelta(hours=1))
        response = client.post("/api/auth/verify-email", json={"token": "verify-me"})
        assert response.status_code == 200
        db.refresh(user)
        assert user.email_verified is True
        assert user.email_verification_token is None

    def test_expired_verification_token(self, client, make_user):
        make_user("customer", email_verified=False,
                  email_verification_token=hash_token("verify-me"),
                  email_verification_expires=datetime.utcnow() - timedelta(hours=1))
        response = client.post("/api/auth/verify-email", json={"token": "verify-me"})
        assert response.status_code == 400

    def test_forgot_password_does_not_reveal_accounts(self, client, make_user):
        make_user("customer", email="known@example.com")
        known = client.post("/api/auth/forgot-password", json={"email": "known@example.com"})
        unknown = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_reset_password_with_token(self, client, make_user):
        make_user("customer", email="reset@example.com", login_attempts=3,
                  password_reset_token=hash_token("reset-me"),
                  password_reset_expires=datetime.utcnow() + timedelta(minutes=30))
        response = client.post("/api/auth/reset-password", json={"token": "reset-me", "new_password": "BrandNew123"})
        assert response.status_code == 200

        login = client.post("/api/auth/login", json={"email": "reset@example.com", "password": "BrandNew123"})
        assert login.status_code == 200

    def test_change_password_requires_current(self, client, headers_for):
        _, headers = headers_for("customer")
        response = client.patch("/api/auth/change-password", headers=headers,
                                json={"current_password": "wrong-pass", "new_password": "BrandNew123"})
        assert response.status_code == 400

        response = client.patch("/api/auth/change-password", headers=headers,
                                json={"current_password": PASSWORD, "new_password": "BrandNew123"})
        assert response.status_code == 200
