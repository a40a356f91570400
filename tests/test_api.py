from __future__ import annotations

from decimal import Decimal

import pytest

from clinic_records.domain.account import Role
from clinic_records.security.tokens import decode_access_token, issue_access_token

PASSWORD = "s3cret-pass"


def _register(client, *, email, national_id, role="patient", **extra):
    body = {
        "email": email,
        "password": PASSWORD,
        "national_id": national_id,
        "first_name": "Test",
        "last_name": role.title(),
        "role": role,
        **extra,
    }
    response = client.post("/v1/auth/register", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def actors(api_client, register):
    patient = _register(api_client, email="patient@example.com", national_id="0101010101")
    admin_account = register(role=Role.admin, email="admin@example.com", national_id="0202020202")
    admin_token, _ = issue_access_token(subject=admin_account.account_id, email=admin_account.email, role="admin")
    admin = {"account": {"account_id": admin_account.account_id}, "access_token": admin_token}
    doctor = _register(
        api_client,
        email="doctor@example.com",
        national_id="0303030303",
        role="doctor",
        professional_registration="REG-77",
    )
    patient_profile = api_client.get("/v1/patients/me", headers=_auth(patient["access_token"])).json()
    return {
        "patient": patient,
        "admin": admin,
        "doctor": doctor,
        "patient_id": patient_profile["patient_id"],
    }


def test_register_returns_sanitized_account_and_token(api_client):
    body = _register(api_client, email="new@example.com", national_id="0909090909")

    assert "password_hash" not in body["account"]
    assert "password" not in body["account"]
    assert body["account"]["status"] == "active"
    assert body["token_type"] == "bearer"
    assert decode_access_token(body["access_token"])["role"] == "patient"


def test_register_duplicate_email_conflicts(api_client, actors):
    response = api_client.post(
        "/v1/auth/register",
        json={
            "email": "patient@example.com",
            "password": PASSWORD,
            "national_id": "0404040404",
            "first_name": "Dup",
            "last_name": "User",
        },
    )
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "conflict"


def test_login_errors_do_not_reveal_which_field_was_wrong(api_client, actors):
    missing = api_client.post("/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
    wrong = api_client.post("/v1/auth/login", json={"email": "doctor@example.com", "password": "bad-pass"})

    assert missing.status_code == wrong.status_code == 401
    assert missing.json() == wrong.json()


def test_payment_gating_end_to_end(api_client, actors):
    admin_headers = _auth(actors["admin"]["access_token"])
    patient_id = actors["patient_id"]

    created = []
    for month in (1, 2):
        response = api_client.post(
            "/v1/payments",
            json={"patient_id": patient_id, "month": month, "year": 2025, "amount": "45.50"},
            headers=admin_headers,
        )
        assert response.status_code == 201, response.text
        assert Decimal(response.json()["amount"]) == Decimal("45.50")
        created.append(response.json()["payment_id"])

    credentials = {"email": "patient@example.com", "password": PASSWORD}
    blocked = api_client.post("/v1/auth/login", json=credentials)
    assert blocked.status_code == 401
    assert blocked.json()["detail"]["code"] == "account_blocked"

    first = api_client.patch(
        f"/v1/payments/{created[0]}/pay", json={"method": "transfer", "reference": "TX-9"}, headers=admin_headers
    )
    assert first.status_code == 200
    assert first.json()["state"] == "paid"
    assert api_client.post("/v1/auth/login", json=credentials).status_code == 401

    second = api_client.patch(f"/v1/payments/{created[1]}/pay", json={"method": "cash"}, headers=admin_headers)
    assert second.status_code == 200

    ok = api_client.post("/v1/auth/login", json=credentials)
    assert ok.status_code == 200
    assert ok.json()["account"]["status"] == "active"

    again = api_client.patch(f"/v1/payments/{created[1]}/pay", json={"method": "cash"}, headers=admin_headers)
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "already_settled"


def test_settle_unknown_payment_returns_404(api_client, actors):
    response = api_client.patch(
        "/v1/payments/missing/pay", json={"method": "cash"}, headers=_auth(actors["admin"]["access_token"])
    )
    assert response.status_code == 404


def test_payment_admin_routes_require_admin_role(api_client, actors):
    body = {"patient_id": actors["patient_id"], "month": 1, "year": 2025, "amount": "10.00"}

    no_token = api_client.post("/v1/payments", json=body)
    as_doctor = api_client.post("/v1/payments", json=body, headers=_auth(actors["doctor"]["access_token"]))
    bad_token = api_client.get("/v1/payments", headers=_auth("not-a-jwt"))

    assert no_token.status_code == 401
    assert as_doctor.status_code == 403
    assert bad_token.status_code == 401


def test_patient_can_only_read_own_ledger(api_client, actors):
    other = _register(api_client, email="other@example.com", national_id="0505050505")
    own = api_client.get(
        f"/v1/payments/patient/{actors['patient_id']}", headers=_auth(actors["patient"]["access_token"])
    )
    foreign = api_client.get(
        f"/v1/payments/patient/{actors['patient_id']}/pending", headers=_auth(other["access_token"])
    )
    as_doctor = api_client.get(
        f"/v1/payments/patient/{actors['patient_id']}", headers=_auth(actors["doctor"]["access_token"])
    )

    assert own.status_code == 200
    assert foreign.status_code == 403
    assert as_doctor.status_code == 200


def test_statistics_and_listing(api_client, actors):
    admin_headers = _auth(actors["admin"]["access_token"])
    api_client.post(
        "/v1/payments",
        json={"patient_id": actors["patient_id"], "month": 3, "year": 2025, "amount": "12.00"},
        headers=admin_headers,
    )

    stats = api_client.get("/v1/payments/statistics", headers=admin_headers).json()
    listing = api_client.get("/v1/payments", headers=admin_headers).json()

    assert stats["pending_count"] == 1
    assert Decimal(stats["total_pending"]) == Decimal("12.00")
    assert len(listing) == 1


def test_create_payment_validates_period(api_client, actors):
    response = api_client.post(
        "/v1/payments",
        json={"patient_id": actors["patient_id"], "month": 13, "year": 2025, "amount": "12.00"},
        headers=_auth(actors["admin"]["access_token"]),
    )
    assert response.status_code == 422


def test_suspended_account_cannot_login(api_client, actors):
    doctor_id = actors["doctor"]["account"]["account_id"]
    response = api_client.post(
        f"/v1/accounts/{doctor_id}/suspend", headers=_auth(actors["admin"]["access_token"])
    )
    assert response.status_code == 200
    assert response.json()["status"] == "suspended"

    login = api_client.post("/v1/auth/login", json={"email": "doctor@example.com", "password": PASSWORD})
    assert login.status_code == 401
    assert login.json()["detail"]["code"] == "account_suspended"


def test_profile_update_keeps_identity_fields(api_client, actors):
    headers = _auth(actors["patient"]["access_token"])
    response = api_client.patch(
        "/v1/accounts/me", json={"phone": "0991234567", "email": "changed@example.com"}, headers=headers
    )
    me = api_client.get("/v1/accounts/me", headers=headers).json()

    assert response.status_code == 200
    assert me["phone"] == "0991234567"
    assert me["email"] == "patient@example.com"


def test_qr_scan_notifies_patient(api_client, actors):
    patient_headers = _auth(actors["patient"]["access_token"])
    qr = api_client.post("/v1/patients/me/qr", headers=patient_headers).json()

    as_patient = api_client.get(f"/v1/patients/qr/{qr['token']}", headers=patient_headers)
    scanned = api_client.get(
        f"/v1/patients/qr/{qr['token']}",
        headers={**_auth(actors["doctor"]["access_token"]), "X-Client-Location": "Loja, EC"},
    )

    assert as_patient.status_code == 403
    assert scanned.status_code == 200
    assert scanned.json()["patient_id"] == actors["patient_id"]
    assert "password_hash" not in scanned.json()["account"]

    notifications = api_client.get("/v1/notifications/me", headers=patient_headers).json()
    assert len(notifications) == 1
    assert "Loja, EC" in notifications[0]["message"]

    read_all = api_client.post("/v1/notifications/me/read-all", headers=patient_headers)
    assert read_all.json() == {"updated": 1}


def test_regenerated_qr_token_replaces_old_one(api_client, actors):
    patient_headers = _auth(actors["patient"]["access_token"])
    doctor_headers = _auth(actors["doctor"]["access_token"])
    old = api_client.post("/v1/patients/me/qr", headers=patient_headers).json()
    new = api_client.post("/v1/patients/me/qr/regenerate", headers=patient_headers).json()

    assert new["token"] != old["token"]
    assert api_client.get(f"/v1/patients/qr/{old['token']}", headers=doctor_headers).status_code == 404
    assert api_client.get(f"/v1/patients/qr/{new['token']}", headers=doctor_headers).status_code == 200


def test_audit_log_endpoint_returns_paginated_entries(api_client, actors):
    admin_headers = _auth(actors["admin"]["access_token"])
    for _ in range(3):
        api_client.post("/v1/auth/login", json={"email": "admin@example.com", "password": PASSWORD})

    resp = api_client.get("/v1/audit/logs", params={"limit": 2}, headers=admin_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["items"]) == 2
    assert body["next_cursor"]

    next_resp = api_client.get(
        "/v1/audit/logs", params={"cursor": body["next_cursor"], "limit": 2}, headers=admin_headers
    )
    assert next_resp.status_code == 200
    assert len(next_resp.json()["items"]) >= 1

    logins = api_client.get("/v1/audit/logs", params={"event_type": "login"}, headers=admin_headers)
    assert len(logins.json()["items"]) == 3

    bad = api_client.get("/v1/audit/logs", params={"cursor": "not-valid"}, headers=admin_headers)
    assert bad.status_code == 400

    forbidden = api_client.get("/v1/audit/logs", headers=_auth(actors["patient"]["access_token"]))
    assert forbidden.status_code == 403


def test_own_audit_log_is_scoped_to_caller(api_client, actors):
    response = api_client.get("/v1/audit/logs/me", headers=_auth(actors["doctor"]["access_token"]))

    assert response.status_code == 200
    items = response.json()["items"]
    assert items
    assert {item["account_id"] for item in items} == {actors["doctor"]["account"]["account_id"]}


def test_login_endpoint_respects_rate_limits(api_client, actors):
    payload = {"email": "doctor@example.com", "password": "bad-pass"}

    statuses = [api_client.post("/v1/auth/login", json=payload).status_code for _ in range(4)]

    assert statuses == [401, 401, 401, 429]


def test_successful_login_resets_rate_limit_window(api_client, actors):
    good = {"email": "doctor@example.com", "password": PASSWORD}
    bad = {"email": "doctor@example.com", "password": "bad-pass"}

    api_client.post("/v1/auth/login", json=bad)
    api_client.post("/v1/auth/login", json=bad)
    assert api_client.post("/v1/auth/login", json=good).status_code == 200
    assert api_client.post("/v1/auth/login", json=bad).status_code == 401


def test_token_role_claim_matches_account_role(api_client, actors):
    for name, role in (("patient", Role.patient), ("doctor", Role.doctor), ("admin", Role.admin)):
        response = api_client.post(
            "/v1/auth/login", json={"email": f"{name}@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        assert decode_access_token(response.json()["access_token"])["role"] == role.value


def test_public_registration_cannot_create_admin(api_client):
    response = api_client.post(
        "/v1/auth/register",
        json={
            "email": "mallory@example.com",
            "password": PASSWORD,
            "national_id": "0606060606",
            "first_name": "Mallory",
            "last_name": "Admin",
            "role": "admin",
        },
    )

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "forbidden"
    login = api_client.post("/v1/auth/login", json={"email": "mallory@example.com", "password": PASSWORD})
    assert login.status_code == 401


def test_admin_can_provision_another_admin(api_client, actors):
    admin_headers = _auth(actors["admin"]["access_token"])
    body = {
        "email": "second-admin@example.com",
        "password": PASSWORD,
        "national_id": "0707070707",
        "first_name": "Second",
        "last_name": "Admin",
        "role": "admin",
    }

    as_doctor = api_client.post("/v1/accounts", json=body, headers=_auth(actors["doctor"]["access_token"]))
    created = api_client.post("/v1/accounts", json=body, headers=admin_headers)

    assert as_doctor.status_code == 403
    assert created.status_code == 201
    assert created.json()["role"] == "admin"
    login = api_client.post("/v1/auth/login", json={"email": "second-admin@example.com", "password": PASSWORD})
    assert decode_access_token(login.json()["access_token"])["role"] == "admin"


def test_profile_update_rejects_null_name(api_client, actors):
    headers = _auth(actors["patient"]["access_token"])

    response = api_client.patch("/v1/accounts/me", json={"first_name": None}, headers=headers)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "validation_failed"
    assert api_client.get("/v1/accounts/me", headers=headers).json()["first_name"] == "Test"


def test_store_outage_surfaces_as_503(api_client, repository, actors):
    repository.unavailable.add("find_account_by_email")

    response = api_client.post("/v1/auth/login", json={"email": "doctor@example.com", "password": PASSWORD})

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "store_error"


def test_settlement_lost_to_concurrent_payment_returns_409(api_client, repository, actors):
    admin_headers = _auth(actors["admin"]["access_token"])
    created = api_client.post(
        "/v1/payments",
        json={"patient_id": actors["patient_id"], "month": 6, "year": 2025, "amount": "20.00"},
        headers=admin_headers,
    ).json()
    repository.lose_settlement_race = True

    response = api_client.patch(
        f"/v1/payments/{created['payment_id']}/pay", json={"method": "cash"}, headers=admin_headers
    )

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "already_settled"


def test_medical_record_lifecycle(api_client, actors):
    doctor_headers = _auth(actors["doctor"]["access_token"])
    admin_headers = _auth(actors["admin"]["access_token"])
    patient_headers = _auth(actors["patient"]["access_token"])

    created = api_client.post(
        "/v1/medical-records",
        json={"patient_id": actors["patient_id"], "reason": "headache", "diagnosis": "migraine"},
        headers=doctor_headers,
    )
    assert created.status_code == 201, created.text
    record_id = created.json()["record_id"]
    assert created.json()["doctor_id"] == actors["doctor"]["account"]["account_id"]

    as_patient = api_client.post(
        "/v1/medical-records", json={"patient_id": actors["patient_id"], "reason": "x"}, headers=patient_headers
    )
    assert as_patient.status_code == 403

    own = api_client.get(f"/v1/medical-records/patient/{actors['patient_id']}", headers=patient_headers)
    assert [item["record_id"] for item in own.json()] == [record_id]

    updated = api_client.patch(
        f"/v1/medical-records/{record_id}", json={"treatment": "rest"}, headers=doctor_headers
    )
    assert updated.json()["treatment"] == "rest"
    assert updated.json()["diagnosis"] == "migraine"

    signed = api_client.post(
        f"/v1/medical-records/{record_id}/sign", json={"signature": "dr-sig"}, headers=doctor_headers
    )
    assert signed.status_code == 200
    assert signed.json()["signed_by"] == actors["doctor"]["account"]["account_id"]
    again = api_client.post(
        f"/v1/medical-records/{record_id}/sign", json={"signature": "dr-sig"}, headers=doctor_headers
    )
    assert again.status_code == 409

    assert api_client.delete(f"/v1/medical-records/{record_id}", headers=doctor_headers).status_code == 403
    assert api_client.delete(f"/v1/medical-records/{record_id}", headers=admin_headers).status_code == 204
    assert api_client.get(f"/v1/medical-records/{record_id}", headers=admin_headers).status_code == 404


def test_patient_cannot_read_another_patients_records(api_client, actors):
    other = _register(api_client, email="other@example.com", national_id="0505050505")

    response = api_client.get(
        f"/v1/medical-records/patient/{actors['patient_id']}", headers=_auth(other["access_token"])
    )

    assert response.status_code == 403


def test_qr_scan_returns_medical_history(api_client, actors):
    doctor_headers = _auth(actors["doctor"]["access_token"])
    api_client.post(
        "/v1/medical-records",
        json={"patient_id": actors["patient_id"], "reason": "check-up"},
        headers=doctor_headers,
    )
    qr = api_client.post("/v1/patients/me/qr", headers=_auth(actors["patient"]["access_token"])).json()

    scanned = api_client.get(f"/v1/patients/qr/{qr['token']}", headers=doctor_headers).json()

    assert [item["reason"] for item in scanned["medical_records"]] == ["check-up"]


def test_admin_account_directory(api_client, actors):
    admin_headers = _auth(actors["admin"]["access_token"])

    doctors = api_client.get("/v1/accounts", params={"role": "doctor"}, headers=admin_headers).json()
    found = api_client.get("/v1/accounts/search", params={"q": "0101"}, headers=admin_headers).json()
    patients = api_client.get("/v1/patients", headers=admin_headers).json()
    forbidden = api_client.get("/v1/accounts", headers=_auth(actors["doctor"]["access_token"]))

    assert [item["email"] for item in doctors] == ["doctor@example.com"]
    assert [item["email"] for item in found] == ["patient@example.com"]
    assert [item["patient_id"] for item in patients] == [actors["patient_id"]]
    assert forbidden.status_code == 403


def test_admin_deletes_patient_account(api_client, actors):
    admin_headers = _auth(actors["admin"]["access_token"])
    patient_id = actors["patient"]["account"]["account_id"]

    deleted = api_client.delete(f"/v1/accounts/{patient_id}", headers=admin_headers)
    self_delete = api_client.delete(f"/v1/accounts/{actors['admin']['account']['account_id']}", headers=admin_headers)

    assert deleted.status_code == 204
    assert api_client.get(f"/v1/accounts/{patient_id}", headers=admin_headers).status_code == 404
    assert api_client.get("/v1/patients", headers=admin_headers).json() == []
    assert self_delete.status_code == 403


def test_audit_statistics_and_patient_activity(api_client, actors):
    admin_headers = _auth(actors["admin"]["access_token"])
    doctor_headers = _auth(actors["doctor"]["access_token"])
    qr = api_client.post("/v1/patients/me/qr", headers=_auth(actors["patient"]["access_token"])).json()
    api_client.get(f"/v1/patients/qr/{qr['token']}", headers=doctor_headers)

    stats = api_client.get("/v1/audit/statistics", headers=admin_headers).json()
    activity = api_client.get(
        f"/v1/audit/logs/patient/{actors['patient_id']}", headers=_auth(actors["patient"]["access_token"])
    ).json()

    assert stats["total_events"] >= 4
    assert stats["events_today"] == stats["total_events"]
    assert [item["event_type"] for item in activity["items"]] == ["record.accessed"]
    assert activity["items"][0]["actor"] == actors["doctor"]["account"]["account_id"]
