from datetime import timedelta

from lending.db.models import ItemStatus, Loan, LoanStatus
from lending.services.availability import utcnow


def iso(value):
    return value.isoformat()


def create_item(client, headers, name="Drill", category="EQUIPMENT"):
    response = client.post("/api/v1/items/", json={"name": name, "category": category}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


# ======================================================
# AUTENTICACIÓN Y PERMISOS
# ======================================================
def test_health_and_root(client):
    assert client.get("/").status_code == 200
    assert client.get("/health/db").json() == {"status": "ok"}


def test_requests_without_token_are_rejected(client):
    assert client.get("/api/v1/items/").status_code == 401
    assert client.get("/api/v1/loans/").status_code == 401


def test_invalid_token_is_rejected(client):
    response = client.get("/api/v1/items/", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_only_admin_can_create_items(client, admin_headers, member_headers):
    forbidden = client.post("/api/v1/items/", json={"name": "Laptop"}, headers=member_headers)
    assert forbidden.status_code == 403

    item = create_item(client, admin_headers, "Laptop")
    assert item["stored_status"] == ItemStatus.AVAILABLE.value
    assert item["derived_status"] == ItemStatus.AVAILABLE.value


def test_maintenance_requires_admin(client, member_headers, admin_headers):
    assert client.post("/api/v1/maintenance/fix-item-status", headers=member_headers).status_code == 403

    response = client.post("/api/v1/maintenance/fix-item-status", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["stats"]["total_fixed"] == 0


# ======================================================
# PRÉSTAMOS
# ======================================================
def test_loan_lifecycle(client, admin_headers, member_headers, member_user):
    item = create_item(client, admin_headers)
    now = utcnow()

    created = client.post(
        "/api/v1/loans/",
        json={
            "item_id": item["id"],
            "borrower_id": member_user.id,
            "borrowed_at": iso(now - timedelta(days=1)),
            "due_at": iso(now + timedelta(days=7)),
            "contexts": ["pnt"],
        },
        headers=member_headers,
    )
    assert created.status_code == 201, created.text
    loan = created.json()
    assert loan["status"] == LoanStatus.ACTIVE.value
    assert loan["computed_status"] == LoanStatus.ACTIVE.value
    assert loan["contexts"] == ["PNT"]

    detail = client.get(f"/api/v1/loans/{loan['id']}", headers=member_headers).json()
    assert [h["action"] for h in detail["history"]] == ["creation"]

    item_read = client.get(f"/api/v1/items/{item['id']}", headers=member_headers).json()
    assert item_read["derived_status"] == ItemStatus.BORROWED.value

    returned = client.post(f"/api/v1/loans/{loan['id']}/return", headers=member_headers)
    assert returned.status_code == 200
    body = returned.json()
    assert body["loan"]["status"] == LoanStatus.RETURNED.value
    assert body["item_status"] == ItemStatus.AVAILABLE.value
    assert body["warnings"] == []

    again = client.post(f"/api/v1/loans/{loan['id']}/return", headers=member_headers)
    assert again.status_code == 400
    assert again.json()["kind"] == "validation"


def test_loan_conflict_returns_409_with_details(client, admin_headers, member_headers, member_user, other_user):
    item = create_item(client, admin_headers)
    start = utcnow() + timedelta(days=10)

    reservation = client.post(
        "/api/v1/reservations/",
        json={"item_id": item["id"], "start_date": iso(start), "end_date": iso(start + timedelta(days=9))},
        headers=member_headers,
    )
    assert reservation.status_code == 201, reservation.text

    response = client.post(
        "/api/v1/loans/",
        json={
            "item_id": item["id"],
            "borrower_id": other_user.id,
            "borrowed_at": iso(start + timedelta(days=4)),
            "due_at": iso(start + timedelta(days=6)),
        },
        headers=member_headers,
    )

    assert response.status_code == 409
    body = response.json()
    assert body["kind"] == "conflict"
    assert body["details"]["conflicting_loans"] == []
    conflict = body["details"]["conflicting_reservations"][0]
    assert conflict["id"] == reservation.json()["id"]
    assert conflict["holder_name"] == member_user.full_name


def test_check_availability_endpoint(client, admin_headers, member_headers, member_user):
    item = create_item(client, admin_headers)
    start = utcnow() + timedelta(days=3)
    client.post(
        "/api/v1/loans/",
        json={
            "item_id": item["id"],
            "borrower_id": member_user.id,
            "borrowed_at": iso(start),
            "due_at": iso(start + timedelta(days=2)),
        },
        headers=member_headers,
    )

    busy = client.post(
        "/api/v1/loans/check-availability",
        json={"item_id": item["id"], "borrowed_at": iso(start + timedelta(days=1)), "due_at": iso(start + timedelta(days=5))},
        headers=member_headers,
    ).json()
    free = client.post(
        "/api/v1/loans/check-availability",
        json={"item_id": item["id"], "borrowed_at": iso(start + timedelta(days=2)), "due_at": iso(start + timedelta(days=5))},
        headers=member_headers,
    ).json()

    assert busy["available"] is False
    assert len(busy["conflicting_loans"]) == 1
    assert free["available"] is True


def test_invalid_period_and_missing_item(client, admin_headers, member_headers, member_user):
    item = create_item(client, admin_headers)
    now = utcnow()

    bad_period = client.post(
        "/api/v1/loans/",
        json={"item_id": item["id"], "borrower_id": member_user.id, "borrowed_at": iso(now), "due_at": iso(now)},
        headers=member_headers,
    )
    missing = client.post(
        "/api/v1/loans/",
        json={"item_id": 9999, "borrower_id": member_user.id, "borrowed_at": iso(now), "due_at": iso(now + timedelta(days=1))},
        headers=member_headers,
    )

    assert bad_period.status_code == 400
    assert bad_period.json()["error"] == "End date must be after start date"
    assert missing.status_code == 404
    assert missing.json()["details"] == {"resource": "Item", "id": 9999}


def test_overdue_count_endpoint(client, admin_headers, member_headers, member_user, db_session):
    item = create_item(client, admin_headers)
    now = utcnow()
    db_session.add(
        Loan(
            item_id=item["id"],
            borrower_id=member_user.id,
            borrowed_at=now - timedelta(days=10),
            due_at=now - timedelta(days=2),
            status=LoanStatus.ACTIVE,
        )
    )
    db_session.commit()

    response = client.get("/api/v1/loans/overdue/count", headers=member_headers)
    assert response.json() == {"count": 1}

    listed = client.get("/api/v1/loans/", headers=member_headers).json()
    assert listed[0]["status"] == LoanStatus.ACTIVE.value
    assert listed[0]["computed_status"] == LoanStatus.OVERDUE.value


# ======================================================
# RESERVAS
# ======================================================
def test_reservation_rules_over_http(client, admin_headers, member_headers, other_headers, other_user):
    item = create_item(client, admin_headers)
    start = utcnow() + timedelta(days=5)
    payload = {"item_id": item["id"], "start_date": iso(start), "end_date": iso(start + timedelta(days=3))}

    on_behalf = client.post("/api/v1/reservations/", json={**payload, "user_id": other_user.id}, headers=member_headers)
    assert on_behalf.status_code == 403

    created = client.post("/api/v1/reservations/", json=payload, headers=member_headers)
    assert created.status_code == 201
    reservation_id = created.json()["id"]

    duplicate = client.post("/api/v1/reservations/", json=payload, headers=other_headers)
    assert duplicate.status_code == 409

    denied = client.put(
        f"/api/v1/reservations/{reservation_id}",
        json={"end_date": iso(start + timedelta(days=4))},
        headers=other_headers,
    )
    assert denied.status_code == 403
    assert denied.json()["kind"] == "authorization"

    history = client.get(
        "/api/v1/history/reservations", params={"item_id": item["id"]}, headers=member_headers
    ).json()
    assert [h["action"] for h in history] == ["UNAUTHORIZED_MODIFY", "RESERVE"]

    cancelled = client.delete(f"/api/v1/reservations/{reservation_id}", headers=admin_headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"


def test_cleanup_endpoint_requires_admin(client, member_headers, admin_headers):
    assert client.post("/api/v1/reservations/cleanup", headers=member_headers).status_code == 403

    response = client.post("/api/v1/reservations/cleanup", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["count"] == 0
    assert response.json()["expired_ids"] == []


def test_request_id_is_echoed(client, member_headers):
    response = client.get("/api/v1/items/", headers={**member_headers, "X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


# ======================================================
# EDICIÓN ADMINISTRATIVA
# ======================================================
def test_item_update_over_http(client, admin_headers, member_headers):
    item = create_item(client, admin_headers)

    forbidden = client.put(f"/api/v1/items/{item['id']}", json={"reservation_status": "OUT_OF_ORDER"},
                           headers=member_headers)
    assert forbidden.status_code == 403

    broken = client.put(f"/api/v1/items/{item['id']}", json={"reservation_status": "OUT_OF_ORDER"},
                        headers=admin_headers)
    assert broken.status_code == 200, broken.text
    assert broken.json()["stored_status"] == ItemStatus.OUT_OF_ORDER.value
    assert broken.json()["derived_status"] == ItemStatus.OUT_OF_ORDER.value

    fixed = client.put(f"/api/v1/items/{item['id']}", json={"name": "Cordless drill", "reservation_status": "AVAILABLE"},
                       headers=admin_headers)
    assert fixed.json()["name"] == "Cordless drill"
    assert fixed.json()["stored_status"] == ItemStatus.AVAILABLE.value

    missing = client.put("/api/v1/items/999999", json={"name": "Ghost"}, headers=admin_headers)
    assert missing.status_code == 404


def test_loan_status_change_over_http(client, admin_headers, member_headers, member_user):
    item = create_item(client, admin_headers)
    now = utcnow()
    loan = client.post(
        "/api/v1/loans/",
        json={
            "item_id": item["id"],
            "borrower_id": member_user.id,
            "borrowed_at": iso(now - timedelta(days=1)),
            "due_at": iso(now + timedelta(days=7)),
        },
        headers=member_headers,
    ).json()

    forbidden = client.put(f"/api/v1/loans/{loan['id']}", json={"status": "OVERDUE"}, headers=member_headers)
    assert forbidden.status_code == 403

    changed = client.put(f"/api/v1/loans/{loan['id']}", json={"status": "OVERDUE"}, headers=admin_headers)
    assert changed.status_code == 200, changed.text
    assert changed.json()["status"] == LoanStatus.OVERDUE.value

    detail = client.get(f"/api/v1/loans/{loan['id']}", headers=member_headers).json()
    assert [h["action"] for h in detail["history"]] == ["creation", "status_change"]

    returned = client.put(f"/api/v1/loans/{loan['id']}", json={"status": "RETURNED"}, headers=admin_headers)
    assert returned.json()["status"] == LoanStatus.RETURNED.value

    closed = client.put(f"/api/v1/loans/{loan['id']}", json={"status": "ACTIVE"}, headers=admin_headers)
    assert closed.status_code == 400
