from datetime import timedelta
from uuid import uuid4

from conftest import NOW
from peerrent.api import deps
from peerrent.core.security import SYSTEM_ACTOR
from peerrent.domain.rental_state import RentalStatus
from peerrent.main import app

API = "/api/v1"


def rental_request(owner, start, end, **extra) -> dict:
    return {
        "item_id": str(uuid4()),
        "item_title": "Pressure washer",
        "owner_id": str(owner.id),
        "owner_name": owner.name,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "total_price": 12000,
        **extra,
    }


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_requests_need_a_token(client):
    response = await client.get(f"{API}/rentals")
    assert response.status_code in (401, 403)


async def test_cancel_flow(client, auth_headers, owner, renter, admin):
    created = await client.post(
        f"{API}/rentals",
        json=rental_request(owner, NOW + timedelta(hours=30), NOW + timedelta(days=3)),
        headers=auth_headers(renter),
    )
    assert created.status_code == 201
    rental = created.json()
    assert rental["status"] == RentalStatus.PENDING.value

    approved = await client.post(
        f"{API}/rentals/{rental['id']}/approve",
        json={"payout_account": "acct_owner_9"},
        headers=auth_headers(owner),
    )
    assert approved.json()["status"] == RentalStatus.APPROVED.value

    quote = await client.get(f"{API}/rentals/{rental['id']}/refund-quote", headers=auth_headers(renter))
    assert quote.json()["amount"] == 12000
    assert quote.json()["eligible"] is True

    cancelled = await client.post(
        f"{API}/rentals/{rental['id']}/cancel",
        json={"reason": "Weather"},
        headers=auth_headers(renter),
    )
    assert cancelled.status_code == 200
    body = cancelled.json()
    assert body["status"] == RentalStatus.CANCELLED.value
    assert body["refund"]["amount"] == 12000
    assert body["refund_percentage"] == "100"

    mine = await client.get(f"{API}/refunds/mine", headers=auth_headers(renter))
    assert [r["id"] for r in mine.json()] == [body["refund"]["id"]]

    processed = await client.post(
        f"{API}/refunds/{body['refund']['id']}/process", headers=auth_headers(admin)
    )
    assert processed.json()["status"] == "completed"


async def test_full_lifecycle_with_payout_hold(client, auth_headers, owner, renter):
    created = await client.post(
        f"{API}/rentals",
        json=rental_request(
            owner,
            NOW - timedelta(days=3),
            NOW - timedelta(hours=1),
            owner_payout_account="acct_owner_9",
        ),
        headers=auth_headers(renter),
    )
    rental_id = created.json()["id"]

    await client.post(f"{API}/rentals/{rental_id}/approve", headers=auth_headers(owner))
    paid = await client.post(f"{API}/rentals/{rental_id}/pay", headers=auth_headers(renter))
    assert paid.json()["status"] == RentalStatus.ACTIVE.value
    assert paid.json()["payment_status"] == "paid"

    completed = await client.post(f"{API}/rentals/{rental_id}/complete", headers=auth_headers(owner))
    assert completed.json()["status"] == RentalStatus.PENDING_COMPLETION.value

    returned = await client.post(
        f"{API}/rentals/{rental_id}/confirm-return", headers=auth_headers(renter)
    )
    assert returned.json()["status"] == RentalStatus.COMPLETED_PENDING_PAYOUT.value
    assert returned.json()["renter_confirmed_return"] is True

    held = await client.post(f"{API}/rentals/{rental_id}/payout", headers=auth_headers(owner))
    assert held.status_code == 200
    assert held.json()["settled"] is False
    assert held.json()["blocked_by"] == "hold_period"
    assert held.json()["hours_remaining"] == 48

    app.dependency_overrides[deps.get_now] = lambda: NOW + timedelta(hours=48)
    settled = await client.post(f"{API}/rentals/{rental_id}/payout", headers=auth_headers(owner))
    assert settled.json()["settled"] is True
    assert settled.json()["status"] == RentalStatus.COMPLETED.value
    assert settled.json()["payout"]["amount"] == 10800

    payout = await client.get(f"{API}/payouts/rental/{rental_id}", headers=auth_headers(owner))
    assert payout.json()["platform_fee"] == 1200
    earnings = await client.get(f"{API}/payouts/earnings", headers=auth_headers(owner))
    assert earnings.json()["total_earnings"] == 10800


async def test_dispute_freezes_payout_until_admin_release(
    client, auth_headers, make_rental, owner, renter, admin
):
    rental = await make_rental(status=RentalStatus.COMPLETED_PENDING_PAYOUT)

    filed = await client.post(
        f"{API}/disputes",
        json={
            "rental_id": str(rental.id),
            "dispute_type": "damage",
            "description": "Handle snapped off during use",
        },
        headers=auth_headers(owner),
    )
    assert filed.status_code == 201
    dispute = filed.json()
    assert dispute["status"] == "awaiting_response"
    assert [a["activity_type"] for a in dispute["activities"]] == ["created"]

    fetched = await client.get(f"{API}/rentals/{rental.id}", headers=auth_headers(renter))
    assert fetched.json()["payout_frozen"] is True

    app.dependency_overrides[deps.get_now] = lambda: NOW + timedelta(hours=49)
    blocked = await client.post(f"{API}/rentals/{rental.id}/payout", headers=auth_headers(owner))
    assert blocked.json()["blocked_by"] == "frozen"

    refused = await client.post(
        f"{API}/payouts/rentals/{rental.id}/release-freeze", headers=auth_headers(admin)
    )
    assert refused.status_code == 409
    assert refused.json()["code"] == "payout_frozen"

    closed = await client.patch(
        f"{API}/disputes/{dispute['id']}/status",
        json={"status": "closed", "notes": "Pre-existing wear"},
        headers=auth_headers(admin),
    )
    assert closed.json()["status"] == "closed"
    assert closed.json()["resolved_by"] == "admin"

    released = await client.post(
        f"{API}/payouts/rentals/{rental.id}/release-freeze", headers=auth_headers(admin)
    )
    assert released.status_code == 200
    assert released.json()["payout_frozen"] is False


async def test_dispute_proposal_round_trip(client, auth_headers, make_rental, owner, renter):
    rental = await make_rental(status=RentalStatus.ACTIVE)
    filed = await client.post(
        f"{API}/disputes",
        json={
            "rental_id": str(rental.id),
            "dispute_type": "not_as_described",
            "description": "Battery does not hold a charge",
        },
        headers=auth_headers(renter),
    )
    dispute_id = filed.json()["id"]

    proposal = await client.post(
        f"{API}/disputes/{dispute_id}/proposals",
        json={"resolution_type": "partial_refund", "description": "Battery discount", "amount": 3000},
        headers=auth_headers(owner),
    )
    assert proposal.status_code == 201

    own = await client.post(
        f"{API}/disputes/{dispute_id}/proposals/{proposal.json()['id']}/respond",
        json={"accept": True},
        headers=auth_headers(owner),
    )
    assert own.status_code == 403

    accepted = await client.post(
        f"{API}/disputes/{dispute_id}/proposals/{proposal.json()['id']}/respond",
        json={"accept": True},
        headers=auth_headers(renter),
    )
    body = accepted.json()
    assert body["status"] == "resolved"
    assert body["resolved_by"] == "mutual_agreement"
    assert body["refund_amount"] == 3000


async def test_error_body_shape(client, auth_headers, make_rental, renter):
    rental = await make_rental(status=RentalStatus.PENDING)

    response = await client.post(f"{API}/rentals/{rental.id}/approve", headers=auth_headers(renter))

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "invalid_actor"
    assert body["retryable"] is False
    assert body["detail"]


async def test_cancel_inside_window_is_conflict(client, auth_headers, make_rental, renter):
    rental = await make_rental(start_date=NOW + timedelta(hours=12))

    response = await client.post(f"{API}/rentals/{rental.id}/cancel", headers=auth_headers(renter))

    assert response.status_code == 409
    assert response.json()["code"] == "time_gate_not_satisfied"


async def test_processor_failure_is_retryable(client, auth_headers, make_rental, renter, gateway):
    rental = await make_rental()
    gateway.fail_charges = True

    response = await client.post(f"{API}/rentals/{rental.id}/pay", headers=auth_headers(renter))

    assert response.status_code == 503
    assert response.json()["retryable"] is True
    fetched = await client.get(f"{API}/rentals/{rental.id}", headers=auth_headers(renter))
    assert fetched.json()["status"] == RentalStatus.APPROVED.value
    assert fetched.json()["payment_status"] == "unpaid"


async def test_internal_settlement_run(client, auth_headers, make_rental, renter, gateway):
    await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
    )

    forbidden = await client.post(f"{API}/internal/settle-eligible", headers=auth_headers(renter))
    assert forbidden.status_code == 403

    response = await client.post(
        f"{API}/internal/settle-eligible", headers=auth_headers(SYSTEM_ACTOR)
    )
    assert response.status_code == 200
    assert response.json() == {"settled": 1, "skipped": 0, "failed": 0}
    assert len(gateway.transfer_log) == 1
