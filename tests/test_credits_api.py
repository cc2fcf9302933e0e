from __future__ import annotations

from src.credits.ledger import debit_credits, grant_credits, refund_credits, summarize_usage
from tests.conftest import auth_headers, seed_user


def _seed_history(session_factory, user_id: str) -> None:
    with session_factory() as session:
        grant_credits(session, user_id=user_id, amount=100, description="basic package")
        debit_credits(session, user_id=user_id, amount=20, description="one")
        debit_credits(session, user_id=user_id, amount=30, description="two")
        debit_credits(session, user_id=user_id, amount=25, description="three")
        refund_credits(session, user_id=user_id, amount=25, description="refund", related_task_id="task-usage-1")


def test_transactions_are_paginated_with_totals(api_client, session_factory) -> None:
    user_id = seed_user(session_factory, credits=0)
    _seed_history(session_factory, user_id)

    first = api_client.get("/credits/transactions", params={"page": 1, "limit": 2}, headers=auth_headers(user_id))
    last = api_client.get("/credits/transactions", params={"page": 3, "limit": 2}, headers=auth_headers(user_id))
    beyond = api_client.get("/credits/transactions", params={"page": 4, "limit": 2}, headers=auth_headers(user_id))

    assert first.status_code == 200
    assert len(first.json()["items"]) == 2
    assert first.json()["pagination"] == {
        "page": 1,
        "limit": 2,
        "total": 5,
        "totalPages": 3,
        "hasNext": True,
        "hasPrev": False,
    }
    assert len(last.json()["items"]) == 1
    assert last.json()["pagination"]["hasNext"] is False
    assert last.json()["pagination"]["hasPrev"] is True
    assert beyond.json()["items"] == []

    seen = {item["id"] for item in first.json()["items"]} | {item["id"] for item in last.json()["items"]}
    middle = api_client.get("/credits/transactions", params={"page": 2, "limit": 2}, headers=auth_headers(user_id))
    seen |= {item["id"] for item in middle.json()["items"]}
    assert len(seen) == 5


def test_transactions_reject_invalid_page(api_client, session_factory) -> None:
    user_id = seed_user(session_factory)

    response = api_client.get("/credits/transactions", params={"page": 0}, headers=auth_headers(user_id))

    assert response.status_code == 422


def test_usage_summarizes_ledger_by_type(api_client, session_factory) -> None:
    user_id = seed_user(session_factory, credits=0)
    _seed_history(session_factory, user_id)

    response = api_client.get("/credits/usage", headers=auth_headers(user_id))
    missing = api_client.get("/credits/usage", headers=auth_headers("no-account"))

    assert response.status_code == 200
    payload = response.json()
    assert payload["currentBalance"] == 50
    assert payload["totalSpent"] == 75
    assert payload["totalPurchased"] == 100
    assert payload["totalRefunded"] == 25
    assert payload["totalBonus"] == 0
    assert payload["videoGenerationCount"] == 3
    assert payload["averagePerVideo"] == 25
    assert missing.status_code == 404


def test_usage_of_fresh_account_is_zero(session_factory) -> None:
    user_id = seed_user(session_factory, credits=10)

    with session_factory() as session:
        usage = summarize_usage(session, user_id=user_id)

    assert usage.current_balance == 10
    assert usage.total_spent == 0
    assert usage.video_generation_count == 0
    assert usage.average_per_video == 0


def test_packages_are_public_and_ordered_by_size(api_client) -> None:
    response = api_client.get("/credits/packages")

    assert response.status_code == 200
    packages = response.json()["packages"]
    assert [package["id"] for package in packages] == ["basic", "standard", "premium", "enterprise"]
    assert packages[0] == {"id": "basic", "credits": 100, "priceCents": 999}
