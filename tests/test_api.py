from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import main
from conftest import FakeFxSource
from fx_rates import RateCache


@pytest.fixture
def client(session_factory, monkeypatch):
    def override_get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    monkeypatch.setattr(main.app.state, "rate_cache", RateCache(3600))
    monkeypatch.setattr(
        main.app.state, "fx_source", FakeFxSource({("EUR", "USD"): "1.1"})
    )
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _headers(user: str = "alice") -> dict[str, str]:
    return {"X-User-Id": user}


def _ledger_with_account(client) -> tuple[str, str]:
    ledger = client.post(
        "/api/ledgers", json={"name": "Home", "currency_code": "usd"}, headers=_headers()
    ).json()
    account = client.post(
        f"/api/ledgers/{ledger['id']}/accounts",
        json={"name": "Checking", "currency_code": "USD"},
        headers=_headers(),
    ).json()
    return ledger["id"], account["id"]


def test_reconcile_flow(client) -> None:
    ledger_id, account_id = _ledger_with_account(client)
    base = f"/api/ledgers/{ledger_id}"
    for txn_type, amount in (("income", 50000), ("expense", 12000), ("expense", 3000)):
        resp = client.post(
            f"{base}/transactions",
            json={
                "account_id": account_id,
                "type": txn_type,
                "amount_cents": amount,
                "date": "2026-03-01",
            },
            headers=_headers(),
        )
        assert resp.status_code == 201

    resp = client.post(
        f"{base}/accounts/{account_id}/reconcile",
        json={"snapshot_date": "2026-03-10", "statement_balance_cents": 34950},
        headers=_headers(),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["computed_balance_cents"] == 35000
    assert body["difference_cents"] == -50
    assert body["is_reconciled"] is False

    history = client.get(
        f"{base}/accounts/{account_id}/reconciliations", headers=_headers()
    ).json()
    assert len(history) == 1
    assert history[0]["notes"] == "Discrepancy: 0.50"


def test_membership_and_roles(client) -> None:
    ledger_id, account_id = _ledger_with_account(client)
    base = f"/api/ledgers/{ledger_id}"

    assert client.get(f"{base}/accounts", headers=_headers("mallory")).status_code == 403
    assert client.get(f"{base}/accounts").status_code == 403
    assert client.get("/api/ledgers/missing/accounts", headers=_headers()).status_code == 404

    resp = client.post(
        f"{base}/members", json={"user_id": "bob", "role": "viewer"}, headers=_headers()
    )
    assert resp.status_code == 201
    assert client.get(f"{base}/accounts", headers=_headers("bob")).status_code == 200
    resp = client.post(
        f"{base}/summaries/aggregate", json={"month": "2026-03"}, headers=_headers("bob")
    )
    assert resp.status_code == 403


def test_validation_errors(client) -> None:
    ledger_id, account_id = _ledger_with_account(client)
    base = f"/api/ledgers/{ledger_id}"

    resp = client.post(
        f"{base}/transfers",
        json={
            "from_account_id": account_id,
            "to_account_id": account_id,
            "amount_cents": 100,
            "date": "2026-03-01",
        },
        headers=_headers(),
    )
    assert resp.status_code == 422
    resp = client.post(
        f"{base}/summaries/aggregate", json={"month": "2026-3"}, headers=_headers()
    )
    assert resp.status_code == 422


def test_convert_endpoints(client) -> None:
    ledger_id, _ = _ledger_with_account(client)
    base = f"/api/ledgers/{ledger_id}/fx"

    same = client.post(
        f"{base}/convert",
        json={"amount_cents": 1234, "from_currency": "USD", "to_currency": "usd"},
        headers=_headers(),
    ).json()
    assert same["amount_cents"] == 1234
    assert same["rate"] == "1"

    batch = client.post(
        f"{base}/batch-convert",
        json={
            "items": [
                {"amount_cents": 100, "currency_code": "EUR"},
                {"amount_cents": 100, "currency_code": "USD"},
            ],
            "target_currency": "USD",
        },
        headers=_headers(),
    ).json()
    assert batch["amounts_cents"] == [110, 100]


def test_summaries_and_insights(client) -> None:
    ledger_id, account_id = _ledger_with_account(client)
    base = f"/api/ledgers/{ledger_id}"
    client.post(
        f"{base}/transactions",
        json={
            "account_id": account_id,
            "type": "expense",
            "amount_cents": 2500,
            "date": "2026-03-02",
        },
        headers=_headers(),
    )

    resp = client.post(
        f"{base}/summaries/aggregate",
        json={"month": "2026-03", "backfill_months": 1},
        headers=_headers(),
    )
    assert [s["year_month"] for s in resp.json()["summaries"]] == ["2026-02", "2026-03"]
    listed = client.get(f"{base}/summaries", headers=_headers()).json()
    assert listed[0]["total_expense_cents"] == 2500

    generated = client.post(
        f"{base}/insights/generate", json={"month": "2026-03"}, headers=_headers()
    ).json()
    assert [i["insight_type"] for i in generated] == ["missing_income"]
    resp = client.post(
        f"{base}/insights/read", json={"ids": [generated[0]["id"]]}, headers=_headers()
    )
    assert resp.json() == {"updated": 1}
    unread = client.get(f"{base}/insights?unread=true", headers=_headers()).json()
    assert unread == []


def test_cron_requires_secret(client, monkeypatch) -> None:
    monkeypatch.setattr(
        main,
        "get_settings",
        lambda: SimpleNamespace(cron_secret="s3cret", scheduler_enabled=False),
    )
    assert client.post("/api/cron/daily").status_code == 401
    assert (
        client.post("/api/cron/monthly", headers={"X-Cron-Secret": "wrong"}).status_code
        == 401
    )
