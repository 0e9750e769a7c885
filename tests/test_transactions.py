import pytest
import asyncio
import httpx
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.exc import SQLAlchemyError


async def post_transaction(client, account_id, amount, type):
    return await client.post("/api/accounts/transaction", json={
        "account_id": account_id,
        "amount": amount,
        "type": type,
    })


def client_for(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestBasicTransactions:
    """Test basic transaction functionality."""

    @pytest.mark.asyncio
    async def test_deposit_success(self, client, account):
        response = await post_transaction(client, account.id, 30, "DEPOSIT")

        assert response.status_code == 200
        assert response.json() == {"message": "Transaction successful", "newBalance": 130.0}

    @pytest.mark.asyncio
    async def test_withdraw_success(self, client, account):
        response = await post_transaction(client, account.id, 40.25, "WITHDRAW")

        assert response.status_code == 200
        assert response.json()["newBalance"] == 59.75

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, client, account, account_repo):
        response = await post_transaction(client, account.id, 150, "WITHDRAW")

        assert response.status_code == 400
        data = response.json()
        assert data["detail"] == "Insufficient balance"
        assert data["error_code"] == "INSUFFICIENT_BALANCE"
        assert (await account_repo.get(account.id)).balance == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_account_not_found(self, client):
        response = await post_transaction(client, 999, 10, "DEPOSIT")

        assert response.status_code == 404
        assert response.json()["detail"] == "Account not found"
        assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_numeric_strings_accepted(self, client, account):
        response = await post_transaction(client, str(account.id), "0.50", "DEPOSIT")

        assert response.status_code == 200
        assert response.json()["newBalance"] == 100.5


class TestValidation:
    """Test input validation."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"amount": 10, "type": "DEPOSIT"},
            {"account_id": 1, "type": "DEPOSIT"},
            {"account_id": 1, "amount": 10},
            {"account_id": 1, "amount": 10, "type": "TRANSFER"},
            {"account_id": 1, "amount": 10, "type": "deposit"},
            {"account_id": 1, "amount": -5, "type": "DEPOSIT"},
            {"account_id": 1, "amount": 0, "type": "WITHDRAW"},
            {"account_id": 1, "amount": "abc", "type": "DEPOSIT"},
            {"account_id": 1, "amount": True, "type": "DEPOSIT"},
            {"account_id": 1, "amount": 1.005, "type": "DEPOSIT"},
            {"account_id": "abc", "amount": 10, "type": "DEPOSIT"},
            {"account_id": 0, "amount": 10, "type": "DEPOSIT"},
            {"account_id": 10**20, "amount": 10, "type": "DEPOSIT"},
        ],
    )
    async def test_invalid_payloads_return_400(self, client, account, transaction_log, payload):
        response = await client.post("/api/accounts/transaction", json=payload)

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert await transaction_log.count() == 0

    @pytest.mark.asyncio
    async def test_error_message_names_field(self, client, account):
        response = await post_transaction(client, account.id, -5, "DEPOSIT")

        assert response.json()["detail"] == "amount: amount must be positive"

    @pytest.mark.asyncio
    async def test_amount_above_limit(self, client, account):
        response = await post_transaction(client, account.id, 1000000.01, "DEPOSIT")

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_malformed_json(self, client):
        response = await client.post(
            "/api/accounts/transaction",
            content="{'invalid': 'json'",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400


class TestConcurrency:
    """Test concurrent transaction processing."""

    @pytest.mark.asyncio
    async def test_concurrent_insufficient_funds(self, client, account):
        # Try to withdraw 30.00 ten times from 100.00; only 3 fit
        tasks = [post_transaction(client, account.id, 30, "WITHDRAW") for _ in range(10)]

        results = await asyncio.gather(*tasks)

        successful = [r for r in results if r.status_code == 200]
        failed = [r for r in results if r.status_code == 400]
        assert len(successful) == 3
        assert len(failed) == 7
        assert all(r.json()["error_code"] == "INSUFFICIENT_BALANCE" for r in failed)

        accounts = (await client.get("/api/accounts")).json()
        assert accounts[0]["balance"] == 10.0

    @pytest.mark.asyncio
    async def test_concurrent_transactions_different_accounts(self, client, account, other_account):
        tasks = []
        for _ in range(5):
            tasks.append(post_transaction(client, account.id, 10, "DEPOSIT"))
            tasks.append(post_transaction(client, other_account.id, 10, "WITHDRAW"))

        results = await asyncio.gather(*tasks)

        assert all(r.status_code == 200 for r in results)
        balances = {a["id"]: a["balance"] for a in (await client.get("/api/accounts")).json()}
        assert balances == {account.id: 150.0, other_account.id: 0.0}


class TestAccountsAndHistory:
    """Read endpoints used by the dashboard."""

    @pytest.mark.asyncio
    async def test_list_accounts(self, client, account, other_account):
        response = await client.get("/api/accounts")

        assert response.status_code == 200
        assert response.json() == [
            {"id": account.id, "name": "Test Account", "balance": 100.0},
            {"id": other_account.id, "name": "Other Account", "balance": 50.0},
        ]

    @pytest.mark.asyncio
    async def test_get_account(self, client, account):
        response = await client.get(f"/api/accounts/{account.id}")

        assert response.status_code == 200
        assert response.json()["balance"] == 100.0
        assert (await client.get("/api/accounts/999")).status_code == 404
        assert (await client.get("/api/accounts/abc")).status_code == 400

        response = await client.get("/api/accounts/100000000000000000000")
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_history_newest_first(self, client, account):
        await post_transaction(client, account.id, 30, "DEPOSIT")
        await post_transaction(client, account.id, 20, "WITHDRAW")
        await post_transaction(client, account.id, 500, "WITHDRAW")  # rejected

        response = await client.get(f"/api/accounts/transactions/{account.id}")

        assert response.status_code == 200
        history = response.json()
        assert [(t["type"], t["amount"]) for t in history] == [("WITHDRAW", 20.0), ("DEPOSIT", 30.0)]
        assert all(t["account_id"] == account.id for t in history)
        assert history[0]["id"] > history[1]["id"]
        assert "transaction_date" in history[0]

    @pytest.mark.asyncio
    async def test_history_of_unknown_account_is_empty(self, client):
        response = await client.get("/api/accounts/transactions/999")

        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_history_rejects_out_of_range_id(self, client):
        response = await client.get("/api/accounts/transactions/100000000000000000000")

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_storage_error_returns_500(self, client, app):
        service = app.state.transaction_service

        async def broken_list():
            raise SQLAlchemyError("connection refused")

        with patch.object(service.account_repo, "list_accounts", broken_list):
            response = await client.get("/api/accounts")

        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to fetch accounts"
        assert response.json()["error_code"] == "STORAGE_FAILURE"

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_500(self, client, app, account):
        service = app.state.transaction_service

        async def broken_apply(*args, **kwargs):
            raise KeyError("boom")

        with patch.object(service, "apply", broken_apply):
            response = await post_transaction(client, account.id, 10, "DEPOSIT")

        assert response.status_code == 500
        assert response.json()["detail"] == "Transaction failed"
        assert response.json()["error_code"] == "INTERNAL_ERROR"


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client, account):
        await post_transaction(client, account.id, 5, "DEPOSIT")

        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["accounts_count"] == 1
        assert data["transactions_processed"] == 1

    @pytest.mark.asyncio
    async def test_root_endpoint(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "docs" in data

    @pytest.mark.asyncio
    async def test_unknown_path(self, client):
        response = await client.get("/no/such/path")

        assert response.status_code == 404
        assert response.json()["error_code"] == "HTTP_404"


class TestLifespan:
    @pytest.mark.asyncio
    async def test_startup_seeds_demo_accounts(self, settings, tmp_path):
        from main import create_app
        from storage import DEMO_ACCOUNTS

        seeded = settings.model_copy(update={
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'seeded.db'}",
            "seed_demo_data": True,
        })
        app = create_app(seeded)

        async with app.router.lifespan_context(app):
            accounts = await app.state.transaction_service.list_accounts()
            assert [a.name for a in accounts] == [name for name, _ in DEMO_ACCOUNTS]
            # Restarting does not seed twice
            assert await app.state.database.seed_if_empty() == 0


class TestRateLimiting:
    """The transaction endpoint is limited per client address."""

    @pytest.mark.asyncio
    async def test_limit_exceeded_returns_429(self, settings, database, account):
        from main import create_app

        limited = settings.model_copy(update={"rate_limit_enabled": True, "transaction_rate_limit": "2/minute"})
        app = create_app(limited, database)

        async with client_for(app) as client:
            statuses = [(await post_transaction(client, account.id, 1, "DEPOSIT")).status_code for _ in range(3)]

        assert statuses == [200, 200, 429]

    @pytest.mark.asyncio
    async def test_apps_do_not_share_limiter(self, settings, database, account):
        from main import create_app

        limited = settings.model_copy(update={"rate_limit_enabled": True, "transaction_rate_limit": "1/minute"})
        limited_app = create_app(limited, database)
        unlimited_app = create_app(settings, database)

        assert limited_app.state.limiter is not unlimited_app.state.limiter
        assert limited_app.state.limiter.enabled
        assert not unlimited_app.state.limiter.enabled

        async with client_for(limited_app) as client:
            assert (await post_transaction(client, account.id, 1, "DEPOSIT")).status_code == 200
            assert (await post_transaction(client, account.id, 1, "DEPOSIT")).status_code == 429

        async with client_for(unlimited_app) as client:
            statuses = [(await post_transaction(client, account.id, 1, "DEPOSIT")).status_code for _ in range(3)]
        assert statuses == [200, 200, 200]
