import asyncio
import json

import httpx
from click.testing import CliRunner
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

from inscriber import cli as cli_module
from inscriber.cli import AdminApiClient, cli


def create_schema(database_url: str) -> None:
    async def _create():
        engine = create_async_engine(database_url)
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        await engine.dispose()

    asyncio.run(_create())


def test_api_key_create_and_list(tmp_path):
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'inscriber.db'}"
    create_schema(database_url)
    runner = CliRunner()

    created = runner.invoke(
        cli,
        [
            "api-key",
            "--database-url",
            database_url,
            "create",
            "--name",
            "ops",
            "--role",
            "admin",
        ],
    )
    listed = runner.invoke(
        cli, ["api-key", "--database-url", database_url, "list", "--role", "admin"]
    )

    assert created.exit_code == 0, created.output
    assert "API key created successfully" in created.output
    assert listed.exit_code == 0, listed.output
    assert "ops" in listed.output
    assert "Total: 1 key(s)" in listed.output


def admin_api(monkeypatch, handler):
    requests = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    def factory(api_url, api_key, timeout=30.0):
        return AdminApiClient(
            api_url, api_key, timeout, transport=httpx.MockTransport(recording)
        )

    monkeypatch.setattr(cli_module, "AdminApiClient", factory)
    return requests


def test_competition_eliminate(monkeypatch):
    requests = admin_api(
        monkeypatch,
        lambda request: httpx.Response(
            200,
            json={
                "success": True,
                "message": "Proposal DOGE eliminated",
                "data": {"proposal": {"id": "7", "status": "expired"}},
            },
        ),
    )

    result = CliRunner().invoke(
        cli,
        ["competition", "--api-key", "k", "eliminate", "7", "--reason", "spam"],
    )

    assert result.exit_code == 0, result.output
    assert "Proposal DOGE eliminated" in result.output
    (request,) = requests
    assert request.method == "POST"
    assert request.headers["X-API-Key"] == "k"
    assert json.loads(request.content) == {
        "action": "eliminate",
        "proposal_id": 7,
        "reason": "spam",
    }


def test_competition_action_failure_exits_nonzero(monkeypatch):
    admin_api(
        monkeypatch,
        lambda request: httpx.Response(
            404, json={"success": False, "error": "Proposal 7 not found"}
        ),
    )

    result = CliRunner().invoke(
        cli,
        ["competition", "--api-key", "k", "eliminate", "7", "--reason", "spam"],
    )

    assert result.exit_code == 1
    assert "Proposal 7 not found" in result.output


def test_competition_status_unauthorized(monkeypatch):
    admin_api(
        monkeypatch,
        lambda request: httpx.Response(401, json={"detail": "Authentication required"}),
    )

    result = CliRunner().invoke(cli, ["competition", "--api-key", "bad", "status"])

    assert result.exit_code == 1
    assert "Authentication required" in result.output


def test_competition_status_table(monkeypatch):
    admin_api(
        monkeypatch,
        lambda request: httpx.Response(
            200,
            json={
                "success": True,
                "data": {
                    "monitor": {
                        "is_running": True,
                        "last_processed_block": 840000,
                        "competition": {
                            "total_active": 3,
                            "top_proposal": {
                                "ticker": "DOGE",
                                "votes": 10,
                                "status": "leader",
                                "blocks_as_leader": 1,
                                "leaderboard_min_blocks": 2,
                            },
                        },
                    },
                    "reconciler": {"is_running": True, "open_orders": 0},
                },
            },
        ),
    )

    result = CliRunner().invoke(cli, ["competition", "--api-key", "k", "status"])

    assert result.exit_code == 0, result.output
    assert "840000" in result.output
    assert "DOGE" in result.output
