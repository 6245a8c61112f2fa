from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from core.db.models import utcnow
from inscriber.auth import UserRole, hash_api_key
from inscriber.config import InscriberConfig
from inscriber.endpoints import create_app
from inscriber.models import (
    ApiKey,
    InscriptionOrder,
    OrderStatus,
    Proposal,
    ProposalStatus,
    ProposalStatusChange,
)
from inscriber.service import InscriberService

from .conftest import block_hash

ADMIN_KEY = "admin-secret"
VIEWER_KEY = "viewer-secret"
EXPIRED_KEY = "expired-secret"


@pytest.fixture
async def service(session_factory, chain, marketplace, wallet):
    async with session_factory() as session:
        for key_id, (key, role) in enumerate(
            [(ADMIN_KEY, UserRole.ADMIN), (VIEWER_KEY, UserRole.VIEWER)], start=1
        ):
            session.add(
                ApiKey(
                    id=key_id,
                    name=f"{role.value}-key",
                    key_hash=hash_api_key(key),
                    role=role.value,
                )
            )
        session.add(
            ApiKey(
                id=3,
                name="old-key",
                key_hash=hash_api_key(EXPIRED_KEY),
                role=UserRole.ADMIN.value,
                expires_at=utcnow() - timedelta(days=1),
            )
        )
        await session.commit()

    service = InscriberService(
        InscriberConfig(argv=["--block-poll-interval", "1"]),
        chain=chain,
        marketplace=marketplace,
        wallet=wallet,
        session_factory=session_factory,
    )
    await service.startup()
    yield service
    await service.shutdown()


@pytest.fixture
async def client(service):
    app = create_app(service, start_background_tasks=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def test_root_and_health(client):
    root = await client.get("/")
    health = await client.get("/health")

    assert root.status_code == 200
    assert root.json()["service"] == "Inscriber"
    assert health.json()["status"] == "healthy"
    assert health.json()["database_connected"] is True
    assert health.json()["monitor_running"] is False


async def test_status_requires_api_key(client):
    response = await client.get("/admin/competition")

    assert response.status_code == 401


@pytest.mark.parametrize("key", ["not-a-key", EXPIRED_KEY])
async def test_invalid_or_expired_key_rejected(client, key):
    response = await client.get("/admin/competition", headers={"X-API-Key": key})

    assert response.status_code == 401


async def test_viewer_reads_status(client, chain, make_proposal):
    await make_proposal("DOGE", votes=10)
    chain.tip = 100

    response = await client.get("/admin/competition", headers={"X-API-Key": VIEWER_KEY})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["monitor"]["last_processed_block"] == 0
    assert body["data"]["monitor"]["competition"]["top_proposal"]["ticker"] == "DOGE"
    assert "eliminate" in body["actions"]


async def test_viewer_cannot_run_actions(client):
    response = await client.post(
        "/admin/competition",
        json={"action": "trigger"},
        headers={"X-API-Key": VIEWER_KEY},
    )

    assert response.status_code == 403


async def test_admin_trigger(client, chain, make_proposal, fetch):
    doge = await make_proposal("DOGE", votes=10)
    chain.tip = 100

    response = await client.post(
        "/admin/competition",
        json={"action": "trigger"},
        headers={"X-API-Key": ADMIN_KEY},
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["data"]["processed_blocks"] == [100]
    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.LEADER


async def test_admin_eliminate_records_actor(client, make_proposal, session_factory):
    doge = await make_proposal("DOGE", votes=10)

    response = await client.post(
        "/admin/competition",
        json={"action": "eliminate", "proposal_id": doge.id, "reason": "duplicate"},
        headers={"X-API-Key": ADMIN_KEY},
    )

    assert response.status_code == 200
    assert response.json()["data"]["proposal"]["status"] == "expired"
    async with session_factory() as session:
        change = (
            await session.execute(
                select(ProposalStatusChange).where(
                    ProposalStatusChange.proposal_id == doge.id
                )
            )
        ).scalar_one()
    assert change.actor == "admin:admin-key"
    assert change.reason == "duplicate"


@pytest.mark.parametrize(
    "body, status_code",
    [
        ({"action": "eliminate", "proposal_id": 404}, 404),
        ({"action": "eliminate"}, 400),
    ],
)
async def test_admin_errors_map_to_status_codes(client, body, status_code):
    response = await client.post(
        "/admin/competition", json=body, headers={"X-API-Key": ADMIN_KEY}
    )

    assert response.status_code == status_code
    assert response.json()["success"] is False
    assert response.json()["error"]


async def test_eliminating_inscribed_proposal_conflicts(client, make_proposal):
    doge = await make_proposal("DOGE", votes=10, status=ProposalStatus.INSCRIBED)

    response = await client.post(
        "/admin/competition",
        json={"action": "eliminate", "proposal_id": doge.id},
        headers={"X-API-Key": ADMIN_KEY},
    )

    assert response.status_code == 409


async def test_unknown_action_is_a_validation_error(client):
    response = await client.post(
        "/admin/competition",
        json={"action": "explode"},
        headers={"X-API-Key": ADMIN_KEY},
    )

    assert response.status_code == 422


async def test_list_orders(client, make_proposal, session_factory):
    doge = await make_proposal("DOGE", votes=10, status=ProposalStatus.INSCRIBING)
    async with session_factory() as session:
        session.add_all(
            [
                InscriptionOrder(
                    id=11,
                    proposal_id=doge.id,
                    block_height=102,
                    block_hash=block_hash(102),
                    external_order_id="order-1",
                    order_status=OrderStatus.CANCELED.value,
                    fee_rate=10,
                    created_at=utcnow() - timedelta(hours=1),
                ),
                InscriptionOrder(
                    id=12,
                    proposal_id=doge.id,
                    block_height=110,
                    block_hash=block_hash(110),
                    external_order_id="order-2",
                    order_status=OrderStatus.PAYMENT_SUCCESS.value,
                    fee_rate=10,
                ),
            ]
        )
        await session.commit()

    all_orders = await client.get("/admin/orders", headers={"X-API-Key": VIEWER_KEY})
    open_orders = await client.get(
        "/admin/orders", params={"open_only": True}, headers={"X-API-Key": VIEWER_KEY}
    )

    assert [order["id"] for order in all_orders.json()] == ["12", "11"]
    assert [order["external_order_id"] for order in open_orders.json()] == ["order-2"]
    assert open_orders.json()[0]["proposal_id"] == str(doge.id)


async def test_openapi_advertises_api_key_security(client):
    schema = (await client.get("/openapi.json")).json()

    assert "ApiKeyAuth" in schema["components"]["securitySchemes"]
    assert schema["paths"]["/admin/competition"]["post"]["security"] == [
        {"ApiKeyAuth": []}
    ]
    assert "security" not in schema["paths"]["/health"]["get"]
