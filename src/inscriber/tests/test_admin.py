import pytest

from inscriber.admin import AdminFacade, InvalidAdminActionError
from inscriber.competition import ProposalNotFoundError
from inscriber.models import AdminAction, AdminActionRequest, Proposal, ProposalStatus
from inscriber.monitor import BlockMonitor


@pytest.fixture
def admin(engine, progress, chain, order_manager):
    monitor = BlockMonitor(engine, progress, chain, order_manager=order_manager)
    return AdminFacade(engine, monitor, order_manager)


async def test_eliminate(admin, make_proposal, fetch):
    doge = await make_proposal("DOGE", votes=10)

    response = await admin.execute(
        AdminActionRequest(
            action=AdminAction.ELIMINATE, proposal_id=doge.id, reason="spam"
        ),
        actor="admin:ops",
    )

    assert response.success
    assert response.data["proposal"] == {
        "id": str(doge.id),
        "ticker": "DOGE",
        "status": "expired",
        "status_reason": "spam",
    }
    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.EXPIRED


async def test_eliminate_requires_proposal_id(admin):
    with pytest.raises(InvalidAdminActionError):
        await admin.execute(AdminActionRequest(action=AdminAction.ELIMINATE))


async def test_eliminate_unknown_proposal(admin):
    with pytest.raises(ProposalNotFoundError):
        await admin.execute(
            AdminActionRequest(action=AdminAction.ELIMINATE, proposal_id=404)
        )


async def test_reset(admin, make_proposal):
    await make_proposal("DOGE", votes=10, status=ProposalStatus.EXPIRED)
    await make_proposal("PEPE", votes=5)

    response = await admin.execute(AdminActionRequest(action=AdminAction.RESET))

    assert response.success
    assert response.data == {"reset_proposals": 1}


async def test_trigger(admin, chain, make_proposal):
    doge = await make_proposal("DOGE", votes=10)
    chain.tip = 100

    response = await admin.execute(AdminActionRequest(action=AdminAction.TRIGGER))

    assert response.success
    assert response.data["current_height"] == 100
    assert response.data["processed_blocks"] == [100]
    assert response.data["decisions"] == []

    chain.tip = 102
    response = await admin.trigger()
    (decision,) = response.data["decisions"]
    assert decision["proposal_id"] == str(doge.id)
    assert decision["block_height"] == 102


async def test_trigger_reports_poll_failure(admin, chain):
    chain.fail_tip = True

    response = await admin.trigger()

    assert not response.success
    assert response.error == "tip unavailable"


async def test_reconcile(admin):
    response = await admin.execute(AdminActionRequest(action=AdminAction.RECONCILE))

    assert response.success
    assert response.data == {
        "checked": 0,
        "completed": 0,
        "failed": 0,
        "stuck_reset": 0,
        "recreated": 0,
        "errors": 0,
    }


async def test_status(admin, chain):
    chain.tip = 100
    await admin.trigger()

    response = await admin.execute(AdminActionRequest(action=AdminAction.STATUS))

    assert response.success
    assert response.data["monitor"]["last_processed_block"] == 100
    assert response.data["reconciler"]["open_orders"] == 0
    assert set(admin.help()) == {action.value for action in AdminAction}
