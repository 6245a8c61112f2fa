import random

import pytest
from sqlalchemy import select

from core.schemas import BlockInfo
from inscriber.competition import (
    CompetitionEngine,
    CompetitionInvariantError,
    InvalidTransitionError,
    ProposalNotFoundError,
)
from inscriber.config import CompetitionSettings
from inscriber.models import (
    ContenderSweepPolicy,
    DethronePolicy,
    InscriptionOrder,
    OrderStatus,
    Proposal,
    ProposalStatus,
    ProposalStatusChange,
)
from inscriber.progress import BlockOutOfOrderError

from .conftest import block_hash


async def audit_rows(session_factory, proposal_id):
    async with session_factory() as session:
        result = await session.execute(
            select(ProposalStatusChange)
            .where(ProposalStatusChange.proposal_id == proposal_id)
            .order_by(ProposalStatusChange.created_at, ProposalStatusChange.id)
        )
        return list(result.scalars().all())


async def test_top_proposal_is_promoted(make_proposal, run_block, fetch):
    doge = await make_proposal("DOGE", votes=10)
    pepe = await make_proposal("PEPE", votes=5)

    outcome = await run_block(100)

    assert outcome.applied
    assert outcome.decision is None
    doge = await fetch(Proposal, doge.id)
    assert doge.status == ProposalStatus.LEADER
    assert doge.leader_start_block == 100
    assert doge.expiration_block == 105
    assert doge.leaderboard_min_blocks == 2
    assert doge.first_time_as_leader is not None
    assert (await fetch(Proposal, pepe.id)).status == ProposalStatus.ACTIVE


async def test_leader_wins_after_defending_min_blocks(
    make_proposal, run_block, fetch, progress
):
    doge = await make_proposal("DOGE", votes=10)
    await make_proposal("PEPE", votes=5)

    await run_block(100)
    defending = await run_block(101)
    assert defending.decision is None
    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.LEADER

    won = await run_block(102)

    assert won.launched
    assert won.decision.proposal_id == doge.id
    assert won.decision.ticker == "DOGE"
    assert won.decision.block_height == 102
    assert won.decision.block_hash == block_hash(102)

    doge = await fetch(Proposal, doge.id)
    assert doge.status == ProposalStatus.INSCRIBING
    assert doge.won_block == 102
    assert doge.won_block_hash == block_hash(102)

    checkpoint = await progress.snapshot()
    assert checkpoint.last_processed_block == 102
    assert checkpoint.consecutive_blocks_without_launches == 0
    assert checkpoint.last_launch_block == 102


async def test_challenger_dethrones_leader_immediately(
    make_proposal, run_block, fetch, set_votes, session_factory
):
    doge = await make_proposal("DOGE", votes=10)
    pepe = await make_proposal("PEPE", votes=5)
    await run_block(100)

    await set_votes(pepe.id, 20)
    outcome = await run_block(101)

    doge = await fetch(Proposal, doge.id)
    pepe = await fetch(Proposal, pepe.id)
    assert doge.status == ProposalStatus.EXPIRED
    assert pepe.status == ProposalStatus.LEADER
    assert pepe.leader_start_block == 101
    assert outcome.transitions == [
        (doge.id, ProposalStatus.LEADER, ProposalStatus.EXPIRED),
        (pepe.id, ProposalStatus.ACTIVE, ProposalStatus.LEADER),
    ]

    rows = await audit_rows(session_factory, doge.id)
    assert [(row.from_status, row.to_status) for row in rows] == [
        ("active", "leader"),
        ("leader", "expired"),
    ]
    assert rows[-1].actor == "engine"
    assert rows[-1].block_height == 101


async def test_dethroned_leader_rejected_under_reject_policy(
    session_factory, progress, make_proposal, fetch, set_votes
):
    engine = CompetitionEngine(
        session_factory,
        CompetitionSettings(dethrone_policy=DethronePolicy.REJECT),
        progress,
    )
    doge = await make_proposal("DOGE", votes=10)
    pepe = await make_proposal("PEPE", votes=5)

    for height, votes in ((100, None), (101, 20)):
        if votes is not None:
            await set_votes(pepe.id, votes)
        async with engine.transaction() as session:
            await engine.process_block(
                session,
                BlockInfo(height=height, hash=block_hash(height)),
                last_processed=height - 1 if height > 100 else 0,
            )

    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.REJECTED


async def test_ties_go_to_earliest_submission(make_proposal, run_block, fetch):
    late = await make_proposal("LATE", votes=7, age=1)
    early = await make_proposal("EARLY", votes=7, age=30)

    await run_block(100)

    assert (await fetch(Proposal, early.id)).status == ProposalStatus.LEADER
    assert (await fetch(Proposal, late.id)).status == ProposalStatus.ACTIVE


async def test_min_votes_to_lead_blocks_promotion(
    session_factory, progress, make_proposal, fetch
):
    engine = CompetitionEngine(
        session_factory, CompetitionSettings(min_votes_to_lead=5), progress
    )
    doge = await make_proposal("DOGE", votes=3)

    async with engine.transaction() as session:
        outcome = await engine.process_block(
            session, BlockInfo(height=100, hash=block_hash(100)), last_processed=0
        )

    assert outcome.transitions == []
    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.ACTIVE


async def test_empty_competition_still_advances(run_block, progress):
    outcome = await run_block(100)

    assert outcome.applied
    assert outcome.transitions == []
    checkpoint = await progress.snapshot()
    assert checkpoint.last_processed_block == 100
    assert checkpoint.consecutive_blocks_without_launches == 1


async def test_processed_block_is_a_noop(make_proposal, run_block, session_factory):
    doge = await make_proposal("DOGE", votes=10)
    await run_block(100)

    again = await run_block(100)

    assert not again.applied
    assert again.transitions == []
    assert len(await audit_rows(session_factory, doge.id)) == 1


async def test_skipped_block_is_rejected(make_proposal, run_block, progress):
    await make_proposal("DOGE", votes=10)
    await run_block(100)

    with pytest.raises(BlockOutOfOrderError):
        await run_block(102)

    assert (await progress.snapshot()).last_processed_block == 100


async def test_two_leadership_holders_halt_processing(
    make_proposal, run_block, progress
):
    await make_proposal(
        "DOGE", votes=10, status=ProposalStatus.LEADER, leader_start_block=90
    )
    await make_proposal(
        "PEPE", votes=5, status=ProposalStatus.INSCRIBING, leader_start_block=80
    )

    with pytest.raises(CompetitionInvariantError):
        await run_block(100)

    assert (await progress.snapshot()).last_processed_block == 0


async def test_leader_without_start_block_is_an_invariant_error(
    make_proposal, run_block
):
    await make_proposal("DOGE", votes=10, status=ProposalStatus.LEADER)

    with pytest.raises(CompetitionInvariantError):
        await run_block(100)


async def test_competition_pauses_while_inscribing(
    make_proposal, run_block, fetch, progress
):
    doge = await make_proposal(
        "DOGE",
        votes=10,
        status=ProposalStatus.INSCRIBING,
        leader_start_block=98,
        won_block=100,
    )
    pepe = await make_proposal("PEPE", votes=50)

    outcome = await run_block(101)

    assert outcome.applied
    assert outcome.paused
    assert outcome.transitions == []
    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.INSCRIBING
    assert (await fetch(Proposal, pepe.id)).status == ProposalStatus.ACTIVE
    assert (await progress.snapshot()).last_processed_block == 101


async def test_leader_times_out_without_same_block_promotion(
    make_proposal, run_block, fetch
):
    # Rules tightened since promotion: the stored deadline now comes first
    doge = await make_proposal(
        "DOGE",
        votes=10,
        status=ProposalStatus.LEADER,
        leader_start_block=100,
        leaderboard_min_blocks=10,
        expiration_block=103,
    )
    pepe = await make_proposal("PEPE", votes=5)

    await run_block(103)
    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.LEADER

    outcome = await run_block(104)

    assert outcome.transitions == [
        (doge.id, ProposalStatus.LEADER, ProposalStatus.EXPIRED)
    ]
    assert (await fetch(Proposal, pepe.id)).status == ProposalStatus.ACTIVE

    await run_block(105)
    assert (await fetch(Proposal, pepe.id)).status == ProposalStatus.LEADER


@pytest.mark.parametrize(
    "policy, swept_at",
    [
        (ContenderSweepPolicy.NONE, None),
        (ContenderSweepPolicy.ON_LEADER_CHANGE, 100),
        (ContenderSweepPolicy.ON_WIN, 102),
    ],
)
async def test_contender_sweep_policy(
    session_factory, progress, make_proposal, fetch, policy, swept_at
):
    engine = CompetitionEngine(
        session_factory, CompetitionSettings(contender_sweep_policy=policy), progress
    )
    doge = await make_proposal("DOGE", votes=10)
    pepe = await make_proposal("PEPE", votes=5)
    shib = await make_proposal("SHIB", votes=1)

    expired_at = None
    for height in (100, 101, 102):
        async with engine.transaction() as session:
            await engine.process_block(
                session,
                BlockInfo(height=height, hash=block_hash(height)),
                last_processed=height - 1 if height > 100 else 0,
            )
        if expired_at is None and (
            (await fetch(Proposal, pepe.id)).status == ProposalStatus.EXPIRED
        ):
            expired_at = height

    assert expired_at == swept_at
    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.INSCRIBING
    expected = ProposalStatus.ACTIVE if swept_at is None else ProposalStatus.EXPIRED
    assert (await fetch(Proposal, shib.id)).status == expected


async def test_force_expire_leader(
    engine, make_proposal, run_block, fetch, session_factory
):
    doge = await make_proposal("DOGE", votes=10)
    await run_block(100)

    expired = await engine.force_expire_proposal(doge.id, "spam", actor="admin:ops")

    assert expired.status == ProposalStatus.EXPIRED
    assert expired.status_reason == "spam"
    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.EXPIRED
    rows = await audit_rows(session_factory, doge.id)
    assert rows[-1].actor == "admin:ops"
    assert rows[-1].to_status == "expired"
    assert rows[-1].block_height is None


async def test_force_expire_abandons_open_orders(
    engine, make_proposal, fetch, session_factory
):
    doge = await make_proposal(
        "DOGE", votes=10, status=ProposalStatus.INSCRIBING, leader_start_block=100
    )
    async with session_factory() as session:
        session.add(
            InscriptionOrder(
                id=1,
                proposal_id=doge.id,
                block_height=102,
                block_hash=block_hash(102),
                external_order_id="order-1",
                order_status=OrderStatus.INSCRIBING.value,
                fee_rate=10,
            )
        )
        await session.commit()

    await engine.force_expire_proposal(doge.id, "stuck")

    order = await fetch(InscriptionOrder, 1)
    assert order.order_status == OrderStatus.ABANDONED
    assert "stuck" in order.status_detail


async def test_force_expire_rejects_inscribed(engine, make_proposal):
    doge = await make_proposal("DOGE", votes=10, status=ProposalStatus.INSCRIBED)

    with pytest.raises(InvalidTransitionError):
        await engine.force_expire_proposal(doge.id, "too late")


async def test_force_expire_unknown_proposal(engine):
    with pytest.raises(ProposalNotFoundError):
        await engine.force_expire_proposal(404, "missing")


async def test_force_expire_already_expired_is_unchanged(
    engine, make_proposal, session_factory
):
    doge = await make_proposal(
        "DOGE", votes=10, status=ProposalStatus.EXPIRED, status_reason="dethroned"
    )

    result = await engine.force_expire_proposal(doge.id, "again")

    assert result.status == ProposalStatus.EXPIRED
    assert result.status_reason == "dethroned"
    assert await audit_rows(session_factory, doge.id) == []


async def test_reset_competition(engine, make_proposal, run_block, fetch, progress):
    leader = await make_proposal("DOGE", votes=10)
    await run_block(100)
    inscribing = await make_proposal(
        "PEPE", votes=3, status=ProposalStatus.INSCRIBING, leader_start_block=50
    )
    expired = await make_proposal("SHIB", votes=2, status=ProposalStatus.EXPIRED)
    rejected = await make_proposal("SCAM", votes=1, status=ProposalStatus.REJECTED)
    inscribed = await make_proposal("BONK", votes=1, status=ProposalStatus.INSCRIBED)

    count = await engine.reset_competition("new season", actor="admin:ops")

    assert count == 3
    for proposal in (leader, inscribing, expired):
        row = await fetch(Proposal, proposal.id)
        assert row.status == ProposalStatus.ACTIVE
        assert row.first_time_as_leader is None
        assert row.leader_start_block is None
        assert row.expiration_block is None
    assert (await fetch(Proposal, rejected.id)).status == ProposalStatus.REJECTED
    assert (await fetch(Proposal, inscribed.id)).status == ProposalStatus.INSCRIBED

    checkpoint = await progress.snapshot()
    assert checkpoint.last_processed_block == 100
    assert checkpoint.consecutive_blocks_without_launches == 0


async def test_get_status(engine, make_proposal, run_block):
    await make_proposal("DOGE", votes=10)
    await make_proposal("PEPE", votes=5)
    await make_proposal("SCAM", votes=1, status=ProposalStatus.REJECTED)
    await run_block(100)
    await run_block(101)

    stats = await engine.get_status(101)

    assert stats.total_active == 1
    assert stats.current_leaders == 1
    assert stats.total_rejected == 1
    assert stats.top_proposal.ticker == "DOGE"
    assert stats.top_proposal.status == ProposalStatus.LEADER
    assert stats.top_proposal.blocks_as_leader == 1
    assert stats.top_proposal.leaderboard_min_blocks == 2


async def test_get_status_without_leader_reports_rank_one(engine, make_proposal):
    await make_proposal("PEPE", votes=5)
    await make_proposal("DOGE", votes=10)

    stats = await engine.get_status(None)

    assert stats.current_leaders == 0
    assert stats.top_proposal.ticker == "DOGE"
    assert stats.top_proposal.blocks_as_leader == 0


@pytest.mark.parametrize(
    "settings",
    [
        CompetitionSettings(
            leaderboard_min_blocks=1,
            max_leader_blocks=3,
            contender_sweep_policy=ContenderSweepPolicy.ON_WIN,
        )
    ],
)
async def test_single_block_defence_wins_and_sweeps_the_field(
    make_proposal, run_block, fetch
):
    doge = await make_proposal("DOGE", votes=1500)
    others = [
        await make_proposal(f"MEME{n}", votes=100 * n, age=n) for n in range(1, 10)
    ]

    promoted = await run_block(101)

    assert promoted.decision is None
    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.LEADER

    won = await run_block(102)

    assert won.decision.proposal_id == doge.id
    assert won.decision.block_height == 102
    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.INSCRIBING
    for other in others:
        assert (await fetch(Proposal, other.id)).status == ProposalStatus.EXPIRED


async def test_overtaken_leader_expires_mid_defence(
    engine, make_proposal, run_block, fetch, set_votes
):
    doge = await make_proposal("DOGE", votes=50)
    pepe = await make_proposal("PEPE", votes=40)

    await run_block(101)
    stats = await engine.get_status(101)
    assert stats.top_proposal.ticker == "DOGE"
    assert stats.top_proposal.blocks_as_leader == 0

    await run_block(102)
    stats = await engine.get_status(102)
    assert stats.top_proposal.status == ProposalStatus.LEADER
    assert stats.top_proposal.blocks_as_leader == 1

    await set_votes(pepe.id, 60)
    await run_block(103)

    assert (await fetch(Proposal, doge.id)).status == ProposalStatus.EXPIRED
    pepe = await fetch(Proposal, pepe.id)
    assert pepe.status == ProposalStatus.LEADER
    assert pepe.leader_start_block == 103
    stats = await engine.get_status(103)
    assert stats.top_proposal.ticker == "PEPE"
    assert stats.top_proposal.blocks_as_leader == 0


async def test_at_most_one_leadership_holder_per_block(
    make_proposal, run_block, set_votes, session_factory
):
    rng = random.Random(7)
    proposals = [
        await make_proposal(f"COIN{n}", votes=rng.randint(0, 50), age=n)
        for n in range(6)
    ]

    for height in range(100, 160):
        if height % 5 == 0:
            proposals.append(
                await make_proposal(f"NEW{height}", votes=rng.randint(0, 50))
            )
        for proposal in rng.sample(proposals, 3):
            await set_votes(proposal.id, rng.randint(0, 80))

        await run_block(height)

        async with session_factory() as session:
            result = await session.execute(
                select(Proposal).where(
                    Proposal.status.in_(
                        [ProposalStatus.LEADER, ProposalStatus.INSCRIBING]
                    )
                )
            )
            holders = list(result.scalars().all())
            assert len(holders) <= 1, f"block {height}: {holders}"
            # Stand in for a completed order so the contest resumes
            for holder in holders:
                if holder.status == ProposalStatus.INSCRIBING:
                    holder.status = ProposalStatus.INSCRIBED
            await session.commit()
