"""
Block-driven competition state machine.

Once per block the engine ranks the ``active``/``leader`` proposals by
``total_votes`` (ties go to the earliest ``created_at``, then the lowest id)
and applies, in order: dethrone, promotion, survival and timeout. A leader
promoted at height ``h`` has defended ``height - h`` blocks; it wins once that
reaches its ``leaderboard_min_blocks``. At most one proposal holds ``leader``
or ``inscribing`` and at most one inscription decision is emitted per block.

Every mutation, including admin force-actions, goes through
``CompetitionEngine.transaction()`` so the block batch and operator actions
never interleave.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional, Sequence

from snowflake import SnowflakeGenerator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.db.models import utcnow
from core.errors import Error
from core.log import get_logger
from core.schemas import BlockInfo
from inscriber.config import CompetitionSettings
from inscriber.models import (
    LEADERSHIP_STATUSES,
    RANKED_PROPOSAL_STATUSES,
    TERMINAL_ORDER_STATUSES,
    CompetitionStats,
    ContenderSweepPolicy,
    InscriptionOrder,
    OrderStatus,
    Proposal,
    ProposalStatus,
    ProposalStatusChange,
    TopProposalInfo,
)
from inscriber.progress import BlockOutOfOrderError, ProgressStore

logger = get_logger(__name__)

ENGINE_ACTOR = "engine"


class CompetitionInvariantError(Error):
    """Ledger state the engine refuses to act on; needs an operator."""


class ProposalNotFoundError(Error):
    """Raised when a proposal cannot be located."""


class InvalidTransitionError(Error):
    """Raised when a proposal cannot move to the requested status."""


@dataclass(frozen=True)
class InscriptionDecision:
    """A proposal survived its challenge and must be inscribed."""

    proposal_id: int
    ticker: str
    block_height: int
    block_hash: str


@dataclass
class BlockOutcome:
    height: int
    applied: bool = True
    paused: bool = False
    decision: Optional[InscriptionDecision] = None
    transitions: List[tuple[int, ProposalStatus, ProposalStatus]] = field(
        default_factory=list
    )

    @property
    def launched(self) -> bool:
        return self.decision is not None


class CompetitionEngine:
    """Applies per-block transitions and operator actions to the ledger."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: CompetitionSettings,
        progress: ProgressStore,
        id_generator: Optional[SnowflakeGenerator] = None,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.progress = progress
        self.id_generator = id_generator or SnowflakeGenerator(42)
        self.clock = clock
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Serialize ledger writers and wrap them in one database transaction."""
        async with self._lock:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def rank(
        self, session: AsyncSession, for_update: bool = False
    ) -> List[Proposal]:
        query = select(Proposal).where(Proposal.status.in_(RANKED_PROPOSAL_STATUSES))
        query = query.order_by(
            Proposal.total_votes.desc(), Proposal.created_at.asc(), Proposal.id.asc()
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return list(result.scalars().all())

    async def leadership_holders(
        self, session: AsyncSession, for_update: bool = False
    ) -> List[Proposal]:
        query = select(Proposal).where(Proposal.status.in_(LEADERSHIP_STATUSES))
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query.order_by(Proposal.id))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def record_transition(
        self,
        session: AsyncSession,
        proposal: Proposal,
        to_status: ProposalStatus,
        actor: str,
        block_height: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Change ``proposal.status`` and append the audit row."""
        from_status = proposal.status
        proposal.status = to_status
        proposal.status_reason = reason
        proposal.updated_at = self.clock()
        session.add(
            ProposalStatusChange(
                id=next(self.id_generator),
                proposal_id=proposal.id,
                from_status=ProposalStatus(from_status).value,
                to_status=to_status.value,
                block_height=block_height,
                reason=reason,
                actor=actor,
            )
        )
        logger.info(
            "Proposal %s (%s): %s -> %s%s",
            proposal.id,
            proposal.ticker,
            from_status,
            to_status,
            f" [{reason}]" if reason else "",
        )

    async def process_block(
        self, session: AsyncSession, block: BlockInfo, last_processed: int
    ) -> BlockOutcome:
        """
        Apply the transitions for ``block`` inside the caller's transaction.

        ``last_processed`` is the checkpoint height; 0 means nothing has been
        processed yet and any height is accepted.
        """
        height = block.height
        if last_processed and height <= last_processed:
            logger.debug("Block %s already processed, skipping", height)
            return BlockOutcome(height=height, applied=False)
        if last_processed and height != last_processed + 1:
            raise BlockOutOfOrderError(height, last_processed)

        outcome = BlockOutcome(height=height)
        holders = await self.leadership_holders(session, for_update=True)
        if len(holders) > 1:
            raise CompetitionInvariantError(
                f"{len(holders)} proposals hold leadership at block {height}: "
                + ", ".join(f"{p.id}={p.status}" for p in holders)
            )

        incumbent = holders[0] if holders else None
        if incumbent is not None and incumbent.status == ProposalStatus.INSCRIBING:
            logger.debug(
                "Proposal %s is inscribing; competition paused at block %s",
                incumbent.id,
                height,
            )
            outcome.paused = True
            return outcome

        ranked = await self.rank(session, for_update=True)
        top = ranked[0] if ranked else None

        # Dethrone
        if incumbent is not None and (top is None or top.id != incumbent.id):
            target = self.settings.dethrone_policy.target_status
            challenger = f"by {top.ticker}" if top is not None else "with no challenger"
            self._transition(
                session,
                outcome,
                incumbent,
                target,
                reason=f"dethroned at block {height} {challenger}",
            )
            incumbent = None

        if incumbent is None:
            # Promotion
            if top is not None and top.total_votes >= self.settings.min_votes_to_lead:
                self._promote(session, outcome, top, height)
                sweep = self.settings.contender_sweep_policy
                if sweep == ContenderSweepPolicy.ON_LEADER_CHANGE:
                    self._sweep(session, outcome, ranked, keep=top, height=height)
            return outcome

        if incumbent.leader_start_block is None:
            raise CompetitionInvariantError(
                f"Leader {incumbent.id} has no leader_start_block"
            )

        # Survival
        defended = incumbent.blocks_as_leader(height)
        if defended >= incumbent.leaderboard_min_blocks:
            incumbent.won_block = height
            incumbent.won_block_hash = block.hash
            self._transition(
                session,
                outcome,
                incumbent,
                ProposalStatus.INSCRIBING,
                reason=(
                    f"held rank #1 for {defended}/{incumbent.leaderboard_min_blocks} "
                    f"blocks at block {height}"
                ),
            )
            outcome.decision = InscriptionDecision(
                proposal_id=incumbent.id,
                ticker=incumbent.ticker,
                block_height=height,
                block_hash=block.hash,
            )
            if self.settings.contender_sweep_policy == ContenderSweepPolicy.ON_WIN:
                self._sweep(session, outcome, ranked, keep=incumbent, height=height)
            return outcome

        # Timeout
        if incumbent.expiration_block is not None and height > incumbent.expiration_block:
            self._transition(
                session,
                outcome,
                incumbent,
                ProposalStatus.EXPIRED,
                reason=(
                    f"leadership timed out at block {height} "
                    f"(deadline {incumbent.expiration_block})"
                ),
            )
        else:
            logger.info(
                "Leader %s (%s) defending: %s/%s blocks at block %s",
                incumbent.id,
                incumbent.ticker,
                defended,
                incumbent.leaderboard_min_blocks,
                height,
            )
        return outcome

    def _transition(
        self,
        session: AsyncSession,
        outcome: BlockOutcome,
        proposal: Proposal,
        to_status: ProposalStatus,
        reason: str,
    ) -> None:
        outcome.transitions.append((proposal.id, ProposalStatus(proposal.status), to_status))
        self.record_transition(
            session,
            proposal,
            to_status,
            actor=ENGINE_ACTOR,
            block_height=outcome.height,
            reason=reason,
        )

    def _promote(
        self, session: AsyncSession, outcome: BlockOutcome, proposal: Proposal, height: int
    ) -> None:
        if proposal.first_time_as_leader is None:
            proposal.first_time_as_leader = self.clock()
        proposal.leader_start_block = height
        proposal.leaderboard_min_blocks = self.settings.leaderboard_min_blocks
        proposal.expiration_block = height + self.settings.max_leader_blocks
        self._transition(
            session,
            outcome,
            proposal,
            ProposalStatus.LEADER,
            reason=f"rank #1 with {proposal.total_votes} votes at block {height}",
        )

    def _sweep(
        self,
        session: AsyncSession,
        outcome: BlockOutcome,
        ranked: Sequence[Proposal],
        keep: Proposal,
        height: int,
    ) -> None:
        swept = 0
        for proposal in ranked:
            if proposal.id == keep.id or proposal.status != ProposalStatus.ACTIVE:
                continue
            self._transition(
                session,
                outcome,
                proposal,
                ProposalStatus.EXPIRED,
                reason=f"swept at block {height} behind {keep.ticker}",
            )
            swept += 1
        if swept:
            logger.info("Swept %s contenders at block %s", swept, height)

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def _abandon_open_orders(
        self,
        session: AsyncSession,
        reason: str,
        proposal_id: Optional[int] = None,
    ) -> int:
        query = select(InscriptionOrder).where(
            InscriptionOrder.order_status.not_in(
                [status.value for status in TERMINAL_ORDER_STATUSES]
            )
        )
        if proposal_id is not None:
            query = query.where(InscriptionOrder.proposal_id == proposal_id)
        result = await session.execute(query.with_for_update())
        orders = result.scalars().all()
        for order in orders:
            logger.warning(
                "Abandoning inscription order %s (external %s, status %s): %s",
                order.id,
                order.external_order_id,
                order.order_status,
                reason,
            )
            order.status_detail = f"{order.order_status}: {reason}"
            order.order_status = OrderStatus.ABANDONED.value
        return len(orders)

    async def force_expire_proposal(
        self, proposal_id: int, reason: str, actor: str = "admin"
    ) -> Proposal:
        """Move a proposal to ``expired`` outside the block cycle."""
        async with self.transaction() as session:
            proposal = await session.get(Proposal, proposal_id, with_for_update=True)
            if proposal is None:
                raise ProposalNotFoundError(f"Proposal {proposal_id} not found")
            if proposal.status == ProposalStatus.INSCRIBED:
                raise InvalidTransitionError(
                    f"Proposal {proposal_id} is already inscribed"
                )
            if proposal.status == ProposalStatus.EXPIRED:
                logger.info("Proposal %s already expired", proposal_id)
                return proposal

            await self._abandon_open_orders(
                session, f"proposal force-expired: {reason}", proposal_id=proposal.id
            )
            self.record_transition(
                session, proposal, ProposalStatus.EXPIRED, actor=actor, reason=reason
            )
            return proposal

    async def reset_competition(self, reason: str, actor: str = "admin") -> int:
        """Return every leader/inscribing/expired proposal to ``active``."""
        async with self.transaction() as session:
            result = await session.execute(
                select(Proposal)
                .where(
                    Proposal.status.in_(
                        [
                            ProposalStatus.LEADER,
                            ProposalStatus.INSCRIBING,
                            ProposalStatus.EXPIRED,
                        ]
                    )
                )
                .with_for_update()
            )
            proposals = result.scalars().all()
            abandoned = await self._abandon_open_orders(
                session, f"competition reset: {reason}"
            )
            for proposal in proposals:
                proposal.clear_leadership()
                self.record_transition(
                    session, proposal, ProposalStatus.ACTIVE, actor=actor, reason=reason
                )

            checkpoint = await self.progress.load_for_update(session)
            self.progress.reset_streak(checkpoint)

        logger.warning(
            "Competition reset by %s (%s): %s proposals reactivated, %s orders abandoned",
            actor,
            reason,
            len(proposals),
            abandoned,
        )
        return len(proposals)

    async def get_status(self, current_height: Optional[int]) -> CompetitionStats:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Proposal.status, func.count()).group_by(Proposal.status)
            )
            counts = {ProposalStatus(status): count for status, count in result.all()}

            holders = await self.leadership_holders(session)
            top = holders[0] if holders else None
            if top is None:
                ranked = await self.rank(session)
                top = ranked[0] if ranked else None

        top_info = None
        if top is not None:
            top_info = TopProposalInfo(
                id=str(top.id),
                ticker=top.ticker,
                votes=top.total_votes,
                status=top.status,
                blocks_as_leader=top.blocks_as_leader(current_height),
                leaderboard_min_blocks=top.leaderboard_min_blocks,
            )

        return CompetitionStats(
            total_active=counts.get(ProposalStatus.ACTIVE, 0),
            current_leaders=counts.get(ProposalStatus.LEADER, 0),
            currently_inscribing=counts.get(ProposalStatus.INSCRIBING, 0),
            total_expired=counts.get(ProposalStatus.EXPIRED, 0),
            total_inscribed=counts.get(ProposalStatus.INSCRIBED, 0),
            total_rejected=counts.get(ProposalStatus.REJECTED, 0),
            top_proposal=top_info,
        )
