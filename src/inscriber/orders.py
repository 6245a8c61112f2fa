"""
Inscription order lifecycle.

A winning decision becomes a marketplace order that the platform wallet pays;
the order is then reconciled against the marketplace until it reaches a
terminal status. A proposal only becomes ``inscribed`` when the marketplace
reports both an inscription id and a transaction id, and the order row and
the proposal row always change in the same transaction.
"""

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import DUST_OUTPUT_VALUE, ORDINALS_EXPLORER_URL
from core.db.models import ensure_utc, utcnow
from core.errors import Error, ExternalServiceError, InsufficientFundsError, WalletError
from core.log import get_logger
from core.marketplace import Marketplace, serialize_payload
from core.schemas import (
    InscriptionCoin,
    InscriptionPayload,
    MarketplaceOrder,
    MarketplaceOrderStatus,
)
from core.wallet import Wallet
from inscriber.competition import (
    CompetitionEngine,
    CompetitionInvariantError,
    InscriptionDecision,
    InvalidTransitionError,
    ProposalNotFoundError,
)
from inscriber.constants import (
    DEFAULT_INSCRIPTION_FEE_RATE,
    DEFAULT_INSCRIPTION_PROJECT,
    DEFAULT_MAX_POLL_BACKOFF,
    DEFAULT_RECONCILE_INTERVAL,
    RECONCILE_REQUEST_SPACING,
    STUCK_ORDER_RESET_HOURS,
    STUCK_ORDER_WARN_HOURS,
)
from inscriber.models import (
    ORDER_FAILURE_STATUSES,
    ORDER_SUCCESS_STATUSES,
    TERMINAL_ORDER_STATUSES,
    InscriptionOrder,
    OrderFailurePolicy,
    OrderStatus,
    Proposal,
    ProposalStatus,
    ReconcilerStatus,
)

logger = get_logger(__name__)

RECONCILER_ACTOR = "reconciler"

# Funding problems the marketplace reports while the order stays open
PAYMENT_WARNING_STATUSES = frozenset(
    {
        OrderStatus.PAYMENT_NOTENOUGH,
        OrderStatus.PAYMENT_OVERPAY,
        OrderStatus.PAYMENT_WITHINSCRIPTION,
    }
)
KNOWN_ORDER_STATUSES = frozenset(status.value for status in OrderStatus)


class OrderNotFoundError(Error):
    """Raised when an inscription order cannot be located."""


@dataclass
class ReconcileSummary:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    stuck_reset: int = 0
    recreated: int = 0
    errors: int = 0


def inscription_url(inscription_id: str) -> str:
    return f"{ORDINALS_EXPLORER_URL}/{inscription_id}"


class InscriptionOrderManager:
    """Creates, pays for and reconciles inscription orders."""

    def __init__(
        self,
        engine: CompetitionEngine,
        marketplace: Marketplace,
        wallet: Wallet,
        failure_policy: OrderFailurePolicy = OrderFailurePolicy.REACTIVATE,
        project: str = DEFAULT_INSCRIPTION_PROJECT,
        fee_rate: int = DEFAULT_INSCRIPTION_FEE_RATE,
        output_value: int = DUST_OUTPUT_VALUE,
        receive_address: Optional[str] = None,
        reserve_sats: int = 0,
        stuck_warn_hours: float = STUCK_ORDER_WARN_HOURS,
        stuck_reset_hours: float = STUCK_ORDER_RESET_HOURS,
        reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL,
        max_backoff: float = DEFAULT_MAX_POLL_BACKOFF,
        request_spacing: float = RECONCILE_REQUEST_SPACING,
        clock: Callable = utcnow,
    ):
        self.engine = engine
        self.marketplace = marketplace
        self.wallet = wallet
        self.failure_policy = failure_policy
        self.project = project
        self.fee_rate = fee_rate
        self.output_value = output_value
        self.receive_address = receive_address
        self.reserve_sats = reserve_sats
        self.stuck_warn_hours = stuck_warn_hours
        self.stuck_reset_hours = stuck_reset_hours
        self.reconcile_interval = reconcile_interval
        self.max_backoff = max(max_backoff, reconcile_interval)
        self.request_spacing = request_spacing
        self.clock = clock

        self._create_lock = asyncio.Lock()
        self._reconcile_lock = asyncio.Lock()
        self._running = False
        self._stop_event = asyncio.Event()
        self._last_checked: Optional[datetime] = None
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Payload
    # ------------------------------------------------------------------

    def build_payload(self, proposal: Proposal, block_height: int) -> InscriptionPayload:
        return InscriptionPayload(
            project=self.project,
            block=block_height,
            coin=InscriptionCoin(
                name=proposal.name,
                ticker=proposal.ticker,
                description=proposal.description,
                votes=proposal.total_votes,
                website=proposal.website,
                twitter=proposal.twitter,
                telegram=proposal.telegram,
            ),
        )

    @staticmethod
    def payload_filename(payload: InscriptionPayload) -> str:
        return f"{payload.project}-{payload.coin.ticker.lower()}-{payload.block}.json"

    def estimate_cost(self, payload: InscriptionPayload) -> int:
        """Postage plus the witness bytes of the payload at the order fee rate."""
        size = len(serialize_payload(payload).encode("utf-8"))
        return self.output_value + math.ceil(size / 4) * self.fee_rate

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def _open_order_for(
        self, session: AsyncSession, proposal_id: int
    ) -> Optional[InscriptionOrder]:
        result = await session.execute(
            select(InscriptionOrder)
            .where(
                InscriptionOrder.proposal_id == proposal_id,
                InscriptionOrder.order_status.not_in(
                    [status.value for status in TERMINAL_ORDER_STATUSES]
                ),
            )
            .order_by(InscriptionOrder.created_at.desc())
        )
        return result.scalars().first()

    def _revert_proposal(
        self, session: AsyncSession, proposal: Proposal, reason: str
    ) -> None:
        if proposal.status != ProposalStatus.INSCRIBING:
            return
        target = self.failure_policy.target_status
        if target == ProposalStatus.ACTIVE:
            proposal.clear_leadership()
        self.engine.record_transition(
            session, proposal, target, actor=RECONCILER_ACTOR, reason=reason
        )

    def _new_order(
        self,
        decision: InscriptionDecision,
        payload: InscriptionPayload,
        status: OrderStatus,
        market_order: Optional[MarketplaceOrder] = None,
        detail: Optional[str] = None,
    ) -> InscriptionOrder:
        return InscriptionOrder(
            id=next(self.engine.id_generator),
            proposal_id=decision.proposal_id,
            block_height=decision.block_height,
            block_hash=decision.block_hash,
            external_order_id=market_order.order_id if market_order else None,
            order_status=status.value,
            status_detail=detail,
            payment_address=market_order.pay_address if market_order else None,
            payment_amount=market_order.amount if market_order else None,
            fee_rate=self.fee_rate,
            inscription_payload=payload.model_dump(exclude_none=True),
        )

    async def _fail_creation(
        self,
        decision: InscriptionDecision,
        payload: InscriptionPayload,
        status: OrderStatus,
        detail: str,
        market_order: Optional[MarketplaceOrder] = None,
    ) -> InscriptionOrder:
        async with self.engine.transaction() as session:
            order = self._new_order(decision, payload, status, market_order, detail)
            session.add(order)
            proposal = await session.get(
                Proposal, decision.proposal_id, with_for_update=True
            )
            if proposal is not None:
                self._revert_proposal(session, proposal, detail)
        logger.error(
            "Inscription order for proposal %s failed (%s): %s",
            decision.proposal_id,
            status,
            detail,
        )
        return order

    async def create_order(self, decision: InscriptionDecision) -> InscriptionOrder:
        """
        Turn a winning decision into a funded marketplace order.

        Returns the proposal's existing open order if it already has one.
        Transient failures before an order exists leave the proposal
        ``inscribing`` so the reconcile loop retries creation; funding and
        payment failures revert it according to the failure policy. A payment
        whose outcome is unknown leaves the order pending for ``reconcile``.
        """
        async with self._create_lock:
            async with self.engine.transaction() as session:
                proposal = await session.get(Proposal, decision.proposal_id)
                if proposal is None:
                    raise ProposalNotFoundError(
                        f"Proposal {decision.proposal_id} not found"
                    )
                if proposal.status != ProposalStatus.INSCRIBING:
                    raise InvalidTransitionError(
                        f"Proposal {proposal.id} is {proposal.status}, not inscribing"
                    )
                existing = await self._open_order_for(session, proposal.id)
                if existing is not None:
                    logger.info(
                        "Proposal %s already has open order %s (%s)",
                        proposal.id,
                        existing.id,
                        existing.order_status,
                    )
                    return existing
                payload = self.build_payload(proposal, decision.block_height)

            filename = self.payload_filename(payload)
            cost = self.estimate_cost(payload)

            balance = await self.wallet.get_balance()
            spendable = balance - self.reserve_sats
            if spendable < cost:
                await self._fail_creation(
                    decision,
                    payload,
                    OrderStatus.UNFUNDED,
                    f"estimated cost {cost} sats exceeds spendable balance "
                    f"{spendable} sats",
                )
                raise InsufficientFundsError(cost, max(spendable, 0))

            receive_address = self.receive_address or await self.wallet.get_address()
            market_order = await self.marketplace.create_order(
                payload, filename, receive_address
            )

            if market_order.amount > spendable:
                await self._fail_creation(
                    decision,
                    payload,
                    OrderStatus.UNFUNDED,
                    f"quoted {market_order.amount} sats exceeds spendable balance "
                    f"{spendable} sats",
                    market_order,
                )
                raise InsufficientFundsError(market_order.amount, max(spendable, 0))

            # Persist before paying so a crash never leads to a second payment
            async with self.engine.transaction() as session:
                order = self._new_order(
                    decision, payload, OrderStatus.PENDING, market_order
                )
                proposal = await session.get(
                    Proposal, decision.proposal_id, with_for_update=True
                )
                if proposal is None or proposal.status != ProposalStatus.INSCRIBING:
                    order.order_status = OrderStatus.ABANDONED.value
                    order.status_detail = "proposal left inscribing before payment"
                session.add(order)

            if order.order_status == OrderStatus.ABANDONED:
                logger.warning(
                    "Order %s for proposal %s abandoned before payment",
                    market_order.order_id,
                    decision.proposal_id,
                )
                return order

            try:
                txid = await self.wallet.send_payment(
                    market_order.pay_address, market_order.amount, self.fee_rate
                )
            except WalletError as exc:
                if exc.ambiguous:
                    return await self._hold_unconfirmed_payment(order, exc)
                async with self.engine.transaction() as session:
                    order = await session.get(
                        InscriptionOrder, order.id, with_for_update=True
                    )
                    order.order_status = OrderStatus.PAYMENT_FAILED.value
                    order.status_detail = str(exc)
                    proposal = await session.get(
                        Proposal, decision.proposal_id, with_for_update=True
                    )
                    if proposal is not None:
                        self._revert_proposal(
                            session, proposal, f"order payment failed: {exc}"
                        )
                logger.error(
                    "Payment for order %s failed: %s", market_order.order_id, exc
                )
                raise

            async with self.engine.transaction() as session:
                order = await session.get(
                    InscriptionOrder, order.id, with_for_update=True
                )
                order.payment_txid = txid

            logger.info(
                "Inscription order %s for %s created and paid (%s sats, txid %s)",
                market_order.order_id,
                decision.ticker,
                market_order.amount,
                txid,
            )
            return order

    async def _hold_unconfirmed_payment(
        self, order: InscriptionOrder, exc: WalletError
    ) -> InscriptionOrder:
        """Keep the order open when the payment may have gone out."""
        async with self.engine.transaction() as session:
            order = await session.get(InscriptionOrder, order.id, with_for_update=True)
            order.status_detail = (
                f"payment outcome unknown ({exc}); awaiting marketplace status"
            )
        logger.warning(
            "Payment for order %s may have been sent: %s; "
            "leaving it open for reconciliation",
            order.external_order_id,
            exc,
        )
        return order

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, order_id: int) -> InscriptionOrder:
        """Bring one order (and its proposal) in line with the marketplace."""
        async with self.engine.session_factory() as session:
            order = await session.get(InscriptionOrder, order_id)
        if order is None:
            raise OrderNotFoundError(f"Inscription order {order_id} not found")

        if order.is_terminal:
            if order.order_status == OrderStatus.COMPLETED:
                await self._repair_inscribed(order)
            return order

        if not order.external_order_id:
            logger.warning("Open order %s has no external order id", order.id)
            return order

        status = await self.marketplace.get_order_status(order.external_order_id)
        return await self._apply_status(order.id, status)

    async def _repair_inscribed(self, order: InscriptionOrder) -> None:
        async with self.engine.transaction() as session:
            proposal = await session.get(
                Proposal, order.proposal_id, with_for_update=True
            )
            if proposal is None or proposal.status != ProposalStatus.INSCRIBING:
                return
            self.engine.record_transition(
                session,
                proposal,
                ProposalStatus.INSCRIBED,
                actor=RECONCILER_ACTOR,
                reason=f"inscribed as {order.inscription_id}",
            )

    async def _apply_status(
        self, order_id: int, status: MarketplaceOrderStatus
    ) -> InscriptionOrder:
        async with self.engine.transaction() as session:
            order = await session.get(InscriptionOrder, order_id, with_for_update=True)
            if order.is_terminal:
                return order
            proposal = await session.get(
                Proposal, order.proposal_id, with_for_update=True
            )
            if proposal is None:
                raise CompetitionInvariantError(
                    f"Order {order.id} references missing proposal {order.proposal_id}"
                )

            external = status.status
            order.last_checked_at = self.clock()
            file = status.first_file

            if external in ORDER_SUCCESS_STATUSES:
                if file is not None and file.inscription_id and file.txid:
                    order.order_status = OrderStatus.COMPLETED.value
                    order.status_detail = external
                    order.inscription_id = file.inscription_id
                    order.txid = file.txid
                    order.inscription_url = inscription_url(file.inscription_id)
                    if proposal.status != ProposalStatus.INSCRIBED:
                        self.engine.record_transition(
                            session,
                            proposal,
                            ProposalStatus.INSCRIBED,
                            actor=RECONCILER_ACTOR,
                            reason=f"inscribed as {file.inscription_id}",
                        )
                    logger.info(
                        "Order %s completed: %s inscribed as %s (txid %s)",
                        order.external_order_id,
                        proposal.ticker,
                        file.inscription_id,
                        file.txid,
                    )
                else:
                    # Never finish an order without both identifiers
                    order.order_status = external
                    order.status_detail = "awaiting inscription id and txid"
                    logger.warning(
                        "Order %s reports %s without inscription id and txid",
                        order.external_order_id,
                        external,
                    )
            elif external in ORDER_FAILURE_STATUSES:
                order.order_status = external
                order.status_detail = f"marketplace reported {external}"
                self._revert_proposal(
                    session, proposal, f"inscription order {external}"
                )
                logger.error(
                    "Order %s for %s ended as %s",
                    order.external_order_id,
                    proposal.ticker,
                    external,
                )
            else:
                if external in PAYMENT_WARNING_STATUSES:
                    logger.warning(
                        "Order %s payment issue: %s (paid %s of %s sats)",
                        order.external_order_id,
                        external,
                        status.paid_amount,
                        status.amount,
                    )
                elif external not in KNOWN_ORDER_STATUSES:
                    logger.warning(
                        "Order %s has unknown marketplace status %r",
                        order.external_order_id,
                        external,
                    )
                if order.order_status != external:
                    logger.info(
                        "Order %s: %s -> %s",
                        order.external_order_id,
                        order.order_status,
                        external,
                    )
                order.order_status = external
            return order

    async def _expire_stuck(self, order: InscriptionOrder) -> bool:
        """Warn about or reset an order that has been open too long."""
        age = self.clock() - ensure_utc(order.created_at)
        if self.stuck_reset_hours and age >= timedelta(hours=self.stuck_reset_hours):
            async with self.engine.transaction() as session:
                row = await session.get(InscriptionOrder, order.id, with_for_update=True)
                if row.is_terminal:
                    return False
                row.status_detail = f"{row.order_status}: open for {age}"
                row.order_status = OrderStatus.STUCK_AUTO_RESET.value
                proposal = await session.get(
                    Proposal, row.proposal_id, with_for_update=True
                )
                if proposal is not None:
                    self._revert_proposal(
                        session, proposal, f"inscription order stuck for {age}"
                    )
            logger.error(
                "Order %s auto-reset after %s in %s",
                order.external_order_id,
                age,
                order.order_status,
            )
            return True

        if self.stuck_warn_hours and age >= timedelta(hours=self.stuck_warn_hours):
            logger.warning(
                "Order %s has been %s for %s",
                order.external_order_id,
                order.order_status,
                age,
            )
        return False

    async def open_orders(self) -> List[InscriptionOrder]:
        async with self.engine.session_factory() as session:
            result = await session.execute(
                select(InscriptionOrder)
                .where(
                    InscriptionOrder.order_status.not_in(
                        [status.value for status in TERMINAL_ORDER_STATUSES]
                    )
                )
                .order_by(InscriptionOrder.created_at)
            )
            return list(result.scalars().all())

    async def _orphaned_proposals(self) -> List[Proposal]:
        """Inscribing proposals with neither an open nor a completed order."""
        settled = [
            status.value
            for status in TERMINAL_ORDER_STATUSES
            if status != OrderStatus.COMPLETED
        ]
        has_order = (
            select(InscriptionOrder.id)
            .where(
                InscriptionOrder.proposal_id == Proposal.id,
                InscriptionOrder.order_status.not_in(settled),
            )
            .exists()
        )
        async with self.engine.session_factory() as session:
            result = await session.execute(
                select(Proposal).where(
                    Proposal.status == ProposalStatus.INSCRIBING, ~has_order
                )
            )
            return list(result.scalars().all())

    async def reconcile_all(self) -> ReconcileSummary:
        """One reconciliation pass over every open order."""
        async with self._reconcile_lock:
            summary = ReconcileSummary()

            for order in await self.open_orders():
                if self._stop_event.is_set():
                    break
                try:
                    if await self._expire_stuck(order):
                        summary.stuck_reset += 1
                        continue
                    updated = await self.reconcile(order.id)
                    summary.checked += 1
                    if updated.order_status == OrderStatus.COMPLETED:
                        summary.completed += 1
                    elif updated.is_terminal:
                        summary.failed += 1
                except ExternalServiceError as exc:
                    summary.errors += 1
                    logger.warning("Could not reconcile order %s: %s", order.id, exc)
                except Exception as exc:
                    summary.errors += 1
                    logger.error("Error reconciling order %s: %s", order.id, exc)

                if self.request_spacing:
                    await asyncio.sleep(self.request_spacing)

            for proposal in await self._orphaned_proposals():
                if self._stop_event.is_set():
                    break
                if proposal.won_block is None or proposal.won_block_hash is None:
                    summary.errors += 1
                    logger.error(
                        "Inscribing proposal %s has no winning block; needs an operator",
                        proposal.id,
                    )
                    continue
                logger.warning(
                    "Proposal %s is inscribing without an order; re-creating it",
                    proposal.id,
                )
                try:
                    await self.create_order(
                        InscriptionDecision(
                            proposal_id=proposal.id,
                            ticker=proposal.ticker,
                            block_height=proposal.won_block,
                            block_hash=proposal.won_block_hash,
                        )
                    )
                    summary.recreated += 1
                except Exception as exc:
                    summary.errors += 1
                    logger.error(
                        "Failed to re-create order for proposal %s: %s",
                        proposal.id,
                        exc,
                    )

            self._last_checked = self.clock()
            if summary.checked or summary.recreated or summary.errors:
                logger.info("Reconcile pass: %s", summary)
            return summary

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Reconcile on a fixed interval until ``stop()`` is called."""
        if self._running:
            logger.warning("Order reconciler already running")
            return

        logger.info(
            "Starting order reconciler (interval=%ss)", self.reconcile_interval
        )
        self._running = True
        self._stop_event.clear()
        backoff = self.reconcile_interval

        try:
            while self._running:
                try:
                    summary = await self.reconcile_all()
                    self._last_error = None
                    success = summary.errors == 0
                except Exception as exc:
                    self._last_error = str(exc)
                    logger.error("Error in order reconciliation: %s", exc)
                    success = False

                backoff = (
                    self.reconcile_interval
                    if success
                    else min(backoff * 2.0, self.max_backoff)
                )
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=backoff)
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
            self._stop_event.set()
            logger.info("Order reconciler loop exited")

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping order reconciler")
        self._running = False
        self._stop_event.set()

    async def get_status(self) -> ReconcilerStatus:
        return ReconcilerStatus(
            is_running=self._running,
            reconcile_in_progress=self._reconcile_lock.locked(),
            last_checked=self._last_checked,
            open_orders=len(await self.open_orders()),
            last_error=self._last_error,
        )
