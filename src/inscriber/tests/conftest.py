"""
Shared fixtures: an in-memory SQLite ledger and scripted chain, marketplace
and wallet fakes.
"""

import itertools
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from core.errors import ChainProviderError, MarketplaceError, WalletError
from core.schemas import (
    BlockInfo,
    InscriptionPayload,
    MarketplaceOrder,
    MarketplaceOrderStatus,
    Utxo,
)
from inscriber.competition import CompetitionEngine
from inscriber.config import CompetitionSettings
from inscriber.models import Proposal, ProposalStatus
from inscriber.orders import InscriptionOrderManager
from inscriber.progress import ProgressStore

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def block_hash(height: int) -> str:
    return f"{height:064x}"


class FakeChain:
    def __init__(self, tip: int = 0):
        self.tip = tip
        self.fail_tip = False
        self.fail_heights: Set[int] = set()
        self.block_requests: List[int] = []
        self.tip_requests = 0

    async def get_current_height(self) -> int:
        self.tip_requests += 1
        if self.fail_tip:
            raise ChainProviderError("tip unavailable")
        return self.tip

    async def get_block(self, height: int) -> BlockInfo:
        self.block_requests.append(height)
        if height in self.fail_heights:
            raise ChainProviderError(f"block {height} unavailable")
        return BlockInfo(height=height, hash=block_hash(height))


class FakeMarketplace:
    def __init__(self, quote: int = 10_000):
        self.quote = quote
        self.fail_create = False
        self.created: List[dict] = []
        self.statuses: Dict[str, MarketplaceOrderStatus] = {}
        self.status_requests: List[str] = []
        self._ids = itertools.count(1)

    async def create_order(
        self, payload: InscriptionPayload, filename: str, receive_address: str
    ) -> MarketplaceOrder:
        if self.fail_create:
            raise MarketplaceError("marketplace unavailable")
        order_id = f"order-{next(self._ids)}"
        self.created.append(
            {
                "order_id": order_id,
                "payload": payload,
                "filename": filename,
                "receive_address": receive_address,
            }
        )
        return MarketplaceOrder(
            order_id=order_id, pay_address="bc1qpayaddress", amount=self.quote
        )

    def set_status(
        self,
        order_id: str,
        status: str,
        inscription_id: Optional[str] = None,
        txid: Optional[str] = None,
    ) -> None:
        files = []
        if inscription_id or txid:
            files.append({"inscriptionId": inscription_id, "txid": txid})
        self.statuses[order_id] = MarketplaceOrderStatus.model_validate(
            {"orderId": order_id, "status": status, "files": files}
        )

    async def get_order_status(self, order_id: str) -> MarketplaceOrderStatus:
        self.status_requests.append(order_id)
        if order_id not in self.statuses:
            raise MarketplaceError(f"unknown order {order_id}")
        return self.statuses[order_id]


class FakeWallet:
    def __init__(self, balance: int = 1_000_000, address: str = "bc1qreceiver"):
        self.balance = balance
        self.address = address
        self.fail_payment = False
        self.timeout_after_send = False
        self.payments: List[tuple] = []

    async def get_address(self) -> str:
        return self.address

    async def get_balance(self) -> int:
        return self.balance

    async def get_utxos(self) -> List[Utxo]:
        return [Utxo(txid="00" * 32, vout=0, value=self.balance)]

    async def send_payment(self, to_address: str, amount: int, fee_rate: int) -> str:
        if self.fail_payment:
            raise WalletError("insufficient confirmed funds")
        self.payments.append((to_address, amount, fee_rate))
        self.balance -= amount
        if self.timeout_after_send:
            raise WalletError("sendtoaddress failed: ReadTimeout", ambiguous=True)
        return f"{len(self.payments):064x}"


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def settings() -> CompetitionSettings:
    return CompetitionSettings(leaderboard_min_blocks=2, max_leader_blocks=5)


@pytest.fixture
def progress(session_factory) -> ProgressStore:
    return ProgressStore(session_factory)


@pytest.fixture
def engine(session_factory, settings, progress) -> CompetitionEngine:
    return CompetitionEngine(session_factory, settings, progress)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def marketplace() -> FakeMarketplace:
    return FakeMarketplace()


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def order_manager(engine, marketplace, wallet) -> InscriptionOrderManager:
    return InscriptionOrderManager(
        engine,
        marketplace,
        wallet,
        project="bitmemes",
        fee_rate=10,
        request_spacing=0,
    )


_proposal_ids = itertools.count(1000)


@pytest.fixture
def make_proposal(session_factory):
    """Insert a proposal; ``age`` orders ties (larger age = submitted earlier)."""

    async def _make(
        ticker: str,
        votes: int = 0,
        age: int = 0,
        status: ProposalStatus = ProposalStatus.ACTIVE,
        **fields,
    ) -> Proposal:
        proposal = Proposal(
            id=next(_proposal_ids),
            name=fields.pop("name", f"{ticker.title()} Coin"),
            ticker=ticker,
            description=fields.pop("description", f"The {ticker} meme coin"),
            votes_up=max(votes, 0),
            total_votes=votes,
            status=status,
            created_at=BASE_TIME - timedelta(minutes=age),
            updated_at=BASE_TIME,
            **fields,
        )
        async with session_factory() as session:
            session.add(proposal)
            await session.commit()
        return proposal

    return _make


@pytest.fixture
def set_votes(session_factory):
    async def _set(proposal_id: int, votes: int) -> None:
        async with session_factory() as session:
            proposal = await session.get(Proposal, proposal_id)
            proposal.total_votes = votes
            proposal.votes_up = max(votes, 0)
            await session.commit()

    return _set


@pytest.fixture
def fetch(session_factory):
    """Re-read a row from the database."""

    async def _fetch(model, row_id):
        async with session_factory() as session:
            return await session.get(model, row_id)

    return _fetch


@pytest.fixture
def run_block(engine, progress):
    """Process one height the way the block monitor does."""

    async def _run(height: int):
        block = BlockInfo(height=height, hash=block_hash(height))
        async with engine.transaction() as session:
            checkpoint = await progress.load_for_update(session)
            outcome = await engine.process_block(
                session, block, checkpoint.last_processed_block
            )
            if outcome.applied:
                progress.advance(checkpoint, block, launched=outcome.launched)
        return outcome

    return _run
