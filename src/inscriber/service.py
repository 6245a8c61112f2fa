"""
Inscriber service: wires the competition engine, the block monitor and the
inscription order reconciler to the database and the external providers, and
owns their background tasks.
"""

import asyncio
from typing import Optional

import dotenv
from snowflake import SnowflakeGenerator
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from core.chain import ChainHeightProvider, EsploraChainProvider
from core.errors import ConfigurationError
from core.log import get_logger
from core.marketplace import Marketplace, UnisatMarketplace
from core.wallet import BitcoinRpcWallet, Wallet
from inscriber.admin import AdminFacade
from inscriber.competition import CompetitionEngine
from inscriber.config import InscriberConfig
from inscriber.constants import SHUTDOWN_DRAIN_TIMEOUT
from inscriber.models import OrderFailurePolicy
from inscriber.monitor import BlockMonitor
from inscriber.orders import InscriptionOrderManager
from inscriber.progress import ProgressStore

dotenv.load_dotenv()

logger = get_logger(__name__)


class InscriberService:
    """Core inscriber service logic."""

    def __init__(
        self,
        config: InscriberConfig,
        chain: Optional[ChainHeightProvider] = None,
        marketplace: Optional[Marketplace] = None,
        wallet: Optional[Wallet] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.config = config
        self.db_url = config.settings.get("database_url")
        self.competition_settings = config.competition_settings()
        self.failure_policy = OrderFailurePolicy(
            config.settings.get("order_failure_policy")
        )

        self.block_poll_interval = float(config.settings.get("block_poll_interval"))
        self.reconcile_interval = float(config.settings.get("reconcile_interval"))
        self.max_poll_backoff = float(config.settings.get("max_poll_backoff"))
        self.start_block = int(config.settings.get("start_block") or 0)
        self.request_timeout = float(config.settings.get("request_timeout"))

        # External providers; injected ones are not closed on shutdown
        self.chain = chain
        self.marketplace = marketplace
        self.wallet = wallet
        self._owned_clients: list = []

        # ID generator
        self.id_generator = SnowflakeGenerator(42)

        # Database
        self.engine: Optional[AsyncEngine] = None
        self.async_session: Optional[async_sessionmaker[AsyncSession]] = (
            session_factory
        )

        # Components
        self.progress: Optional[ProgressStore] = None
        self.competition: Optional[CompetitionEngine] = None
        self.order_manager: Optional[InscriptionOrderManager] = None
        self.monitor: Optional[BlockMonitor] = None
        self.admin: Optional[AdminFacade] = None

        # Background tasks
        self._running = False
        self._monitor_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def startup(self) -> None:
        """Initialize the service without starting background tasks."""
        logger.info("Initializing inscriber service")

        await self._init_database()
        self._init_clients()
        self._build_components()

        checkpoint = await self.progress.snapshot()
        logger.info(
            "Loaded checkpoint: last_processed_block=%s (%s blocks without launch)",
            checkpoint.last_processed_block,
            checkpoint.consecutive_blocks_without_launches,
        )

        self._running = True
        logger.info("Inscriber service initialized successfully")

    async def start_background_tasks(self) -> None:
        """Start the block monitor and order reconciler loops."""
        logger.info("Starting background tasks")
        self._monitor_task = asyncio.create_task(self.monitor.run())
        self._reconcile_task = asyncio.create_task(self.order_manager.run())
        logger.info(
            "All background tasks started. Block poll interval: %ss, "
            "reconcile interval: %ss",
            self.block_poll_interval,
            self.reconcile_interval,
        )

    async def shutdown(self) -> None:
        """Stop the loops, drain in-flight work and release connections."""
        logger.info("Shutting down inscriber service")
        self._running = False

        if self.monitor:
            await self.monitor.stop()
            await self.monitor.drain(SHUTDOWN_DRAIN_TIMEOUT)
        if self.order_manager:
            await self.order_manager.stop()

        tasks_to_wait = [
            (self._monitor_task, "block_monitor"),
            (self._reconcile_task, "order_reconciler"),
        ]
        for task, name in tasks_to_wait:
            if not task:
                continue
            try:
                await asyncio.wait_for(task, timeout=SHUTDOWN_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Cancelling %s task after drain timeout", name)
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError as e:
                    logger.error(f"{name} task cancelled: {e}")

        for client in self._owned_clients:
            await client.aclose()
        self._owned_clients.clear()

        # Close database
        if self.engine:
            await self.engine.dispose()

        logger.info("Inscriber service shut down")

    async def _init_database(self) -> None:
        """Initialize database connection."""
        if self.async_session is not None:
            logger.info("Using injected database session factory")
            return
        if not self.db_url:
            raise ConfigurationError("database_url is not configured")

        self.engine = create_async_engine(
            self.db_url, echo=False, pool_pre_ping=True, pool_size=10, max_overflow=0
        )
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        logger.info("Database connection initialized")

    def _init_clients(self) -> None:
        settings = self.config.settings

        if self.chain is None:
            chain = EsploraChainProvider(
                self.config.chain_api_url, timeout=self.request_timeout
            )
            self._owned_clients.append(chain)
            self.chain = chain
            logger.info("Chain provider: %s", chain.base_url)

        if self.marketplace is None:
            api_key = settings.get("marketplace_api_key")
            if not api_key:
                raise ConfigurationError("marketplace_api_key is not configured")
            marketplace = UnisatMarketplace(
                self.config.marketplace_url,
                api_key=api_key,
                fee_rate=int(settings.get("marketplace_fee_rate")),
                output_value=int(settings.get("marketplace_output_value")),
                timeout=self.request_timeout,
            )
            self._owned_clients.append(marketplace)
            self.marketplace = marketplace
            logger.info("Marketplace: %s", marketplace.base_url)

        if self.wallet is None:
            rpc_url = settings.get("wallet_rpc_url")
            if not rpc_url:
                raise ConfigurationError("wallet_rpc_url is not configured")
            wallet = BitcoinRpcWallet(
                rpc_url,
                rpc_user=settings.get("wallet_rpc_user") or "",
                rpc_password=settings.get("wallet_rpc_password") or "",
                address=settings.get("wallet_address"),
                timeout=self.request_timeout,
            )
            self._owned_clients.append(wallet)
            self.wallet = wallet
            logger.info("Funding wallet: %s", wallet.rpc_url)

    def _build_components(self) -> None:
        settings = self.config.settings

        self.progress = ProgressStore(self.async_session)
        self.competition = CompetitionEngine(
            self.async_session,
            self.competition_settings,
            self.progress,
            id_generator=self.id_generator,
        )
        self.order_manager = InscriptionOrderManager(
            self.competition,
            self.marketplace,
            self.wallet,
            failure_policy=self.failure_policy,
            project=settings.get("inscription_project"),
            fee_rate=int(settings.get("marketplace_fee_rate")),
            output_value=int(settings.get("marketplace_output_value")),
            receive_address=settings.get("inscription_receive_address"),
            reserve_sats=int(settings.get("wallet_reserve_sats") or 0),
            stuck_warn_hours=float(settings.get("stuck_order_warn_hours") or 0),
            stuck_reset_hours=float(settings.get("stuck_order_reset_hours") or 0),
            reconcile_interval=self.reconcile_interval,
            max_backoff=self.max_poll_backoff,
        )
        self.monitor = BlockMonitor(
            self.competition,
            self.progress,
            self.chain,
            order_manager=self.order_manager,
            poll_interval=self.block_poll_interval,
            max_backoff=self.max_poll_backoff,
            start_block=self.start_block,
        )
        self.admin = AdminFacade(self.competition, self.monitor, self.order_manager)
        logger.info(
            "Competition rules: min blocks=%s, max leader blocks=%s, "
            "min votes=%s, dethrone=%s, sweep=%s, order failure=%s",
            self.competition_settings.leaderboard_min_blocks,
            self.competition_settings.max_leader_blocks,
            self.competition_settings.min_votes_to_lead,
            self.competition_settings.dethrone_policy,
            self.competition_settings.contender_sweep_policy,
            self.failure_policy,
        )
