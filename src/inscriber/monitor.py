"""
Block monitor: polls the chain and drives the competition one block at a time.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from core.chain import ChainHeightProvider
from core.db.models import utcnow
from core.errors import ExternalServiceError
from core.log import get_logger
from inscriber.competition import (
    BlockOutcome,
    CompetitionEngine,
    CompetitionInvariantError,
    InscriptionDecision,
)
from inscriber.constants import DEFAULT_BLOCK_POLL_INTERVAL, DEFAULT_MAX_POLL_BACKOFF
from inscriber.models import MonitorStatus
from inscriber.orders import InscriptionOrderManager
from inscriber.progress import ProgressStore

logger = get_logger(__name__)


@dataclass
class PollResult:
    current_height: Optional[int] = None
    processed: List[int] = field(default_factory=list)
    decisions: List[InscriptionDecision] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class BlockMonitor:
    """
    Processes every height between the checkpoint and the chain tip in
    ascending order. A height is committed together with its checkpoint
    update; if anything fails the poll stops and the same height is retried
    on the next poll.
    """

    def __init__(
        self,
        engine: CompetitionEngine,
        progress: ProgressStore,
        chain: ChainHeightProvider,
        order_manager: Optional[InscriptionOrderManager] = None,
        poll_interval: float = DEFAULT_BLOCK_POLL_INTERVAL,
        max_backoff: float = DEFAULT_MAX_POLL_BACKOFF,
        start_block: int = 0,
        clock: Callable = utcnow,
    ):
        self.engine = engine
        self.progress = progress
        self.chain = chain
        self.order_manager = order_manager
        self.poll_interval = poll_interval
        self.max_backoff = max(max_backoff, poll_interval)
        self.start_block = start_block
        self.clock = clock

        self._running = False
        self._stop_event = asyncio.Event()
        self._poll_task: Optional[asyncio.Task] = None
        self._current_height: Optional[int] = None
        self._last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def poll_in_progress(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def poll_once(self) -> PollResult:
        """Run a poll, or wait for the one already in flight."""
        task = self._poll_task
        if task is None or task.done():
            task = asyncio.create_task(self._poll())
            self._poll_task = task
        return await asyncio.shield(task)

    async def trigger_manually(self) -> PollResult:
        if self.poll_in_progress:
            logger.info("Manual trigger joined the poll already in progress")
        else:
            logger.info("Manual block poll triggered")
        return await self.poll_once()

    async def _poll(self) -> PollResult:
        result = PollResult()
        try:
            current = await self.chain.get_current_height()
        except ExternalServiceError as exc:
            result.error = str(exc)
            self._last_error = result.error
            logger.warning("Could not fetch chain height: %s", exc)
            return result

        self._current_height = current
        result.current_height = current

        checkpoint = await self.progress.snapshot()
        last = checkpoint.last_processed_block
        if last == 0:
            first = self.start_block or current
            logger.info("Fresh checkpoint; starting at block %s", first)
        else:
            first = last + 1

        if first > current:
            logger.debug("No new blocks (tip %s, last processed %s)", current, last)
            await self.progress.mark_checked(self.clock())
            self._last_error = None
            return result

        if current - first > 0:
            logger.info("Processing blocks %s to %s", first, current)

        for height in range(first, current + 1):
            if self._stop_event.is_set():
                logger.info("Stop requested; leaving block %s for the next run", height)
                break
            try:
                outcome = await self._process_height(height)
            except CompetitionInvariantError as exc:
                result.error = str(exc)
                logger.critical(
                    "Invariant violation at block %s, automatic transitions halted: %s",
                    height,
                    exc,
                )
                break
            except Exception as exc:
                result.error = f"block {height}: {exc}"
                logger.error("Failed to process block %s: %s", height, exc)
                break

            if not outcome.applied:
                continue
            result.processed.append(height)
            if outcome.decision is not None:
                result.decisions.append(outcome.decision)
                await self._launch(outcome.decision)

        self._last_error = result.error
        return result

    async def _process_height(self, height: int) -> BlockOutcome:
        block = await self.chain.get_block(height)
        async with self.engine.transaction() as session:
            checkpoint = await self.progress.load_for_update(session)
            outcome = await self.engine.process_block(
                session, block, checkpoint.last_processed_block
            )
            if outcome.applied:
                self.progress.advance(checkpoint, block, launched=outcome.launched)
        return outcome

    async def _launch(self, decision: InscriptionDecision) -> None:
        if self.order_manager is None:
            logger.warning(
                "No order manager configured; %s stays inscribing", decision.ticker
            )
            return
        try:
            await self.order_manager.create_order(decision)
        except Exception as exc:
            logger.error(
                "Could not create inscription order for %s at block %s: %s",
                decision.ticker,
                decision.block_height,
                exc,
            )

    async def run(self) -> None:
        """Poll on a fixed interval until ``stop()`` is called."""
        if self._running:
            logger.warning("Block monitor already running")
            return

        logger.info("Starting block monitor (interval=%ss)", self.poll_interval)
        self._running = True
        self._stop_event.clear()
        backoff = self.poll_interval

        try:
            while self._running:
                if self.poll_in_progress:
                    logger.debug("Poll already in progress; skipping scheduled tick")
                    success = True
                else:
                    try:
                        success = (await self.poll_once()).success
                    except Exception as exc:
                        self._last_error = str(exc)
                        logger.error("Error in block monitor: %s", exc)
                        success = False

                backoff = (
                    self.poll_interval
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
            logger.info("Block monitor loop exited")

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping block monitor")
        self._running = False
        self._stop_event.set()

    async def drain(self, timeout: float) -> None:
        """Wait for the in-flight poll to finish, cancelling it after ``timeout``."""
        task = self._poll_task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Poll did not finish within %ss; cancelling", timeout)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.info("In-flight poll cancelled")

    async def get_status(self) -> MonitorStatus:
        checkpoint = await self.progress.snapshot()
        last = checkpoint.last_processed_block
        current = self._current_height
        last_checked: Optional[datetime] = checkpoint.last_checked
        return MonitorStatus(
            is_running=self._running,
            poll_in_progress=self.poll_in_progress,
            current_block=current,
            last_processed_block=last,
            last_processed_hash=checkpoint.last_processed_hash,
            last_checked=last_checked,
            blocks_behind=max(0, current - last) if current is not None and last else 0,
            consecutive_blocks_without_launches=(
                checkpoint.consecutive_blocks_without_launches
            ),
            last_launch_block=checkpoint.last_launch_block,
            last_error=self._last_error,
            competition=await self.engine.get_status(last or None),
        )
