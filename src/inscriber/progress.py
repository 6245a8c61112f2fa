"""
Persistent block-processing checkpoint.

The single ``progress_checkpoint`` row is the only source of truth for
resuming after a restart; history is never rescanned to rebuild it.
"""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.db.models import utcnow
from core.errors import Error
from core.log import get_logger
from core.schemas import BlockInfo
from inscriber.constants import CHECKPOINT_ID
from inscriber.models import ProgressCheckpoint

logger = get_logger(__name__)


class BlockOutOfOrderError(Error):
    """Raised when a block would skip or rewind the checkpoint."""

    def __init__(self, height: int, last_processed: int):
        self.height = height
        self.last_processed = last_processed
        super().__init__(
            f"Block {height} is out of order (last processed {last_processed}, "
            f"expected {last_processed + 1})"
        )


class ProgressStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    async def load(
        self, session: AsyncSession, for_update: bool = False
    ) -> ProgressCheckpoint:
        """Return the checkpoint row, creating it at block 0 if missing."""
        query = select(ProgressCheckpoint).where(ProgressCheckpoint.id == CHECKPOINT_ID)
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        checkpoint = result.scalar_one_or_none()

        if checkpoint is None:
            checkpoint = ProgressCheckpoint(id=CHECKPOINT_ID, last_processed_block=0)
            session.add(checkpoint)
            await session.flush()
            logger.info("Initialized new progress checkpoint")
        return checkpoint

    async def load_for_update(self, session: AsyncSession) -> ProgressCheckpoint:
        return await self.load(session, for_update=True)

    async def snapshot(self) -> ProgressCheckpoint:
        """Read the checkpoint in its own short transaction."""
        async with self.session_factory() as session:
            async with session.begin():
                return await self.load(session)

    def advance(
        self, checkpoint: ProgressCheckpoint, block: BlockInfo, launched: bool
    ) -> None:
        """Move the checkpoint to ``block``; the caller commits."""
        last = checkpoint.last_processed_block
        if last and block.height != last + 1:
            raise BlockOutOfOrderError(block.height, last)

        checkpoint.last_processed_block = block.height
        checkpoint.last_processed_hash = block.hash
        checkpoint.last_checked = self.clock()
        if launched:
            checkpoint.consecutive_blocks_without_launches = 0
            checkpoint.last_launch_block = block.height
        else:
            checkpoint.consecutive_blocks_without_launches += 1

        logger.trace(
            "Checkpoint advanced to %s (%s blocks without launch)",
            block.height,
            checkpoint.consecutive_blocks_without_launches,
        )

    def reset_streak(self, checkpoint: ProgressCheckpoint) -> None:
        checkpoint.consecutive_blocks_without_launches = 0
        checkpoint.last_launch_block = None

    async def mark_checked(self, when: Optional[datetime] = None) -> None:
        """Record that the chain was polled, even if no block was new."""
        async with self.session_factory() as session:
            async with session.begin():
                checkpoint = await self.load_for_update(session)
                checkpoint.last_checked = when or self.clock()
