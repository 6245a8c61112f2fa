"""
SQLModel models for the inscriber database.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
)
from sqlalchemy import (
    DateTime as SADateTime,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy import (
    String as SAString,
)
from sqlalchemy import Text as SAText
from sqlmodel import JSON, Column, Field, SQLModel

from core.db.models import TimestampMixin
from inscriber.constants import DEFAULT_LEADERBOARD_MIN_BLOCKS


class ProposalStatus(StrEnum):
    """Lifecycle of a contest entry."""

    ACTIVE = "active"
    LEADER = "leader"
    INSCRIBING = "inscribing"
    INSCRIBED = "inscribed"
    REJECTED = "rejected"
    EXPIRED = "expired"


RANKED_PROPOSAL_STATUSES = (ProposalStatus.ACTIVE, ProposalStatus.LEADER)
LEADERSHIP_STATUSES = (ProposalStatus.LEADER, ProposalStatus.INSCRIBING)


class DethronePolicy(StrEnum):
    """What happens to a leader that loses rank #1."""

    EXPIRE = "expire"
    REJECT = "reject"

    @property
    def target_status(self) -> ProposalStatus:
        if self is DethronePolicy.REJECT:
            return ProposalStatus.REJECTED
        return ProposalStatus.EXPIRED


class ContenderSweepPolicy(StrEnum):
    """Whether losing contenders are expired in bulk, and when."""

    NONE = "none"
    ON_LEADER_CHANGE = "on_leader_change"
    ON_WIN = "on_win"


class OrderFailurePolicy(StrEnum):
    """Where an ``inscribing`` proposal goes when its order fails."""

    REACTIVATE = "reactivate"
    REJECT = "reject"

    @property
    def target_status(self) -> ProposalStatus:
        if self is OrderFailurePolicy.REJECT:
            return ProposalStatus.REJECTED
        return ProposalStatus.ACTIVE


class OrderStatus(StrEnum):
    """Marketplace order vocabulary plus markers written locally."""

    PENDING = "pending"
    PAYMENT_NOTENOUGH = "payment_notenough"
    PAYMENT_OVERPAY = "payment_overpay"
    PAYMENT_WITHINSCRIPTION = "payment_withinscription"
    PAYMENT_WAITCONFIRMED = "payment_waitconfirmed"
    PAYMENT_SUCCESS = "payment_success"
    READY = "ready"
    INSCRIBING = "inscribing"
    MINTED = "minted"
    SENT = "sent"
    CONFIRMED = "confirmed"
    CLOSED = "closed"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    FAILED = "failed"
    TIMEOUT = "timeout"
    # Local terminal markers
    COMPLETED = "completed"
    UNFUNDED = "unfunded"
    PAYMENT_FAILED = "payment_failed"
    ABANDONED = "abandoned"
    STUCK_AUTO_RESET = "stuck_auto_reset"


# Statuses that may finish an order, but only with inscription id and txid present
ORDER_SUCCESS_STATUSES = frozenset(
    {OrderStatus.MINTED, OrderStatus.SENT, OrderStatus.CONFIRMED}
)
ORDER_FAILURE_STATUSES = frozenset(
    {
        OrderStatus.CLOSED,
        OrderStatus.CANCELED,
        OrderStatus.REFUNDED,
        OrderStatus.FAILED,
        OrderStatus.TIMEOUT,
    }
)
TERMINAL_ORDER_STATUSES = ORDER_FAILURE_STATUSES | frozenset(
    {
        OrderStatus.COMPLETED,
        OrderStatus.UNFUNDED,
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.ABANDONED,
        OrderStatus.STUCK_AUTO_RESET,
    }
)


class AdminAction(StrEnum):
    ELIMINATE = "eliminate"
    RESET = "reset"
    TRIGGER = "trigger"
    RECONCILE = "reconcile"
    STATUS = "status"


# Models for API requests/responses
class TopProposalInfo(SQLModel):
    """Current rank #1 proposal as shown in the status snapshot."""

    id: str
    ticker: str
    votes: int
    status: ProposalStatus
    blocks_as_leader: int
    leaderboard_min_blocks: int


class CompetitionStats(SQLModel):
    total_active: int = 0
    current_leaders: int = 0
    currently_inscribing: int = 0
    total_expired: int = 0
    total_inscribed: int = 0
    total_rejected: int = 0
    top_proposal: Optional[TopProposalInfo] = None


class MonitorStatus(SQLModel):
    """Block monitor snapshot for operators."""

    is_running: bool
    poll_in_progress: bool
    current_block: Optional[int]
    last_processed_block: int
    last_processed_hash: Optional[str]
    last_checked: Optional[datetime]
    blocks_behind: int
    consecutive_blocks_without_launches: int
    last_launch_block: Optional[int]
    last_error: Optional[str] = None
    competition: Optional[CompetitionStats] = None


class ReconcilerStatus(SQLModel):
    is_running: bool
    reconcile_in_progress: bool
    last_checked: Optional[datetime]
    open_orders: int
    last_error: Optional[str] = None


class AdminActionRequest(SQLModel):
    """Body of ``POST /admin/competition``."""

    action: AdminAction
    proposal_id: Optional[int] = Field(default=None, ge=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class AdminActionResponse(SQLModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    message: Optional[str] = None


class InscriptionOrderResponse(SQLModel):
    id: str
    proposal_id: str
    block_height: int
    external_order_id: Optional[str]
    order_status: str
    payment_address: Optional[str]
    payment_amount: Optional[int]
    payment_txid: Optional[str]
    inscription_id: Optional[str]
    txid: Optional[str]
    inscription_url: Optional[str]
    created_at: datetime

    @classmethod
    def from_order(cls, order: "InscriptionOrder") -> "InscriptionOrderResponse":
        data = order.model_dump()
        data["id"] = str(order.id)
        data["proposal_id"] = str(order.proposal_id)
        return cls.model_validate(data)


# Models for DB tables
class Proposal(TimestampMixin, SQLModel, table=True):
    """A contest entry competing for inscription."""

    __tablename__ = "proposals"

    id: int = Field(sa_column=Column(BigInteger, primary_key=True))
    name: str = Field(sa_column=Column(SAString(64), nullable=False))
    ticker: str = Field(sa_column=Column(SAString(16), nullable=False, index=True))
    description: str = Field(sa_column=Column(SAText, nullable=False))
    website: Optional[str] = Field(default=None, sa_column=Column(SAText, nullable=True))
    twitter: Optional[str] = Field(default=None, sa_column=Column(SAText, nullable=True))
    telegram: Optional[str] = Field(
        default=None, sa_column=Column(SAText, nullable=True)
    )
    image_url: Optional[str] = Field(
        default=None, sa_column=Column(SAText, nullable=True)
    )
    banner_url: Optional[str] = Field(
        default=None, sa_column=Column(SAText, nullable=True)
    )
    submitted_by: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )

    # Vote tallies, written by the vote surface
    votes_up: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    votes_down: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    total_votes: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, index=True)
    )

    status: ProposalStatus = Field(
        default=ProposalStatus.ACTIVE,
        sa_column=Column(
            SAEnum(
                ProposalStatus,
                values_callable=lambda enum_cls: [member.value for member in enum_cls],
                name="proposal_status",
            ),
            nullable=False,
            default=ProposalStatus.ACTIVE,
        ),
    )
    status_reason: Optional[str] = Field(
        default=None, sa_column=Column(SAText, nullable=True)
    )

    # Leadership tracking
    first_time_as_leader: Optional[datetime] = Field(
        default=None, sa_column=Column(SADateTime(timezone=True), nullable=True)
    )
    leader_start_block: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    leaderboard_min_blocks: int = Field(
        default=DEFAULT_LEADERBOARD_MIN_BLOCKS,
        sa_column=Column(Integer, nullable=False),
    )
    expiration_block: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )

    # Block at which the proposal survived its challenge
    won_block: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    won_block_hash: Optional[str] = Field(
        default=None, sa_column=Column(SAString(64), nullable=True)
    )

    __table_args__ = (
        CheckConstraint("votes_up >= 0", name="ck_proposal_votes_up_non_negative"),
        CheckConstraint(
            "votes_down >= 0", name="ck_proposal_votes_down_non_negative"
        ),
        CheckConstraint(
            "leaderboard_min_blocks >= 1", name="ck_proposal_min_blocks_positive"
        ),
        Index("ix_proposals_status", "status"),
        Index("ix_proposals_ranking", "status", "total_votes", "created_at"),
    )

    def clear_leadership(self) -> None:
        self.first_time_as_leader = None
        self.leader_start_block = None
        self.expiration_block = None
        self.won_block = None
        self.won_block_hash = None

    def blocks_as_leader(self, height: Optional[int]) -> int:
        """Blocks defended since promotion; the promotion block counts as 0."""
        if self.leader_start_block is None or height is None:
            return 0
        return max(0, height - self.leader_start_block)


class InscriptionOrder(TimestampMixin, SQLModel, table=True):
    """Externally processed, paid request to inscribe a winning proposal."""

    __tablename__ = "inscription_orders"

    id: int = Field(sa_column=Column(BigInteger, primary_key=True))
    proposal_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("proposals.id"), nullable=False, index=True
        )
    )

    # Block that triggered the order
    block_height: int = Field(sa_column=Column(BigInteger, nullable=False))
    block_hash: str = Field(sa_column=Column(SAString(64), nullable=False))

    external_order_id: Optional[str] = Field(
        default=None, sa_column=Column(SAString(128), nullable=True, index=True)
    )
    order_status: str = Field(
        default=OrderStatus.PENDING.value,
        sa_column=Column(
            SAString(64),
            nullable=False,
            server_default=OrderStatus.PENDING.value,
        ),
    )
    status_detail: Optional[str] = Field(
        default=None, sa_column=Column(SAText, nullable=True)
    )

    # Funding
    payment_address: Optional[str] = Field(
        default=None, sa_column=Column(SAString(128), nullable=True)
    )
    payment_amount: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    payment_txid: Optional[str] = Field(
        default=None, sa_column=Column(SAString(64), nullable=True)
    )
    fee_rate: int = Field(sa_column=Column(Integer, nullable=False))
    inscription_payload: dict = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )

    # Result, populated only by reconciliation
    inscription_id: Optional[str] = Field(
        default=None, sa_column=Column(SAString(80), nullable=True)
    )
    txid: Optional[str] = Field(
        default=None, sa_column=Column(SAString(64), nullable=True)
    )
    inscription_url: Optional[str] = Field(
        default=None, sa_column=Column(SAText, nullable=True)
    )
    last_checked_at: Optional[datetime] = Field(
        default=None, sa_column=Column(SADateTime(timezone=True), nullable=True)
    )

    __table_args__ = (
        CheckConstraint(
            "payment_amount IS NULL OR payment_amount >= 0",
            name="ck_order_payment_amount_non_negative",
        ),
        CheckConstraint(
            "order_status <> 'completed' OR "
            "(inscription_id IS NOT NULL AND txid IS NOT NULL)",
            name="ck_order_completed_has_ids",
        ),
        Index("ix_inscription_orders_status", "order_status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.order_status in TERMINAL_ORDER_STATUSES


class ProgressCheckpoint(TimestampMixin, SQLModel, table=True):
    """Last fully processed block; the sole source of resumption truth."""

    __tablename__ = "progress_checkpoint"

    id: int = Field(primary_key=True)

    last_processed_block: int = Field(
        default=0, sa_column=Column(BigInteger, nullable=False, server_default="0")
    )
    last_processed_hash: Optional[str] = Field(
        default=None, sa_column=Column(SAString(64), nullable=True)
    )
    consecutive_blocks_without_launches: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, server_default="0")
    )
    last_launch_block: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    last_checked: Optional[datetime] = Field(
        default=None, sa_column=Column(SADateTime(timezone=True), nullable=True)
    )

    __table_args__ = (
        CheckConstraint(
            "last_processed_block >= 0", name="ck_checkpoint_block_non_negative"
        ),
        CheckConstraint("id = 1", name="ck_progress_checkpoint_singleton"),
    )


class ProposalStatusChange(TimestampMixin, SQLModel, table=True):
    """Audit trail of every proposal status transition."""

    __tablename__ = "proposal_status_changes"

    id: int = Field(sa_column=Column(BigInteger, primary_key=True))
    proposal_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("proposals.id"), nullable=False, index=True
        )
    )
    from_status: str = Field(sa_column=Column(SAString(16), nullable=False))
    to_status: str = Field(sa_column=Column(SAString(16), nullable=False))
    block_height: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    reason: Optional[str] = Field(default=None, sa_column=Column(SAText, nullable=True))
    actor: str = Field(sa_column=Column(SAString(128), nullable=False))


class ApiKey(TimestampMixin, SQLModel, table=True):
    """API keys for the operator facade."""

    __tablename__ = "api_keys"

    id: int = Field(sa_column=Column(BigInteger, primary_key=True))

    name: str = Field(max_length=128, nullable=False)
    description: Optional[str] = Field(
        default=None, sa_column=Column(SAText, nullable=True)
    )

    # SHA256 of the key; the key itself is never stored
    key_hash: str = Field(max_length=64, nullable=False, unique=True, index=True)

    role: str = Field(max_length=32, nullable=False, index=True)

    is_active: bool = Field(
        default=True,
        nullable=False,
        index=True,
        sa_column_kwargs={"server_default": "true"},
    )

    last_used_at: Optional[datetime] = Field(
        default=None, sa_column=Column(SADateTime(timezone=True), nullable=True)
    )
    expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(SADateTime(timezone=True), nullable=True)
    )

    __table_args__ = (
        Index("ix_api_keys_expires", "expires_at"),
        CheckConstraint("role IN ('admin', 'viewer')", name="ck_api_keys_valid_role"),
    )
