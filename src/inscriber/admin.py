"""
Operator facade over the monitor, the engine and the order manager.
"""

from dataclasses import asdict
from typing import Any, Dict, Optional

from core.errors import Error
from core.log import get_logger
from inscriber.competition import CompetitionEngine
from inscriber.models import (
    AdminAction,
    AdminActionRequest,
    AdminActionResponse,
    Proposal,
)
from inscriber.monitor import BlockMonitor
from inscriber.orders import InscriptionOrderManager

logger = get_logger(__name__)

ACTION_HELP = {
    AdminAction.ELIMINATE.value: "Force a proposal to expired: {proposal_id, reason}",
    AdminAction.RESET.value: "Return leader/inscribing/expired proposals to active: {reason}",
    AdminAction.TRIGGER.value: "Poll the chain now (joins a poll already in progress)",
    AdminAction.RECONCILE.value: "Run one inscription order reconciliation pass",
    AdminAction.STATUS.value: "Monitor, reconciler and competition snapshot",
}


class InvalidAdminActionError(Error):
    """Raised when an admin action is malformed."""


def _proposal_data(proposal: Proposal) -> Dict[str, Any]:
    return {
        "id": str(proposal.id),
        "ticker": proposal.ticker,
        "status": str(proposal.status),
        "status_reason": proposal.status_reason,
    }


class AdminFacade:
    def __init__(
        self,
        engine: CompetitionEngine,
        monitor: BlockMonitor,
        order_manager: Optional[InscriptionOrderManager] = None,
    ):
        self.engine = engine
        self.monitor = monitor
        self.order_manager = order_manager

    async def execute(
        self, request: AdminActionRequest, actor: str = "admin"
    ) -> AdminActionResponse:
        """Run one action; input and lookup errors propagate to the caller."""
        logger.info("Admin action %s requested by %s", request.action, actor)

        if request.action == AdminAction.ELIMINATE:
            if request.proposal_id is None:
                raise InvalidAdminActionError("eliminate requires proposal_id")
            return await self.eliminate(
                request.proposal_id, request.reason or "eliminated by admin", actor
            )
        if request.action == AdminAction.RESET:
            return await self.reset(request.reason or "competition reset by admin", actor)
        if request.action == AdminAction.TRIGGER:
            return await self.trigger()
        if request.action == AdminAction.RECONCILE:
            return await self.reconcile()
        if request.action == AdminAction.STATUS:
            return AdminActionResponse(success=True, data=await self.status())
        raise InvalidAdminActionError(f"Unknown action: {request.action}")

    async def eliminate(
        self, proposal_id: int, reason: str, actor: str = "admin"
    ) -> AdminActionResponse:
        proposal = await self.engine.force_expire_proposal(
            proposal_id, reason, actor=actor
        )
        return AdminActionResponse(
            success=True,
            data={"proposal": _proposal_data(proposal)},
            message=f"Proposal {proposal.ticker} eliminated",
        )

    async def reset(self, reason: str, actor: str = "admin") -> AdminActionResponse:
        count = await self.engine.reset_competition(reason, actor=actor)
        return AdminActionResponse(
            success=True,
            data={"reset_proposals": count},
            message=f"Competition reset: {count} proposals back to active",
        )

    async def trigger(self) -> AdminActionResponse:
        result = await self.monitor.trigger_manually()
        data = {
            "current_height": result.current_height,
            "processed_blocks": result.processed,
            "decisions": [asdict(decision) for decision in result.decisions],
        }
        for decision in data["decisions"]:
            decision["proposal_id"] = str(decision["proposal_id"])

        if not result.success:
            return AdminActionResponse(
                success=False,
                data=data,
                error=result.error,
                message="Block poll stopped early; remaining blocks retry next poll",
            )
        return AdminActionResponse(
            success=True,
            data=data,
            message=f"Processed {len(result.processed)} blocks",
        )

    async def reconcile(self) -> AdminActionResponse:
        if self.order_manager is None:
            return AdminActionResponse(
                success=False, error="Order manager is not configured"
            )
        summary = await self.order_manager.reconcile_all()
        return AdminActionResponse(
            success=summary.errors == 0,
            data=asdict(summary),
            message=f"Reconciled {summary.checked} orders",
        )

    async def status(self) -> Dict[str, Any]:
        monitor_status = await self.monitor.get_status()
        data: Dict[str, Any] = {"monitor": monitor_status.model_dump(mode="json")}
        if self.order_manager is not None:
            reconciler_status = await self.order_manager.get_status()
            data["reconciler"] = reconciler_status.model_dump(mode="json")
        return data

    @staticmethod
    def help() -> Dict[str, str]:
        return dict(ACTION_HELP)
