"""Bridge from "needs human approval" to an external async handler."""

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from .events import EventBus, EventType
from .models import RISK_DESCRIPTIONS, ApprovalRequest, RiskLevel

logger = logging.getLogger(__name__)

ApprovalHandler = Callable[[ApprovalRequest], Union[bool, Awaitable[bool]]]


class ApprovalCoordinator:
    """Hands approval requests to the single registered handler.

    No handler means every request is denied. There is no timeout; callers
    that need one wrap ``request_approval`` in ``asyncio.wait_for``.
    """

    def __init__(self, events: Optional[EventBus] = None):
        self.events = events or EventBus()
        self._handler: Optional[ApprovalHandler] = None

    def set_approval_handler(self, handler: Optional[ApprovalHandler]) -> None:
        """Install the approval handler (replacing any previous one). None clears it."""
        self._handler = handler

    @property
    def has_handler(self) -> bool:
        return self._handler is not None

    def build_request(
        self,
        tool_name: str,
        args: dict[str, Any],
        risk_level: RiskLevel,
        reason: Optional[str] = None,
    ) -> ApprovalRequest:
        risk_level = RiskLevel.parse(risk_level)
        return ApprovalRequest(
            tool_name=tool_name,
            args=dict(args or {}),
            risk_level=risk_level,
            risk_description=RISK_DESCRIPTIONS[risk_level],
            reason=reason,
        )

    async def request_approval(
        self,
        tool_name: str,
        args: dict[str, Any],
        risk_level: RiskLevel,
        reason: Optional[str] = None,
    ) -> bool:
        """Ask the handler to approve a tool call.

        Returns:
            The handler's decision; False when no handler is registered

        Raises:
            Whatever the handler raises, after an ``approval_result`` with
            ``approved=False`` has been emitted
        """
        handler = self._handler
        if handler is None:
            logger.warning(f"No approval handler set, denying {tool_name} by default")
            return False

        request = self.build_request(tool_name, args, risk_level, reason)
        await self.events.emit(EventType.APPROVAL_REQUESTED, request)
        logger.info(f"Approval requested for {tool_name} (risk: {request.risk_level.label})")

        try:
            result = handler(request)
            if inspect.isawaitable(result):
                result = await result
            approved = bool(result)
        except Exception as e:
            logger.error(f"Approval handler failed for {tool_name}: {type(e).__name__}: {e}")
            await self.events.emit(
                EventType.APPROVAL_RESULT, {"request": request, "approved": False}
            )
            raise

        await self.events.emit(
            EventType.APPROVAL_RESULT, {"request": request, "approved": approved}
        )
        logger.info(f"Approval for {tool_name}: {'granted' if approved else 'denied'}")
        return approved
