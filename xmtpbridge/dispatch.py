"""
Reply dispatch: records the inbound context and delivers the agent's reply.

Nothing raised while recording, generating or delivering leaves
``ReplyDispatcher.dispatch``; every failure is logged and contained to the
event that caused it. Task cancellation still propagates.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Callable, Awaitable, AsyncIterator

from .envelope import InboundContext
from .outbound import AGENT_NOT_AVAILABLE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplyPayload:
    """One reply segment. ``kind`` is tool, block or final."""
    text: Optional[str]
    kind: str = "final"


ReplyGenerator = Callable[[InboundContext], AsyncIterator[ReplyPayload]]
Deliver = Callable[[ReplyPayload], Awaitable[None]]
ErrorHandler = Callable[[BaseException, ReplyPayload], None]
Recorder = Callable[[InboundContext], Awaitable[object]]


def classify_delivery_error(err: BaseException) -> str:
    """``unavailable`` for the expected startup race, ``failed`` otherwise."""
    if "agent not available" in str(err).lower():
        return "unavailable"
    return "failed"


class ReplyDispatcher:
    """
    Drives reply generation for an inbound context.

    ``generate(ctx)`` is the reply framework: an async iterator of
    ``ReplyPayload``. ``record(ctx)`` persists session metadata.
    """

    def __init__(
        self,
        generate: ReplyGenerator,
        record: Optional[Recorder] = None,
    ):
        self.generate = generate
        self.record = record

    def _log_delivery_error(self, ctx: InboundContext, err: BaseException, payload: ReplyPayload) -> None:
        if classify_delivery_error(err) == "unavailable":
            logger.info(
                f"[{ctx.account_id}] XMTP {payload.kind} reply skipped "
                f"({AGENT_NOT_AVAILABLE.lower()})."
            )
            return
        logger.error(f"[{ctx.account_id}] XMTP {payload.kind} reply failed: {err}")

    async def dispatch(
        self,
        ctx: InboundContext,
        deliver: Deliver,
        on_error: Optional[ErrorHandler] = None,
        record: Optional[Recorder] = None,
    ) -> int:
        """
        Record, generate and deliver. Returns the number of payloads that
        were delivered successfully. ``record`` overrides the recorder given
        at construction for this call.
        """
        record = record or self.record
        if record is not None:
            try:
                await record(ctx)
            except Exception as e:
                logger.error(f"[{ctx.account_id}] Failed updating session meta: {e}")

        delivered = 0
        try:
            async for payload in self.generate(ctx):
                try:
                    await deliver(payload)
                    delivered += 1
                except Exception as e:
                    if on_error is not None:
                        try:
                            on_error(e, payload)
                        except Exception as handler_err:
                            logger.error(
                                f"[{ctx.account_id}] Delivery error handler failed: {handler_err}"
                            )
                    else:
                        self._log_delivery_error(ctx, e, payload)
        except Exception as e:
            logger.error(f"[{ctx.account_id}] Reply generation failed for {ctx.session_key}: {e}")
        return delivered
