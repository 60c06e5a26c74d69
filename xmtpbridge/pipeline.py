"""
Inbound pipeline: gate -> router -> envelope -> dispatcher.

Every arriving event becomes its own asyncio task with a timeout. Unrelated
conversations never wait on each other; ordering within a session is left
to the session store.
"""

import asyncio
import logging
from typing import Optional, Set, Callable, Awaitable, Sequence, Dict, Any, Coroutine

from .access import AccessGate
from .config import ConfigStore, ResolvedAccount
from .dispatch import ReplyDispatcher, ReplyPayload
from .envelope import EnvelopeOptions, InboundContext, format_inbound_context
from .media import AttachmentFetcher, MediaStore
from .outbound import deliver_reply
from .routing import SessionRouter
from .session import InboundEvent, Peer, PeerKind
from .transport import ClientRegistry

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TIMEOUT = 300.0


def peer_for_event(event: InboundEvent) -> Peer:
    """Peers are keyed by conversation id for both DMs and groups."""
    kind = PeerKind.DIRECT if event.is_direct else PeerKind.GROUP
    return Peer(kind, event.conversation_id)


class InboundPipeline:
    """
    Processes inbound events for any number of accounts.

    Collaborators are injected so several accounts can share one pipeline
    and tests can substitute each stage.
    """

    def __init__(
        self,
        gate: AccessGate,
        router: SessionRouter,
        dispatcher: ReplyDispatcher,
        config_store: ConfigStore,
        registry: ClientRegistry,
        event_timeout: float = DEFAULT_EVENT_TIMEOUT,
        media_store: Optional[MediaStore] = None,
    ):
        self.gate = gate
        self.router = router
        self.dispatcher = dispatcher
        self.config_store = config_store
        self.registry = registry
        self.event_timeout = event_timeout
        self.media_store = media_store
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    def _deliverer(
        self,
        account: ResolvedAccount,
        conversation_id: str,
    ) -> Callable[[ReplyPayload], Awaitable[None]]:
        async def deliver(payload: ReplyPayload) -> None:
            await deliver_reply(
                self.registry, account, conversation_id, payload.text, kind=payload.kind,
            )
        return deliver

    async def handle(self, account: ResolvedAccount, event: InboundEvent) -> Optional[InboundContext]:
        """
        Run one event through the pipeline. Returns the context handed to
        the dispatcher, or None when the gate rejected the event.
        """
        if not event.content or not event.content.strip():
            return None

        if not await self.gate.enforce(account, event):
            return None

        cfg = self.config_store.load()
        route = self.router.resolve_route(cfg, account.account_id, peer_for_event(event))
        previous_timestamp = self.router.previous_activity_timestamp(cfg, route)

        ctx = format_inbound_context(
            event,
            route,
            previous_timestamp,
            now=event.received_at,
            options=EnvelopeOptions.from_config(cfg),
        )
        if account.debug:
            logger.info(
                f"[{account.account_id}] Inbound from {event.sender[:12]} "
                f"-> {route.session_key} (matched by {route.matched_by})"
            )

        store = self.router.store_for(cfg, route)
        await self.dispatcher.dispatch(
            ctx,
            self._deliverer(account, event.conversation_id),
            record=store.record_inbound,
        )
        return ctx

    async def handle_attachments(
        self,
        account: ResolvedAccount,
        event: InboundEvent,
        entries: Sequence[Dict[str, Any]],
        fetch: AttachmentFetcher,
    ) -> Optional[InboundContext]:
        """
        Save the attachments of an admitted sender and run the result through
        ``handle`` as ``[Attachment: name]`` content. Nothing is downloaded for
        rejected senders; the event is dropped when no attachment was saved.
        """
        if not entries:
            return None
        if not await self.gate.admit(account, event):
            if account.debug:
                logger.info(
                    f"[{account.account_id}] Dropped attachment from {event.sender[:12]} "
                    f"in {event.conversation_id[:12]} (access denied)"
                )
            return None
        if self.media_store is None:
            logger.warning(f"[{account.account_id}] No media store, dropping attachment")
            return None

        filenames, media = await self.media_store.save_all(entries, fetch, account.account_id)
        if not media:
            return None

        attachment_event = InboundEvent.from_attachments(
            sender=event.sender,
            conversation_id=event.conversation_id,
            filenames=filenames,
            media=media,
            is_direct=event.is_direct,
            message_id=event.message_id,
        )
        if account.debug:
            logger.info(
                f"[{account.account_id}] Inbound attachment from {event.sender[:12]}: "
                f"{attachment_event.content}"
            )
        return await self.handle(account, attachment_event)

    async def _run(self, account: ResolvedAccount, event: InboundEvent, work: Coroutine) -> None:
        try:
            await asyncio.wait_for(work, timeout=self.event_timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"[{account.account_id}] Inbound handling timed out after "
                f"{self.event_timeout}s for {event.conversation_id[:12]}"
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{account.account_id}] Error handling inbound message: {e}")

    def _spawn(self, account: ResolvedAccount, event: InboundEvent, work: Coroutine) -> Optional[asyncio.Task]:
        if self._closed:
            work.close()
            logger.warning(f"[{account.account_id}] Pipeline closed, dropping inbound event")
            return None
        task = asyncio.create_task(self._run(account, event, work))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def submit(self, account: ResolvedAccount, event: InboundEvent) -> Optional[asyncio.Task]:
        """Schedule ``event`` as its own task. Returns None once closed."""
        return self._spawn(account, event, self.handle(account, event))

    def submit_attachments(
        self,
        account: ResolvedAccount,
        event: InboundEvent,
        entries: Sequence[Dict[str, Any]],
        fetch: AttachmentFetcher,
    ) -> Optional[asyncio.Task]:
        """Schedule an attachment message as its own task."""
        return self._spawn(account, event, self.handle_attachments(account, event, entries, fetch))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight event to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Stop accepting events and cancel the ones still running."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
