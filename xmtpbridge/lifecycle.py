"""
Account lifecycle: provisioning, starting and stopping XMTP clients, and
wiring their events into the inbound pipeline.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Dict, Any, Callable, Awaitable

from .config import ConfigStore, ResolvedAccount, ensure_configured, resolve_account, update_account_section
from .errors import ConfigurationError
from .identity import IdentityManager, ensure_db_path_writable
from .media import client_fetcher
from .pipeline import InboundPipeline
from .session import InboundEvent
from .setup_flow import SetupController
from .transport import (
    ClientFactory, ClientRegistry, MessagingClient, DEFAULT_PROBE_TIMEOUT,
    build_client_options, run_temporary_client,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class AccountLifecycle:
    """
    Starts and stops one client per account.

    Args:
        config_store: Committed configuration
        state_dir: State root used for local databases
        client_factory: Builds ``MessagingClient`` instances
        registry: Running clients, shared with outbound delivery
        pipeline: Receives every inbound event
        setup_controller: Probes are skipped while it has a session in flight
    """

    def __init__(
        self,
        config_store: ConfigStore,
        state_dir: Path,
        client_factory: ClientFactory,
        registry: ClientRegistry,
        pipeline: InboundPipeline,
        setup_controller: Optional[SetupController] = None,
    ):
        self.config_store = config_store
        self.state_dir = Path(state_dir)
        self.client_factory = client_factory
        self.registry = registry
        self.pipeline = pipeline
        self.setup_controller = setup_controller

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def auto_provision_account(self, account: ResolvedAccount) -> ResolvedAccount:
        """Generate missing keys, commit them to config and return the new snapshot."""
        if account.wallet_key and account.db_encryption_key:
            return account

        material = IdentityManager(account.account_id).resolve({
            'walletKey': account.wallet_key,
            'dbEncryptionKey': account.db_encryption_key,
        })
        update = {'dbEncryptionKey': material.db_encryption_key}
        generated = ["dbEncryptionKey"]
        if material.generated_wallet_key:
            update['walletKey'] = material.wallet_key
            update['publicAddress'] = material.public_address
            generated.insert(0, "walletKey")

        cfg = self.config_store.load()
        next_cfg = update_account_section(cfg, account.account_id, update)
        self.config_store.write(next_cfg)
        logger.info(f"[{account.account_id}] auto-provisioned XMTP keys: {', '.join(generated)}")
        return resolve_account(next_cfg, account.account_id)

    def backfill_public_address(self, account: ResolvedAccount, client: MessagingClient) -> bool:
        """Store the client's address when the config has none. Returns True if written."""
        if account.raw.get('publicAddress') or not client.address:
            return False
        cfg = self.config_store.load()
        self.config_store.write(
            update_account_section(cfg, account.account_id, {'publicAddress': client.address})
        )
        logger.info(f"[{account.account_id}] backfilled publicAddress to config")
        return True

    # ------------------------------------------------------------------
    # Event wiring
    # ------------------------------------------------------------------

    def _current_account(self, account: ResolvedAccount) -> ResolvedAccount:
        """Fresh snapshot from config; the startup snapshot if config is unreadable."""
        try:
            return resolve_account(self.config_store.load(), account.account_id)
        except ConfigurationError as e:
            logger.warning(f"[{account.account_id}] Using startup config, reload failed: {e}")
            return account

    def build_text_handler(self, account: ResolvedAccount) -> EventHandler:
        async def handle_text(message: Dict[str, Any]) -> None:
            if message.get('isDenied'):
                if account.debug:
                    logger.info(f"[{account.account_id}] Skipped message from denied contact")
                return
            content = message.get('content')
            sender = message.get('sender')
            if not isinstance(content, str) or not sender:
                return
            event = InboundEvent(
                sender=sender,
                conversation_id=message['conversationId'],
                content=content,
                is_direct=bool(message.get('isDirect')),
                message_id=message.get('messageId'),
            )
            self.pipeline.submit(self._current_account(account), event)
        return handle_text

    def build_reaction_handler(self, account: ResolvedAccount) -> EventHandler:
        async def handle_reaction(message: Dict[str, Any]) -> None:
            if message.get('isDenied'):
                if account.debug:
                    logger.info(f"[{account.account_id}] Skipped reaction from denied contact")
                return
            reaction = message.get('reaction') or {}
            sender = message.get('sender')
            if not reaction.get('content') or not sender:
                return
            event = InboundEvent.from_reaction(
                sender=sender,
                conversation_id=message['conversationId'],
                emoji=reaction['content'],
                action=reaction.get('action'),
                reference=str(reaction.get('reference', '')),
                is_direct=bool(message.get('isDirect')),
                message_id=message.get('messageId'),
            )
            self.pipeline.submit(self._current_account(account), event)
        return handle_reaction

    def build_attachment_handler(self, account: ResolvedAccount, client: MessagingClient) -> EventHandler:
        """Inline and remote attachments; ``attachments`` is a list of entries."""
        fetch = client_fetcher(client)

        async def handle_attachment(message: Dict[str, Any]) -> None:
            if message.get('isDenied'):
                if account.debug:
                    logger.info(f"[{account.account_id}] Skipped attachment from denied contact")
                return
            entries = [e for e in message.get('attachments') or [] if isinstance(e, dict)]
            sender = message.get('sender')
            if not entries or not sender:
                return
            event = InboundEvent(
                sender=sender,
                conversation_id=message['conversationId'],
                content="",
                is_direct=bool(message.get('isDirect')),
                message_id=message.get('messageId'),
            )
            self.pipeline.submit_attachments(self._current_account(account), event, entries, fetch)
        return handle_attachment

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def open_client(self, account: ResolvedAccount) -> MessagingClient:
        """Provision, build, wire and start a client, then register it."""
        account = self.auto_provision_account(account)
        ensure_configured(account)

        options = build_client_options(
            account.wallet_key,
            account.db_encryption_key,
            account.env,
            account.account_id,
            self.state_dir,
        )
        ensure_db_path_writable(options.db_path)
        client = await self.client_factory(options)

        self.backfill_public_address(account, client)
        logger.info(
            f"[{account.account_id}] starting XMTP provider "
            f"(env: {account.env}, agent: {client.address or account.public_address})"
        )

        client.on_event('text', self.build_text_handler(account))
        client.on_event('reaction', self.build_reaction_handler(account))
        client.on_event('attachment', self.build_attachment_handler(account, client))

        await client.start()
        self.registry.set(account.account_id, client)
        logger.info(f"[{account.account_id}] XMTP provider started")

        if account.owner_address:
            try:
                await client.create_dm(account.owner_address)
                logger.info(f"[{account.account_id}] Owner DM ready ({account.owner_address[:12]}...)")
            except Exception as e:
                logger.warning(f"[{account.account_id}] Could not create owner DM: {e}")
        return client

    async def start_account(self, account: ResolvedAccount, stop_event: asyncio.Event) -> None:
        """Run the account's client until ``stop_event`` is set."""
        await self.open_client(account)
        try:
            await stop_event.wait()
        finally:
            await self.stop_account(account.account_id)

    async def stop_account(self, account_id: str) -> None:
        client = self.registry.get(account_id)
        if client is None:
            return
        logger.info(f"[{account_id}] stopping XMTP provider")
        try:
            await client.stop()
        except Exception as e:
            logger.error(f"[{account_id}] Error stopping agent: {e}")
        self.registry.set(account_id, None)

    async def stop_all(self) -> None:
        for account_id in self.registry.account_ids():
            await self.stop_account(account_id)

    # ------------------------------------------------------------------
    # Probe
    # ------------------------------------------------------------------

    async def probe_account(
        self,
        account: ResolvedAccount,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> Dict[str, Any]:
        """Liveness probe with a temporary client. Never raises."""
        if self.setup_controller is not None and self.setup_controller.is_active():
            return {'ok': False, 'skipped': True, 'error': "Setup in progress"}
        if not account.wallet_key or not account.db_encryption_key:
            return {'ok': False, 'error': "Not configured: walletKey and dbEncryptionKey required."}

        options = build_client_options(
            account.wallet_key,
            account.db_encryption_key,
            account.env,
            account.account_id,
            self.state_dir,
        )
        try:
            address = await run_temporary_client(self.client_factory, options, timeout=timeout)
        except asyncio.TimeoutError:
            return {'ok': False, 'error': "Probe timed out"}
        except Exception as e:
            return {'ok': False, 'error': str(e)}
        return {'ok': True, 'address': address}
