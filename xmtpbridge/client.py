"""
High-level XMTP bridge for OpenClaw gateways.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, List, Dict, Any

from .access import AccessGate
from .config import ConfigStore, ResolvedAccount, list_enabled_accounts, resolve_account, resolve_state_dir
from .dispatch import ReplyDispatcher, ReplyGenerator
from .gateway import GatewayMethods, SetupHttpServer, DEFAULT_HOST, DEFAULT_PORT
from .lifecycle import AccountLifecycle
from .media import MediaStore
from .outbound import deliver_reply, send_text
from .pairing import PairingStore
from .pipeline import InboundPipeline, DEFAULT_EVENT_TIMEOUT
from .routing import SessionRouter
from .setup_flow import SetupController
from .transport import ClientFactory, ClientRegistry, DEFAULT_PROBE_TIMEOUT

logger = logging.getLogger(__name__)


class XmtpBridge:
    """
    Wires the XMTP channel together for one gateway process.

    Usage:
        bridge = XmtpBridge(client_factory=my_factory, generate=my_agent)
        await bridge.start()

        # Setup over RPC
        result = await bridge.methods.call("xmtp.setup", {"env": "dev"})

        await bridge.stop()
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        generate: ReplyGenerator,
        state_dir: Optional[Path] = None,
        config_path: Optional[Path] = None,
        http_host: str = DEFAULT_HOST,
        http_port: int = DEFAULT_PORT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        event_timeout: float = DEFAULT_EVENT_TIMEOUT,
    ):
        self.state_dir = Path(state_dir) if state_dir else resolve_state_dir()
        self.config_store = ConfigStore(config_path or self.state_dir / "openclaw.json")
        self.registry = ClientRegistry()
        self.pairing_store = PairingStore(self.state_dir)

        self.gate = AccessGate(pairing_store=self.pairing_store, reply_sender=self._send_pairing_reply)
        self.router = SessionRouter(self.state_dir)
        self.dispatcher = ReplyDispatcher(generate)
        self.pipeline = InboundPipeline(
            self.gate,
            self.router,
            self.dispatcher,
            self.config_store,
            self.registry,
            event_timeout=event_timeout,
            media_store=MediaStore(self.state_dir),
        )

        self.setup_controller = SetupController(
            self.config_store, self.state_dir, client_factory, probe_timeout=probe_timeout,
        )
        self.methods = GatewayMethods(self.setup_controller)
        self.http = SetupHttpServer(self.methods, host=http_host, port=http_port)
        self.lifecycle = AccountLifecycle(
            self.config_store,
            self.state_dir,
            client_factory,
            self.registry,
            self.pipeline,
            setup_controller=self.setup_controller,
        )

        self._stop_event = asyncio.Event()
        self._account_tasks: Dict[str, asyncio.Task] = {}

    async def _send_pairing_reply(self, account: ResolvedAccount, conversation_id: str, text: str) -> None:
        await deliver_reply(self.registry, account, conversation_id, text)

    @property
    def running_accounts(self) -> List[str]:
        return self.registry.account_ids()

    async def start(self, serve_http: bool = True) -> None:
        """Start every enabled account and, optionally, the setup HTTP API."""
        self._stop_event.clear()
        if serve_http:
            await self.http.start()
        for account in list_enabled_accounts(self.config_store.load()):
            self.start_account(account)

    def start_account(self, account: ResolvedAccount) -> asyncio.Task:
        task = asyncio.create_task(self.lifecycle.start_account(account, self._stop_event))
        task.add_done_callback(lambda t, account_id=account.account_id: self._account_done(account_id, t))
        self._account_tasks[account.account_id] = task
        return task

    def _account_done(self, account_id: str, task: asyncio.Task) -> None:
        self._account_tasks.pop(account_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[{account_id}] XMTP provider failed: {error}")

    async def stop(self) -> None:
        """Stop accounts, finish in-flight events and shut the HTTP API down."""
        self._stop_event.set()
        tasks = list(self._account_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.lifecycle.stop_all()
        await self.pipeline.drain()
        await self.pipeline.close()
        await self.http.stop()

    async def send(self, to: str, text: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        """Send text to a conversation id or address from a running account."""
        account = resolve_account(self.config_store.load(), account_id)
        return await send_text(self.registry, account, to, text)

    async def probe(self, account_id: Optional[str] = None) -> Dict[str, Any]:
        account = resolve_account(self.config_store.load(), account_id)
        return await self.lifecycle.probe_account(account)

    def get_status(self) -> dict:
        accounts = [
            {**account.describe(), 'running': account.account_id in self.registry}
            for account in list_enabled_accounts(self.config_store.load())
        ]
        return {
            'accounts': accounts,
            'setup': self.setup_controller.status(),
            'pendingEvents': self.pipeline.pending,
        }
