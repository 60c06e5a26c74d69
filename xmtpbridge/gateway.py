"""
Gateway surface for the setup controller: RPC-style methods and an HTTP API.

Both transports call the same ``SetupController`` and return the same JSON
bodies; failures become ``{"ok": false, "error": ..., "state": ...}``.
"""

import json
import logging
from typing import Optional, Dict, Any, Callable, Awaitable

from aiohttp import web

from .errors import (
    XmtpBridgeError, ConfigurationError, SetupError, SetupConflictError, SetupStateError,
)
from .setup_flow import SetupController

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7788


def error_status(err: BaseException) -> int:
    """HTTP status for a setup failure."""
    if isinstance(err, SetupConflictError):
        return 409
    if isinstance(err, (SetupStateError, ConfigurationError, ValueError)):
        return 400
    return 500


def _str_param(params: Dict[str, Any], name: str) -> Optional[str]:
    value = params.get(name)
    return value if isinstance(value, str) and value.strip() else None


class GatewayMethods:
    """
    RPC methods ``xmtp.setup``, ``xmtp.setup.status``,
    ``xmtp.setup.complete`` and ``xmtp.setup.cancel``.
    """

    def __init__(self, controller: SetupController):
        self.controller = controller
        self._methods: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            'xmtp.setup': self._setup,
            'xmtp.setup.status': self._status,
            'xmtp.setup.complete': self._complete,
            'xmtp.setup.cancel': self._cancel,
        }

    @property
    def names(self):
        return list(self._methods)

    async def _setup(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.controller.setup(
            account_id=_str_param(params, 'accountId'),
            env=_str_param(params, 'env'),
            owner_address=_str_param(params, 'ownerAddress'),
        )

    async def _status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.controller.status()

    async def _complete(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.controller.complete()

    async def _cancel(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.controller.cancel()

    async def invoke(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a method and return its result; errors propagate."""
        handler = self._methods.get(method)
        if handler is None:
            raise ValueError(f"Unknown method: {method}")
        return await handler(params or {})

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a method and wrap the outcome as ``{ok: ...}``."""
        try:
            result = await self.invoke(method, params)
        except (XmtpBridgeError, ValueError) as e:
            return self.failure(e)
        return {'ok': True, **result}

    def failure(self, err: BaseException) -> Dict[str, Any]:
        state = getattr(err, 'state', None) if isinstance(err, SetupError) else None
        return {
            'ok': False,
            'error': str(err),
            'state': state or self.controller.state.value,
        }


class SetupHttpServer:
    """
    Local HTTP server for the setup API.

    Routes:
        POST /xmtp/setup
        GET  /xmtp/setup/status
        POST /xmtp/setup/complete
        POST /xmtp/setup/cancel
    """

    def __init__(
        self,
        methods: GatewayMethods,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        local_only: bool = True,
    ):
        self.methods = methods
        self.host = host
        self.port = port
        self.local_only = local_only
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self._setup_routes()

    def _setup_routes(self):
        self.app.router.add_post('/xmtp/setup', self._handle_setup)
        self.app.router.add_get('/xmtp/setup/status', self._handle_status)
        self.app.router.add_post('/xmtp/setup/complete', self._handle_complete)
        self.app.router.add_post('/xmtp/setup/cancel', self._handle_cancel)

    async def start(self):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()

        logger.info(f"XMTP setup API running at http://{self.host}:{self.port}/xmtp/setup")

    async def stop(self):
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            logger.info("XMTP setup API stopped")

    def _is_localhost_request(self, request: web.Request) -> bool:
        if request.transport is None:
            return False
        peername = request.transport.get_extra_info('peername')
        if peername is None:
            return False
        return peername[0] in ('127.0.0.1', '::1', 'localhost')

    async def _read_json(self, request: web.Request) -> Dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON body: {e}") from e
        if not isinstance(body, dict):
            raise ValueError("JSON body must be an object")
        return body

    async def _dispatch(self, request: web.Request, method: str, with_body: bool) -> web.Response:
        if self.local_only and not self._is_localhost_request(request):
            return web.json_response({'ok': False, 'error': 'Forbidden'}, status=403)
        try:
            params = await self._read_json(request) if with_body else {}
            result = await self.methods.invoke(method, params)
        except (XmtpBridgeError, ValueError) as e:
            status = error_status(e)
            if status >= 500:
                logger.error(f"{method} failed: {e}")
            return web.json_response(self.methods.failure(e), status=status)
        return web.json_response({'ok': True, **result})

    async def _handle_setup(self, request: web.Request) -> web.Response:
        return await self._dispatch(request, 'xmtp.setup', with_body=True)

    async def _handle_status(self, request: web.Request) -> web.Response:
        return await self._dispatch(request, 'xmtp.setup.status', with_body=False)

    async def _handle_complete(self, request: web.Request) -> web.Response:
        return await self._dispatch(request, 'xmtp.setup.complete', with_body=False)

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        return await self._dispatch(request, 'xmtp.setup.cancel', with_body=False)
