"""
XMTP setup state machine.

    idle -> generating -> probing -> awaiting-confirmation -> completed
                 \\            \\               \\
                  +------------+---------------+--> cancelled | failed

Exactly one session is in flight per controller. Key material generated
during a session lives in a scratch secrets file until ``complete()``
commits it to the secrets file and the configuration.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any

from nacl.utils import random

from .config import (
    ConfigStore, XMTP_ENVS, normalize_account_id, resolve_default_account_id,
    resolve_account, update_account_section,
)
from .errors import (
    XmtpBridgeError, ConfigurationError, SetupError, SetupConflictError, SetupStateError,
    IdentityGenerationError, WritabilityError,
)
from .identity import (
    IdentityManager, IdentityMaterial, default_secrets_path, ensure_db_path_writable,
    resolve_db_path,
)
from .transport import (
    ClientFactory, DEFAULT_PROBE_TIMEOUT, build_client_options, run_temporary_client,
)

logger = logging.getLogger(__name__)


class SetupState(Enum):
    IDLE = "idle"
    GENERATING = "generating"
    PROBING = "probing"
    AWAITING_CONFIRMATION = "awaiting-confirmation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (
            SetupState.IDLE, SetupState.COMPLETED, SetupState.CANCELLED, SetupState.FAILED,
        )


@dataclass
class SetupSession:
    """One setup attempt. ``task`` is the cancellation handle while in flight."""
    session_id: str
    account_id: str
    env: str
    scratch_path: Path
    owner_address: Optional[str] = None
    state: SetupState = SetupState.IDLE
    material: Optional[IdentityMaterial] = None
    error: Optional[str] = None
    task: Optional[asyncio.Task] = None
    started_at: float = field(default_factory=time.time)

    def view(self) -> Dict[str, Any]:
        """Public view; never contains key material."""
        data = {
            'sessionId': self.session_id,
            'state': self.state.value,
            'accountId': self.account_id,
            'env': self.env,
        }
        if self.material is not None:
            data['publicAddress'] = self.material.public_address
            data['reusedWalletKey'] = not self.material.generated_wallet_key
        if self.error:
            data['error'] = self.error
        return data


class SetupController:
    """
    Drives setup sessions for one gateway process.

    Args:
        config_store: Where the committed configuration lives
        state_dir: State root (secrets file, scratch files, databases)
        client_factory: Builds the temporary client used by the probe
        probe_timeout: Seconds allowed for the probe client to start
        secrets_path: Committed secrets file (default ``<state>/.env``)
    """

    def __init__(
        self,
        config_store: ConfigStore,
        state_dir: Path,
        client_factory: ClientFactory,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        secrets_path: Optional[Path] = None,
    ):
        self.config_store = config_store
        self.state_dir = Path(state_dir)
        self.client_factory = client_factory
        self.probe_timeout = probe_timeout
        self.secrets_path = Path(secrets_path) if secrets_path else default_secrets_path(self.state_dir)
        self._lock = asyncio.Lock()
        self._session: Optional[SetupSession] = None

    @property
    def state(self) -> SetupState:
        return self._session.state if self._session else SetupState.IDLE

    def is_active(self) -> bool:
        """True while a session is in a non-terminal state."""
        return not self.state.terminal

    def _scratch_path(self, session_id: str) -> Path:
        return self.state_dir / "xmtp" / "setup" / f"{session_id}.env"

    async def setup(
        self,
        account_id: Optional[str] = None,
        env: Optional[str] = None,
        owner_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a session and run it to ``awaiting-confirmation``.

        Raises:
            SetupConflictError: A session is already in flight
            IdentityGenerationError: Key resolution or the probe failed
            WritabilityError: Secrets or database location not writable
        """
        async with self._lock:
            if self.is_active():
                raise SetupConflictError(
                    "XMTP setup already in progress. Complete or cancel it first.",
                    state=self.state.value,
                )

            cfg = self.config_store.load()
            account_id = (
                normalize_account_id(account_id) if account_id
                else resolve_default_account_id(cfg)
            )
            account = resolve_account(cfg, account_id)
            env = env or account.env
            if env not in XMTP_ENVS:
                raise ConfigurationError(f"Unknown XMTP env: {env!r}")

            session_id = random(8).hex()
            session = SetupSession(
                session_id=session_id,
                account_id=account_id,
                env=env,
                scratch_path=self._scratch_path(session_id),
                owner_address=owner_address or account.owner_address,
                state=SetupState.GENERATING,
            )
            fragment = {
                'walletKey': account.wallet_key,
                'dbEncryptionKey': account.db_encryption_key,
            }
            self._session = session
            session.task = asyncio.create_task(self._run(session, fragment))
            logger.info(f"[{account_id}] XMTP setup started (env: {env})")

        try:
            await asyncio.wait({session.task})
        except asyncio.CancelledError:
            await self.cancel()
            raise

        if session.task.cancelled():
            return session.view()
        error = session.task.exception()
        if error is not None:
            raise error
        return session.view()

    async def _run(self, session: SetupSession, fragment: Dict[str, Any]) -> None:
        try:
            await self._generate(session, fragment)
            session.state = SetupState.PROBING
            await self._probe(session)
            session.state = SetupState.AWAITING_CONFIRMATION
            logger.info(
                f"[{session.account_id}] XMTP setup identity ready "
                f"(address: {session.material.public_address})"
            )
        except asyncio.CancelledError:
            self._discard_scratch(session)
            raise
        except XmtpBridgeError as e:
            self._fail(session, e)
            raise
        except Exception as e:
            err = IdentityGenerationError(f"XMTP setup failed: {e}")
            self._fail(session, err)
            raise err from e

    async def _generate(self, session: SetupSession, fragment: Dict[str, Any]) -> None:
        manager = IdentityManager(session.account_id)
        try:
            material = manager.resolve(fragment)
        except Exception as e:
            raise IdentityGenerationError(f"XMTP identity generation failed: {e}") from e
        manager.persist(material, session.env, session.scratch_path)
        session.material = material

    async def _probe(self, session: SetupSession) -> None:
        material = session.material
        db_path = resolve_db_path(
            self.state_dir, session.env, session.account_id, material.wallet_key,
        )
        ensure_db_path_writable(db_path)

        options = build_client_options(
            material.wallet_key,
            material.db_encryption_key,
            session.env,
            session.account_id,
            self.state_dir,
        )
        try:
            address = await run_temporary_client(
                self.client_factory, options, timeout=self.probe_timeout,
            )
        except asyncio.TimeoutError as e:
            raise IdentityGenerationError(
                f"XMTP probe timed out after {self.probe_timeout}s"
            ) from e
        except Exception as e:
            raise IdentityGenerationError(f"XMTP probe failed: {e}") from e

        if address and address.lower() != material.public_address.lower():
            logger.warning(
                f"[{session.account_id}] Probe reported {address[:12]}, "
                f"expected {material.public_address[:12]}"
            )

    def _fail(self, session: SetupSession, err: XmtpBridgeError) -> None:
        session.state = SetupState.FAILED
        session.error = str(err)
        if isinstance(err, SetupError):
            err.state = SetupState.FAILED.value
        self._discard_scratch(session)
        logger.error(f"[{session.account_id}] XMTP setup failed: {err}")

    def _discard_scratch(self, session: SetupSession) -> None:
        try:
            session.scratch_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove setup scratch file {session.scratch_path}: {e}")

    def status(self) -> Dict[str, Any]:
        """
        Current setup state. Unless a session awaits confirmation, the
        committed account's ``configured`` flag and public address are
        reported.
        """
        session = self._session
        data: Dict[str, Any] = {'state': self.state.value, 'setupPending': self.is_active()}
        if session is not None:
            data.update(session.view())
            if session.state == SetupState.AWAITING_CONFIRMATION:
                data['configured'] = False
                return data
        data.pop('publicAddress', None)

        try:
            account = resolve_account(
                self.config_store.load(), session.account_id if session else None,
            )
        except ConfigurationError as e:
            data['configured'] = False
            data['configError'] = str(e)
            return data
        data['configured'] = account.configured
        if account.configured:
            data['publicAddress'] = account.public_address
        return data

    async def complete(self) -> Dict[str, Any]:
        """
        Commit the pending identity to the secrets file and configuration.

        Raises:
            SetupStateError: No session is awaiting confirmation
            WritabilityError: Config or secrets file not writable; neither is
                left holding the new keys
        """
        async with self._lock:
            session = self._session
            if session is None or session.state != SetupState.AWAITING_CONFIRMATION:
                raise SetupStateError(
                    "No active setup to complete. Run xmtp.setup first.",
                    state=self.state.value,
                )

            material = session.material
            logger.info(f"[{session.account_id}] XMTP setup complete, writing config")

            update = {
                'walletKey': material.wallet_key,
                'dbEncryptionKey': material.db_encryption_key,
                'env': session.env,
                'publicAddress': material.public_address,
                'enabled': True,
            }
            if session.owner_address:
                update['ownerAddress'] = session.owner_address
            cfg = self.config_store.load()
            try:
                self.config_store.write(update_account_section(cfg, session.account_id, update))
            except OSError as e:
                raise WritabilityError(
                    f"Cannot write config {self.config_store.path}: {e}",
                    state=session.state.value,
                ) from e

            # Config first; a failed secrets write rolls it back.
            try:
                IdentityManager(session.account_id).persist(material, session.env, self.secrets_path)
            except WritabilityError as e:
                e.state = session.state.value
                try:
                    self.config_store.write(cfg)
                except OSError as restore_error:
                    logger.error(
                        f"[{session.account_id}] Could not restore config after "
                        f"secrets write failed: {restore_error}"
                    )
                raise

            self._discard_scratch(session)
            session.state = SetupState.COMPLETED
            logger.info(f"[{session.account_id}] XMTP setup config saved")
            return {
                'saved': True,
                'state': session.state.value,
                'accountId': session.account_id,
                'publicAddress': material.public_address,
            }

    async def cancel(self) -> Dict[str, Any]:
        """Abandon the current session. Safe in any state."""
        session = self._session
        if session is None or session.state.terminal:
            return {'cancelled': False, 'state': self.state.value}

        session.state = SetupState.CANCELLED
        task = session.task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._discard_scratch(session)
        logger.info(f"[{session.account_id}] XMTP setup cancelled")
        return {'cancelled': True, 'state': session.state.value}
