"""Build, sign, submit and confirm single remote calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .config import SyncClientConfig
from .connections import ConnectionManager
from .constants import ProgramError, describe_program_error
from .exceptions import (
    AuthorizationError,
    BuildFailedError,
    ConfirmationTimeoutError,
    NetworkError,
    SignFailedError,
    SubmitFailedError,
)
from .instructions import RemoteCall
from .signer import SignerChoice
from .types import Layer, Receipt, SignerKind
from .utils import short_address

logger = logging.getLogger(__name__)

RereadHook = Callable[[Sequence[tuple[Layer, Pubkey]]], Awaitable[None]]

_SCHEDULED_COMMIT_LOG = "ScheduledCommitSent signature: "
_COMMIT_SIGNATURE_LOG = "ScheduledCommitSent signature[0]: "


class TransactionPipeline:
    """Execute one remote call against an explicitly chosen layer.

    Failures surface as ``NotConnectedError``, ``BuildFailedError``,
    ``SignFailedError``, ``SubmitFailedError`` or ``ConfirmationTimeoutError``;
    an ``InvalidAuth`` rejection from the program surfaces as
    ``AuthorizationError``.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        config: SyncClientConfig,
        *,
        reread: RereadHook | None = None,
    ) -> None:
        self._connections = connections
        self._config = config
        self._reread = reread
        self._pending_rereads: set[asyncio.Task] = set()

    def bind_reread(self, reread: RereadHook) -> None:
        self._reread = reread

    async def execute(
        self,
        layer: Layer,
        call: RemoteCall,
        signer: SignerChoice,
        *,
        await_reread: bool = True,
    ) -> Receipt:
        self._connections.endpoint(layer)

        await self._check_required_accounts(layer, call)

        try:
            blockhash = await self._connections.latest_blockhash(layer)
        except NetworkError as exc:
            raise SubmitFailedError(
                f"Could not fetch a recent blockhash for {call.action}",
                action=call.action,
                layer=layer.value,
                details={"error": str(exc)},
            ) from exc

        try:
            message = Message.new_with_blockhash(list(call.instructions), signer.pubkey, blockhash)
            transaction = Transaction.new_unsigned(message)
        except Exception as exc:
            raise BuildFailedError(
                f"Failed to build transaction for {call.action}",
                action=call.action,
                layer=layer.value,
                details={"error": str(exc)},
            ) from exc

        try:
            transaction.sign([signer.keypair], blockhash)
        except Exception as exc:
            raise SignFailedError(
                f"Credential rejected transaction for {call.action}",
                action=call.action,
                layer=layer.value,
                details={"signer": str(signer.pubkey), "error": str(exc)},
            ) from exc

        logger.info(
            "Dispatching %s on %s signed by %s %s",
            call.action,
            layer.value,
            signer.kind.value,
            short_address(signer.pubkey),
        )

        try:
            signature = await self._connections.submit(
                layer, bytes(transaction), skip_preflight=self._config.skip_preflight
            )
            logger.info("Transaction sent for action=%s signature=%s", call.action, signature)
            confirmation = await self._connections.confirm(
                layer,
                signature,
                self._config.commitment,
                timeout=self._config.confirm_timeout,
                poll_interval=self._config.confirm_poll_interval,
            )
        except ConfirmationTimeoutError as exc:
            exc.action = call.action
            logger.error(
                "Confirmation of %s timed out; outcome is ambiguous until re-probed", call.action
            )
            raise
        except SubmitFailedError as exc:
            raise self._translate_rejection(exc, layer, call, signer) from exc
        except NetworkError as exc:
            raise SubmitFailedError(
                f"Failed to submit transaction for {call.action}",
                action=call.action,
                layer=layer.value,
                details={"error": str(exc)},
            ) from exc

        logger.info(
            "Transaction confirmed for action=%s signature=%s level=%s",
            call.action,
            signature,
            confirmation.value,
        )

        receipt = Receipt(
            signature=signature,
            action=call.action,
            layer=layer,
            signer_kind=signer.kind,
            signer=signer.pubkey,
            confirmation=confirmation,
            context=dict(call.context),
        )
        await self._schedule_reread(call, await_reread)
        return receipt

    async def wait_for_rereads(self) -> None:
        """Await re-reads scheduled by ``execute(..., await_reread=False)``."""

        if self._pending_rereads:
            await asyncio.gather(*list(self._pending_rereads), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _check_required_accounts(self, layer: Layer, call: RemoteCall) -> None:
        for address in call.requires:
            try:
                raw = await self._connections.get_account(layer, address)
            except NetworkError as exc:
                raise BuildFailedError(
                    f"Could not verify {short_address(address)} before {call.action}",
                    action=call.action,
                    layer=layer.value,
                    details={"address": str(address), "error": str(exc)},
                ) from exc
            if raw is None:
                raise BuildFailedError(
                    f"{call.action} requires account {address} which does not exist "
                    f"on the {layer.value} layer",
                    action=call.action,
                    layer=layer.value,
                    details={"address": str(address)},
                )

    def _translate_rejection(
        self,
        exc: SubmitFailedError,
        layer: Layer,
        call: RemoteCall,
        signer: SignerChoice,
    ) -> Exception:
        code = exc.program_error_code
        if code == ProgramError.INVALID_AUTH:
            required = "wallet" if signer.kind is SignerKind.SESSION_CREDENTIAL else "session owner"
            return AuthorizationError(
                f"{call.action} was rejected: {describe_program_error(code)}",
                required_layer=layer.value,
                required_signer=required,
                details={"signer": str(signer.pubkey), "signer_kind": signer.kind.value},
            )

        message = exc.message
        if code is not None:
            message = f"{call.action} failed: {describe_program_error(code)}"
        logger.error("Failed to execute %s on %s: %s", call.action, layer.value, message)
        return SubmitFailedError(
            message,
            action=call.action,
            layer=layer.value,
            program_error_code=code,
            details=dict(exc.details),
        )

    async def _schedule_reread(self, call: RemoteCall, await_reread: bool) -> None:
        if self._reread is None or not call.affects:
            return

        if await_reread:
            await self._safe_reread(call)
            return

        task = asyncio.create_task(self._safe_reread(call))
        self._pending_rereads.add(task)
        task.add_done_callback(self._pending_rereads.discard)

    async def _safe_reread(self, call: RemoteCall) -> None:
        assert self._reread is not None
        try:
            await self._reread(call.affects)
        except Exception as exc:
            logger.warning("Re-read after %s failed: %s", call.action, exc)


async def find_commitment_signature(
    connections: ConnectionManager, signature: str
) -> str | None:
    """Look up the base-layer signature of a commit scheduled on the rollup.

    Best-effort: returns ``None`` when the scheduling logs are unavailable.
    """

    try:
        logs = await connections.transaction_logs(Layer.ROLLUP, signature)
        scheduled = _log_suffix(logs, _SCHEDULED_COMMIT_LOG)
        if scheduled is None:
            return None
        commit_logs = await connections.transaction_logs(Layer.ROLLUP, scheduled)
        return _log_suffix(commit_logs, _COMMIT_SIGNATURE_LOG)
    except Exception as exc:
        logger.warning("Commitment signature lookup for %s failed: %s", signature[:8], exc)
        return None


def _log_suffix(logs: Sequence[str], marker: str) -> str | None:
    for line in logs:
        if marker in line:
            return line.split(marker, 1)[1].strip()
    return None
