"""Connection management for the base and rollup ledger endpoints."""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment as RpcCommitment
from solana.rpc.types import TxOpts
from solana.rpc.websocket_api import connect as ws_connect
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from .config import RetryPolicy, SyncClientConfig
from .exceptions import (
    ConfirmationTimeoutError,
    DecodeError,
    NetworkError,
    NotConnectedError,
    SubmitFailedError,
    SyncError,
)
from .types import AccountUpdate, Commitment, Layer, RawAccount, SignatureStatus
from .utils import retry_async, short_address

logger = logging.getLogger(__name__)

T = TypeVar("T")

UpdateCallback = Callable[[AccountUpdate], Awaitable[None] | None]

# solders status enums are unhashable, so this is searched rather than keyed.
_CONFIRMATION_LEVELS = (
    (TransactionConfirmationStatus.Processed, Commitment.PROCESSED),
    (TransactionConfirmationStatus.Confirmed, Commitment.CONFIRMED),
    (TransactionConfirmationStatus.Finalized, Commitment.FINALIZED),
)

_CUSTOM_ERROR = re.compile(r"Custom\((\d+)\)")

RestartCallback = Callable[[], Awaitable[None]]


class LedgerEndpoint(Protocol):
    """Request/response and push capabilities of one ledger layer."""

    layer: Layer
    url: str

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def get_account(self, address: Pubkey) -> RawAccount | None: ...

    async def latest_blockhash(self) -> Hash: ...

    async def send_raw(self, payload: bytes, *, skip_preflight: bool) -> str: ...

    async def signature_status(self, signature: str) -> SignatureStatus | None: ...

    async def transaction_logs(self, signature: str) -> list[str]: ...

    def start_subscription(self, address: Pubkey, callback: UpdateCallback) -> asyncio.Task: ...


@dataclass
class SubscriptionHandle:
    """Live push subscription for one (layer, address) pair."""

    layer: Layer
    address: Pubkey
    task: asyncio.Task
    callback: UpdateCallback | None = None
    on_restart: RestartCallback | None = None
    restarts: int = 0
    started_at: float = 0.0

    @property
    def active(self) -> bool:
        return not self.task.done()


async def dispatch_update(callback: UpdateCallback, update: AccountUpdate) -> None:
    result = callback(update)
    if inspect.isawaitable(result):
        await result


def confirmation_level(status: TransactionConfirmationStatus | None) -> Commitment | None:
    """Translate an RPC confirmation status into a ``Commitment``."""

    if status is None:
        return None
    for candidate, level in _CONFIRMATION_LEVELS:
        if status == candidate:
            return level
    return None


def program_error_code(err: Any) -> int | None:
    """Extract a custom program error code from a transaction error, if any."""

    if err is None:
        return None
    inner = getattr(err, "err", None)
    code = getattr(inner, "code", None)
    if isinstance(code, int):
        return code
    match = _CUSTOM_ERROR.search(str(err))
    if match:
        return int(match.group(1))
    return None


class SolanaEndpoint:
    """One ledger endpoint backed by solana-py's async RPC and websocket clients."""

    def __init__(
        self,
        layer: Layer,
        rpc_url: str,
        ws_url: str,
        *,
        commitment: Commitment = Commitment.CONFIRMED,
        request_timeout: float = 10.0,
    ) -> None:
        self.layer = layer
        self.url = rpc_url
        self.ws_url = ws_url
        self._commitment = RpcCommitment(commitment.value)
        self._request_timeout = request_timeout
        self._client: AsyncClient | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def open(self) -> None:
        client = AsyncClient(self.url, commitment=self._commitment, timeout=self._request_timeout)
        if not await client.is_connected():
            await client.close()
            raise NetworkError(f"Unable to connect to {self.layer.value} RPC", endpoint=self.url)
        self._client = client
        logger.info("Connected to %s RPC at %s", self.layer.value, self.url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None

    @property
    def client(self) -> AsyncClient:
        if self._client is None:
            raise NotConnectedError(
                f"{self.layer.value} RPC client not connected", layer=self.layer.value
            )
        return self._client

    # ------------------------------------------------------------------
    # Request/response
    # ------------------------------------------------------------------
    async def get_account(self, address: Pubkey) -> RawAccount | None:
        try:
            resp = await self.client.get_account_info(address, encoding="base64")
        except NotConnectedError:
            raise
        except Exception as exc:
            raise NetworkError(
                "Failed to read account",
                endpoint=self.url,
                details={"address": str(address), "error": str(exc)},
            ) from exc

        account = resp.value
        if account is None:
            return None
        return RawAccount(
            address=address,
            owner=account.owner,
            data=bytes(account.data),
            lamports=account.lamports,
        )

    async def latest_blockhash(self) -> Hash:
        try:
            resp = await self.client.get_latest_blockhash()
        except NotConnectedError:
            raise
        except Exception as exc:
            raise NetworkError(
                "Failed to fetch latest blockhash", endpoint=self.url, details={"error": str(exc)}
            ) from exc
        return resp.value.blockhash

    async def send_raw(self, payload: bytes, *, skip_preflight: bool) -> str:
        opts = TxOpts(skip_preflight=skip_preflight, skip_confirmation=True)
        try:
            resp = await self.client.send_raw_transaction(payload, opts=opts)
        except NotConnectedError:
            raise
        except Exception as exc:
            raise SubmitFailedError(
                "Endpoint rejected the transaction",
                layer=self.layer.value,
                program_error_code=program_error_code(exc),
                details={"endpoint": self.url, "error": str(exc)},
            ) from exc
        return str(resp.value)

    async def signature_status(self, signature: str) -> SignatureStatus | None:
        try:
            resp = await self.client.get_signature_statuses([Signature.from_string(signature)])
        except NotConnectedError:
            raise
        except Exception as exc:
            raise NetworkError(
                "Failed to read signature status",
                endpoint=self.url,
                details={"signature": signature, "error": str(exc)},
            ) from exc

        status = resp.value[0] if resp.value else None
        if status is None:
            return None
        level = confirmation_level(status.confirmation_status)
        if status.err is not None:
            return SignatureStatus(
                confirmation=level, error_code=program_error_code(status.err), error=str(status.err)
            )
        return SignatureStatus(confirmation=level)

    async def transaction_logs(self, signature: str) -> list[str]:
        try:
            resp = await self.client.get_transaction(
                Signature.from_string(signature),
                encoding="json",
                max_supported_transaction_version=0,
            )
        except NotConnectedError:
            raise
        except Exception as exc:
            raise NetworkError(
                "Failed to fetch transaction",
                endpoint=self.url,
                details={"signature": signature, "error": str(exc)},
            ) from exc

        if resp.value is None or resp.value.transaction.meta is None:
            return []
        return list(resp.value.transaction.meta.log_messages or [])

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------
    def start_subscription(self, address: Pubkey, callback: UpdateCallback) -> asyncio.Task:
        return asyncio.create_task(
            self._run_subscription(address, callback),
            name=f"{self.layer.value}-subscription-{address}",
        )

    async def _run_subscription(self, address: Pubkey, callback: UpdateCallback) -> None:
        async with ws_connect(self.ws_url) as websocket:
            await websocket.account_subscribe(address, self._commitment, "base64")
            first_resp = await websocket.recv()
            subscription_id = first_resp[0].result
            logger.debug(
                "Subscribed to %s on %s (id=%s)",
                short_address(address),
                self.layer.value,
                subscription_id,
            )
            async for messages in websocket:
                for message in messages:
                    value = message.result.value
                    update = AccountUpdate(
                        layer=self.layer,
                        address=address,
                        account=RawAccount(
                            address=address,
                            owner=value.owner,
                            data=bytes(value.data),
                            lamports=value.lamports,
                        ),
                    )
                    await dispatch_update(callback, update)


class ConnectionManager:
    """Own the base and rollup endpoints and every live subscription handle.

    Every call takes the target layer explicitly; the manager never infers it.
    """

    def __init__(
        self,
        config: SyncClientConfig,
        endpoints: Mapping[Layer, LedgerEndpoint] | None = None,
    ) -> None:
        self._config = config
        self._endpoints: dict[Layer, LedgerEndpoint] = dict(endpoints or {})
        self._subscriptions: dict[tuple[Layer, Pubkey], SubscriptionHandle] = {}
        self._read_retry: RetryPolicy = config.read_retry
        self._connected = False
        self._restarts: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        for layer in Layer:
            if layer not in self._endpoints:
                self._endpoints[layer] = SolanaEndpoint(
                    layer,
                    self._config.rpc_url(layer),
                    self._config.ws_url(layer),
                    commitment=self._config.commitment,
                    request_timeout=self._config.request_timeout,
                )
        try:
            for endpoint in self._endpoints.values():
                await endpoint.open()
        except Exception:
            await self.disconnect()
            raise
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False
        for restart in list(self._restarts):
            restart.cancel()
        for handle in list(self._subscriptions.values()):
            await self.unsubscribe(handle)
        for endpoint in self._endpoints.values():
            try:
                await endpoint.close()
            except Exception as exc:  # pragma: no cover - defensive
                logger.warning("Error closing %s endpoint: %s", endpoint.layer.value, exc)

    def is_connected(self) -> bool:
        return self._connected

    def endpoint(self, layer: Layer) -> LedgerEndpoint:
        if not self._connected or layer not in self._endpoints:
            raise NotConnectedError(f"{layer.value} endpoint is not connected", layer=layer.value)
        return self._endpoints[layer]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_account(self, layer: Layer, address: Pubkey) -> RawAccount | None:
        """Point-in-time raw read, retried on transient network failures."""

        endpoint = self.endpoint(layer)
        return await retry_async(
            lambda: endpoint.get_account(address),
            self._read_retry,
            description=f"{layer.value} read of {short_address(address)}",
        )

    async def fetch(
        self, layer: Layer, address: Pubkey, decoder: Callable[[bytes], T]
    ) -> T | None:
        """One-shot decoded read. ``None`` means the account does not exist yet."""

        raw = await self.get_account(layer, address)
        if raw is None:
            return None
        try:
            return decoder(raw.data)
        except DecodeError as exc:
            exc.address = str(address)
            exc.layer = layer.value
            raise

    async def transaction_logs(self, layer: Layer, signature: str) -> list[str]:
        endpoint = self.endpoint(layer)
        return await retry_async(
            lambda: endpoint.transaction_logs(signature),
            self._read_retry,
            description=f"{layer.value} logs of {signature[:8]}",
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def latest_blockhash(self, layer: Layer) -> Hash:
        endpoint = self.endpoint(layer)
        return await retry_async(
            endpoint.latest_blockhash,
            self._read_retry,
            description=f"{layer.value} blockhash",
        )

    async def submit(self, layer: Layer, payload: bytes, *, skip_preflight: bool) -> str:
        return await self.endpoint(layer).send_raw(payload, skip_preflight=skip_preflight)

    async def confirm(
        self,
        layer: Layer,
        signature: str,
        desired: Commitment,
        *,
        timeout: float,
        poll_interval: float,
    ) -> Commitment:
        """Suspend until ``desired`` is observed for ``signature`` or ``timeout`` elapses."""

        endpoint = self.endpoint(layer)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                status = await endpoint.signature_status(signature)
            except NetworkError as exc:
                logger.debug("Status poll for %s failed: %s", signature[:8], exc)
                status = None

            if status is not None:
                if status.failed:
                    raise SubmitFailedError(
                        status.error or "Transaction failed",
                        layer=layer.value,
                        program_error_code=status.error_code,
                        details={"signature": signature},
                    )
                if status.confirmation is not None and status.confirmation.satisfies(desired):
                    return status.confirmation

            if loop.time() >= deadline:
                raise ConfirmationTimeoutError(
                    f"Confirmation not observed within {timeout:.1f}s",
                    signature=signature,
                    layer=layer.value,
                    details={"desired": desired.value},
                )
            await asyncio.sleep(poll_interval)

    # ------------------------------------------------------------------
    # Push subscriptions
    # ------------------------------------------------------------------
    async def subscribe(
        self,
        layer: Layer,
        address: Pubkey,
        callback: UpdateCallback,
        *,
        on_restart: RestartCallback | None = None,
    ) -> SubscriptionHandle:
        """Start a push subscription, replacing any existing one for the pair.

        If the push channel ends while the handle is still registered, the
        subscription is restarted with backoff and ``on_restart`` is awaited
        once the replacement is live.
        """

        key = (layer, address)
        existing = self._subscriptions.get(key)
        if existing is not None:
            await self.unsubscribe(existing)

        handle = self._start(layer, address, callback, on_restart)
        logger.info("Subscribed to %s changes for %s", layer.value, short_address(address))
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        key = (handle.layer, handle.address)
        if self._subscriptions.get(key) is handle:
            del self._subscriptions[key]
        if handle.task is asyncio.current_task():
            handle.task.cancel()
        elif not handle.task.done():
            handle.task.cancel()
            try:
                await handle.task
            except asyncio.CancelledError:
                pass
        logger.info(
            "Unsubscribed from %s changes for %s", handle.layer.value, short_address(handle.address)
        )

    def subscription(self, layer: Layer, address: Pubkey) -> SubscriptionHandle | None:
        return self._subscriptions.get((layer, address))

    def _start(
        self,
        layer: Layer,
        address: Pubkey,
        callback: UpdateCallback,
        on_restart: RestartCallback | None,
        restarts: int = 0,
    ) -> SubscriptionHandle:
        task = self.endpoint(layer).start_subscription(address, callback)
        handle = SubscriptionHandle(
            layer=layer,
            address=address,
            task=task,
            callback=callback,
            on_restart=on_restart,
            restarts=restarts,
            started_at=task.get_loop().time(),
        )
        task.add_done_callback(lambda finished: self._on_subscription_exit(handle, finished))
        self._subscriptions[(layer, address)] = handle
        return handle

    def _on_subscription_exit(self, handle: SubscriptionHandle, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Subscription %s stopped: %s", task.get_name(), task.exception())

        key = (handle.layer, handle.address)
        if not self._connected or self._subscriptions.get(key) is not handle:
            return

        restart = task.get_loop().create_task(self._resubscribe(handle))
        self._restarts.add(restart)
        restart.add_done_callback(self._restarts.discard)

    async def _resubscribe(self, handle: SubscriptionHandle) -> None:
        policy = self._config.resubscribe_retry
        loop = asyncio.get_running_loop()
        # A channel that stayed up for a full backoff period starts over.
        if loop.time() - handle.started_at >= policy.max_delay:
            restarts = 0
        else:
            restarts = handle.restarts + 1
        delay = policy.delay(restarts)
        logger.warning(
            "%s subscription for %s dropped; resubscribing in %.2fs",
            handle.layer.value,
            short_address(handle.address),
            delay,
        )
        await asyncio.sleep(delay)

        key = (handle.layer, handle.address)
        if not self._connected or self._subscriptions.get(key) is not handle:
            return
        self._start(handle.layer, handle.address, handle.callback, handle.on_restart, restarts)
        logger.info(
            "Resubscribed to %s changes for %s", handle.layer.value, short_address(handle.address)
        )

        if handle.on_restart is not None:
            try:
                await handle.on_restart()
            except SyncError as exc:
                logger.warning(
                    "Read-through after resubscribing to %s failed: %s",
                    short_address(handle.address),
                    exc,
                )
