"""Configuration containers for the dual-layer synchroniser."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from solders.pubkey import Pubkey

from .constants import (
    DELEGATION_PROGRAM_ID,
    DEVNET_ROLLUP_RPC_URL,
    DEVNET_RPC_URL,
    TYPING_PROGRAM_ID,
)
from .types import Commitment

DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_CONFIRM_TIMEOUT = 30.0
DEFAULT_CONFIRM_POLL_INTERVAL = 0.5
DEFAULT_PROPAGATION_DELAY = 2.0


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for idempotent reads and status probes."""

    attempts: int = 3
    initial_delay: float = 0.25
    backoff_factor: float = 2.0
    max_delay: float = 2.0

    def delays(self) -> list[float]:
        """Return the sleep before each retry (``attempts - 1`` entries)."""

        delays = []
        delay = self.initial_delay
        for _ in range(max(self.attempts - 1, 0)):
            delays.append(min(delay, self.max_delay))
            delay *= self.backoff_factor
        return delays

    def delay(self, attempt: int) -> float:
        """Return the sleep before retry number ``attempt`` (zero-based), capped."""

        return min(self.initial_delay * self.backoff_factor**attempt, self.max_delay)


NO_RETRY = RetryPolicy(attempts=1)
DEFAULT_RESUBSCRIBE_RETRY = RetryPolicy(initial_delay=0.5, max_delay=30.0)


def websocket_url_for(rpc_url: str) -> str:
    """Derive the push-subscription URL from an HTTP RPC URL."""

    rpc_url = rpc_url.rstrip("/")
    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://") :]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://") :]
    return rpc_url


@dataclass(frozen=True)
class SyncClientConfig:
    """Aggregated configuration used to construct the synchroniser."""

    base_rpc_url: str = DEVNET_RPC_URL
    rollup_rpc_url: str = DEVNET_ROLLUP_RPC_URL
    base_ws_url: str | None = None
    rollup_ws_url: str | None = None
    program_id: Pubkey = TYPING_PROGRAM_ID
    delegation_program_id: Pubkey = DELEGATION_PROGRAM_ID
    rollup_validator: Pubkey | None = None
    commitment: Commitment = Commitment.CONFIRMED
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT
    confirm_poll_interval: float = DEFAULT_CONFIRM_POLL_INTERVAL
    propagation_delay: float = DEFAULT_PROPAGATION_DELAY
    skip_preflight: bool = True
    read_retry: RetryPolicy = field(default_factory=RetryPolicy)
    resubscribe_retry: RetryPolicy = DEFAULT_RESUBSCRIBE_RETRY

    def with_defaulted_urls(self) -> SyncClientConfig:
        """Return a copy with websocket URLs derived from the RPC URLs."""

        base_rpc_url = self.base_rpc_url.rstrip("/")
        rollup_rpc_url = self.rollup_rpc_url.rstrip("/")
        return replace(
            self,
            base_rpc_url=base_rpc_url,
            rollup_rpc_url=rollup_rpc_url,
            base_ws_url=(self.base_ws_url or websocket_url_for(base_rpc_url)).rstrip("/"),
            rollup_ws_url=(self.rollup_ws_url or websocket_url_for(rollup_rpc_url)).rstrip("/"),
        )

    def rpc_url(self, layer: str) -> str:
        return self.rollup_rpc_url if layer == "rollup" else self.base_rpc_url

    def ws_url(self, layer: str) -> str:
        explicit = self.rollup_ws_url if layer == "rollup" else self.base_ws_url
        return explicit or websocket_url_for(self.rpc_url(layer))
