"""Process-wide store of decoded account views, one per (address, layer)."""

from __future__ import annotations

import logging
from collections.abc import Callable

from solders.pubkey import Pubkey

from .types import Account, DelegationState, Layer

logger = logging.getLogger(__name__)

StoreListener = Callable[[Pubkey, Layer, "Account | None"], None]
DelegationLookup = Callable[[Pubkey], DelegationState]


class AccountStateStore:
    """Hold the canonical decoded view of each tracked account on each layer.

    Views are never merged field by field: :meth:`effective` selects the rollup
    view wholesale while the address is delegated and the base view otherwise.
    Only the subscription reconciler and the delegation state machine write
    to the store.
    """

    def __init__(self, delegation_lookup: DelegationLookup | None = None) -> None:
        self._views: dict[tuple[Pubkey, Layer], Account] = {}
        self._delegation_lookup = delegation_lookup
        self._listeners: list[StoreListener] = []

    def bind_delegation(self, lookup: DelegationLookup) -> None:
        self._delegation_lookup = lookup

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, address: Pubkey, layer: Layer) -> Account | None:
        return self._views.get((address, layer))

    def effective(self, address: Pubkey) -> Account | None:
        state = (
            self._delegation_lookup(address)
            if self._delegation_lookup is not None
            else DelegationState.UNKNOWN
        )
        layer = Layer.ROLLUP if state is DelegationState.DELEGATED else Layer.BASE
        return self.get(address, layer)

    def snapshot(self) -> dict[tuple[Pubkey, Layer], Account]:
        return dict(self._views)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def set(self, address: Pubkey, layer: Layer, account: Account | None) -> None:
        """Store a view. ``None`` records that the account does not exist on ``layer``."""

        key = (address, layer)
        if account is None:
            if key not in self._views:
                return
            del self._views[key]
        else:
            if self._views.get(key) == account:
                return
            self._views[key] = account
        self._notify(address, layer, account)

    def clear(self, address: Pubkey, layer: Layer) -> None:
        self.set(address, layer, None)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, address: Pubkey, layer: Layer, account: Account | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(address, layer, account)
            except Exception:
                logger.exception("Store listener failed for %s/%s", address, layer.value)
