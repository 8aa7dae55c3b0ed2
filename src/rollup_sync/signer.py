"""Credential types and the router that picks which one signs a call."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from .exceptions import NotConnectedError, SignFailedError
from .types import Layer, SignerKind
from .utils import short_address

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

KEYPAIR_LENGTH = 64


@dataclass(frozen=True)
class WalletCredential:
    """The primary wallet. Always available once connected."""

    keypair: Keypair

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    @classmethod
    def from_secret(cls, secret: str | bytes | Keypair) -> WalletCredential:
        if isinstance(secret, Keypair):
            return cls(secret)
        try:
            if isinstance(secret, str):
                # Keypair's own base58 parser panics on malformed input.
                secret = bytes(Signature.from_string(secret.strip()))
            if len(secret) != KEYPAIR_LENGTH:
                raise ValueError(f"expected {KEYPAIR_LENGTH} secret bytes, got {len(secret)}")
            return cls(Keypair.from_bytes(secret))
        except Exception as exc:
            raise SignFailedError(
                "Failed to derive wallet keypair from secret", details={"error": str(exc)}
            ) from exc


@dataclass(frozen=True)
class SessionCredential:
    """A time-boxed delegated signer backed by an on-chain session token."""

    keypair: Keypair
    token: Pubkey
    valid_until: float

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    def is_expired(self, now: float) -> bool:
        return now >= self.valid_until


SessionIssuer = Callable[[WalletCredential], Awaitable[SessionCredential]]


class SessionCredentialProvider:
    """Hold the optional active session credential.

    Issuance is an external remote call signed once by the wallet; it is
    supplied as an ``issuer`` coroutine and treated as opaque.
    """

    def __init__(
        self, credential: SessionCredential | None = None, *, clock: Clock = time.time
    ) -> None:
        self._credential = credential
        self._clock = clock

    def active(self) -> SessionCredential | None:
        credential = self._credential
        if credential is None:
            return None
        if credential.is_expired(self._clock()):
            logger.info("Session credential %s expired", short_address(credential.pubkey))
            self._credential = None
            return None
        return credential

    def install(self, credential: SessionCredential) -> None:
        self._credential = credential
        logger.info(
            "Session credential %s installed (token %s)",
            short_address(credential.pubkey),
            short_address(credential.token),
        )

    def revoke(self) -> None:
        if self._credential is not None:
            logger.info("Session credential %s revoked", short_address(self._credential.pubkey))
        self._credential = None

    async def create(self, wallet: WalletCredential, issuer: SessionIssuer) -> SessionCredential:
        credential = await issuer(wallet)
        self.install(credential)
        return credential


@dataclass(frozen=True)
class SignerChoice:
    """The credential resolved for one call."""

    kind: SignerKind
    keypair: Keypair
    session_token: Pubkey | None = None

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()


class SignerRouter:
    """Choose the signer for a call from the target layer and credential availability.

    Base-layer calls are always wallet-signed. Rollup calls prefer an
    unexpired session credential and fall back to the wallet.
    """

    def __init__(
        self,
        wallet: Callable[[], WalletCredential | None],
        sessions: SessionCredentialProvider | None = None,
    ) -> None:
        self._wallet = wallet
        self._sessions = sessions

    def wallet(self) -> WalletCredential:
        credential = self._wallet()
        if credential is None:
            raise NotConnectedError("Wallet not connected")
        return credential

    def resolve(self, layer: Layer, *, allow_session: bool = True) -> SignerChoice:
        wallet = self.wallet()

        if layer is Layer.ROLLUP and allow_session and self._sessions is not None:
            session = self._sessions.active()
            if session is not None:
                choice = SignerChoice(
                    kind=SignerKind.SESSION_CREDENTIAL,
                    keypair=session.keypair,
                    session_token=session.token,
                )
                logger.info(
                    "Transaction signer for %s: session credential %s",
                    layer.value,
                    short_address(choice.pubkey),
                )
                return choice

        choice = SignerChoice(kind=SignerKind.WALLET, keypair=wallet.keypair)
        logger.info(
            "Transaction signer for %s: wallet %s", layer.value, short_address(choice.pubkey)
        )
        return choice
