"""Utility functions for the dual-layer synchroniser."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from solders.pubkey import Pubkey

from .config import RetryPolicy
from .exceptions import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def short_address(address: Pubkey | str | None) -> str:
    """Abbreviate an address for log lines."""
    if address is None:
        return "<none>"
    text = str(address)
    return f"{text[:4]}…{text[-4:]}" if len(text) > 10 else text


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str,
) -> T:
    """Run an idempotent operation, retrying on :class:`NetworkError` only.

    Never use this for submissions: a duplicate write is not safe to retry blindly.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        try:
            return await operation()
        except NetworkError as exc:
            if attempt >= len(delays):
                raise
            delay = delays[attempt]
            attempt += 1
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempt,
                policy.attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)
