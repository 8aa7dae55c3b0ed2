"""Delegate a session to the rollup, type on it, checkpoint and bring it back."""

import asyncio
import logging
import os

from dotenv import load_dotenv
from solders.pubkey import Pubkey

from rollup_sync import DelegationState, SyncClientConfig, TypingGameSync

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")


async def example_rollup_round_trip():
    private_key = os.getenv("PRIVATE_KEY")
    if not private_key:
        raise ValueError("PRIVATE_KEY not found in environment variables")

    validator = os.getenv("ROLLUP_VALIDATOR")
    config = SyncClientConfig(
        base_rpc_url=os.getenv("BASE_RPC_URL", "https://api.devnet.solana.com"),
        rollup_rpc_url=os.getenv("ROLLUP_RPC_URL", "https://devnet.magicblock.app"),
        rollup_validator=Pubkey.from_string(validator) if validator else None,
    )
    game = TypingGameSync(private_key, config)
    await game.connect()

    try:
        if game.session is None or game.session.has_ended:
            await game.initialize_session()

        if game.delegation_state is not DelegationState.DELEGATED:
            await game.delegate()
        print(f"Delegation state: {game.delegation_state.value}")

        for is_correct in (True, True, True, False):
            await game.record_word(is_correct)
        rollup = game.rollup_session
        print(f"Rollup view: {rollup.words_typed} words, {rollup.correct_words} correct")

        receipt = await game.commit()
        print(f"Checkpoint committed; base signature {receipt.commitment_signature}")

        await game.undelegate()
        base = game.base_session
        print(f"Base view after undelegate: {base.words_typed} words, {base.errors} errors")
    finally:
        await game.disconnect()


if __name__ == "__main__":
    asyncio.run(example_rollup_round_trip())
