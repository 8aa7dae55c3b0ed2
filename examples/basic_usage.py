"""Basic usage example for Rollup Sync: one typing session on the base layer."""

import asyncio
import logging
import os

from dotenv import load_dotenv

from rollup_sync import SyncClientConfig, SyncError, TypingGameSync

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")


async def example_base_layer_session():
    """Play a short session without delegation and save it to the personal record."""

    private_key = os.getenv("PRIVATE_KEY")
    if not private_key:
        raise ValueError("PRIVATE_KEY not found in environment variables")

    config = SyncClientConfig(
        base_rpc_url=os.getenv("BASE_RPC_URL", "https://api.devnet.solana.com"),
    )
    game = TypingGameSync(private_key, config)

    await game.connect()
    print(f"Session address: {game.addresses.session}")
    print(f"Record address:  {game.addresses.record}")

    try:
        if game.record is None:
            await game.initialize_record()
        if game.session is None or game.session.has_ended:
            await game.initialize_session()

        for is_correct in (True, True, False, True):
            receipt = await game.record_word(is_correct)
            print(f"{receipt.action} on {receipt.layer.value}: {receipt.signature}")

        await game.end_session()
        await game.save_to_record()
    except SyncError as exc:
        print(f"Call failed: {exc}")
    finally:
        await game.disconnect()

    record = game.record
    if record is not None and record.latest_attempt is not None:
        attempt = record.latest_attempt
        print(f"Attempt #{attempt.attempt_number}: {attempt.wpm} WPM, {attempt.accuracy}% accuracy")


async def main():
    """Run examples."""
    print("=" * 50)
    print("Rollup Sync Examples")
    print("=" * 50)

    await example_base_layer_session()


if __name__ == "__main__":
    asyncio.run(main())
