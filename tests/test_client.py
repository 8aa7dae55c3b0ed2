"""End-to-end scenarios for the typing game synchroniser."""

import asyncio

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from rollup_sync import (
    AuthorizationError,
    DelegationState,
    NotConnectedError,
    SessionCredential,
    SignerKind,
    StateTransitionError,
    TypingGameSync,
    WriteInFlightError,
)
from rollup_sync.constants import DELEGATION_PROGRAM_ID, TYPING_PROGRAM_ID
from rollup_sync.types import Layer


def _tally(session):
    return session.words_typed, session.correct_words, session.errors


@pytest.fixture
def credential() -> SessionCredential:
    return SessionCredential(
        keypair=Keypair(), token=Pubkey.new_unique(), valid_until=4_102_444_800.0
    )


class TestInitialization:
    @pytest.mark.asyncio
    async def test_fresh_owner_has_no_accounts(self, game):
        assert game.is_connected()
        assert game.base_session is None
        assert game.record is None
        assert game.delegation_state is DelegationState.UNDELEGATED

    @pytest.mark.asyncio
    async def test_initialize_session(self, game):
        receipt = await game.initialize_session()

        assert receipt.signer_kind is SignerKind.WALLET
        assert game.delegation_state is DelegationState.UNDELEGATED
        assert game.base_session.is_active is True
        assert game.base_session.words_typed == 0
        assert game.session == game.base_session

    @pytest.mark.asyncio
    async def test_calls_before_connect_fail(self, wallet, ledger, config):
        sync = TypingGameSync(wallet, config, endpoints=ledger.endpoints)
        with pytest.raises(NotConnectedError):
            await sync.record_word(True)
        assert isinstance(sync.last_error, NotConnectedError)


class TestRollupRoundTrip:
    @pytest.mark.asyncio
    async def test_four_words_survive_undelegation(self, game, ledger):
        await game.initialize_session()
        await game.delegate()
        assert game.delegation_state is DelegationState.DELEGATED
        assert ledger.owner_of(Layer.BASE, game.addresses.session) == DELEGATION_PROGRAM_ID

        for _ in range(3):
            receipt = await game.record_word(True)
            assert receipt.layer is Layer.ROLLUP
        await game.record_word(False)
        await ledger.settle()
        assert _tally(game.rollup_session) == (4, 3, 1)

        await game.undelegate()
        await ledger.settle()
        assert game.delegation_state is DelegationState.UNDELEGATED
        assert game.rollup_session is None
        assert _tally(game.base_session) == (4, 3, 1)
        assert game.session == game.base_session

    @pytest.mark.asyncio
    async def test_each_word_counts_once(self, game, ledger):
        await game.initialize_session()
        await game.delegate()

        await game.record_word(True)
        await ledger.settle()
        assert _tally(game.rollup_session) == (1, 1, 0)
        await game.record_word(False)
        await ledger.settle()
        assert _tally(game.rollup_session) == (2, 1, 1)

    @pytest.mark.asyncio
    async def test_commit_checkpoints_without_changing_state(self, game, ledger):
        await game.initialize_session()
        await game.delegate()
        await game.record_word(True)
        await game.record_word(True)

        receipt = await game.commit()
        await ledger.settle()

        assert game.delegation_state is DelegationState.DELEGATED
        assert receipt.commitment_signature is not None
        assert game.base_session == game.rollup_session
        assert ledger.endpoints[Layer.ROLLUP].subscription_count(game.addresses.session) == 1

    @pytest.mark.asyncio
    async def test_end_session_on_rollup(self, game, ledger):
        await game.initialize_session()
        await game.delegate()
        await game.record_word(True)
        await game.end_session()
        await game.undelegate()

        assert game.base_session.has_ended is True
        assert game.base_session.is_active is False


class TestBaseLayerPlay:
    @pytest.mark.asyncio
    async def test_attempt_is_saved_to_record(self, game):
        await game.initialize_record()
        await game.initialize_session()
        await game.record_word(True)
        await game.record_word(False)
        receipt = await game.end_session()
        assert receipt.layer is Layer.BASE

        await game.save_to_record()

        record = game.record
        assert record.attempt_count == 1
        assert record.total_words_typed == 2
        assert record.latest_attempt.correct_words == 1
        assert record.latest_attempt.errors == 1

    @pytest.mark.asyncio
    async def test_session_is_reset_for_each_attempt(self, game, ledger):
        await game.initialize_record()
        for is_correct in (True, False):
            await game.initialize_session()
            await ledger.settle()
            assert _tally(game.base_session) == (0, 0, 0)
            assert game.base_session.is_active is True

            await game.record_word(is_correct)
            await game.end_session()
            await game.save_to_record()

        await ledger.settle()
        record = game.record
        assert record.attempt_count == 2
        assert record.total_words_typed == 2
        assert [attempt.attempt_number for attempt in record.attempts] == [1, 2]
        assert [attempt.correct_words for attempt in record.attempts] == [1, 0]

    @pytest.mark.asyncio
    async def test_save_requires_base_layer(self, game):
        await game.initialize_record()
        await game.initialize_session()
        await game.delegate()

        with pytest.raises(AuthorizationError) as exc_info:
            await game.save_to_record()
        assert exc_info.value.required_layer == "base"
        assert game.last_error is exc_info.value


class TestSigners:
    @pytest.mark.asyncio
    async def test_session_credential_signs_rollup_words(self, game, ledger, credential):
        ledger.register_session_token(credential.token, game.addresses.owner, credential.pubkey)
        game.sessions.install(credential)
        await game.initialize_session()
        await game.delegate()

        receipt = await game.record_word(True)

        assert receipt.signer_kind is SignerKind.SESSION_CREDENTIAL
        assert receipt.signer == credential.pubkey
        assert _tally(game.rollup_session) == (1, 1, 0)

    @pytest.mark.asyncio
    async def test_base_words_use_wallet_despite_credential(self, game, credential):
        game.sessions.install(credential)
        await game.initialize_session()

        receipt = await game.record_word(True)

        assert receipt.layer is Layer.BASE
        assert receipt.signer_kind is SignerKind.WALLET

    @pytest.mark.asyncio
    async def test_rejected_credential_reports_required_signer(self, game, credential):
        game.sessions.install(credential)
        await game.initialize_session()
        await game.delegate()

        with pytest.raises(AuthorizationError) as exc_info:
            await game.record_word(True)
        assert exc_info.value.required_signer == "wallet"
        assert _tally(game.rollup_session) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_create_and_revoke_credential(self, game, credential):
        async def issuer(wallet):
            assert wallet.pubkey == game.addresses.owner
            return credential

        created = await game.create_session_credential(issuer)
        assert game.sessions.active() is created

        game.revoke_session_credential()
        assert game.sessions.active() is None


class TestConcurrencyAndErrors:
    @pytest.mark.asyncio
    async def test_second_write_for_same_address_is_refused(self, game):
        await game.initialize_session()

        results = await asyncio.gather(
            game.record_word(True), game.record_word(True), return_exceptions=True
        )

        assert sum(isinstance(result, WriteInFlightError) for result in results) == 1
        assert game.base_session.words_typed == 1

    @pytest.mark.asyncio
    async def test_lost_delegation_after_rollup_write(self, game, ledger):
        await game.initialize_session()
        await game.delegate()
        ledger.set_owner(Layer.BASE, game.addresses.session, TYPING_PROGRAM_ID, publish=False)

        with pytest.raises(AuthorizationError):
            await game.record_word(True)
        assert game.delegation_state is DelegationState.UNDELEGATED
        assert isinstance(game.last_error, AuthorizationError)

    @pytest.mark.asyncio
    async def test_commit_requires_delegation(self, game):
        await game.initialize_session()
        with pytest.raises(StateTransitionError):
            await game.commit()
        assert isinstance(game.last_error, StateTransitionError)

    @pytest.mark.asyncio
    async def test_last_error_survives_unrelated_state_changes(self, game, ledger):
        await game.initialize_session()
        with pytest.raises(StateTransitionError):
            await game.undelegate()
        error = game.last_error

        ledger.set_owner(Layer.BASE, game.addresses.session, DELEGATION_PROGRAM_ID, publish=True)
        await ledger.settle()
        assert game.delegation_state is DelegationState.DELEGATED
        assert game.last_error is error

        game.clear_error()
        assert game.last_error is None

    @pytest.mark.asyncio
    async def test_reads_keep_last_error(self, game):
        await game.initialize_session()
        with pytest.raises(StateTransitionError):
            await game.commit()
        error = game.last_error

        await game.refresh()
        await game.probe()
        assert game.last_error is error

    @pytest.mark.asyncio
    async def test_new_attempt_supersedes_last_error(self, game):
        await game.initialize_session()
        with pytest.raises(StateTransitionError):
            await game.commit()

        await game.record_word(True)
        assert game.last_error is None
