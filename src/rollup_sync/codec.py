"""Borsh layouts for the typing program's accounts and instruction arguments."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from borsh_construct import Bool, CStruct, I64, Option, U8, U16, U32, U64, Vec
from construct import Bytes
from solders.pubkey import Pubkey

from .constants import MAX_ATTEMPTS, AccountDiscriminator
from .exceptions import DecodeError, ValidationError
from .types import Attempt, RecordAccount, SessionAccount

DISCRIMINATOR_SIZE = 8

PUBKEY = Bytes(32)

TYPING_SESSION_LAYOUT = CStruct(
    "player" / PUBKEY,
    "words_typed" / U32,
    "correct_words" / U32,
    "errors" / U32,
    "wpm" / U16,
    "accuracy" / U8,
    "is_active" / Bool,
    "started_at" / I64,
    "ended_at" / Option(I64),
)

TYPING_ATTEMPT_LAYOUT = CStruct(
    "attempt_number" / U32,
    "words_typed" / U32,
    "correct_words" / U32,
    "errors" / U32,
    "wpm" / U16,
    "accuracy" / U8,
    "duration" / I64,
    "timestamp" / I64,
)

PERSONAL_RECORD_LAYOUT = CStruct(
    "player" / PUBKEY,
    "attempt_count" / U32,
    "total_words_typed" / U64,
    "total_correct_words" / U64,
    "best_wpm" / U16,
    "best_accuracy" / U8,
    "attempts" / Vec(TYPING_ATTEMPT_LAYOUT),
)

TYPE_WORD_ARGS = CStruct("is_correct" / Bool)


def _split(data: bytes, expected: AccountDiscriminator, label: str) -> bytes:
    if len(data) < DISCRIMINATOR_SIZE:
        raise DecodeError(
            f"{label} data is shorter than its discriminator", details={"length": len(data)}
        )
    if bytes(data[:DISCRIMINATOR_SIZE]) != expected.value:
        raise DecodeError(
            f"Account is not a {label}",
            details={"discriminator": bytes(data[:DISCRIMINATOR_SIZE]).hex()},
        )
    return bytes(data[DISCRIMINATOR_SIZE:])


def _parse(layout: Any, body: bytes, label: str) -> Any:
    try:
        return layout.parse(body)
    except Exception as exc:
        raise DecodeError(f"Failed to decode {label}", details={"error": str(exc)}) from exc


def decode_session(data: bytes) -> SessionAccount:
    """Decode a TypingSession account, discriminator included."""

    body = _split(data, AccountDiscriminator.TYPING_SESSION, "TypingSession")
    parsed = _parse(TYPING_SESSION_LAYOUT, body, "TypingSession")
    return SessionAccount(
        owner=Pubkey.from_bytes(parsed.player),
        words_typed=parsed.words_typed,
        correct_words=parsed.correct_words,
        errors=parsed.errors,
        wpm=parsed.wpm,
        accuracy=parsed.accuracy,
        is_active=parsed.is_active,
        started_at=parsed.started_at,
        ended_at=parsed.ended_at,
    )


def decode_record(data: bytes) -> RecordAccount:
    """Decode a PersonalRecord account, discriminator included."""

    body = _split(data, AccountDiscriminator.PERSONAL_RECORD, "PersonalRecord")
    parsed = _parse(PERSONAL_RECORD_LAYOUT, body, "PersonalRecord")
    attempts = tuple(
        Attempt(
            attempt_number=item.attempt_number,
            words_typed=item.words_typed,
            correct_words=item.correct_words,
            errors=item.errors,
            wpm=item.wpm,
            accuracy=item.accuracy,
            duration=item.duration,
            timestamp=item.timestamp,
        )
        for item in parsed.attempts
    )
    if len(attempts) > MAX_ATTEMPTS:
        raise DecodeError(
            "PersonalRecord holds more attempts than the program allows",
            details={"attempts": len(attempts), "max": MAX_ATTEMPTS},
        )
    return RecordAccount(
        owner=Pubkey.from_bytes(parsed.player),
        attempt_count=parsed.attempt_count,
        total_words_typed=parsed.total_words_typed,
        total_correct_words=parsed.total_correct_words,
        best_wpm=parsed.best_wpm,
        best_accuracy=parsed.best_accuracy,
        attempts=attempts,
    )


def encode_session(session: SessionAccount) -> bytes:
    body = TYPING_SESSION_LAYOUT.build(
        {
            "player": bytes(session.owner),
            "words_typed": session.words_typed,
            "correct_words": session.correct_words,
            "errors": session.errors,
            "wpm": session.wpm,
            "accuracy": session.accuracy,
            "is_active": session.is_active,
            "started_at": session.started_at,
            "ended_at": session.ended_at,
        }
    )
    return AccountDiscriminator.TYPING_SESSION.value + body


def encode_record(record: RecordAccount) -> bytes:
    if len(record.attempts) > MAX_ATTEMPTS:
        raise ValidationError(
            "Too many attempts for a PersonalRecord", field="attempts", value=len(record.attempts)
        )
    body = PERSONAL_RECORD_LAYOUT.build(
        {
            "player": bytes(record.owner),
            "attempt_count": record.attempt_count,
            "total_words_typed": record.total_words_typed,
            "total_correct_words": record.total_correct_words,
            "best_wpm": record.best_wpm,
            "best_accuracy": record.best_accuracy,
            "attempts": [
                {
                    "attempt_number": attempt.attempt_number,
                    "words_typed": attempt.words_typed,
                    "correct_words": attempt.correct_words,
                    "errors": attempt.errors,
                    "wpm": attempt.wpm,
                    "accuracy": attempt.accuracy,
                    "duration": attempt.duration,
                    "timestamp": attempt.timestamp,
                }
                for attempt in record.attempts
            ],
        }
    )
    return AccountDiscriminator.PERSONAL_RECORD.value + body


Decoder = Callable[[bytes], Any]
