"""Well-known program identifiers, seeds and discriminators for the typing program."""

from enum import Enum

from solders.pubkey import Pubkey

# Owner-program id published with the typing program IDL.
TYPING_PROGRAM_ID = Pubkey.from_string("G1NLwCxdN8rRvqVcUnHAyz93vaWfhBgGdRGEbasnmkKa")

DELEGATION_PROGRAM_ID = Pubkey.from_string("DELeGGvXpWV2fqJUhqcF5ZSYMS4JTLjteaAMARRSaeSh")
MAGIC_PROGRAM_ID = Pubkey.from_string("Magic11111111111111111111111111111111111111")
MAGIC_CONTEXT_ID = Pubkey.from_string("MagicContext1111111111111111111111111111111")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

RECORD_SEED = b"personal_record"
BUFFER_SEED = b"buffer"
DELEGATION_RECORD_SEED = b"delegation"
DELEGATION_METADATA_SEED = b"delegation-metadata"

# The program refuses to save more attempts than this.
MAX_ATTEMPTS = 30

DEVNET_RPC_URL = "https://api.devnet.solana.com"
DEVNET_ROLLUP_RPC_URL = "https://devnet.magicblock.app"


class InstructionTag(bytes, Enum):
    """Anchor instruction discriminators."""

    INITIALIZE = bytes([175, 175, 109, 31, 13, 152, 155, 237])
    INIT_PERSONAL_RECORD = bytes([235, 48, 97, 27, 132, 102, 127, 23])
    TYPE_WORD = bytes([101, 184, 72, 74, 179, 211, 88, 174])
    END_SESSION = bytes([11, 244, 61, 154, 212, 249, 15, 66])
    SAVE_TO_RECORD = bytes([100, 66, 30, 166, 122, 48, 47, 2])
    DELEGATE = bytes([90, 147, 75, 178, 85, 88, 4, 137])
    COMMIT = bytes([223, 140, 142, 165, 229, 208, 156, 74])
    UNDELEGATE = bytes([131, 148, 180, 198, 91, 104, 42, 238])


class AccountDiscriminator(bytes, Enum):
    """Anchor account discriminators."""

    TYPING_SESSION = bytes([160, 108, 98, 83, 228, 219, 5, 91])
    PERSONAL_RECORD = bytes([203, 189, 231, 89, 6, 229, 169, 171])


class ProgramError(int, Enum):
    """Custom error codes raised by the typing program."""

    SESSION_NOT_ACTIVE = 6000
    SESSION_ALREADY_ENDED = 6001
    INVALID_AUTH = 6002
    MAX_ATTEMPTS_REACHED = 6003
    SESSION_STILL_ACTIVE = 6004


PROGRAM_ERROR_MESSAGES = {
    ProgramError.SESSION_NOT_ACTIVE: "Session is not active",
    ProgramError.SESSION_ALREADY_ENDED: "Session already ended",
    ProgramError.INVALID_AUTH: "Invalid authentication",
    ProgramError.MAX_ATTEMPTS_REACHED: f"Maximum attempts reached ({MAX_ATTEMPTS})",
    ProgramError.SESSION_STILL_ACTIVE: "Session is still active",
}


def describe_program_error(code: int) -> str:
    """Return the human-readable message for a custom program error code.

    Args:
        code: Custom error code from a failed instruction

    Returns:
        Message text, or a generic description for unknown codes
    """
    try:
        return PROGRAM_ERROR_MESSAGES[ProgramError(code)]
    except ValueError:
        return f"Program failed with custom error {code}"
