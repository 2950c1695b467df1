"""Summary: Identity collaborators for desks and accounts.

Importance: Allocates desk numbers, desk key pairs, and secret hashes outside the core store.
Alternatives: Let clients pick desk ids and manage keys themselves.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass

from nacl.public import PrivateKey


DESK_ID_LENGTH = 10
_PBKDF2_ITERATIONS = 200_000
_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class KeyPair:
    """Summary: Curve25519 key pair provisioned for a desk.

    Importance: Lets clients encrypt miv bodies to a desk's public key.
    Alternatives: Share a symmetric key per conversation.
    """

    public_key: str
    private_key: bytes


def generate_desk_id() -> str:
    """Summary: Generate a ten-digit desk number that never starts with 0 or 1.

    Importance: Desk ids read like phone numbers and can be dialed from the address book.
    Alternatives: Use UUIDs as desk identifiers.
    """

    first = str(secrets.choice(range(2, 10)))
    rest = "".join(str(secrets.randbelow(10)) for _ in range(DESK_ID_LENGTH - 1))
    return first + rest


def normalize_desk_id(value: str) -> str:
    """Summary: Strip punctuation and spaces from a desk id."""

    return _NON_DIGITS.sub("", value)


def format_desk_id(desk_id: str) -> str:
    """Summary: Render a desk id in phone style, for example ``(555) 123-4567``.

    Importance: Matches how desk numbers are shown to people.
    Alternatives: Always show the raw digit string.
    """

    digits = normalize_desk_id(desk_id)
    if len(digits) != DESK_ID_LENGTH:
        return desk_id
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


def generate_key_pair() -> KeyPair:
    """Summary: Allocate a NaCl box key pair for a new desk.

    Importance: Every desk is provisioned with keys at creation time.
    Alternatives: Generate keys lazily on first encrypted miv.
    """

    private_key = PrivateKey.generate()
    public_key = base64.b64encode(bytes(private_key.public_key)).decode("ascii")
    return KeyPair(public_key=public_key, private_key=bytes(private_key))


def hash_secret(secret: str, salt: bytes | None = None) -> str:
    """Summary: Hash a password or security answer with PBKDF2.

    Importance: Stores only salted digests of user secrets.
    Alternatives: Use bcrypt or argon2 via a third-party library.
    """

    salt = salt or secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt, _PBKDF2_ITERATIONS)
    return f"{salt.hex()}${digest.hex()}"


def verify_secret(secret: str, stored_hash: str) -> bool:
    """Summary: Check a secret against a hash produced by hash_secret."""

    salt_hex, _, digest_hex = stored_hash.partition("$")
    if not salt_hex or not digest_hex:
        return False
    try:
        salt = bytes.fromhex(salt_hex)
    except ValueError:
        return False
    candidate = hash_secret(secret, salt).partition("$")[2]
    return hmac.compare_digest(candidate, digest_hex)


def normalize_answer(answer: str) -> str:
    # Security answers are compared case-insensitively.
    return answer.strip().lower()
