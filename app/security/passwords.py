from collections.abc import Iterable
from typing import TypeVar

from pwdlib import PasswordHash

T = TypeVar('T')

secret_hash = PasswordHash.recommended()


def hash_secret(raw_secret: str | None) -> str | None:
    """Hash a shared secret; an empty secret disables whatever it guards."""
    if not raw_secret or not raw_secret.strip():
        return None
    return secret_hash.hash(raw_secret)


def verify_secret(raw_secret: str | None, hashed_secret: str | None) -> bool:
    if not raw_secret or hashed_secret is None:
        return False
    return secret_hash.verify(raw_secret, hashed_secret)


def first_match(raw_secret: str | None, candidates: Iterable[tuple[T, str | None]]) -> T | None:
    """Return the label of the first hashed secret ``raw_secret`` unlocks."""
    for label, hashed in candidates:
        if verify_secret(raw_secret, hashed):
            return label
    return None
