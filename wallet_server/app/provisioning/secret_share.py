"""
2-of-2 secret splitting.

The user's KMS secret is split so that neither this server nor the
authorization server alone can unlock the authorization key store.
"""

import secrets
from typing import Tuple

SECRET_LENGTH = 32


def generate_secret() -> bytes:
    return secrets.token_bytes(SECRET_LENGTH)


def split_secret(secret: bytes) -> Tuple[bytes, bytes]:
    """
    Split a secret into two shares; both are needed to rebuild it.

    Args:
        secret: Secret bytes

    Returns:
        (local share, remote share)
    """
    if not secret:
        raise ValueError("cannot split an empty secret")

    pad = secrets.token_bytes(len(secret))
    return pad, bytes(a ^ b for a, b in zip(secret, pad))


def combine_shares(first: bytes, second: bytes) -> bytes:
    if len(first) != len(second):
        raise ValueError("secret shares differ in length")
    return bytes(a ^ b for a, b in zip(first, second))
