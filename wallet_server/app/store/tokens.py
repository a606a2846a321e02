"""
User token store: OAuth tokens and bootstrap data keyed by subject.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from ..errors import RecordNotFoundError, StorageError
from ..models import UserTokens
from .provider import StoreProvider

logger = logging.getLogger(__name__)

TOKEN_STORE_NAME = "user_tokens"


class TokenStore:
    """
    Persists UserTokens records.

    Args:
        provider: Storage provider to open the token namespace from
    """

    def __init__(self, provider: StoreProvider):
        self._store = provider.open_store(TOKEN_STORE_NAME)

    def get(self, sub: str) -> UserTokens:
        """
        Load the record for a subject.

        Raises:
            RecordNotFoundError: If the subject has never logged in
            StorageError: If the store failed or the record is corrupt
        """
        raw = self._store.get(sub)
        try:
            return UserTokens.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"corrupt user tokens record for {sub!r}: {e}") from e

    def find(self, sub: str) -> Optional[UserTokens]:
        """Like get(), but returns None when the subject is unknown."""
        try:
            return self.get(sub)
        except RecordNotFoundError:
            return None

    def save(self, tokens: UserTokens) -> None:
        """Create or overwrite the record for tokens.sub."""
        self._store.put(tokens.sub, _encode(tokens))

    def create(self, tokens: UserTokens) -> None:
        """
        Store the record only if none exists yet for tokens.sub.

        Raises:
            RecordExistsError: If another request stored a record first
        """
        self._store.put_if_absent(tokens.sub, _encode(tokens))

    def delete(self, sub: str) -> None:
        self._store.delete(sub)


def _encode(tokens: UserTokens) -> bytes:
    return tokens.model_dump_json(by_alias=True).encode("utf-8")
