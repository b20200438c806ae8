from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol


class RevocationRecords(Protocol):
    def revoke_token(self, token: str, expires_at: Optional[datetime] = None): ...

    def is_token_revoked(self, token: str) -> bool: ...

    def prune_revoked_tokens(self, now: Optional[datetime] = None) -> int: ...


class StoreRevocationList:
    """Async revocation interface over the document store's revoked-token table.

    Lets the auth core await the memory/Postgres stores and Redis the same way.
    """

    def __init__(self, store: RevocationRecords):
        self.store = store

    async def revoke(self, token: str, expires_at: Optional[datetime] = None) -> None:
        self.store.revoke_token(token, expires_at)

    async def is_revoked(self, token: str) -> bool:
        return self.store.is_token_revoked(token)

    async def prune(self, now: Optional[datetime] = None) -> int:
        return self.store.prune_revoked_tokens(now)
