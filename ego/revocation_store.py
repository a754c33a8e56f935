"""
Persistence for API keys. The store is the only mutable shared state of the token core;
the revoke write is a single conditional UPDATE so concurrent revokes flip the flag exactly once.
"""
from typing import Protocol

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ego.models import ApiKey


class RevocationStore(Protocol):
    def create(self, api_key: ApiKey) -> ApiKey: ...

    def find_by_token(self, token: str) -> ApiKey | None: ...

    def mark_revoked(self, token: str) -> bool: ...

    def list_for_owner(self, owner_id: str) -> list[ApiKey]: ...

    def count_for_owner(self, owner_id: str) -> int: ...


class SqlRevocationStore:
    """RevocationStore backed by a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, api_key: ApiKey) -> ApiKey:
        self.db.add(api_key)
        self.db.commit()
        self.db.refresh(api_key)
        return api_key

    def find_by_token(self, token: str) -> ApiKey | None:
        return self.db.scalars(select(ApiKey).where(ApiKey.token == token)).first()

    def mark_revoked(self, token: str) -> bool:
        """
        Flip revoked false -> true atomically. True if this call did the flip;
        False if the key is unknown or was already revoked.
        """
        result = self.db.execute(
            update(ApiKey)
            .where(ApiKey.token == token, ApiKey.revoked.is_(False))
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        # Loaded instances must see the new flag
        self.db.expire_all()
        return result.rowcount == 1

    def list_for_owner(self, owner_id: str) -> list[ApiKey]:
        return list(
            self.db.scalars(select(ApiKey).where(ApiKey.owner_id == owner_id).order_by(ApiKey.issue_date))
        )

    def count_for_owner(self, owner_id: str) -> int:
        return self.db.scalar(select(func.count()).select_from(ApiKey).where(ApiKey.owner_id == owner_id))
