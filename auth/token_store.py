"""
auth/token_store.py -- SQLAlchemy Core persistence for refresh tokens.

Pattern: Repository + Data Mapper (same shape as auth/store.py).

Rotation is the one operation with a concurrency contract. rotate() runs the
"revoke the old record if it is still live" UPDATE and the INSERT of its
replacement in a single transaction. The UPDATE's WHERE clause carries the
whole liveness condition (matching owner, not revoked, not expired), so the
database decides the winner: of two concurrent redemptions of one token only
one UPDATE can match a row, and the loser sees rowcount 0 and inserts
nothing. There is no read-then-write window.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, or_
from sqlalchemy.engine import Connection, Engine

from auth.models import RefreshTokenRecord
from core.database import create_store_engine, from_iso, to_iso, utcnow

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(40), nullable=False),
    Column("issuing_ip", String(64), nullable=False, server_default="unknown"),
    Column("issuing_user_agent", Text, nullable=False, server_default="unknown"),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Index("ix_refresh_tokens_account", "account_id", "revoked"),
)


class RefreshTokenStore:
    """Repository for RefreshTokenRecord entities.

    Usage:
        store = RefreshTokenStore("sqlite:///civicauth.db")
        record_id = store.add(RefreshTokenRecord(account_id=1, token_hash=h, expires_at=exp))
        new_id = store.rotate(h, 1, replacement, now=utcnow())  # None if h was not live
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    def _insert(self, conn: Connection, record: RefreshTokenRecord) -> int:
        result = conn.execute(
            _refresh_tokens.insert().values(
                account_id=record.account_id,
                token_hash=record.token_hash,
                expires_at=to_iso(record.expires_at),
                issuing_ip=record.issuing_ip or "unknown",
                issuing_user_agent=record.issuing_user_agent or "unknown",
                revoked=1 if record.revoked else 0,
                created_at=to_iso(record.created_at or utcnow()),
            )
        )
        return result.inserted_primary_key[0]

    def add(self, record: RefreshTokenRecord) -> int:
        with self.engine.begin() as conn:
            return self._insert(conn, record)

    def get_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def get(self, record_id: int) -> Optional[RefreshTokenRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == record_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def rotate(
        self,
        old_hash: str,
        account_id: int,
        replacement: RefreshTokenRecord,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """Revoke the live record matching old_hash and insert replacement.

        Returns the replacement's id, or None when no live record matched
        (unknown, revoked, expired, wrong owner, or lost a concurrent race).
        In the None case nothing is written.
        """
        now_iso = to_iso(now or utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == old_hash)
                    & (_refresh_tokens.c.account_id == account_id)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now_iso)
                )
                .values(revoked=1)
            )
            if result.rowcount != 1:
                return None
            return self._insert(conn, replacement)

    def revoke(self, record_id: int, account_id: int) -> bool:
        """Revoke one session. The owner check stops cross-account revocation."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.id == record_id)
                    & (_refresh_tokens.c.account_id == account_id)
                    & (_refresh_tokens.c.revoked == 0)
                )
                .values(revoked=1)
            )
        return result.rowcount > 0

    def revoke_all(self, account_id: int) -> int:
        """Revoke every live refresh token of an account. Returns the count."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount

    def list_active(self, account_id: int, now: Optional[datetime] = None) -> list[RefreshTokenRecord]:
        now_iso = to_iso(now or utcnow())
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(
                    (_refresh_tokens.c.account_id == account_id)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now_iso)
                )
                .order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Physically delete expired and revoked rows. Housekeeping only.

        Deleting a revoked row is safe: an unknown hash is rejected exactly
        like a revoked one.
        """
        now_iso = to_iso(now or utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    or_(_refresh_tokens.c.revoked == 1, _refresh_tokens.c.expires_at <= now_iso)
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        issuing_ip=row.issuing_ip,
        issuing_user_agent=row.issuing_user_agent,
        revoked=bool(row.revoked),
        created_at=from_iso(row.created_at),
    )
