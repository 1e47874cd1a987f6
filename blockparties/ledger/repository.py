"""Party persistence.

A repository stores whole `Party` snapshots. Implementations must write a
party's balance and its stakes atomically so that `balance == sum(stakes)`
survives a crash or restart.
"""

from __future__ import annotations

from typing import Optional, Protocol

from .models import Party


class PartyRepository(Protocol):
    """Interface for party persistence."""

    def get(self, party_id: int) -> Optional[Party]:
        ...

    def save(self, party: Party) -> None:
        ...

    def delete(self, party_id: int) -> None:
        """Drop a party whose creation was rolled back."""
        ...

    def next_id(self) -> int:
        """Id the next created party will receive (ids are 1-based and sequential)."""
        ...

    def list_ids(self) -> list[int]:
        ...


class InMemoryPartyRepository:
    """In-memory implementation for dev mode and tests."""

    def __init__(self) -> None:
        self._parties: dict[int, Party] = {}

    def get(self, party_id: int) -> Optional[Party]:
        return self._parties.get(party_id)

    def save(self, party: Party) -> None:
        self._parties[party.party_id] = party

    def delete(self, party_id: int) -> None:
        self._parties.pop(party_id, None)

    def next_id(self) -> int:
        return len(self._parties) + 1

    def list_ids(self) -> list[int]:
        return sorted(self._parties)


class PostgresPartyRepository:
    """PostgreSQL implementation for production.

    Requires the following schema:

    CREATE TABLE IF NOT EXISTS parties (
        party_id BIGINT PRIMARY KEY,
        owner VARCHAR(128) NOT NULL,
        creator VARCHAR(128) NOT NULL,
        threshold NUMERIC(78, 0) NOT NULL,
        target NUMERIC(78, 0) NOT NULL,
        balance NUMERIC(78, 0) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE TABLE IF NOT EXISTS party_stakes (
        party_id BIGINT NOT NULL REFERENCES parties(party_id),
        depositor VARCHAR(128) NOT NULL,
        stake NUMERIC(78, 0) NOT NULL,
        PRIMARY KEY (party_id, depositor)
    );
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._conn = None

    def _get_conn(self):
        if self._conn is None:
            import psycopg2  # type: ignore
            self._conn = psycopg2.connect(self._dsn)
        return self._conn

    def save(self, party: Party) -> None:
        conn = self._get_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO parties (
                        party_id, owner, creator, threshold, target, balance, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (party_id) DO UPDATE SET
                        balance = EXCLUDED.balance
                    """,
                    (
                        party.party_id,
                        party.owner,
                        party.creator,
                        party.threshold,
                        party.target,
                        party.balance,
                        party.created_at,
                    ),
                )
                cur.execute("DELETE FROM party_stakes WHERE party_id = %s", (party.party_id,))
                for depositor, stake in party.stakes.items():
                    cur.execute(
                        "INSERT INTO party_stakes (party_id, depositor, stake) VALUES (%s, %s, %s)",
                        (party.party_id, depositor, stake),
                    )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def delete(self, party_id: int) -> None:
        conn = self._get_conn()
        try:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM party_stakes WHERE party_id = %s", (party_id,))
                cur.execute("DELETE FROM parties WHERE party_id = %s", (party_id,))
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def get(self, party_id: int) -> Optional[Party]:
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute(
                "SELECT party_id, owner, creator, threshold, target, balance, created_at "
                "FROM parties WHERE party_id = %s",
                (party_id,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            cur.execute("SELECT depositor, stake FROM party_stakes WHERE party_id = %s", (party_id,))
            stakes = {depositor: int(stake) for depositor, stake in cur.fetchall()}
        return Party(
            party_id=int(row[0]),
            owner=row[1],
            creator=row[2],
            threshold=int(row[3]),
            target=int(row[4]),
            balance=int(row[5]),
            stakes=stakes,
            created_at=row[6],
        )

    def next_id(self) -> int:
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute("SELECT COALESCE(MAX(party_id), 0) + 1 FROM parties")
            return int(cur.fetchone()[0])

    def list_ids(self) -> list[int]:
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute("SELECT party_id FROM parties ORDER BY party_id")
            return [int(r[0]) for r in cur.fetchall()]
