import json
from typing import Any, Dict, List, Optional, Tuple

from ..core.base import Proof, ProofState
from ..core.db import Connection, Database


def _in_clause(column: str, items: List[str], prefix: str) -> Tuple[str, Dict[str, Any]]:
    values = {f"{prefix}_{i}": item for i, item in enumerate(items)}
    placeholders = ", ".join(f":{k}" for k in values)
    return f"{column} IN ({placeholders})", values


async def store_proofs(
    *,
    proofs: List[Proof],
    store_id: str,
    mint_url: str,
    unit: str,
    timestamp: int,
    db: Database,
    conn: Optional[Connection] = None,
) -> None:
    for proof in proofs:
        await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('proofs')}
              (secret, store_id, mint_url, unit, id, amount, c, state, quote_id, created_at, updated_at)
            VALUES (:secret, :store_id, :mint_url, :unit, :id, :amount, :c, :state, :quote_id, :created_at, :updated_at)
            """,
            {
                "secret": proof.secret,
                "store_id": store_id,
                "mint_url": mint_url,
                "unit": unit,
                "id": proof.id,
                "amount": proof.amount,
                "c": proof.C,
                "state": proof.state.value,
                "quote_id": proof.quote_id,
                "created_at": timestamp,
                "updated_at": timestamp,
            },
        )


async def get_proofs(
    *,
    db: Database,
    store_id: str,
    mint_url: Optional[str] = None,
    unit: Optional[str] = None,
    state: Optional[ProofState] = None,
    quote_id: Optional[str] = None,
    conn: Optional[Connection] = None,
) -> List[Proof]:
    clauses = ["store_id = :store_id"]
    values: Dict[str, Any] = {"store_id": store_id}
    if mint_url:
        clauses.append("mint_url = :mint_url")
        values["mint_url"] = mint_url
    if unit:
        clauses.append("unit = :unit")
        values["unit"] = unit
    if state:
        clauses.append("state = :state")
        values["state"] = state.value
    if quote_id:
        clauses.append("quote_id = :quote_id")
        values["quote_id"] = quote_id
    rows = await (conn or db).fetchall(
        f"""
        SELECT * FROM {db.table_with_schema('proofs')}
        WHERE {' AND '.join(clauses)}
        ORDER BY amount DESC, created_at ASC
        """,
        values,
    )
    return [Proof.from_row(r) for r in rows]


async def get_balance(
    *,
    db: Database,
    store_id: str,
    mint_url: str,
    unit: str,
    conn: Optional[Connection] = None,
) -> int:
    row = await (conn or db).fetchone(
        f"""
        SELECT COALESCE(SUM(amount), 0) AS balance FROM {db.table_with_schema('proofs')}
        WHERE store_id = :store_id AND mint_url = :mint_url AND unit = :unit
        AND state = :state
        """,
        {
            "store_id": store_id,
            "mint_url": mint_url,
            "unit": unit,
            "state": ProofState.unspent.value,
        },
    )
    return int(row["balance"]) if row else 0


async def update_proofs_state(
    *,
    secrets: List[str],
    state: ProofState,
    timestamp: int,
    db: Database,
    conn: Optional[Connection] = None,
) -> int:
    if not secrets:
        return 0
    clause, values = _in_clause("secret", secrets, "secret")
    result = await (conn or db).execute(
        f"""
        UPDATE {db.table_with_schema('proofs')}
        SET state = :state, updated_at = :updated_at
        WHERE {clause}
        """,
        {"state": state.value, "updated_at": timestamp, **values},
    )
    return result.rowcount


async def store_pending_operation(
    *,
    id: str,
    store_id: str,
    mint_url: str,
    unit: str,
    kind: str,
    quote_id: Optional[str],
    secrets: List[str],
    created_at: int,
    expires_at: int,
    db: Database,
    conn: Optional[Connection] = None,
) -> None:
    await (conn or db).execute(
        f"""
        INSERT INTO {db.table_with_schema('pending_operations')}
          (id, store_id, mint_url, unit, kind, quote_id, secrets, created_at, expires_at)
        VALUES (:id, :store_id, :mint_url, :unit, :kind, :quote_id, :secrets, :created_at, :expires_at)
        """,
        {
            "id": id,
            "store_id": store_id,
            "mint_url": mint_url,
            "unit": unit,
            "kind": kind,
            "quote_id": quote_id,
            "secrets": json.dumps(secrets),
            "created_at": created_at,
            "expires_at": expires_at,
        },
    )


async def get_pending_operations(
    *,
    db: Database,
    store_id: Optional[str] = None,
    conn: Optional[Connection] = None,
) -> List[Dict[str, Any]]:
    where = "WHERE store_id = :store_id" if store_id else ""
    rows = await (conn or db).fetchall(
        f"SELECT * FROM {db.table_with_schema('pending_operations')} {where}",
        {"store_id": store_id} if store_id else {},
    )
    return [dict(r, secrets=json.loads(r["secrets"])) for r in rows]


async def delete_pending_operation(
    *,
    id: str,
    db: Database,
    conn: Optional[Connection] = None,
) -> None:
    await (conn or db).execute(
        f"DELETE FROM {db.table_with_schema('pending_operations')} WHERE id = :id",
        {"id": id},
    )


async def delete_expired_pending_operations(
    *,
    timestamp: int,
    db: Database,
    conn: Optional[Connection] = None,
) -> int:
    result = await (conn or db).execute(
        f"""
        DELETE FROM {db.table_with_schema('pending_operations')}
        WHERE expires_at < :timestamp
        """,
        {"timestamp": timestamp},
    )
    return result.rowcount
