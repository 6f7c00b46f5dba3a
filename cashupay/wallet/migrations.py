from ..core.db import Database


async def m001_initial(db: Database):
    async with db.connect() as conn:
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {db.table_with_schema('proofs')} (
                secret TEXT NOT NULL,
                store_id TEXT NOT NULL,
                mint_url TEXT NOT NULL,
                unit TEXT NOT NULL,
                id TEXT NOT NULL,
                amount {db.big_int} NOT NULL,
                c TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'UNSPENT',
                quote_id TEXT,
                created_at {db.big_int},
                updated_at {db.big_int},

                UNIQUE (secret)
            );
            """
        )
        await conn.execute(
            f"""
            CREATE INDEX IF NOT EXISTS proofs_wallet_state_idx
            ON {db.table_with_schema('proofs')} (store_id, mint_url, unit, state)
            """
        )
        await conn.execute(
            f"""
            CREATE INDEX IF NOT EXISTS proofs_quote_id_idx
            ON {db.table_with_schema('proofs')} (quote_id)
            """
        )


async def m002_pending_operations(db: Database):
    async with db.connect() as conn:
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {db.table_with_schema('pending_operations')} (
                id TEXT NOT NULL,
                store_id TEXT NOT NULL,
                mint_url TEXT NOT NULL,
                unit TEXT NOT NULL,
                kind TEXT NOT NULL,
                quote_id TEXT,
                secrets TEXT NOT NULL,
                created_at {db.big_int} NOT NULL,
                expires_at {db.big_int} NOT NULL,

                UNIQUE (id)
            );
            """
        )
