from ..core.db import Database


async def m001_initial(db: Database):
    async with db.connect() as conn:
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {db.table_with_schema('config')} (
                key TEXT NOT NULL,
                value TEXT,
                created_at {db.big_int},
                updated_at {db.big_int},

                UNIQUE (key)
            );
            """
        )

        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {db.table_with_schema('stores')} (
                id TEXT NOT NULL,
                name TEXT NOT NULL,
                mint_url TEXT,
                mint_unit TEXT NOT NULL DEFAULT 'sat',
                seed_phrase TEXT,
                exchange_fee_percent REAL NOT NULL DEFAULT 0,
                auto_melt_enabled BOOL NOT NULL DEFAULT FALSE,
                auto_melt_address TEXT,
                auto_melt_threshold {db.big_int} NOT NULL DEFAULT 2000,
                api_key TEXT,
                created_at {db.big_int},

                UNIQUE (id)
            );
            """
        )

        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {db.table_with_schema('invoices')} (
                id TEXT NOT NULL,
                store_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'New',
                additional_status TEXT NOT NULL DEFAULT 'None',
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                amount_sats {db.big_int} NOT NULL,
                unit TEXT NOT NULL DEFAULT 'sat',
                exchange_rate REAL,
                quote_id TEXT,
                mint_url TEXT,
                bolt11 TEXT,
                metadata TEXT,
                checkout_config TEXT,
                created_at {db.big_int} NOT NULL,
                expiration_time {db.big_int} NOT NULL,
                processing_at {db.big_int},
                last_polled_at {db.big_int},

                UNIQUE (id),
                UNIQUE (quote_id)
            );
            """
        )
        await conn.execute(
            f"""
            CREATE INDEX IF NOT EXISTS invoices_status_idx
            ON {db.table_with_schema('invoices')} (status, last_polled_at)
            """
        )

        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {db.table_with_schema('store_mints')} (
                id {db.serial_primary_key},
                store_id TEXT NOT NULL,
                mint_url TEXT NOT NULL,
                unit TEXT NOT NULL DEFAULT 'sat',
                priority INT NOT NULL DEFAULT 100,
                enabled BOOL NOT NULL DEFAULT TRUE,

                UNIQUE (store_id, mint_url)
            );
            """
        )


async def m002_webhooks(db: Database):
    async with db.connect() as conn:
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {db.table_with_schema('webhooks')} (
                id TEXT NOT NULL,
                store_id TEXT NOT NULL,
                url TEXT NOT NULL,
                secret TEXT NOT NULL,
                events TEXT,
                enabled BOOL NOT NULL DEFAULT TRUE,

                UNIQUE (id)
            );
            """
        )
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {db.table_with_schema('webhook_deliveries')} (
                id TEXT NOT NULL,
                webhook_id TEXT NOT NULL,
                invoice_id TEXT,
                event_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                status_code INT,
                response TEXT,
                created_at {db.big_int} NOT NULL,

                UNIQUE (id)
            );
            """
        )
