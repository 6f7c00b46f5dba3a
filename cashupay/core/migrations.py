import re

from loguru import logger

from ..core.db import POSTGRES, SQLITE, Connection, Database


async def m000_create_migrations_table(conn: Connection):
    await conn.execute(
        f"""
    CREATE TABLE IF NOT EXISTS {conn.table_with_schema('dbversions')} (
        db TEXT PRIMARY KEY,
        version INT NOT NULL
    )
    """
    )


async def migrate_databases(db: Database, migrations_module):
    """Creates the necessary tables if they don't exist already; or migrates them.

    Several migration modules may share one database, each one is tracked in
    `dbversions` under the name of its parent package.
    """

    async def set_migration_version(conn, db_name, version):
        await conn.execute(
            f"""
            INSERT INTO {db.table_with_schema('dbversions')} (db, version)
            VALUES (:db, :version)
            ON CONFLICT (db) DO UPDATE SET version = :version
            """,
            {"db": db_name, "version": version},
        )

    async with db.connect() as conn:
        exists = None
        if conn.type == SQLITE:
            exists = await conn.fetchone(
                "SELECT * FROM sqlite_master WHERE type='table' AND name = :name",
                {"name": db.table_with_schema("dbversions")},
            )
        elif conn.type == POSTGRES:
            exists = await conn.fetchone(
                "SELECT * FROM information_schema.tables WHERE table_name = :name",
                {"name": db.table_with_schema("dbversions")},
            )

        if not exists:
            await m000_create_migrations_table(conn)

        rows = await conn.fetchall(
            f"SELECT * FROM {db.table_with_schema('dbversions')}"
        )
        current_versions = {row["db"]: row["version"] for row in rows}

    matcher = re.compile(r"^m(\d\d\d)_")
    db_name = migrations_module.__name__.split(".")[-2]
    for key, migrate in migrations_module.__dict__.items():
        match = matcher.match(key)
        if not match:
            continue
        version = int(match.group(1))
        if version > current_versions.get(db_name, 0):
            logger.debug(f"Migrating {db_name} db: {key}")
            await migrate(db)
            async with db.connect() as conn:
                await set_migration_version(conn, db_name, version)
