import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.base import (
    Invoice,
    InvoiceStatus,
    Store,
    StoreMint,
    Webhook,
    WebhookDelivery,
)
from ..core.db import Connection, Database


def _status_clause(statuses: List[InvoiceStatus]) -> tuple:
    values = {f"status_{i}": s.value for i, s in enumerate(statuses)}
    return f"status IN ({', '.join(':' + k for k in values)})", values


class GatewayCrud(ABC):
    @abstractmethod
    async def get_config(
        self, *, key: str, db: Database, conn: Optional[Connection] = None
    ) -> Optional[str]:
        ...

    @abstractmethod
    async def set_config(
        self,
        *,
        key: str,
        value: str,
        timestamp: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> None:
        ...

    @abstractmethod
    async def store_store(
        self, *, store: Store, db: Database, conn: Optional[Connection] = None
    ) -> None:
        ...

    @abstractmethod
    async def update_store(
        self, *, store: Store, db: Database, conn: Optional[Connection] = None
    ) -> None:
        ...

    @abstractmethod
    async def get_store(
        self, *, store_id: str, db: Database, conn: Optional[Connection] = None
    ) -> Optional[Store]:
        ...

    @abstractmethod
    async def get_stores(
        self, *, db: Database, conn: Optional[Connection] = None
    ) -> List[Store]:
        ...

    @abstractmethod
    async def store_store_mint(
        self, *, store_mint: StoreMint, db: Database, conn: Optional[Connection] = None
    ) -> None:
        ...

    @abstractmethod
    async def update_store_mint(
        self, *, store_mint: StoreMint, db: Database, conn: Optional[Connection] = None
    ) -> None:
        ...

    @abstractmethod
    async def delete_store_mint(
        self,
        *,
        store_id: str,
        mint_id: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> None:
        ...

    @abstractmethod
    async def get_store_mints(
        self,
        *,
        store_id: str,
        db: Database,
        enabled_only: bool = False,
        conn: Optional[Connection] = None,
    ) -> List[StoreMint]:
        ...

    @abstractmethod
    async def store_invoice(
        self, *, invoice: Invoice, db: Database, conn: Optional[Connection] = None
    ) -> None:
        ...

    @abstractmethod
    async def get_invoice(
        self,
        *,
        db: Database,
        invoice_id: Optional[str] = None,
        quote_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[Invoice]:
        ...

    @abstractmethod
    async def get_invoices(
        self,
        *,
        store_id: str,
        db: Database,
        status: Optional[InvoiceStatus] = None,
        limit: int = 50,
        offset: int = 0,
        conn: Optional[Connection] = None,
    ) -> List[Invoice]:
        ...

    @abstractmethod
    async def get_invoices_to_poll(
        self,
        *,
        now: int,
        min_interval: int,
        limit: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> List[Invoice]:
        ...

    @abstractmethod
    async def get_processing_invoices(
        self,
        *,
        processing_before: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> List[Invoice]:
        ...

    @abstractmethod
    async def update_invoice_status(
        self,
        *,
        invoice_id: str,
        from_statuses: List[InvoiceStatus],
        status: InvoiceStatus,
        timestamp: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def update_invoice_polled(
        self,
        *,
        invoice_id: str,
        timestamp: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> None:
        ...

    @abstractmethod
    async def expire_invoices(
        self,
        *,
        expired_before: Optional[int] = None,
        created_before: Optional[int] = None,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> int:
        ...

    @abstractmethod
    async def delete_invoices(
        self,
        *,
        created_before: int,
        statuses: List[InvoiceStatus],
        db: Database,
        conn: Optional[Connection] = None,
    ) -> int:
        ...

    @abstractmethod
    async def store_webhook(
        self, *, webhook: Webhook, db: Database, conn: Optional[Connection] = None
    ) -> None:
        ...

    @abstractmethod
    async def get_webhooks(
        self,
        *,
        store_id: str,
        db: Database,
        enabled_only: bool = True,
        conn: Optional[Connection] = None,
    ) -> List[Webhook]:
        ...

    @abstractmethod
    async def get_webhook(
        self, *, webhook_id: str, db: Database, conn: Optional[Connection] = None
    ) -> Optional[Webhook]:
        ...

    @abstractmethod
    async def store_webhook_delivery(
        self,
        *,
        delivery: WebhookDelivery,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> None:
        ...

    @abstractmethod
    async def get_webhook_delivery(
        self, *, delivery_id: str, db: Database, conn: Optional[Connection] = None
    ) -> Optional[WebhookDelivery]:
        ...

    @abstractmethod
    async def get_webhook_deliveries(
        self,
        *,
        webhook_id: str,
        db: Database,
        limit: int = 50,
        conn: Optional[Connection] = None,
    ) -> List[WebhookDelivery]:
        ...

    @abstractmethod
    async def prune_webhook_deliveries(
        self, *, keep: int, db: Database, conn: Optional[Connection] = None
    ) -> int:
        ...


class GatewayCrudSqlite(GatewayCrud):
    async def get_config(
        self, *, key: str, db: Database, conn: Optional[Connection] = None
    ) -> Optional[str]:
        row = await (conn or db).fetchone(
            f"SELECT value FROM {db.table_with_schema('config')} WHERE key = :key",
            {"key": key},
        )
        return row["value"] if row else None

    async def set_config(
        self,
        *,
        key: str,
        value: str,
        timestamp: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> None:
        await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('config')} (key, value, created_at, updated_at)
            VALUES (:key, :value, :timestamp, :timestamp)
            ON CONFLICT (key) DO UPDATE SET value = :value, updated_at = :timestamp
            """,
            {"key": key, "value": value, "timestamp": timestamp},
        )

    def _store_values(self, store: Store) -> Dict[str, Any]:
        return {
            "id": store.id,
            "name": store.name,
            "mint_url": store.mint_url,
            "mint_unit": store.mint_unit,
            "seed_phrase": store.seed_phrase,
            "exchange_fee_percent": store.exchange_fee_percent,
            "auto_melt_enabled": store.auto_melt_enabled,
            "auto_melt_address": store.auto_melt_address,
            "auto_melt_threshold": store.auto_melt_threshold,
            "api_key": store.api_key,
            "created_at": store.created_at,
        }

    async def store_store(
        self, *, store: Store, db: Database, conn: Optional[Connection] = None
    ) -> None:
        await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('stores')}
            (id, name, mint_url, mint_unit, seed_phrase, exchange_fee_percent,
             auto_melt_enabled, auto_melt_address, auto_melt_threshold, api_key, created_at)
            VALUES (:id, :name, :mint_url, :mint_unit, :seed_phrase, :exchange_fee_percent,
             :auto_melt_enabled, :auto_melt_address, :auto_melt_threshold, :api_key, :created_at)
            """,
            self._store_values(store),
        )

    async def update_store(
        self, *, store: Store, db: Database, conn: Optional[Connection] = None
    ) -> None:
        await (conn or db).execute(
            f"""
            UPDATE {db.table_with_schema('stores')} SET
            name = :name, mint_url = :mint_url, mint_unit = :mint_unit,
            seed_phrase = :seed_phrase, exchange_fee_percent = :exchange_fee_percent,
            auto_melt_enabled = :auto_melt_enabled, auto_melt_address = :auto_melt_address,
            auto_melt_threshold = :auto_melt_threshold, api_key = :api_key
            WHERE id = :id
            """,
            {k: v for k, v in self._store_values(store).items() if k != "created_at"},
        )

    async def get_store(
        self, *, store_id: str, db: Database, conn: Optional[Connection] = None
    ) -> Optional[Store]:
        row = await (conn or db).fetchone(
            f"SELECT * FROM {db.table_with_schema('stores')} WHERE id = :id",
            {"id": store_id},
        )
        return Store.from_row(row) if row else None

    async def get_stores(
        self, *, db: Database, conn: Optional[Connection] = None
    ) -> List[Store]:
        rows = await (conn or db).fetchall(
            f"SELECT * FROM {db.table_with_schema('stores')} ORDER BY created_at"
        )
        return [Store.from_row(r) for r in rows]

    async def store_store_mint(
        self, *, store_mint: StoreMint, db: Database, conn: Optional[Connection] = None
    ) -> None:
        await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('store_mints')}
            (store_id, mint_url, unit, priority, enabled)
            VALUES (:store_id, :mint_url, :unit, :priority, :enabled)
            """,
            {
                "store_id": store_mint.store_id,
                "mint_url": store_mint.mint_url,
                "unit": store_mint.unit,
                "priority": store_mint.priority,
                "enabled": store_mint.enabled,
            },
        )

    async def update_store_mint(
        self, *, store_mint: StoreMint, db: Database, conn: Optional[Connection] = None
    ) -> None:
        await (conn or db).execute(
            f"""
            UPDATE {db.table_with_schema('store_mints')}
            SET unit = :unit, priority = :priority, enabled = :enabled
            WHERE id = :id AND store_id = :store_id
            """,
            {
                "id": store_mint.id,
                "store_id": store_mint.store_id,
                "unit": store_mint.unit,
                "priority": store_mint.priority,
                "enabled": store_mint.enabled,
            },
        )

    async def delete_store_mint(
        self,
        *,
        store_id: str,
        mint_id: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> None:
        await (conn or db).execute(
            f"""
            DELETE FROM {db.table_with_schema('store_mints')}
            WHERE id = :id AND store_id = :store_id
            """,
            {"id": mint_id, "store_id": store_id},
        )

    async def get_store_mints(
        self,
        *,
        store_id: str,
        db: Database,
        enabled_only: bool = False,
        conn: Optional[Connection] = None,
    ) -> List[StoreMint]:
        enabled = "AND enabled = :enabled" if enabled_only else ""
        rows = await (conn or db).fetchall(
            f"""
            SELECT * FROM {db.table_with_schema('store_mints')}
            WHERE store_id = :store_id {enabled}
            ORDER BY priority ASC, id ASC
            """,
            {"store_id": store_id, "enabled": True} if enabled_only else {"store_id": store_id},
        )
        return [StoreMint.from_row(r) for r in rows]

    async def store_invoice(
        self, *, invoice: Invoice, db: Database, conn: Optional[Connection] = None
    ) -> None:
        await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('invoices')}
            (id, store_id, status, additional_status, amount, currency, amount_sats, unit,
             exchange_rate, quote_id, mint_url, bolt11, metadata, checkout_config,
             created_at, expiration_time, processing_at, last_polled_at)
            VALUES (:id, :store_id, :status, :additional_status, :amount, :currency,
             :amount_sats, :unit, :exchange_rate, :quote_id, :mint_url, :bolt11, :metadata,
             :checkout_config, :created_at, :expiration_time, :processing_at, :last_polled_at)
            """,
            {
                "id": invoice.id,
                "store_id": invoice.store_id,
                "status": invoice.status.value,
                "additional_status": invoice.additional_status,
                "amount": invoice.amount,
                "currency": invoice.currency,
                "amount_sats": invoice.amount_sats,
                "unit": invoice.unit,
                "exchange_rate": invoice.exchange_rate,
                "quote_id": invoice.quote_id,
                "mint_url": invoice.mint_url,
                "bolt11": invoice.bolt11,
                "metadata": json.dumps(invoice.metadata),
                "checkout_config": json.dumps(invoice.checkout_config),
                "created_at": invoice.created_at,
                "expiration_time": invoice.expiration_time,
                "processing_at": invoice.processing_at,
                "last_polled_at": invoice.last_polled_at,
            },
        )

    async def get_invoice(
        self,
        *,
        db: Database,
        invoice_id: Optional[str] = None,
        quote_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> Optional[Invoice]:
        if invoice_id:
            where, values = "id = :id", {"id": invoice_id}
        elif quote_id:
            where, values = "quote_id = :quote_id", {"quote_id": quote_id}
        else:
            raise ValueError("No invoice_id or quote_id given")
        row = await (conn or db).fetchone(
            f"SELECT * FROM {db.table_with_schema('invoices')} WHERE {where}", values
        )
        return Invoice.from_row(row) if row else None

    async def get_invoices(
        self,
        *,
        store_id: str,
        db: Database,
        status: Optional[InvoiceStatus] = None,
        limit: int = 50,
        offset: int = 0,
        conn: Optional[Connection] = None,
    ) -> List[Invoice]:
        values: Dict[str, Any] = {"store_id": store_id, "limit": limit, "offset": offset}
        status_clause = ""
        if status:
            status_clause = "AND status = :status"
            values["status"] = status.value
        rows = await (conn or db).fetchall(
            f"""
            SELECT * FROM {db.table_with_schema('invoices')}
            WHERE store_id = :store_id {status_clause}
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
            """,
            values,
        )
        return [Invoice.from_row(r) for r in rows]

    async def get_invoices_to_poll(
        self,
        *,
        now: int,
        min_interval: int,
        limit: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> List[Invoice]:
        rows = await (conn or db).fetchall(
            f"""
            SELECT * FROM {db.table_with_schema('invoices')}
            WHERE status = :status
            AND quote_id IS NOT NULL
            AND expiration_time > :now
            AND (last_polled_at IS NULL OR last_polled_at < :polled_before)
            ORDER BY
                CASE WHEN last_polled_at IS NULL THEN 0 ELSE 1 END,
                last_polled_at ASC,
                created_at ASC
            LIMIT :limit
            """,
            {
                "status": InvoiceStatus.new.value,
                "now": now,
                "polled_before": now - min_interval,
                "limit": limit,
            },
        )
        return [Invoice.from_row(r) for r in rows]

    async def get_processing_invoices(
        self,
        *,
        processing_before: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> List[Invoice]:
        rows = await (conn or db).fetchall(
            f"""
            SELECT * FROM {db.table_with_schema('invoices')}
            WHERE status = :status
            AND COALESCE(processing_at, created_at) < :processing_before
            ORDER BY created_at ASC
            """,
            {
                "status": InvoiceStatus.processing.value,
                "processing_before": processing_before,
            },
        )
        return [Invoice.from_row(r) for r in rows]

    async def update_invoice_status(
        self,
        *,
        invoice_id: str,
        from_statuses: List[InvoiceStatus],
        status: InvoiceStatus,
        timestamp: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> bool:
        clause, values = _status_clause(from_statuses)
        result = await (conn or db).execute(
            f"""
            UPDATE {db.table_with_schema('invoices')}
            SET status = :status, processing_at = COALESCE(:processing_at, processing_at)
            WHERE id = :id AND {clause}
            """,
            {
                "id": invoice_id,
                "status": status.value,
                "processing_at": (
                    timestamp if status == InvoiceStatus.processing else None
                ),
                **values,
            },
        )
        return result.rowcount == 1

    async def update_invoice_polled(
        self,
        *,
        invoice_id: str,
        timestamp: int,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> None:
        await (conn or db).execute(
            f"""
            UPDATE {db.table_with_schema('invoices')}
            SET last_polled_at = :timestamp WHERE id = :id
            """,
            {"id": invoice_id, "timestamp": timestamp},
        )

    async def expire_invoices(
        self,
        *,
        expired_before: Optional[int] = None,
        created_before: Optional[int] = None,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> int:
        if expired_before is not None:
            where, values = "expiration_time < :before", {"before": expired_before}
        elif created_before is not None:
            where, values = "created_at < :before", {"before": created_before}
        else:
            raise ValueError("No expired_before or created_before given")
        result = await (conn or db).execute(
            f"""
            UPDATE {db.table_with_schema('invoices')}
            SET status = :expired
            WHERE status = :new AND {where}
            """,
            {
                "expired": InvoiceStatus.expired.value,
                "new": InvoiceStatus.new.value,
                **values,
            },
        )
        return result.rowcount

    async def delete_invoices(
        self,
        *,
        created_before: int,
        statuses: List[InvoiceStatus],
        db: Database,
        conn: Optional[Connection] = None,
    ) -> int:
        clause, values = _status_clause(statuses)
        result = await (conn or db).execute(
            f"""
            DELETE FROM {db.table_with_schema('invoices')}
            WHERE created_at < :created_before AND {clause}
            """,
            {"created_before": created_before, **values},
        )
        return result.rowcount

    async def store_webhook(
        self, *, webhook: Webhook, db: Database, conn: Optional[Connection] = None
    ) -> None:
        await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('webhooks')}
            (id, store_id, url, secret, events, enabled)
            VALUES (:id, :store_id, :url, :secret, :events, :enabled)
            """,
            {
                "id": webhook.id,
                "store_id": webhook.store_id,
                "url": webhook.url,
                "secret": webhook.secret,
                "events": json.dumps(webhook.events),
                "enabled": webhook.enabled,
            },
        )

    async def get_webhooks(
        self,
        *,
        store_id: str,
        db: Database,
        enabled_only: bool = True,
        conn: Optional[Connection] = None,
    ) -> List[Webhook]:
        enabled = "AND enabled = :enabled" if enabled_only else ""
        rows = await (conn or db).fetchall(
            f"""
            SELECT * FROM {db.table_with_schema('webhooks')}
            WHERE store_id = :store_id {enabled}
            """,
            {"store_id": store_id, "enabled": True} if enabled_only else {"store_id": store_id},
        )
        return [Webhook.from_row(r) for r in rows]

    async def get_webhook(
        self, *, webhook_id: str, db: Database, conn: Optional[Connection] = None
    ) -> Optional[Webhook]:
        row = await (conn or db).fetchone(
            f"SELECT * FROM {db.table_with_schema('webhooks')} WHERE id = :id",
            {"id": webhook_id},
        )
        return Webhook.from_row(row) if row else None

    async def store_webhook_delivery(
        self,
        *,
        delivery: WebhookDelivery,
        db: Database,
        conn: Optional[Connection] = None,
    ) -> None:
        await (conn or db).execute(
            f"""
            INSERT INTO {db.table_with_schema('webhook_deliveries')}
            (id, webhook_id, invoice_id, event_type, payload, status_code, response, created_at)
            VALUES (:id, :webhook_id, :invoice_id, :event_type, :payload, :status_code,
             :response, :created_at)
            """,
            delivery.model_dump(),
        )

    async def get_webhook_delivery(
        self, *, delivery_id: str, db: Database, conn: Optional[Connection] = None
    ) -> Optional[WebhookDelivery]:
        row = await (conn or db).fetchone(
            f"SELECT * FROM {db.table_with_schema('webhook_deliveries')} WHERE id = :id",
            {"id": delivery_id},
        )
        return WebhookDelivery.from_row(row) if row else None

    async def get_webhook_deliveries(
        self,
        *,
        webhook_id: str,
        db: Database,
        limit: int = 50,
        conn: Optional[Connection] = None,
    ) -> List[WebhookDelivery]:
        rows = await (conn or db).fetchall(
            f"""
            SELECT * FROM {db.table_with_schema('webhook_deliveries')}
            WHERE webhook_id = :webhook_id
            ORDER BY created_at DESC
            LIMIT :limit
            """,
            {"webhook_id": webhook_id, "limit": limit},
        )
        return [WebhookDelivery.from_row(r) for r in rows]

    async def prune_webhook_deliveries(
        self, *, keep: int, db: Database, conn: Optional[Connection] = None
    ) -> int:
        table = db.table_with_schema("webhook_deliveries")
        result = await (conn or db).execute(
            f"""
            DELETE FROM {table}
            WHERE id NOT IN (
                SELECT id FROM {table} ORDER BY created_at DESC LIMIT :keep
            )
            """,
            {"keep": keep},
        )
        return result.rowcount
