from typing import Callable, List, Optional

from loguru import logger

from ..core.base import Proof, ProofState
from ..core.db import Connection, Database
from ..core.helpers import random_hex
from . import crud


class WalletStorage:
    """Proof storage of one wallet, identified by store, mint and unit."""

    def __init__(
        self,
        *,
        db: Database,
        store_id: str,
        mint_url: str,
        unit: str,
        clock: Callable[[], int],
    ):
        self.db = db
        self.store_id = store_id
        self.mint_url = mint_url
        self.unit = unit
        self.clock = clock

    async def store_proofs(
        self,
        proofs: List[Proof],
        quote_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> None:
        if quote_id:
            proofs = [p.model_copy(update={"quote_id": quote_id}) for p in proofs]
        await crud.store_proofs(
            proofs=proofs,
            store_id=self.store_id,
            mint_url=self.mint_url,
            unit=self.unit,
            timestamp=self.clock(),
            db=self.db,
            conn=conn,
        )

    async def get_proofs(
        self,
        state: Optional[ProofState] = None,
        conn: Optional[Connection] = None,
    ) -> List[Proof]:
        return await crud.get_proofs(
            db=self.db,
            store_id=self.store_id,
            mint_url=self.mint_url,
            unit=self.unit,
            state=state,
            conn=conn,
        )

    async def get_proofs_by_quote_id(
        self, quote_id: str, conn: Optional[Connection] = None
    ) -> List[Proof]:
        return await crud.get_proofs(
            db=self.db, store_id=self.store_id, quote_id=quote_id, conn=conn
        )

    async def get_balance(self, conn: Optional[Connection] = None) -> int:
        return await crud.get_balance(
            db=self.db,
            store_id=self.store_id,
            mint_url=self.mint_url,
            unit=self.unit,
            conn=conn,
        )

    async def update_proofs_state(
        self,
        secrets: List[str],
        state: ProofState,
        conn: Optional[Connection] = None,
    ) -> int:
        updated = await crud.update_proofs_state(
            secrets=secrets,
            state=state,
            timestamp=self.clock(),
            db=self.db,
            conn=conn,
        )
        logger.trace(f"Set {updated} proofs to {state}")
        return updated

    async def begin_operation(
        self,
        kind: str,
        proofs: List[Proof],
        ttl: int,
        quote_id: Optional[str] = None,
    ) -> str:
        operation_id = random_hex(16)
        now = self.clock()
        await crud.store_pending_operation(
            id=operation_id,
            store_id=self.store_id,
            mint_url=self.mint_url,
            unit=self.unit,
            kind=kind,
            quote_id=quote_id,
            secrets=[p.secret for p in proofs],
            created_at=now,
            expires_at=now + ttl,
            db=self.db,
        )
        return operation_id

    async def finish_operation(self, operation_id: str) -> None:
        await crud.delete_pending_operation(id=operation_id, db=self.db)

    async def clean_expired_pending_operations(self) -> int:
        return await crud.delete_expired_pending_operations(
            timestamp=self.clock(), db=self.db
        )
