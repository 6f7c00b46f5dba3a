from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from loguru import logger

from ..core.base import Store
from ..core.errors import AllMintsUnreachableError

T = TypeVar("T")


def get_store_mint_urls(store: Store) -> List[str]:
    """Mints of a store in the order they are tried.

    The primary mint comes first, then enabled backups with the same unit by
    ascending priority. Duplicates of the primary are skipped.
    """
    urls: List[str] = []
    seen = set()
    if store.mint_url:
        urls.append(store.mint_url)
        seen.add(store.mint_url.rstrip("/"))
    backups = sorted(
        (m for m in store.backup_mints if m.enabled and m.unit == store.mint_unit),
        key=lambda m: m.priority,
    )
    for backup in backups:
        normalized = backup.mint_url.rstrip("/")
        if normalized in seen:
            continue
        seen.add(normalized)
        urls.append(backup.mint_url)
    return urls


async def try_in_order(
    mint_urls: List[str], operation: Callable[[str], Awaitable[T]]
) -> Tuple[str, T]:
    """Runs `operation` against each mint until one succeeds.

    Returns the mint that answered together with its result. Raises
    `AllMintsUnreachableError` carrying the last failure when all of them fail.
    """
    last_error: Optional[Exception] = None
    for mint_url in mint_urls:
        try:
            return mint_url, await operation(mint_url)
        except Exception as e:
            logger.warning(f"Mint {mint_url} failed: {e}")
            last_error = e
    raise AllMintsUnreachableError(last_error)
