"""
Batch job helpers: bounded account paging and per-tenant timeouts
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Callable, Iterator, List, Optional, TypeVar
from sqlalchemy.orm import Query

from ..db.models.billing_account import BillingAccount
from ..exceptions import TenantTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


def iter_account_id_pages(query: Query, page_size: int, max_pages: Optional[int] = None) -> Iterator[List[int]]:
    """
    Yield pages of billing account ids in id order (keyset pagination)
    
    ``query`` must select BillingAccount rows; each page holds at most
    ``page_size`` ids and at most ``max_pages`` pages are produced.
    """
    last_id = 0
    pages = 0
    while max_pages is None or pages < max_pages:
        ids = [
            row.id for row in query.filter(BillingAccount.id > last_id)
            .order_by(BillingAccount.id.asc())
            .limit(page_size)
            .all()
        ]
        if not ids:
            return
        pages += 1
        last_id = ids[-1]
        yield ids
        if len(ids) < page_size:
            return


def run_with_timeout(func: Callable[..., T], timeout_seconds: float, *args, **kwargs) -> T:
    """
    Run one tenant's operation with a time budget
    
    A timeout <= 0 runs inline. On timeout the worker thread is abandoned (it
    cannot be interrupted) and TenantTimeout is raised so the batch can move
    on; the tenant's work stays idempotent if the thread later completes.
    """
    if not timeout_seconds or timeout_seconds <= 0:
        return func(*args, **kwargs)
    
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="billing-tenant")
    try:
        future = executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise TenantTimeout(f"Tenant operation exceeded {timeout_seconds}s")
    finally:
        executor.shutdown(wait=False)
