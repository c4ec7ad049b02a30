from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import ldap

from .exceptions import translate_ldap_error
from .filters import BATCH_LIMIT, batch, normalize_dn, split_dn
from .logging import logger as default_logger
from .stream import SearchRequest

if TYPE_CHECKING:
    from collections.abc import Callable

    from .record import Record
    from .stream import SearchStream

#: (normalized parent DN, requested attributes)
LookupKey = tuple[str, tuple[str, ...] | None]


@dataclass
class PendingLookup:
    """
    The lookups waiting to go out together as one batch: every DN asked for
    under one parent DN with the same attribute list.
    """

    #: The parent DN to do a one-level search under
    base: str
    #: The attributes every caller in this batch asked for
    attributes: list[str] | None
    #: The RDN filters, one per distinct DN, in the order they were asked for
    filters: dict[str, None] = field(default_factory=dict)
    #: Resolves to a map of normalized DN to :py:class:`Record`
    future: asyncio.Future[dict[str, Record]] | None = None


class LookupCoalescer:
    """
    Turn many single-entry lookups by DN into a few OR-filter searches.

    Lookups made within ``batch_delay`` seconds of each other (by default,
    within the same turn of the event loop) for entries with the same parent
    DN and attribute list share one one-level search per ``batch_limit``
    entries, instead of costing a search each.

    Args:
        open_stream: starts a :py:class:`ldap_async.stream.SearchStream` for
            a :py:class:`ldap_async.stream.SearchRequest`

    Keyword Args:
        batch_limit: the most RDN filters to OR together in one search
        batch_delay: seconds to wait for more lookups before searching
        logger: where to log

    """

    def __init__(
        self,
        open_stream: Callable[[SearchRequest], SearchStream],
        batch_limit: int = BATCH_LIMIT,
        batch_delay: float = 0.0,
        logger: Any = None,
    ) -> None:
        self.open_stream = open_stream
        self.batch_limit = batch_limit
        self.batch_delay = batch_delay
        self.logger: Any = logger if logger is not None else default_logger
        self.pending: dict[LookupKey, PendingLookup] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    async def load(self, dn: str, attributes: list[str] | None = None) -> Record | None:
        """
        Fetch the entry ``dn``, batched with any other lookups made at about
        the same time.

        Args:
            dn: the DN of the entry to fetch

        Keyword Args:
            attributes: the attributes to fetch; ``None`` means all

        Raises:
            LDAPProtocolError: ``dn`` is not a well formed DN
            LDAPAsyncError: the batch search failed; every caller in the
                batch gets the same error

        Returns:
            The :py:class:`Record`, or ``None`` if there is no such entry.

        """
        try:
            base, rdn_filter = split_dn(dn)
        except ldap.LDAPError as exc:  # type: ignore[attr-defined]
            raise translate_ldap_error(exc) from exc
        key: LookupKey = (
            normalize_dn(base),
            tuple(attributes) if attributes is not None else None,
        )
        pending = self.pending.get(key)
        if pending is None:
            loop = asyncio.get_running_loop()
            pending = PendingLookup(
                base=base,
                attributes=list(attributes) if attributes is not None else None,
                future=loop.create_future(),
            )
            self.pending[key] = pending
            loop.call_later(self.batch_delay, self._dispatch, key)
        pending.filters[rdn_filter] = None
        # One caller giving up must not cancel the batch for everyone else
        results = await asyncio.shield(pending.future)  # type: ignore[arg-type]
        return results.get(normalize_dn(dn))

    def _dispatch(self, key: LookupKey) -> None:
        pending = self.pending.pop(key, None)
        if pending is None:
            # close() got here first
            return
        task = asyncio.get_running_loop().create_task(self._run(pending))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _search(self, pending: PendingLookup, filters: list[str]) -> list[Record]:
        filterstr = filters[0] if len(filters) == 1 else f"(|{''.join(filters)})"
        request = SearchRequest(
            base=pending.base,
            scope="one",
            filter=filterstr,
            attributes=pending.attributes,
        )
        async with self.open_stream(request) as stream:
            return [record async for record in stream]

    async def _run(self, pending: PendingLookup) -> None:
        future = pending.future
        if future is None:
            msg = f"lookup batch for {pending.base} dispatched without a future"
            raise RuntimeError(msg)
        filters = list(pending.filters)
        self.logger.debug(
            "coalesce.dispatch base=%s lookups=%d", pending.base, len(filters)
        )
        try:
            batches = await asyncio.gather(
                *(self._search(pending, chunk) for chunk in batch(filters, self.batch_limit) if chunk)
            )
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:  # noqa: BLE001
            if not future.done():
                future.set_exception(exc)
            return
        results: dict[str, Record] = {}
        for records in batches:
            for record in records:
                results[normalize_dn(record.dn)] = record
        if not future.done():
            future.set_result(results)

    async def close(self) -> None:
        """
        Cancel any batches still in flight, and any lookups still waiting
        to be sent.
        """
        pending, self.pending = self.pending, {}
        for lookup in pending.values():
            if lookup.future is not None:
                lookup.future.cancel()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
