"""
The streaming search engine: turn a paged LDAP search into a lazy async
iterator of :py:class:`ldap_async.record.Record` objects.

A :py:class:`SearchStream` holds one pooled connection from its first
``__anext__`` until it ends, and gives it back exactly once however it ends:
exhausted, failed, or closed early by its consumer.  The next page is only
requested from the server when the consumer has taken every record of the
current one.
"""

from __future__ import annotations

import enum
import inspect
import traceback
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .exceptions import LDAPAsyncError, StreamCancelled

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable

    from .hooks import HookRegistry
    from .pool import ConnectionPool
    from .record import Record
    from .types import Controls, LDAPData, LDAPPage, Scope


class StreamState(enum.Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    PAGING = "paging"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass
class SearchRequest:
    """
    Everything needed to run one search.
    """

    #: The DN to search from
    base: str
    #: ``base``, ``one`` or ``sub``, or a ``python-ldap`` ``SCOPE_*`` constant
    scope: Scope = "base"
    #: The search filter
    filter: str = "(objectClass=*)"
    #: The attributes to return; ``None`` means all user attributes
    attributes: list[str] | None = None
    #: How many entries to ask the server for per page
    page_size: int = 200
    #: Extra server controls to send with each page request
    controls: Controls | None = None
    #: Stop after this many entries; 0 means no limit
    sizelimit: int = 0


class SearchStream:
    """
    A single-pass async iterator over the records a :py:class:`SearchRequest`
    matches.  Nothing is sent to the server until the first record is asked
    for.

    Use it with ``async for``, and preferably inside ``async with`` so that
    breaking out of the loop gives the connection back immediately:

    Example:
        >>> async with client.stream(base, scope='sub', filter='(objectClass=person)') as people:
        ...     async for person in people:
        ...         if person.get('uid') == 'fry':
        ...             break

    If you don't use ``async with``, the connection is given back when the
    stream is garbage collected, or when you call :py:meth:`aclose`.

    Args:
        pool: where to get our connection from
        request: what to search for
        record_factory: builds a :py:class:`Record` from a ``(dn, data)`` pair

    Keyword Args:
        hooks: the registry to run ``transform_record`` hooks from
        call_site: the stack where this stream was requested, attached to
            any error we raise; captured here if not given
        logger: where to log; defaults to the pool's logger

    """

    def __init__(
        self,
        pool: ConnectionPool,
        request: SearchRequest,
        record_factory: Callable[[str, LDAPData], Record],
        hooks: HookRegistry | None = None,
        call_site: traceback.StackSummary | None = None,
        logger: Any = None,
    ) -> None:
        self.pool = pool
        self.request = request
        self.record_factory = record_factory
        self.hooks = hooks
        self.call_site: traceback.StackSummary = (
            call_site if call_site is not None else traceback.extract_stack()[:-1]
        )
        self.logger: Any = logger if logger is not None else pool.logger
        self.state: StreamState = StreamState.IDLE
        #: How many pages we have asked the server for
        self.pages: int = 0
        self._gen: AsyncGenerator[Record, None] | None = None
        self._cancelled: bool = False
        self._running: bool = False

    def __repr__(self) -> str:
        return f"<SearchStream base={self.request.base!r} state={self.state.value}>"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def _transform(self, record: Record) -> Record:
        if self.hooks is None:
            return record
        for func in self.hooks.get("transform_record"):
            result = func(record)
            if inspect.isawaitable(result):
                result = await result
            if result is not None:
                record = result
        return record

    def _failure(self, exc: LDAPAsyncError) -> LDAPAsyncError:
        if self._cancelled:
            # Closed while this was in flight: there is nobody to tell
            cancelled = StreamCancelled(
                str(exc), result=exc.result, desc=exc.desc, info=exc.info
            )
            cancelled.__cause__ = exc
            return cancelled
        return exc.attach_call_site(self.call_site)

    async def _run(self) -> AsyncGenerator[Record, None]:
        request = self.request
        self.state = StreamState.ACQUIRING
        try:
            conn = await self.pool.acquire()
        except LDAPAsyncError as exc:
            self.state = StreamState.CLOSED
            raise self._failure(exc)
        except BaseException:
            self.state = StreamState.CLOSED
            raise
        checkout = conn.checkout
        pages: AsyncGenerator[LDAPPage, None] = conn.handle.search(  # type: ignore[assignment]
            request.base,
            request.scope,
            request.filter,
            request.attributes,
            page_size=request.page_size,
            controls=request.controls,
            sizelimit=request.sizelimit,
        )
        self.state = StreamState.PAGING
        self.logger.debug(
            "stream.start id=%s base=%s filter=%s", conn.id, request.base, request.filter
        )
        try:
            async for page in pages:
                self.pages += 1
                for dn, data in page:
                    yield await self._transform(self.record_factory(dn, data))
        except LDAPAsyncError as exc:
            raise self._failure(exc)
        finally:
            self.state = StreamState.DRAINING
            try:
                await pages.aclose()
            except LDAPAsyncError as exc:
                if not self._cancelled:
                    raise exc.attach_call_site(self.call_site)
                self.logger.debug("stream.cancel.ignored error=%s", exc)
            finally:
                self.pool.release(conn, checkout)
                self.state = StreamState.CLOSED
                self.logger.debug("stream.end id=%s pages=%d", conn.id, self.pages)

    def __aiter__(self) -> SearchStream:
        return self

    async def __anext__(self) -> Record:
        if self._cancelled or self.state is StreamState.CLOSED:
            raise StopAsyncIteration
        if self._gen is None:
            self._gen = self._run()
        self._running = True
        try:
            record = await self._gen.__anext__()
        except StreamCancelled as exc:
            self.logger.debug("stream.cancel.ignored error=%s", exc.__cause__)
            raise StopAsyncIteration from None
        finally:
            self._running = False
        if self._cancelled:
            # We were closed while fetching this record
            await self._gen.aclose()
            raise StopAsyncIteration
        return record

    async def aclose(self) -> None:
        """
        Stop the stream: no more records are returned, no more pages are
        requested, and the connection goes back to the pool.  Safe to call
        more than once, and on a stream that never started.
        """
        if self._cancelled:
            return
        self._cancelled = True
        if self._running:
            # __anext__ is in progress in another task; it will finish up
            return
        if self._gen is not None:
            await self._gen.aclose()
        self.state = StreamState.CLOSED

    async def destroy(self) -> None:
        await self.aclose()

    async def __aenter__(self) -> SearchStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def to_list(self) -> list[Record]:
        """
        Drain the stream into a list.
        """
        async with self:
            return [record async for record in self]
