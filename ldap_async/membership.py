"""
Recursive group membership: stream every non-group member of a group and of
all the groups nested inside it, each exactly once, even when groups contain
each other.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from .filters import batch_on_base, normalize_dn
from .stream import SearchRequest

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .client import LDAPClient
    from .record import Record

#: Most members we buffer ahead of the consumer
QUEUE_SIZE: int = 100


class _Done:
    pass


class _Failed:
    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


class MemberStream:
    """
    An async iterator over the non-group members of a group, recursively.
    Members are found by a background producer and handed over through a
    bounded queue, so the producer stops fetching while the consumer is
    :py:data:`QUEUE_SIZE` members behind.

    An entry is a group if it has a ``member`` attribute.  Groups are not
    returned themselves; their members are.  Use ``async with`` (or call
    :py:meth:`aclose`) to stop early: that cancels the producer, and any
    searches it has open give their connections back.  Breaking out of a
    bare ``async for`` does the same once the loop's iterator is garbage
    collected.

    Args:
        client: the client to search with
        group_dn: the DN of the group to expand

    Keyword Args:
        attributes: the attributes to fetch for each member; ``member`` is
            always fetched too so that groups can be recognized

    """

    def __init__(
        self,
        client: LDAPClient,
        group_dn: str,
        attributes: list[str] | None = None,
        queue_size: int = QUEUE_SIZE,
    ) -> None:
        self.client = client
        self.group_dn = group_dn
        if attributes is not None and not any(a.lower() == "member" for a in attributes):
            attributes = [*attributes, "member"]
        self.attributes = attributes
        self.logger: Any = client.logger
        self.queue: asyncio.Queue[Record | _Done | _Failed] = asyncio.Queue(maxsize=queue_size)
        #: Normalized DNs of the groups we have expanded or queued for expansion
        self.visited: set[str] = {normalize_dn(group_dn)}
        #: Normalized DNs of the members we have already sent
        self.emitted: set[str] = set()
        self._producer: asyncio.Task[None] | None = None
        self._finished: bool = False

    def __repr__(self) -> str:
        return f"<MemberStream group={self.group_dn!r}>"

    async def _expand(self, group: Record) -> None:
        members = await self.client.full_range(group, "member")
        subgroups: list[Record] = []
        for base, filters in batch_on_base(members, self.client.config.batch_limit).items():
            for filterstr in filters:
                request = SearchRequest(
                    base=base,
                    scope="one",
                    filter=filterstr,
                    attributes=self.attributes,
                    page_size=self.client.config.page_size,
                )
                async with self.client.open_stream(request) as stream:
                    async for record in stream:
                        if record.get("member") is not None:
                            subgroups.append(record)
                            continue
                        key = normalize_dn(record.dn)
                        if key in self.emitted:
                            continue
                        self.emitted.add(key)
                        await self.queue.put(record)
        for subgroup in subgroups:
            key = normalize_dn(subgroup.dn)
            if key in self.visited:
                continue
            self.visited.add(key)
            self.logger.debug("membership.recurse group=%s", subgroup.dn)
            await self._expand(subgroup)

    async def _produce(self) -> None:
        try:
            group = await self.client.get(self.group_dn, attributes=["member"])
            if group is not None:
                await self._expand(group)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            await self.queue.put(_Failed(exc))
            return
        await self.queue.put(_Done())

    def __aiter__(self) -> AsyncIterator[Record]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Record]:
        # Finalizing this generator closes the stream
        try:
            while True:
                try:
                    record = await self.__anext__()
                except StopAsyncIteration:
                    return
                yield record
        finally:
            await self.aclose()

    async def __anext__(self) -> Record:
        if self._finished:
            raise StopAsyncIteration
        if self._producer is None:
            self._producer = asyncio.get_running_loop().create_task(self._produce())
        item = await self.queue.get()
        if isinstance(item, _Done):
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failed):
            self._finished = True
            raise item.exc
        return item

    async def aclose(self) -> None:
        """
        Stop expanding the group and give back any connections in use.
        """
        self._finished = True
        producer, self._producer = self._producer, None
        if producer is not None and not producer.done():
            producer.cancel()
            try:
                await producer
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> MemberStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def to_list(self) -> list[Record]:
        async with self:
            return [member async for member in self]
