"""
Resolve ranged attributes.

Active Directory will not return more than a fixed number of values (1500 by
default) of a multi-valued attribute like ``member`` in one response.  It
sends the first window instead, declared as ``member;range=0-1499``, and
the client must ask for ``member;range=1500-2999`` and so on until it gets a
window whose upper bound is ``*``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from .logging import logger

if TYPE_CHECKING:
    from .record import Record


class Loader(Protocol):
    async def load(self, dn: str, attributes: list[str] | None = None) -> Record | None: ...


async def full_range(loader: Loader, record: Record, attr: str) -> list[str]:
    """
    Return every value of ``attr`` on ``record``, in window order, fetching
    the windows after the first one through ``loader``.

    We stop when the server says the window is the last (``range=low-*``),
    when an attribute has no ``range`` option at all, or when a continuation
    comes back empty.

    Args:
        loader: what to fetch continuation windows with; normally the
            client's :py:class:`ldap_async.coalesce.LookupCoalescer`, so that
            continuations for many records at once share searches
        record: the record holding the first window
        attr: the attribute name, without options

    Returns:
        The values of all windows, concatenated.

    """
    attribute = record.attribute(attr)
    if attribute is None or not attribute.values:
        return []
    values = record.all(attr)
    other_options = [o for o in attribute.options if not o.lower().startswith("range=")]
    window = attribute.range
    while window is not None:
        low, high = window
        if high is None:
            break
        size = 1 + high - low
        if size <= 0:
            break
        requested = ";".join(
            [attribute.name, *other_options, f"range={high + 1}-{high + size}"]
        )
        logger.debug("ranged.load dn=%s attribute=%s", record.dn, requested)
        continuation = await loader.load(record.dn, [requested])
        if continuation is None:
            break
        next_attribute = continuation.attribute(attribute.name)
        if next_attribute is None or not next_attribute.values:
            break
        values.extend(continuation.all(attribute.name))
        window = next_attribute.range
    return values
