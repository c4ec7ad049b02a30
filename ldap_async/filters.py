"""
Helpers for building LDAP filter strings and taking DNs apart.

Escaping is done with ``python-ldap``'s own :py:mod:`ldap.filter` and
:py:mod:`ldap.dn` functions; filters are validated with ``ldap-filter``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TypeVar

import ldap
import ldap.dn
import ldap.filter
from ldap_filter import Filter  # type: ignore[reportUnknownVariableType]
from ldap_filter.parser import ParseError

T = TypeVar("T")

#: The most identity filters we put into one OR filter by default
BATCH_LIMIT: int = 100


def escape_filter(value: str | int, wildcards: bool = False) -> str:
    """
    Escape ``value`` for use as an assertion value in a filter.

    Keyword Args:
        wildcards: leave ``*`` alone so that it still acts as a wildcard

    """
    escaped = ldap.filter.escape_filter_chars(str(value))
    if wildcards:
        escaped = escaped.replace("\\2a", "*")
    return escaped


def escape_dn(value: str | int) -> str:
    """
    Escape ``value`` for use as an attribute value in a DN.
    """
    return ldap.dn.escape_dn_chars(str(value))


def _assertions(values: Mapping[str, str | int], wildcards: bool) -> str:
    return "".join(f"({k}={escape_filter(v, wildcards)})" for k, v in values.items())


def filter_in(values: Iterable[str | int], attr: str) -> str:
    """
    Return a filter matching entries whose ``attr`` is any of ``values``.

    Example:
        >>> filter_in(['Hubert', 'Philip'], 'givenName')
        '(|(givenName=Hubert)(givenName=Philip))'

    """
    return "(|" + "".join(f"({attr}={escape_filter(v)})" for v in values) + ")"


def filter_any(values: Mapping[str, str | int], wildcards: bool = False) -> str:
    """
    Return a filter matching entries where at least one ``attr=value`` pair in
    ``values`` holds.
    """
    return f"(|{_assertions(values, wildcards)})"


def filter_all(values: Mapping[str, str | int], wildcards: bool = False) -> str:
    """
    Return a filter matching entries where every ``attr=value`` pair in
    ``values`` holds.
    """
    return f"(&{_assertions(values, wildcards)})"


def filter_anyall(
    values: Sequence[Mapping[str, str | int]], wildcards: bool = False
) -> str:
    """
    Return a filter matching entries for which all the pairs of at least one
    of the mappings in ``values`` hold.
    """
    return "(|" + "".join(f"(&{_assertions(v, wildcards)})" for v in values) + ")"


def normalize_filter(filterstr: str | None) -> str:
    """
    Return ``filterstr`` wrapped in parentheses if it wasn't already, or the
    match-everything filter if it is empty.

    Raises:
        ldap.FILTER_ERROR: ``filterstr`` is not a valid filter

    """
    if not filterstr:
        return "(objectClass=*)"
    filterstr = filterstr.strip()
    if not filterstr.startswith("("):
        filterstr = f"({filterstr})"
    try:
        Filter.parse(filterstr)
    except ParseError as exc:
        raise ldap.FILTER_ERROR(  # type: ignore[attr-defined]
            {"desc": "Bad search filter", "info": filterstr}
        ) from exc
    return filterstr


def normalize_dn(dn: str) -> str:
    """
    Return a canonical, lower-cased form of ``dn`` suitable as a lookup key.
    """
    try:
        return ldap.dn.dn2str(ldap.dn.str2dn(dn)).lower()
    except ldap.DECODING_ERROR:  # type: ignore[attr-defined]
        return dn.strip().lower()


def split_dn(dn: str) -> tuple[str, str]:
    """
    Split ``dn`` into its parent DN and a filter that matches its RDN.  A
    multi-valued RDN (``cn=Amy Wong+sn=Kroker``) becomes an AND filter.

    Example:
        >>> split_dn('cn=Philip J. Fry,ou=people,dc=planetexpress,dc=com')
        ('ou=people,dc=planetexpress,dc=com', '(cn=Philip J. Fry)')

    Raises:
        ldap.INVALID_DN_SYNTAX: ``dn`` is not a well formed DN

    """
    try:
        rdns = ldap.dn.str2dn(dn)
    except ldap.DECODING_ERROR as exc:  # type: ignore[attr-defined]
        raise ldap.INVALID_DN_SYNTAX(  # type: ignore[attr-defined]
            {"desc": "Invalid DN syntax", "info": dn}
        ) from exc
    if not rdns:
        raise ldap.INVALID_DN_SYNTAX({"desc": "Invalid DN syntax", "info": dn})  # type: ignore[attr-defined]
    first, parent = rdns[0], rdns[1:]
    parts = [f"({attr}={escape_filter(value)})" for attr, value, _ in first]
    rdn_filter = parts[0] if len(parts) == 1 else "(&" + "".join(parts) + ")"
    return ldap.dn.dn2str(parent), rdn_filter


def batch(items: Sequence[T], limit: int = BATCH_LIMIT) -> list[list[T]]:
    """
    Split ``items`` into lists of at most ``limit`` items each.  An empty
    input gives one empty batch.
    """
    if not items:
        return [[]]
    return [list(items[i : i + limit]) for i in range(0, len(items), limit)]


def batch_on_base(dns: Iterable[str], limit: int = BATCH_LIMIT) -> dict[str, list[str]]:
    """
    Group ``dns`` by parent DN and turn each group into OR filters of at most
    ``limit`` RDN filters, suitable for one-level searches under that parent.

    Returns:
        A dict mapping each parent DN to its list of OR filter strings.

    """
    by_base: dict[str, list[str]] = {}
    for dn in dns:
        base, rdn_filter = split_dn(dn)
        by_base.setdefault(base, []).append(rdn_filter)
    return {
        base: [f"(|{''.join(chunk)})" for chunk in batch(filters, limit) if chunk]
        for base, filters in by_base.items()
    }
