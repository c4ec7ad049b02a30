"""
An in-memory LDAP directory that implements the
:py:class:`ldap_async.transport.Transport` capability set.

Use this to test code built on :py:class:`ldap_async.LDAPClient` without a
real LDAP server.  Besides searching, it can simulate the server behaviors the
client has to cope with: real cookie-based paging, Active Directory style
ranged retrieval of large multi-valued attributes, undefined attribute types,
outages, silently dropped connections and network latency.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import re
from collections.abc import AsyncIterator, Callable
from copy import deepcopy
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING, Any

import ldap
import ldap.dn
from case_insensitive_dict import CaseInsensitiveDict
from ldap_filter import Filter  # type: ignore[reportUnknownVariableType]
from ldap_filter.parser import ParseError

from .exceptions import translate_ldap_error
from .logging import logger
from .transport import Transport, TransportConnection, scope_value
from .types import (
    AddModList,
    CILDAPData,
    LDAPData,
    LDAPObjectStore,
    LDAPPage,
    LDAPRecord,
    LDAPSearchResult,
    ModList,
    RawLDAPObjectStore,
)

if TYPE_CHECKING:
    from .config import LDAPConfig
    from .types import Controls, Scope


_RANGE_RE: re.Pattern[str] = re.compile(r"^range=(\d+)-(\d+|\*)$", re.IGNORECASE)


@dataclass
class LDAPCallRecord:
    """
    A single call record, used by :py:class:`CallHistory` to store
    information about operations run against a :py:class:`MemoryConnection`.

    Example:
        Fetching the second page of a paged search is recorded as::

            LDAPCallRecord(
                api_name='search_ext',
                args={
                    'base': 'ou=people,dc=planetexpress,dc=com',
                    'scope': 2,
                    'filterstr': '(objectClass=person)',
                    'attrlist': None,
                    'page_size': 2,
                    'cookie': b'1',
                }
            )

    """

    api_name: str  #: the name of the operation
    args: dict[str, Any]  #: the args and kwargs dict


class CallHistory:
    """
    Records the operations run against a :py:class:`MemoryConnection` as
    :py:class:`LDAPCallRecord` objects.  It works in conjunction with the
    ``@record_call`` decorator.

    We use this in our tests to check how many searches and pages a client
    operation cost, and in which order things happened.
    """

    def __init__(self, calls: list[LDAPCallRecord] | None = None):
        self._calls: list[LDAPCallRecord] = []
        if calls:
            self._calls = calls

    def register(self, api_name: str, arguments: dict[str, Any]) -> None:
        """
        Register a new call record.

        :meta private:

        """
        self._calls.append(LDAPCallRecord(api_name, arguments))

    def filter_calls(self, api_name: str) -> list[LDAPCallRecord]:
        """
        Filter our call history by operation name.

        Args:
            api_name: look through our history for calls to this operation

        Returns:
            A list of :py:class:`LDAPCallRecord` in the order in which the
            calls were made.

        """
        return [call for call in self._calls if call.api_name == api_name]

    @property
    def calls(self) -> list[LDAPCallRecord]:
        return self._calls

    @property
    def names(self) -> list[str]:
        """
        Returns the names of the operations called, in the order they were
        called.
        """
        return [call.api_name for call in self._calls]

    @property
    def searches(self) -> list[LDAPCallRecord]:
        """
        The ``search_ext`` calls that started a new search, as opposed to
        those that fetched a later page of one.
        """
        return [call for call in self.filter_calls("search_ext") if not call.args["cookie"]]


def record_call(func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Save a record of the call to ``func`` so that our tests can inspect it later.
    """

    @wraps(func)
    def inner(*args, **kwargs) -> Any:
        sig = inspect.signature(func)
        args_dict = dict(sig.bind(*args, **kwargs).arguments)
        args_dict["self"].calls.register(func.__name__, args_dict)
        del args_dict["self"]
        logger.debug("record_call api=%s, arguments=%s", func.__name__, args_dict)
        return func(*args, **kwargs)

    return inner


class ObjectStore:
    """
    Our simulated LDAP directory: the objects, the attribute types we know
    about, and the server-side state of any paged searches in progress.

    Keyword Args:
        max_value_range: if set, return at most this many values of any
            multi-valued attribute in one response, declaring the attribute
            with a ``range=low-high`` option the way Active Directory does
            (AD's own limit is 1500)
        schema: if set, the attribute type names the directory knows about;
            requesting or writing any other attribute raises
            ``ldap.UNDEFINED_TYPE``

    """

    _DEFAULT_SEARCH_RE: re.Pattern[str] = re.compile(
        r"^\(objectclass=\*\)$", re.IGNORECASE
    )

    def __init__(
        self,
        max_value_range: int | None = None,
        schema: set[str] | None = None,
    ) -> None:
        # raw_objects preserves the object attribute case as it was given to us,
        # and retains the values as list[bytes]
        self.raw_objects: RawLDAPObjectStore = RawLDAPObjectStore()
        # objects has the same data with case-insensitive attribute names and
        # values converted to list[str], which is what Filter.match() needs
        self.objects: LDAPObjectStore = LDAPObjectStore()
        self.max_value_range: int | None = max_value_range
        self.schema: set[str] | None = (
            {name.lower() for name in schema} if schema is not None else None
        )
        #: Results of paged searches in progress, by cookie
        self.cursors: dict[bytes, LDAPSearchResult] = {}
        self._cookies = itertools.count(1)

    def convert_LDAPData(self, data: LDAPData) -> CILDAPData:  # noqa: N802
        """
        Convert an incoming ``LDAPData`` dict (``dict[str, list[bytes]]``)
        to a ``CILDAPData`` dict (``CaseInsensitiveDict[str, list[str]]``).
        """
        d: dict[str, Any] = {
            key: [v.decode("utf8", errors="replace") for v in value]
            for key, value in data.items()
        }
        return CILDAPData(d)

    ## Object store construction

    def load_objects(self, filename: str | Path) -> None:
        """
        Load a list of LDAP records stored as JSON from a file.  Each record
        is a 2-element list of ``[dn, {attr: [str, ...]}]``; values are
        encoded to ``bytes`` before they are stored.

        Args:
            filename: the path to the JSON file to load

        Raises:
            ldap.ALREADY_EXISTS: there is already an object in our object store
                with this dn
            ldap.INVALID_DN_SYNTAX: one of the object DNs is not well formed

        """
        with Path(filename).open(encoding="utf-8") as fd:
            objects = json.load(fd)
        for obj in objects:
            dn, data = obj
            new_data: LDAPData = {
                attr: [entry.encode("utf-8") for entry in value]
                for attr, value in data.items()
            }
            self.register_object((dn, new_data))

    def register_objects(self, objs: list[LDAPRecord]) -> None:
        """
        Load a list of LDAP records, in exactly the format ``python-ldap``
        returns them, into the directory.
        """
        for obj in objs:
            self.register_object(obj)

    def register_object(self, obj: LDAPRecord) -> None:
        """
        Add one LDAP record to the directory.

        Raises:
            ldap.ALREADY_EXISTS: there is already an object with this dn
            ldap.INVALID_DN_SYNTAX: the DN is not well formed
            TypeError: the data was not of type ``dict[str, list[bytes]]``

        """
        if self.exists(obj[0]):
            raise ldap.ALREADY_EXISTS({"desc": "Already exists", "info": obj[0]})  # type: ignore[attr-defined]
        self.set(obj[0], obj[1])

    # Helpers

    def __validate_dn(self, dn: str) -> None:
        if not ldap.dn.is_dn(dn):  # type: ignore[attr-defined]
            raise ldap.INVALID_DN_SYNTAX(  # type: ignore[attr-defined]
                {
                    "result": 34,
                    "desc": "Invalid DN syntax",
                    "info": "DN value invalid per syntax",
                }
            )

    def __check_bytes(self, value: Any) -> None:
        if not isinstance(value, list):
            msg = f"values must be of type list[bytes]: '{value!r}'"
            raise TypeError(msg)
        for v in value:
            if not isinstance(v, bytes):
                msg = f"values must be of type list[bytes]: '{v!r}'"
                raise TypeError(msg)

    def __check_schema(self, attrs: list[str]) -> None:
        if self.schema is None:
            return
        for attr in attrs:
            name = attr.split(";", 1)[0]
            if name in ("*", "+", "1.1") or name.lower() in self.schema:
                continue
            raise ldap.UNDEFINED_TYPE(  # type: ignore[attr-defined]
                {
                    "result": 17,
                    "desc": "Undefined attribute type",
                    "info": f"{name}: attribute type undefined",
                }
            )

    def __parse_filterstr(self, filterstr: str) -> Any:
        try:
            return Filter.parse(filterstr)
        except ParseError as exc:
            raise ldap.FILTER_ERROR(  # type: ignore[attr-defined]
                {"result": -7, "desc": "Bad search filter", "info": filterstr}
            ) from exc

    def __window(
        self, name: str, values: list[bytes], low: int = 0, high: int | None = None
    ) -> tuple[str, list[bytes]]:
        """
        Return the attribute name and values to send for a (possibly ranged)
        request for ``values``, limited by :py:attr:`max_value_range`.
        """
        end = len(values) if high is None else min(high + 1, len(values))
        if self.max_value_range is not None:
            end = min(end, low + self.max_value_range)
        window = values[low:end]
        if low == 0 and end >= len(values) and high is None:
            if self.max_value_range is None or len(values) <= self.max_value_range:
                return name, list(window)
        if end >= len(values):
            return f"{name};range={low}-*", list(window)
        return f"{name};range={low}-{end - 1}", list(window)

    def __filter_attributes(
        self, obj: LDAPData, attrlist: list[str] | None = None
    ) -> LDAPData:
        """
        Return just the attributes on ``obj`` named in ``attrlist``, which
        may include ``range=low-high`` options on multi-valued attributes.
        If ``attrlist`` is empty or contains ``*``, return every attribute.

        Note:
            We return a :py:func:`copy.deepcopy` of the values, so that callers
            can't update the objects in us unintentionally.

        """
        attrlist = list(attrlist) if attrlist else ["*"]
        if attrlist == ["1.1"]:
            return {}
        requested: dict[str, tuple[int, int | None] | None] = {}
        everything = "*" in attrlist
        for attr in attrlist:
            if attr in ("*", "+", "1.1"):
                continue
            name, *options = attr.split(";")
            window = None
            for option in options:
                match = _RANGE_RE.match(option)
                if match:
                    low, high = match.groups()
                    window = (int(low), None if high == "*" else int(high))
            requested[name.lower()] = window
        result: LDAPData = {}
        for name, values in obj.items():
            if name.lower() in requested:
                window = requested[name.lower()]
                low, high = window if window is not None else (0, None)
            elif everything:
                low, high = 0, None
            else:
                continue
            key, values = self.__window(name, values, low, high)
            result[key] = deepcopy(values)
        return result

    def _matches(self, filt: Any, dn: str) -> bool:
        return filt is None or bool(filt.match(self.objects[dn]))

    # Main methods

    @property
    def count(self) -> int:
        return len(self.objects)

    def exists(self, dn: str, validate: bool = True) -> bool:
        if validate:
            self.__validate_dn(dn)
        return dn in self.objects

    def get(self, dn: str) -> LDAPData:
        """
        Return all data for an object from our object store.

        Raises:
            ldap.NO_SUCH_OBJECT: no object with dn of ``dn`` exists in our
                object store

        """
        self.__validate_dn(dn)
        try:
            return self.raw_objects[dn]
        except KeyError as exc:
            raise ldap.NO_SUCH_OBJECT(  # type: ignore[attr-defined]
                {"result": 32, "desc": "No such object", "info": dn}
            ) from exc

    def set(self, dn: str, data: LDAPData) -> None:
        """
        Add or update data for the object with dn ``dn``.

        Raises:
            ldap.INVALID_DN_SYNTAX: the DN is not well formed
            TypeError: the data was not of type ``dict[str, list[bytes]]``

        """
        self.__validate_dn(dn)
        for attr, value in data.items():
            if not isinstance(attr, str):
                msg = f"attributes must be of type str: '{attr!r}'"
                raise TypeError(msg)
            self.__check_bytes(value)
        self.raw_objects[dn] = data
        self.objects[dn] = self.convert_LDAPData(data)

    def update(self, dn: str, modlist: ModList) -> None:  # noqa: PLR0912
        """
        Modify the object with dn of ``dn`` using the ``modify_s`` style
        modlist ``modlist``.  The change is all-or-nothing.

        Raises:
            ldap.NO_SUCH_OBJECT: no object with dn of ``dn`` exists
            ldap.TYPE_OR_VALUE_EXISTS: an added value is already present
            ldap.NO_SUCH_ATTRIBUTE: a deleted value is not present
            ldap.UNDEFINED_TYPE: strict schema is on and an attribute is unknown

        """

        def lowered(values: list[bytes]) -> set[bytes]:
            return {v.lower() for v in values}

        self.__check_schema([item[1] for item in modlist])
        # Work on a copy so a failure partway through leaves us untouched
        obj: CaseInsensitiveDict[str, list[bytes]] = CaseInsensitiveDict(
            deepcopy(self.get(dn))
        )
        for op, key, value in modlist:
            if op == ldap.MOD_ADD:  # type: ignore[attr-defined]
                self.__check_bytes(value)
                current = obj.get(key, [])
                if lowered(current) & lowered(value):  # type: ignore[arg-type]
                    raise ldap.TYPE_OR_VALUE_EXISTS(  # type: ignore[attr-defined]
                        {"result": 20, "desc": "Type or value exists", "info": key}
                    )
                obj[key] = [*current, *value]  # type: ignore[misc]
            elif op == ldap.MOD_DELETE:  # type: ignore[attr-defined]
                if key not in obj:
                    raise ldap.NO_SUCH_ATTRIBUTE(  # type: ignore[attr-defined]
                        {"result": 16, "desc": "No such attribute", "info": key}
                    )
                if not value:
                    del obj[key]
                    continue
                self.__check_bytes(value)
                missing = lowered(value) - lowered(obj[key])
                if missing:
                    raise ldap.NO_SUCH_ATTRIBUTE(  # type: ignore[attr-defined]
                        {"result": 16, "desc": "No such attribute", "info": key}
                    )
                obj[key] = [v for v in obj[key] if v.lower() not in lowered(value)]
                if not obj[key]:
                    del obj[key]
            elif op == ldap.MOD_REPLACE:  # type: ignore[attr-defined]
                if not value:
                    if key in obj:
                        del obj[key]
                    continue
                self.__check_bytes(value)
                obj[key] = value
            else:
                raise ldap.PROTOCOL_ERROR(  # type: ignore[attr-defined]
                    {
                        "result": 2,
                        "desc": "Protocol error",
                        "info": "unrecognized modify operation",
                    }
                )
        self.set(dn, dict(obj.items()))

    def create(self, dn: str, modlist: AddModList) -> None:
        """
        Create an object in our store with dn of ``dn`` from the ``add_s``
        style modlist ``modlist``.

        Raises:
            ldap.ALREADY_EXISTS: an object with dn of ``dn`` already exists
            ldap.UNDEFINED_TYPE: strict schema is on and an attribute is unknown

        """
        if self.exists(dn):
            raise ldap.ALREADY_EXISTS({"result": 68, "desc": "Already exists", "info": dn})  # type: ignore[attr-defined]
        self.__check_schema([attr for attr, _ in modlist])
        entry: LDAPData = {}
        for attr, value in modlist:
            self.__check_bytes(value)
            entry[attr] = value
        self.set(dn, entry)

    def delete(self, dn: str) -> None:
        """
        Delete an object from our directory.

        Raises:
            ldap.NO_SUCH_OBJECT: no object with dn of ``dn`` exists

        """
        if not self.exists(dn):
            raise ldap.NO_SUCH_OBJECT(  # type: ignore[attr-defined]
                {"result": 32, "desc": "No such object", "info": dn}
            )
        del self.objects[dn]
        del self.raw_objects[dn]

    def rename(
        self, dn: str, newrdn: str, newsuperior: str | None = None, delold: int = 1
    ) -> str:
        """
        Give the object ``dn`` the RDN ``newrdn``, optionally moving it under
        ``newsuperior``.

        Returns:
            The new DN.

        """
        entry = deepcopy(self.get(dn))
        old_rdn, *parent = ldap.dn.str2dn(dn)
        base = newsuperior if newsuperior is not None else ldap.dn.dn2str(parent)
        newdn = f"{newrdn},{base}" if base else newrdn
        if self.exists(newdn) and newdn.lower() != dn.lower():
            raise ldap.ALREADY_EXISTS({"result": 68, "desc": "Already exists", "info": newdn})  # type: ignore[attr-defined]
        if delold:
            for attr, value, _ in old_rdn:
                if attr in entry:
                    entry[attr] = [v for v in entry[attr] if v.decode("utf-8") != value]
        for attr, value, _ in ldap.dn.str2dn(newrdn)[0]:
            current = entry.get(attr, [])
            if value.encode("utf-8") not in current:
                entry[attr] = [*current, value.encode("utf-8")]
        self.delete(dn)
        self.set(newdn, {k: v for k, v in entry.items() if v})
        return newdn

    def search(
        self,
        base: str,
        scope: int,
        filterstr: str = "(objectClass=*)",
        attrlist: list[str] | None = None,
    ) -> LDAPSearchResult:
        """
        Return the objects in ``scope`` of ``base`` that match ``filterstr``,
        with just the attributes in ``attrlist``.

        Raises:
            ldap.INVALID_DN_SYNTAX: ``base`` was not a well-formed DN
            ldap.FILTER_ERROR: ``filterstr`` has bad filter syntax
            ldap.NO_SUCH_OBJECT: ``scope`` is ``SCOPE_BASE`` and ``base``
                does not exist
            ldap.UNDEFINED_TYPE: strict schema is on and ``attrlist`` names
                an unknown attribute

        """
        if base:
            self.__validate_dn(base)
        self.__check_schema(list(attrlist or []))
        filt = None
        if not self._DEFAULT_SEARCH_RE.search(filterstr):
            filt = self.__parse_filterstr(filterstr)
        if scope == ldap.SCOPE_BASE:  # type: ignore[attr-defined]
            self.get(base)
            candidates = [dn for dn in self.objects if dn.lower() == base.lower()]
        else:
            basedn_parts = (
                ldap.dn.explode_dn(base.lower(), flags=ldap.DN_FORMAT_LDAPV3)  # type: ignore[attr-defined]
                if base
                else []
            )
            candidates = []
            for dn in self.objects:
                dn_parts = ldap.dn.explode_dn(dn.lower(), flags=ldap.DN_FORMAT_LDAPV3)  # type: ignore[attr-defined]
                if scope == ldap.SCOPE_ONELEVEL:  # type: ignore[attr-defined]
                    if dn_parts[1:] != basedn_parts:
                        continue
                elif basedn_parts and dn_parts[-len(basedn_parts) :] != basedn_parts:
                    continue
                candidates.append(dn)
        return [
            (dn, self.__filter_attributes(self.raw_objects[dn], attrlist))
            for dn in candidates
            if self._matches(filt, dn)
        ]

    def page(
        self,
        base: str,
        scope: int,
        filterstr: str,
        attrlist: list[str] | None,
        page_size: int,
        cookie: bytes,
        sizelimit: int = 0,
    ) -> tuple[LDAPPage, bytes]:
        """
        Answer one request of a paged search: with an empty ``cookie`` run the
        search, otherwise continue the one ``cookie`` refers to.

        Returns:
            The page of results and the cookie for the next page, which is
            empty when this was the last page.

        Raises:
            ldap.UNWILLING_TO_PERFORM: ``cookie`` does not refer to a paged
                search in progress

        """
        if cookie:
            try:
                results = self.cursors.pop(cookie)
            except KeyError as exc:
                raise ldap.UNWILLING_TO_PERFORM(  # type: ignore[attr-defined]
                    {"result": 53, "desc": "Server is unwilling to perform", "info": "bad cookie"}
                ) from exc
        else:
            results = self.search(base, scope, filterstr, attrlist)
            if sizelimit > 0 and len(results) > sizelimit:
                results = results[:sizelimit]
        page_size = page_size if page_size > 0 else len(results) or 1
        page, rest = results[:page_size], results[page_size:]
        if not rest:
            return page, b""
        next_cookie = b"%d" % next(self._cookies)
        self.cursors[next_cookie] = rest
        return page, next_cookie


class MemoryConnection(TransportConnection):
    """
    A :py:class:`ldap_async.transport.TransportConnection` to a
    :py:class:`MemoryTransport`'s directory.

    Args:
        transport: the transport that owns the directory
        id: a number identifying this connection

    """

    def __init__(self, transport: MemoryTransport, id: int) -> None:  # noqa: A002
        self.transport = transport
        self.store = transport.store
        self.id = id
        self.calls: CallHistory = CallHistory()  #: The operation history
        self.connected: bool = True
        self.tls_enabled: bool = False
        self.bound_dn: str | None = None  #: Set by :py:meth:`bind` on success

    def __repr__(self) -> str:
        return f"<MemoryConnection id={self.id} connected={self.connected}>"

    async def _wait(self) -> None:
        if self.transport.latency:
            await asyncio.sleep(self.transport.latency)
        with self.translated():
            if self.transport.down or not self.connected:
                raise ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})  # type: ignore[attr-defined]

    def _needs_bind(self, dn: str, operation: str) -> None:
        if not self.bound_dn:
            raise ldap.INSUFFICIENT_ACCESS(  # type: ignore[attr-defined]
                {
                    "result": 50,
                    "desc": "Insufficient access",
                    "info": f"Insufficient '{operation}' privilege for the entry '{dn}'",
                }
            )

    # Synchronous halves, so that @record_call sees the real arguments

    @record_call
    def simple_bind_s(self, who: str | None, cred: str | None) -> None:
        if not who:
            self.bound_dn = None
            return
        try:
            passwords = self.store.get(who).get("userPassword", [])
        except (ldap.NO_SUCH_OBJECT, ldap.INVALID_DN_SYNTAX):  # type: ignore[attr-defined]
            passwords = []
        if (cred or "").encode("utf-8") not in passwords:
            raise ldap.INVALID_CREDENTIALS({"result": 49, "desc": "Invalid credentials"})  # type: ignore[attr-defined]
        self.bound_dn = who

    @record_call
    def start_tls_s(self) -> None:
        if self.tls_enabled:
            raise ldap.LOCAL_ERROR({"result": -2, "desc": "Local error", "info": "TLS already started"})  # type: ignore[attr-defined]
        self.tls_enabled = True

    @record_call
    def search_ext(
        self,
        base: str,
        scope: int,
        filterstr: str,
        attrlist: list[str] | None,
        page_size: int,
        cookie: bytes,
        sizelimit: int = 0,
    ) -> tuple[LDAPPage, bytes]:
        return self.store.page(base, scope, filterstr, attrlist, page_size, cookie, sizelimit)

    @record_call
    def modify_s(self, dn: str, modlist: ModList) -> None:
        self._needs_bind(dn, "modify")
        self.store.update(dn, modlist)

    @record_call
    def add_s(self, dn: str, modlist: AddModList) -> None:
        self._needs_bind(dn, "add")
        self.store.create(dn, modlist)

    @record_call
    def delete_s(self, dn: str) -> None:
        self._needs_bind(dn, "delete")
        self.store.delete(dn)

    @record_call
    def rename_s(
        self, dn: str, newrdn: str, newsuperior: str | None = None, delold: int = 1
    ) -> None:
        self._needs_bind(dn, "rename")
        self.store.rename(dn, newrdn, newsuperior=newsuperior, delold=delold)

    @record_call
    def unbind_s(self) -> None:
        self.bound_dn = None
        self.connected = False

    # TransportConnection

    async def bind(self, who: str | None, cred: str | None) -> None:
        await self._wait()
        with self.translated():
            self.simple_bind_s(who, cred)

    async def start_tls(self) -> None:
        await self._wait()
        with self.translated():
            self.start_tls_s()

    async def search(  # type: ignore[override]
        self,
        base: str,
        scope: Scope,
        filterstr: str = "(objectClass=*)",
        attrlist: list[str] | None = None,
        page_size: int = 200,
        controls: Controls | None = None,  # noqa: ARG002
        sizelimit: int = 0,
    ) -> AsyncIterator[LDAPPage]:
        cookie = b""
        while True:
            await self._wait()
            with self.translated():
                page, cookie = self.search_ext(
                    base, scope_value(scope), filterstr, attrlist, page_size, cookie, sizelimit
                )
            yield page
            if not cookie:
                break

    async def modify(self, dn: str, modlist: ModList) -> None:
        await self._wait()
        with self.translated():
            self.modify_s(dn, modlist)

    async def add(self, dn: str, modlist: AddModList) -> None:
        await self._wait()
        with self.translated():
            self.add_s(dn, modlist)

    async def delete(self, dn: str) -> None:
        await self._wait()
        with self.translated():
            self.delete_s(dn)

    async def rename(
        self, dn: str, newrdn: str, newsuperior: str | None = None, delold: int = 1
    ) -> None:
        await self._wait()
        with self.translated():
            self.rename_s(dn, newrdn, newsuperior, delold)

    async def unbind(self) -> None:
        self.unbind_s()

    @record_call
    def reopen(self) -> None:
        if self.transport.down:
            raise ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})  # type: ignore[attr-defined]
        self.connected = True
        self.tls_enabled = False
        self.bound_dn = None

    async def reconnect(self) -> None:
        if self.transport.latency:
            await asyncio.sleep(self.transport.latency)
        with self.translated():
            self.reopen()


class MemoryTransport(Transport):
    """
    A :py:class:`ldap_async.transport.Transport` backed by an
    :py:class:`ObjectStore`.  Every connection shares the one directory, so
    writes made on one pooled connection are seen on all of them.

    Example:
        >>> store = ObjectStore()
        >>> store.load_objects('planetexpress.json')
        >>> transport = MemoryTransport(store)
        >>> client = LDAPClient(LDAPConfig(url='ldap://memory'), transport=transport)

    Keyword Args:
        store: the directory to serve; an empty one if not given
        latency: seconds to sleep before answering each request

    """

    def __init__(self, store: ObjectStore | None = None, latency: float = 0.0) -> None:
        self.store: ObjectStore = store if store is not None else ObjectStore()
        self.latency: float = latency
        #: While ``True``, new connections and requests fail with ``SERVER_DOWN``
        self.down: bool = False
        #: Every connection we have made, in the order they were made
        self.connections: list[MemoryConnection] = []
        self._ids = itertools.count(1)

    async def connect(self, config: LDAPConfig) -> MemoryConnection:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.down:
            exc = ldap.SERVER_DOWN({"desc": "Can't contact LDAP server", "info": config.uri})  # type: ignore[attr-defined]
            raise translate_ldap_error(exc) from exc
        conn = MemoryConnection(self, next(self._ids))
        self.connections.append(conn)
        logger.debug("memory.connect id=%d uri=%s", conn.id, config.uri)
        return conn

    def disconnect_all(self) -> None:
        """
        Drop every open session without telling the client, the way a server
        restart or a firewall timeout would.
        """
        for conn in self.connections:
            conn.connected = False

    def connection_calls(self, api_name: str | None = None) -> CallHistory:
        """
        Return the combined call history of all our connections, optionally
        restricted to calls to ``api_name``.
        """
        results: list[LDAPCallRecord] = []
        for conn in self.connections:
            if api_name:
                results.extend(conn.calls.filter_calls(api_name))
            else:
                results.extend(conn.calls.calls)
        return CallHistory(results)
