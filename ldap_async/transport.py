"""
The wire transport: the small set of operations the pool and the search
engine need from an LDAP connection, and a ``python-ldap`` implementation of
them.

Every ``python-ldap`` call blocks, so :py:class:`PythonLDAPConnection` runs
each one in a worker thread with :py:func:`asyncio.to_thread`.  A connection
is only ever used by one task at a time (the pool guarantees that), so the
``LDAPObject`` is never shared between threads concurrently.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import ldap
import ldap.ldapobject
from ldap.controls import SimplePagedResultsControl

from .exceptions import LDAPConnectionError, translate_ldap_error
from .logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import LDAPConfig
    from .types import AddModList, Controls, LDAPPage, ModList, Scope


SCOPES: dict[str, int] = {
    "base": ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    "one": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "onelevel": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "sub": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    "subtree": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
}

#: ``python-ldap`` errors after which the session is known to be gone
_DISCONNECT_ERRORS = (
    ldap.SERVER_DOWN,  # type: ignore[attr-defined]
    ldap.CONNECT_ERROR,  # type: ignore[attr-defined]
)


def scope_value(scope: Scope) -> int:
    """
    Turn ``scope`` into a ``python-ldap`` ``SCOPE_*`` constant.

    Args:
        scope: one of ``base``, ``one`` or ``sub``, or already a ``SCOPE_*``
            constant

    Raises:
        ValueError: ``scope`` is not a known scope

    """
    if isinstance(scope, int):
        return scope
    try:
        return SCOPES[scope.lower()]
    except KeyError as exc:
        msg = f"unknown search scope: {scope!r}"
        raise ValueError(msg) from exc


class TransportConnection(ABC):
    """
    One session with an LDAP server.  Methods raise the exceptions from
    :py:mod:`ldap_async.exceptions`, never raw ``python-ldap`` ones.
    """

    #: ``False`` once we know the server dropped the session
    connected: bool = False

    @contextmanager
    def translated(self) -> Iterator[None]:
        """
        Translate any ``python-ldap`` exception raised in the block, and note
        that we are disconnected if the error says so.
        """
        try:
            yield
        except ldap.LDAPError as exc:  # type: ignore[attr-defined]
            if isinstance(exc, _DISCONNECT_ERRORS):
                self.connected = False
            raise translate_ldap_error(exc) from exc

    @abstractmethod
    async def bind(self, who: str | None, cred: str | None) -> None: ...

    @abstractmethod
    async def start_tls(self) -> None: ...

    @abstractmethod
    def search(
        self,
        base: str,
        scope: Scope,
        filterstr: str = "(objectClass=*)",
        attrlist: list[str] | None = None,
        page_size: int = 200,
        controls: Controls | None = None,
        sizelimit: int = 0,
    ) -> AsyncIterator[LDAPPage]:
        """
        Run a paged search, returning an async iterator of pages.  The next
        page is only requested from the server when the caller asks for it.
        """

    @abstractmethod
    async def modify(self, dn: str, modlist: ModList) -> None: ...

    @abstractmethod
    async def add(self, dn: str, modlist: AddModList) -> None: ...

    @abstractmethod
    async def delete(self, dn: str) -> None: ...

    @abstractmethod
    async def rename(
        self, dn: str, newrdn: str, newsuperior: str | None = None, delold: int = 1
    ) -> None: ...

    @abstractmethod
    async def unbind(self) -> None: ...

    @abstractmethod
    async def reconnect(self) -> None:
        """
        Open a new session to replace a dropped one.  The caller must bind
        again afterwards.
        """


class Transport(ABC):
    """
    A factory for :py:class:`TransportConnection` objects.
    """

    @abstractmethod
    async def connect(self, config: LDAPConfig) -> TransportConnection:
        """
        Open a new, unbound session to the server described by ``config``.
        """


class PythonLDAPConnection(TransportConnection):
    """
    A :py:class:`TransportConnection` wrapping a ``python-ldap``
    ``LDAPObject``.
    """

    def __init__(self, config: LDAPConfig) -> None:
        self.config = config
        self.ldap_object: ldap.ldapobject.LDAPObject | None = None  # type: ignore[name-defined]
        self.connected = False

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        with self.translated():
            return await asyncio.to_thread(func, *args, **kwargs)

    def _initialize(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        config = self.config
        ldap_object = ldap.initialize(config.uri)
        ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(config.network_timeout))  # type: ignore[attr-defined]
        if config.keepalive_seconds:
            idle = int(config.keepalive_seconds)
            ldap_object.set_option(ldap.OPT_X_KEEPALIVE_IDLE, idle)  # type: ignore[attr-defined]
            ldap_object.set_option(ldap.OPT_X_KEEPALIVE_INTERVAL, max(idle // 4, 1))  # type: ignore[attr-defined]
            ldap_object.set_option(ldap.OPT_X_KEEPALIVE_PROBES, 3)  # type: ignore[attr-defined]
        if config.start_tls_cert:
            ca_certfile = Path(config.start_tls_cert)
            if not ca_certfile.is_file():
                msg = f"CA Certificate file does not exist: {config.start_tls_cert}"
                raise LDAPConnectionError(
                    msg, desc="CA certificate file not found", info=config.start_tls_cert
                )
            ldap_object.set_option(ldap.OPT_X_TLS_CACERTFILE, str(ca_certfile))  # type: ignore[attr-defined]
        for option, value in config.options.items():
            ldap_object.set_option(option, value)
        # This must be last among the TLS options
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        return ldap_object

    async def open(self) -> None:
        with self.translated():
            self.ldap_object = self._initialize()
        self.connected = True
        logger.debug("transport.open uri=%s", self.config.uri)

    async def bind(self, who: str | None, cred: str | None) -> None:
        await self._call(self.ldap_object.simple_bind_s, who or "", cred or "")  # type: ignore[union-attr]

    async def start_tls(self) -> None:
        await self._call(self.ldap_object.start_tls_s)  # type: ignore[union-attr]

    async def search(  # type: ignore[override]
        self,
        base: str,
        scope: Scope,
        filterstr: str = "(objectClass=*)",
        attrlist: list[str] | None = None,
        page_size: int = 200,
        controls: Controls | None = None,
        sizelimit: int = 0,
    ) -> AsyncIterator[LDAPPage]:
        # Pass '' for the cookie because on the first request it starts out
        # empty
        paging = SimplePagedResultsControl(True, size=page_size, cookie="")  # noqa: FBT003
        serverctrls = [paging, *(controls or [])]
        while True:
            msgid = await self._call(
                self.ldap_object.search_ext,  # type: ignore[union-attr]
                base,
                scope_value(scope),
                filterstr,
                attrlist,
                serverctrls=serverctrls,
                sizelimit=sizelimit,
            )
            _, rdata, _, rctrls = await self._call(self.ldap_object.result3, msgid)  # type: ignore[union-attr]
            # AD returns search references at the end that we want to ignore
            yield [(dn, attrs) for dn, attrs in rdata if isinstance(attrs, dict)]
            paged_controls = [
                c
                for c in rctrls or []
                if c.controlType == SimplePagedResultsControl.controlType
            ]
            if not paged_controls or not paged_controls[0].cookie:
                break
            paging.cookie = paged_controls[0].cookie

    async def modify(self, dn: str, modlist: ModList) -> None:
        await self._call(self.ldap_object.modify_s, dn, modlist)  # type: ignore[union-attr]

    async def add(self, dn: str, modlist: AddModList) -> None:
        await self._call(self.ldap_object.add_s, dn, modlist)  # type: ignore[union-attr]

    async def delete(self, dn: str) -> None:
        await self._call(self.ldap_object.delete_s, dn)  # type: ignore[union-attr]

    async def rename(
        self, dn: str, newrdn: str, newsuperior: str | None = None, delold: int = 1
    ) -> None:
        await self._call(self.ldap_object.rename_s, dn, newrdn, newsuperior, delold)  # type: ignore[union-attr]

    async def unbind(self) -> None:
        if self.ldap_object is None:
            return
        try:
            await self._call(self.ldap_object.unbind_s)
        finally:
            self.ldap_object = None
            self.connected = False

    async def reconnect(self) -> None:
        self.ldap_object = None
        await self.open()


class PythonLDAPTransport(Transport):
    """
    Connect to a real LDAP server with ``python-ldap``.
    """

    async def connect(self, config: LDAPConfig) -> PythonLDAPConnection:
        conn = PythonLDAPConnection(config)
        await conn.open()
        return conn
