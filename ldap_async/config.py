from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any

from .logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from .record import Record

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


@dataclass
class LDAPConfig:
    """
    Configuration for an :py:class:`ldap_async.client.LDAPClient`.

    Either give :py:attr:`url` directly, or give :py:attr:`host` (and
    optionally :py:attr:`port` and :py:attr:`secure`) and we will build the
    URL for you.  Use :py:meth:`from_env` to fill in anything you didn't
    pass from ``LDAP_*`` environment variables.

    Example:
        >>> config = LDAPConfig(
                host='ldap.example.com',
                bind_dn='cn=reader,dc=example,dc=com',
                bind_password='secret',
                pool_size=10,
                idle_timeout=300,
            )
        >>> config.url
        'ldap://ldap.example.com:389'

    """

    #: The LDAP URI to connect to.  Built from :py:attr:`host`,
    #: :py:attr:`port` and :py:attr:`secure` if not given.
    url: str | None = None
    #: Hostname of the LDAP server
    host: str | None = None
    #: Port of the LDAP server (default 636 if :py:attr:`secure`, else 389)
    port: int | None = None
    #: Use ``ldaps://``
    secure: bool | None = None
    #: The DN to bind as
    bind_dn: str | None = None
    #: The password for :py:attr:`bind_dn`
    bind_password: str | None = None
    #: The maximum number of connections in the pool
    pool_size: int | None = None
    #: Unbind connections that have been idle this many seconds; 0 disables
    idle_timeout: float | None = None
    #: TCP keepalive idle time in seconds; 0 disables
    keepalive: float | None = None
    #: Negotiate TLS with StartTLS after connecting
    start_tls: bool | None = None
    #: Path to a CA certificate file used to verify the server for StartTLS
    start_tls_cert: str | None = None
    #: Keep attribute names as the server declared them in JSON projections
    preserve_attribute_case: bool | None = None
    #: Called on each :py:class:`Record` before it is handed to the caller
    transform: Callable[[Record], Record | None] | None = None
    #: A replacement logger with ``debug``/``info``/``warning``/``error``
    logger: Any = None
    #: Page size for paged searches when the caller doesn't give one
    page_size: int = 200
    #: Seconds to wait for the server to answer a connect
    network_timeout: float = 15.0
    #: Seconds between attempts in :py:meth:`LDAPClient.wait`
    wait_interval: float = 2.0
    #: Give up :py:meth:`LDAPClient.wait` after this many failed attempts
    wait_max_attempts: int | None = None
    #: The most identity filters we will OR together in one search
    batch_limit: int = 100
    #: Seconds to buffer :py:meth:`LDAPClient.load` calls before searching
    batch_delay: float = 0.0
    #: Any other ``python-ldap`` options to set on new connections
    options: dict[int, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = logger

    @classmethod
    def from_env(cls, **kwargs: Any) -> LDAPConfig:
        """
        Build a config from ``kwargs``, filling in anything not given from the
        environment:

        * ``LDAP_HOST``, ``LDAP_PORT``, ``LDAP_SECURE``
        * ``LDAP_DN``, ``LDAP_PASSWORD`` (or ``LDAP_PASS``)
        * ``LDAP_POOLSIZE``
        * ``LDAP_IDLE_TIMEOUT``, ``LDAP_KEEPALIVE``
        * ``LDAP_STARTTLS``, ``LDAP_STARTTLS_CERT``
        * ``LDAP_PRESERVE_ATTRIBUTE_CASE``

        Keyword Args:
            kwargs: any :py:class:`LDAPConfig` field

        Raises:
            TypeError: a keyword argument is not a known config field

        Returns:
            A configured :py:class:`LDAPConfig`.

        """
        known = {f.name for f in fields(cls)}
        unknown = set(kwargs) - known
        if unknown:
            msg = f"unknown LDAPConfig options: {', '.join(sorted(unknown))}"
            raise TypeError(msg)
        env = os.environ
        if kwargs.get("host") is None and "LDAP_HOST" in env:
            kwargs["host"] = env["LDAP_HOST"]
        if kwargs.get("port") is None and env.get("LDAP_PORT"):
            kwargs["port"] = int(env["LDAP_PORT"])
        if kwargs.get("secure") is None and "LDAP_SECURE" in env:
            kwargs["secure"] = _env_bool(env["LDAP_SECURE"])
        if kwargs.get("bind_dn") is None and "LDAP_DN" in env:
            kwargs["bind_dn"] = env["LDAP_DN"]
        if kwargs.get("bind_password") is None:
            password = env.get("LDAP_PASSWORD", env.get("LDAP_PASS"))
            if password is not None:
                kwargs["bind_password"] = password
        if kwargs.get("pool_size") is None and env.get("LDAP_POOLSIZE"):
            kwargs["pool_size"] = int(env["LDAP_POOLSIZE"])
        if kwargs.get("idle_timeout") is None and env.get("LDAP_IDLE_TIMEOUT"):
            kwargs["idle_timeout"] = float(env["LDAP_IDLE_TIMEOUT"])
        if kwargs.get("keepalive") is None and env.get("LDAP_KEEPALIVE"):
            kwargs["keepalive"] = float(env["LDAP_KEEPALIVE"])
        if kwargs.get("start_tls") is None and "LDAP_STARTTLS" in env:
            kwargs["start_tls"] = _env_bool(env["LDAP_STARTTLS"])
        if kwargs.get("start_tls_cert") is None and env.get("LDAP_STARTTLS_CERT"):
            kwargs["start_tls_cert"] = env["LDAP_STARTTLS_CERT"]
        if (
            kwargs.get("preserve_attribute_case") is None
            and "LDAP_PRESERVE_ATTRIBUTE_CASE" in env
        ):
            kwargs["preserve_attribute_case"] = _env_bool(
                env["LDAP_PRESERVE_ATTRIBUTE_CASE"]
            )
        return cls(**kwargs)

    # Resolved values

    @property
    def uri(self) -> str:
        """
        The LDAP URI we will connect to.
        """
        if self.url:
            return self.url
        scheme = "ldaps" if self.secure else "ldap"
        port = self.port or (636 if self.secure else 389)
        return f"{scheme}://{self.host or ''}:{port}"

    @property
    def max_connections(self) -> int:
        return self.pool_size if self.pool_size else 5

    @property
    def idle_seconds(self) -> float:
        return float(self.idle_timeout or 0)

    @property
    def keepalive_seconds(self) -> float:
        return float(self.keepalive or 0)
