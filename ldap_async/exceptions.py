"""
Exception taxonomy for ``ldap_async``.

Transports raise ``python-ldap`` exceptions (``ldap.LDAPError`` subclasses);
:py:func:`translate_ldap_error` is the single place where those are turned
into the classes below.
"""

from __future__ import annotations

import traceback
from typing import Any

import ldap


class LDAPAsyncError(Exception):
    """
    Base class for every error raised by ``ldap_async``.

    Attributes:
        result: the LDAP result code reported by the server, if any
        desc: the short description of the error reported by ``python-ldap``
        info: the diagnostic message reported by the server, if any
        call_site: the formatted stack of the code that started the operation
            that failed (e.g. the :py:meth:`LDAPClient.stream` call), so that
            failures point at application code rather than at our plumbing
        client_stack: the formatted traceback of the low-level error

    """

    def __init__(
        self,
        message: str,
        result: int | None = None,
        desc: str | None = None,
        info: str | None = None,
    ) -> None:
        super().__init__(message)
        self.result = result
        self.desc = desc
        self.info = info
        self.call_site: str | None = None
        self.client_stack: str | None = None

    def attach_call_site(self, stack: traceback.StackSummary | None) -> LDAPAsyncError:
        """
        Record where the failing operation was started, and keep the traceback
        of the low-level error around as :py:attr:`client_stack`.

        Args:
            stack: the stack captured when the operation was started

        Returns:
            ``self``, so that this can be used inline with ``raise``.

        """
        if stack is not None and self.call_site is None:
            self.call_site = "".join(stack.format())
        cause = self.__cause__
        if cause is not None and self.client_stack is None:
            self.client_stack = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )
        return self


class LDAPConnectionError(LDAPAsyncError):
    """
    We could not connect, negotiate TLS or bind, or the server went away.
    """


class LDAPProtocolError(LDAPAsyncError):
    """
    The server answered an operation with a failure result.  The connection
    itself is still usable.
    """


class SchemaError(LDAPProtocolError):
    """
    The server rejected an attribute type as undefined.
    """


class StreamCancelled(LDAPAsyncError):
    """
    The consumer of a stream closed it.  This is control flow: it is never
    raised to the consumer who did the closing.
    """


_CONNECTION_ERRORS: tuple[type[ldap.LDAPError], ...] = (  # type: ignore[name-defined]
    ldap.SERVER_DOWN,  # type: ignore[attr-defined]
    ldap.CONNECT_ERROR,  # type: ignore[attr-defined]
    ldap.TIMEOUT,  # type: ignore[attr-defined]
    ldap.INVALID_CREDENTIALS,  # type: ignore[attr-defined]
    ldap.STRONG_AUTH_REQUIRED,  # type: ignore[attr-defined]
    ldap.INAPPROPRIATE_AUTH,  # type: ignore[attr-defined]
)


def _error_details(exc: ldap.LDAPError) -> dict[str, Any]:  # type: ignore[name-defined]
    if exc.args and isinstance(exc.args[0], dict):
        return exc.args[0]
    return {"desc": str(exc) or type(exc).__name__}


def translate_ldap_error(exc: BaseException) -> BaseException:
    """
    Map a ``python-ldap`` exception onto our exception taxonomy.  Anything
    that is not an ``ldap.LDAPError`` (or is already one of ours) is
    returned unchanged.

    Example:
        >>> try:
        ...     conn.modify_s(dn, modlist)
        ... except ldap.LDAPError as exc:
        ...     raise translate_ldap_error(exc) from exc

    Args:
        exc: the exception to translate

    Returns:
        The translated exception.

    """
    if isinstance(exc, LDAPAsyncError) or not isinstance(exc, ldap.LDAPError):  # type: ignore[attr-defined]
        return exc
    details = _error_details(exc)
    desc = details.get("desc") or type(exc).__name__
    info = details.get("info")
    if isinstance(info, (tuple, list)):
        info = " ".join(str(i) for i in info)
    message = f"{desc}: {info}" if info else str(desc)
    result = details.get("result")
    if isinstance(exc, _CONNECTION_ERRORS):
        cls: type[LDAPAsyncError] = LDAPConnectionError
    elif isinstance(exc, ldap.UNDEFINED_TYPE):  # type: ignore[attr-defined]
        cls = SchemaError
    else:
        cls = LDAPProtocolError
    return cls(message, result=result, desc=desc, info=info)
