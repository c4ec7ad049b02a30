from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class HookDefinition:
    """
    The definition for a hook.  This is comprised of a name and a signature.

    Example:
        >>> hook_def = HookDefinition(
            name="transform_record",
            signature="Callable[[Record], Record | None]"
        )
        >>> hook_def.name
        "transform_record"

    Attributes:
        name: the name of the hook, e.g. "transform_record"
        signature: the python type annotation signature that the hook should
            implement, e.g. "Callable[[Record], Record | None]"

    """

    name: str
    signature: str


class HookRegistry:
    """
    A registry for hooks.  Every :py:class:`ldap_async.client.LDAPClient` owns
    one, built by :py:func:`client_hooks`, so hooks registered on one client
    never affect another.
    """

    def __init__(self) -> None:
        self.__hooks: dict[str, list[Callable[..., Any]]] = {}
        self.__definitions: dict[str, str] = {}

    @property
    def definitions(self) -> list[HookDefinition]:
        """
        Return the list of known hook definitions.
        """
        return [
            HookDefinition(name=name, signature=signature)
            for name, signature in self.__definitions.items()
        ]

    def register_hook_definition(self, hook_name: str, signature: str) -> None:
        """
        Register a hook definition.  Hook definitions define what hooks exist,
        and what their function signature must be.

        Args:
            hook_name: the name of the hook
            signature: A string in Python type annotation format describing the
                signature the hook must have

        Raises:
            ValueError: ``hook_name`` is already defined

        """
        if hook_name in self.__definitions:
            msg = f'"{hook_name}" is already a defined hook'
            raise ValueError(msg)
        self.__definitions[hook_name] = signature

    def register_hook(self, hook_name: str, func: Callable[..., Any]) -> None:
        """
        Register a hook function.

        Example:
            To stamp every record we hand back with the time we fetched it:

            .. code-block:: python

                def stamp(record: Record) -> Record:
                    record.fetched_at = time.time()
                    return record

                client.hooks.register_hook('transform_record', stamp)

        Note:
            Hooks for a particular ``hook_name`` are applied in the order they
            are registered.

        Args:
            hook_name: the name of the known hook to which register this ``func``
            func: the hook function

        Raises:
            ValueError: ``hook_name`` is not a known hook

        """
        if hook_name not in self.__definitions:
            msg = f'"{hook_name}" is not a known hook'
            raise ValueError(msg)
        self.__hooks.setdefault(hook_name, []).append(func)

    def get(self, hook_name: str) -> list[Callable[..., Any]]:
        """
        Get the list of hook callables registered for ``hook_name``.

        Args:
            hook_name: the name of the hook for which to return functions

        Raises:
            ValueError: there is no known hook with name ``hook_name``

        Returns:
            A list of callables.

        """
        if hook_name not in self.__definitions:
            msg = f'"{hook_name}" is not a known hook'
            raise ValueError(msg)
        return list(self.__hooks.get(hook_name, []))

    async def run(self, hook_name: str, *args: Any) -> None:
        """
        Call every hook registered for ``hook_name`` with ``args``, awaiting
        the ones that are coroutine functions.
        """
        for func in self.get(hook_name):
            result = func(*args)
            if inspect.isawaitable(result):
                await result


def client_hooks() -> HookRegistry:
    """
    Build a :py:class:`HookRegistry` with the hook definitions that
    :py:class:`ldap_async.client.LDAPClient` knows how to run.
    """
    hooks = HookRegistry()
    hooks.register_hook_definition(
        "post_connect", "Callable[[TransportConnection], Awaitable[None] | None]"
    )
    hooks.register_hook_definition(
        "transform_record", "Callable[[Record], Record | None]"
    )
    hooks.register_hook_definition(
        "pre_release", "Callable[[PooledConnection], None]"
    )
    return hooks
