from __future__ import annotations

import json
from base64 import b64encode
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from case_insensitive_dict import CaseInsensitiveDict

if TYPE_CHECKING:
    from .client import LDAPClient
    from .types import LDAPData, RecordJSON


#: Attributes whose values are always treated as binary, regardless of content
BINARY_ATTRIBUTES: frozenset[str] = frozenset(
    {
        "photo",
        "personalsignature",
        "audio",
        "jpegphoto",
        "javaserializeddata",
        "thumbnailphoto",
        "thumbnaillogo",
        "userpassword",
        "usercertificate",
        "cacertificate",
        "authorityrevocationlist",
        "certificaterevocationlist",
        "crosscertificatepair",
        "x500uniqueidentifier",
        "objectguid",
        "objectsid",
    }
)


def _is_utf8(value: bytes) -> bool:
    try:
        value.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


@dataclass
class Attribute:
    """
    One attribute of a :py:class:`Record`, as the server declared it.

    Example:
        A ranged ``member`` attribute declared as ``member;range=0-1499`` is
        stored as ``Attribute(name='member', options=['range=0-1499'],
        values=[...])``.

    """

    #: The attribute name without options, in the case the server sent it
    name: str
    #: The attribute options (the ``;``-separated parts after the name)
    options: list[str] = field(default_factory=list)
    #: The raw values
    values: list[bytes] = field(default_factory=list)

    @property
    def declared(self) -> str:
        """
        The attribute name with its options, exactly as the server sent it.
        """
        return ";".join([self.name, *self.options])

    @property
    def range(self) -> tuple[int, int | None] | None:
        """
        The ``(low, high)`` window of a ranged attribute, with ``high`` of
        ``None`` for a final ``low-*`` window, or ``None`` if this attribute
        is not ranged.
        """
        for option in self.options:
            if option.lower().startswith("range="):
                low, _, high = option.split("=", 1)[1].partition("-")
                return int(low), None if high == "*" else int(high)
        return None


class Record:
    """
    One directory entry: a DN plus its attributes.

    Attribute lookups are case-insensitive (``record.get('CN')`` and
    ``record.get('cn')`` are the same), and ignore attribute options, so
    ``member;range=0-1499`` is found as ``member``.

    Args:
        dn: the DN of the entry
        data: the attributes of the entry as ``python-ldap`` returns them

    Keyword Args:
        client: the client that fetched this record; needed for
            :py:meth:`full_range`
        preserve_attribute_case: use the declared attribute names as the keys
            in :py:meth:`to_json` instead of lower-cased ones

    """

    def __init__(
        self,
        dn: str,
        data: LDAPData,
        client: LDAPClient | None = None,
        preserve_attribute_case: bool = False,
    ) -> None:
        self.dn: str = dn
        self.client = client
        self.preserve_attribute_case = preserve_attribute_case
        self.attrs: CaseInsensitiveDict[str, Attribute] = CaseInsensitiveDict()
        for declared, values in data.items():
            name, *options = declared.split(";")
            # Active Directory sends an empty plain attribute alongside the
            # ranged one; the ranged one wins
            if name in self.attrs and not values:
                continue
            self.attrs[name] = Attribute(name=name, options=options, values=list(values))

    def __repr__(self) -> str:
        return f"<Record dn={self.dn!r}>"

    def __str__(self) -> str:
        return json.dumps(self.to_json(), indent=2)

    def __contains__(self, attr: object) -> bool:
        return isinstance(attr, str) and attr in self.attrs

    def __iter__(self) -> Iterator[str]:
        return (attr.name for attr in self.attrs.values())

    # Accessors

    def attribute(self, attr: str) -> Attribute | None:
        """
        Return the :py:class:`Attribute` named ``attr``, or ``None``.
        """
        return self.attrs.get(attr)

    def get(self, attr: str) -> str | None:
        """
        Return the first value of ``attr`` as text, or ``None`` if the
        attribute is missing or empty.  ``get('dn')`` returns the DN.
        """
        if attr.lower() == "dn":
            return self.dn
        values = self.all(attr)
        return values[0] if values else None

    def one(self, attr: str) -> str | None:
        return self.get(attr)

    def first(self, attr: str) -> str | None:
        return self.get(attr)

    def all(self, attr: str) -> list[str]:
        """
        Return every value of ``attr`` as text, in server order.
        """
        attribute = self.attrs.get(attr)
        if attribute is None:
            return []
        return [v.decode("utf-8", errors="replace") for v in attribute.values]

    def buffer(self, attr: str) -> bytes | None:
        """
        Return the first raw value of ``attr``.
        """
        values = self.buffers(attr)
        return values[0] if values else None

    def buffers(self, attr: str) -> list[bytes]:
        """
        Return every raw value of ``attr``.
        """
        attribute = self.attrs.get(attr)
        return list(attribute.values) if attribute is not None else []

    def binary(self, attr: str) -> bytes | None:
        return self.buffer(attr)

    def binaries(self, attr: str) -> list[bytes]:
        return self.buffers(attr)

    def options(self, attr: str) -> list[str]:
        """
        Return the options declared on ``attr`` (e.g. ``['range=0-1499']``).
        """
        attribute = self.attrs.get(attr)
        return list(attribute.options) if attribute is not None else []

    def is_binary(self, attr: str) -> bool:
        """
        Decide whether ``attr`` holds binary data: it is a well-known binary
        attribute, it was declared with the ``binary`` option, or one of its
        values is not valid UTF-8.
        """
        if attr.lower() in BINARY_ATTRIBUTES:
            return True
        attribute = self.attrs.get(attr)
        if attribute is None:
            return False
        if any(option.lower() == "binary" for option in attribute.options):
            return True
        return not all(_is_utf8(v) for v in attribute.values)

    # Projection

    def to_json(self) -> RecordJSON:
        """
        Project this record into a JSON-ready dict.  Single-valued attributes
        become scalars, multi-valued attributes become lists, and binary values
        are base64 encoded.  ``dn`` is always included.
        """
        obj: RecordJSON = {"dn": self.dn}
        for attribute in self.attrs.values():
            if not attribute.values:
                continue
            key = attribute.name if self.preserve_attribute_case else attribute.name.lower()
            if self.is_binary(attribute.name):
                values = [b64encode(v).decode("ascii") for v in attribute.values]
            else:
                values = [v.decode("utf-8") for v in attribute.values]
            obj[key] = values[0] if len(values) == 1 else values
        return obj

    def pojo(self) -> RecordJSON:
        return self.to_json()

    async def full_range(self, attr: str) -> list[str]:
        """
        Return every value of the possibly ranged attribute ``attr``, fetching
        the remaining windows from the server as needed.

        Raises:
            RuntimeError: this record was not fetched by an ``LDAPClient``

        """
        if self.client is None:
            msg = "full_range() needs a record fetched through an LDAPClient"
            raise RuntimeError(msg)
        return await self.client.full_range(self, attr)
