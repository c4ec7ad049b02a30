from typing import TYPE_CHECKING, Any, Union

from case_insensitive_dict import CaseInsensitiveDict

if TYPE_CHECKING:
    import ldap

# ====================================
# Types
# ====================================

# LDAP records and objects, as python-ldap returns them
LDAPData = dict[str, list[bytes]]
CILDAPData = CaseInsensitiveDict[str, list[str]]
LDAPRecord = tuple[str, LDAPData]
LDAPSearchResult = list[LDAPRecord]
LDAPObjectStore = CaseInsensitiveDict[str, CILDAPData]
RawLDAPObjectStore = CaseInsensitiveDict[str, LDAPData]

# One page of a paged search
LDAPPage = list[LDAPRecord]

# Search scope: one of "base", "one", "sub" or a python-ldap SCOPE_* constant
Scope = Union[str, int]

# Server controls
Controls = list["ldap.controls.LDAPControl"]  # type: ignore[name-defined]

# Modlists
ModList = list[tuple[int, str, Union[list[bytes], None]]]
AddModList = list[tuple[str, list[bytes]]]

# Values callers may hand to the write helpers
AttributeInput = Union[bool, int, float, str, bytes]
AttributeValues = Union[AttributeInput, list[AttributeInput], None]

# JSON projection of a record
RecordJSON = dict[str, Any]

# unittest support
LDAPFixtureList = Union[str, list[str]]
