__version__ = "0.1.0"

from .client import Change, LDAPClient
from .coalesce import LookupCoalescer
from .config import LDAPConfig
from .exceptions import (
    LDAPAsyncError,
    LDAPConnectionError,
    LDAPProtocolError,
    SchemaError,
    StreamCancelled,
    translate_ldap_error,
)
from .filters import (
    escape_dn,
    escape_filter,
    filter_all,
    filter_any,
    filter_anyall,
    filter_in,
)
from .hooks import HookDefinition, HookRegistry
from .membership import MemberStream
from .memory import CallHistory, LDAPCallRecord, MemoryTransport, ObjectStore
from .pool import ConnectionPool, PooledConnection
from .record import Attribute, Record
from .stream import SearchRequest, SearchStream
from .transport import PythonLDAPTransport, Transport, TransportConnection
from .types import LDAPData, LDAPRecord, LDAPSearchResult
from .unittest import LDAPClientTestMixin
