import logging

#: The package logger.  :py:class:`ldap_async.config.LDAPConfig` accepts a
#: replacement for it, which can be any object with ``debug``, ``info``,
#: ``warning`` and ``error`` methods.
logger = logging.getLogger("ldap_async")
logger.addHandler(logging.NullHandler())
