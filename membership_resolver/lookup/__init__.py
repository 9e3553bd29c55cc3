from .base import DirectoryLookup, ParentEntry
from .memory import InMemoryDirectory
from .retry import RetryingLookup
from .graph import GraphDirectoryLookup
from .ldap import LdapDirectoryLookup

__all__ = [
    "DirectoryLookup",
    "ParentEntry",
    "InMemoryDirectory",
    "RetryingLookup",
    "GraphDirectoryLookup",
    "LdapDirectoryLookup",
]
