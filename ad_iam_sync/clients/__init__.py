"""
Identity system clients.

Each client implements one of the capability interfaces in
``ad_iam_sync.clients.base``.
"""

from .base import DirectoryClientBase, CloudIdentityClientBase
from .directory import LDAPDirectoryClient, DirectoryConnectionError, DirectoryQueryError
from .iam import IAMClient, CloudConnectionError, CloudQueryError
