"""
Active Directory client built on ldap3.

This module connects to the directory, lists user accounts, resolves group
memberships and adds or removes group members.
"""

import ssl
import logging
import threading
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import parse_dn

from ad_iam_sync.clients.base import DirectoryClientBase
from ad_iam_sync.errors import ConnectionFailure, FetchError, SyncError
from ad_iam_sync.retry import RetryPolicy, MaxRetriesExceeded

logger = logging.getLogger(__name__)


class DirectoryConnectionError(ConnectionFailure):
    """Raised when LDAP connection fails."""
    pass


class DirectoryQueryError(FetchError):
    """Raised when LDAP query fails."""
    pass


class AmbiguousEntryError(DirectoryQueryError):
    """Raised when a name matches more than one directory object."""
    pass


class DirectoryModifyError(SyncError):
    """Raised when a group membership change is rejected."""
    pass


class LDAPDirectoryClient(DirectoryClientBase):
    """
    Directory client for Active Directory over LDAP.

    Users are addressed by sAMAccountName and groups by cn/sAMAccountName.
    All operations share one connection guarded by a lock, so the client may
    be used from several worker threads.
    """

    GROUP_FILTER = '(objectClass=group)'

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize LDAP client with configuration.

        Args:
            config: Directory configuration dictionary
            error_handling: Retry settings for connection establishment
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.group_base_dn = config.get('group_base_dn', '')
        self.user_filter = config.get('user_filter', '(&(objectCategory=person)(objectClass=user))')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        self.retry_policy = RetryPolicy.from_config(error_handling)

        self.server = None
        self.connection = None
        self._connected = False
        self._lock = threading.RLock()
        self._group_names = {}

    def connect(self) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Returns:
            True if connection successful

        Raises:
            DirectoryConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except DirectoryConnectionError:
            raise
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server: {e}")

        try:
            self.retry_policy.call(
                self._open_and_bind,
                "LDAP connection",
                retry_on=(LDAPSocketOpenError, LDAPBindError, LDAPException, DirectoryConnectionError)
            )
        except MaxRetriesExceeded as e:
            raise DirectoryConnectionError(
                f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}"
            )

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_and_bind(self):
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not connection.open():
                raise DirectoryConnectionError(f"Failed to open connection: {connection.result}")

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise DirectoryConnectionError(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")
        except Exception:
            try:
                connection.unbind()
            except LDAPException as e:
                logger.debug(f"Error releasing failed LDAP connection: {e}")
            raise

        self.connection = connection

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        with self._lock:
            if self.connection and self._connected:
                try:
                    self.connection.unbind()
                    logger.debug("LDAP connection closed")
                except Exception as e:
                    logger.warning(f"Error closing LDAP connection: {e}")
                finally:
                    self._connected = False
                    self.connection = None

    def _require_connection(self):
        if not self._connected or not self.connection:
            raise DirectoryQueryError("Not connected to LDAP server")

    def _search(self, search_base: str, search_filter: str, scope=SUBTREE,
                attributes: Optional[List[str]] = None, size_limit: int = 0) -> list:
        """Run a search and return the matching entries."""
        self._require_connection()
        try:
            self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes or [],
                size_limit=size_limit
            )
        except LDAPException as e:
            raise DirectoryQueryError(f"LDAP query failed: {e}")

        # noSuchObject comes back as an unsuccessful search with result code 32
        result_code = (self.connection.result or {}).get('result', 0)
        if result_code not in (0, 4, 32):
            raise DirectoryQueryError(f"Search failed: {self.connection.result}")

        return list(self.connection.entries)

    def list_users(self) -> List[str]:
        """Return the sAMAccountName of every user under the user base."""
        with self._lock:
            self._require_connection()
            search_base = self.user_base_dn or self._get_domain_base()
            logger.debug(f"Listing users with filter: {self.user_filter} in base: {search_base}")

            users = []
            try:
                entries = self.connection.extend.standard.paged_search(
                    search_base=search_base,
                    search_filter=self.user_filter,
                    search_scope=SUBTREE,
                    attributes=['sAMAccountName'],
                    paged_size=self.page_size,
                    generator=True
                )
                for entry in entries:
                    if entry.get('type') != 'searchResEntry':
                        continue
                    name = entry.get('attributes', {}).get('sAMAccountName')
                    if isinstance(name, list):
                        name = name[0] if name else None
                    if name:
                        users.append(str(name))
            except LDAPException as e:
                raise DirectoryQueryError(f"Paginated user search failed: {e}")

            logger.info(f"Retrieved {len(users)} directory users")
            return users

    def _find_user(self, name: str, attributes: Optional[List[str]] = None):
        search_base = self.user_base_dn or self._get_domain_base()
        search_filter = f"(&{self.user_filter}(sAMAccountName={escape_filter_chars(name)}))"
        entries = self._search(search_base, search_filter, attributes=attributes, size_limit=2)
        return self._single(entries, 'user', name)

    def _find_group_dn(self, name: str) -> Optional[str]:
        search_base = self.group_base_dn or self._get_domain_base()
        escaped = escape_filter_chars(name)
        search_filter = f"(&{self.GROUP_FILTER}(|(cn={escaped})(sAMAccountName={escaped})))"
        entries = self._search(search_base, search_filter, attributes=['cn'], size_limit=2)
        entry = self._single(entries, 'group', name)
        return str(entry.entry_dn) if entry is not None else None

    @staticmethod
    def _single(entries: list, kind: str, name: str):
        """Return the only entry, None for no match, or raise when several match."""
        if len(entries) > 1:
            raise AmbiguousEntryError(f"{kind.capitalize()} name {name!r} matches more than one directory object")
        return entries[0] if entries else None

    def get_user_groups(self, user: str) -> List[str]:
        """
        Get the distinguished names of the groups a user is a direct member of.

        Raises:
            DirectoryQueryError: If the user cannot be found or the query fails
        """
        with self._lock:
            entry = self._find_user(user, attributes=['memberOf'])
            if entry is None:
                raise DirectoryQueryError(f"User not found in directory: {user}")
            return [str(dn) for dn in entry.entry_attributes_as_dict.get('memberOf', [])]

    def resolve_group_name(self, group_ref: str) -> str:
        """Resolve a group distinguished name to the group's cn."""
        return self._group_aliases(group_ref)[0]

    def get_user_group_names(self, user: str) -> List[str]:
        """
        Get every name the user's groups answer to.

        A group is listed under its cn and, where it differs, its
        sAMAccountName, so mappings may name a group by either.
        """
        names = []
        for group_ref in self.get_user_groups(user):
            names.extend(self._group_aliases(group_ref))
        return names

    def _group_aliases(self, group_ref: str) -> List[str]:
        """Return the group's cn followed by a differing sAMAccountName."""
        with self._lock:
            cache_key = group_ref.lower()
            if cache_key in self._group_names:
                return self._group_names[cache_key]

            entries = self._search(group_ref, '(objectClass=*)', scope=BASE, attributes=['cn', 'sAMAccountName'])
            attributes = entries[0].entry_attributes_as_dict if entries else {}
            cn = self._first_value(attributes.get('cn')) or parse_dn(group_ref)[0][1]
            aliases = [cn]
            account_name = self._first_value(attributes.get('sAMAccountName'))
            if account_name and account_name.casefold() != cn.casefold():
                aliases.append(account_name)

            self._group_names[cache_key] = aliases
            return aliases

    @staticmethod
    def _first_value(values) -> Optional[str]:
        if isinstance(values, (list, tuple)):
            values = values[0] if values else None
        return str(values) if values else None

    def user_exists(self, name: str) -> bool:
        """True only when exactly one user has this name."""
        with self._lock:
            try:
                return self._find_user(name) is not None
            except AmbiguousEntryError as e:
                logger.warning(str(e))
                return False

    def group_exists(self, name: str) -> bool:
        """True only when exactly one group has this cn or sAMAccountName."""
        with self._lock:
            try:
                return self._find_group_dn(name) is not None
            except AmbiguousEntryError as e:
                logger.warning(str(e))
                return False

    def ou_exists(self, dn: str) -> bool:
        with self._lock:
            entries = self._search(dn, '(objectClass=organizationalUnit)', scope=BASE,
                                   attributes=['objectClass'], size_limit=1)
            return bool(entries)

    def add_member(self, group: str, user: str) -> None:
        """Add a user to a group."""
        with self._lock:
            user_dn, group_dn = self._resolve_member_dns(group, user)
            try:
                success = self.connection.extend.microsoft.add_members_to_groups(user_dn, group_dn)
            except LDAPException as e:
                raise DirectoryModifyError(f"Failed to add {user} to {group}: {e}")
            if not success:
                raise DirectoryModifyError(f"Failed to add {user} to {group}: {self.connection.result}")
            logger.debug(f"Added {user_dn} to {group_dn}")

    def remove_member(self, group: str, user: str) -> None:
        """Remove a user from a group."""
        with self._lock:
            user_dn, group_dn = self._resolve_member_dns(group, user)
            try:
                success = self.connection.extend.microsoft.remove_members_from_groups(user_dn, group_dn)
            except LDAPException as e:
                raise DirectoryModifyError(f"Failed to remove {user} from {group}: {e}")
            if not success:
                raise DirectoryModifyError(f"Failed to remove {user} from {group}: {self.connection.result}")
            logger.debug(f"Removed {user_dn} from {group_dn}")

    def _resolve_member_dns(self, group: str, user: str):
        entry = self._find_user(user)
        if entry is None:
            raise DirectoryQueryError(f"User not found in directory: {user}")
        group_dn = self._find_group_dn(group)
        if group_dn is None:
            raise DirectoryQueryError(f"Group not found in directory: {group}")
        return str(entry.entry_dn), group_dn

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise DirectoryQueryError("Cannot determine domain base DN")
