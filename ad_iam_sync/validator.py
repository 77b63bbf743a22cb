"""
Existence checks that gate every membership change.

A False result means "not confirmed", not "definitely absent": lookup errors
and not-found both yield False.
"""

import logging
from typing import Optional

from ad_iam_sync.clients.base import DirectoryClientBase, CloudIdentityClientBase
from ad_iam_sync.logging_setup import AuditSink

logger = logging.getLogger(__name__)


class Validator:
    """Checks users, groups and OUs before they are mutated."""

    def __init__(self, directory: DirectoryClientBase, audit: AuditSink,
                 bypass_user: bool = False, cloud: Optional[CloudIdentityClientBase] = None):
        """
        Args:
            directory: Directory client used for lookups
            audit: Audit trail
            bypass_user: Skip user lookups and report every user as valid
            cloud: Cloud client used to check IAM groups
        """
        self.directory = directory
        self.cloud = cloud
        self.audit = audit
        self.bypass_user = bypass_user

    def validate_user(self, name: str) -> bool:
        if self.bypass_user:
            self.audit.warn(f"User validation bypass is active; '{name}' accepted without lookup")
            return True
        return self._check('user', name, self.directory.user_exists)

    def validate_group(self, name: str) -> bool:
        return self._check('group', name, self.directory.group_exists)

    def validate_ou(self, dn: str) -> bool:
        return self._check('organizational unit', dn, self.directory.ou_exists)

    def validate_cloud_group(self, name: str) -> bool:
        if self.cloud is None:
            self.audit.error(f"No cloud client available to validate IAM group '{name}'")
            return False
        return self._check('IAM group', name, self.cloud.group_exists)

    def _check(self, entity_type: str, name: str, lookup) -> bool:
        self.audit.call(f"Validate {entity_type} '{name}'")
        try:
            found = bool(lookup(name))
        except Exception as e:
            logger.debug(f"Lookup of {entity_type} {name} failed", exc_info=True)
            self.audit.error(f"Could not validate {entity_type} '{name}': {e}")
            return False

        if not found:
            self.audit.error(f"Invalid {entity_type} '{name}': not found")
        return found
