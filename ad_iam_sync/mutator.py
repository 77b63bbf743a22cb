"""
Applies membership changes, one (user, group) pair at a time.

Every change is validated first. A failed change is recorded and returned as
a result; it never stops the changes that follow it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ad_iam_sync.clients.base import DirectoryClientBase, CloudIdentityClientBase
from ad_iam_sync.diff_engine import ActionType, SyncAction, System
from ad_iam_sync.errors import MutationError, ValidationFailure, is_timeout_error
from ad_iam_sync.logging_setup import AuditSink
from ad_iam_sync.validator import Validator

logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    """Outcome of applying one SyncAction."""

    action: SyncAction
    success: bool
    applied: bool = False
    error_kind: Optional[str] = None
    message: str = ''


class RoleMutator:
    """Validates and executes SyncActions against the destination system."""

    def __init__(self, directory: DirectoryClientBase, cloud: CloudIdentityClientBase,
                 validator: Validator, audit: AuditSink,
                 abort_on_validation_failure: bool = True, dry_run: bool = False):
        self.directory = directory
        self.cloud = cloud
        self.validator = validator
        self.audit = audit
        self.abort_on_validation_failure = abort_on_validation_failure
        self.dry_run = dry_run

    def apply(self, action: SyncAction) -> MutationResult:
        """
        Apply one action.

        Returns:
            MutationResult describing what happened

        Raises:
            ValidationFailure: If the user or group is invalid and the
                abort policy is in effect
        """
        if action.is_noop:
            return MutationResult(action, success=True)

        invalid = self._validate(action)
        if invalid:
            entity_type, name = invalid
            failure = ValidationFailure(entity_type, name,
                                        f"Invalid {entity_type} '{name}'; refusing to {action.describe().lower()}")
            if self.abort_on_validation_failure:
                self.audit.fatal(str(failure))
                raise failure
            self.audit.error(f"{failure}; skipped")
            return MutationResult(action, success=False, error_kind=MutationError.VALIDATION, message=str(failure))

        if self.dry_run:
            self.audit.message(f"[dry run] {action.describe()}")
            return MutationResult(action, success=True, message='dry run')

        self.audit.call(action.describe())
        try:
            self._execute(action)
        except Exception as e:
            kind = MutationError.TIMEOUT if is_timeout_error(e) else MutationError.FAILED
            error = MutationError(f"{action.describe()} failed: {e}", kind=kind, cause=e)
            logger.debug("Mutation failed", exc_info=True)
            self.audit.fatal(str(error))
            return MutationResult(action, success=False, error_kind=error.kind, message=str(error))

        self.audit.info(f"{action.describe()} succeeded")
        return MutationResult(action, success=True, applied=True)

    def _validate(self, action: SyncAction):
        """Return (entity_type, name) of the first invalid entity, or None."""
        if not self.validator.validate_user(action.identity.directory_name):
            return 'user', action.identity.directory_name

        if action.destination is System.DIRECTORY:
            group_valid = self.validator.validate_group(action.target_group)
        else:
            group_valid = self.validator.validate_cloud_group(action.target_group)
        if not group_valid:
            return 'group', action.target_group

        return None

    def _execute(self, action: SyncAction):
        user = action.user_name
        group = action.target_group

        if action.destination is System.DIRECTORY:
            if action.action_type is ActionType.ADD:
                self.directory.add_member(group, user)
            else:
                self.directory.remove_member(group, user)
        else:
            if action.action_type is ActionType.ADD:
                self.cloud.add_user_to_group(group, user)
            else:
                self.cloud.remove_user_from_group(group, user)
