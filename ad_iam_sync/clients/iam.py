"""
AWS IAM client built on boto3.

This module lists IAM users and their group memberships and changes group
membership. The session comes from the configured profile (or the default
credential chain) and is verified with STS before use.
"""

import logging
from typing import Dict, List, Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ad_iam_sync.clients.base import CloudIdentityClientBase
from ad_iam_sync.errors import ConnectionFailure, FetchError
from ad_iam_sync.retry import RetryPolicy, MaxRetriesExceeded

logger = logging.getLogger(__name__)


class CloudConnectionError(ConnectionFailure):
    """Raised when an authenticated AWS session cannot be established."""
    pass


class CloudQueryError(FetchError):
    """Raised when an IAM listing call fails."""
    pass


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


class IAMClient(CloudIdentityClientBase):
    """
    Cloud identity client for AWS IAM users and groups.

    botocore retries are disabled; a failed call is reported once and the
    caller decides what to do with it.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None,
                 session: Optional[boto3.Session] = None):
        """
        Initialize IAM client with configuration.

        Args:
            config: Cloud configuration dictionary (profile, region, timeouts)
            error_handling: Retry settings for session verification
            session: Pre-built boto3 session, used instead of the configured profile
        """
        self.config = config
        self.profile = config.get('profile')
        self.region = config.get('region', 'us-east-1')
        self.connect_timeout = config.get('connect_timeout', 10)
        self.read_timeout = config.get('read_timeout', 30)

        self.retry_policy = RetryPolicy.from_config(error_handling)

        self.session = session
        self.iam = None
        self.account_id = None

    def _client_config(self) -> Config:
        return Config(
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
            retries={'max_attempts': 0, 'mode': 'standard'}
        )

    def connect(self) -> bool:
        """
        Build the IAM client and verify the session credentials.

        Raises:
            CloudConnectionError: If the session cannot be verified
        """
        try:
            if self.session is None:
                self.session = boto3.Session(profile_name=self.profile, region_name=self.region)
            sts = self.session.client('sts', config=self._client_config())
            self.iam = self.session.client('iam', config=self._client_config())
        except (BotoCoreError, ClientError) as e:
            raise CloudConnectionError(f"Failed to create AWS session: {e}")

        try:
            identity = self.retry_policy.call(
                sts.get_caller_identity,
                "AWS session verification",
                retry_on=(BotoCoreError, ClientError)
            )
        except MaxRetriesExceeded as e:
            self.iam = None
            raise CloudConnectionError(
                f"Failed to verify AWS session after {e.attempts} attempts: {e.last_exception}"
            )

        self.account_id = identity.get('Account')
        logger.info(f"Authenticated to AWS account {self.account_id} as {identity.get('Arn')}")
        return True

    def _require_client(self):
        if self.iam is None:
            raise CloudQueryError("Not connected to AWS IAM")
        return self.iam

    def list_users(self) -> List[str]:
        """Return the names of all IAM users."""
        iam = self._require_client()
        users = []
        try:
            for page in iam.get_paginator('list_users').paginate():
                users.extend(user['UserName'] for user in page.get('Users', []))
        except (BotoCoreError, ClientError) as e:
            raise CloudQueryError(f"Failed to list IAM users: {e}")

        logger.info(f"Retrieved {len(users)} IAM users")
        return users

    def list_groups_for_user(self, user: str) -> List[str]:
        """Return the names of the IAM groups a user belongs to."""
        iam = self._require_client()
        groups = []
        try:
            for page in iam.get_paginator('list_groups_for_user').paginate(UserName=user):
                groups.extend(group['GroupName'] for group in page.get('Groups', []))
        except (BotoCoreError, ClientError) as e:
            raise CloudQueryError(f"Failed to list IAM groups for {user}: {e}")
        return groups

    def group_exists(self, name: str) -> bool:
        iam = self._require_client()
        try:
            iam.get_group(GroupName=name, MaxItems=1)
            return True
        except ClientError as e:
            if _error_code(e) == 'NoSuchEntity':
                return False
            raise CloudQueryError(f"Failed to look up IAM group {name}: {e}")
        except BotoCoreError as e:
            raise CloudQueryError(f"Failed to look up IAM group {name}: {e}")

    def add_user_to_group(self, group: str, user: str) -> None:
        """Add a user to an IAM group. Adding an existing member is a no-op in IAM."""
        iam = self._require_client()
        iam.add_user_to_group(GroupName=group, UserName=user)
        logger.debug(f"Added IAM user {user} to {group}")

    def remove_user_from_group(self, group: str, user: str) -> None:
        """Remove a user from an IAM group. Removing a non-member is a no-op."""
        iam = self._require_client()
        try:
            iam.remove_user_from_group(GroupName=group, UserName=user)
            logger.debug(f"Removed IAM user {user} from {group}")
        except ClientError as e:
            if _error_code(e) != 'NoSuchEntity':
                raise
            logger.debug(f"IAM user {user} was not a member of {group}")
