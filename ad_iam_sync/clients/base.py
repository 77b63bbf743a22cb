"""
Capability interfaces for the two identity systems.

The sync engine only talks to these abstract classes. The ldap3 and boto3
implementations live beside this module; tests substitute fakes.
"""

from abc import ABC, abstractmethod
from typing import List


class DirectoryClientBase(ABC):
    """Abstract directory (Active Directory) capability."""

    def connect(self) -> bool:
        """Establish the session. Default implementation has nothing to do."""
        return True

    def disconnect(self) -> None:
        """Release the session."""
        pass

    @abstractmethod
    def list_users(self) -> List[str]:
        """Return the account names of all users."""
        pass

    @abstractmethod
    def get_user_groups(self, user: str) -> List[str]:
        """
        Get references to the groups a user belongs to.

        Args:
            user: Account name

        Returns:
            Group references (distinguished names)
        """
        pass

    @abstractmethod
    def resolve_group_name(self, group_ref: str) -> str:
        """Resolve a group reference returned by get_user_groups to its name."""
        pass

    def get_user_group_names(self, user: str) -> List[str]:
        """Get the names of the groups a user belongs to."""
        return [self.resolve_group_name(ref) for ref in self.get_user_groups(user)]

    @abstractmethod
    def user_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def group_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def ou_exists(self, dn: str) -> bool:
        pass

    @abstractmethod
    def add_member(self, group: str, user: str) -> None:
        """Add a user to a group, both given by name."""
        pass

    @abstractmethod
    def remove_member(self, group: str, user: str) -> None:
        """Remove a user from a group, both given by name."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


class CloudIdentityClientBase(ABC):
    """Abstract cloud identity (AWS IAM) capability."""

    def connect(self) -> bool:
        """Establish the authenticated session."""
        return True

    @abstractmethod
    def list_users(self) -> List[str]:
        pass

    @abstractmethod
    def list_groups_for_user(self, user: str) -> List[str]:
        pass

    @abstractmethod
    def group_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def add_user_to_group(self, group: str, user: str) -> None:
        pass

    @abstractmethod
    def remove_user_from_group(self, group: str, user: str) -> None:
        pass
