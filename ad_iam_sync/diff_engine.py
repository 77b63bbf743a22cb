"""
Membership diff engine.

Pure functions that decide which identities take part in a run and which
membership change a single mapping requires for a single identity. Mappings
that share a destination group are reduced to one decision per group.
"""

from enum import Enum
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from ad_iam_sync.config import ControllerMode, GroupMapping


class ActionType(Enum):
    ADD = 'add'
    REMOVE = 'remove'
    NOOP = 'noop'


class System(Enum):
    DIRECTORY = 'directory'
    CLOUD = 'cloud'


@dataclass(frozen=True)
class Identity:
    """A user known to both systems, with each system's spelling of the name."""

    directory_name: str
    cloud_name: str

    @property
    def key(self) -> str:
        return self.directory_name.casefold()

    def __str__(self):
        return self.directory_name


@dataclass(frozen=True)
class SyncAction:
    """One membership change (or the decision to change nothing)."""

    action_type: ActionType
    identity: Identity
    target_group: str
    destination: System

    @property
    def is_noop(self) -> bool:
        return self.action_type is ActionType.NOOP

    @property
    def user_name(self) -> str:
        """The identity's name as the destination system spells it."""
        if self.destination is System.CLOUD:
            return self.identity.cloud_name
        return self.identity.directory_name

    def describe(self) -> str:
        if self.is_noop:
            return f"No change for {self.identity} in {self.destination.value} group {self.target_group}"
        verb = 'Add' if self.action_type is ActionType.ADD else 'Remove'
        preposition = 'to' if self.action_type is ActionType.ADD else 'from'
        return f"{verb} {self.user_name} {preposition} {self.destination.value} group {self.target_group}"


def normalize_names(names: Iterable[str]) -> Set[str]:
    """Case-fold a collection of user or group names for comparison."""
    return {name.casefold() for name in names if name}


def intersect_identities(directory_users: Iterable[str], cloud_users: Iterable[str]) -> List[Identity]:
    """
    Find the users present in both systems.

    Names match case-insensitively. The result is sorted by name so runs are
    reproducible.
    """
    cloud_by_key = {}
    for name in cloud_users:
        if name:
            cloud_by_key.setdefault(name.casefold(), name)

    identities = {}
    for name in directory_users:
        if not name:
            continue
        key = name.casefold()
        if key in cloud_by_key and key not in identities:
            identities[key] = Identity(directory_name=name, cloud_name=cloud_by_key[key])

    return [identities[key] for key in sorted(identities)]


def compute_action(identity: Identity, mapping: GroupMapping, source_membership: Iterable[str],
                   destination_membership: Optional[Iterable[str]], direction: ControllerMode) -> SyncAction:
    """
    Decide the membership change one mapping requires for one identity.

    With the directory as source of truth the IAM group always receives an
    add or remove, whatever its current state; the IAM calls are idempotent.
    With the cloud as source of truth the directory group only changes when
    its current membership disagrees.

    Args:
        identity: User being reconciled
        mapping: Directory/IAM group pair
        source_membership: Group names the user holds in the source system
        destination_membership: Group names the user holds in the destination
            system (not consulted when the directory is the source)
        direction: Source of truth for the run

    Returns:
        The required SyncAction
    """
    source = normalize_names(source_membership)

    if direction is ControllerMode.DIRECTORY:
        desired = mapping.directory_group.casefold() in source
        action_type = ActionType.ADD if desired else ActionType.REMOVE
        return SyncAction(action_type, identity, mapping.cloud_group, System.CLOUD)

    if direction is ControllerMode.CLOUD:
        desired = mapping.cloud_group.casefold() in source
        current = mapping.directory_group.casefold() in normalize_names(destination_membership or ())
        if desired and not current:
            action_type = ActionType.ADD
        elif current and not desired:
            action_type = ActionType.REMOVE
        else:
            action_type = ActionType.NOOP
        return SyncAction(action_type, identity, mapping.directory_group, System.DIRECTORY)

    raise ValueError(f"Unsupported sync direction: {direction}")


def effective_mappings(mappings: Iterable[GroupMapping], source_membership: Iterable[str],
                       direction: ControllerMode) -> List[GroupMapping]:
    """
    Reduce the mappings to one per destination group.

    Several mappings may share a destination group (two IAM groups granting
    the same directory group, for example). The user belongs in that group
    when they hold ANY of its mapped source groups, so the mapping kept for
    each destination group is the first whose source group the user holds,
    or else the first listed. Destination groups keep their first-listed
    order.

    Args:
        mappings: Configured directory/IAM group pairs
        source_membership: Group names the user holds in the source system
        direction: Source of truth for the run

    Returns:
        One mapping per distinct destination group
    """
    source = normalize_names(source_membership)
    chosen = {}

    for mapping in mappings:
        if direction is ControllerMode.CLOUD:
            target, source_group = mapping.directory_group, mapping.cloud_group
        else:
            target, source_group = mapping.cloud_group, mapping.directory_group

        key = target.casefold()
        current = chosen.get(key)
        if current is None:
            chosen[key] = (mapping, source_group.casefold() in source)
        elif not current[1] and source_group.casefold() in source:
            chosen[key] = (mapping, True)

    return [mapping for mapping, _ in chosen.values()]
