"""
Collects the valid users of every collection on a source server.
"""

import logging
from typing import Iterable, List, Optional

from tfs_user_sync.config import DEFAULT_EXCLUDED_IDENTITY_TYPES
from tfs_user_sync.identity.base import IdentityServiceBase
from tfs_user_sync.models import Identity, User

logger = logging.getLogger(__name__)


def is_user_identity(identity: Identity, excluded_types: Iterable[str]) -> bool:
    """True for individual accounts: not a group and not a system identity type."""
    return not identity.is_container and identity.identity_type not in excluded_types


def collect_valid_users(service: IdentityServiceBase,
                        excluded_types: Optional[Iterable[str]] = None) -> List[User]:
    """
    Gather the users of all collections on the server behind ``service``.

    Users are deduplicated by account name (the first collection to report a
    user wins) and returned sorted by display name; users sharing a display
    name keep the order they were found in.

    Args:
        service: Identity service connected to the source configuration server
        excluded_types: Identity types to drop besides groups

    Returns:
        Sorted list of users, possibly empty

    Raises:
        TfsAuthenticationError: If the server or a collection rejects the credentials
        TfsConnectionError: If the server cannot be reached
    """
    if excluded_types is None:
        excluded_types = DEFAULT_EXCLUDED_IDENTITY_TYPES
    excluded_types = frozenset(excluded_types)

    service.authenticate()

    users = []
    seen_accounts = set()

    for collection in service.list_collections():
        members = service.list_valid_users(collection)
        kept = 0

        for identity in members:
            if not is_user_identity(identity, excluded_types):
                continue
            kept += 1
            if identity.account_name in seen_accounts:
                continue
            seen_accounts.add(identity.account_name)
            users.append(identity.to_user())

        logger.info(f"Collection {collection.name}: {len(members)} members read, {kept} users kept")

    # Case-insensitive first, exact spelling breaks ties
    users.sort(key=lambda user: (user.display_name.casefold(), user.display_name))

    logger.info(f"Collected {len(users)} distinct users from {service.name}")
    return users
