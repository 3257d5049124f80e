"""
Adds collected users to a group or team on a target collection.
"""

import logging
from typing import Callable, List

from tfs_user_sync.identity.base import IdentityServiceBase
from tfs_user_sync.logging_setup import audit_logger
from tfs_user_sync.models import MembershipResult, User

logger = logging.getLogger(__name__)


def qualified_group_name(project: str, group: str) -> str:
    return f"[{project}]\\{group}"


def add_users_to_group(service: IdentityServiceBase, project: str, group: str,
                       users: List[User], echo: Callable[[str], None] = print) -> List[MembershipResult]:
    """
    Add each user to ``[project]\\group`` on the target collection.

    Every add stands alone: a failure is reported and the next user is
    processed. If the group itself cannot be resolved nothing is changed.

    Args:
        service: Identity service connected to the target collection
        project: Team project name
        group: Group or team name within the project
        users: Users to add, processed in order
        echo: Receives one report line per user

    Returns:
        One result per user, or an empty list when the group was not found

    Raises:
        TfsAuthenticationError: If the target rejects the credentials
        TfsConnectionError: If the target cannot be reached
    """
    group_name = qualified_group_name(project, group)

    service.authenticate()

    group_identity = service.resolve_identity(group_name)
    if group_identity is None:
        logger.warning(f"Target group {group_name} not found on {service.name}")
        echo(f"{group_name} not found.")
        return []

    results = []
    for user in users:
        user_identity = service.resolve_identity(user.account_name)
        if user_identity is None:
            result = MembershipResult(user.account_name, MembershipResult.NOT_FOUND)
        else:
            try:
                service.add_member(group_identity, user_identity)
                result = MembershipResult(user.account_name, MembershipResult.ADDED)
                audit_logger.log_membership_change(group_name, user.account_name, True)
            except Exception as e:
                logger.error(f"Failed to add {user.account_name} to {group_name}: {e}")
                result = MembershipResult(user.account_name, MembershipResult.NOT_ADDED, str(e))
                audit_logger.log_membership_change(group_name, user.account_name, False)

        echo(str(result))
        results.append(result)

    _log_summary(group_name, results)
    return results


def _log_summary(group_name: str, results: List[MembershipResult]):
    counts = {MembershipResult.ADDED: 0, MembershipResult.NOT_ADDED: 0, MembershipResult.NOT_FOUND: 0}
    for result in results:
        counts[result.status] += 1

    logger.info(f"=== Membership Summary for {group_name} ===")
    logger.info(f"Users added: {counts[MembershipResult.ADDED]}")
    logger.info(f"Users not added: {counts[MembershipResult.NOT_ADDED]}")
    logger.info(f"Users not found: {counts[MembershipResult.NOT_FOUND]}")
