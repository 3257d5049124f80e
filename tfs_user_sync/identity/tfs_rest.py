"""
Team Foundation Server identity service.

Implements IdentityServiceBase on top of the TFS REST API
(``_apis/projectcollections`` and ``_apis/identities``). The same class serves
both ends of a sync: pointed at a configuration server URL it enumerates
collections; pointed at a collection URL it resolves identities and changes
group membership.
"""

import logging
from typing import Dict, List, Any, Optional
from urllib.parse import quote

from .base import IdentityServiceBase, TfsAPIError, TfsAuthenticationError
from tfs_user_sync.logging_setup import audit_logger
from tfs_user_sync.models import Collection, Identity

logger = logging.getLogger(__name__)

UNAUTHENTICATED_IDENTITY_TYPE = 'Microsoft.TeamFoundation.UnauthenticatedIdentity'


class TfsIdentityService(IdentityServiceBase):
    """
    TFS REST client for identity reads and group membership changes.
    """

    def __init__(self, base_url: str, config: Optional[Dict[str, Any]] = None,
                 valid_users_group: str = 'Project Collection Valid Users'):
        """
        Initialize TFS identity service.

        Args:
            base_url: Configuration server URL (source) or collection URL (target)
            config: Server configuration section
            valid_users_group: Name of the built-in group listing a collection's users
        """
        super().__init__(base_url, config)
        self.batch_size = self.config.get('batch_size', 100)
        self.valid_users_group = valid_users_group

    def authenticate(self) -> str:
        return self._ensure_authenticated('')

    def _ensure_authenticated(self, scope: str) -> str:
        """Read connection data for ``scope`` ('' for base_url) and return the user's name."""
        location = f"{self.name}/{scope}" if scope else self.name
        path = f"{scope}/_apis/connectionData" if scope else '_apis/connectionData'
        username = self.auth_config.get('username', '')

        try:
            data = self.request('GET', path, params={'api-version': None})
        except TfsAuthenticationError:
            audit_logger.log_authentication_attempt(location, username, False)
            raise

        user = data.get('authenticatedUser') or {}
        if not user or user.get('descriptor', '').startswith(UNAUTHENTICATED_IDENTITY_TYPE):
            audit_logger.log_authentication_attempt(location, username, False)
            raise TfsAuthenticationError(f"Server did not authenticate the request: {location}")

        display_name = user.get('customDisplayName') or user.get('providerDisplayName', '')
        audit_logger.log_authentication_attempt(location, display_name, True)
        logger.info(f"Authenticated to {location} as {display_name}")
        return display_name

    def list_collections(self) -> List[Collection]:
        """
        Get all project collections hosted by the configuration server.

        Returns:
            Collections in the order the server reports them
        """
        collections = []
        skip = 0

        while True:
            response = self.request('GET', '_apis/projectcollections', params={
                '$top': self.batch_size,
                '$skip': skip,
                'api-version': '1.0'
            })
            page = response.get('value', [])
            for item in page:
                collections.append(Collection(
                    id=item.get('id', ''),
                    name=item['name'],
                    url=item.get('url')
                ))

            if len(page) < self.batch_size:
                break
            skip += len(page)

        logger.info(f"Found {len(collections)} collections on {self.name}")
        return collections

    def list_valid_users(self, collection: Collection) -> List[Identity]:
        """
        Get the expanded membership of a collection's valid users group.

        Args:
            collection: Collection hosted by this configuration server

        Returns:
            Member identities, including groups and system identities
        """
        scope = quote(collection.name, safe='')
        self._ensure_authenticated(scope)

        group_name = f"[{collection.name}]\\{self.valid_users_group}"
        groups = self._read_identities(scope, {
            'searchFilter': 'General',
            'filterValue': group_name,
            'queryMembership': 'Expanded'
        })
        group = next((identity for identity in groups if identity.is_container), None)
        if group is None:
            logger.warning(f"Group {group_name} not found in collection {collection.name}")
            return []

        logger.debug(f"{group_name} has {len(group.members)} expanded members")

        members = []
        descriptors = list(group.members)
        for start in range(0, len(descriptors), self.batch_size):
            batch = descriptors[start:start + self.batch_size]
            members.extend(self._read_identities(scope, {
                'descriptors': ','.join(batch),
                'queryMembership': 'None'
            }))

        return members

    def resolve_identity(self, account_name: str) -> Optional[Identity]:
        """
        Find an identity by account name.

        Args:
            account_name: ``DOMAIN\\user`` for users or ``[Project]\\Group`` for groups

        Returns:
            The identity, or None if the server does not know it
        """
        identities = self._read_identities('', {
            'searchFilter': 'AccountName',
            'filterValue': account_name,
            'queryMembership': 'None'
        })
        if not identities:
            logger.debug(f"Identity '{account_name}' not found on {self.name}")
            return None
        return identities[0]

    def add_member(self, group: Identity, member: Identity) -> None:
        """
        Add an identity to a group or team.

        Raises:
            TfsAPIError: If the server rejects the change
        """
        path = f"_apis/identities/{quote(group.descriptor, safe='')}/members/{quote(member.id, safe='')}"
        logger.debug(f"Adding {member.account_name} to {group.account_name}")
        self.request('PUT', path)

    def _read_identities(self, scope: str, params: Dict[str, Any]) -> List[Identity]:
        """Run an identities query under ``scope`` and parse the results."""
        path = f"{scope}/_apis/identities" if scope else '_apis/identities'
        response = self.request('GET', path, params=params)
        # Lookups by descriptor answer null for unknown entries
        return [self._parse_identity(item) for item in response.get('value', []) if item]

    def _parse_identity(self, data: Dict[str, Any]) -> Identity:
        """Map a REST identity to an Identity record."""
        try:
            descriptor = data['descriptor']
            identifier = data['id']
        except KeyError as e:
            raise TfsAPIError(f"Identity without {e} in response from {self.name}")

        is_container = bool(data.get('isContainer', False))
        provider_name = data.get('providerDisplayName', '')
        display_name = data.get('customDisplayName') or provider_name

        if is_container:
            # Groups are addressed as [scope]\name, which is their provider name
            account_name = provider_name
        else:
            properties = data.get('properties') or {}
            account = self._property_value(properties, 'Account')
            domain = self._property_value(properties, 'Domain')
            account_name = f"{domain}\\{account}" if domain and account else account or provider_name

        return Identity(
            id=identifier,
            descriptor=descriptor,
            display_name=display_name,
            account_name=account_name,
            is_container=is_container,
            members=tuple(data.get('members') or ())
        )

    @staticmethod
    def _property_value(properties: Dict[str, Any], name: str) -> str:
        """Unwrap a ``{"$type": ..., "$value": ...}`` identity property."""
        value = properties.get(name)
        if isinstance(value, dict):
            value = value.get('$value')
        return value or ''
