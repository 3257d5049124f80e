"""
Records passed between the identity services and the sync steps.
"""

from typing import NamedTuple, Optional, Tuple


class User(NamedTuple):
    """A user collected from the source server, keyed by account name."""
    display_name: str
    account_name: str

    def __str__(self):
        return f"[{self.display_name};{self.account_name}]"


class Identity(NamedTuple):
    """
    An identity as read from a TFS server.

    ``descriptor`` is the ``<identity type>;<identifier>`` reference used for
    membership changes. ``members`` holds member descriptors and is only
    filled for groups read with expanded membership.
    """
    id: str
    descriptor: str
    display_name: str
    account_name: str
    is_container: bool = False
    members: Tuple[str, ...] = ()

    @property
    def identity_type(self) -> str:
        return self.descriptor.split(';', 1)[0]

    def to_user(self) -> User:
        return User(display_name=self.display_name, account_name=self.account_name)


class Collection(NamedTuple):
    """A team project collection hosted by a configuration server."""
    id: str
    name: str
    url: Optional[str] = None


class MembershipResult(NamedTuple):
    """Outcome of adding one user to the target group."""
    ADDED = 'added'
    NOT_ADDED = 'not_added'
    NOT_FOUND = 'not_found'

    account_name: str
    status: str
    message: str = ''

    def __str__(self):
        if self.status == self.ADDED:
            return f"{self.account_name} added."
        if self.status == self.NOT_ADDED:
            return f"{self.account_name} not added: {self.message}"
        return f"{self.account_name} not found."
