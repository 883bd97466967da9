"""
User model shared by the directory and Uyuni sides of the sync.
"""

from typing import Iterable, List, Optional


class User:
    """
    Canonical representation of an account and its roles.

    A user is identified by ``uid`` on both sides. Directory users carry
    their ``dn``; users read from Uyuni leave it empty.
    """

    def __init__(self, uid: str = '', dn: str = '', given_name: str = '',
                 family_name: str = '', email: str = '', roles: Optional[Iterable[str]] = None):
        self.uid = uid
        self.dn = dn
        self.given_name = given_name
        self.family_name = family_name
        self.email = email
        self.roles = set(roles or ())

        self.is_new = False
        self.is_outdated = False

        # Diagnostics only
        self.account_changed = False
        self.roles_changed = False

        # Set when creating the account in Uyuni failed
        self.error = None

    def add_roles(self, *roles: str) -> 'User':
        self.roles.update(roles)
        return self

    def flush_roles(self) -> 'User':
        self.roles.clear()
        return self

    def get_roles(self) -> List[str]:
        """Return the roles in a stable order."""
        return sorted(self.roles)

    def same_roles(self, other: 'User') -> bool:
        return self.roles == other.roles

    def is_valid(self) -> bool:
        return self.error is None

    def clone(self) -> 'User':
        """Return an independent copy, including flags."""
        copy = User(self.uid, self.dn, self.given_name, self.family_name, self.email, self.roles)
        copy.is_new = self.is_new
        copy.is_outdated = self.is_outdated
        copy.account_changed = self.account_changed
        copy.roles_changed = self.roles_changed
        copy.error = self.error
        return copy

    def __repr__(self):
        return f"User(uid={self.uid!r}, dn={self.dn!r}, roles={self.get_roles()!r})"
