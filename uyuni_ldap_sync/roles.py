"""
Role sources: directory groups and organizational roles mapped to Uyuni roles.
"""

import logging
from typing import Dict, List, Iterable, Set

from uyuni_ldap_sync.models import User

logger = logging.getLogger(__name__)

ROLE_FILTER = '(objectClass=organizationalRole)'
GROUP_FILTER = '(|(objectClass=groupOfNames)(objectClass=group))'


class RoleSource:
    """
    A configured rule granting Uyuni roles to the members of directory objects.

    Args:
        name: Label used in log messages
        search_filter: Object class filter selecting the directory objects
        member_attribute: Attribute listing the member DNs
        mapping: Directory object DN -> list of Uyuni role names
    """

    def __init__(self, name: str, search_filter: str, member_attribute: str,
                 mapping: Dict[str, List[str]]):
        self.name = name
        self.search_filter = search_filter
        self.member_attribute = member_attribute
        self.mapping = {dn: list(roles) for dn, roles in (mapping or {}).items()}

    @classmethod
    def organizational_roles(cls, mapping: Dict[str, List[str]]) -> 'RoleSource':
        return cls('roles', ROLE_FILTER, 'roleOccupant', mapping)

    @classmethod
    def groups(cls, mapping: Dict[str, List[str]]) -> 'RoleSource':
        return cls('groups', GROUP_FILTER, 'member', mapping)

    def __repr__(self):
        return f"RoleSource({self.name!r}, {len(self.mapping)} mappings)"


class RoleSourceResolver:
    """
    Works out which Uyuni roles a directory user is entitled to.

    Every mapping of every source is evaluated; contributions are unioned,
    so evaluation order and duplicate grants do not matter.
    """

    def __init__(self, ldap_client, sources: Iterable[RoleSource]):
        self.ldap_client = ldap_client
        self.sources = list(sources)

    def roles_for(self, user: User) -> Set[str]:
        roles = set()
        if not user.dn:
            return roles

        for source in self.sources:
            for dn, uyuni_roles in source.mapping.items():
                for entry in self.ldap_client.search(dn, source.search_filter):
                    if user.dn in entry.get_values(source.member_attribute):
                        logger.debug(f"User {user.uid} gets {uyuni_roles} from {source.name} entry {entry.dn}")
                        roles.update(uyuni_roles)
        return roles

    def apply(self, user: User) -> User:
        """Merge the resolved roles into the user's role set."""
        return user.add_roles(*self.roles_for(user))

    def member_dns(self) -> Set[str]:
        """
        Distinct DNs listed as members or occupants of any configured object.

        Both member attributes are read from every configured DN, whatever
        the source it belongs to.
        """
        attributes = {source.member_attribute for source in self.sources}
        dns = set()
        for source in self.sources:
            for dn in source.mapping:
                for entry in self.ldap_client.search(dn, '(objectClass=*)'):
                    for attribute in attributes:
                        dns.update(entry.get_values(attribute))
        return dns
