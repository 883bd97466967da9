"""
Reconciliation of LDAP users into the Uyuni account store.

The engine builds three user sets on every run:

- the *staged* set: directory users reachable through a configured group or
  organizational role, i.e. the users Uyuni should contain;
- the *full* set: every person under the "all users" base DN, used only to
  tell users who left the managed groups apart from accounts LDAP does not
  manage at all;
- the Uyuni set: the accounts currently in Uyuni, minus the frozen ones.

It then classifies users as new, outdated or deleted and pushes the changes.
Nothing is cached between runs.
"""

import logging
from typing import Dict, Any, List

from uyuni_ldap_sync.attributes import AttributeMapper
from uyuni_ldap_sync.ldap_client import DirectoryEntry
from uyuni_ldap_sync.logging_setup import security_logger
from uyuni_ldap_sync.models import User
from uyuni_ldap_sync.roles import RoleSource, RoleSourceResolver
from uyuni_ldap_sync.uyuni_client import UyuniAPIError, UyuniAuthenticationError, UyuniConnectionError

logger = logging.getLogger(__name__)

ADMIN_ROLE = 'org_admin'
ANY_OBJECT_FILTER = '(objectClass=*)'
PERSON_FILTER = '(objectClass=organizationalPerson)'

# Value passed as the usePamAuth flag on create and update
PAM_AUTHENTICATION = 1


class SyncAbort(Exception):
    """Raised when the run cannot continue without risking a wrong result."""
    pass


class LockoutError(SyncAbort):
    """Raised when no frozen account holds the administrative role."""
    pass


class SyncResult:
    """Outcome of a push: the classified users and the failed creations."""

    def __init__(self, new_users: List[User], outdated_users: List[User],
                 deleted_users: List[User], failed_users: List[User]):
        self.new_users = new_users
        self.outdated_users = outdated_users
        self.deleted_users = deleted_users
        self.failed_users = failed_users

    @property
    def added(self) -> int:
        return len(self.new_users) - len(self.failed_users)

    @property
    def updated(self) -> int:
        return len(self.outdated_users)

    @property
    def removed(self) -> int:
        return len(self.deleted_users)


class UserReconciler:
    """
    Reconciles the directory view of users and roles with Uyuni.

    Args:
        directory_config: The ``directory`` configuration section
        ldap_client: Connected (or connectable) LDAPClient
        uyuni_client: UyuniClient bound to the destination server
    """

    def __init__(self, directory_config: Dict[str, Any], ldap_client, uyuni_client):
        self.ldap_client = ldap_client
        self.uyuni_client = uyuni_client

        self.all_users_dn = directory_config['allusers']
        self.frozen = frozenset(directory_config.get('frozen') or [])
        self.attributes = AttributeMapper(directory_config.get('attrmap'))
        self.resolver = RoleSourceResolver(ldap_client, [
            RoleSource.organizational_roles(directory_config.get('roles') or {}),
            RoleSource.groups(directory_config.get('groups') or {}),
        ])

        self.ldap_users = []
        self.all_ldap_users = []
        self.uyuni_users = []
        self.result = None

    def start(self) -> 'UserReconciler':
        """
        Open the directory session and classify every user.

        The lockout guard runs before anything else is read.
        """
        self.ldap_client.connect()

        self.verify_ignored_users()
        self.refresh_existing_uyuni_users()
        self.refresh_staged_ldap_users()
        self.refresh_all_ldap_users()
        self.refresh_uyuni_users_status()

        return self

    def finish(self):
        self.ldap_client.disconnect()

    def verify_ignored_users(self):
        """
        Make sure at least one frozen account keeps administrative access.

        Raises:
            LockoutError: If no frozen account has the 'org_admin' role
        """
        for uid in sorted(self.frozen):
            try:
                roles = self.uyuni_client.call('user.listRoles', uid)
            except UyuniAuthenticationError:
                raise
            except UyuniConnectionError as e:
                logger.error(f"Cannot read roles of frozen account '{uid}', Uyuni is unreachable: {e}")
                continue
            except UyuniAPIError as e:
                logger.error(f"No users has been found with the UID '{uid}': {e}")
                continue

            if ADMIN_ROLE in roles:
                logger.debug(f"Frozen account '{uid}' holds the '{ADMIN_ROLE}' role")
                return

        security_logger.log_security_event("Lockout guard failed",
                                           f"no frozen account holds '{ADMIN_ROLE}'")
        raise LockoutError(
            f"In Uyuni server no actual frozen accounts found with the role '{ADMIN_ROLE}'. "
            "You are risking permanently locking Uyuni server, if you have incorrect LDAP users settings.")

    def refresh_existing_uyuni_users(self) -> List[User]:
        """
        Read every non-frozen Uyuni account with its details and roles.

        Raises:
            SyncAbort: If any of the listing calls fails
        """
        self.uyuni_users = []
        try:
            for account in self.uyuni_client.call('user.listUsers'):
                uid = account['login']
                if uid in self.frozen:
                    continue

                details = self.uyuni_client.call('user.getDetails', uid)
                user = User(uid=uid,
                            given_name=details.get('first_name', ''),
                            family_name=details.get('last_name', ''),
                            email=details.get('email', ''))
                user.add_roles(*self.uyuni_client.call('user.listRoles', uid))
                self.uyuni_users.append(user)
        except UyuniAPIError as e:
            raise SyncAbort(f"Unable to read existing Uyuni users: {e}")

        logger.info(f"Found {len(self.uyuni_users)} existing Uyuni users")
        return self.uyuni_users

    def _attribute(self, name: str) -> str:
        return self.attributes.resolve(self.all_users_dn, name)

    def _first_value(self, entry: DirectoryEntry, *names: str) -> str:
        for name in names:
            value = entry.get_value(name)
            if value:
                return value
        return ''

    def _user_from_entry(self, entry: DirectoryEntry) -> User:
        user = User(dn=entry.dn,
                    uid=entry.get_value(self._attribute('uid')),
                    email=entry.get_value(self._attribute('mail')))

        cn = entry.get_value('cn').split(' ')
        if len(cn) == 2:
            user.given_name, user.family_name = cn
        else:
            user.given_name = self._first_value(entry, self._attribute('name'), self._attribute('givenName'))
            user.family_name = entry.get_value(self._attribute('sn'))
        return user

    def user_from_dn(self, dn: str) -> User:
        """
        Build a user from the single directory entry found under ``dn``.

        If the DN matches no entry or more than one, the error is logged and
        a user with only the DN set is returned; callers skip it because its
        uid is empty.
        """
        entries = self.ldap_client.search(dn, ANY_OBJECT_FILTER)
        if len(entries) != 1:
            logger.error(f"DN '{dn}' matches more or less than one distinct user")
            return User(dn=dn)
        return self._user_from_entry(entries[0])

    def refresh_all_ldap_users(self) -> List[User]:
        """Read every person under the "all users" base DN."""
        self.all_ldap_users = [
            self._user_from_entry(entry)
            for entry in self.ldap_client.search(self.all_users_dn, PERSON_FILTER)
        ]
        logger.debug(f"Found {len(self.all_ldap_users)} users under {self.all_users_dn}")
        return self.all_ldap_users

    def refresh_staged_ldap_users(self) -> List[User]:
        """Build the users that belong in Uyuni, with their resolved roles."""
        self.ldap_users = []
        for dn in sorted(self.resolver.member_dns()):
            user = self.user_from_dn(dn)
            if not user.uid:
                continue
            if user.uid in self.frozen:
                logger.debug(f"Skipping frozen user '{user.uid}'")
                continue
            self.resolver.apply(user)
            self.ldap_users.append(user)

        logger.info(f"Found {len(self.ldap_users)} LDAP users to be managed in Uyuni")
        return self.ldap_users

    def _compare(self, ldap_user: User, uyuni_user: User) -> bool:
        """Compare account data and roles, flagging what differs on ``ldap_user``."""
        for field in ('email', 'given_name', 'family_name'):
            old, new = getattr(uyuni_user, field), getattr(ldap_user, field)
            if old != new:
                ldap_user.account_changed = True
                logger.debug(f"User {ldap_user.uid} {field} has been changed from '{old}' to '{new}'")

        if not ldap_user.same_roles(uyuni_user):
            ldap_user.roles_changed = True
            logger.debug(f"User {ldap_user.uid} role set has been changed from "
                         f"{uyuni_user.get_roles()} to {ldap_user.get_roles()}")

        return not (ldap_user.account_changed or ldap_user.roles_changed)

    def refresh_uyuni_users_status(self) -> List[User]:
        """
        Mark staged users as new or outdated and merge them into the Uyuni set.

        Existing Uyuni users are overwritten with the directory data, so the
        push works from one consistent list. New users are appended as copies.
        """
        by_uid = {user.uid: user for user in self.uyuni_users}
        new_users = []

        for ldap_user in self.ldap_users:
            uyuni_user = by_uid.get(ldap_user.uid)
            ldap_user.is_new = uyuni_user is None
            if ldap_user.is_new:
                new_users.append(ldap_user.clone())
                continue

            ldap_user.is_outdated = not self._compare(ldap_user, uyuni_user)

            uyuni_user.is_outdated = ldap_user.is_outdated
            uyuni_user.account_changed = ldap_user.account_changed
            uyuni_user.roles_changed = ldap_user.roles_changed
            uyuni_user.given_name = ldap_user.given_name
            uyuni_user.family_name = ldap_user.family_name
            uyuni_user.email = ldap_user.email
            uyuni_user.flush_roles().add_roles(*ldap_user.roles)

        self.uyuni_users.extend(new_users)
        return self.uyuni_users

    def get_new_users(self) -> List[User]:
        return [user for user in self.uyuni_users if user.is_new]

    def get_outdated_users(self) -> List[User]:
        return [user for user in self.uyuni_users if not user.is_new and user.is_outdated]

    def get_deleted_users(self) -> List[User]:
        """
        Users known to LDAP and Uyuni that no configured group or role stages.

        Uyuni accounts absent from the full directory set are left alone.
        """
        staged = {user.uid for user in self.ldap_users}
        existing = {user.uid for user in self.uyuni_users if not user.is_new}
        return [user for user in self.all_ldap_users
                if user.uid and user.uid not in staged and user.uid in existing]

    def sync_users(self) -> List[User]:
        """
        Push new, outdated and deleted users to Uyuni, in that order.

        Failures of single calls are logged and do not stop the run.

        Returns:
            Users whose account could not be created
        """
        logger.info("Begin user synchronisation between LDAP and Uyuni server")

        failed = []
        new_users = self.get_new_users()
        if new_users:
            logger.debug(f"Found {len(new_users)} new users")
        for user in new_users:
            logger.debug(f"New user: {user.uid}")
            if self._create_user(user):
                self.push_user_roles(user)
            else:
                failed.append(user)

        outdated_users = self.get_outdated_users()
        if outdated_users:
            logger.debug(f"Updating {len(outdated_users)} users")
        for user in outdated_users:
            logger.debug(f"Update data for user: {user.uid}")
            self.push_user_roles(user)
            security_logger.log_user_operation('update', user.uid, self.push_user_account_data(user))

        deleted_users = self.get_deleted_users()
        if deleted_users:
            logger.debug(f"Deleting removed {len(deleted_users)} users")
        for user in deleted_users:
            logger.debug(f"Remove user: {user.uid}")
            self.delete_user(user)

        logger.info(f"Added {len(new_users)} new users, updated {len(outdated_users)} existing users, "
                    f"removed {len(deleted_users)} users")
        logger.info("End user synchronisation between LDAP and Uyuni server")

        self.result = SyncResult(new_users, outdated_users, deleted_users, failed)
        return failed

    def _create_user(self, user: User) -> bool:
        try:
            self.uyuni_client.call('user.create', user.uid, '', user.given_name,
                                   user.family_name, user.email, PAM_AUTHENTICATION)
        except UyuniAPIError as e:
            user.error = e
            logger.error(f"Failed to create user {user.uid} due to {e}")
            security_logger.log_user_operation('create', user.uid, False)
            return False

        security_logger.log_user_operation('create', user.uid, True)
        return True

    def delete_user(self, user: User) -> bool:
        try:
            self.uyuni_client.call('user.delete', user.uid)
        except UyuniAPIError as e:
            logger.error(f"Cannot delete users '{user.uid}': {e}")
            security_logger.log_user_operation('delete', user.uid, False)
            return False

        security_logger.log_user_operation('delete', user.uid, True)
        return True

    def push_user_account_data(self, user: User) -> bool:
        """Push name and e-mail, then re-assert PAM authentication."""
        try:
            self.uyuni_client.call('user.setDetails', user.uid, {
                'first_name': user.given_name,
                'last_name': user.family_name,
                'email': user.email,
            })
        except UyuniAPIError as e:
            logger.error(f"Failed to push user account data for {user.uid}: {e}")
            return False

        try:
            self.uyuni_client.call('user.usePamAuthentication', user.uid, PAM_AUTHENTICATION)
        except UyuniAPIError as e:
            logger.error(f"Failed to push user authentication settings for {user.uid}: {e}")
            return False

        return True

    def push_user_roles(self, user: User):
        """
        Replace the user's Uyuni roles with the directory role set.

        Every current role is removed and every directory role added, even
        when only one of them changed.
        """
        try:
            current_roles = self.uyuni_client.call('user.listRoles', user.uid)
        except UyuniAPIError as e:
            logger.error(f"Cannot list roles for user '{user.uid}': {e}")
            return

        for role in current_roles:
            try:
                self.uyuni_client.call('user.removeRole', user.uid, role)
                logger.debug(f"Removed role '{role}' from '{user.uid}'")
            except UyuniAPIError as e:
                logger.error(f"Cannot remove role '{role}' from '{user.uid}': {e}")

        for role in user.get_roles():
            try:
                self.uyuni_client.call('user.addRole', user.uid, role)
                logger.debug(f"Added role '{role}' to '{user.uid}'")
            except UyuniAPIError as e:
                logger.error(f"Cannot add role '{role}' to '{user.uid}': {e}")

    def plan(self) -> Dict[str, List[User]]:
        """Classified users without pushing anything."""
        return {
            'new': self.get_new_users(),
            'outdated': self.get_outdated_users(),
            'deleted': self.get_deleted_users(),
        }


def describe_user(user: User) -> str:
    """One-line description of a classified user for reports."""
    changes = []
    if user.account_changed:
        changes.append('account')
    if user.roles_changed:
        changes.append('roles')
    suffix = f" changed: {', '.join(changes)}" if changes else ''
    return f"{user.uid} <{user.email}> roles={','.join(user.get_roles()) or '-'}{suffix}"
