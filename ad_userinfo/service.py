"""
Active Directory user service.

ADUserService is the single entry point for user lookups, status checks,
group queries and the Excel export. Every operation opens its own bound
session and releases it before returning; the ``*_async`` variants run the
same call on the service's thread pool.

Two error policies apply:

* lookups (``get_*``, ``search_users``, ``export_all_users_to_excel``) wrap
  directory failures in DirectoryOperationError and return None or an empty
  list when nothing matches;
* probes (``user_exists*``, ``is_user_*``, ``validate_credentials``,
  ``get_user_photo``) never raise and report failures as False or None.
"""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ldap3 import ALL_ATTRIBUTES
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import parse_dn

from .config import ConfigurationError, ConnectionConfig
from .export import write_users_workbook
from .ldap_client import DirectoryConnectionError, DirectoryQueryError, DirectorySession, LDAPClient
from .logging_setup import security_logger
from .models import DirectoryEntry, UserRecord
from .normalize import (UF_ACCOUNTDISABLE, first_value, format_object_sid, is_locked_out,
                        to_int, to_record, to_text, to_text_list)

logger = logging.getLogger(__name__)


USER_ATTRIBUTES = [ALL_ATTRIBUTES, 'msDS-User-Account-Control-Computed']
GROUP_ATTRIBUTES = ['cn', 'name', 'sAMAccountName', 'distinguishedName', 'objectSid']

# LDAP_MATCHING_RULE_IN_CHAIN, walks nested group membership on the server
IN_CHAIN_RULE = '1.2.840.113556.1.4.1941'

TRANSPORT_ERRORS = (LDAPException, DirectoryConnectionError, DirectoryQueryError)


def user_filter(condition: str = '') -> str:
    """Filter matching user objects, optionally narrowed by ``condition``."""
    return f"(&(objectCategory=person)(objectClass=user){condition})"


def _rdn_value(dn: Optional[str]) -> Optional[str]:
    """Value of the first RDN, e.g. ``Sales`` for ``CN=Sales,OU=Groups,...``."""
    if not dn:
        return None
    try:
        return parse_dn(dn, escape=False)[0][1] or None
    except (LDAPException, IndexError):
        return None


class DirectoryOperationError(Exception):
    """Raised when a directory lookup fails for a reason other than "not found"."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self):
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class ADUserService:
    """
    Look up Active Directory users and export them to Excel.

    Construct with nothing (default domain), a domain, a domain and
    container, a domain and credentials, or all four; or pass a ready
    ConnectionConfig.
    """

    def __init__(self, domain: Optional[str] = None, container: Optional[str] = None,
                 username: Optional[str] = None, password: Optional[str] = None, *,
                 config: Optional[ConnectionConfig] = None, client: Optional[LDAPClient] = None,
                 max_workers: int = 4):
        if config is None:
            config = ConnectionConfig(domain=domain, container=container, username=username, password=password)
        elif any(value is not None for value in (domain, container, username, password)):
            raise ConfigurationError("Pass either connection fields or a ConnectionConfig, not both")

        self.config = config
        self._client = client or LDAPClient(config)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='ad-userinfo')
        logger.debug(f"ADUserService created for {config.search_path}")

    @classmethod
    def from_config(cls, config: Dict[str, Any], **kwargs) -> 'ADUserService':
        """Create a service from a loaded configuration dictionary."""
        return cls(config=ConnectionConfig.from_dict(config.get('directory') or {}), **kwargs)

    def close(self):
        """Shut down the worker pool used by the async operations."""
        self._executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # helpers

    @contextmanager
    def _operation(self, description: str):
        """Turn directory failures raised in the block into DirectoryOperationError."""
        try:
            yield
        except TRANSPORT_ERRORS as e:
            logger.error(f"{description}: {e}")
            raise DirectoryOperationError(description, e) from e

    def _find_user(self, session: DirectorySession, attribute: str, value: str,
                   attributes: Sequence[str] = USER_ATTRIBUTES) -> Optional[DirectoryEntry]:
        entries = session.search(
            user_filter(f"({attribute}={escape_filter_chars(value)})"),
            attributes,
            size_limit=1
        )
        return entries[0] if entries else None

    def _find_group(self, session: DirectorySession, group_name: str) -> Optional[DirectoryEntry]:
        """Resolve a group by account name, common name or distinguished name."""
        value = escape_filter_chars(group_name)
        entries = session.search(
            f"(&(objectClass=group)(|(sAMAccountName={value})(cn={value})(distinguishedName={value})))",
            GROUP_ATTRIBUTES,
            size_limit=1
        )
        return entries[0] if entries else None

    def _token_sids(self, session: DirectorySession, user_dn: str) -> List[str]:
        """SIDs of every group in the user's security token, nested and primary groups included."""
        entry = session.read(user_dn, ['tokenGroups'])
        if entry is None:
            return []
        raw = entry.get('tokenGroups') or []
        if not isinstance(raw, (list, tuple)):
            raw = [raw]
        return [sid for sid in (format_object_sid(value) for value in raw) if sid]

    def _authorization_groups(self, session: DirectorySession, user_dn: str) -> List[Tuple[str, str]]:
        """Resolve the user's token groups to (name, distinguished name) pairs."""
        sids = self._token_sids(session, user_dn)
        if not sids:
            return []
        sid_filter = ''.join(f"(objectSid={escape_filter_chars(sid)})" for sid in sids)
        groups = []
        for entry in session.search(f"(|{sid_filter})", GROUP_ATTRIBUTES):
            dn = to_text(entry.get('distinguishedName')) or entry.dn
            name = (to_text(entry.get('cn')) or to_text(entry.get('name'))
                    or to_text(entry.get('sAMAccountName')) or _rdn_value(dn))
            if name:
                groups.append((name, dn))
        return groups

    def _materialize(self, session: DirectorySession, entry: DirectoryEntry,
                     include_groups: bool = True) -> UserRecord:
        groups = []
        if include_groups:
            try:
                groups = self._authorization_groups(session, entry.dn)
            except Exception as e:
                logger.debug(f"Could not read groups for {entry.dn}: {e}")
        return to_record(entry, groups)

    async def _run_async(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args, **kwargs))

    # ------------------------------------------------------------------
    # lookups

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        """
        Find a user by account name (sAMAccountName).

        Returns:
            The user record, or None if no such user exists

        Raises:
            DirectoryOperationError: If the directory cannot be queried
        """
        with self._operation(f"Error retrieving user by username '{username}'"):
            with self._client.session() as session:
                entry = self._find_user(session, 'sAMAccountName', username)
                return self._materialize(session, entry) if entry else None

    def get_users_by_email(self, email: str) -> List[UserRecord]:
        """
        Find users by email address.

        The principal name is tried first, then the mail attribute; a user
        matched by both is returned once.
        """
        with self._operation(f"Error retrieving users by email '{email}'"):
            with self._client.session() as session:
                candidates = []
                entry = self._find_user(session, 'userPrincipalName', email)
                if entry is not None:
                    candidates.append(entry)
                candidates.extend(session.search(user_filter(f"(mail={escape_filter_chars(email)})"), USER_ATTRIBUTES))

                users = []
                seen = set()
                for entry in candidates:
                    key = to_text(entry.get('sAMAccountName')) or entry.dn
                    if key in seen:
                        continue
                    seen.add(key)
                    users.append(self._materialize(session, entry))
                return users

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        users = self.get_users_by_email(email)
        return users[0] if users else None

    def get_user_by_employee_id(self, employee_id: str) -> Optional[UserRecord]:
        with self._operation(f"Error retrieving user by employee ID '{employee_id}'"):
            with self._client.session() as session:
                entry = self._find_user(session, 'employeeID', employee_id)
                return self._materialize(session, entry) if entry else None

    def get_user_by_distinguished_name(self, distinguished_name: str) -> Optional[UserRecord]:
        with self._operation(f"Error retrieving user by distinguished name '{distinguished_name}'"):
            with self._client.session() as session:
                entry = session.read(distinguished_name, USER_ATTRIBUTES, search_filter=user_filter())
                return self._materialize(session, entry) if entry else None

    def get_users_in_group(self, group_name: str) -> List[UserRecord]:
        """Return every user in a group, including members of nested groups."""
        with self._operation(f"Error retrieving users in group '{group_name}'"):
            with self._client.session() as session:
                group = self._find_group(session, group_name)
                if group is None:
                    return []
                group_dn = to_text(group.get('distinguishedName')) or group.dn
                entries = session.search(
                    user_filter(f"(memberOf:{IN_CHAIN_RULE}:={escape_filter_chars(group_dn)})"),
                    USER_ATTRIBUTES
                )
                return [self._materialize(session, entry) for entry in entries]

    def get_users_by_department(self, department: str) -> List[UserRecord]:
        with self._operation(f"Error retrieving users by department '{department}'"):
            with self._client.session() as session:
                entries = session.search(
                    user_filter(f"(department={escape_filter_chars(department)})"),
                    USER_ATTRIBUTES
                )
                return [self._materialize(session, entry) for entry in entries
                        if to_text(entry.get('sAMAccountName'))]

    def get_direct_reports(self, manager_username: str) -> List[UserRecord]:
        """
        Return the users listed in a manager's directReports attribute.

        Reports that cannot be read are logged and skipped.
        """
        with self._operation(f"Error retrieving direct reports for '{manager_username}'"):
            with self._client.session() as session:
                manager = self._find_user(session, 'sAMAccountName', manager_username,
                                          ['sAMAccountName', 'directReports'])
                if manager is None:
                    return []

                reports = []
                for report_dn in to_text_list(manager.get('directReports')):
                    try:
                        entry = session.read(report_dn, USER_ATTRIBUTES, search_filter=user_filter())
                    except TRANSPORT_ERRORS as e:
                        logger.warning(f"Could not resolve direct report {report_dn} of {manager_username}: {e}")
                        continue
                    if entry is None:
                        logger.debug(f"Direct report {report_dn} of {manager_username} not found")
                        continue
                    reports.append(self._materialize(session, entry))
                return reports

    def get_user_groups(self, username: str) -> List[str]:
        """Return the names of the user's authorization groups, nested groups included."""
        with self._operation(f"Error retrieving groups for user '{username}'"):
            with self._client.session() as session:
                entry = self._find_user(session, 'sAMAccountName', username, ['sAMAccountName'])
                if entry is None:
                    return []
                return [name for name, _ in self._authorization_groups(session, entry.dn)]

    def search_users(self, search_term: str, max_results: int = 100) -> List[UserRecord]:
        """Wildcard search on name, display name and account name, capped at ``max_results``."""
        if max_results <= 0:
            return []
        with self._operation(f"Error searching for users with term '{search_term}'"):
            with self._client.session() as session:
                term = escape_filter_chars(search_term)
                entries = session.search(
                    user_filter(f"(|(name=*{term}*)(displayName=*{term}*)(sAMAccountName=*{term}*))"),
                    USER_ATTRIBUTES,
                    size_limit=max_results
                )
                return [self._materialize(session, entry) for entry in entries[:max_results]]

    def get_all_users(self, include_groups: bool = True) -> List[UserRecord]:
        """Return every user with an account name under the configured search base."""
        with self._operation("Error retrieving all users from Active Directory"):
            with self._client.session() as session:
                entries = session.search(user_filter(), USER_ATTRIBUTES)
                users = [self._materialize(session, entry, include_groups) for entry in entries
                         if to_text(entry.get('sAMAccountName'))]
                logger.info(f"Retrieved {len(users)} users from {self.config.search_path}")
                return users

    def export_all_users_to_excel(self, directory_path: str) -> str:
        """
        Write every user to ``ADUsers_<timestamp>.xlsx`` inside ``directory_path``.

        Returns:
            Path of the written file

        Raises:
            DirectoryOperationError: If the users cannot be read or the file cannot be written
        """
        try:
            # the sheet has no group columns
            users = self.get_all_users(include_groups=False)
            file_path = write_users_workbook(users, directory_path)
        except (DirectoryOperationError, OSError) as e:
            logger.error(f"Error exporting users to Excel: {e}")
            raise DirectoryOperationError("Error exporting users to Excel", e) from e

        security_logger.log_export(file_path, len(users))
        return file_path

    # ------------------------------------------------------------------
    # probes

    def user_exists(self, username: str) -> bool:
        try:
            with self._client.session() as session:
                return self._find_user(session, 'sAMAccountName', username, ['sAMAccountName']) is not None
        except Exception as e:
            logger.warning(f"User existence check for '{username}' failed: {e}")
            return False

    def user_exists_by_email(self, email: str) -> bool:
        try:
            with self._client.session() as session:
                if self._find_user(session, 'userPrincipalName', email, ['sAMAccountName']) is not None:
                    return True
                return self._find_user(session, 'mail', email, ['sAMAccountName']) is not None
        except Exception as e:
            logger.warning(f"User existence check for email '{email}' failed: {e}")
            return False

    def is_user_enabled(self, username: str) -> bool:
        try:
            with self._client.session() as session:
                entry = self._find_user(session, 'sAMAccountName', username, ['userAccountControl'])
                if entry is None:
                    return False
                uac = to_int(entry.get('userAccountControl'))
                return uac is not None and not (uac & UF_ACCOUNTDISABLE)
        except Exception as e:
            logger.warning(f"Enabled check for '{username}' failed: {e}")
            return False

    def is_user_locked_out(self, username: str) -> bool:
        try:
            with self._client.session() as session:
                entry = self._find_user(session, 'sAMAccountName', username,
                                        ['msDS-User-Account-Control-Computed', 'lockoutTime'])
                return entry is not None and is_locked_out(entry)
        except Exception as e:
            logger.warning(f"Lockout check for '{username}' failed: {e}")
            return False

    def is_user_in_group(self, username: str, group_name: str) -> bool:
        """True if the user belongs to the group directly, through nesting or as primary group."""
        try:
            with self._client.session() as session:
                user = self._find_user(session, 'sAMAccountName', username, ['sAMAccountName'])
                if user is None:
                    return False
                group = self._find_group(session, group_name)
                if group is None:
                    return False

                group_sid = format_object_sid(group.get('objectSid'))
                if group_sid and group_sid in self._token_sids(session, user.dn):
                    return True

                # distribution groups are not part of the security token
                group_dn = to_text(group.get('distinguishedName')) or group.dn
                entry = session.read(
                    user.dn, ['sAMAccountName'],
                    search_filter=f"(memberOf:{IN_CHAIN_RULE}:={escape_filter_chars(group_dn)})"
                )
                return entry is not None
        except Exception as e:
            logger.warning(f"Membership check for '{username}' in '{group_name}' failed: {e}")
            return False

    def validate_credentials(self, username: str, password: str) -> bool:
        try:
            valid = self._client.check_credentials(username, password)
        except Exception as e:
            logger.warning(f"Credential validation for '{username}' failed: {e}")
            valid = False
        security_logger.log_authentication_attempt(self.config.search_path, username, valid)
        return valid

    def get_user_photo(self, username: str) -> Optional[bytes]:
        """Return the user's thumbnailPhoto bytes, or None if absent or unreadable."""
        try:
            with self._client.session() as session:
                entry = self._find_user(session, 'sAMAccountName', username, ['thumbnailPhoto'])
                if entry is None:
                    return None
                photo = first_value(entry.get('thumbnailPhoto'))
                if isinstance(photo, (bytes, bytearray)):
                    return bytes(photo)
        except Exception as e:
            logger.debug(f"Photo retrieval for '{username}' failed: {e}")
        return None

    # ------------------------------------------------------------------
    # async variants

    async def get_user_by_username_async(self, username: str) -> Optional[UserRecord]:
        return await self._run_async(self.get_user_by_username, username)

    async def get_users_by_email_async(self, email: str) -> List[UserRecord]:
        return await self._run_async(self.get_users_by_email, email)

    async def get_user_by_email_async(self, email: str) -> Optional[UserRecord]:
        return await self._run_async(self.get_user_by_email, email)

    async def get_user_by_employee_id_async(self, employee_id: str) -> Optional[UserRecord]:
        return await self._run_async(self.get_user_by_employee_id, employee_id)

    async def get_user_by_distinguished_name_async(self, distinguished_name: str) -> Optional[UserRecord]:
        return await self._run_async(self.get_user_by_distinguished_name, distinguished_name)

    async def user_exists_async(self, username: str) -> bool:
        return await self._run_async(self.user_exists, username)

    async def user_exists_by_email_async(self, email: str) -> bool:
        return await self._run_async(self.user_exists_by_email, email)

    async def is_user_enabled_async(self, username: str) -> bool:
        return await self._run_async(self.is_user_enabled, username)

    async def is_user_locked_out_async(self, username: str) -> bool:
        return await self._run_async(self.is_user_locked_out, username)

    async def get_users_in_group_async(self, group_name: str) -> List[UserRecord]:
        return await self._run_async(self.get_users_in_group, group_name)

    async def get_users_by_department_async(self, department: str) -> List[UserRecord]:
        return await self._run_async(self.get_users_by_department, department)

    async def get_direct_reports_async(self, manager_username: str) -> List[UserRecord]:
        return await self._run_async(self.get_direct_reports, manager_username)

    async def get_user_groups_async(self, username: str) -> List[str]:
        return await self._run_async(self.get_user_groups, username)

    async def is_user_in_group_async(self, username: str, group_name: str) -> bool:
        return await self._run_async(self.is_user_in_group, username, group_name)

    async def search_users_async(self, search_term: str, max_results: int = 100) -> List[UserRecord]:
        return await self._run_async(self.search_users, search_term, max_results)

    async def validate_credentials_async(self, username: str, password: str) -> bool:
        return await self._run_async(self.validate_credentials, username, password)

    async def get_user_photo_async(self, username: str) -> Optional[bytes]:
        return await self._run_async(self.get_user_photo, username)

    async def export_all_users_to_excel_async(self, directory_path: str) -> str:
        return await self._run_async(self.export_all_users_to_excel, directory_path)
