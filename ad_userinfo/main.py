"""
Command line entry point for AD User Info.

Without options an interactive console walks through every service
operation. ``--export``, ``--lookup`` and ``--health-check`` run a single
operation against the configured directory and exit.
"""

import os
import sys
import json
import asyncio
import getpass
import logging
import platform
import subprocess
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ad_userinfo.config import ConfigurationError, ConnectionConfig, default_config, load_config
from ad_userinfo.ldap_client import LDAPClient
from ad_userinfo.logging_setup import setup_logging
from ad_userinfo.models import UserRecord
from ad_userinfo.service import ADUserService, DirectoryOperationError

logger = logging.getLogger(__name__)


CONNECTION_MENU = """Choose connection method:
1. Default domain (current user context)
2. Specific domain
3. Specific domain with credentials
4. Specific domain with container/OU
5. Full configuration (domain, container, credentials)"""

OPERATIONS_MENU = """
=== Available Operations ===
1. Get user by username
2. Get user by email
3. Get user by employee ID
4. Check if user exists
5. Check if user is enabled
6. Check if user is locked out
7. Get user groups
8. Check if user is in group
9. Search users
10. Get users in group
11. Get users by department
12. Get direct reports
13. Validate credentials
14. Get user photo
15. Export all users to Excel
0. Exit"""

MAX_GROUPS_SHOWN = 10


def open_in_file_browser(path: str) -> None:
    """Reveal ``path`` in the platform's file browser."""
    system = platform.system()
    if system == 'Windows':
        os.startfile(path)
    elif system == 'Darwin':
        subprocess.Popen(['open', path])
    else:
        subprocess.Popen(['xdg-open', path])


class DemoConsole:
    """Interactive walk-through of the service operations."""

    def __init__(self, settings: Dict[str, Any],
                 input_func: Callable[[str], str] = input,
                 password_func: Callable[[str], str] = getpass.getpass,
                 output: Callable[..., None] = print):
        self.settings = settings
        self.input = input_func
        self.read_password = password_func
        self.output = output
        self.operations = {
            '1': self.get_user_by_username,
            '2': self.get_user_by_email,
            '3': self.get_user_by_employee_id,
            '4': self.check_user_exists,
            '5': self.check_user_enabled,
            '6': self.check_user_locked_out,
            '7': self.get_user_groups,
            '8': self.check_user_in_group,
            '9': self.search_users,
            '10': self.get_users_in_group,
            '11': self.get_users_by_department,
            '12': self.get_direct_reports,
            '13': self.validate_credentials,
            '14': self.get_user_photo,
            '15': self.export_all_users,
        }

    def ask(self, prompt: str) -> str:
        return (self.input(prompt) or '').strip()

    def create_service(self, choice: str) -> Optional[ADUserService]:
        """Build a service for one of the five connection modes, or None on bad input."""
        transport = dict(self.settings.get('directory') or {})
        for key in ('domain', 'container', 'username', 'password'):
            transport.pop(key, None)

        identity = {}
        if choice == '1':
            self.output("\nUsing default domain configuration...")
        elif choice == '2':
            identity['domain'] = self.ask("Enter domain name: ")
            if not identity['domain']:
                return None
        elif choice == '3':
            identity['domain'] = self.ask("Enter domain name: ")
            identity['username'] = self.ask("Enter username: ")
            identity['password'] = self.read_password("Enter password: ")
            if not identity['domain'] or not identity['username']:
                return None
        elif choice == '4':
            identity['domain'] = self.ask("Enter domain name: ")
            identity['container'] = self.ask("Enter container/OU (e.g., OU=Users,DC=domain,DC=com): ")
            if not identity['domain']:
                return None
        elif choice == '5':
            identity['domain'] = self.ask("Enter domain name: ")
            identity['container'] = self.ask("Enter container/OU: ")
            identity['username'] = self.ask("Enter username: ")
            identity['password'] = self.read_password("Enter password: ")
            if not identity['domain'] or not identity['username']:
                return None
        else:
            return None

        transport.update(identity)
        return ADUserService(config=ConnectionConfig.from_dict(transport))

    async def run(self) -> int:
        self.output("=== Active Directory User Information Service Example ===\n")
        self.output(CONNECTION_MENU)
        choice = self.ask("\nEnter choice (1-5): ")

        try:
            service = self.create_service(choice)
        except ConfigurationError as e:
            self.output(f"Error: {e}")
            return 2
        if service is None:
            self.output("Invalid choice or error creating service.")
            return 1

        with service:
            while True:
                self.output(OPERATIONS_MENU)
                operation = self.ask("\nEnter choice: ")
                if operation == '0':
                    break
                await self.execute(service, operation)
        return 0

    async def execute(self, service: ADUserService, operation: str):
        handler = self.operations.get(operation)
        if handler is None:
            self.output("Invalid choice.")
            return
        try:
            await handler(service)
        except DirectoryOperationError as e:
            self.output(f"Operation failed: {e}")

    def display_user(self, user: UserRecord):
        self.output("\n=== User Information ===")
        self.output(f"Username: {user.sam_account_name}")
        self.output(f"Display Name: {user.display_name}")
        self.output(f"Email: {user.email}")
        self.output(f"First Name: {user.first_name}")
        self.output(f"Last Name: {user.last_name}")
        self.output(f"Employee ID: {user.employee_id}")
        self.output(f"Employee Number: {user.employee_number}")
        self.output(f"Department: {user.department}")
        self.output(f"Title: {user.title}")
        self.output(f"Company: {user.company}")
        self.output(f"Manager: {user.manager}")
        self.output(f"Office: {user.office_location}")
        self.output(f"Phone: {user.telephone_number}")
        self.output(f"Mobile: {user.mobile_phone}")
        self.output(f"Enabled: {user.is_enabled}")
        self.output(f"Locked Out: {user.is_locked_out}")
        self.output(f"Last Logon: {user.last_logon_date}")
        self.output(f"Created: {user.when_created}")
        self.output(f"Modified: {user.when_changed}")
        self.output(f"Groups: {len(user.groups)}")
        if user.groups:
            if len(user.groups) > MAX_GROUPS_SHOWN:
                self.output(f"  (Showing first {MAX_GROUPS_SHOWN} of {len(user.groups)} groups)")
            else:
                self.output("Group Memberships:")
            for group in user.groups[:MAX_GROUPS_SHOWN]:
                self.output(f"  - {group}")

    async def get_user_by_username(self, service: ADUserService):
        username = self.ask("Enter username: ")
        if not username:
            return
        user = await service.get_user_by_username_async(username)
        if user is not None:
            self.display_user(user)
        else:
            self.output("User not found.")

    async def get_user_by_email(self, service: ADUserService):
        email = self.ask("Enter email: ")
        if not email:
            return
        users = await service.get_users_by_email_async(email)
        if not users:
            self.output("No users found with that email address.")
            return
        self.output(f"\nFound {len(users)} user(s) with email '{email}':")
        self.output('-' * 60)
        for user in users:
            self.display_user(user)
            self.output('-' * 60)

    async def get_user_by_employee_id(self, service: ADUserService):
        employee_id = self.ask("Enter employee ID: ")
        if not employee_id:
            return
        user = await service.get_user_by_employee_id_async(employee_id)
        if user is not None:
            self.display_user(user)
        else:
            self.output("User not found.")

    async def check_user_exists(self, service: ADUserService):
        username = self.ask("Enter username: ")
        if username:
            self.output(f"User exists: {await service.user_exists_async(username)}")

    async def check_user_enabled(self, service: ADUserService):
        username = self.ask("Enter username: ")
        if username:
            self.output(f"User is enabled: {await service.is_user_enabled_async(username)}")

    async def check_user_locked_out(self, service: ADUserService):
        username = self.ask("Enter username: ")
        if username:
            self.output(f"User is locked out: {await service.is_user_locked_out_async(username)}")

    async def get_user_groups(self, service: ADUserService):
        username = self.ask("Enter username: ")
        if not username:
            return
        groups = await service.get_user_groups_async(username)
        self.output(f"\nUser is member of {len(groups)} groups:")
        for group in groups:
            self.output(f"  - {group}")

    async def check_user_in_group(self, service: ADUserService):
        username = self.ask("Enter username: ")
        group_name = self.ask("Enter group name: ")
        if username and group_name:
            is_member = await service.is_user_in_group_async(username, group_name)
            self.output(f"User is member of group: {is_member}")

    async def search_users(self, service: ADUserService):
        search_term = self.ask("Enter search term: ")
        max_results_text = self.ask("Enter max results (default 100): ")
        if not search_term:
            return
        try:
            max_results = int(max_results_text) if max_results_text else 100
        except ValueError:
            max_results = 100
        users = await service.search_users_async(search_term, max_results)
        self.output(f"\nFound {len(users)} users:")
        for user in users:
            self.output(f"  - {user.display_name} ({user.sam_account_name}) - {user.email}")

    async def get_users_in_group(self, service: ADUserService):
        group_name = self.ask("Enter group name: ")
        if not group_name:
            return
        users = await service.get_users_in_group_async(group_name)
        self.output(f"\nFound {len(users)} users in group:")
        for user in users:
            self.output(f"  - {user.display_name} ({user.sam_account_name})")

    async def get_users_by_department(self, service: ADUserService):
        department = self.ask("Enter department name: ")
        if not department:
            return
        users = await service.get_users_by_department_async(department)
        self.output(f"\nFound {len(users)} users in department:")
        for user in users:
            self.output(f"  - {user.display_name} ({user.sam_account_name}) - {user.title}")

    async def get_direct_reports(self, service: ADUserService):
        manager = self.ask("Enter manager username: ")
        if not manager:
            return
        reports = await service.get_direct_reports_async(manager)
        self.output(f"\nFound {len(reports)} direct reports:")
        for user in reports:
            self.output(f"  - {user.display_name} ({user.sam_account_name}) - {user.title}")

    async def validate_credentials(self, service: ADUserService):
        username = self.ask("Enter username: ")
        password = self.read_password("Enter password: ")
        if not username:
            return
        valid = await service.validate_credentials_async(username, password)
        self.output(f"\nCredentials are valid: {valid}")

    async def get_user_photo(self, service: ADUserService):
        username = self.ask("Enter username: ")
        if not username:
            return
        photo = await service.get_user_photo_async(username)
        if photo is None:
            self.output("No photo found for user.")
            return
        self.output(f"User photo retrieved: {len(photo)} bytes")
        if self.ask("Save to file? (y/n): ").lower() == 'y':
            file_name = f"{username}_photo.jpg"
            with open(file_name, 'wb') as f:
                f.write(photo)
            self.output(f"Photo saved to {file_name}")

    async def export_all_users(self, service: ADUserService):
        default_dir = (self.settings.get('export') or {}).get('output_dir', 'exports')
        self.output("\n=== Export All Users to Excel ===")
        directory_path = self.ask(f"Enter directory path to save Excel file (press Enter for {default_dir}): ")
        directory_path = directory_path or default_dir

        self.output("Exporting users... This may take a while for large directories.")
        file_path = await service.export_all_users_to_excel_async(directory_path)
        self.output(f"\nExport completed: {file_path}")

        if self.ask("Open containing folder? (y/n): ").lower() == 'y':
            try:
                open_in_file_browser(os.path.dirname(os.path.abspath(file_path)))
            except OSError as e:
                self.output(f"Could not open folder: {e}")


def health_check(settings: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check that the configured directory can be bound to.

    Returns:
        Dictionary containing health status and details
    """
    health_status = {
        'status': 'healthy',
        'timestamp': datetime.now().isoformat(),
        'checks': {}
    }

    try:
        connection = ConnectionConfig.from_dict(settings.get('directory') or {})
        health_status['checks']['configuration'] = {
            'status': 'pass',
            'message': f'Search scope {connection.search_path}'
        }
    except ConfigurationError as e:
        health_status['checks']['configuration'] = {
            'status': 'fail',
            'message': f'Configuration error: {e}'
        }
        health_status['status'] = 'unhealthy'
        return health_status

    if LDAPClient(connection).test_connection():
        health_status['checks']['directory'] = {
            'status': 'pass',
            'message': 'Directory bind successful'
        }
    else:
        health_status['checks']['directory'] = {
            'status': 'fail',
            'message': 'Directory bind failed, see log for details'
        }
        health_status['status'] = 'unhealthy'

    return health_status


def _load_settings(config_path: Optional[str]) -> Dict[str, Any]:
    if config_path or os.path.exists(os.getenv('AD_USERINFO_CONFIG', 'config.yaml')):
        return load_config(config_path)
    return default_config()


def main(argv=None) -> int:
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Active Directory user lookup and export')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--health-check', action='store_true',
                       help='Check the directory connection and print the result as JSON')
    group.add_argument('--export', metavar='DIR', nargs='?', const='',
                       help='Export all users to Excel (defaults to export.output_dir)')
    group.add_argument('--lookup', metavar='USERNAME',
                       help='Print a user record as JSON')

    args = parser.parse_args(argv)

    try:
        settings = _load_settings(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(settings.get('logging', {}))

    if args.health_check:
        status = health_check(settings)
        print(json.dumps(status, indent=2))
        return 0 if status['status'] == 'healthy' else 1

    if args.export is not None or args.lookup:
        try:
            service = ADUserService.from_config(settings)
        except ConfigurationError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return 2

        with service:
            try:
                if args.lookup:
                    user = service.get_user_by_username(args.lookup)
                    if user is None:
                        print(f"User not found: {args.lookup}", file=sys.stderr)
                        return 1
                    print(json.dumps(user.to_dict(), indent=2))
                else:
                    directory_path = args.export or settings['export'].get('output_dir', 'exports')
                    print(service.export_all_users_to_excel(directory_path))
            except DirectoryOperationError as e:
                logger.error(str(e))
                print(f"Error: {e}", file=sys.stderr)
                return 1
        return 0

    try:
        return asyncio.run(DemoConsole(settings).run())
    except (KeyboardInterrupt, EOFError):
        print()
        return 0


if __name__ == "__main__":
    sys.exit(main())
