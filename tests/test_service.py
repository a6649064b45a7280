#!/usr/bin/env python3
"""
Tests for ADUserService against an in-memory directory.
"""

import os
import sys
import shutil
import asyncio
import tempfile
import unittest
from unittest.mock import patch

from ldap3.core.exceptions import LDAPSocketOpenError
from openpyxl import load_workbook

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ad_userinfo.config import ConfigurationError, ConnectionConfig
from ad_userinfo.ldap_client import DirectoryConnectionError, DirectoryQueryError
from ad_userinfo.models import DirectoryEntry
from ad_userinfo.service import ADUserService, DirectoryOperationError
from tests.fake_directory import FakeClient, FakeDirectory, group, user


USERS_OU = 'OU=Users,DC=example,DC=com'
DEVELOPERS = 'CN=Developers,OU=Groups,DC=example,DC=com'
ENGINEERING = 'CN=Engineering-All,OU=Groups,DC=example,DC=com'
MAILING_LIST = 'CN=Newsletter,OU=Groups,DC=example,DC=com'


def build_directory():
    entries = [
        group('Domain Users', 513, dn='CN=Domain Users,CN=Users,DC=example,DC=com'),
        group('Engineering-All', 1200),
        group('Developers', 1201, member_of=[ENGINEERING]),
        user('aboss', displayName='Alice Boss', mail='alice.boss@example.com',
             userPrincipalName='aboss@example.com', department='Management',
             directReports=[
                 f'CN=John Doe,{USERS_OU}',
                 f'CN=Ghost User,{USERS_OU}',
                 f'CN=Broken User,{USERS_OU}',
                 f'CN=Anna Smith,{USERS_OU}',
             ]),
        user('jdoe', displayName='John Doe', givenName='John', sn='Doe',
             mail='john.doe@example.com', userPrincipalName='john.doe@example.com',
             employeeID='1001', department='Engineering', title='Engineer',
             manager=f'CN=Alice Boss,{USERS_OU}', memberOf=[DEVELOPERS, MAILING_LIST],
             thumbnailPhoto=b'\x89PNG\r\n'),
        user('jdoe2', displayName='Johnny Doe', mail='john.doe@example.com',
             userPrincipalName='jdoe2@example.com', department='Engineering'),
        user('asmith', displayName='Anna Smith', mail='anna.smith@example.com',
             userPrincipalName='asmith@example.com', department='Engineering',
             manager=f'CN=Alice Boss,{USERS_OU}'),
        user('broken', displayName='Broken User'),
        user('olduser', displayName='Old User', userAccountControl=514, department='Sales'),
        user('locked', displayName='Locked User', **{'msDS-User-Account-Control-Computed': 16}),
        distribution_list('Newsletter', MAILING_LIST),
    ]
    return FakeDirectory(entries, passwords={'jdoe': 'Correct-Horse1', 'example\\jdoe': 'Correct-Horse1'})


def distribution_list(cn, dn):
    # never part of the security token
    entry = group(cn, 0, dn=dn)
    attributes = dict(entry.attributes)
    del attributes['objectSid']
    return DirectoryEntry(dn=entry.dn, attributes=attributes)


class ServiceTestCase(unittest.TestCase):

    def setUp(self):
        self.directory = build_directory()
        self.service = ADUserService(
            config=ConnectionConfig(domain='example.com'),
            client=FakeClient(self.directory)
        )

    def tearDown(self):
        self.service.close()

    def break_transport(self):
        self.directory.fail_connect = DirectoryConnectionError("Failed to connect: unreachable")


class TestConstruction(unittest.TestCase):

    def test_fields_and_config_are_exclusive(self):
        with self.assertRaises(ConfigurationError):
            ADUserService('example.com', config=ConnectionConfig(domain='example.com'))

    def test_invalid_identity(self):
        with self.assertRaises(ConfigurationError):
            ADUserService(container='OU=Users,DC=example,DC=com')

    def test_from_config(self):
        service = ADUserService.from_config({'directory': {'domain': 'example.com', 'container': USERS_OU}})
        try:
            self.assertEqual(service.config.search_path, f'LDAP://example.com/{USERS_OU}')
        finally:
            service.close()

    def test_context_manager_closes_executor(self):
        with ADUserService(domain='example.com') as service:
            pass
        with self.assertRaises(RuntimeError):
            service._executor.submit(lambda: None)


class TestLookups(ServiceTestCase):
    """Test cases for the lookup operations."""

    def test_get_user_by_username(self):
        record = self.service.get_user_by_username('jdoe')

        self.assertEqual(record.sam_account_name, 'jdoe')
        self.assertEqual(record.display_name, 'John Doe')
        self.assertEqual(record.title, 'Engineer')
        self.assertTrue(record.is_enabled)

    def test_get_user_by_username_resolves_nested_groups(self):
        record = self.service.get_user_by_username('jdoe')

        self.assertEqual(set(record.groups), {'Domain Users', 'Developers', 'Engineering-All'})
        self.assertIn(DEVELOPERS, record.member_of)
        self.assertIn(ENGINEERING, record.member_of)
        self.assertEqual(len(record.groups), len(record.member_of))

    def test_lookup_miss_returns_none(self):
        self.assertIsNone(self.service.get_user_by_username('nobody'))
        self.assertIsNone(self.service.get_user_by_employee_id('9999'))
        self.assertIsNone(self.service.get_user_by_email('nobody@example.com'))
        self.assertIsNone(self.service.get_user_by_distinguished_name(f'CN=Nobody,{USERS_OU}'))

    def test_lookup_transport_error_raises(self):
        self.break_transport()
        with self.assertRaises(DirectoryOperationError) as context:
            self.service.get_user_by_username('jdoe')
        self.assertIn("Error retrieving user by username 'jdoe'", str(context.exception))
        self.assertIsInstance(context.exception.cause, DirectoryConnectionError)

    def test_ldap_exception_is_wrapped(self):
        self.directory.fail_search = LDAPSocketOpenError('socket closed')
        with self.assertRaises(DirectoryOperationError) as context:
            self.service.get_users_by_department('Engineering')
        self.assertIn('socket closed', str(context.exception))

    def test_filter_values_are_escaped(self):
        self.assertIsNone(self.service.get_user_by_username('j*)(sAMAccountName=*'))
        self.assertIn('(sAMAccountName=j\\2a\\29\\28sAMAccountName=\\2a)', self.directory.filters[0])

    def test_get_users_by_email_deduplicates(self):
        users = self.service.get_users_by_email('john.doe@example.com')

        self.assertEqual(sorted(u.sam_account_name for u in users), ['jdoe', 'jdoe2'])
        # the principal name match comes first
        self.assertEqual(users[0].sam_account_name, 'jdoe')

    def test_get_user_by_email_mail_only(self):
        record = self.service.get_user_by_email('anna.smith@example.com')
        self.assertEqual(record.sam_account_name, 'asmith')

    def test_get_user_by_employee_id(self):
        self.assertEqual(self.service.get_user_by_employee_id('1001').sam_account_name, 'jdoe')

    def test_get_user_by_distinguished_name(self):
        record = self.service.get_user_by_distinguished_name(f'CN=Anna Smith,{USERS_OU}')
        self.assertEqual(record.sam_account_name, 'asmith')

    def test_get_user_by_distinguished_name_rejects_groups(self):
        self.assertIsNone(self.service.get_user_by_distinguished_name(DEVELOPERS))

    def test_get_users_in_group_includes_nested_members(self):
        names = [u.sam_account_name for u in self.service.get_users_in_group('Engineering-All')]
        self.assertEqual(names, ['jdoe'])

    def test_get_users_in_group_by_dn(self):
        names = [u.sam_account_name for u in self.service.get_users_in_group(DEVELOPERS)]
        self.assertEqual(names, ['jdoe'])

    def test_get_users_in_unknown_group(self):
        self.assertEqual(self.service.get_users_in_group('No Such Group'), [])

    def test_get_users_by_department(self):
        names = sorted(u.sam_account_name for u in self.service.get_users_by_department('Engineering'))
        self.assertEqual(names, ['asmith', 'jdoe', 'jdoe2'])
        self.assertEqual(self.service.get_users_by_department('Nowhere'), [])

    def test_get_direct_reports_skips_failures(self):
        """Reports that are missing or fail to read are left out."""
        self.directory.failing_reads.add(f'CN=Broken User,{USERS_OU}')

        with self.assertLogs('ad_userinfo.service', level='WARNING') as captured:
            reports = self.service.get_direct_reports('aboss')

        self.assertEqual([u.sam_account_name for u in reports], ['jdoe', 'asmith'])
        self.assertTrue(any('Broken User' in line for line in captured.output))

    def test_get_direct_reports_unknown_manager(self):
        self.assertEqual(self.service.get_direct_reports('nobody'), [])
        self.assertEqual(self.service.get_direct_reports('asmith'), [])

    def test_get_user_groups(self):
        groups = self.service.get_user_groups('jdoe')
        self.assertEqual(set(groups), {'Domain Users', 'Developers', 'Engineering-All'})
        self.assertEqual(self.service.get_user_groups('nobody'), [])

    def test_get_user_groups_names_group_without_name_attributes(self):
        auditors = group('Auditors', 1300)
        attributes = {key: value for key, value in auditors.attributes.items()
                      if key not in ('cn', 'name', 'sAMAccountName')}
        self.directory.entries.append(DirectoryEntry(dn=auditors.dn, attributes=attributes))
        self.directory.entries.append(user('auditor', memberOf=[auditors.dn]))

        groups = self.service.get_user_groups('auditor')

        self.assertEqual(set(groups), {'Domain Users', 'Auditors'})

    def test_search_users(self):
        names = sorted(u.sam_account_name for u in self.service.search_users('doe'))
        self.assertEqual(names, ['jdoe', 'jdoe2'])

    def test_search_users_max_results(self):
        self.assertEqual(len(self.service.search_users('o', max_results=2)), 2)
        self.assertEqual(self.service.search_users('doe', max_results=0), [])

    def test_get_all_users(self):
        users = self.service.get_all_users()
        self.assertEqual(len(users), 7)
        self.assertNotIn('Developers', [u.sam_account_name for u in users])

    def test_sessions_are_released(self):
        self.service.get_user_by_username('jdoe')
        self.service.get_users_in_group('Developers')
        self.directory.failing_reads.add(f'CN=Broken User,{USERS_OU}')
        self.service.get_direct_reports('aboss')

        self.assertEqual(self.directory.sessions_opened, 3)
        self.assertEqual(self.directory.sessions_closed, 3)


class TestProbes(ServiceTestCase):
    """Probes answer False or None instead of raising."""

    def test_user_exists(self):
        self.assertTrue(self.service.user_exists('jdoe'))
        self.assertFalse(self.service.user_exists('nobody'))

    def test_user_exists_by_email(self):
        self.assertTrue(self.service.user_exists_by_email('john.doe@example.com'))
        self.assertTrue(self.service.user_exists_by_email('anna.smith@example.com'))
        self.assertFalse(self.service.user_exists_by_email('nobody@example.com'))

    def test_is_user_enabled(self):
        self.assertTrue(self.service.is_user_enabled('jdoe'))
        self.assertFalse(self.service.is_user_enabled('olduser'))
        self.assertFalse(self.service.is_user_enabled('nobody'))

    def test_is_user_locked_out(self):
        self.assertTrue(self.service.is_user_locked_out('locked'))
        self.assertFalse(self.service.is_user_locked_out('jdoe'))
        self.assertFalse(self.service.is_user_locked_out('nobody'))

    def test_is_user_in_group(self):
        self.assertTrue(self.service.is_user_in_group('jdoe', 'Developers'))
        self.assertTrue(self.service.is_user_in_group('jdoe', 'Engineering-All'))
        self.assertTrue(self.service.is_user_in_group('jdoe', 'Domain Users'))
        self.assertFalse(self.service.is_user_in_group('asmith', 'Developers'))
        self.assertFalse(self.service.is_user_in_group('jdoe', 'No Such Group'))
        self.assertFalse(self.service.is_user_in_group('nobody', 'Developers'))

    def test_is_user_in_distribution_group(self):
        self.assertTrue(self.service.is_user_in_group('jdoe', 'Newsletter'))

    def test_validate_credentials(self):
        self.assertTrue(self.service.validate_credentials('jdoe', 'Correct-Horse1'))
        self.assertTrue(self.service.validate_credentials('EXAMPLE\\jdoe', 'Correct-Horse1'))
        self.assertFalse(self.service.validate_credentials('jdoe', 'wrong'))
        self.assertFalse(self.service.validate_credentials('jdoe', ''))

    def test_validate_credentials_audited(self):
        with self.assertLogs('security', level='INFO') as captured:
            self.service.validate_credentials('jdoe', 'wrong')
        self.assertIn('Authentication FAILURE: LDAP://example.com user=jdoe', captured.output[0])
        self.assertNotIn('wrong', captured.output[0])

    def test_get_user_photo(self):
        self.assertEqual(self.service.get_user_photo('jdoe'), b'\x89PNG\r\n')
        self.assertIsNone(self.service.get_user_photo('asmith'))
        self.assertIsNone(self.service.get_user_photo('nobody'))

    def test_probes_fail_closed_on_transport_error(self):
        self.break_transport()

        self.assertFalse(self.service.user_exists('jdoe'))
        self.assertFalse(self.service.user_exists_by_email('john.doe@example.com'))
        self.assertFalse(self.service.is_user_enabled('jdoe'))
        self.assertFalse(self.service.is_user_locked_out('locked'))
        self.assertFalse(self.service.is_user_in_group('jdoe', 'Developers'))
        self.assertFalse(self.service.validate_credentials('jdoe', 'Correct-Horse1'))
        self.assertIsNone(self.service.get_user_photo('jdoe'))

    def test_probes_fail_closed_on_query_error(self):
        self.directory.fail_search = DirectoryQueryError("Search failed: busy")
        self.assertFalse(self.service.user_exists('jdoe'))
        self.assertFalse(self.service.is_user_in_group('jdoe', 'Developers'))


class TestExport(ServiceTestCase):

    def setUp(self):
        super().setUp()
        self.temp_dir = tempfile.mkdtemp(prefix='ad_userinfo_test_service_')

    def tearDown(self):
        super().tearDown()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_export_all_users(self):
        path = self.service.export_all_users_to_excel(self.temp_dir)

        self.assertTrue(os.path.basename(path).startswith('ADUsers_'))
        ws = load_workbook(path).active
        self.assertEqual(ws.max_row, 8)
        sams = sorted(row[0] for row in ws.iter_rows(min_row=2, values_only=True))
        self.assertEqual(sams, ['aboss', 'asmith', 'broken', 'jdoe', 'jdoe2', 'locked', 'olduser'])

    def test_export_skips_group_resolution(self):
        self.service.export_all_users_to_excel(self.temp_dir)
        self.assertFalse(any('objectSid=' in f for f in self.directory.filters))

    def test_export_transport_error(self):
        self.break_transport()
        with self.assertRaises(DirectoryOperationError) as context:
            self.service.export_all_users_to_excel(self.temp_dir)
        self.assertIn("Error exporting users to Excel", str(context.exception))

    def test_export_write_error(self):
        with patch('ad_userinfo.service.write_users_workbook', side_effect=PermissionError('denied')):
            with self.assertRaises(DirectoryOperationError) as context:
                self.service.export_all_users_to_excel(self.temp_dir)
        self.assertIsInstance(context.exception.cause, PermissionError)


class TestAsync(ServiceTestCase):
    """The async variants return what the blocking calls return."""

    def run_async(self, coroutine):
        return asyncio.run(coroutine)

    def test_lookups(self):
        record = self.run_async(self.service.get_user_by_username_async('jdoe'))
        self.assertEqual(record.sam_account_name, 'jdoe')

        users = self.run_async(self.service.get_users_by_email_async('john.doe@example.com'))
        self.assertEqual(len(users), 2)

        self.assertEqual(self.run_async(self.service.get_user_by_email_async('anna.smith@example.com')).sam_account_name,
                         'asmith')
        self.assertEqual(self.run_async(self.service.get_user_by_employee_id_async('1001')).sam_account_name, 'jdoe')
        self.assertEqual(
            self.run_async(self.service.get_user_by_distinguished_name_async(f'CN=John Doe,{USERS_OU}')).sam_account_name,
            'jdoe'
        )
        self.assertEqual(len(self.run_async(self.service.get_users_in_group_async('Developers'))), 1)
        self.assertEqual(len(self.run_async(self.service.get_users_by_department_async('Engineering'))), 3)
        self.assertEqual(len(self.run_async(self.service.get_direct_reports_async('aboss'))), 3)
        self.assertIn('Developers', self.run_async(self.service.get_user_groups_async('jdoe')))
        self.assertEqual(len(self.run_async(self.service.search_users_async('doe', 1))), 1)

    def test_probes(self):
        self.assertTrue(self.run_async(self.service.user_exists_async('jdoe')))
        self.assertTrue(self.run_async(self.service.user_exists_by_email_async('john.doe@example.com')))
        self.assertFalse(self.run_async(self.service.is_user_enabled_async('olduser')))
        self.assertTrue(self.run_async(self.service.is_user_locked_out_async('locked')))
        self.assertTrue(self.run_async(self.service.is_user_in_group_async('jdoe', 'Developers')))
        self.assertTrue(self.run_async(self.service.validate_credentials_async('jdoe', 'Correct-Horse1')))
        self.assertEqual(self.run_async(self.service.get_user_photo_async('jdoe')), b'\x89PNG\r\n')

    def test_concurrent_calls(self):
        async def gather():
            return await asyncio.gather(
                self.service.get_user_by_username_async('jdoe'),
                self.service.get_user_by_username_async('asmith'),
                self.service.user_exists_async('olduser'),
            )

        jdoe, asmith, exists = self.run_async(gather())
        self.assertEqual(jdoe.sam_account_name, 'jdoe')
        self.assertEqual(asmith.sam_account_name, 'asmith')
        self.assertTrue(exists)

    def test_async_error_propagates(self):
        self.break_transport()
        with self.assertRaises(DirectoryOperationError):
            self.run_async(self.service.get_user_by_username_async('jdoe'))
        self.assertFalse(self.run_async(self.service.user_exists_async('jdoe')))

    def test_export_async(self):
        temp_dir = tempfile.mkdtemp(prefix='ad_userinfo_test_async_')
        try:
            path = self.run_async(self.service.export_all_users_to_excel_async(temp_dir))
            self.assertTrue(os.path.exists(path))
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)


if __name__ == '__main__':
    unittest.main()
