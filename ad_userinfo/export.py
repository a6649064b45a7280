"""
Excel export of user records.

The workbook is built in memory and saved once.
"""

import os
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Tuple

from openpyxl import Workbook
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from .models import UserRecord

logger = logging.getLogger(__name__)


SHEET_TITLE = 'AD Users'
FILE_NAME_FORMAT = 'ADUsers_{timestamp}.xlsx'
TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
HEADER_FILL = 'D3D3D3'
MAX_COLUMN_WIDTH = 80


def _yes_no(value: Optional[bool]) -> str:
    return 'Yes' if value else 'No'


def _date(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(DATE_FORMAT) if value else None


def _attr(name: str) -> Callable[[UserRecord], Any]:
    return lambda user: getattr(user, name)


COLUMNS: List[Tuple[str, Callable[[UserRecord], Any]]] = [
    ('SamAccountName', _attr('sam_account_name')),
    ('UserPrincipalName', _attr('user_principal_name')),
    ('DisplayName', _attr('display_name')),
    ('FirstName', _attr('first_name')),
    ('LastName', _attr('last_name')),
    ('MiddleName', _attr('middle_name')),
    ('Email', _attr('email')),
    ('EmployeeId', _attr('employee_id')),
    ('EmployeeNumber', _attr('employee_number')),
    ('EmployeeType', _attr('employee_type')),
    ('Department', _attr('department')),
    ('Title', _attr('title')),
    ('Company', _attr('company')),
    ('Division', _attr('division')),
    ('Organization', _attr('organization')),
    ('Manager', _attr('manager')),
    ('OfficeLocation', _attr('office_location')),
    ('StreetAddress', _attr('street_address')),
    ('City', _attr('city')),
    ('State', _attr('state')),
    ('PostalCode', _attr('postal_code')),
    ('Country', _attr('country')),
    ('TelephoneNumber', _attr('telephone_number')),
    ('MobilePhone', _attr('mobile_phone')),
    ('HomePhone', _attr('home_phone')),
    ('IsEnabled', lambda user: _yes_no(user.is_enabled)),
    ('IsLockedOut', lambda user: _yes_no(user.is_locked_out)),
    ('LastLogonDate', lambda user: _date(user.last_logon_date)),
    ('WhenCreated', lambda user: _date(user.when_created)),
    ('DistinguishedName', _attr('distinguished_name')),
]

HEADERS = [header for header, _ in COLUMNS]


def export_file_name(now: Optional[datetime] = None) -> str:
    return FILE_NAME_FORMAT.format(timestamp=(now or datetime.now()).strftime(TIMESTAMP_FORMAT))


def build_workbook(users: Iterable[UserRecord]) -> Workbook:
    """Build the export workbook: one styled header row and one row per user."""
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE

    ws.append(HEADERS)
    header_font = Font(bold=True)
    header_fill = PatternFill(fill_type='solid', start_color=HEADER_FILL, end_color=HEADER_FILL)
    header_border = Border(bottom=Side(style='thin'))
    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill
        cell.border = header_border

    widths = [len(header) for header in HEADERS]
    for user in users:
        row = [getter(user) for _, getter in COLUMNS]
        ws.append(row)
        for i, value in enumerate(row):
            if value is not None:
                widths[i] = max(widths[i], len(str(value)))

    for i, width in enumerate(widths, start=1):
        ws.column_dimensions[get_column_letter(i)].width = min(width + 2, MAX_COLUMN_WIDTH)

    return wb


def write_users_workbook(users: List[UserRecord], directory_path: str,
                         now: Optional[datetime] = None) -> str:
    """
    Save ``users`` as ``ADUsers_<yyyyMMdd_HHmmss>.xlsx`` in ``directory_path``.

    The directory is created if it does not exist.

    Returns:
        Path of the written file
    """
    os.makedirs(directory_path, exist_ok=True)
    file_path = os.path.join(directory_path, export_file_name(now))

    wb = build_workbook(users)
    wb.save(file_path)

    logger.info(f"Exported {len(users)} users to {file_path}")
    return file_path
