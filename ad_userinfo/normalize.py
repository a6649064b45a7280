"""
Normalization of raw directory entries into UserRecord values.

Many Active Directory attributes arrive in more than one shape depending on
whether ldap3 had schema information for the server (native datetimes and
integers) or not (strings and bytes). The helpers here accept either.

Extraction of each attribute is independent: a value that cannot be read is
logged and left absent, and the rest of the record is still built.
"""

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ldap3.protocol.formatters.formatters import format_sid, format_time, format_uuid_le

from .models import DirectoryEntry, UserRecord

logger = logging.getLogger(__name__)


# userAccountControl flags
UF_ACCOUNTDISABLE = 0x2
UF_PASSWD_CANT_CHANGE = 0x40
UF_DONT_EXPIRE_PASSWD = 0x10000
UF_PASSWORD_EXPIRED = 0x800000

# msDS-User-Account-Control-Computed flag
UF_LOCKOUT = 0x10

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
FILETIME_NEVER = 0x7FFFFFFFFFFFFFFF

DIRECT_ATTRIBUTES = [
    ('sam_account_name', 'sAMAccountName'),
    ('user_principal_name', 'userPrincipalName'),
    ('display_name', 'displayName'),
    ('first_name', 'givenName'),
    ('last_name', 'sn'),
    ('middle_name', 'middleName'),
    ('email', 'mail'),
    ('employee_id', 'employeeID'),
    ('description', 'description'),
    ('telephone_number', 'telephoneNumber'),
    ('home_directory', 'homeDirectory'),
    ('home_drive', 'homeDrive'),
]

EXTENDED_ATTRIBUTES = [
    ('department', 'department'),
    ('title', 'title'),
    ('job_title', 'title'),
    ('company', 'company'),
    ('division', 'division'),
    ('organization', 'o'),
    ('employee_number', 'employeeNumber'),
    ('employee_type', 'employeeType'),
    ('manager', 'manager'),
    ('manager_distinguished_name', 'manager'),
    ('office_location', 'physicalDeliveryOfficeName'),
    ('street_address', 'streetAddress'),
    ('city', 'l'),
    ('state', 'st'),
    ('postal_code', 'postalCode'),
    ('country', 'co'),
    ('country_code', 'c'),
    ('mobile_phone', 'mobile'),
    ('home_phone', 'homePhone'),
    ('fax_number', 'facsimileTelephoneNumber'),
    ('ip_phone', 'ipPhone'),
    ('pager', 'pager'),
    ('profile_path', 'profilePath'),
    ('script_path', 'scriptPath'),
    ('proxy_addresses', 'proxyAddresses'),
    ('info', 'info'),
    ('physical_delivery_office_name', 'physicalDeliveryOfficeName'),
    ('post_office_box', 'postOfficeBox'),
]

LIST_ATTRIBUTES = [
    ('direct_reports', 'directReports'),
    ('other_telephones', 'otherTelephone'),
    ('proxy_address_list', 'proxyAddresses'),
]

TIMESTAMP_ATTRIBUTES = [
    ('account_expiration_date', 'accountExpires'),
    ('last_password_set', 'pwdLastSet'),
    ('bad_password_time', 'badPasswordTime'),
    ('lockout_time', 'lockoutTime'),
    ('when_created', 'whenCreated'),
    ('when_changed', 'whenChanged'),
]

EXTENSION_ATTRIBUTE_NAMES = [f"extensionAttribute{i}" for i in range(1, 16)]

# Attributes that are consumed elsewhere or are not meaningful as text
_NOT_ADDITIONAL = {
    'objectclass', 'objectcategory', 'objectguid', 'objectsid', 'distinguishedname',
    'thumbnailphoto', 'memberof', 'useraccountcontrol', 'msds-user-account-control-computed',
    'lastlogon', 'lastlogontimestamp', 'badpwdcount', 'tokengroups', 'ntsecuritydescriptor',
    'usercertificate', 'msexchmailboxguid', 'msexchmailboxsecuritydescriptor',
}

_CONSUMED = {attr.lower() for _, attr in DIRECT_ATTRIBUTES + EXTENDED_ATTRIBUTES + LIST_ATTRIBUTES + TIMESTAMP_ATTRIBUTES}
_CONSUMED.update(name.lower() for name in EXTENSION_ATTRIBUTE_NAMES)
_CONSUMED.update(_NOT_ADDITIONAL)


def first_value(value: Any) -> Any:
    """Return the first value of a possibly multi-valued attribute."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def to_text(value: Any) -> Optional[str]:
    """Return the first value of an attribute as a string."""
    value = first_value(value)
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('utf-8', errors='replace')
    return str(value)


def to_text_list(value: Any) -> List[str]:
    """Return every value of an attribute as a list of strings, keeping order."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    return [text for text in (to_text(v) for v in value) if text is not None]


def to_int(value: Any) -> Optional[int]:
    value = first_value(value)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode('ascii')
    return int(value)


def filetime_to_datetime(value: Any) -> Optional[datetime]:
    """
    Convert a Windows file time (100ns ticks since 1601-01-01 UTC) to a datetime.

    Zero, "never" and values outside the datetime range return None.
    """
    try:
        ticks = int(value)
    except (TypeError, ValueError):
        return None
    if ticks <= 0 or ticks >= FILETIME_NEVER:
        return None
    try:
        return FILETIME_EPOCH + timedelta(microseconds=ticks // 10)
    except OverflowError:
        return None


def to_datetime(value: Any) -> Optional[datetime]:
    """
    Convert a timestamp attribute to a timezone-aware UTC datetime.

    Accepts native datetimes, generalized-time strings and file-time integers
    (as int or digit strings).
    """
    value = first_value(value)
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        # ldap3 renders file time 0 as the 1601 epoch and "never" as datetime.max
        if value <= FILETIME_EPOCH or value.year >= 9999:
            return None
        return value.astimezone(timezone.utc)

    if isinstance(value, int):
        return filetime_to_datetime(value)

    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode('ascii', errors='replace')

    if isinstance(value, str):
        text = value.strip()
        # generalized time always carries a 'Z' or an offset
        if text.lstrip('-').isdigit():
            return filetime_to_datetime(text)
        parsed = format_time(text.encode('ascii', errors='replace'))
        if isinstance(parsed, datetime):
            return to_datetime(parsed)

    return None


def format_guid(value: Any) -> Optional[str]:
    value = first_value(value)
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = format_uuid_le(bytes(value))
    return str(value).strip('{}')


def format_object_sid(value: Any) -> Optional[str]:
    value = first_value(value)
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return format_sid(bytes(value))
    return str(value)


def decode_account_control(uac: int) -> Dict[str, bool]:
    """Decode the userAccountControl bits the record exposes."""
    return {
        'is_enabled': not (uac & UF_ACCOUNTDISABLE),
        'password_never_expires': bool(uac & UF_DONT_EXPIRE_PASSWD),
        'password_cannot_change': bool(uac & UF_PASSWD_CANT_CHANGE),
        'must_change_password_next_logon': bool(uac & UF_PASSWORD_EXPIRED),
    }


def latest_logon(entry: DirectoryEntry) -> Optional[datetime]:
    """lastLogon is per domain controller and lastLogonTimestamp is replicated; use the later one."""
    candidates = [to_datetime(entry.get('lastLogon')), to_datetime(entry.get('lastLogonTimestamp'))]
    candidates = [c for c in candidates if c is not None]
    return max(candidates) if candidates else None


def is_locked_out(entry: DirectoryEntry) -> bool:
    computed = entry.get('msDS-User-Account-Control-Computed')
    if first_value(computed) is not None:
        return bool(to_int(computed) & UF_LOCKOUT)
    return to_datetime(entry.get('lockoutTime')) is not None


def encode_photo(value: Any) -> Optional[str]:
    photo = first_value(value)
    if isinstance(photo, (bytes, bytearray)):
        return base64.b64encode(bytes(photo)).decode('ascii')
    return None


def extension_attributes(entry: DirectoryEntry) -> Dict[str, str]:
    result = {}
    for name in EXTENSION_ATTRIBUTE_NAMES:
        try:
            value = to_text(entry.get(name))
        except Exception as e:
            logger.debug(f"Could not read {name} for {entry.dn}: {e}")
            continue
        if value:
            result[name] = value
    return result


def additional_properties(entry: DirectoryEntry) -> Dict[str, Any]:
    """Collect textual attributes that have no dedicated record field."""
    result = {}
    for name, value in entry.attributes.items():
        if name.lower() in _CONSUMED:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        if not values or not all(isinstance(v, (str, int, datetime)) for v in values):
            continue
        result[name] = values[0] if len(values) == 1 else list(values)
    return result


class _RecordBuilder:
    """Collects record fields one at a time, skipping any that fail to extract."""

    def __init__(self, entry: DirectoryEntry):
        self.entry = entry
        self.values = {}

    def set(self, field_name: str, extractor, *args):
        try:
            value = extractor(*args)
        except Exception as e:
            logger.debug(f"Skipping {field_name} for {self.entry.dn}: {e}")
            return
        if value is not None:
            self.values[field_name] = value

    def update(self, extractor, *args):
        try:
            self.values.update(extractor(*args))
        except Exception as e:
            logger.debug(f"Skipping {getattr(extractor, '__name__', extractor)} for {self.entry.dn}: {e}")


def to_record(entry: DirectoryEntry,
              groups: Optional[Iterable[Tuple[str, str]]] = None) -> UserRecord:
    """
    Normalize a raw directory entry into a UserRecord.

    Args:
        entry: Raw entry with its attribute bag
        groups: Optional (name, distinguished name) pairs of the user's groups

    Returns:
        UserRecord
    """
    builder = _RecordBuilder(entry)
    get = entry.get

    for field_name, attribute in DIRECT_ATTRIBUTES:
        builder.set(field_name, to_text, get(attribute))
    builder.set('distinguished_name', lambda: to_text(get('distinguishedName')) or entry.dn)
    builder.set('object_guid', format_guid, get('objectGUID'))
    builder.set('object_sid', format_object_sid, get('objectSid'))
    builder.set('bad_password_count', to_int, get('badPwdCount'))
    builder.set('last_logon_date', latest_logon, entry)
    builder.set('is_locked_out', is_locked_out, entry)

    for field_name, attribute in EXTENDED_ATTRIBUTES:
        builder.set(field_name, to_text, get(attribute))

    for field_name, attribute in LIST_ATTRIBUTES:
        builder.set(field_name, to_text_list, get(attribute))

    for field_name, attribute in TIMESTAMP_ATTRIBUTES:
        builder.set(field_name, to_datetime, get(attribute))

    uac = None
    try:
        uac = to_int(get('userAccountControl'))
    except (TypeError, ValueError) as e:
        logger.debug(f"Unreadable userAccountControl for {entry.dn}: {e}")
    if uac is not None:
        builder.update(decode_account_control, uac)

    builder.set('thumbnail_photo', encode_photo, get('thumbnailPhoto'))
    builder.set('extension_attributes', extension_attributes, entry)
    builder.set('additional_properties', additional_properties, entry)

    if groups:
        names = []
        dns = []
        for name, dn in groups:
            names.append(name)
            dns.append(dn)
        builder.values['groups'] = names
        builder.values['member_of'] = dns

    return UserRecord(**builder.values)
