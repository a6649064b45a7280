"""
Value types shared by the directory client, the normalizer and the exporter.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Dict, List, Any, Optional


@dataclass(frozen=True)
class DirectoryEntry:
    """A raw directory entry: its DN and the attribute bag as returned by the server."""
    dn: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        """Case-insensitive attribute lookup."""
        if name in self.attributes:
            return self.attributes[name]
        lowered = name.lower()
        for key, value in self.attributes.items():
            if key.lower() == lowered:
                return value
        return default


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_json_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _json_value(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class UserRecord:
    """
    Flat view of an Active Directory user.

    Every scalar field is optional: None means the directory did not return
    the attribute, which is different from an empty string.
    """
    # identity
    sam_account_name: Optional[str] = None
    user_principal_name: Optional[str] = None
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    middle_name: Optional[str] = None
    email: Optional[str] = None
    employee_id: Optional[str] = None
    employee_number: Optional[str] = None
    employee_type: Optional[str] = None

    # organization
    department: Optional[str] = None
    title: Optional[str] = None
    job_title: Optional[str] = None
    company: Optional[str] = None
    division: Optional[str] = None
    organization: Optional[str] = None
    manager: Optional[str] = None
    manager_distinguished_name: Optional[str] = None
    direct_reports: List[str] = field(default_factory=list)

    # location
    office_location: Optional[str] = None
    street_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None

    # phones
    telephone_number: Optional[str] = None
    mobile_phone: Optional[str] = None
    home_phone: Optional[str] = None
    fax_number: Optional[str] = None
    ip_phone: Optional[str] = None
    pager: Optional[str] = None
    other_telephones: List[str] = field(default_factory=list)

    # profile
    home_directory: Optional[str] = None
    home_drive: Optional[str] = None
    profile_path: Optional[str] = None
    script_path: Optional[str] = None

    # account state
    is_enabled: Optional[bool] = None
    is_locked_out: Optional[bool] = None
    password_never_expires: Optional[bool] = None
    password_cannot_change: Optional[bool] = None
    must_change_password_next_logon: Optional[bool] = None
    account_expiration_date: Optional[datetime] = None
    last_logon_date: Optional[datetime] = None
    last_password_set: Optional[datetime] = None
    bad_password_time: Optional[datetime] = None
    bad_password_count: Optional[int] = None
    lockout_time: Optional[datetime] = None

    when_created: Optional[datetime] = None
    when_changed: Optional[datetime] = None

    # identifiers
    distinguished_name: Optional[str] = None
    object_guid: Optional[str] = None
    object_sid: Optional[str] = None
    description: Optional[str] = None

    # group DNs and names, kept in the same order
    member_of: List[str] = field(default_factory=list)
    groups: List[str] = field(default_factory=list)

    thumbnail_photo: Optional[str] = None

    proxy_addresses: Optional[str] = None
    proxy_address_list: List[str] = field(default_factory=list)

    info: Optional[str] = None
    physical_delivery_office_name: Optional[str] = None
    post_office_box: Optional[str] = None

    extension_attributes: Dict[str, str] = field(default_factory=dict)
    additional_properties: Dict[str, Any] = field(default_factory=dict)

    def __str__(self):
        return f"{self.display_name} ({self.sam_account_name}) - {self.email}"

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly dictionary of the record."""
        return {f.name: _json_value(getattr(self, f.name)) for f in fields(self)}
