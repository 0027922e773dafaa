"""
User roles enumeration.

Defines the caller roles recognised in access tokens.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Scholarship office staff (allocations, manual disbursement)
        PARTNER_SCHOOL: Partner school representative, limited to its own school_id
        SYSTEM: Automated grant processing
    """
    ADMIN = "ADMIN"
    PARTNER_SCHOOL = "PARTNER_SCHOOL"
    SYSTEM = "SYSTEM"
