"""
Role constants for CareLoop.

Users can hold multiple roles. Round-robin escalation assignment only
considers active users holding the nurse role.
"""


class Roles:
    # Care-transition nurse - receives and resolves escalation tasks
    NURSE = "nurse"

    # Program administrator - manages protocols, templates and manual outreach
    CARE_ADMIN = "care-admin"

    # Platform administrator - user management and operator alerts
    ADMIN = "admin"

