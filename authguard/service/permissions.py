from __future__ import annotations

from typing import Dict, FrozenSet

WILDCARD = "*"

# role -> granted permissions; roles are matched case-insensitively
ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "super_admin": frozenset({WILDCARD}),
    "admin": frozenset({WILDCARD}),
    "organizer": frozenset(
        {
            "view_all_users",
            "manage_events",
            "create_events",
            "edit_events",
            "delete_own_events",
            "send_event_notifications",
            "export_event_data",
            "view_reports",
        }
    ),
    "manager": frozenset(
        {
            "manage_users",
            "view_all_users",
            "view_team_users",
            "manage_events",
            "export_event_data",
            "send_bulk_notifications",
            "upload_files",
            "access_all_files",
            "view_reports",
        }
    ),
    "contributor": frozenset(
        {"view_all_events", "upload_files", "view_reports"}
    ),
    "participant": frozenset(
        {
            "view_own_events",
            "update_profile",
            "view_notifications",
            "mark_notifications_read",
        }
    ),
    "user": frozenset({"create_events", "edit_events", "upload_files"}),
}


def role_grants(role: str, permission: str) -> bool:
    granted = ROLE_PERMISSIONS.get((role or "").lower(), frozenset())
    return WILDCARD in granted or permission in granted
