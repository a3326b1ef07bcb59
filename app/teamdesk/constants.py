"""
Central constants for the TeamDesk application.
"""
from __future__ import annotations

# Platform-wide user roles (User.role)
ROLE_SUPER_ADMIN = "SUPER_ADMIN"
ROLE_ADMIN = "ADMIN"
ROLE_MANAGER = "MANAGER"
ROLE_USER = "USER"

USER_ROLES = (ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_MANAGER, ROLE_USER)

# Roles allowed to act on any team and read the audit trail
PLATFORM_ADMIN_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_ADMIN})

# AuditLog.action values
AUDIT_LOGIN = "LOGIN"
AUDIT_LOGOUT = "LOGOUT"
AUDIT_CREATE = "CREATE"
AUDIT_UPDATE = "UPDATE"
AUDIT_DELETE = "DELETE"
AUDIT_ROLE_CHANGED = "ROLE_CHANGED"
AUDIT_STATUS_CHANGED = "STATUS_CHANGED"
AUDIT_INVITE_SENT = "INVITE_SENT"
AUDIT_INVITE_ACCEPTED = "INVITE_ACCEPTED"
AUDIT_INVITE_DECLINED = "INVITE_DECLINED"
AUDIT_REQUEST_SENT = "REQUEST_SENT"
AUDIT_REQUEST_APPROVED = "REQUEST_APPROVED"
AUDIT_REQUEST_REJECTED = "REQUEST_REJECTED"

AUDIT_ACTIONS = frozenset(
    {
        AUDIT_LOGIN,
        AUDIT_LOGOUT,
        AUDIT_CREATE,
        AUDIT_UPDATE,
        AUDIT_DELETE,
        AUDIT_ROLE_CHANGED,
        AUDIT_STATUS_CHANGED,
        AUDIT_INVITE_SENT,
        AUDIT_INVITE_ACCEPTED,
        AUDIT_INVITE_DECLINED,
        AUDIT_REQUEST_SENT,
        AUDIT_REQUEST_APPROVED,
        AUDIT_REQUEST_REJECTED,
    }
)
