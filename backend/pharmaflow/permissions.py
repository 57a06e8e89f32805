"""
Permission System Constants and Definitions

Centralized permission codes and default role mappings for the approval
engine. The same codes are used for global (role-based) grants and for
per-stage grants (StagePermission).

DESIGN PRINCIPLES:
- Permissions are granular (one action per permission)
- Categories group related permissions for UI display
- Default role mappings follow principle of least privilege
- Admin has all permissions by default
"""

# =============================================================================
# PERMISSION CATEGORIES
# =============================================================================

class PermissionCategory:
    """Permission categories for organization."""
    APPROVALS = "APPROVALS"
    WORKFLOW = "WORKFLOW"
    RECEIVING = "RECEIVING"
    USERS = "USERS"
    SYSTEM = "SYSTEM"


# =============================================================================
# PERMISSION DEFINITIONS
# =============================================================================

# Each permission is defined as: (code, name, description, category)
PERMISSION_DEFINITIONS = [
    # APPROVAL RECORD PERMISSIONS
    (
        "VIEW_APPROVALS",
        "View Approval Records",
        "View QC and warehouse approval records",
        PermissionCategory.APPROVALS
    ),
    (
        "CREATE_APPROVAL_RECORD",
        "Create Approval Record",
        "Generate QC / warehouse approval records from upstream documents",
        PermissionCategory.APPROVALS
    ),
    (
        "DECIDE_LINE_ITEMS",
        "Decide Line Items",
        "Approve, reject or partially approve product/batch lines",
        PermissionCategory.APPROVALS
    ),
    (
        "SUBMIT_RECORD",
        "Submit Record",
        "Submit a fully decided record for manager approval",
        PermissionCategory.APPROVALS
    ),
    (
        "APPROVE_RECORD",
        "Approve Record",
        "Record manager approve/reject actions on submitted records",
        PermissionCategory.APPROVALS
    ),
    (
        "RETURN_RECORD",
        "Return Record",
        "Send a submitted record back for rework",
        PermissionCategory.APPROVALS
    ),
    (
        "ASSIGN_RECORDS",
        "Assign Records",
        "Reassign records and change their priority",
        PermissionCategory.APPROVALS
    ),

    # RECEIVING PERMISSIONS
    (
        "RECEIVE_INVOICES",
        "Receive Invoices",
        "Register invoice receiving documents",
        PermissionCategory.RECEIVING
    ),

    # WORKFLOW CONFIGURATION
    (
        "VIEW_WORKFLOW",
        "View Workflow",
        "View workflow stages, transitions and stage assignments",
        PermissionCategory.WORKFLOW
    ),
    (
        "MANAGE_WORKFLOW",
        "Manage Workflow",
        "Create and edit workflow stages and transitions",
        PermissionCategory.WORKFLOW
    ),
    (
        "ASSIGN_STAGE_PERMISSIONS",
        "Assign Stage Permissions",
        "Grant and revoke per-stage permissions for users",
        PermissionCategory.WORKFLOW
    ),

    # USER MANAGEMENT
    (
        "MANAGE_USERS",
        "Manage Users",
        "Create users and assign roles",
        PermissionCategory.USERS
    ),

    # SYSTEM
    (
        "SYSTEM_ADMIN",
        "System Administration",
        "Full system access",
        PermissionCategory.SYSTEM
    ),
]

ALL_PERMISSION_CODES = [code for code, _, _, _ in PERMISSION_DEFINITIONS]


# =============================================================================
# DEFAULT ROLE MAPPINGS
# =============================================================================

DEFAULT_ROLE_PERMISSIONS = {
    "admin": list(ALL_PERMISSION_CODES),

    "manager": [
        "VIEW_APPROVALS",
        "CREATE_APPROVAL_RECORD",
        "APPROVE_RECORD",
        "RETURN_RECORD",
        "ASSIGN_RECORDS",
        "VIEW_WORKFLOW",
    ],

    # Inspectors get their decide/submit rights per stage (StagePermission)
    "qc_inspector": [
        "VIEW_APPROVALS",
        "VIEW_WORKFLOW",
    ],

    "warehouse_staff": [
        "VIEW_APPROVALS",
        "VIEW_WORKFLOW",
        "RECEIVE_INVOICES",
    ],
}

DEFAULT_ROLES = {
    "admin": "Full access to workflow configuration and records",
    "manager": "Signs off submitted QC and warehouse records",
    "qc_inspector": "Inspects received goods",
    "warehouse_staff": "Accepts stock into the warehouse",
}
