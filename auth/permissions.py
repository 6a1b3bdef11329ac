"""
auth/permissions.py -- Role defaults and permission evaluation.

has_permission() is a pure function over (user, module, action). Grants only
ever add capabilities: there is no deny rule, so the effective policy for a
module is the union of every matching grant. A grant whose module is "all"
matches any module name.

Role is consulted only when a user is created (or re-roled without explicit
grants) to derive the default grant list. Evaluation never looks at role --
an admin whose grants were edited down really loses those capabilities.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from auth.models import Action, PermissionGrant, Role, User

ALL_MODULES = "all"


def grant(module: str, *actions: Action | str) -> PermissionGrant:
    """Build a PermissionGrant, accepting Action members or their string values."""
    return PermissionGrant(module=module, actions=frozenset(Action(a) for a in actions))


_EVERYTHING = tuple(Action)

_R, _C, _E, _D = Action.view, Action.create, Action.edit, Action.delete

ROLE_DEFAULT_GRANTS: dict[Role, tuple[PermissionGrant, ...]] = {
    Role.admin: (grant(ALL_MODULES, *_EVERYTHING),),
    Role.dev: (grant(ALL_MODULES, *_EVERYTHING),),
    Role.manager: (
        grant("dashboard", _R),
        grant("analytics", _R, Action.export),
        grant("staff", _R, _C, _E),
        grant("patients", _R, _E),
        grant("doctors", _R, _C, _E),
        grant("tests", _R, _C, _E),
        grant("stock", _R, _C, _E),
        grant("expenses", _R, _C, _E),
    ),
    Role.receptionist: (
        grant("patients", _R, _C, _E),
        grant("invoices", _R, _C),
        grant("reports", _R),
        grant("ai-feedback", _R),
        grant("appointments", _R, _C, _E),
    ),
    Role.student: (
        grant("dashboard", _R),
        grant("reports", _R),
    ),
    Role.technician: (
        grant("reports", _R, _C, _E),
        grant("ai-feedback", _R),
        grant("tests", _R),
        grant("stock", _R, _E),
        grant("quality", _R, _C, _E),
    ),
    Role.pathologist: (
        grant("reports", _R, _C, _E, Action.verify),
        grant("ai-feedback", _R),
        grant("templates", _R, _C, _E, Action.lock, Action.unlock),
        grant("patients", _R),
        grant("tests", _R, _C, _E),
    ),
    Role.accountant: (
        grant("invoices", _R, _E),
        grant("expenses", _R, _C, _E),
        grant("analytics", _R),
    ),
    Role.qc: (
        grant("quality", _R, _C, _E),
        grant("tests", _R),
    ),
    Role.filemanager: (grant("files", _R, _C, _E),),
    Role.backup: (grant("backup", _R, _C),),
    Role.analytics: (grant("analytics", _R, Action.export),),
    Role.staff: (grant("staff", _R, _C, _E),),
    Role.appointments: (grant("appointments", _R, _C, _E),),
    Role.center_manager: (
        grant("collection-centers", _R, _C, _E, _D),
        grant("patients", _R, _C, _E),
        grant("invoices", _R, _C),
        grant("reports", _R),
        grant("dashboard", _R),
    ),
}

# Fallback for a role missing from the table.
_DEFAULT_GRANTS: tuple[PermissionGrant, ...] = (grant("dashboard", _R),)


def default_grants_for(role: Role) -> list[PermissionGrant]:
    """Return a fresh list of the default grants for role."""
    return list(ROLE_DEFAULT_GRANTS.get(role, _DEFAULT_GRANTS))


def has_permission(user: User | None, module: str, action: Action | str) -> bool:
    """Return True if any of user's grants allows action on module.

    Inactive users and missing users are denied everything. An unknown action
    string is denied rather than raising, so query-string input can be passed
    straight through.
    """
    if user is None or not user.is_active:
        return False
    try:
        wanted = Action(action)
    except ValueError:
        return False
    for g in user.permissions:
        if (g.module == module or g.module == ALL_MODULES) and wanted in g.actions:
            return True
    return False


def effective_actions(user: User | None, module: str) -> frozenset[Action]:
    """Union of the actions every matching grant allows on module."""
    if user is None or not user.is_active:
        return frozenset()
    actions: set[Action] = set()
    for g in user.permissions:
        if g.module == module or g.module == ALL_MODULES:
            actions |= g.actions
    return frozenset(actions)
