"""
Access Policy Engine — capability checks for every mutation and sensitive read.

The policy is a table keyed by ``(resource_type, action)``. Each entry is a
``Rule``: the roles that pass outright, fine-grained permissions that pass
outright, and an optional relationship predicate ``(actor, resource) -> bool``
(ownership, "actor drives this route", "actor owns the underlying request").
``admin`` passes every rule.

Everything here is pure: no queries are issued beyond lazy relationship
loads on the resource handed in, and nothing is written.

Usage:
    from resourceflow.services.access_policy import authorize, can

    authorize(actor, "create", "contribution")
    if can(actor, "view", "logistic", logistic):
        ...

    # Recipients must not learn whether someone else's request exists
    authorize(actor, "view", "request", req, hide_existence=True)
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from resourceflow.core.exceptions import AuthorizationError, NotFoundError


@dataclass(frozen=True)
class Rule:
    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[str] = field(default_factory=frozenset)
    predicate: Callable | None = None


def _rule(*roles: str, permissions=(), predicate=None) -> Rule:
    return Rule(frozenset(roles), frozenset(permissions), predicate)


# ── Relationship predicates ──────────────────────────────────────────────────

def _owns(actor, resource) -> bool:
    return resource is not None and getattr(resource, "user_id", None) == actor.id


def _is_assigned_supplier(actor, resource) -> bool:
    return resource is not None and getattr(resource, "assigned_supplier_id", None) == actor.id


def _owns_contribution(actor, resource) -> bool:
    return resource is not None and getattr(resource, "supplier_id", None) == actor.id


def _contribution_party(actor, contribution) -> bool:
    """The contributing supplier or the owner of the funded request."""
    if contribution is None:
        return False
    if getattr(contribution, "supplier_id", None) == actor.id:
        return True
    return _owns(actor, getattr(contribution, "request", None))


def _allocation_request_owner(allocation):
    request = getattr(allocation, "request", None) if allocation is not None else None
    return getattr(request, "user_id", None)


def _allocated_by_or_request_owner(actor, allocation) -> bool:
    if allocation is None:
        return False
    return (
        getattr(allocation, "allocated_by", None) == actor.id
        or _allocation_request_owner(allocation) == actor.id
    )


def _allocated_by(actor, allocation) -> bool:
    return allocation is not None and getattr(allocation, "allocated_by", None) == actor.id


def _route_driver_or_request_owner(actor, route) -> bool:
    if route is None:
        return False
    if getattr(route, "driver_id", None) == actor.id:
        return True
    return _allocation_request_owner(getattr(route, "allocation", None)) == actor.id


def _route_driver(actor, route) -> bool:
    return route is not None and getattr(route, "driver_id", None) == actor.id


def _logistic_route(logistic):
    return getattr(logistic, "route", None) if logistic is not None else None


def _logistic_driver_or_request_owner(actor, logistic) -> bool:
    return _route_driver_or_request_owner(actor, _logistic_route(logistic))


def _logistic_driver(actor, logistic) -> bool:
    return _route_driver(actor, _logistic_route(logistic))


# ── Capability table ─────────────────────────────────────────────────────────
# (resource_type, action) → Rule.  admin is implicit everywhere.

POLICY_TABLE: dict[tuple[str, str], Rule] = {
    # Requests
    ("request", "view_any"): _rule("auditor", "supplier", "donor", "distributor"),
    ("request", "view"): _rule("auditor", "supplier", "donor", "distributor", predicate=_owns),
    ("request", "create"): _rule("recipient", "requestor", "ngo"),
    ("request", "approve"): _rule(),
    ("request", "claim"): _rule("supplier"),
    ("request", "complete"): _rule(predicate=_is_assigned_supplier),
    ("request", "review"): _rule(),

    # Contributions
    ("contribution", "view_stats"): _rule("auditor", "supplier", "donor", predicate=_owns),
    ("contribution", "view_any"): _rule("auditor", "donor"),
    ("contribution", "view"): _rule("auditor", "donor", predicate=_contribution_party),
    ("contribution", "create"): _rule("supplier"),
    ("contribution", "update"): _rule(predicate=_owns_contribution),
    ("contribution", "request_recede"): _rule(predicate=_owns_contribution),
    ("contribution", "approve_recede"): _rule(),
    ("contribution", "reject_recede"): _rule(),

    # Allocations
    ("allocation", "view_any"): _rule(
        "auditor", "supplier", "donor", "recipient", "requestor", "ngo", "distributor",
    ),
    ("allocation", "view"): _rule("auditor", "supplier", predicate=_allocated_by_or_request_owner),
    ("allocation", "create"): _rule("auditor"),
    ("allocation", "update"): _rule("auditor", predicate=_allocated_by),
    ("allocation", "delete"): _rule(),

    # Donations
    ("donation", "view"): _rule("auditor", "supplier", predicate=_owns),
    ("donation", "create"): _rule("supplier", "donor"),
    ("donation", "update"): _rule(predicate=_owns),
    ("donation", "lock_price"): _rule("auditor"),
    ("donation", "assign_warehouse"): _rule(),
    ("donation", "delete"): _rule(),

    # Delivery routes
    ("delivery_route", "view_any"): _rule(
        "distributor", "supplier", permissions=("delivery_routes.view",),
    ),
    ("delivery_route", "view_all"): _rule("distributor", permissions=("delivery_routes.assign",)),
    ("delivery_route", "view"): _rule(
        "distributor", "supplier",
        permissions=("delivery_routes.assign",),
        predicate=_route_driver_or_request_owner,
    ),
    ("delivery_route", "create"): _rule("distributor", permissions=("delivery_routes.assign",)),
    ("delivery_route", "update"): _rule(
        "distributor", permissions=("delivery_routes.assign",), predicate=_route_driver,
    ),
    ("delivery_route", "delete"): _rule(),

    # Logistics tracking
    ("logistic", "view"): _rule(
        "distributor", "supplier",
        permissions=("delivery_routes.assign",),
        predicate=_logistic_driver_or_request_owner,
    ),
    ("logistic", "update_location"): _rule("distributor", predicate=_logistic_driver),
    ("logistic", "complete_delivery"): _rule("distributor", predicate=_logistic_driver),

    # Scheduler administration
    ("scheduler", "view"): _rule(),
    ("scheduler", "run"): _rule(),
}


def get_rule(action: str, resource_type: str) -> Rule:
    try:
        return POLICY_TABLE[(resource_type, action)]
    except KeyError:
        raise ValueError(f"No policy for '{action}' on {resource_type}") from None


def can(actor, action: str, resource_type: str, resource=None) -> bool:
    """
    Evaluate the capability table for ``actor``.

    Args:
        actor: A ``User`` (or anything exposing ``id``, ``role``,
            ``has_permission``). ``None`` never passes.
        action: Action name, e.g. "view", "create", "lock_price".
        resource_type: Resource group, e.g. "request", "logistic".
        resource: Target instance for relationship predicates.

    Returns:
        True when the actor is admin, holds a listed role or permission,
        or satisfies the relationship predicate.
    """
    if actor is None or not getattr(actor, "is_active", True):
        return False
    rule = get_rule(action, resource_type)

    if actor.role == "admin":
        return True
    if actor.role in rule.roles:
        return True
    if rule.permissions and any(actor.has_permission(p) for p in rule.permissions):
        return True
    if rule.predicate is not None and resource is not None:
        return bool(rule.predicate(actor, resource))
    return False


def authorize(actor, action: str, resource_type: str, resource=None, *, hide_existence=False):
    """
    Raise unless ``can(...)`` passes.

    With ``hide_existence=True`` a denial surfaces as ``NotFoundError`` so the
    caller cannot distinguish "exists but forbidden" from "does not exist".
    """
    if can(actor, action, resource_type, resource):
        return
    if hide_existence:
        raise NotFoundError(resource=resource_type, resource_id=getattr(resource, "id", None))
    raise AuthorizationError(getattr(actor, "id", None), action, resource_type)
