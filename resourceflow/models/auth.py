"""
Auth Models — platform users and their role-derived permissions.

A user carries a single role. Fine-grained permissions are the union of the
explicit ``permissions`` list and the defaults for that role; ``admin``
implicitly holds every permission.

Authentication itself (login, token issuance) happens elsewhere; this table
is only read to resolve the acting user from a bearer token.
"""

from datetime import datetime, timezone

from resourceflow.models import db


# ═══════════════════════════════════════════════════════════════
# ROLE CATALOGUE
# ═══════════════════════════════════════════════════════════════
ROLES = {
    "admin", "auditor", "supplier", "donor", "recipient", "requestor",
    "ngo", "distributor", "driver", "supervisor", "field_agent",
}

ROLE_DEFAULT_PERMISSIONS: dict[str, list[str]] = {
    "auditor": [
        "valuation.view",
        "valuation.lock",
        "valuation.override",
        "ngo_verification.view",
        "ngo_verification.verify",
        "monetary_transfers.view",
        "audit_logs.view",
    ],
    "field_agent": [
        "impact_proofs.upload",
        "impact_proofs.view",
    ],
    "driver": [
        "logistics.view",
        "logistics.update",
        "delivery_routes.view",
    ],
    "supervisor": [
        "logistics.view",
        "delivery_routes.view",
        "delivery_routes.assign",
        "team_management.view",
        "team_management.assign",
    ],
}


# ═══════════════════════════════════════════════════════════════
# USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(30), nullable=False, default="recipient",
                     comment="admin, auditor, supplier, donor, recipient, requestor, ngo, ...")
    permissions = db.Column(db.JSON, default=list,
                            comment="Explicit permission grants on top of role defaults")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def is_admin(self) -> bool:
        return self.role == "admin"

    def has_role(self, *roles: str) -> bool:
        return self.role in roles

    @property
    def effective_permissions(self) -> set[str]:
        """Explicit grants merged with the role's defaults."""
        perms = set(self.permissions or [])
        perms.update(ROLE_DEFAULT_PERMISSIONS.get(self.role, []))
        return perms

    def has_permission(self, codename: str) -> bool:
        if self.is_admin():
            return True
        return codename in self.effective_permissions

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "permissions": sorted(self.effective_permissions),
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} [{self.role}]>"
