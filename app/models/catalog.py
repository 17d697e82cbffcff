"""
Bookable Fulfillment Platform
Catalog & resource registry models.

The scheduling core only reads these tables: the catalog supplies the
component template a fulfillment graph is built from, the registry
supplies resource identity. Scheduling state lives on assignments.

Models:
    - Location:               physical anchor with its own timezone
    - Resource:               staff member, vehicle, room or equipment that can be assigned
    - Sellable:               a bookable product
    - SellableComponent:      one step of a sellable's fulfillment template
    - ComponentRelationship:  template edge between two components of the same sellable

Architecture:
    Sellable ──1:N──▶ SellableComponent
    SellableComponent ──N:M──▶ SellableComponent  (via ComponentRelationship)
"""

from app.models import db
from app.models.base import TenantModel, isoformat


# ── Constants ────────────────────────────────────────────────────────────────

RESOURCE_TYPES = {"staff", "vehicle", "room", "equipment", "other"}
COMPONENT_MODES = {"required", "optional"}


class Location(TenantModel):
    __tablename__ = "locations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    timezone = db.Column(db.String(64), nullable=False, default="UTC")

    def to_dict(self):
        return {"id": self.id, "tenant_id": self.tenant_id, "name": self.name, "timezone": self.timezone}

    def __repr__(self):
        return f"<Location {self.name}>"


class Resource(TenantModel):
    """Assignable resource. Locked row-wise while an overlap check runs."""

    __tablename__ = "resources"
    __table_args__ = (
        db.CheckConstraint(
            "resource_type IN ('staff','vehicle','room','equipment','other')",
            name="ck_resource_type",
        ),
        db.UniqueConstraint("tenant_id", "id", name="uq_resource_tenant_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    resource_type = db.Column(db.String(20), nullable=False, default="staff")
    capabilities = db.Column(db.JSON, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "resource_type": self.resource_type,
            "capabilities": self.capabilities or [],
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Resource {self.name} ({self.resource_type})>"


class Sellable(TenantModel):
    __tablename__ = "sellables"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "slug", name="uq_sellable_tenant_slug"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(120), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    default_duration_min = db.Column(db.Integer, nullable=True)

    components = db.relationship(
        "SellableComponent", backref="sellable", lazy="dynamic",
        order_by="[SellableComponent.sort_order, SellableComponent.id]",
    )
    relationships = db.relationship(
        "ComponentRelationship", backref="sellable", lazy="dynamic",
        order_by="ComponentRelationship.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "default_duration_min": self.default_duration_min,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Sellable {self.slug}>"


class SellableComponent(TenantModel):
    __tablename__ = "sellable_components"
    __table_args__ = (
        db.UniqueConstraint("sellable_id", "slug", name="uq_sellable_component_slug"),
        db.CheckConstraint("mode IN ('required','optional')", name="ck_sellable_component_mode"),
        db.CheckConstraint(
            "duration_min IS NULL OR duration_min > 0", name="ck_sellable_component_duration",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    sellable_id = db.Column(
        db.Integer, db.ForeignKey("sellables.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(120), nullable=False)
    kind = db.Column(db.String(30), nullable=False, default="service_task")
    mode = db.Column(db.String(20), nullable=False, default="required")
    duration_min = db.Column(db.Integer, nullable=True, comment="Duration hint used to lay out unit timing")
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    assignment_policy = db.Column(db.JSON, default=dict)

    def to_dict(self):
        return {
            "id": self.id,
            "sellable_id": self.sellable_id,
            "name": self.name,
            "slug": self.slug,
            "kind": self.kind,
            "mode": self.mode,
            "duration_min": self.duration_min,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<SellableComponent {self.slug}>"


class ComponentRelationship(TenantModel):
    """
    Template edge copied verbatim onto FulfillmentDependency rows.

    No self-loop CHECK here: a malformed template must still be
    representable so the graph builder can reject it at build time.
    """

    __tablename__ = "sellable_component_relationships"
    __table_args__ = (
        db.UniqueConstraint(
            "predecessor_component_id", "successor_component_id", "dependency_type",
            name="uq_component_relationship",
        ),
        db.CheckConstraint(
            "min_gap_min IS NULL OR max_gap_min IS NULL OR min_gap_min <= max_gap_min",
            name="ck_component_relationship_gap_order",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    sellable_id = db.Column(
        db.Integer, db.ForeignKey("sellables.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    predecessor_component_id = db.Column(
        db.Integer, db.ForeignKey("sellable_components.id", ondelete="CASCADE"), nullable=False,
    )
    successor_component_id = db.Column(
        db.Integer, db.ForeignKey("sellable_components.id", ondelete="CASCADE"), nullable=False,
    )
    dependency_type = db.Column(db.String(30), nullable=False, default="finish_to_start")
    min_gap_min = db.Column(db.Integer, nullable=True)
    max_gap_min = db.Column(db.Integer, nullable=True)
    hard_block = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "sellable_id": self.sellable_id,
            "predecessor_component_id": self.predecessor_component_id,
            "successor_component_id": self.successor_component_id,
            "dependency_type": self.dependency_type,
            "min_gap_min": self.min_gap_min,
            "max_gap_min": self.max_gap_min,
            "hard_block": self.hard_block,
        }
