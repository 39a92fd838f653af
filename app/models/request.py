"""
Request domain models.

Models:
    - ItemRequest: equipment request with line items
    - RequestItem: one equipment line of an ItemRequest
    - ServiceVehicleRequest: trip / vehicle request
"""

from decimal import Decimal

from app.models import db
from app.models.base import RequestRecord

# ── Constants ────────────────────────────────────────────────────────────────

ITEM_CATEGORIES = {
    "laptop", "desktop", "monitor", "keyboard", "mouse", "ups",
    "printer", "software", "other_accessory", "other_equipment",
}
PRIORITIES = {"low", "medium", "high", "urgent"}

# Vehicle-request verification (separate from the approval workflow)
VERIFICATION_PENDING = "pending"
VERIFICATION_OUTCOMES = ("verified", "declined")
VERIFICATION_STATUSES = (VERIFICATION_PENDING, *VERIFICATION_OUTCOMES)


class ItemRequest(RequestRecord):
    __tablename__ = "item_requests"

    form_kind = "item_request"

    user_name = db.Column(db.String(200), comment="Actual user of the equipment")
    user_position = db.Column(db.String(200))
    date_required = db.Column(db.Date)
    reason = db.Column(db.Text)
    priority = db.Column(db.String(10), nullable=False, default="medium")
    total_estimated_cost = db.Column(db.Numeric(12, 2), default=0)

    requestor = db.relationship("User", foreign_keys="ItemRequest.requestor_id")
    department = db.relationship("Department", foreign_keys="ItemRequest.department_id")
    items = db.relationship(
        "RequestItem", back_populates="request",
        cascade="all, delete-orphan", order_by="RequestItem.id",
    )

    def recompute_total(self):
        total = Decimal("0")
        for item in self.items:
            total += item.line_total
        self.total_estimated_cost = total
        return total

    def to_dict(self, include_items=True):
        d = self.base_dict()
        d.update({
            "user_name": self.user_name,
            "user_position": self.user_position,
            "date_required": self.date_required.isoformat() if self.date_required else None,
            "reason": self.reason,
            "priority": self.priority,
            "total_estimated_cost": float(self.total_estimated_cost or 0),
        })
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d

    def __repr__(self):
        return f"<ItemRequest {self.id}: {self.request_number} [{self.status}]>"


class RequestItem(db.Model):
    __tablename__ = "request_items"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("item_requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    category = db.Column(db.String(30), nullable=False)
    item_description = db.Column(db.String(500), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    estimated_cost = db.Column(db.Numeric(12, 2), comment="Unit cost")
    proposed_specs = db.Column(db.Text)
    purpose = db.Column(db.Text)
    is_replacement = db.Column(db.Boolean, nullable=False, default=False)
    replaced_item_info = db.Column(db.Text)

    request = db.relationship("ItemRequest", back_populates="items")

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.estimated_cost or 0) * (self.quantity or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "category": self.category,
            "item_description": self.item_description,
            "quantity": self.quantity,
            "estimated_cost": float(self.estimated_cost) if self.estimated_cost is not None else None,
            "line_total": float(self.line_total),
            "proposed_specs": self.proposed_specs,
            "purpose": self.purpose,
            "is_replacement": self.is_replacement,
            "replaced_item_info": self.replaced_item_info,
        }


class ServiceVehicleRequest(RequestRecord):
    __tablename__ = "service_vehicle_requests"

    form_kind = "vehicle_request"

    request_type = db.Column(db.String(50), default="transport")
    purpose = db.Column(db.Text)
    destination = db.Column(db.String(300))
    pick_up_location = db.Column(db.String(300))
    travel_date_from = db.Column(db.Date)
    travel_date_to = db.Column(db.Date)
    departure_time = db.Column(db.String(20))
    passengers = db.Column(db.JSON, default=list)
    contact_number = db.Column(db.String(50))

    # Vehicle-pool assignment ("Section 4"), filled by the pool approver.
    assigned_driver = db.Column(db.String(200))
    assigned_vehicle = db.Column(db.Integer)
    approval_date = db.Column(db.Date)

    # Temporary verifier picked by the pool approver; independent of the approval status.
    verifier_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    verification_status = db.Column(db.String(20), comment="pending | verified | declined")
    verified_at = db.Column(db.DateTime(timezone=True))
    verifier_comments = db.Column(db.Text)

    requestor = db.relationship("User", foreign_keys="ServiceVehicleRequest.requestor_id")
    department = db.relationship("Department", foreign_keys="ServiceVehicleRequest.department_id")
    verifier = db.relationship("User", foreign_keys="ServiceVehicleRequest.verifier_id")

    def has_assignment(self) -> bool:
        return bool((self.assigned_driver or "").strip()) and self.assigned_vehicle is not None \
            and self.approval_date is not None

    def to_dict(self):
        d = self.base_dict()
        d.update({
            "request_type": self.request_type,
            "purpose": self.purpose,
            "destination": self.destination,
            "pick_up_location": self.pick_up_location,
            "travel_date_from": self.travel_date_from.isoformat() if self.travel_date_from else None,
            "travel_date_to": self.travel_date_to.isoformat() if self.travel_date_to else None,
            "departure_time": self.departure_time,
            "passengers": self.passengers or [],
            "contact_number": self.contact_number,
            "assigned_driver": self.assigned_driver,
            "assigned_vehicle": self.assigned_vehicle,
            "approval_date": self.approval_date.isoformat() if self.approval_date else None,
            "verifier_id": self.verifier_id,
            "verification_status": self.verification_status,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "verifier_comments": self.verifier_comments,
        })
        return d

    def __repr__(self):
        return f"<ServiceVehicleRequest {self.id}: {self.request_number} [{self.status}]>"


# form kind -> model class
REQUEST_MODELS = {
    "item_request": ItemRequest,
    "vehicle_request": ServiceVehicleRequest,
}
