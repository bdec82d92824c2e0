from datetime import date, datetime, timezone
from decimal import Decimal

from flask_login import UserMixin
from sqlalchemy import event
from werkzeug.security import check_password_hash, generate_password_hash

from stockapp.extensions import db


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every table."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def money_to_string(value) -> str | None:
    if value is None:
        return None
    return f"{Decimal(value):.2f}"


def _iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


class StockStatus:
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"

    ALL_STATUSES = [IN_STOCK, LOW_STOCK, OUT_OF_STOCK]
    LABELS = {
        IN_STOCK: "In Stock",
        LOW_STOCK: "Low Stock",
        OUT_OF_STOCK: "Out of Stock",
    }

    # Presentation-only threshold; never persisted.
    CRITICAL_RATIO = Decimal("0.5")

    @staticmethod
    def derive(quantity: int | None, min_quantity: int | None) -> str:
        quantity = int(quantity or 0)
        min_quantity = int(min_quantity or 0)
        if quantity <= 0:
            return StockStatus.OUT_OF_STOCK
        if quantity < min_quantity:
            return StockStatus.LOW_STOCK
        return StockStatus.IN_STOCK

    @classmethod
    def label_for(cls, quantity: int | None, min_quantity: int | None) -> str:
        """Read-side label: ``out_of_stock``, ``critical``, ``low`` or ``ok``."""

        quantity = int(quantity or 0)
        min_quantity = int(min_quantity or 0)
        if quantity <= 0:
            return "out_of_stock"
        if quantity < min_quantity * cls.CRITICAL_RATIO:
            return "critical"
        if quantity < min_quantity:
            return "low"
        return "ok"


class MovementType:
    IN = "IN"
    OUT = "OUT"

    ALL_TYPES = [IN, OUT]
    LABELS = {IN: "Stock In", OUT: "Stock Out"}

    @staticmethod
    def delta(movement_type: str, quantity: int) -> int:
        return quantity if movement_type == MovementType.IN else -quantity


class UserRole:
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"
    VIEWER = "viewer"

    ALL_ROLES = [ADMIN, MANAGER, EMPLOYEE, VIEWER]
    RANK = {VIEWER: 0, EMPLOYEE: 1, MANAGER: 2, ADMIN: 3}

    @classmethod
    def at_least(cls, role: str | None, minimum: str) -> bool:
        if role not in cls.RANK:
            return False
        return cls.RANK[role] >= cls.RANK[minimum]


ACTIVE = "active"
INACTIVE = "inactive"
RECORD_STATUSES = [ACTIVE, INACTIVE]


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(32), nullable=False, default=UserRole.EMPLOYEE)
    status = db.Column(db.String(16), nullable=False, default=ACTIVE)
    location_id = db.Column(
        db.Integer, db.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True
    )
    phone = db.Column(db.String(64))
    department = db.Column(db.String(120))
    join_date = db.Column(db.Date)
    must_change_password = db.Column(db.Boolean, nullable=False, default=False)
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    location = db.relationship("Location")

    @property
    def is_active(self) -> bool:  # type: ignore[override]
        return self.status == ACTIVE

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def has_role(self, minimum: str) -> bool:
        return UserRole.at_least(self.role, minimum)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "location_id": self.location_id,
            "location_name": self.location.name if self.location else None,
            "location_code": self.location.code if self.location else None,
            "phone": self.phone,
            "department": self.department,
            "join_date": _iso(self.join_date),
            "must_change_password": bool(self.must_change_password),
            "last_login_at": _iso(self.last_login_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User {self.email}>"


class Category(db.Model):
    __tablename__ = "categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    subcategories = db.relationship(
        "Subcategory",
        back_populates="category",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Subcategory.name",
    )

    def to_dict(self, *, include_subcategories: bool = False) -> dict:
        payload = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }
        if include_subcategories:
            payload["subcategories"] = [sub.to_dict() for sub in self.subcategories]
        return payload


class Subcategory(db.Model):
    __tablename__ = "subcategories"
    __table_args__ = (
        db.UniqueConstraint("category_id", "name", name="uq_subcategory_category_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(
        db.Integer, db.ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    category = db.relationship("Category", back_populates="subcategories")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "name": self.name,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }


class Location(db.Model):
    __tablename__ = "locations"

    TYPE_STORAGE_ROOM = "storage_room"
    TYPE_OFFICE = "office"
    TYPES = [TYPE_STORAGE_ROOM, TYPE_OFFICE]

    CODES = (
        "B-Block-SR0",
        "B-Block-SR1",
        "B-Block-SR2",
        "B-Block-SR3",
        "B-Block-SR4",
        "A-Block-SR0",
        "A-Block-SR1",
        "A-Block-SR2",
        "Office Storage",
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(64), nullable=False)
    block = db.Column(db.String(64), nullable=False)
    type = db.Column(db.String(32), nullable=False, default=TYPE_STORAGE_ROOM)
    status = db.Column(db.String(16), nullable=False, default=ACTIVE)
    capacity = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.Text)
    manager = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @staticmethod
    def derive_block(code: str | None) -> str:
        code = code or ""
        if "A-Block" in code:
            return "A-Block"
        if "B-Block" in code:
            return "B-Block"
        return "Office"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "block": self.block,
            "type": self.type,
            "status": self.status,
            "capacity": self.capacity,
            "description": self.description,
            "manager": self.manager,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Supplier(db.Model):
    __tablename__ = "suppliers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(64), unique=True, nullable=False)
    contact_person = db.Column(db.String(255))
    email = db.Column(db.String(255))
    phone = db.Column(db.String(64))
    address = db.Column(db.String(255))
    city = db.Column(db.String(120))
    country = db.Column(db.String(120))
    postal_code = db.Column(db.String(32))
    tax_id = db.Column(db.String(64))
    payment_terms = db.Column(db.String(120))
    credit_limit = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    status = db.Column(db.String(16), nullable=False, default=ACTIVE)
    notes = db.Column(db.Text)
    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "contact_person": self.contact_person,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "country": self.country,
            "postal_code": self.postal_code,
            "tax_id": self.tax_id,
            "payment_terms": self.payment_terms,
            "credit_limit": money_to_string(self.credit_limit),
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Item(db.Model):
    __tablename__ = "stock_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_stock_items_quantity_non_negative"),
        db.CheckConstraint("min_quantity >= 0", name="ck_stock_items_min_quantity"),
        db.CheckConstraint("unit_price >= 0", name="ck_stock_items_unit_price"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    barcode = db.Column(db.String(64), unique=True, nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    min_quantity = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(32), nullable=False, default=StockStatus.OUT_OF_STOCK)
    category_id = db.Column(
        db.Integer, db.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    subcategory_id = db.Column(
        db.Integer, db.ForeignKey("subcategories.id", ondelete="SET NULL"), nullable=True
    )
    location_id = db.Column(
        db.Integer, db.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True
    )
    supplier_id = db.Column(
        db.Integer, db.ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    category = db.relationship("Category")
    subcategory = db.relationship("Subcategory")
    location = db.relationship("Location", backref="items")
    supplier = db.relationship("Supplier", backref="items")

    def refresh_status(self) -> str:
        self.status = StockStatus.derive(self.quantity, self.min_quantity)
        return self.status

    @property
    def stock_label(self) -> str:
        return StockStatus.label_for(self.quantity, self.min_quantity)

    @property
    def total_value(self) -> Decimal:
        return (Decimal(self.quantity or 0) * Decimal(self.unit_price or 0)).quantize(
            Decimal("0.01")
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "barcode": self.barcode,
            "quantity": self.quantity,
            "unit_price": money_to_string(self.unit_price),
            "min_quantity": self.min_quantity,
            "status": self.status,
            "stock_label": self.stock_label,
            "total_value": money_to_string(self.total_value),
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "subcategory_id": self.subcategory_id,
            "subcategory_name": self.subcategory.name if self.subcategory else None,
            "location_id": self.location_id,
            "location_name": self.location.name if self.location else None,
            "location_code": self.location.code if self.location else None,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier.name if self.supplier else None,
            "is_active": bool(self.is_active),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Item {self.barcode} qty={self.quantity}>"


@event.listens_for(Item, "before_insert")
@event.listens_for(Item, "before_update")
def _sync_item_status(mapper, connection, target):
    target.status = StockStatus.derive(target.quantity, target.min_quantity)


class Movement(db.Model):
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        db.CheckConstraint(
            "movement_type IN ('IN', 'OUT')", name="ck_stock_movements_type"
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(
        db.Integer,
        db.ForeignKey("stock_items.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    movement_type = db.Column(db.String(8), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=True)
    total_value = db.Column(db.Numeric(14, 2), nullable=True)
    reference_number = db.Column(db.String(120))
    supplier_id = db.Column(
        db.Integer, db.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=True
    )
    customer = db.Column(db.String(255))
    notes = db.Column(db.Text)
    location_id = db.Column(
        db.Integer, db.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=True
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    received_by = db.Column(db.String(255))
    movement_date = db.Column(db.DateTime, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    item = db.relationship("Item", backref="movements")
    supplier = db.relationship("Supplier", backref="movements")
    location = db.relationship("Location", backref="movements")
    user = db.relationship("User", backref="movements")

    @property
    def delta(self) -> int:
        return MovementType.delta(self.movement_type, self.quantity)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "item_name": self.item.name if self.item else None,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "unit_price": money_to_string(self.unit_price),
            "total_value": money_to_string(self.total_value),
            "reference_number": self.reference_number,
            "supplier_id": self.supplier_id,
            "supplier": self.supplier.name if self.supplier else None,
            "customer": self.customer,
            "notes": self.notes,
            "location_id": self.location_id,
            "location": self.location.name if self.location else None,
            "user_id": self.user_id,
            "user_name": self.user.name if self.user else None,
            "received_by": self.received_by,
            "movement_date": _iso(self.movement_date),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Movement {self.id} {self.movement_type} {self.quantity}>"


class ActivityLog(db.Model):
    __tablename__ = "activity_logs"

    ACTION_CREATE = "CREATE"
    ACTION_UPDATE = "UPDATE"
    ACTION_DELETE = "DELETE"
    ACTION_LOGIN = "LOGIN"
    ACTION_LOGOUT = "LOGOUT"
    ALL_ACTIONS = [ACTION_CREATE, ACTION_UPDATE, ACTION_DELETE, ACTION_LOGIN, ACTION_LOGOUT]

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_name = db.Column(db.String(255))
    action = db.Column(db.String(16), nullable=False, index=True)
    entity_type = db.Column(db.String(64), nullable=False, index=True)
    entity_id = db.Column(db.String(64))
    entity_name = db.Column(db.String(255))
    description = db.Column(db.Text)
    old_values = db.Column(db.JSON)
    new_values = db.Column(db.JSON)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(512))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "description": self.description,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": _iso(self.created_at),
        }


class RepairStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FIXED = "fixed"
    RETURNED = "returned"

    ALL_STATUSES = [PENDING, IN_PROGRESS, FIXED, RETURNED]
    # ``returned`` is only reachable through the return action.
    EDITABLE_STATUSES = [PENDING, IN_PROGRESS, FIXED]


class RepairPriority:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    ALL_PRIORITIES = [LOW, MEDIUM, HIGH]


class Repair(db.Model):
    __tablename__ = "repairs"

    id = db.Column(db.Integer, primary_key=True)
    item_name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    issue_description = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=RepairStatus.PENDING)
    priority = db.Column(db.String(16), nullable=False, default=RepairPriority.MEDIUM)
    assigned_to = db.Column(db.String(255))
    notes = db.Column(db.Text)
    returned_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_returned(self) -> bool:
        return self.status == RepairStatus.RETURNED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_name": self.item_name,
            "description": self.description,
            "issue_description": self.issue_description,
            "status": self.status,
            "priority": self.priority,
            "assigned_to": self.assigned_to,
            "notes": self.notes,
            "returned_date": _iso(self.returned_date),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
