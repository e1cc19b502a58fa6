"""
Order record and its snapshots. Records are immutable: every transition returns a copy.
"""
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PaymentOption(str, Enum):
    COD = "COD"
    PAY_FIRST = "PayFirst"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class PriceRange(str, Enum):
    """Catalog price filter: under 50, 50 to 200 inclusive, over 200."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def contains(self, price: float) -> bool:
        if self is PriceRange.LOW:
            return price < 50
        if self is PriceRange.MEDIUM:
            return 50 <= price <= 200
        return price > 200


class ActorRole(str, Enum):
    BUYER = "buyer"
    MANAGER = "manager"
    ADMIN = "admin"


# Declaration order is production order.
class TrackingStatus(str, Enum):
    CUTTING_COMPLETED = "Cutting Completed"
    SEWING_STARTED = "Sewing Started"
    FINISHING = "Finishing"
    QC_CHECKED = "QC Checked"
    PACKED = "Packed"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"


class Actor(BaseModel):
    """Who is acting on an order. Supplied explicitly by the caller on every call."""
    model_config = ConfigDict(frozen=True)

    id: str
    role: ActorRole
    email: str | None = None
    name: str | None = None


class BuyerSnapshot(BaseModel):
    """Contact and delivery details copied at order time; not re-synced with profile edits."""
    model_config = ConfigDict(frozen=True)

    uid: str
    email: str
    first_name: str
    last_name: str
    contact_number: str
    delivery_address: str
    notes: str | None = None

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ProductSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    price: float
    category: str | None = None
    images: tuple[str, ...] = ()


class Product(BaseModel):
    """Catalog entry orders are placed against."""
    id: str
    name: str
    description: str | None = None
    category: str | None = None
    price: float = Field(..., ge=0)
    available_quantity: int = Field(default=0, ge=0)
    min_order_quantity: int = Field(default=1, ge=1)
    images: list[str] = Field(default_factory=list)
    payment_options: list[PaymentOption] = Field(default_factory=lambda: [PaymentOption.COD])
    show_on_home: bool = False
    created_by: str | None = None

    def snapshot(self) -> ProductSnapshot:
        return ProductSnapshot(
            id=self.id,
            name=self.name,
            price=self.price,
            category=self.category,
            images=tuple(self.images),
        )


class TrackingUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: TrackingStatus
    location: str
    note: str | None = None
    updated_at: datetime
    updated_by: Actor | None = None


class OrderRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    tracking_id: str
    buyer: BuyerSnapshot
    product: ProductSnapshot
    quantity: int = Field(..., ge=1)
    order_price: float
    payment_option: PaymentOption
    requires_online_payment: bool
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime
    approved_at: datetime | None = None
    cancelled_at: datetime | None = None
    paid_at: datetime | None = None
    # tuple, not list: the tracking log is append-only
    tracking_updates: tuple[TrackingUpdate, ...] = ()

    @property
    def last_tracking_update(self) -> TrackingUpdate | None:
        return self.tracking_updates[-1] if self.tracking_updates else None
