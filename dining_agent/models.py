"""
Domain models shared by the index, stores, tools and orchestrator.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RestaurantDocument(BaseModel):
    """A restaurant as stored in the retrieval index."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    cuisine: List[str] = Field(default_factory=list)
    city: str = ""
    locality: str = ""
    address: str = ""
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    rating: float = Field(default=0.0, ge=0, le=5)
    review_count: int = Field(default=0, ge=0, alias="reviewCount")
    price_for_two: float = Field(default=0.0, ge=0, alias="priceFor2")
    type: str = ""
    about: str = ""
    known_for: str = Field(default="", alias="knownFor")

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("cuisine", mode="before")
    @classmethod
    def _split_cuisine(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [c.strip() for c in value if c and c.strip()]

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def fingerprint_text(self) -> str:
        """Text whose embedding is the semantic fingerprint of the restaurant."""
        parts = [
            f"Restaurant: {self.name}",
            f"Cuisine: {', '.join(self.cuisine)}",
            f"Locality: {self.locality}, {self.city}",
        ]
        if self.type:
            parts.append(f"Type: {self.type}")
        if self.about:
            parts.append(f"About: {self.about}")
        if self.known_for:
            parts.append(f"Known for: {self.known_for}")
        return "\n".join(parts)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "cuisine": self.cuisine,
            "address": self.address,
            "city": self.city,
            "locality": self.locality,
        }


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)


class Profile(BaseModel):
    name: str
    email: Optional[str] = None
    phone: str = ""
    locality: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    preferences: List[str] = Field(default_factory=list)


class Session(BaseModel):
    session_id: str
    profile: Profile
    chats: Dict[str, List[ChatMessage]] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


class ReservationStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Reservation(BaseModel):
    id: str
    session_id: str
    restaurant_id: str
    date: str  # YYYY-MM-DD
    time: str  # HH:MM
    guests: int
    customer_name: str
    customer_phone: str
    customer_email: Optional[str] = None
    special_requests: Optional[str] = None
    status: ReservationStatus = ReservationStatus.CONFIRMED
    created_at: datetime
    updated_at: datetime
    cancelled_at: Optional[datetime] = None

    def starts_at(self) -> datetime:
        return datetime.strptime(f"{self.date} {self.time}", "%Y-%m-%d %H:%M")

    def to_record(self) -> Dict[str, str]:
        """Flatten into the string key/value record kept by the repository."""
        record = {
            "id": self.id,
            "sessionId": self.session_id,
            "restaurantId": self.restaurant_id,
            "date": self.date,
            "time": self.time,
            "guests": str(self.guests),
            "customerName": self.customer_name,
            "customerPhone": self.customer_phone,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.customer_email:
            record["customerEmail"] = self.customer_email
        if self.special_requests:
            record["specialRequests"] = self.special_requests
        if self.cancelled_at:
            record["cancelledAt"] = self.cancelled_at.isoformat()
        return record

    @classmethod
    def from_record(cls, record: Dict[str, str]) -> "Reservation":
        cancelled_at = record.get("cancelledAt")
        return cls(
            id=record["id"],
            session_id=record["sessionId"],
            restaurant_id=record["restaurantId"],
            date=record["date"],
            time=record["time"],
            guests=int(record["guests"]),
            customer_name=record["customerName"],
            customer_phone=record["customerPhone"],
            customer_email=record.get("customerEmail"),
            special_requests=record.get("specialRequests"),
            status=ReservationStatus(record["status"]),
            created_at=datetime.fromisoformat(record["createdAt"]),
            updated_at=datetime.fromisoformat(record["updatedAt"]),
            cancelled_at=datetime.fromisoformat(cancelled_at) if cancelled_at else None,
        )


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    SKIP = "skip"
    SAVED = "saved"
    ERROR = "error"


class TurnResult(BaseModel):
    """Outcome of one user turn."""

    content: str
    is_cached_response: bool = False
    cache_status: CacheStatus = CacheStatus.MISS
    tools_used: List[str] = Field(default_factory=list)
    restaurants: List[Dict[str, Any]] = Field(default_factory=list)
