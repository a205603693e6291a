"""
Database Schemas for the E-Waste Pickup Platform

Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
"""
from pydantic import BaseModel, Field, EmailStr, field_validator
from typing import Optional, List, Literal, Dict
from datetime import datetime

Role = Literal["user", "agency", "volunteer", "admin"]
WasteType = Literal["mobile", "phones", "computers", "laptop", "batteries"]
WASTE_TYPES = ["mobile", "phones", "computers", "laptop", "batteries"]

PHONE_PATTERN = r"^\d{10}$"
PIN_PATTERN = r"^\d{6}$"


class Actor(BaseModel):
    """The authenticated caller, as resolved from the bearer token."""
    id: str
    role: Role


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class ImageRef(BaseModel):
    url: str
    storage_key: str


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hash")
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[str] = None
    pin_code: Optional[str] = Field(None, pattern=PIN_PATTERN)
    location: Optional[GeoPoint] = None
    profile_pic: Optional[ImageRef] = None
    points: int = Field(0, ge=0, description="Redeemable points")
    monthly_points: int = Field(0, ge=0, description="Points earned since the last monthly reset")
    community_points: int = Field(0, ge=0)
    completed_requests: int = Field(0, ge=0)
    redeemed_points: int = Field(0, ge=0)
    last_rank: Optional[int] = None
    last_reset_at: Optional[datetime] = None
    last_reset_period: Optional[str] = Field(None, description="Month whose rank bonus was last paid, YYYY-MM")


class AgencyDocuments(BaseModel):
    trade_license: ImageRef
    pcb_auth: ImageRef


class Agency(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    agency_type: List[Literal["Recycler", "Collector", "Disposal", "Aggregator"]] = Field(..., min_length=1)
    address: str
    region: str
    phone: str = Field(..., pattern=PHONE_PATTERN)
    contact_person: str
    location: GeoPoint
    working_hours: str
    certification_status: Literal["Certified", "Uncertified"] = "Uncertified"
    waste_types_handled: List[WasteType] = Field(..., min_length=1)
    is_inventory_setup: bool = False
    logo: Optional[ImageRef] = None
    documents: Optional[AgencyDocuments] = None

    @field_validator("waste_types_handled", mode="before")
    @classmethod
    def lower_waste_types(cls, v):
        return [str(t).lower() for t in v] if isinstance(v, list) else v


class PickupArea(BaseModel):
    city: str
    district: str
    pin_codes: List[str] = Field(default_factory=list)
    landmarks: List[str] = Field(default_factory=list)
    location: GeoPoint

    @field_validator("pin_codes")
    @classmethod
    def check_pin_codes(cls, v):
        for code in v:
            if len(code) != 6 or not code.isdigit():
                raise ValueError("PIN code must be 6 digits")
        return v


class Volunteer(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address: str
    pickup_area: PickupArea
    agency_id: str
    status: Literal["Active", "Inactive"] = "Active"
    profile_pic: Optional[ImageRef] = None


class Admin(BaseModel):
    name: str
    email: EmailStr
    password_hash: str


class InventoryLocation(BaseModel):
    address: str
    city: str
    state: str
    postal_code: str


class Inventory(BaseModel):
    agency_id: str
    total_capacity: float = Field(..., ge=0)
    current_capacity: float = Field(0, ge=0)
    breakdown: Dict[str, int] = Field(default_factory=dict, description="Units held per waste type")
    location: InventoryLocation
    version: int = 0
    last_updated: Optional[datetime] = None


class RequestImage(ImageRef):
    category: Optional[str] = Field(None, description="Predicted category")
    confidence: Optional[float] = None
    phash: Optional[str] = None
    duplicate_of: Optional[str] = None


class PickupRequest(BaseModel):
    """Payload accepted when a user files a pickup request."""
    agency_id: str
    waste_types: List[WasteType] = Field(..., min_length=1)
    quantities: List[int] = Field(..., min_length=1)
    weight: float = Field(..., ge=0, description="Total weight in kg")
    pickup_address: Optional[str] = None
    pickup_location: GeoPoint
    pickup_date: datetime
    contact_number: str = Field(..., pattern=PHONE_PATTERN)
    special_instructions: Optional[str] = Field(None, max_length=500)

    @field_validator("waste_types", mode="before")
    @classmethod
    def lower_waste_types(cls, v):
        return [str(t).lower() for t in v] if isinstance(v, list) else v

    @field_validator("quantities")
    @classmethod
    def check_quantities(cls, v):
        if any(q < 1 for q in v):
            raise ValueError("Quantities must be at least 1")
        return v


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    image: Optional[ImageRef] = None
    points_required: int = Field(..., ge=1)
    agency_id: str
    stock: int = Field(0, ge=0)


class Order(BaseModel):
    user_id: str
    product_id: str
    agency_id: str
    points_spent: int = Field(..., ge=0)
    status: Literal["Pending", "Shipped", "Delivered", "Cancelled"] = "Pending"


class ContactInfo(BaseModel):
    name: str
    email: EmailStr
    phone: str


class Organizer(BaseModel):
    user_id: Optional[str] = None
    agency_id: Optional[str] = None


class Community(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    organizer: Organizer = Field(default_factory=Organizer)
    event_type: Literal["Event", "Drive", "Online Webinar", "Workshop"]
    start_date: datetime
    end_date: datetime
    time: str = Field(..., description="Free-form time of day, e.g. 10:00 AM")
    location: Optional[str] = None
    registration_link: str
    contact_info: ContactInfo
    moderation_label: Optional[str] = None

    @field_validator("location")
    @classmethod
    def strip_location(cls, v):
        return v.strip() if v else v


class JobRun(BaseModel):
    job: str
    period: str = Field(..., description="Calendar month, YYYY-MM")
    started_at: datetime
    state: Literal["running", "done", "failed"] = "running"
    winners: Optional[List[dict]] = Field(None, description="Ranked users chosen on the first attempt")
    result: Optional[dict] = None
