"""
Database Schemas for the E-Waste Pickup service

Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
Commands at the bottom are the typed inputs of the pickup protocol.
"""
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

Role = Literal["user", "collectionAgent", "admin"]
RequestStatus = Literal["pending", "accepted", "completed", "cancelled"]
AccountStatus = Literal["active", "suspended"]

EWasteType = Literal[
    "Household Electronics",
    "Household Appliances",
    "Lighting and Power Equipment",
    "Agricultural and Small Business Electronics",
    "Communication and Connectivity Devices",
]


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hash")
    role: Role = Field("user", description="Access role")
    phone_number: Optional[str] = None
    status: AccountStatus = "active"


class Admin(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: Role = "admin"


class AgentAddress(BaseModel):
    street: str
    area: str
    city: str
    pincode: str


class CollectionAgent(BaseModel):
    name: str
    email: EmailStr
    phone_number: str
    password_hash: str
    address: AgentAddress
    location: Optional[GeoPoint] = None
    certificate_path: str = Field(..., description="GPCB certificate upload")
    is_verified: bool = False
    status: AccountStatus = "active"


class CollectionRequest(BaseModel):
    user_id: str = Field(..., description="Requester user id")
    full_name: str = Field(..., description="Name at time of request")
    phone_number: str = Field(..., description="Phone at time of request")
    street_address: str
    city: str
    zip_code: str
    preferred_datetime: datetime
    ewaste_type: EWasteType
    ewaste_subtype: str
    quantity: float = Field(..., ge=1)
    location: Optional[GeoPoint] = None
    status: RequestStatus = "pending"
    assigned_agent_id: Optional[str] = None


class CollectionRequestCreate(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1)
    street_address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    preferred_datetime: datetime
    ewaste_type: EWasteType
    ewaste_subtype: str = Field(..., min_length=1)
    quantity: float = Field(..., ge=1)
    location: Optional[GeoPoint] = None


class AccountStatusUpdate(BaseModel):
    status: AccountStatus


# ------------------ Pickup protocol commands ------------------
class ClaimCommand(BaseModel):
    request_id: str
    agent_id: str


class CompleteCommand(BaseModel):
    request_id: str
    agent_id: str


class CancelCommand(BaseModel):
    request_id: str
    actor_id: str
    actor_role: Role


class RoutePlan(BaseModel):
    """Outcome of a route advisory call."""
    optimized: bool
    message: str
    waypoints: List[GeoPoint] = []
    request_ids: List[str] = []
    route_data: Optional[dict] = None
