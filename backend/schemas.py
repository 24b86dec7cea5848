"""
Request and response schemas for the marketplace API.

Field rules live on the payload models; pydantic collects every problem in
one pass, and the services call ``validators.parse`` so that plain dicts get
the same checks as HTTP bodies. Stored records are exposed through the
response models below; the password hash never leaves the users collection.
"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, StringConstraints, field_validator

USER_TYPES = ("farmer", "vendor", "logistics")
UserType = Literal["farmer", "vendor", "logistics"]
MAX_MESSAGE_LENGTH = 5000

Required = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2)]
Amount = Annotated[float, Field(gt=0, allow_inf_nan=False)]

# Payloads

class RegisterPayload(BaseModel):
    type: UserType
    name: Name
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    location: Optional[str] = None
    farmName: Optional[str] = None
    businessName: Optional[str] = None

class LoginPayload(BaseModel):
    email: Required
    password: str = Field(..., min_length=1)

class ProductCreate(BaseModel):
    farmerId: Optional[Required] = None
    name: Name
    category: Required
    quantity: Amount
    unit: Required
    price: Amount
    location: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None

class ProductUpdate(BaseModel):
    """Partial update; only the fields that were sent are written."""
    name: Optional[Name] = None
    category: Optional[Required] = None
    quantity: Optional[Amount] = None
    unit: Optional[Required] = None
    price: Optional[Amount] = None
    location: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None

class RequestCreate(BaseModel):
    productId: Required
    farmerId: Required
    vendorId: Required
    quantity: Amount
    notes: Optional[str] = None

class StatusUpdate(BaseModel):
    status: Optional[str] = None

class MessageCreate(BaseModel):
    senderId: Required
    recipientId: Required
    text: str = Field(..., max_length=MAX_MESSAGE_LENGTH)

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message text required")
        return value

# Records

class Identity(BaseModel):
    """Claims carried by the bearer token."""
    id: str
    type: UserType
    name: str

class PublicUser(BaseModel):
    id: str
    type: UserType
    name: str
    email: str
    phone: Optional[str] = None
    location: Optional[str] = None
    farmName: Optional[str] = None
    businessName: Optional[str] = None
    createdAt: Optional[datetime] = None

class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: PublicUser

class Product(BaseModel):
    id: str
    farmerId: str
    name: str
    category: str
    quantity: float = Field(gt=0, allow_inf_nan=False)
    unit: str
    price: float = Field(gt=0, allow_inf_nan=False)
    location: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    timestamp: datetime

class ProductPage(BaseModel):
    items: List[Product]
    page: int
    limit: int
    total: int

class PurchaseRequest(BaseModel):
    id: str
    productId: str
    farmerId: str
    vendorId: str
    quantity: float = Field(gt=0, allow_inf_nan=False)
    notes: Optional[str] = None
    status: str
    timestamp: datetime

class StatusChange(BaseModel):
    id: str
    status: str

class Message(BaseModel):
    id: str
    senderId: str
    recipientId: str
    text: str = Field(max_length=MAX_MESSAGE_LENGTH)
    timestamp: datetime

class Contact(BaseModel):
    contactId: str
