from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Literal

from storefront.schemas.order import OrderOut
from storefront.utils.validation import clean_text, is_url

MAX_RETURN_IMAGES = 6
MAX_REASON_LENGTH = 300
MAX_DESCRIPTION_LENGTH = 500
MAX_NOTE_LENGTH = 500

ReturnStatusName = Literal["REQUESTED", "APPROVED", "REJECTED", "PROCESSED"]


class ReturnRequestCreate(BaseModel):
    orderId: int = Field(gt=0)
    reason: str = Field(max_length=MAX_REASON_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    images: List[str] = Field(default_factory=list, max_length=MAX_RETURN_IMAGES)

    @field_validator("reason")
    @classmethod
    def _clean_reason(cls, v: str) -> str:
        return clean_text(v, MAX_REASON_LENGTH, required_message="Reason is required")

    @field_validator("description")
    @classmethod
    def _clean_description(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return clean_text(v, MAX_DESCRIPTION_LENGTH) or None

    @field_validator("images")
    @classmethod
    def _check_images(cls, v: List[str]) -> List[str]:
        cleaned = []
        for url in v:
            url = url.strip()
            if len(url) > 2048 or not is_url(url):
                raise ValueError("Each image must be an http(s) URL")
            cleaned.append(url)
        return cleaned


class ReturnStatusUpdate(BaseModel):
    status: Literal["APPROVED", "REJECTED", "PROCESSED"]
    adminNote: Optional[str] = Field(default=None, max_length=MAX_NOTE_LENGTH)

    @field_validator("adminNote")
    @classmethod
    def _clean_note(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return clean_text(v, MAX_NOTE_LENGTH) or None


class ReturnRequestOut(BaseModel):
    id: int
    orderId: int
    userId: int
    reason: str
    description: Optional[str] = None
    images: List[str] = []
    status: ReturnStatusName
    adminNote: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


class StoreSummary(BaseModel):
    id: int
    name: str
    isActive: bool


class UserSummary(BaseModel):
    id: int
    name: str
    email: Optional[str] = None


class ReturnRequestDetailOut(ReturnRequestOut):
    order: OrderOut
    store: Optional[StoreSummary] = None
    user: Optional[UserSummary] = None
