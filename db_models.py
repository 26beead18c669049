import re
from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, field_validator, model_validator


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class ContactRecord(BaseModel):
    """One row of the Contact table."""
    id: int
    phoneNumber: Optional[str] = None
    email: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence
    createdAt: datetime
    updatedAt: datetime
    deletedAt: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.linkPrecedence == LinkPrecedence.PRIMARY

    @property
    def anchor_id(self) -> Optional[int]:
        """Id of the cluster anchor this record belongs to."""
        return self.id if self.is_primary else self.linkedId


def _coerce_phone(value):
    # bool is an int subclass; keep it out of the coercion
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def phone_to_string(cls, value):
        value = _coerce_phone(value)
        if value is not None and not isinstance(value, str):
            raise ValueError("Phone number must be a string")
        return value

    @field_validator("email", mode="before")
    @classmethod
    def email_is_string(cls, value):
        if value is not None and not isinstance(value, str):
            raise ValueError("Email must be a string")
        return value

    @field_validator("email")
    @classmethod
    def check_email(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if not value.strip():
            raise ValueError("Email cannot be empty")
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email format")
        return value

    @field_validator("phoneNumber")
    @classmethod
    def check_phone(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if not value.strip():
            raise ValueError("Phone number cannot be empty")
        return value

    @model_validator(mode="after")
    def check_one_present(self):
        if not self.email and not self.phoneNumber:
            raise ValueError("At least one of email or phoneNumber must be provided")
        return self


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ContactResponse


class AddContactRequest(BaseModel):
    id: Optional[int] = None
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence = LinkPrecedence.PRIMARY
    createdAt: Optional[datetime] = None

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def phone_to_string(cls, value):
        return _coerce_phone(value)

    @model_validator(mode="after")
    def check_link(self):
        if self.linkPrecedence == LinkPrecedence.SECONDARY and self.linkedId is None:
            raise ValueError("linkedId is required for a secondary contact")
        if self.linkPrecedence == LinkPrecedence.PRIMARY and self.linkedId is not None:
            raise ValueError("A primary contact cannot have a linkedId")
        if self.createdAt is not None:
            now = datetime.now(self.createdAt.tzinfo)
            if self.createdAt > now:
                raise ValueError("createdAt cannot be in the future")
        return self


class AddContactResponse(BaseModel):
    message: str
    contact_id: int
