"""Pydantic models for roster documents stored in Cosmos DB.

Entities are plain data. Eligibility, authorization and transfer rules
live in their own modules and operate on these models.
"""

import re
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, field_validator

from atcroster.core.constants import Rating, RoleTag

_FACILITY_CODE = re.compile(r"^[A-Z0-9]{3}$")

# Facility fields that must never leave the service in public responses
FACILITY_SECRET_FIELDS = frozenset(
    {"api_key", "api_sandbox_key", "uls_secret", "uls_jwk", "apiv2_jwk"}
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_facility_code(value: str) -> str:
    """Upper-case and validate a three-character facility code.

    Raises:
        ValueError: If the code is not three letters/digits
    """
    code = (value or "").strip().upper()
    if not _FACILITY_CODE.match(code):
        raise ValueError(f"Invalid facility code: {value!r}")
    return code


class CosmosDocument(BaseModel):
    """Shared Cosmos DB (de)serialization."""

    def to_cosmos(self) -> dict:
        """Serialize for Cosmos DB storage."""
        return self.model_dump(mode="json")

    @classmethod
    def from_cosmos(cls, data: dict) -> Self:
        """Deserialize from Cosmos DB document."""
        return cls.model_validate(data)


class Controller(CosmosDocument):
    """A member of the network, identified by CID.

    ``facility`` and ``facility_joined_at`` change only through the
    transfer workflow or an administrative roster removal.
    """

    cid: int
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    facility: str
    rating: Rating = Rating.OBS
    needs_basic_exam: bool = True
    home_controller: bool = True
    transfer_override: bool = False
    facility_joined_at: datetime = Field(default_factory=_utcnow)
    active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("facility")
    @classmethod
    def normalize_facility(cls, v: str) -> str:
        return normalize_facility_code(v)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_cosmos(self) -> dict:
        """Serialize for Cosmos DB, using the CID as document id."""
        return {"id": str(self.cid), **self.model_dump(mode="json")}

    def to_public(self, *, include_email: bool) -> dict:
        """Roster view of the controller, with email optionally redacted."""
        data = self.model_dump(mode="json")
        data["rating_short"] = self.rating.short
        if not include_email:
            data["email"] = None
        return data


class Facility(CosmosDocument):
    """A facility in the network, keyed by its three-character code."""

    id: str
    name: str = ""
    active: bool = True
    region: int = 0
    url: str = ""
    uls_return: str = ""
    uls_dev_return: str = ""
    api_key: str = ""
    api_sandbox_key: str = ""
    uls_secret: str = ""
    uls_jwk: str = ""
    apiv2_jwk: str = ""

    @field_validator("id")
    @classmethod
    def normalize_id(cls, v: str) -> str:
        return normalize_facility_code(v)

    def to_public(self) -> dict:
        """Serialize without integration secrets."""
        return self.model_dump(mode="json", exclude=set(FACILITY_SECRET_FIELDS))


class RoleAssignment(CosmosDocument):
    """A role held by a controller at a facility."""

    cid: int
    facility: str
    role: RoleTag
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("facility")
    @classmethod
    def normalize_facility(cls, v: str) -> str:
        return normalize_facility_code(v)

    @property
    def id(self) -> str:
        return f"{self.cid}-{self.facility}-{self.role.value}"

    def to_cosmos(self) -> dict:
        return {"id": self.id, **self.model_dump(mode="json")}


class TransferStatus(StrEnum):
    """Transfer request lifecycle states."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TransferStatus.PENDING


class TransferRequest(CosmosDocument):
    """A request to move a controller between facilities.

    Administrative removals are recorded as already-accepted requests
    with ``administrative`` set; they never pass through pending.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    cid: int
    from_facility: str
    to_facility: str
    status: TransferStatus = TransferStatus.PENDING
    reason: str = ""
    action_text: str = ""
    administrative: bool = False
    resolved_by: int | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("from_facility", "to_facility")
    @classmethod
    def normalize_codes(cls, v: str) -> str:
        return normalize_facility_code(v)

    def to_summary(self) -> dict:
        """Compact view used in transfer listings."""
        return {
            "id": self.id,
            "cid": self.cid,
            "from": self.from_facility,
            "to": self.to_facility,
            "status": self.status.value,
            "reason": self.reason,
            "action_text": self.action_text,
            "administrative": self.administrative,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class PromotionRecord(CosmosDocument):
    """Append-only record of a rating change."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    cid: int
    from_rating: Rating
    to_rating: Rating
    created_at: datetime = Field(default_factory=_utcnow)


class ExamResult(CosmosDocument):
    """Append-only record of an exam attempt."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    cid: int
    exam_id: int
    passed: bool
    taken_at: datetime = Field(default_factory=_utcnow)
