"""Subscriber references: a subscription belongs to exactly one user or employer."""

import enum
import uuid
from dataclasses import dataclass

from subscription_engine.billing.exceptions import InvalidSubscriberError


class SubscriberType(str, enum.Enum):
    USER = "USER"
    EMPLOYER = "EMPLOYER"


@dataclass(frozen=True)
class SubscriberRef:
    """Identifies the owner of a subscription."""

    type: SubscriberType
    id: uuid.UUID

    @classmethod
    def user(cls, user_id: uuid.UUID) -> "SubscriberRef":
        return cls(SubscriberType.USER, user_id)

    @classmethod
    def employer(cls, employer_id: uuid.UUID) -> "SubscriberRef":
        return cls(SubscriberType.EMPLOYER, employer_id)

    @classmethod
    def from_ids(
        cls, user_id: uuid.UUID | None = None, employer_id: uuid.UUID | None = None
    ) -> "SubscriberRef":
        """Build a reference from the two mutually exclusive columns."""
        if (user_id is None) == (employer_id is None):
            raise InvalidSubscriberError(
                "Exactly one of user_id or employer_id is required",
                {"user_id": user_id, "employer_id": employer_id},
            )
        if user_id is not None:
            return cls.user(user_id)
        return cls.employer(employer_id)

    @property
    def user_id(self) -> uuid.UUID | None:
        return self.id if self.type is SubscriberType.USER else None

    @property
    def employer_id(self) -> uuid.UUID | None:
        return self.id if self.type is SubscriberType.EMPLOYER else None

    def __str__(self) -> str:
        return f"{self.type.value.lower()}:{self.id}"
