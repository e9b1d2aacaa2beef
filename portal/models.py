"""Domain models for partner sessions and referral records."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional


PROFILE_FIELDS = ("first_name", "last_name", "company_name", "phone")


@dataclass(frozen=True)
class User:
    """A partner account as reported by the hosted auth provider."""

    id: str
    email: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        first = self.metadata.get("first_name", "").strip()
        last = self.metadata.get("last_name", "").strip()
        name = f"{first} {last}".strip()
        return name or (self.email or self.id)

    @staticmethod
    def from_payload(data: Mapping[str, Any]) -> "User":
        user_id = data.get("id")
        if not user_id:
            raise ValueError("User payload is missing an id")
        raw_metadata = data.get("user_metadata") or data.get("metadata") or {}
        metadata = {
            str(key): str(value)
            for key, value in dict(raw_metadata).items()
            if key in PROFILE_FIELDS and value is not None
        }
        email = data.get("email")
        return User(id=str(user_id), email=str(email) if email else None, metadata=metadata)

    def to_storage(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "user_metadata": dict(self.metadata)}


@dataclass(frozen=True)
class Session:
    """Tokens and identity of an authenticated provider session."""

    access_token: str
    refresh_token: str
    expires_at: int
    user: User
    token_type: str = "bearer"

    def is_expired(self, *, margin: int = 10, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return self.expires_at <= current + margin

    @staticmethod
    def from_payload(data: Mapping[str, Any]) -> "Session":
        """Build a session from a token response or a persisted record."""

        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        user = data.get("user")
        if not access_token or not refresh_token or not isinstance(user, Mapping):
            raise ValueError("Session payload is missing tokens or user details")

        expires_at = data.get("expires_at")
        if expires_at is None:
            expires_in = int(data.get("expires_in") or 3600)
            expires_at = int(time.time()) + expires_in

        return Session(
            access_token=str(access_token),
            refresh_token=str(refresh_token),
            expires_at=int(expires_at),
            user=User.from_payload(user),
            token_type=str(data.get("token_type") or "bearer"),
        )

    def to_storage(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "token_type": self.token_type,
            "user": self.user.to_storage(),
        }


class ReferralStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"

    @property
    def label(self) -> str:
        return self.value.capitalize()


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Convert a provider numeric column into a :class:`Decimal`."""

    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric value: {value!r}") from exc


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Referral:
    """A submitted lead as stored in the ``referrals`` table."""

    id: str
    partner_id: str
    business_name: str
    contact_name: str
    status: ReferralStatus
    created_at: datetime
    email: str = ""
    phone: str = ""
    monthly_revenue: Optional[Decimal] = None
    funding_amount: Optional[Decimal] = None
    business_type: str = ""
    time_in_business: str = ""
    notes: str = ""
    commission_amount: Optional[Decimal] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Referral":
        return Referral(
            id=str(row["id"]),
            partner_id=str(row.get("partner_id") or ""),
            business_name=str(row.get("business_name") or ""),
            contact_name=str(row.get("contact_name") or ""),
            status=ReferralStatus(str(row.get("status") or ReferralStatus.PENDING.value)),
            created_at=parse_timestamp(row["created_at"]),
            email=str(row.get("email") or ""),
            phone=str(row.get("phone") or ""),
            monthly_revenue=parse_decimal(row.get("monthly_revenue")),
            funding_amount=parse_decimal(row.get("funding_amount")),
            business_type=str(row.get("business_type") or ""),
            time_in_business=str(row.get("time_in_business") or ""),
            notes=str(row.get("notes") or ""),
            commission_amount=parse_decimal(row.get("commission_amount")),
        )


@dataclass(frozen=True)
class ReferralStats:
    """Dashboard figures, recomputed from the provider on every load."""

    total_referrals: int = 0
    pending_referrals: int = 0
    total_commission: Decimal = Decimal("0")


__all__ = [
    "PROFILE_FIELDS",
    "Referral",
    "ReferralStats",
    "ReferralStatus",
    "Session",
    "User",
    "parse_decimal",
    "parse_timestamp",
]
