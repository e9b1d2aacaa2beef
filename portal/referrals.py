"""Referral submission and the read-only referral projections."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Tuple

from .errors import LoadFailed, ProviderError, SubmissionFailed, ValidationError
from .models import Referral, ReferralStats, ReferralStatus, User, parse_decimal
from .provider import DataClient

logger = logging.getLogger("partnerportal.referrals")

REFERRALS_TABLE = "referrals"
OWNER_COLUMN = "partner_id"

BUSINESS_TYPES: Tuple[Tuple[str, str], ...] = (
    ("retail", "Retail"),
    ("restaurant", "Restaurant"),
    ("service", "Service"),
    ("manufacturing", "Manufacturing"),
    ("other", "Other"),
)

TIME_IN_BUSINESS: Tuple[Tuple[str, str], ...] = (
    ("0-6", "0-6 months"),
    ("6-12", "6-12 months"),
    ("1-2", "1-2 years"),
    ("2-5", "2-5 years"),
    ("5+", "5+ years"),
)

FORM_FIELDS = (
    "business_name",
    "contact_name",
    "email",
    "phone",
    "monthly_revenue",
    "funding_amount",
    "business_type",
    "time_in_business",
    "notes",
)

_REQUIRED_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("business_name", "Business name"),
    ("contact_name", "Contact name"),
    ("email", "Email address"),
    ("phone", "Phone number"),
    ("monthly_revenue", "Monthly revenue"),
    ("funding_amount", "Desired funding amount"),
    ("business_type", "Business type"),
    ("time_in_business", "Time in business"),
)

_NON_NUMERIC = re.compile(r"[^0-9.]")
# Amount columns are numeric(15, 2).
AMOUNT_INTEGER_DIGITS = 13

LOAD_STATS_FAILED = "Failed to load dashboard statistics"
LOAD_HISTORY_FAILED = "Failed to load referrals"


def parse_amount(field: str, label: str, raw: str) -> Decimal:
    """Strip currency formatting and parse the remaining digits.

    ``"$12,345.67"`` becomes ``Decimal("12345.67")``. Input with no digits
    left, with more than one decimal point, or with more integer digits than
    the ``numeric`` amount columns hold is rejected.
    """

    cleaned = _NON_NUMERIC.sub("", raw or "")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValidationError(field, f"{label} must be a number") from exc
    if not amount.is_finite() or amount.adjusted() >= AMOUNT_INTEGER_DIGITS:
        raise ValidationError(field, f"{label} must be a number")
    return amount


@dataclass(frozen=True)
class ReferralSubmission:
    business_name: str
    contact_name: str
    email: str
    phone: str
    monthly_revenue: Decimal
    funding_amount: Decimal
    business_type: str
    time_in_business: str
    notes: str = ""

    @staticmethod
    def from_form(form: Mapping[str, str]) -> "ReferralSubmission":
        values = {name: str(form.get(name) or "") for name in FORM_FIELDS}

        for field_name, label in _REQUIRED_FIELDS:
            if not values[field_name].strip():
                raise ValidationError(field_name, f"{label} is required")

        if values["business_type"] not in {key for key, _ in BUSINESS_TYPES}:
            raise ValidationError("business_type", "Select a valid business type")
        if values["time_in_business"] not in {key for key, _ in TIME_IN_BUSINESS}:
            raise ValidationError("time_in_business", "Select a valid time in business")

        return ReferralSubmission(
            business_name=values["business_name"],
            contact_name=values["contact_name"],
            email=values["email"],
            phone=values["phone"],
            monthly_revenue=parse_amount("monthly_revenue", "Monthly revenue", values["monthly_revenue"]),
            funding_amount=parse_amount("funding_amount", "Desired funding amount", values["funding_amount"]),
            business_type=values["business_type"],
            time_in_business=values["time_in_business"],
            notes=values["notes"],
        )

    def to_record(self, partner_id: str) -> Dict[str, Any]:
        return {
            OWNER_COLUMN: partner_id,
            "business_name": self.business_name,
            "contact_name": self.contact_name,
            "email": self.email,
            "phone": self.phone,
            "monthly_revenue": str(self.monthly_revenue),
            "funding_amount": str(self.funding_amount),
            "business_type": self.business_type,
            "time_in_business": self.time_in_business,
            "notes": self.notes,
            "status": ReferralStatus.PENDING.value,
        }


class ReferralService:
    """Pass-through queries against the provider's referrals table."""

    def __init__(self, data: DataClient, *, table: str = REFERRALS_TABLE) -> None:
        self._data = data
        self._table = table

    async def submit(self, user: User, submission: ReferralSubmission) -> None:
        try:
            await self._data.insert(self._table, submission.to_record(user.id))
        except ProviderError as exc:
            logger.warning("Referral submission for partner %s failed: %s", user.id, exc.message)
            raise SubmissionFailed() from exc
        logger.info("Partner %s submitted a referral for %s", user.id, submission.business_name)

    async def stats(self, user: User) -> ReferralStats:
        owner = {OWNER_COLUMN: user.id}
        try:
            total = await self._data.count(self._table, filters=owner)
            pending = await self._data.count(
                self._table,
                filters={**owner, "status": ReferralStatus.PENDING.value},
            )
            approved = await self._data.select(
                self._table,
                columns="commission_amount",
                filters={**owner, "status": ReferralStatus.APPROVED.value},
            )
            commission = sum(
                (parse_decimal(row.get("commission_amount")) or Decimal("0") for row in approved),
                Decimal("0"),
            )
        except (ProviderError, ValueError) as exc:
            logger.warning("Loading dashboard statistics for partner %s failed: %s", user.id, exc)
            raise LoadFailed(LOAD_STATS_FAILED) from exc

        return ReferralStats(
            total_referrals=total,
            pending_referrals=pending,
            total_commission=commission,
        )

    async def history(self, user: User) -> List[Referral]:
        try:
            rows = await self._data.select(
                self._table,
                filters={OWNER_COLUMN: user.id},
                order="created_at",
                descending=True,
            )
            return [Referral.from_row(row) for row in rows]
        except (ProviderError, KeyError, ValueError) as exc:
            logger.warning("Loading referral history for partner %s failed: %s", user.id, exc)
            raise LoadFailed(LOAD_HISTORY_FAILED) from exc


__all__ = [
    "AMOUNT_INTEGER_DIGITS",
    "BUSINESS_TYPES",
    "FORM_FIELDS",
    "LOAD_HISTORY_FAILED",
    "LOAD_STATS_FAILED",
    "OWNER_COLUMN",
    "REFERRALS_TABLE",
    "TIME_IN_BUSINESS",
    "ReferralService",
    "ReferralSubmission",
    "parse_amount",
]
