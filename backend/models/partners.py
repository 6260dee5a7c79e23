from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum


class PartnerStatus(str, Enum):
    """Lifecycle of a partner account. Partners are deactivated, never deleted."""
    PENDING = "pending"
    APPROVED = "approved"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    REJECTED = "rejected"
    TERMINATED = "terminated"


class PartnerStats(BaseModel):
    """Cumulative partner counters. Money in minor currency units."""
    model_config = ConfigDict(extra="ignore")

    total_referrals: int = 0
    total_conversions: int = 0
    total_commission_earned: int = 0
    total_commission_paid: int = 0
    last_calculated: Optional[datetime] = None


class Partner(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    partner_id: str
    owner_user_id: Optional[str] = None
    email: str
    display_name: str
    company_name: Optional[str] = None
    # None means the system default rate applies
    commission_rate: Optional[float] = None
    status: PartnerStatus = PartnerStatus.APPROVED
    stripe_connect_id: Optional[str] = None
    stats: PartnerStats = Field(default_factory=PartnerStats)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PartnerCode(BaseModel):
    """Referral code handed out by a partner (collection partner_codes)."""
    model_config = ConfigDict(extra="ignore")

    code: str
    partner_id: str
    active: bool = True
    uses: int = 0
    # None means unlimited
    max_uses: Optional[int] = None
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_used_at: Optional[datetime] = None
