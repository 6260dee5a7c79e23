"""Conversion tracking models: referral -> signup -> conversion -> subscription."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


class ConversionStatus(str, Enum):
    SIGNUP = "signup"
    CONVERTED = "converted"
    SUBSCRIBED = "subscribed"
    CHURNED = "churned"


class ConversionSource(str, Enum):
    LINK = "link"
    MANUAL = "manual"
    PROMOTION_CODE = "promotion_code"
    WIDGET = "widget"


class FunnelStage(str, Enum):
    REFERRAL = "referral"
    SIGNUP = "signup"
    CONVERSION = "conversion"
    SUBSCRIPTION = "subscription"


# Fixed funnel order, top first
FUNNEL_STAGES: List[FunnelStage] = [
    FunnelStage.REFERRAL,
    FunnelStage.SIGNUP,
    FunnelStage.CONVERSION,
    FunnelStage.SUBSCRIPTION,
]

# Timestamp field marking arrival at each stage
STAGE_TIMESTAMP_FIELDS: Dict[FunnelStage, str] = {
    FunnelStage.REFERRAL: "referral_captured_at",
    FunnelStage.SIGNUP: "signup_at",
    FunnelStage.CONVERSION: "converted_at",
    FunnelStage.SUBSCRIPTION: "subscribed_at",
}


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class UtmParams(BaseModel):
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    term: Optional[str] = None
    content: Optional[str] = None


class TrackingMetadata(BaseModel):
    referrer_url: Optional[str] = None
    landing_page: Optional[str] = None
    country: Optional[str] = None
    device_type: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    utm_params: Optional[UtmParams] = None


class ConversionTracking(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    conversion_id: str = Field(default_factory=lambda: f"conv_{uuid.uuid4().hex}")
    partner_id: str
    referral_code: str
    customer_uid: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    currency: str = "USD"

    referral_captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    signup_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None
    subscribed_at: Optional[datetime] = None

    status: ConversionStatus = ConversionStatus.SIGNUP
    conversion_value: Optional[int] = None
    commission_earned: Optional[int] = None
    commission_rate: Optional[float] = None
    source: ConversionSource = ConversionSource.LINK
    metadata: Optional[TrackingMetadata] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ReferralAttribution(BaseModel):
    """Outcome of attributing a customer to a referral code. First touch wins."""
    conversion_id: str
    partner_id: str
    referral_code: str
    created: bool


class ConversionFunnelStep(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    step: FunnelStage
    count: int
    percentage: float
    avg_time_to_next_step_days: Optional[float] = None


class ConversionAnalytics(BaseModel):
    partner_id: str
    period_start: datetime
    period_end: datetime

    total_referrals: int = 0
    total_signups: int = 0
    total_conversions: int = 0
    total_subscriptions: int = 0

    conversion_rate: float = 0.0
    subscription_rate: float = 0.0

    total_conversion_value: int = 0
    total_commission_earned: int = 0
    average_conversion_value: float = 0.0
    average_commission_per_conversion: float = 0.0

    average_time_to_conversion_days: Optional[float] = None
    average_time_to_subscription_days: Optional[float] = None


class PeriodStats(BaseModel):
    referrals: int = 0
    signups: int = 0
    conversions: int = 0
    subscriptions: int = 0
    conversion_rate: float = 0.0
    subscription_rate: float = 0.0
    total_value: int = 0
    total_commission: int = 0


class ConversionTrends(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    conversion_rate_trend: TrendDirection = TrendDirection.STABLE
    subscription_rate_trend: TrendDirection = TrendDirection.STABLE
    value_trend: TrendDirection = TrendDirection.STABLE


class PartnerConversionSummary(BaseModel):
    partner_id: str
    partner_name: str
    partner_email: str
    current_period: PeriodStats
    historical: PeriodStats
    recent_activity: List[ConversionTracking] = Field(default_factory=list)
    trends: ConversionTrends = Field(default_factory=ConversionTrends)
