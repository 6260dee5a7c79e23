from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum


class PayoutReportStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class TransferPayload(BaseModel):
    """Stripe Connect transfer body prepared for the external payout run."""
    amount: int
    currency: str
    destination: str
    description: str
    metadata: Dict[str, str] = Field(default_factory=dict)


class PartnerPayoutSummary(BaseModel):
    partner_id: str
    email: str
    display_name: str
    company_name: Optional[str] = None
    total_commission_amount: int
    currency: str
    entry_count: int
    commission_entries: List[str] = Field(default_factory=list)
    stripe_connect_id: Optional[str] = None
    transfer_payload: Optional[TransferPayload] = None


class MonthlyPayoutReport(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    report_id: str
    report_month: str  # YYYY-MM
    period_start: datetime
    period_end: datetime
    total_partners: int = 0
    total_commission_amount: int = 0
    total_entries: int = 0
    currencies: List[str] = Field(default_factory=list)
    partner_summaries: List[PartnerPayoutSummary] = Field(default_factory=list)
    csv_file_name: Optional[str] = None
    csv_content: Optional[str] = None
    status: PayoutReportStatus = PayoutReportStatus.PROCESSING
    generated_by: str = "manual"
    warning_count: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
