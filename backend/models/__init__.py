from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ROLE_PARTNER = "ROLE_PARTNER"
    ROLE_ADMIN = "ROLE_ADMIN"
    ROLE_CUSTOMER = "ROLE_CUSTOMER"

class AuditAction(str, Enum):
    # Ledger
    COMMISSION_ACCRUED = "COMMISSION_ACCRUED"
    COMMISSION_STATUS_CHANGED = "COMMISSION_STATUS_CHANGED"

    # Partner statistics
    PARTNER_STATS_REBUILT = "PARTNER_STATS_REBUILT"

    # Referral codes
    PARTNER_CODE_CREATED = "PARTNER_CODE_CREATED"

    # Payouts
    PAYOUT_REPORT_GENERATED = "PAYOUT_REPORT_GENERATED"

    # Webhooks
    STRIPE_EVENT_PROCESSED = "STRIPE_EVENT_PROCESSED"
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"

class AuditResource(str, Enum):
    """Collections whose documents audit entries point at."""
    COMMISSION_LEDGER = "commission_ledger"
    PARTNER = "partner"
    PARTNER_CODE = "partner_code"
    PAYOUT_REPORT = "payout_report"
    STRIPE_EVENT = "stripe_event"

# ============================================================================
# MODELS
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    partner_id: Optional[str] = None
    resource_type: Optional[AuditResource] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
