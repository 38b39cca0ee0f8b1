"""
Minute Ledger Model
Billable-minute entries written when a call session settles
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum

from carecall.utils.clock import utcnow


class BillableType(str, Enum):
    """Accounting bucket for consumed minutes"""
    TRIAL = "trial"
    INCLUDED = "included"
    OVERAGE = "overage"
    PAYG = "payg"


# Entries of these types are reported to the billing collaborator
METERED_TYPES = (BillableType.OVERAGE.value, BillableType.PAYG.value)


class MinuteLedgerEntry(BaseModel):
    """
    One accounting row for a call session.

    `idempotency_key` is unique in the store; once `reported_to_billing`
    is set the row only ever gains `billing_usage_record_id`.
    """

    id: Optional[str] = None
    account_id: str
    line_id: str
    call_session_id: str

    billable_minutes: int = Field(..., ge=0)
    billable_type: BillableType
    seconds_connected: int = Field(..., ge=0)
    idempotency_key: str

    cycle_start: Optional[datetime] = None
    cycle_end: Optional[datetime] = None

    reported_to_billing: bool = False
    billing_usage_record_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"use_enum_values": True}

    @property
    def is_metered(self) -> bool:
        return self.billable_type in METERED_TYPES
