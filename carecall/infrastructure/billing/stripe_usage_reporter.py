"""
Stripe Usage Reporter
Reports metered minutes to Stripe as billing meter events
"""
import asyncio
import logging
from typing import Optional

import stripe

from carecall.core.exceptions import BillingError
from carecall.domain.interfaces.usage_reporter import UsageReporter
from carecall.domain.models.ledger import MinuteLedgerEntry
from carecall.domain.models.line import Account

logger = logging.getLogger(__name__)


class StripeUsageReporter(UsageReporter):
    """
    Sends one meter event per ledger entry.

    The entry's idempotency key is the event identifier, so Stripe
    deduplicates a report repeated after a crash between sending and
    recording the result.
    """

    def __init__(self, api_key: Optional[str], event_name: str):
        if not api_key:
            raise RuntimeError("STRIPE_SECRET_KEY must be set for usage reporting")
        stripe.api_key = api_key
        self.event_name = event_name
        logger.info(f"StripeUsageReporter initialized (meter={event_name})")

    async def report_usage(self, entry: MinuteLedgerEntry, account: Account) -> str:
        if not account.stripe_customer_id:
            raise BillingError(f"Account {account.id} has no Stripe customer")

        try:
            event = await asyncio.to_thread(
                stripe.billing.MeterEvent.create,
                event_name=self.event_name,
                payload={
                    "stripe_customer_id": account.stripe_customer_id,
                    "value": str(entry.billable_minutes),
                },
                identifier=entry.idempotency_key,
                timestamp=int(entry.created_at.timestamp()),
            )
        except stripe.error.StripeError as e:
            raise BillingError(f"Stripe meter event failed: {e}") from e

        record_id = getattr(event, "identifier", None) or entry.idempotency_key
        logger.info(
            f"Reported {entry.billable_minutes} min for {account.id} ({entry.billable_type})",
            extra={"account_id": account.id, "idempotency_key": entry.idempotency_key}
        )
        return record_id
