"""
Usage Reporter Interface
Billing collaborator that receives metered minutes
"""
from abc import ABC, abstractmethod

from carecall.domain.models.line import Account
from carecall.domain.models.ledger import MinuteLedgerEntry


class UsageReporter(ABC):
    """Reports metered usage and returns the billing system's record id"""

    @abstractmethod
    async def report_usage(self, entry: MinuteLedgerEntry, account: Account) -> str:
        """
        Report one ledger entry.

        Raises:
            BillingError: if the billing system rejects or cannot be reached
        """
        pass
