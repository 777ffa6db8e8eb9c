"""Authorization unit ledger."""

from careroster.ledger.service import AuthorizationLedger, LedgerPosting, is_active_on

__all__ = ["AuthorizationLedger", "LedgerPosting", "is_active_on"]
