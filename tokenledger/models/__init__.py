from .user import User
from .billing_customer import BillingCustomer
from .catalog import Plan, TokenTopup
from .subscription import Subscription
from .ledger_entry import LedgerEntry, ImmutableLedgerError
from .billing_event import BillingEventLog

__all__ = [
    "User",
    "BillingCustomer",
    "Plan",
    "TokenTopup",
    "Subscription",
    "LedgerEntry",
    "ImmutableLedgerError",
    "BillingEventLog",
]
