"""Models package."""

from .user import User
from .payment import Payment
from .credit_ledger import CreditLedger
from .guest_credit import GuestCredit
from .detection import Detection
