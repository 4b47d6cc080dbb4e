from .booking import Booking, BookingStatus, BookableKind, BookableRef  # noqa: F401
from .payment import Payment, CustodyState  # noqa: F401
from .qr_release_token import QRReleaseToken  # noqa: F401

from .wallet_account import WalletAccount, AccountKind  # noqa: F401
from .wallet_transaction import WalletTransaction, TxnType, TxnStatus, TxnCategory  # noqa: F401
from .commission_rule import CommissionRule  # noqa: F401

from .audit_log import AuditLog  # noqa: F401

from .webhook_event import WebhookEvent  # noqa: F401
