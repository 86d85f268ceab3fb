"""
Banking System Assembly

Wires storage, ledger, flows and notification delivery together from a
``BankingConfig``.
"""

from decimal import Decimal
from typing import List, Optional, Tuple

from .config import BankingConfig, get_config
from .storage import StorageInterface, create_storage
from .events import EventDispatcher
from .audit import AuditLogger
from .soft_delete import SoftDeleteManager
from .users import UserManager, User, UserRole
from .accounts import AccountManager, Account, AccountType
from .transactions import TransactionLedger
from .ledger import GeneralLedger
from .aml import AMLMonitor
from .deposits import DepositService
from .transfers import TransferService
from .loans import LoanService
from .chat import ChatService, ChatEventStream
from .notifications import InAppNotifier, WebhookNotifier, NotificationDispatcher
from .money import ZERO
from .logging_config import get_logger

logger = get_logger("online_banking.system")


class BankingSystem:
    """Online banking ledger with all components initialized"""

    def __init__(self, config: Optional[BankingConfig] = None,
                 storage: Optional[StorageInterface] = None):
        config = config or get_config()
        self.config = config
        self.storage = storage or create_storage(config.database_url)
        self.events = EventDispatcher()

        # Core ledger
        self.audit = AuditLogger(self.storage, mirror_to_log=config.enable_audit_logging)
        self.soft_delete = SoftDeleteManager(self.storage, self.audit)
        self.users = UserManager(
            self.storage, self.audit,
            pin_length=config.transaction_pin_length,
            aml_code_length=config.aml_code_length,
            aml_code_expiry_hours=config.aml_code_expiry_hours,
        )
        self.accounts = AccountManager(self.storage, default_currency=config.default_currency)
        self.transactions = TransactionLedger(self.storage)
        self.ledger = GeneralLedger(self.storage, self.accounts, self.transactions,
                                    self.audit, self.events)
        self.aml = AMLMonitor(self.storage, self.transactions, self.audit, self.events)

        # Customer flows
        self.deposits = DepositService(
            self.storage, self.users, self.accounts, self.ledger, self.audit, self.events,
            minimum_amount=Decimal(config.minimum_deposit_amount),
        )
        self.transfers = TransferService(
            self.storage, self.users, self.accounts, self.ledger, self.aml, self.audit,
            self.events, aml_code=config.aml_code, aml_code_length=config.aml_code_length,
        )
        self.loans = LoanService(self.storage, self.users, self.accounts, self.ledger,
                                 self.audit, self.events)

        # Support chat
        self.chat = ChatService(
            self.storage, self.soft_delete, self.audit, self.events,
            max_attachment_bytes=config.chat_max_attachment_bytes,
            history_limit=config.chat_history_limit,
        )
        self.chat_stream = ChatEventStream(self.storage, self.events)

        # Notification delivery
        self.inbox = InAppNotifier(self.storage)
        notifiers = [self.inbox]
        if config.notification_webhook_url:
            notifiers.append(WebhookNotifier(config.notification_webhook_url,
                                             timeout=config.notification_timeout))
        self.notifications = NotificationDispatcher(self.events, notifiers, self.admin_ids)

        logger.info("Banking system ready (storage: %s)", type(self.storage).__name__)

    def admin_ids(self) -> List[str]:
        """Active admins, the audience of admin notifications"""
        return [u.id for u in self.users.list_users() if u.is_admin and u.is_active]

    def register_customer(self, username: str, email: str, full_name: str,
                          pin: Optional[str] = None,
                          account_type: AccountType = AccountType.CHECKING,
                          opening_balance: Decimal = ZERO) -> Tuple[User, Account]:
        """Create a customer with a transaction PIN and a primary account"""
        with self.storage.atomic():
            user = self.users.create_user(username, email, full_name, role=UserRole.USER)
            if pin is not None:
                self.users.set_transaction_pin(user.id, pin)
            account = self.accounts.open_account(user.id, account_type=account_type,
                                                 opening_balance=opening_balance)
        return self.users.get_user(user.id), account

    def close(self) -> None:
        self.storage.close()


_system: Optional[BankingSystem] = None


def get_banking_system() -> BankingSystem:
    """Process-wide system built from the global configuration"""
    global _system
    if _system is None:
        _system = BankingSystem()
    return _system
