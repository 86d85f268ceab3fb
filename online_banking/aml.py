"""
Anti-Money-Laundering Module

Rule-based monitoring of outgoing money. Alerts are stored for compliance
review and never block the transaction that raised them.

Thresholds follow the bank's reporting policy: single transactions of
10,000 or more, daily / weekly / monthly outflow ceilings, amounts just
under the reporting threshold (structuring) and bursts of many small
transactions.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .money import ZERO
from .storage import StorageInterface, StorageRecord
from .audit import AuditLogger, AuditAction, EntityType
from .transactions import TransactionLedger, TransactionDirection, TransactionStatus
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .soft_delete import table_for
from .exceptions import NotFoundError, InvalidStateTransitionError, ValidationError
from .logging_config import get_logger, log_action

logger = get_logger("online_banking.aml")


AML_THRESHOLDS = {
    'single_transaction': Decimal("10000"),
    'daily_total': Decimal("15000"),
    'weekly_total': Decimal("50000"),
    'monthly_total': Decimal("100000"),
    'structuring': Decimal("9000"),   # just below the reporting threshold
    'rapid_count': 5,                 # transactions per 24 hours
}


class AlertType(Enum):
    LARGE_TRANSACTION = "LARGE_TRANSACTION"
    RAPID_MOVEMENT = "RAPID_MOVEMENT"
    STRUCTURING = "STRUCTURING"
    UNUSUAL_PATTERN = "UNUSUAL_PATTERN"


class AlertSeverity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertStatus(Enum):
    PENDING = "PENDING"
    REVIEWED = "REVIEWED"
    CLEARED = "CLEARED"
    REPORTED = "REPORTED"


class ComplianceStatus(Enum):
    COMPLIANT = "COMPLIANT"
    MONITORING = "MONITORING"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    HIGH_RISK = "HIGH_RISK"


@dataclass
class TransactionPattern:
    """Outgoing totals and counts over the trailing day, week and month"""
    daily_total: Decimal = ZERO
    weekly_total: Decimal = ZERO
    monthly_total: Decimal = ZERO
    daily_count: int = 0
    weekly_count: int = 0
    monthly_count: int = 0


@dataclass
class AMLAlert(StorageRecord):
    """Suspicious-activity alert awaiting compliance review"""
    user_id: str
    alert_type: AlertType
    severity: AlertSeverity
    description: str
    amount: Decimal
    transaction_id: Optional[str] = None
    status: AlertStatus = AlertStatus.PENDING
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AMLAlert':
        data = dict(data)
        data['alert_type'] = AlertType(data['alert_type'])
        data['severity'] = AlertSeverity(data['severity'])
        data['status'] = AlertStatus(data['status'])
        data['amount'] = Decimal(data['amount'])
        return super().from_dict(data)


def calculate_risk_score(pattern: TransactionPattern, account_age_days: int) -> int:
    """
    Risk score from 0 to 100.

    Weighs monthly volume, weekly frequency, account age and the average
    size of the month's transactions.
    """
    score = 0

    if pattern.monthly_total > Decimal("100000"):
        score += 40
    elif pattern.monthly_total > Decimal("50000"):
        score += 25
    elif pattern.monthly_total > Decimal("25000"):
        score += 15

    if pattern.weekly_count > 20:
        score += 30
    elif pattern.weekly_count > 10:
        score += 20
    elif pattern.weekly_count > 5:
        score += 10

    # New accounts with high activity
    if account_age_days < 7:
        score += 20
    elif account_age_days < 30:
        score += 10

    if pattern.monthly_count and pattern.monthly_total / pattern.monthly_count > Decimal("5000"):
        score += 10

    return min(score, 100)


def requires_enhanced_due_diligence(amount: Decimal, pattern: TransactionPattern,
                                    risk_score: int) -> bool:
    return (
        amount >= Decimal("50000")
        or pattern.monthly_total >= Decimal("100000")
        or risk_score >= 70
    )


def compliance_status(risk_score: int) -> Dict[str, str]:
    """Map a risk score to a status and a message for the admin view"""
    if risk_score < 30:
        status, message = ComplianceStatus.COMPLIANT, "Account in good standing"
    elif risk_score < 50:
        status, message = ComplianceStatus.MONITORING, "Under routine monitoring"
    elif risk_score < 70:
        status, message = ComplianceStatus.REVIEW_REQUIRED, "Enhanced monitoring required"
    else:
        status, message = ComplianceStatus.HIGH_RISK, "High risk - immediate review required"
    return {'status': status.value, 'message': message}


class AMLMonitor(EventPublisherMixin):
    """
    Runs the AML rules against outgoing transactions and keeps the alerts
    """

    def __init__(self, storage: StorageInterface, transactions: TransactionLedger,
                 audit: AuditLogger, events: Optional[EventDispatcher] = None):
        self.storage = storage
        self.transactions = transactions
        self.audit = audit
        self.events = events
        self.table_name = table_for(EntityType.AML_ALERT)

    def build_pattern(self, account_id: str, now: Optional[datetime] = None) -> TransactionPattern:
        """Aggregate SUCCESS debits of an account over the trailing 1, 7 and 30 days"""
        now = now or datetime.now(timezone.utc)
        day_ago = now - timedelta(days=1)
        week_ago = now - timedelta(days=7)
        month_ago = now - timedelta(days=30)

        pattern = TransactionPattern()
        for txn in self.transactions.list_for_account(account_id, include_deleted=True):
            if txn.direction != TransactionDirection.DEBIT or txn.status != TransactionStatus.SUCCESS:
                continue
            if txn.created_at < month_ago:
                continue
            pattern.monthly_total += txn.amount
            pattern.monthly_count += 1
            if txn.created_at >= week_ago:
                pattern.weekly_total += txn.amount
                pattern.weekly_count += 1
            if txn.created_at >= day_ago:
                pattern.daily_total += txn.amount
                pattern.daily_count += 1
        return pattern

    def check_transaction(self, user_id: str, amount: Decimal,
                          pattern: TransactionPattern) -> List[AMLAlert]:
        """
        Evaluate one outgoing amount against the rules.

        ``pattern`` holds the activity before this transaction. Returns
        unsaved alerts; use ``record_alerts`` to persist them.
        """
        findings = []
        limits = AML_THRESHOLDS

        if amount >= limits['single_transaction']:
            if amount >= Decimal("50000"):
                severity = AlertSeverity.CRITICAL
            elif amount >= Decimal("25000"):
                severity = AlertSeverity.HIGH
            else:
                severity = AlertSeverity.MEDIUM
            findings.append((AlertType.LARGE_TRANSACTION, severity,
                             f"Transaction of {amount:,.2f} exceeds reporting threshold"))

        if pattern.daily_total + amount > limits['daily_total']:
            findings.append((AlertType.RAPID_MOVEMENT, AlertSeverity.HIGH,
                             f"Daily transaction total of {pattern.daily_total + amount:,.2f} exceeds limit"))

        if pattern.weekly_total + amount > limits['weekly_total']:
            findings.append((AlertType.RAPID_MOVEMENT, AlertSeverity.HIGH,
                             f"Weekly transaction total of {pattern.weekly_total + amount:,.2f} exceeds limit"))

        if pattern.monthly_total + amount > limits['monthly_total']:
            findings.append((AlertType.UNUSUAL_PATTERN, AlertSeverity.CRITICAL,
                             f"Monthly transaction total of {pattern.monthly_total + amount:,.2f} exceeds limit"))

        if (limits['structuring'] <= amount < limits['single_transaction']
                and pattern.daily_count >= 2):
            findings.append((AlertType.STRUCTURING, AlertSeverity.HIGH,
                             "Multiple transactions just below reporting threshold detected"))

        if pattern.daily_count >= limits['rapid_count']:
            findings.append((AlertType.RAPID_MOVEMENT, AlertSeverity.MEDIUM,
                             f"{pattern.daily_count + 1} transactions in 24 hours"))

        now = datetime.now(timezone.utc)
        return [
            AMLAlert(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                alert_type=alert_type,
                severity=severity,
                description=description,
                amount=amount,
            )
            for alert_type, severity, description in findings
        ]

    def record_alerts(self, alerts: List[AMLAlert],
                      transaction_id: Optional[str] = None) -> List[AMLAlert]:
        """Persist alerts and publish one ``aml.alert`` event each"""
        with self.storage.atomic():
            for alert in alerts:
                alert.transaction_id = transaction_id
                self.storage.save(self.table_name, alert.id, alert.to_dict())
                self.publish_event(DomainEvent.AML_ALERT, EntityType.AML_ALERT.value, alert.id, {
                    'alert_type': alert.alert_type.value,
                    'severity': alert.severity.value,
                    'description': alert.description,
                    'amount': str(alert.amount),
                    'transaction_id': transaction_id,
                }, user_id=alert.user_id)

        for alert in alerts:
            log_action(logger, "warning", f"AML alert: {alert.description}",
                       user_id=alert.user_id, action="aml_alert",
                       resource=f"aml_alert:{alert.id}",
                       extra={'alert_type': alert.alert_type.value,
                              'severity': alert.severity.value})
        return alerts

    def get_alert(self, alert_id: str) -> AMLAlert:
        data = self.storage.load(self.table_name, alert_id)
        if data is None or data.get('deleted_at'):
            raise NotFoundError(f"AML alert {alert_id} not found")
        return AMLAlert.from_dict(data)

    def list_alerts(self, user_id: Optional[str] = None,
                    status: Optional[AlertStatus] = None) -> List[AMLAlert]:
        filters: Dict[str, Any] = {'deleted_at': None}
        if user_id:
            filters['user_id'] = user_id
        if status:
            filters['status'] = status.value
        alerts = [AMLAlert.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return alerts

    def review_alert(self, reviewer_id: str, alert_id: str, status: AlertStatus,
                     notes: Optional[str] = None, **client) -> AMLAlert:
        """
        Record a compliance decision on an alert.

        CLEARED and REPORTED are final; REVIEWED may still be escalated.
        """
        if status == AlertStatus.PENDING:
            raise ValidationError("Review must move the alert out of PENDING")

        with self.storage.atomic():
            alert = self.get_alert(alert_id)
            if alert.status in (AlertStatus.CLEARED, AlertStatus.REPORTED):
                raise InvalidStateTransitionError(
                    f"AML alert {alert_id} is already {alert.status.value}"
                )
            previous = alert.status
            now = datetime.now(timezone.utc)
            alert.status = status
            alert.reviewed_by = reviewer_id
            alert.review_notes = notes
            alert.reviewed_at = now
            alert.updated_at = now
            self.storage.save(self.table_name, alert.id, alert.to_dict())
            self.audit.log(reviewer_id, AuditAction.AML_ALERT_REVIEWED, EntityType.AML_ALERT,
                           alert.id, {'from': previous.value, 'to': status.value, 'notes': notes},
                           **client)
        return alert

    def risk_profile(self, user_id: str, account_id: str, account_opened_at: datetime) -> Dict[str, Any]:
        """Risk score and compliance status of one customer account"""
        now = datetime.now(timezone.utc)
        pattern = self.build_pattern(account_id, now)
        score = calculate_risk_score(pattern, (now - account_opened_at).days)
        profile = compliance_status(score)
        profile.update({
            'user_id': user_id,
            'account_id': account_id,
            'risk_score': score,
            'monthly_total': str(pattern.monthly_total),
            'weekly_count': pattern.weekly_count,
            'open_alerts': len(self.list_alerts(user_id=user_id, status=AlertStatus.PENDING)),
        })
        return profile
