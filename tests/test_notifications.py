"""
Tests for notification templates, the in-app inbox and webhook delivery
"""

import json
import uuid
import pytest
import requests
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

from online_banking.storage import InMemoryStorage
from online_banking.events import EventDispatcher, EventPayload, DomainEvent
from online_banking.notifications import (
    Notification, NotificationType, Notifier, InAppNotifier, WebhookNotifier,
    NotificationDispatcher,
)

from conftest import PIN, make_system


class _Collector(Notifier):

    def __init__(self):
        self.sent = []

    def notify(self, notification):
        self.sent.append(notification)
        return True


class TestNotificationDispatcher:

    def setup_method(self):
        self.events = EventDispatcher()
        self.collector = _Collector()
        self.dispatcher = NotificationDispatcher(self.events, [self.collector],
                                                 admin_ids=lambda: ["admin-1", "admin-2"])

    def _publish(self, event_type, data, user_id="user-1"):
        self.events.publish(EventPayload(event_type=event_type, entity_type="x",
                                         entity_id="e-1", data=data, user_id=user_id))
        return self.collector.sent

    def test_user_template_formats_money(self):
        sent = self._publish(DomainEvent.DEPOSIT_APPROVED,
                             {"amount": Decimal("3000"), "new_balance": "23000.5"})

        assert len(sent) == 1
        assert sent[0].user_id == "user-1"
        assert sent[0].title == "Deposit Approved"
        assert sent[0].message == "Your deposit of $3,000.00 has been approved. New balance: $23,000.50"
        assert sent[0].notification_type == NotificationType.ACCOUNT_ACTIVITY
        assert sent[0].data["event_type"] == "deposit.approved"

    def test_missing_fields_left_blank(self):
        sent = self._publish(DomainEvent.DEPOSIT_REJECTED, {"amount": "3000"})
        assert sent[0].message == "Your deposit of $3,000.00 was rejected. Reason: "

    def test_admin_audience(self):
        sent = self._publish(DomainEvent.LOAN_REQUESTED, {"amount": "500", "purpose": "Rent"})
        assert sorted(n.user_id for n in sent) == ["admin-1", "admin-2"]
        assert all(n.notification_type == NotificationType.SYSTEM_ALERT for n in sent)

    def test_internal_transfer_notifies_recipient(self):
        sent = self._publish(DomainEvent.TRANSFER_COMPLETED, {
            "amount": "100", "recipient_account_number": "11-22-33 4444444444",
            "new_balance": "900", "recipient_user_id": "user-2",
            "recipient_new_balance": "100",
        })

        assert [n.user_id for n in sent] == ["user-1", "user-2"]
        assert sent[1].title == "Transfer Received"
        assert sent[1].message == "You received $100.00. New balance: $100.00"

    def test_chat_from_customer_goes_to_admins(self):
        sent = self._publish(DomainEvent.CHAT_MESSAGE, {"sender_type": "user", "message": "Help"})
        assert sorted(n.user_id for n in sent) == ["admin-1", "admin-2"]
        assert sent[0].title == "New Support Message"

    def test_chat_reply_goes_to_customer(self):
        sent = self._publish(DomainEvent.CHAT_MESSAGE, {"sender_type": "admin", "message": "x" * 150})
        assert [n.user_id for n in sent] == ["user-1"]
        assert len(sent[0].message) == 100

    def test_chat_reply_to_guest_is_silent(self):
        assert self._publish(DomainEvent.CHAT_MESSAGE,
                             {"sender_type": "admin", "message": "hi"}, user_id=None) == []

    def test_user_event_without_user_is_dropped(self):
        assert self._publish(DomainEvent.TRANSFER_FAILED, {"amount": "10"}, user_id=None) == []

    def test_notifier_failure_isolated(self):
        failing = Mock(spec=Notifier)
        failing.notify.side_effect = RuntimeError("smtp down")
        self.dispatcher.notifiers.insert(0, failing)

        sent = self._publish(DomainEvent.LOAN_APPROVED, {"amount": "500", "total_repayment": "550"})

        failing.notify.assert_called_once()
        assert len(sent) == 1


class TestInAppNotifier:

    def setup_method(self):
        self.inbox = InAppNotifier(InMemoryStorage())

    def _notification(self, user_id="user-1", title="t"):
        now = datetime.now(timezone.utc)
        return Notification(id=str(uuid.uuid4()), created_at=now, updated_at=now,
                            user_id=user_id, notification_type=NotificationType.SYSTEM_ALERT,
                            title=title, message="m")

    def test_inbox_round(self):
        first = self._notification(title="first")
        self.inbox.notify(first)
        self.inbox.notify(self._notification(title="second"))
        self.inbox.notify(self._notification(user_id="user-2"))

        assert self.inbox.unread_count("user-1") == 2
        assert self.inbox.mark_read("user-1", first.id) is True
        assert self.inbox.unread_count("user-1") == 1
        assert [n.title for n in self.inbox.list_for_user("user-1", unread_only=True)] == ["second"]

        assert self.inbox.mark_all_read("user-1") == 1
        assert self.inbox.unread_count("user-1") == 0
        assert self.inbox.unread_count("user-2") == 1

    def test_cannot_mark_someone_elses(self):
        other = self._notification(user_id="user-2")
        self.inbox.notify(other)
        assert self.inbox.mark_read("user-1", other.id) is False
        assert self.inbox.mark_read("user-1", "missing") is False


class TestWebhookNotifier:

    def _notification(self):
        now = datetime.now(timezone.utc)
        return Notification(id="n-1", created_at=now, updated_at=now, user_id="user-1",
                            notification_type=NotificationType.ACCOUNT_ACTIVITY,
                            title="Deposit Approved", message="ok",
                            data={"amount": Decimal("10.00")})

    @patch("online_banking.notifications.requests.post")
    def test_posts_json(self, mock_post):
        mock_post.return_value = Mock(ok=True, status_code=200)
        notifier = WebhookNotifier("https://hooks.example.com/bank", timeout=2.0)

        assert notifier.notify(self._notification()) is True

        args, kwargs = mock_post.call_args
        assert args[0] == "https://hooks.example.com/bank"
        assert kwargs["timeout"] == 2.0
        body = json.loads(kwargs["data"])
        assert body["type"] == "account_activity"
        assert body["data"]["amount"] == "10.00"

    @patch("online_banking.notifications.requests.post")
    def test_http_error_reported(self, mock_post):
        mock_post.return_value = Mock(ok=False, status_code=502)
        assert WebhookNotifier("https://hooks.example.com").notify(self._notification()) is False

    @patch("online_banking.notifications.requests.post")
    def test_connection_error_reported(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")
        assert WebhookNotifier("https://hooks.example.com").notify(self._notification()) is False


class TestEndToEnd:

    @pytest.fixture
    def notified(self, system, admin, customer):
        account = system.accounts.get_user_account(customer.id)
        deposit = system.deposits.submit_deposit(customer.id, account.id, "5000.00",
                                                 "bank_transfer", "proof.png", PIN)
        return deposit

    def test_submission_reaches_admin_and_approval_reaches_customer(self, system, admin, customer, notified):
        assert system.inbox.unread_count(admin.id) == 1
        assert system.inbox.list_for_user(admin.id)[0].title == "New Deposit Request"

        system.deposits.approve_deposit(admin.id, notified.id)

        inbox = system.inbox.list_for_user(customer.id)
        assert [n.title for n in inbox] == ["Deposit Approved"]
        assert "$5,000.00" in inbox[0].message

    def test_webhook_failure_does_not_break_approval(self):
        system = make_system(notification_webhook_url="https://hooks.example.com/bank")
        try:
            with patch("online_banking.notifications.requests.post",
                       side_effect=requests.Timeout("slow")):
                admin_user = system.users.create_user("root", "root@bank.test", "Root",
                                                      is_super_admin=True)
                user, account = system.register_customer("carl", "carl@example.com", "Carl", pin=PIN)
                deposit = system.deposits.submit_deposit(user.id, account.id, "3000.00",
                                                         "bank_transfer", "proof.png", PIN)
                result = system.deposits.approve_deposit(admin_user.id, deposit.id)

            assert result.balance == Decimal("3000.00")
            assert system.inbox.unread_count(user.id) == 1
        finally:
            system.close()

    def test_configured_channels(self, system):
        assert [type(n) for n in system.notifications.notifiers] == [InAppNotifier]

        hooked = make_system(notification_webhook_url="https://hooks.example.com/bank")
        try:
            assert [type(n) for n in hooked.notifications.notifiers] == [InAppNotifier, WebhookNotifier]
        finally:
            hooked.close()
