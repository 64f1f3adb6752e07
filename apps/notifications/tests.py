# apps/notifications/tests.py
from unittest.mock import patch, MagicMock

from celery.exceptions import Retry
from django.test import TestCase, override_settings
from twilio.base.exceptions import TwilioRestException

from .models import NotificationTemplate, Notification, NotificationStatus
from .services import notify, notify_admins
from .tasks import MAX_DELIVERY_ATTEMPTS, send_notification_task, redeliver_pending_notifications


class NotificationServiceTests(TestCase):
    def test_notify_renders_default_template(self):
        notif = notify(
            phone="250788123456",
            event_key="payment_confirmed_customer",
            context={"order_number": "EG251019001", "amount": "45000", "currency": "RWF"},
        )

        self.assertIsNotNone(notif)
        self.assertEqual(notif.status, NotificationStatus.PENDING)
        self.assertIn("EG251019001", notif.body)
        self.assertIn("45000 RWF", notif.body)
        self.assertTrue(notif.body.startswith("E-Gura Store"))

    def test_active_template_overrides_default(self):
        NotificationTemplate.objects.create(
            key="payment_failed_customer",
            body_template="Order ${order_number} failed: ${reason}",
        )

        notif = notify("250788123456", "payment_failed_customer", {"order_number": "EG1", "reason": "Timeout"})

        self.assertEqual(notif.body, "Order EG1 failed: Timeout")
        self.assertIsNotNone(notif.template)

    def test_missing_phone_is_skipped(self):
        self.assertIsNone(notify("", "payment_confirmed_customer"))
        self.assertEqual(Notification.objects.count(), 0)

    @patch("apps.notifications.tasks.send_notification_task.delay")
    def test_dispatch_waits_for_commit(self, mock_delay):
        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            notif = notify("250788123456", "payment_confirmed_customer", {"order_number": "EG1"})

        mock_delay.assert_not_called()
        for callback in callbacks:
            callback()
        mock_delay.assert_called_once_with(str(notif.id))

    @patch("apps.notifications.tasks.send_notification_task.delay", side_effect=ConnectionError("broker down"))
    def test_broker_outage_leaves_row_pending(self, mock_delay):
        with self.captureOnCommitCallbacks(execute=True):
            notif = notify("250788123456", "payment_confirmed_customer", {"order_number": "EG1"})

        notif.refresh_from_db()
        self.assertEqual(notif.status, NotificationStatus.PENDING)

    @override_settings(ADMIN_NOTIFICATION_PHONES=["250788000111", "250788000222"])
    def test_notify_admins_fans_out(self):
        rows = notify_admins("payment_received_admin", {"order_number": "EG1"})
        self.assertEqual(len(rows), 2)
        self.assertIn("Admin Alert", rows[0].body)


@override_settings(TWILIO_ACCOUNT_SID="AC123", TWILIO_AUTH_TOKEN="token", TWILIO_FROM_NUMBER="+15550001111")
class SendNotificationTaskTests(TestCase):
    def setUp(self):
        self.notification = Notification.objects.create(
            phone="250788123456", event_key="payment_confirmed_customer", body="Hello"
        )

    @patch("apps.notifications.tasks.Client")
    def test_successful_send_marks_sent(self, mock_client):
        mock_client.return_value.messages.create.return_value = MagicMock(sid="SM123")

        send_notification_task(str(self.notification.id))

        self.notification.refresh_from_db()
        self.assertEqual(self.notification.status, NotificationStatus.SENT)
        self.assertEqual(self.notification.provider_message_id, "SM123")
        self.assertEqual(self.notification.attempts, 1)
        mock_client.return_value.messages.create.assert_called_once_with(
            body="Hello", from_="+15550001111", to="+250788123456"
        )

    @patch("apps.notifications.tasks.Client")
    def test_sent_notification_is_not_resent(self, mock_client):
        self.notification.status = NotificationStatus.SENT
        self.notification.save()

        send_notification_task(str(self.notification.id))

        mock_client.assert_not_called()

    @patch("apps.notifications.tasks.Client")
    def test_provider_rejection_marks_failed(self, mock_client):
        mock_client.return_value.messages.create.side_effect = TwilioRestException(
            400, "https://api.twilio.com", msg="Invalid 'To' number"
        )

        send_notification_task(str(self.notification.id))

        self.notification.refresh_from_db()
        self.assertEqual(self.notification.status, NotificationStatus.FAILED)
        self.assertIn("Invalid", self.notification.error_message)

    @override_settings(TWILIO_ACCOUNT_SID=None)
    def test_missing_credentials_marks_failed(self):
        send_notification_task(str(self.notification.id))

        self.notification.refresh_from_db()
        self.assertEqual(self.notification.status, NotificationStatus.FAILED)

    @patch("apps.notifications.tasks.send_notification_task.delay")
    def test_redelivery_picks_up_stale_pending_rows(self, mock_delay):
        Notification.objects.filter(id=self.notification.id).update(
            created_at=self.notification.created_at.replace(year=2020)
        )
        Notification.objects.create(phone="250788123456", event_key="fresh", body="new")

        count = redeliver_pending_notifications()

        self.assertEqual(count, 1)
        mock_delay.assert_called_once_with(str(self.notification.id))

    @patch("apps.notifications.tasks.send_notification_task.retry", side_effect=Retry())
    @patch("apps.notifications.tasks.Client")
    def test_transient_error_keeps_attempt_and_retries(self, mock_client, mock_retry):
        mock_client.return_value.messages.create.side_effect = ConnectionError("twilio unreachable")

        with self.assertRaises(Retry):
            send_notification_task(str(self.notification.id))

        self.notification.refresh_from_db()
        self.assertEqual(self.notification.status, NotificationStatus.PENDING)
        self.assertEqual(self.notification.attempts, 1)
        self.assertIn("unreachable", self.notification.error_message)
        mock_retry.assert_called_once()

    @patch("apps.notifications.tasks.send_notification_task.retry", side_effect=Retry())
    @patch("apps.notifications.tasks.Client")
    def test_last_attempt_marks_failed(self, mock_client, mock_retry):
        mock_client.return_value.messages.create.side_effect = ConnectionError("twilio unreachable")
        Notification.objects.filter(id=self.notification.id).update(attempts=MAX_DELIVERY_ATTEMPTS - 1)

        send_notification_task(str(self.notification.id))

        self.notification.refresh_from_db()
        self.assertEqual(self.notification.status, NotificationStatus.FAILED)
        self.assertEqual(self.notification.attempts, MAX_DELIVERY_ATTEMPTS)
        mock_retry.assert_not_called()

    @patch("apps.notifications.tasks.send_notification_task.delay")
    def test_redelivery_skips_exhausted_rows(self, mock_delay):
        Notification.objects.filter(id=self.notification.id).update(
            created_at=self.notification.created_at.replace(year=2020),
            attempts=MAX_DELIVERY_ATTEMPTS,
        )

        self.assertEqual(redeliver_pending_notifications(), 0)
        mock_delay.assert_not_called()
