import asyncio
import time
import unittest
from datetime import timedelta

from fastapi import BackgroundTasks
import httpx

import models
from mailer import get_mailer
from models import utcnow
from notifications import NotificationService
from app import app
from tests.helpers import ApiTestCase, RecordingMailer


class SlowMailer(RecordingMailer):
    """Takes as long as a sluggish SMTP server for every message."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def send_notification(self, user, notification):
        time.sleep(self.delay)
        return super().send_notification(user, notification)


class NotificationServiceTests(ApiTestCase):

    def test_notify_skips_duplicate_recipients(self):
        user = self.create_user("student")
        created = NotificationService(self.db).notify([user.id, str(user.id), None], "Тест", "Съобщение")
        self.assertEqual(len(created), 1)
        self.assertIsNotNone(created[0].expires_at)

    def test_failed_email_keeps_the_record(self):
        user = self.create_user("student")
        service = NotificationService(self.db, RecordingMailer(fail=True))
        created = service.notify([user.id], "Нова санкция", "Предупреждение", "error", "sanction", send_email=True)
        self.assertEqual(len(created), 1)
        self.assertFalse(self.notifications_for(user)[0].is_email_sent)

    def test_purge_expired(self):
        user = self.create_user("student")
        self.db.add(models.Notification(
            recipient_id=user.id, title="Старо", message="Изтекло", expires_at=utcnow() - timedelta(days=1)
        ))
        self.db.commit()
        self.assertEqual(NotificationService(self.db).purge_expired(), 1)
        self.assertEqual(self.notifications_for(user), [])

    def test_queued_emails_are_sent_when_tasks_run(self):
        user = self.create_user("student")
        tasks = BackgroundTasks()
        service = NotificationService(self.db, self.mailer, background_tasks=tasks)
        service.notify([user.id], "Ново събитие", "Кариерен ден", "info", "event", send_email=True)
        self.assertEqual(self.mailer.sent, [])
        self.assertEqual(len(tasks.tasks), 1)
        self.assertFalse(self.notifications_for(user)[0].is_email_sent)

        asyncio.run(tasks())
        self.assertEqual(self.mailer.sent, [(user.email, "Ново събитие")])
        self.assertTrue(self.notifications_for(user)[0].is_email_sent)

    def test_queued_email_failure_is_logged(self):
        user = self.create_user("student")
        tasks = BackgroundTasks()
        service = NotificationService(self.db, RecordingMailer(fail=True), background_tasks=tasks)
        service.notify([user.id], "Нова санкция", "Предупреждение", "error", "sanction", send_email=True)
        with self.assertLogs("notifications", level="ERROR"):
            asyncio.run(tasks())
        self.assertFalse(self.notifications_for(user)[0].is_email_sent)


class NotificationApiTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.student = self.create_user("student")
        self.teacher = self.create_user("teacher")
        self.admin = self.create_user("admin")

    def send(self, recipient, user=None, **extra):
        payload = {"recipient_id": str(recipient.id), "title": "Среща", "message": "Среща с родители в 18:00"}
        payload.update(extra)
        return self.client.post("/api/notifications", json=payload, headers=self.auth(user or self.teacher))

    def test_teacher_sends_and_student_reads(self):
        response = self.send(self.student, send_email=True)
        self.assertEqual(response.status_code, 201)
        self.assertTrue(self.notifications_for(self.student)[0].is_email_sent)
        self.assertEqual(self.mailer.sent, [(self.student.email, "Среща")])

        response = self.client.get("/api/notifications", headers=self.auth(self.student))
        body = response.json()
        self.assertEqual(body["total"], 1)
        self.assertEqual(body["unread_count"], 1)

        notification_id = body["notifications"][0]["id"]
        response = self.client.patch(f"/api/notifications/{notification_id}/read", headers=self.auth(self.student))
        self.assertTrue(response.json()["is_read"])
        self.assertIsNotNone(response.json()["read_at"])

        response = self.client.get("/api/notifications/unread-count", headers=self.auth(self.student))
        self.assertEqual(response.json()["unread_count"], 0)

    def test_failing_mailer_does_not_fail_request(self):
        app.dependency_overrides[get_mailer] = lambda: RecordingMailer(fail=True)
        response = self.send(self.student, send_email=True)
        self.assertEqual(response.status_code, 201)
        self.assertFalse(response.json()["is_email_sent"])

    def test_slow_mailer_does_not_stall_the_event_loop(self):
        self.mailer = SlowMailer(delay=0.3)
        for _ in range(3):
            self.create_user("student")
        headers = self.auth(self.teacher)
        payload = {
            "title": "Кариерен ден",
            "start_date": (utcnow() + timedelta(days=5)).isoformat() + "Z",
            "location": "Актова зала",
            "organizer": "Училищен съвет",
        }

        async def scenario():
            done = asyncio.Event()

            async def watch_loop():
                worst = 0.0
                while not done.is_set():
                    started = time.perf_counter()
                    await asyncio.sleep(0.01)
                    worst = max(worst, time.perf_counter() - started)
                return worst

            watcher = asyncio.create_task(watch_loop())
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.post("/api/events", json=payload, headers=headers)
            done.set()
            return response, await watcher

        response, worst_lag = asyncio.run(scenario())
        self.assertEqual(response.status_code, 201)
        self.assertLess(worst_lag, 0.25)
        self.assertEqual(len(self.mailer.sent), 4)

    def test_student_cannot_send(self):
        response = self.send(self.teacher, user=self.student)
        self.assertEqual(response.status_code, 403)

    def test_unknown_recipient(self):
        response = self.client.post(
            "/api/notifications",
            json={"recipient_id": "00000000-0000-0000-0000-000000000000", "title": "Среща", "message": "Текст"},
            headers=self.auth(self.teacher),
        )
        self.assertEqual(response.status_code, 404)

    def test_cannot_touch_someone_elses_notification(self):
        notification_id = self.send(self.student).json()["id"]
        other = self.create_user("student")
        response = self.client.patch(f"/api/notifications/{notification_id}/read", headers=self.auth(other))
        self.assertEqual(response.status_code, 404)
        response = self.client.delete(f"/api/notifications/{notification_id}", headers=self.auth(other))
        self.assertEqual(response.status_code, 404)

        response = self.client.delete(f"/api/notifications/{notification_id}", headers=self.auth(self.student))
        self.assertEqual(response.status_code, 200)

    def test_mark_all_read_is_scoped_to_requester(self):
        other = self.create_user("student")
        self.send(self.student)
        self.send(self.student)
        self.send(other)

        response = self.client.patch("/api/notifications/read-all", headers=self.auth(self.student))
        self.assertEqual(response.json()["data"]["updated"], 2)
        self.assertEqual(len(self.notifications_for(other, is_read=False)), 1)

    def test_bulk_by_role_is_admin_only(self):
        self.create_user("teacher")
        payload = {"role": "teacher", "title": "Педагогически съвет", "message": "В четвъртък от 14:00"}
        response = self.client.post("/api/notifications/bulk", json=payload, headers=self.auth(self.teacher))
        self.assertEqual(response.status_code, 403)

        response = self.client.post("/api/notifications/bulk", json=payload, headers=self.auth(self.admin))
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["data"]["count"], 2)

    def test_expired_notifications_are_hidden(self):
        self.db.add(models.Notification(
            recipient_id=self.student.id, title="Старо", message="Изтекло",
            expires_at=utcnow() - timedelta(hours=1),
        ))
        self.db.commit()
        self.send(self.student)

        response = self.client.get("/api/notifications", headers=self.auth(self.student))
        self.assertEqual(response.json()["total"], 1)
        self.assertEqual(response.json()["notifications"][0]["title"], "Среща")


if __name__ == "__main__":
    unittest.main()
