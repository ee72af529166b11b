import asyncio
import unittest
from unittest.mock import patch

from fastapi import BackgroundTasks

import config
import models
from auth import AuthService, log_audit_event
from tests.helpers import ApiTestCase, PASSWORD


class AuthTests(ApiTestCase):

    def register(self, **overrides):
        payload = {
            "email": "Maria.Ivanova@school.bg",
            "password": PASSWORD,
            "first_name": "Мария",
            "last_name": "Иванова",
            "role": "student",
        }
        payload.update(overrides)
        return self.client.post("/api/auth/register", json=payload)

    def test_register_returns_tokens(self):
        response = self.register()
        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["email"], "maria.ivanova@school.bg")
        self.assertEqual(data["role"], "student")
        self.assertIn("access_token", data)
        self.assertIn("refresh_token", data)

    def test_register_duplicate_email_is_conflict(self):
        self.register()
        response = self.register()
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "CONFLICT")

    def test_register_weak_password_lists_field_errors(self):
        response = self.register(password="alllowercase1")
        self.assertEqual(response.status_code, 422)
        body = response.json()
        self.assertEqual(body["code"], "VALIDATION_FAILED")
        self.assertEqual(body["details"]["errors"][0]["field"], "password")

    def test_password_length_follows_settings(self):
        response = self.register(password="Short1a")
        self.assertEqual(response.status_code, 422)

        with patch.object(config.TestingConfig, "PASSWORD_MIN_LENGTH", 12):
            response = self.register(password="Parola12345")
            self.assertEqual(response.status_code, 422)
            self.assertIn("12", response.json()["details"]["errors"][0]["message"])

            response = self.register(password="Parola123456")
            self.assertEqual(response.status_code, 201)

    def test_register_cannot_create_admin(self):
        response = self.register(role="admin")
        self.assertEqual(response.status_code, 422)

    def test_login_and_me(self):
        self.register()
        response = self.client.post("/api/auth/login", json={
            "email": "maria.ivanova@school.bg", "password": PASSWORD
        })
        self.assertEqual(response.status_code, 200)
        token = response.json()["access_token"]

        me = self.client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["first_name"], "Мария")

    def test_me_without_token_is_unauthorized(self):
        response = self.client.get("/api/auth/me")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "UNAUTHORIZED")

    def test_refresh_token_cannot_be_used_as_access_token(self):
        tokens = self.register().json()
        response = self.client.get("/api/auth/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
        self.assertEqual(response.status_code, 401)

        refreshed = self.client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        self.assertEqual(refreshed.status_code, 200)
        self.assertIn("access_token", refreshed.json())

    def test_account_locks_after_repeated_failures(self):
        user = self.create_user("student", email="locked@school.bg")
        for _ in range(5):
            response = self.client.post("/api/auth/login", json={"email": user.email, "password": "Wrong1234"})
            self.assertEqual(response.status_code, 401)

        self.db.expire_all()
        self.assertTrue(self.db.get(models.User, user.id).account_locked)

        response = self.client.post("/api/auth/login", json={"email": user.email, "password": PASSWORD})
        self.assertEqual(response.status_code, 401)

    def test_password_reset_unlocks_account(self):
        user = self.create_user("student", email="reset@school.bg")
        user.account_locked = True
        self.db.commit()

        response = self.client.post("/api/auth/forgot-password", json={"email": user.email})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(self.mailer.resets), 1)
        token = self.mailer.resets[0][1]

        response = self.client.post("/api/auth/reset-password", json={"token": token, "new_password": "NewParola9"})
        self.assertEqual(response.status_code, 200)

        response = self.client.post("/api/auth/login", json={"email": user.email, "password": "NewParola9"})
        self.assertEqual(response.status_code, 200)

    def test_reset_email_is_sent_after_the_request(self):
        user = self.create_user("teacher")
        tasks = BackgroundTasks()
        token = AuthService(self.db, self.mailer).request_password_reset(user.email, tasks)
        self.assertEqual(self.mailer.resets, [])

        asyncio.run(tasks())
        self.assertEqual(self.mailer.resets, [(user.email, token)])

    def test_forgot_password_for_unknown_email_looks_the_same(self):
        response = self.client.post("/api/auth/forgot-password", json={"email": "nobody@school.bg"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.mailer.resets, [])

    def test_change_password_requires_current_password(self):
        user = self.create_user("teacher")
        response = self.client.post(
            "/api/auth/change-password",
            json={"current_password": "Wrong1234", "new_password": "Another123"},
            headers=self.auth(user),
        )
        self.assertEqual(response.status_code, 422)

    def test_login_writes_audit_entry(self):
        user = self.create_user("teacher", email="audit@school.bg")
        self.client.post("/api/auth/login", json={"email": user.email, "password": PASSWORD})
        self.db.expire_all()
        actions = [log.action for log in self.db.query(models.AuditLog).filter(models.AuditLog.user_id == user.id)]
        self.assertIn("login", actions)

    def test_unknown_audit_action_is_rejected(self):
        user = self.create_user("teacher")
        with self.assertRaises(ValueError):
            log_audit_event(self.db, user, "export", "User", user.id)
        self.assertEqual(self.db.query(models.AuditLog).count(), 0)

    def test_admin_can_deactivate_user(self):
        admin = self.create_user("admin")
        user = self.create_user("student")
        response = self.client.patch(
            f"/api/users/{user.id}/status", json={"is_active": False}, headers=self.auth(admin)
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["is_active"])

        token = AuthService(self.db).create_access_token(user)
        response = self.client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 401)

    def test_user_listing_is_admin_only(self):
        teacher = self.create_user("teacher")
        response = self.client.get("/api/users", headers=self.auth(teacher))
        self.assertEqual(response.status_code, 403)


class UserAdministrationTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.admin = self.create_user("admin")
        self.headers = self.auth(self.admin)

    def test_admin_creates_any_role(self):
        payload = {
            "email": "Deputy@school.bg",
            "password": PASSWORD,
            "first_name": "Петя",
            "last_name": "Колева",
            "role": "admin",
        }
        response = self.client.post("/api/users", json=payload, headers=self.headers)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["role"], "admin")
        self.assertEqual(response.json()["email"], "deputy@school.bg")

        response = self.client.post("/api/users", json=payload, headers=self.headers)
        self.assertEqual(response.json()["code"], "CONFLICT")

    def test_get_user_with_student_profile(self):
        student = self.create_student()
        response = self.client.get(f"/api/users/{student.user_id}", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["student"]["id"], str(student.id))

        teacher = self.create_user("teacher")
        response = self.client.get(f"/api/users/{teacher.id}", headers=self.headers)
        self.assertIsNone(response.json()["student"])

        response = self.client.get("/api/users/00000000-0000-0000-0000-000000000000", headers=self.headers)
        self.assertEqual(response.status_code, 404)

    def test_update_user(self):
        teacher = self.create_user("teacher")
        taken = self.create_user("student")
        response = self.client.put(
            f"/api/users/{teacher.id}", json={"last_name": "Георгиева"}, headers=self.headers
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["last_name"], "Георгиева")

        response = self.client.put(f"/api/users/{teacher.id}", json={"email": taken.email}, headers=self.headers)
        self.assertEqual(response.status_code, 400)

    def test_other_admins_are_protected(self):
        other = self.create_user("admin")
        response = self.client.put(f"/api/users/{other.id}", json={"first_name": "Нов"}, headers=self.headers)
        self.assertEqual(response.status_code, 403)
        response = self.client.patch(f"/api/users/{other.id}/role", json={"role": "teacher"}, headers=self.headers)
        self.assertEqual(response.status_code, 403)

    def test_change_role(self):
        user = self.create_user("student")
        response = self.client.patch(f"/api/users/{user.id}/role", json={"role": "teacher"}, headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["role"], "teacher")

        response = self.client.patch(f"/api/users/{user.id}/role", json={"role": "janitor"}, headers=self.headers)
        self.assertEqual(response.status_code, 422)

        response = self.client.patch(
            f"/api/users/{self.admin.id}/role", json={"role": "student"}, headers=self.headers
        )
        self.assertEqual(response.status_code, 400)

    def test_statistics(self):
        self.create_user("teacher")
        self.create_user("student")
        self.create_user("student")
        response = self.client.get("/api/users/stats", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total_users"], 4)
        self.assertEqual(body["total_students"], 2)
        self.assertEqual(body["total_admins"], 1)
        self.assertEqual(body["registrations_this_month"], 4)

    def test_management_is_admin_only(self):
        teacher = self.create_user("teacher")
        for method, url in (("get", "/api/users/stats"), ("get", f"/api/users/{teacher.id}")):
            response = getattr(self.client, method)(url, headers=self.auth(teacher))
            self.assertEqual(response.status_code, 403)
        response = self.client.patch(
            f"/api/users/{teacher.id}/role", json={"role": "admin"}, headers=self.auth(teacher)
        )
        self.assertEqual(response.status_code, 403)


if __name__ == "__main__":
    unittest.main()
