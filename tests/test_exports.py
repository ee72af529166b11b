import unittest
from datetime import timedelta

from models import utcnow
from tests.helpers import ApiTestCase


class ExportTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.teacher = self.create_user("teacher")
        self.tenth = self.create_student(grade=10)
        self.eleventh = self.create_student(grade=11)

    def get(self, url, user=None):
        return self.client.get(url, headers=self.auth(user or self.teacher))

    def test_goals_export_filters(self):
        for student, category in ((self.tenth, "profession"), (self.eleventh, "community")):
            self.client.put(
                f"/api/students/{student.id}/goals/{category}",
                json={"description": "Описание", "activities": ["Курс", "Стаж"]},
                headers=self.auth(student.user),
            )

        body = self.get("/api/goals/export").json()
        self.assertTrue(body["success"])
        self.assertEqual(body["count"], 2)
        self.assertEqual([row["grade"] for row in body["data"]], [10, 11])

        body = self.get("/api/goals/export?grade=11&category=community").json()
        self.assertEqual(body["filters"], {"grade": 11, "category": "community"})
        self.assertEqual(body["count"], 1)
        row = body["data"][0]
        self.assertEqual(row["category_title"], "Общност")
        self.assertEqual(row["activities"], "Курс; Стаж")
        self.assertEqual(row["activities_count"], 2)

        self.assertEqual(self.get("/api/goals/export?category=sports").status_code, 422)

    def test_interests_export(self):
        self.client.put(
            f"/api/students/{self.tenth.id}/interests",
            json={"interests": [{"category": "Технологии", "subcategory": "Роботика"}], "hobbies": ["Шах"]},
            headers=self.auth(self.tenth.user),
        )
        body = self.get("/api/interests/export?grade=10").json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["data"][0]["interests_text"], "Технологии - Роботика")
        self.assertEqual(body["data"][0]["hobbies_count"], 1)

        self.assertEqual(self.get("/api/interests/export?grade=11").json()["count"], 0)

    def test_achievements_export(self):
        day = utcnow().date() - timedelta(days=10)
        self.client.post(
            f"/api/students/{self.eleventh.id}/achievements",
            json={"category": "olympiad", "title": "Олимпиада по математика", "date": day.isoformat()},
            headers=self.auth(self.eleventh.user),
        )
        body = self.get("/api/achievements/export?category=olympiad").json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["data"][0]["date"], day.strftime("%d.%m.%Y"))
        self.assertEqual(self.get("/api/achievements/export?category=award").json()["count"], 0)

    def test_sanctions_export_includes_students_without_record(self):
        self.client.put(
            f"/api/students/{self.tenth.id}/sanctions/absences",
            json={"excused": 5, "unexcused": 2},
            headers=self.auth(self.teacher),
        )
        body = self.get("/api/sanctions/export").json()
        self.assertEqual(body["count"], 2)
        first, second = body["data"]
        self.assertEqual(first["total_absences"], 7)
        self.assertEqual(second["total_absences"], 0)
        self.assertEqual(second["max_allowed"], 150)

    def test_exports_are_for_staff(self):
        for url in ("/api/goals/export", "/api/interests/export",
                    "/api/achievements/export", "/api/sanctions/export"):
            response = self.get(url, user=self.tenth.user)
            self.assertEqual(response.status_code, 403)


if __name__ == "__main__":
    unittest.main()
