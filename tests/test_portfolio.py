import unittest

import models
from tests.helpers import ApiTestCase


class PortfolioTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.student = self.create_student()
        self.owner = self.student.user
        self.teacher = self.create_user("teacher", first_name="Петя", last_name="Димова")
        self.url = f"/api/students/{self.student.id}/portfolio"

    def recommend(self, author, user=None):
        return self.client.post(
            f"{self.url}/recommendations",
            json={"text": "Отговорен и инициативен ученик.", "author": author},
            headers=self.auth(user or self.teacher),
        )

    def test_read_without_record_is_empty(self):
        response = self.client.get(self.url, headers=self.auth(self.owner))
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertIsNone(body["id"])
        self.assertEqual(body["experience"], "")
        self.assertEqual(body["recommendations"], [])
        self.db.expire_all()
        self.assertEqual(self.db.query(models.Portfolio).count(), 0)

    def test_owner_updates_portfolio_with_mentor(self):
        response = self.client.put(
            self.url,
            json={"experience": "Стаж в уеб агенция", "projects": "Училищен сайт", "mentor_id": str(self.teacher.id)},
            headers=self.auth(self.owner),
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["mentor_id"], str(self.teacher.id))
        self.assertEqual(body["mentor"]["last_name"], "Димова")

    def test_student_cannot_be_mentor(self):
        classmate = self.create_student().user
        response = self.client.put(
            self.url, json={"mentor_id": str(classmate.id)}, headers=self.auth(self.owner)
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["details"]["errors"][0]["field"], "mentor_id")

    def test_teacher_cannot_edit_portfolio(self):
        response = self.client.put(self.url, json={"projects": "Нещо"}, headers=self.auth(self.teacher))
        self.assertEqual(response.status_code, 403)

    def test_one_recommendation_per_author(self):
        self.assertEqual(self.recommend("Петя Димова").status_code, 201)
        response = self.recommend(" петя димова ")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "CONFLICT")

    def test_recommendations_are_capped(self):
        for n in range(10):
            self.assertEqual(self.recommend(f"Автор {n}").status_code, 201)
        response = self.recommend("Автор 10")
        self.assertEqual(response.status_code, 400)

    def test_remove_recommendation(self):
        portfolio = self.recommend("Петя Димова").json()
        rec_id = portfolio["recommendations"][0]["id"]

        response = self.client.delete(f"{self.url}/recommendations/{rec_id}", headers=self.auth(self.teacher))
        self.assertEqual(response.status_code, 403)

        response = self.client.delete(f"{self.url}/recommendations/{rec_id}", headers=self.auth(self.owner))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["recommendations"], [])

    def test_remove_through_other_student_is_mismatch(self):
        portfolio = self.recommend("Петя Димова").json()
        rec_id = portfolio["recommendations"][0]["id"]
        other = self.create_student()
        admin = self.create_user("admin")
        response = self.client.delete(
            f"/api/students/{other.id}/portfolio/recommendations/{rec_id}", headers=self.auth(admin)
        )
        self.assertEqual(response.json()["code"], "MISMATCH")


if __name__ == "__main__":
    unittest.main()
