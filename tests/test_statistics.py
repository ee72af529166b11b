import unittest

from analytics import StatisticsAggregator, mean, rate, round_half_up, top_n
from tests.helpers import ApiTestCase


class HelperTests(unittest.TestCase):

    def test_rate(self):
        self.assertEqual(rate(0, 0), 0.0)
        self.assertEqual(rate(3, 4), 75.0)
        self.assertEqual(rate(1, 3), 33.33)
        self.assertEqual(rate(2, 3), 66.67)

    def test_round_half_up(self):
        self.assertEqual(round_half_up(2.345), 2.35)
        self.assertEqual(round_half_up(0.125), 0.13)

    def test_mean_ignores_missing_values(self):
        self.assertEqual(mean([4.5, None, 5.5]), 5.0)
        self.assertEqual(mean([]), 0.0)

    def test_top_n_breaks_ties_alphabetically(self):
        result = top_n(["Шах", "Футбол", "Шах", "Музика", "Футбол", "Рисуване"], 3, "hobby")
        self.assertEqual(result, [
            {"hobby": "Футбол", "count": 2},
            {"hobby": "Шах", "count": 2},
            {"hobby": "Музика", "count": 1},
        ])
        self.assertEqual(top_n([], 5), [])


class AggregatorTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.teacher = self.create_user("teacher")
        self.students = [self.create_student(grade=10, average_grade=5.0), self.create_student(grade=11)]

    def submit(self, student, activity):
        return self.client.post(
            "/api/credits",
            json={"pillar": "Професия", "activity": activity, "description": "Описание"},
            headers=self.auth(student.user),
        ).json()

    def test_credit_rates(self):
        first = self.submit(self.students[0], "Стаж")
        self.submit(self.students[0], "Хакатон")
        self.submit(self.students[1], "Стаж")
        self.client.patch(
            f"/api/credits/{first['id']}/validate", json={"status": "validated"}, headers=self.auth(self.teacher)
        )

        response = self.client.get("/api/credits/statistics", headers=self.auth(self.teacher))
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total"], 3)
        self.assertEqual(body["by_status"], {"pending": 2, "validated": 1, "rejected": 0})
        self.assertEqual(body["by_pillar"]["Професия"]["total"], 3)
        self.assertEqual(body["validation_rate"], 33.33)
        self.assertEqual(body["students_with_credits"], 2)
        self.assertEqual(body["submitted_last_30_days"], 3)

    def test_empty_statistics_have_zero_rates(self):
        stats = StatisticsAggregator(self.db).credit_statistics()
        self.assertEqual(stats["total"], 0)
        self.assertEqual(stats["validation_rate"], 0.0)

    def test_goal_participation_rate(self):
        self.client.put(
            f"/api/students/{self.students[0].id}/goals/profession",
            json={"description": "Програмист", "activities": ["Курс", "Стаж"]},
            headers=self.auth(self.students[0].user),
        )
        stats = StatisticsAggregator(self.db).goal_statistics()
        self.assertEqual(stats["participation_rate"], 50.0)
        self.assertEqual(stats["by_category"]["profession"]["count"], 1)
        self.assertEqual(stats["average_activities_per_goal"], 2.0)

    def test_student_statistics_by_grade(self):
        response = self.client.get("/api/students/statistics", headers=self.auth(self.teacher))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total"], 2)

    def test_students_cannot_read_statistics(self):
        for url in ("/api/credits/statistics", "/api/analytics/dashboard", "/api/events/statistics"):
            response = self.client.get(url, headers=self.auth(self.students[0].user))
            self.assertEqual(response.status_code, 403)

    def test_dashboard(self):
        response = self.client.get("/api/analytics/dashboard", headers=self.auth(self.teacher))
        self.assertEqual(response.status_code, 200)
        self.assertIn("credits", response.json())


if __name__ == "__main__":
    unittest.main()
