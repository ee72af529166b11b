import unittest
from datetime import timedelta

import models
from models import utcnow
from tests.helpers import ApiTestCase


class StudentProfileTests(ApiTestCase):

    def test_student_creates_own_profile_once(self):
        user = self.create_user("student")
        payload = {"grade": 11, "specialization": "Компютърни мрежи", "average_grade": 5.25}
        response = self.client.post("/api/students", json=payload, headers=self.auth(user))
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["user_id"], str(user.id))

        response = self.client.post("/api/students", json=payload, headers=self.auth(user))
        self.assertEqual(response.status_code, 400)

        me = self.client.get("/api/students/me", headers=self.auth(user))
        self.assertEqual(me.json()["grade"], 11)

    def test_teacher_cannot_create_profile(self):
        teacher = self.create_user("teacher")
        response = self.client.post(
            "/api/students",
            json={"grade": 9, "specialization": "Графичен дизайн", "average_grade": 4.5},
            headers=self.auth(teacher),
        )
        self.assertEqual(response.status_code, 403)

    def test_grade_range_is_validated(self):
        user = self.create_user("student")
        response = self.client.post(
            "/api/students",
            json={"grade": 7, "specialization": "Графичен дизайн", "average_grade": 4.5},
            headers=self.auth(user),
        )
        self.assertEqual(response.status_code, 422)

    def test_profile_lookup_by_user_id(self):
        student = self.create_student()
        teacher = self.create_user("teacher")
        stranger = self.create_student().user

        response = self.client.get(f"/api/students/{student.user_id}", headers=self.auth(teacher))
        self.assertEqual(response.json()["id"], str(student.id))
        response = self.client.get(f"/api/students/{student.user_id}", headers=self.auth(stranger))
        self.assertEqual(response.status_code, 403)

    def test_teacher_may_update_but_not_delete(self):
        student = self.create_student()
        teacher = self.create_user("teacher")
        response = self.client.put(
            f"/api/students/{student.id}", json={"average_grade": 5.75}, headers=self.auth(teacher)
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["average_grade"], 5.75)

        response = self.client.delete(f"/api/students/{student.id}", headers=self.auth(teacher))
        self.assertEqual(response.status_code, 403)

    def test_delete_cascades_owned_records(self):
        student = self.create_student()
        admin = self.create_user("admin")
        self.client.put(
            f"/api/students/{student.id}/goals/profession",
            json={"description": "Да стана програмист", "activities": ["Курс по Python"]},
            headers=self.auth(student.user),
        )
        response = self.client.delete(f"/api/students/{student.id}", headers=self.auth(admin))
        self.assertEqual(response.status_code, 200)
        self.db.expire_all()
        self.assertEqual(self.db.query(models.Goal).count(), 0)
        self.assertEqual(self.db.query(models.Student).count(), 0)

    def test_listing_and_search_are_for_staff(self):
        self.create_student(grade=9, average_grade=4.0)
        self.create_student(grade=12, average_grade=5.9)
        teacher = self.create_user("teacher")

        response = self.client.get("/api/students?grade=12", headers=self.auth(teacher))
        self.assertEqual(response.json()["total"], 1)

        response = self.client.get("/api/students/search?min_average=5", headers=self.auth(teacher))
        self.assertEqual(len(response.json()), 1)

        student = self.create_student()
        response = self.client.get("/api/students", headers=self.auth(student.user))
        self.assertEqual(response.status_code, 403)


class GoalTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.student = self.create_student()
        self.url = f"/api/students/{self.student.id}/goals"

    def test_repeated_updates_keep_one_goal_per_category(self):
        headers = self.auth(self.student.user)
        first = self.client.put(
            f"{self.url}/academicDevelopment",
            json={"description": "Отличен успех", "activities": ["Уроци", " "]},
            headers=headers,
        )
        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.json()["title"], "Академично развитие")
        self.assertEqual(first.json()["activities"], ["Уроци"])

        for n in range(3):
            response = self.client.put(
                f"{self.url}/academicDevelopment",
                json={"description": f"Версия {n}", "activities": ["Уроци", "Олимпиади"]},
                headers=headers,
            )
            self.assertEqual(response.status_code, 200)

        self.db.expire_all()
        goals = self.db.query(models.Goal).filter(models.Goal.student_id == self.student.id).all()
        self.assertEqual(len(goals), 1)
        self.assertEqual(goals[0].description, "Версия 2")

    def test_unknown_category_is_rejected(self):
        response = self.client.put(
            f"{self.url}/sports",
            json={"description": "Бягане", "activities": ["Маратон"]},
            headers=self.auth(self.student.user),
        )
        self.assertEqual(response.status_code, 422)

    def test_empty_activities_are_rejected(self):
        response = self.client.put(
            f"{self.url}/community",
            json={"description": "Доброволчество", "activities": ["  "]},
            headers=self.auth(self.student.user),
        )
        self.assertEqual(response.status_code, 422)

    def test_teacher_reads_but_cannot_write(self):
        teacher = self.create_user("teacher")
        self.assertEqual(self.client.get(self.url, headers=self.auth(teacher)).status_code, 200)
        response = self.client.put(
            f"{self.url}/community",
            json={"description": "Доброволчество", "activities": ["Дарителска кампания"]},
            headers=self.auth(teacher),
        )
        self.assertEqual(response.status_code, 403)

    def test_delete_goal(self):
        headers = self.auth(self.student.user)
        self.client.put(
            f"{self.url}/internship",
            json={"description": "Стаж в IT фирма", "activities": ["Кандидатстване"]},
            headers=headers,
        )
        self.assertEqual(self.client.delete(f"{self.url}/internship", headers=headers).status_code, 200)
        self.assertEqual(self.client.delete(f"{self.url}/internship", headers=headers).status_code, 404)


class InterestTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.student = self.create_student()
        self.url = f"/api/students/{self.student.id}/interests"

    def test_read_without_record_returns_empty_and_stores_nothing(self):
        response = self.client.get(self.url, headers=self.auth(self.student.user))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["interests"], [])
        self.assertEqual(response.json()["hobbies"], [])
        self.db.expire_all()
        self.assertEqual(self.db.query(models.Interest).count(), 0)

    def test_update_replaces_lists(self):
        payload = {
            "interests": [{"category": "Технологии", "subcategory": "Роботика"}],
            "hobbies": ["Шах", "Фотография"],
        }
        response = self.client.put(self.url, json=payload, headers=self.auth(self.student.user))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["hobbies"], ["Шах", "Фотография"])

    def test_duplicate_hobby_is_conflict(self):
        response = self.client.put(
            self.url, json={"hobbies": ["Шах", " шах "]}, headers=self.auth(self.student.user)
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "CONFLICT")

    def test_duplicate_interest_pair_is_conflict(self):
        item = {"category": "Наука", "subcategory": "Физика"}
        response = self.client.put(
            self.url, json={"interests": [item, {"category": "наука", "subcategory": "ФИЗИКА"}]},
            headers=self.auth(self.student.user),
        )
        self.assertEqual(response.status_code, 400)

    def test_too_many_hobbies(self):
        hobbies = [f"Хоби {n}" for n in range(16)]
        response = self.client.put(self.url, json={"hobbies": hobbies}, headers=self.auth(self.student.user))
        self.assertEqual(response.status_code, 422)


class AchievementTests(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.student = self.create_student()
        self.url = f"/api/students/{self.student.id}/achievements"
        self.payload = {
            "category": "olympiad",
            "title": "Национална олимпиада по информатика",
            "date": (utcnow().date() - timedelta(days=30)).isoformat(),
            "place": "2 място",
        }

    def test_create_and_duplicate(self):
        headers = self.auth(self.student.user)
        response = self.client.post(self.url, json=self.payload, headers=headers)
        self.assertEqual(response.status_code, 201)
        response = self.client.post(self.url, json=self.payload, headers=headers)
        self.assertEqual(response.status_code, 400)

    def test_future_date_is_rejected(self):
        self.payload["date"] = (utcnow().date() + timedelta(days=3)).isoformat()
        response = self.client.post(self.url, json=self.payload, headers=self.auth(self.student.user))
        self.assertEqual(response.status_code, 422)

    def test_delete_through_another_students_path_is_mismatch(self):
        created = self.client.post(self.url, json=self.payload, headers=self.auth(self.student.user)).json()
        other = self.create_student()
        admin = self.create_user("admin")
        response = self.client.delete(
            f"/api/students/{other.id}/achievements/{created['id']}", headers=self.auth(admin)
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "MISMATCH")

    def test_missing_achievement_is_not_found(self):
        response = self.client.delete(
            f"{self.url}/00000000-0000-0000-0000-000000000000", headers=self.auth(self.student.user)
        )
        self.assertEqual(response.status_code, 404)

    def test_teacher_cannot_create(self):
        teacher = self.create_user("teacher")
        response = self.client.post(self.url, json=self.payload, headers=self.auth(teacher))
        self.assertEqual(response.status_code, 403)

    def test_owner_updates_achievement(self):
        headers = self.auth(self.student.user)
        created = self.client.post(self.url, json=self.payload, headers=headers).json()
        response = self.client.put(
            f"{self.url}/{created['id']}", json={"place": "1 място", "issuer": "МОН"}, headers=headers
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["place"], "1 място")
        self.assertEqual(body["issuer"], "МОН")
        self.assertEqual(body["title"], self.payload["title"])

    def test_update_into_existing_title_and_date_is_conflict(self):
        headers = self.auth(self.student.user)
        self.client.post(self.url, json=self.payload, headers=headers)
        other = dict(self.payload, title="Състезание по роботика")
        created = self.client.post(self.url, json=other, headers=headers).json()

        response = self.client.put(
            f"{self.url}/{created['id']}", json={"title": self.payload["title"]}, headers=headers
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "CONFLICT")

        response = self.client.put(
            f"{self.url}/{created['id']}", json={"title": other["title"]}, headers=headers
        )
        self.assertEqual(response.status_code, 200)

    def test_update_rules(self):
        created = self.client.post(self.url, json=self.payload, headers=self.auth(self.student.user)).json()
        url = f"{self.url}/{created['id']}"

        future = (utcnow().date() + timedelta(days=1)).isoformat()
        response = self.client.put(url, json={"date": future}, headers=self.auth(self.student.user))
        self.assertEqual(response.status_code, 422)

        teacher = self.create_user("teacher")
        response = self.client.put(url, json={"place": "3 място"}, headers=self.auth(teacher))
        self.assertEqual(response.status_code, 403)

        other = self.create_student()
        response = self.client.put(
            f"/api/students/{other.id}/achievements/{created['id']}",
            json={"place": "3 място"},
            headers=self.auth(self.create_user("admin")),
        )
        self.assertEqual(response.json()["code"], "MISMATCH")


if __name__ == "__main__":
    unittest.main()
