import unittest
import uuid

import models
from errors import ForbiddenError, MismatchError
from policy import canonical_id, is_owner, is_privileged, can, enforce, enforce_on, resolve_owner_user_id


def make_user(role):
    return models.User(id=uuid.uuid4(), role=role, email=f"{role}@school.bg", first_name="А", last_name="Б")


class OwnershipTests(unittest.TestCase):

    def test_ids_in_different_forms_are_equal(self):
        value = uuid.uuid4()
        self.assertTrue(is_owner(value, str(value)))
        self.assertTrue(is_owner(str(value).upper(), value))
        self.assertTrue(is_owner(value.bytes, value))

    def test_missing_owner_is_never_owner(self):
        self.assertFalse(is_owner(None, None))
        self.assertFalse(is_owner(None, uuid.uuid4()))

    def test_canonical_id_of_plain_text(self):
        self.assertEqual(canonical_id(" ABC "), "abc")
        self.assertIsNone(canonical_id(None))

    def test_is_privileged(self):
        self.assertTrue(is_privileged("teacher"))
        self.assertTrue(is_privileged("admin", ("admin",)))
        self.assertFalse(is_privileged("teacher", ("admin",)))
        self.assertFalse(is_privileged("student"))

    def test_owner_follows_student_to_user(self):
        user = make_user("student")
        student = models.Student(id=uuid.uuid4(), user_id=user.id)
        credit = models.Credit(student=student)
        self.assertEqual(resolve_owner_user_id(student), user.id)
        self.assertEqual(resolve_owner_user_id(credit), user.id)


class PolicyTableTests(unittest.TestCase):

    def setUp(self):
        self.owner = make_user("student")
        self.other = make_user("student")
        self.teacher = make_user("teacher")
        self.admin = make_user("admin")

    def test_read_allows_owner_teacher_admin(self):
        for user in (self.owner, self.teacher, self.admin):
            self.assertTrue(can(user, "goal", "read", self.owner.id))
        self.assertFalse(can(self.other, "goal", "read", self.owner.id))

    def test_write_allows_owner_and_admin_only(self):
        self.assertTrue(can(self.owner, "goal", "update", self.owner.id))
        self.assertTrue(can(self.admin, "goal", "update", self.owner.id))
        self.assertFalse(can(self.teacher, "goal", "update", self.owner.id))
        self.assertFalse(can(self.other, "goal", "update", self.owner.id))

    def test_sanction_update_excludes_the_owner(self):
        self.assertFalse(can(self.owner, "sanction", "update", self.owner.id))
        self.assertTrue(can(self.teacher, "sanction", "update", self.owner.id))

    def test_credit_validation_is_teacher_or_admin(self):
        self.assertFalse(can(self.owner, "credit", "validate", self.owner.id))
        self.assertTrue(can(self.teacher, "credit", "validate"))

    def test_event_read_is_open_to_any_account(self):
        self.assertTrue(can(self.other, "event", "read"))

    def test_mismatch_is_checked_before_role(self):
        with self.assertRaises(MismatchError):
            enforce(
                self.other, "achievement", "delete",
                owner_user_id=self.owner.id,
                path_student_id=uuid.uuid4(),
                resource_student_id=uuid.uuid4(),
            )

    def test_forbidden_when_ids_match_but_role_fails(self):
        student_id = uuid.uuid4()
        with self.assertRaises(ForbiddenError):
            enforce(
                self.other, "achievement", "delete",
                owner_user_id=self.owner.id,
                path_student_id=student_id,
                resource_student_id=str(student_id),
            )

    def test_enforce_on_entity(self):
        student = models.Student(id=uuid.uuid4(), user_id=self.owner.id)
        enforce_on(self.owner, student, "portfolio", "update")
        with self.assertRaises(ForbiddenError):
            enforce_on(self.teacher, student, "portfolio", "update")


if __name__ == "__main__":
    unittest.main()
