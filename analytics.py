from decimal import Decimal, ROUND_HALF_UP
from datetime import timedelta
from typing import List, Dict, Any, Iterable

import numpy as np
import pandas as pd
from sqlalchemy.orm import Session, joinedload

from config import get_settings
import models
from models import utcnow, GOAL_CATEGORY_TITLES


def round_half_up(value, places: int = 2) -> float:
    """Round with the school convention (2.345 -> 2.35), not banker's rounding."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def rate(part, total) -> float:
    """Percentage of part in total, 0 when total is 0."""
    if not total:
        return 0.0
    value = Decimal(part) * 100 / Decimal(total)
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def mean(values: Iterable) -> float:
    values = [v for v in values if v is not None]
    if not values:
        return 0.0
    return round_half_up(float(np.mean(values)))


def top_n(values: Iterable, n: int, label: str = "name") -> List[Dict[str, Any]]:
    """Most frequent values, ties broken alphabetically."""
    df = pd.DataFrame({label: list(values)}, columns=[label])
    if df.empty:
        return []
    counts = df.groupby(label).size().reset_index(name="count")
    counts = counts.sort_values(["count", label], ascending=[False, True]).head(n)
    return [{label: row[label], "count": int(row["count"])} for _, row in counts.iterrows()]


class StatisticsAggregator:
    """Read-only rollups for the teacher and admin dashboards."""

    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings or get_settings()

    def _student_count(self) -> int:
        return self.db.query(models.Student).count()

    def credit_statistics(self) -> Dict[str, Any]:
        credits = self.db.query(models.Credit).all()
        df = pd.DataFrame(
            [{"pillar": c.pillar, "status": c.status, "created_at": c.created_at} for c in credits],
            columns=["pillar", "status", "created_at"],
        )
        by_status = {status: 0 for status in models.CREDIT_STATUSES}
        by_pillar = {pillar: {"total": 0, **{s: 0 for s in models.CREDIT_STATUSES}} for pillar in models.PILLARS}
        if not df.empty:
            for status, count in df.groupby("status").size().items():
                by_status[status] = int(count)
            for (pillar, status), count in df.groupby(["pillar", "status"]).size().items():
                bucket = by_pillar.setdefault(pillar, {"total": 0, **{s: 0 for s in models.CREDIT_STATUSES}})
                bucket[status] = int(count)
                bucket["total"] += int(count)

        since = utcnow() - timedelta(days=30)
        total = len(credits)
        return {
            "total": total,
            "by_status": by_status,
            "by_pillar": by_pillar,
            "validation_rate": rate(by_status["validated"], total),
            "rejection_rate": rate(by_status["rejected"], total),
            "submitted_last_30_days": int((df["created_at"] >= since).sum()) if not df.empty else 0,
            "students_with_credits": len({c.student_id for c in credits}),
        }

    def goal_statistics(self) -> Dict[str, Any]:
        goals = self.db.query(models.Goal).all()
        students = self._student_count()
        with_goals = len({g.student_id for g in goals})
        by_category = {
            category: {"title": title, "count": 0} for category, title in GOAL_CATEGORY_TITLES.items()
        }
        for item in top_n((g.category for g in goals), len(GOAL_CATEGORY_TITLES), "category"):
            by_category[item["category"]]["count"] = item["count"]
        return {
            "total": len(goals),
            "by_category": by_category,
            "students_with_goals": with_goals,
            "participation_rate": rate(with_goals, students),
            "average_goals_per_student": round_half_up(len(goals) / with_goals) if with_goals else 0.0,
            "average_activities_per_goal": mean(len(g.activities or []) for g in goals),
        }

    def interest_statistics(self) -> Dict[str, Any]:
        records = self.db.query(models.Interest).all()
        with_data = [r for r in records if r.interests or r.hobbies]
        items = [i for r in records for i in (r.interests or [])]
        return {
            "students_with_interests": len(with_data),
            "participation_rate": rate(len(with_data), self._student_count()),
            "top_categories": top_n((i["category"] for i in items), 10, "category"),
            "top_subcategories": top_n((i["subcategory"] for i in items), 15, "subcategory"),
            "top_hobbies": top_n((h for r in records for h in (r.hobbies or [])), 10, "hobby"),
        }

    def popular_interests(self, limit: int = 20) -> Dict[str, Any]:
        records = self.db.query(models.Interest).all()
        return {
            "categories": top_n((i["category"] for r in records for i in (r.interests or [])), limit, "category"),
            "hobbies": top_n((h for r in records for h in (r.hobbies or [])), limit, "hobby"),
        }

    def achievement_statistics(self) -> Dict[str, Any]:
        achievements = self.db.query(models.Achievement).options(
            joinedload(models.Achievement.student).joinedload(models.Student.user)
        ).all()
        by_category = {category: 0 for category in models.ACHIEVEMENT_CATEGORIES}
        for item in top_n((a.category for a in achievements), len(by_category), "category"):
            by_category[item["category"]] = item["count"]

        names = {
            str(a.student_id): a.student.user.full_name
            for a in achievements if a.student and a.student.user
        }
        top_students = [
            {"student_id": item["student_id"], "name": names.get(item["student_id"], ""), "count": item["count"]}
            for item in top_n((str(a.student_id) for a in achievements), 5, "student_id")
        ]

        with_data = len({a.student_id for a in achievements})
        return {
            "total": len(achievements),
            "by_category": by_category,
            "top_students": top_students,
            "students_with_achievements": with_data,
            "participation_rate": rate(with_data, self._student_count()),
        }

    def sanction_statistics(self) -> Dict[str, Any]:
        sanctions = self.db.query(models.Sanction).all()
        students = self._student_count()
        excused = sum(s.excused or 0 for s in sanctions)
        unexcused = sum(s.unexcused or 0 for s in sanctions)
        active = [a for s in sanctions for a in s.active_sanctions]
        ratio = self.settings.CRITICAL_ABSENCE_RATIO
        return {
            "total_excused": excused,
            "total_unexcused": unexcused,
            "total_absences": excused + unexcused,
            "average_absences_per_student": round_half_up((excused + unexcused) / students) if students else 0.0,
            "total_schoolo_remarks": sum(s.schoolo_remarks or 0 for s in sanctions),
            "active_sanctions": len(active),
            "students_with_active_sanctions": sum(1 for s in sanctions if s.active_sanctions),
            "sanctions_by_type": {item["type"]: item["count"] for item in top_n((a.type for a in active), 50, "type")},
            "students_above_critical": len(self.high_absence_students(ratio, strict=True)),
        }

    def high_absence_students(self, threshold: float = 0.8, strict: bool = False) -> List[Dict[str, Any]]:
        """Students whose absences reach threshold * max_allowed."""
        sanctions = self.db.query(models.Sanction).options(
            joinedload(models.Sanction.student).joinedload(models.Student.user)
        ).all()
        limit = Decimal(str(threshold))
        result = []
        for s in sanctions:
            total = s.total_absences
            bound = limit * Decimal(s.max_allowed)
            if (total > bound) if strict else (total >= bound and total > 0):
                user = s.student.user if s.student else None
                result.append({
                    "student_id": str(s.student_id),
                    "name": user.full_name if user else "",
                    "grade": s.student.grade if s.student else None,
                    "total_absences": total,
                    "max_allowed": s.max_allowed,
                    "absence_rate": rate(total, s.max_allowed),
                })
        return sorted(result, key=lambda r: (-r["absence_rate"], r["name"]))

    def event_statistics(self) -> Dict[str, Any]:
        now = utcnow()
        events = self.db.query(models.Event).all()
        participations = self.db.query(models.EventParticipation).all()
        by_status = {status: 0 for status in models.PARTICIPATION_STATUSES}
        for p in participations:
            by_status[p.status] = by_status.get(p.status, 0) + 1
        return {
            "total_events": len(events),
            "upcoming_events": sum(1 for e in events if e.start_date > now),
            "past_events": sum(1 for e in events if e.start_date <= now),
            "total_participations": len(participations),
            "participations_by_status": by_status,
            "attendance_rate": rate(by_status["attended"], len(participations)),
            "average_participants_per_event": round_half_up(len(participations) / len(events)) if events else 0.0,
        }

    def student_statistics(self) -> Dict[str, Any]:
        students = self.db.query(models.Student).all()
        df = pd.DataFrame(
            [{"grade": s.grade, "average_grade": s.average_grade} for s in students],
            columns=["grade", "average_grade"],
        )
        by_grade = {}
        if not df.empty:
            grouped = df.groupby("grade")["average_grade"].agg(["count", "mean"])
            for grade, row in grouped.sort_index().iterrows():
                by_grade[str(int(grade))] = {
                    "count": int(row["count"]),
                    "average_grade": round_half_up(row["mean"]),
                }
        return {
            "total": len(students),
            "by_grade": by_grade,
            "average_grade": mean(s.average_grade for s in students),
            "top_specializations": top_n((s.specialization for s in students), 10, "specialization"),
        }

    def portfolio_statistics(self) -> Dict[str, Any]:
        portfolios = self.db.query(models.Portfolio).all()
        with_mentor = sum(1 for p in portfolios if p.mentor_id)
        return {
            "total": len(portfolios),
            "with_mentor": with_mentor,
            "mentorship_rate": rate(with_mentor, len(portfolios)),
            "average_recommendations": mean(len(p.recommendations) for p in portfolios),
            "participation_rate": rate(len(portfolios), self._student_count()),
        }

    def dashboard(self) -> Dict[str, Any]:
        credits = self.credit_statistics()
        events = self.event_statistics()
        sanctions = self.sanction_statistics()
        return {
            "users": {
                role.value: self.db.query(models.User).filter(models.User.role == role.value).count()
                for role in models.UserRole
            },
            "students": self._student_count(),
            "credits": {
                "total": credits["total"],
                "pending": credits["by_status"]["pending"],
                "validation_rate": credits["validation_rate"],
            },
            "events": {
                "upcoming": events["upcoming_events"],
                "attendance_rate": events["attendance_rate"],
            },
            "absences": {
                "total": sanctions["total_absences"],
                "students_above_critical": sanctions["students_above_critical"],
            },
            "achievements": self.db.query(models.Achievement).count(),
            "goals": self.db.query(models.Goal).count(),
            "generated_at": utcnow().isoformat(),
        }
