import io
import os
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote
from xml.sax.saxutils import escape

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle
from sqlalchemy.orm import Session, joinedload

from config import get_settings
import models
from errors import NotFoundError, ValidationFailedError
from policy import enforce

logger = logging.getLogger(__name__)

REPORT_FORMATS = {
    "excel": ("xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
    "pdf": ("pdf", "application/pdf"),
}

PARTICIPATION_STATUS_LABELS = {
    "registered": "Регистриран",
    "confirmed": "Потвърден",
    "attended": "Присъствал",
    "cancelled": "Отказан",
}

CREDIT_STATUS_LABELS = {
    "pending": "Чакащ",
    "validated": "Валидиран",
    "rejected": "Отхвърлен",
}

ABSENCE_COLUMNS = [
    "Име на ученик", "Клас", "Специалност", "Извинени отсъствия", "Неизвинени отсъствия",
    "Общо отсъствия", "Макс. допустими", "Забележки в Школо", "Активни санкции", "Последна актуализация",
]

EVENT_COLUMNS = [
    "Име на ученик", "Имейл", "Клас", "Специалност", "Събитие", "Дата на събитие", "Място",
    "Организатор", "Статус", "Регистриран на", "Потвърден на", "Присъствал на",
]

FONT_NAME = "ReportFont"
FONT_CANDIDATES = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans.ttf",
    "/Library/Fonts/Arial Unicode.ttf",
    "C:\\Windows\\Fonts\\arial.ttf",
]

# (sheet name, heading, rows, columns)
Section = Tuple[str, str, List[Dict[str, Any]], List[str]]


def _fmt_date(value) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%d.%m.%Y %H:%M")
    if isinstance(value, date):
        return value.strftime("%d.%m.%Y")
    return str(value)


def content_disposition(filename: str) -> str:
    return f"attachment; filename=\"{filename}\"; filename*=UTF-8''{quote(filename)}"


def resolve_format(fmt: str) -> Tuple[str, str]:
    if fmt not in REPORT_FORMATS:
        raise ValidationFailedError.for_field("format", "Невалиден формат. Използвайте excel или pdf")
    return REPORT_FORMATS[fmt]


def date_range(column, start_date: Optional[date] = None, end_date: Optional[date] = None) -> list:
    """Filter conditions for an inclusive day range on a datetime column."""
    if start_date and end_date and start_date > end_date:
        raise ValidationFailedError.for_field("end_date", "Крайната дата не може да е преди началната")
    conditions = []
    if start_date:
        conditions.append(column >= datetime.combine(start_date, datetime.min.time()))
    if end_date:
        conditions.append(column < datetime.combine(end_date + timedelta(days=1), datetime.min.time()))
    return conditions


def _register_font(path: Optional[str]) -> Optional[str]:
    """Register a TTF with Cyrillic glyphs; the built-in Helvetica has none."""
    if FONT_NAME in pdfmetrics.getRegisteredFontNames():
        return FONT_NAME
    for candidate in [path] + FONT_CANDIDATES:
        if candidate and os.path.exists(candidate):
            try:
                pdfmetrics.registerFont(TTFont(FONT_NAME, candidate))
                return FONT_NAME
            except Exception as e:
                logger.warning("Could not load PDF font %s: %s", candidate, e)
    logger.warning("No Unicode font found for PDF reports, falling back to Helvetica")
    return None


def render_excel(sections: List[Section]) -> bytes:
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for sheet_name, _, rows, columns in sections:
            df = pd.DataFrame(rows, columns=columns)
            df.to_excel(writer, sheet_name=sheet_name[:31], index=False)
    buffer.seek(0)
    return buffer.getvalue()


def render_pdf(title: str, sections: List[Section], font_path: Optional[str] = None) -> bytes:
    buffer = io.BytesIO()
    font = _register_font(font_path)
    styles = getSampleStyleSheet()
    title_style, heading_style, body_style = styles["Title"], styles["Heading2"], styles["BodyText"]
    if font:
        for style in (title_style, heading_style, body_style):
            style.fontName = font

    doc = SimpleDocTemplate(
        buffer, pagesize=landscape(A4), leftMargin=28, rightMargin=28, topMargin=28, bottomMargin=28
    )
    elements = [
        Paragraph(escape(title), title_style),
        Paragraph(escape(f"Генериран на: {datetime.now().strftime('%d.%m.%Y %H:%M')}"), body_style),
        Spacer(1, 12),
    ]
    for _, heading, rows, columns in sections:
        if len(sections) > 1:
            elements.append(Paragraph(escape(heading), heading_style))
        if not rows:
            elements.append(Paragraph("Няма данни", body_style))
            elements.append(Spacer(1, 12))
            continue
        table_data = [columns] + [["" if row.get(c) is None else str(row.get(c)) for c in columns] for row in rows]
        table = Table(table_data, hAlign="LEFT", repeatRows=1)
        table_style = [
            ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
            ("FONTSIZE", (0, 0), (-1, -1), 7),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ]
        if font:
            table_style.append(("FONTNAME", (0, 0), (-1, -1), font))
        table.setStyle(TableStyle(table_style))
        elements.append(table)
        elements.append(Spacer(1, 12))

    doc.build(elements)
    pdf_value = buffer.getvalue()
    buffer.close()
    return pdf_value


class ReportService:
    """Builds the absence, event participation and per-student exports."""

    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings or get_settings()

    def _render(self, fmt: str, title: str, sections: List[Section], prefix: str) -> Tuple[bytes, str, str]:
        extension, media_type = resolve_format(fmt)
        if fmt == "excel":
            content = render_excel(sections)
        else:
            content = render_pdf(title, sections, self.settings.PDF_FONT_PATH)
        filename = f"{prefix}_{date.today().isoformat()}.{extension}"
        logger.info("Generated %s report %s (%d bytes)", fmt, filename, len(content))
        return content, media_type, filename

    def absence_rows(
        self,
        grade: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[Dict[str, Any]]:
        query = self.db.query(models.Student).options(
            joinedload(models.Student.user),
            joinedload(models.Student.sanction),
        )
        if grade is not None:
            query = query.filter(models.Student.grade == grade)
        if start_date or end_date:
            # Students without a sanction record have nothing in the period
            query = query.join(models.Sanction, models.Sanction.student_id == models.Student.id)
            query = query.filter(*date_range(models.Sanction.updated_at, start_date, end_date))
        rows = []
        for student in query.order_by(models.Student.grade).all():
            s = student.sanction
            excused = s.excused if s else 0
            unexcused = s.unexcused if s else 0
            rows.append({
                "Име на ученик": student.user.full_name,
                "Клас": student.grade,
                "Специалност": student.specialization,
                "Извинени отсъствия": excused,
                "Неизвинени отсъствия": unexcused,
                "Общо отсъствия": excused + unexcused,
                "Макс. допустими": s.max_allowed if s else self.settings.DEFAULT_MAX_ABSENCES,
                "Забележки в Школо": s.schoolo_remarks if s else 0,
                "Активни санкции": len(s.active_sanctions) if s else 0,
                "Последна актуализация": _fmt_date(s.updated_at) if s else "",
            })
        return sorted(rows, key=lambda r: (r["Клас"], r["Име на ученик"]))

    def absences_report(
        self,
        user: models.User,
        fmt: str,
        grade: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Tuple[bytes, str, str]:
        enforce(user, "report", "read")
        resolve_format(fmt)
        rows = self.absence_rows(grade, start_date, end_date)
        title = "Отчет за отсъствия и санкции"
        if grade is not None:
            title = f"{title} - {grade} клас"
        return self._render(fmt, title, [("Отсъствия", title, rows, ABSENCE_COLUMNS)], "absences_report")

    def _participation_row(self, p: models.EventParticipation) -> Dict[str, Any]:
        student, event = p.student, p.event
        return {
            "Име на ученик": student.user.full_name,
            "Имейл": student.user.email,
            "Клас": student.grade,
            "Специалност": student.specialization,
            "Събитие": event.title,
            "Дата на събитие": _fmt_date(event.start_date),
            "Място": event.location,
            "Организатор": event.organizer,
            "Статус": PARTICIPATION_STATUS_LABELS.get(p.status, p.status),
            "Регистриран на": _fmt_date(p.registered_at),
            "Потвърден на": _fmt_date(p.confirmed_at),
            "Присъствал на": _fmt_date(p.attended_at),
        }

    def events_report(
        self,
        user: models.User,
        fmt: str,
        event_id=None,
        status: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Tuple[bytes, str, str]:
        enforce(user, "report", "read")
        resolve_format(fmt)
        registered_in_period = date_range(models.EventParticipation.registered_at, start_date, end_date)
        query = self.db.query(models.EventParticipation).join(models.Event).options(
            joinedload(models.EventParticipation.event),
            joinedload(models.EventParticipation.student).joinedload(models.Student.user),
        )
        title = "Отчет за участия в събития"
        if event_id is not None:
            event = self.db.get(models.Event, event_id)
            if not event:
                raise NotFoundError("Събитието не е намерено")
            query = query.filter(models.EventParticipation.event_id == event.id)
            title = f"Участници в събитие: {event.title}"
        if status:
            if status not in models.PARTICIPATION_STATUSES:
                raise ValidationFailedError.for_field("status", "Невалиден статус на участие")
            query = query.filter(models.EventParticipation.status == status)
        if registered_in_period:
            query = query.filter(*registered_in_period)

        participations = query.order_by(models.Event.start_date.desc(), models.EventParticipation.registered_at).all()
        rows = [self._participation_row(p) for p in participations]
        return self._render(fmt, title, [("Участия", title, rows, EVENT_COLUMNS)], "events_report")

    def user_report(self, user: models.User, user_id, fmt: str) -> Tuple[bytes, str, str]:
        """Everything recorded for one student: absences, events, credits, achievements."""
        enforce(user, "report", "read_user")
        target = self.db.get(models.User, user_id)
        if not target:
            raise NotFoundError("Потребителят не е намерен")
        student = target.student
        if student is None:
            raise NotFoundError("Ученическият профил не е намерен")
        resolve_format(fmt)

        s = student.sanction
        absences = [{
            "Извинени отсъствия": s.excused if s else 0,
            "Неизвинени отсъствия": s.unexcused if s else 0,
            "Общо отсъствия": s.total_absences if s else 0,
            "Макс. допустими": s.max_allowed if s else self.settings.DEFAULT_MAX_ABSENCES,
            "Забележки в Школо": s.schoolo_remarks if s else 0,
        }]
        sanctions = [
            {
                "Вид": a.type,
                "Причина": a.reason,
                "От": _fmt_date(a.start_date),
                "До": _fmt_date(a.end_date),
                "Наложена от": a.issued_by,
            }
            for a in (s.active_sanctions if s else [])
        ]
        events = [
            {
                "Събитие": p.event.title,
                "Дата на събитие": _fmt_date(p.event.start_date),
                "Място": p.event.location,
                "Статус": PARTICIPATION_STATUS_LABELS.get(p.status, p.status),
                "Обратна връзка": p.feedback or "",
            }
            for p in sorted(student.participations, key=lambda p: p.event.start_date, reverse=True)
        ]
        credits = [
            {
                "Стълб": c.pillar,
                "Дейност": c.activity,
                "Описание": c.description,
                "Статус": CREDIT_STATUS_LABELS.get(c.status, c.status),
                "Дата": _fmt_date(c.created_at),
            }
            for c in sorted(student.credits, key=lambda c: c.created_at, reverse=True)
        ]
        achievements = [
            {
                "Категория": a.category,
                "Заглавие": a.title,
                "Дата": _fmt_date(a.date),
                "Място": a.place or "",
                "Издадено от": a.issuer or "",
            }
            for a in sorted(student.achievements, key=lambda a: a.date, reverse=True)
        ]

        title = f"Отчет за ученик: {target.full_name} ({student.grade} клас, {student.specialization})"
        sections: List[Section] = [
            ("Отсъствия", "Отсъствия", absences, list(absences[0].keys())),
            ("Санкции", "Активни санкции", sanctions, ["Вид", "Причина", "От", "До", "Наложена от"]),
            ("Събития", "Участия в събития",
             events, ["Събитие", "Дата на събитие", "Място", "Статус", "Обратна връзка"]),
            ("Кредити", "Кредити", credits, ["Стълб", "Дейност", "Описание", "Статус", "Дата"]),
            ("Постижения", "Постижения",
             achievements, ["Категория", "Заглавие", "Дата", "Място", "Издадено от"]),
        ]
        return self._render(fmt, title, sections, f"student_report_{target.id}")
