"""Patient-facing reports built from doctor visits.

``generate_health_report`` asks the text generation service for an HTML
report and parses whatever comes back defensively.  Output is accepted either
as a JSON object with the four section keys (optionally wrapped in a Markdown
code fence) or as HTML with ``<h3>`` section headings.  Anything else, and
any generation error, yields the templated report instead so the patient
always gets a usable page.

The diagnosis health score and the visit assistant chat degrade the same way:
a reply that cannot be used gives the neutral score or a canned answer.
"""

from __future__ import annotations

import calendar
import html
import json
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import structlog

from healthtracker import openai_client
from healthtracker.errors import GenerationError
from healthtracker.observability import REPORT_FALLBACKS
from healthtracker.store import VisitRecord
from healthtracker.time_utils import isoformat_utc, parse_date, utc_now

logger = structlog.get_logger(__name__)

REPORT_SECTIONS = {
    "currentStatus": "CURRENT STATUS",
    "healthSummary": "HEALTH SUMMARY",
    "treatmentPlan": "TREATMENT PLAN",
    "medicationAnalysis": "MEDICATION ANALYSIS",
}

EXPORT_FORMAT_VERSION = "1.0"

_FENCE_RE = re.compile(r"^```(?:json|html)?\s*(.*?)\s*```$", re.S | re.I)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.S)


@dataclass(frozen=True)
class HealthReport:
    current_status: str
    health_summary: str
    treatment_plan: str
    medication_analysis: str
    source: str = "ai"

    def to_dict(self) -> Dict[str, str]:
        return {
            "currentStatus": self.current_status,
            "healthSummary": self.health_summary,
            "treatmentPlan": self.treatment_plan,
            "medicationAnalysis": self.medication_analysis,
            "source": self.source,
        }

    @classmethod
    def from_sections(cls, sections: Dict[str, str], *, source: str) -> "HealthReport":
        return cls(
            current_status=sections["currentStatus"],
            health_summary=sections["healthSummary"],
            treatment_plan=sections["treatmentPlan"],
            medication_analysis=sections["medicationAnalysis"],
            source=source,
        )


def build_report_prompt(visits: Sequence[VisitRecord]) -> str:
    payload = [dict(visit.fields) for visit in visits]
    keys = ", ".join(REPORT_SECTIONS)
    return (
        "Analyze these doctor visits and write a patient-friendly health report.\n"
        f"Respond with a JSON object with the keys {keys}; each value is an HTML fragment.\n\n"
        f"Medical visits data:\n{json.dumps(payload, indent=2, default=str)}"
    )


def _strip_fence(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    return match.group(1) if match else stripped


def _sections_from_json(text: str) -> Optional[Dict[str, str]]:
    candidates = [text]
    match = _JSON_OBJECT_RE.search(text)
    if match and match.group(0) != text:
        candidates.append(match.group(0))
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except (TypeError, json.JSONDecodeError):
            continue
        if isinstance(data, dict):
            return {key: data.get(key) for key in REPORT_SECTIONS}
    return None


def _sections_from_html(text: str) -> Dict[str, Optional[str]]:
    sections: Dict[str, Optional[str]] = {}
    for key, heading in REPORT_SECTIONS.items():
        match = re.search(rf"<h3>\s*{heading}\s*</h3>(.*?)(?=<h3>|$)", text, re.S | re.I)
        sections[key] = match.group(1).strip() if match else None
    return sections


def parse_report_text(text: str) -> Dict[str, str]:
    """Extract the report sections from generated *text*.

    Raises :class:`GenerationError` when any section is missing or empty.
    """

    if not isinstance(text, str) or not text.strip():
        raise GenerationError("Generated report is empty")
    body = _strip_fence(text)
    sections = _sections_from_json(body)
    if sections is None:
        sections = _sections_from_html(body)
    missing = [key for key, value in sections.items() if not isinstance(value, str) or not value.strip()]
    if missing:
        raise GenerationError(f"Generated report missing section(s): {', '.join(missing)}")
    return {key: value.strip() for key, value in sections.items()}


def template_report(visits: Sequence[VisitRecord]) -> HealthReport:
    """Return the default report used when generation is unavailable."""

    latest = visits[0].fields if visits else {}
    doctor = html.escape(str(latest.get("doctor_name") or "your healthcare provider"))
    when = html.escape(str(latest.get("visit_date") or "your last visit"))
    diagnosis = html.escape(str(latest.get("diagnosis") or "your reported symptoms"))
    return HealthReport(
        current_status=(
            f"<p>Based on your most recent visit with Dr. {doctor} on {when}, "
            "your current health status appears to be stable.</p>"
            f"<p>The primary concerns identified during this visit were related to {diagnosis}.</p>"
            "<p>Continued monitoring is recommended.</p>"
        ),
        health_summary=(
            "<p>Your medical history shows regular check-ups, which is excellent for preventive care.</p>"
            "<ul>"
            "<li><strong>Regular follow-ups:</strong> Continue with scheduled appointments</li>"
            "<li><strong>Medication adherence:</strong> Take prescribed medications as directed</li>"
            "<li><strong>Lifestyle factors:</strong> Maintain a balanced diet and regular exercise</li>"
            "</ul>"
        ),
        treatment_plan=(
            "<ol>"
            "<li>Continue current medications as prescribed</li>"
            "<li>Attend scheduled follow-up appointments</li>"
            "<li>Report any changes in symptoms to your healthcare provider</li>"
            "</ol>"
            "<p><strong>Note:</strong> These are general recommendations. "
            "Please consult with your healthcare provider for personalized advice.</p>"
        ),
        medication_analysis=(
            "<ul>"
            "<li>Take medications at the same time each day</li>"
            "<li>Do not discontinue any medications without consulting your doctor</li>"
            "<li>Keep an updated list of all medications, including supplements</li>"
            "</ul>"
        ),
        source="template",
    )


def generate_health_report(
    visits: Sequence[VisitRecord],
    generate: Optional[Callable[[str], str]] = None,
) -> HealthReport:
    """Return an AI written report, or the templated one if generation fails."""

    generator = generate or openai_client.generate
    try:
        text = generator(build_report_prompt(visits))
        sections = parse_report_text(text)
    except Exception as exc:
        REPORT_FALLBACKS.labels(kind="health_report").inc()
        logger.warning("health_report_fallback", error=str(exc), error_type=type(exc).__name__)
        return template_report(visits)
    return HealthReport.from_sections(sections, source="ai")


# ---------------------------------------------------------------------------
# Health score
# ---------------------------------------------------------------------------

DEFAULT_HEALTH_SCORE = 50

_SCORE_RE = re.compile(r"score[\"\s:]+(\d+)", re.I)
_ANALYSIS_RE = re.compile(r"analysis[\"\s]*:\s*\"?([^\"\n]+)", re.I)


@dataclass(frozen=True)
class HealthScore:
    score: int
    analysis: str
    trends: str = "No trends detected"
    recommendations: str = "Follow up with your doctor"
    source: str = "ai"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "analysis": self.analysis,
            "trends": self.trends,
            "recommendations": self.recommendations,
            "source": self.source,
        }


def build_health_score_prompt(diagnosis: str, details: Optional[Mapping[str, Any]] = None) -> str:
    return (
        "Evaluate this diagnosis from a patient's health record and assign a health score "
        "from 1 (critical) to 100 (perfect health).\n"
        "Minor infections score 70-85, controlled chronic conditions 60-75, acute but treatable "
        "conditions 40-60, serious conditions 20-40, life-threatening conditions 1-20 and "
        "normal findings 85-100.\n\n"
        f"Diagnosis: {diagnosis}\n"
        f"Additional context: {json.dumps(dict(details or {}), default=str)}\n\n"
        'Return only a JSON object: {"score": <1-100>, "analysis": "<2-3 sentences>", '
        '"trends": "<health direction>", "recommendations": "<brief advice>"}'
    )


def _clamp_score(value: Any) -> int:
    return max(1, min(100, int(value)))


def parse_health_score(text: str) -> HealthScore:
    """Read a score from generated *text*.

    A JSON object is used as is.  Anything else is scanned for ``score: N``
    and ``analysis: ...``; a reply without a score gets
    :data:`DEFAULT_HEALTH_SCORE`.
    """

    body = _strip_fence(text or "")
    match = _JSON_OBJECT_RE.search(body)
    if match:
        try:
            data = json.loads(match.group(0))
            return HealthScore(
                score=_clamp_score(data["score"]),
                analysis=str(data.get("analysis") or "Analysis not available"),
                trends=str(data.get("trends") or "No trends detected"),
                recommendations=str(data.get("recommendations") or "Follow up with your doctor"),
            )
        except (TypeError, ValueError, KeyError, AttributeError):
            pass

    score_match = _SCORE_RE.search(body)
    analysis_match = _ANALYSIS_RE.search(body)
    return HealthScore(
        score=_clamp_score(score_match.group(1)) if score_match else DEFAULT_HEALTH_SCORE,
        analysis=analysis_match.group(1).strip() if analysis_match else "Analysis not available",
        source="parsed",
    )


def score_diagnosis(
    diagnosis: str,
    details: Optional[Mapping[str, Any]] = None,
    generate: Optional[Callable[[str], str]] = None,
) -> HealthScore:
    """Score *diagnosis*; generation failures give the neutral default score."""

    generator = generate or openai_client.generate
    try:
        text = generator(build_health_score_prompt(diagnosis, details))
    except Exception as exc:
        REPORT_FALLBACKS.labels(kind="health_score").inc()
        logger.warning("health_score_fallback", error=str(exc), error_type=type(exc).__name__)
        return HealthScore(
            score=DEFAULT_HEALTH_SCORE,
            analysis="Analysis not available",
            source="template",
        )
    return parse_health_score(text)


# ---------------------------------------------------------------------------
# Visit assistant chat
# ---------------------------------------------------------------------------

CHAT_HISTORY_LIMIT = 10
CHAT_FALLBACK_REPLY = (
    "Sorry, I can't answer right now. Please try again in a moment, "
    "and contact your healthcare provider for anything urgent."
)

ChatMessages = List[Dict[str, str]]


@dataclass(frozen=True)
class ChatReply:
    content: str
    source: str = "ai"

    def to_dict(self) -> Dict[str, str]:
        return {"content": self.content, "source": self.source}


def visits_context(visits: Sequence[VisitRecord]) -> str:
    """Summarise *visits* as plain text for the assistant's system prompt."""

    if not visits:
        return "The user has no doctor visits in their health record."
    lines = ["The user has the following doctor visits in their health record:"]
    for visit in visits:
        fields = visit.fields
        lines.append(
            f"Visit on {fields.get('visit_date') or 'an unknown date'} with "
            f"{fields.get('doctor_name') or 'an unknown doctor'} "
            f"({fields.get('specialty') or 'No specialty'}):\n"
            f" - Reason: {fields.get('reason') or 'Not specified'}\n"
            f" - Diagnosis: {fields.get('diagnosis') or 'Not specified'}\n"
            f" - Prescription: {fields.get('prescription') or 'None'}\n"
            f" - Follow-up: {fields.get('follow_up_date') or 'None'}\n"
            f" - Notes: {fields.get('notes') or 'None'}"
        )
    return "\n\n".join(lines)


def build_chat_messages(messages: Sequence[Mapping[str, Any]], context: str) -> ChatMessages:
    """Keep the last :data:`CHAT_HISTORY_LIMIT` turns behind a system prompt.

    Raises ``ValueError`` unless the conversation ends with a user message.
    """

    history = [
        {"role": str(m["role"]), "content": str(m.get("content") or "")}
        for m in messages
        if m.get("role") in ("user", "assistant")
    ][-CHAT_HISTORY_LIMIT:]
    if not history or history[-1]["role"] != "user":
        raise ValueError("Conversation must end with a user message")
    system = (
        "You are a helpful health assistant with access to the user's doctor visit history. "
        "Use it to give personalised information, but do not make diagnoses or replace "
        "professional medical advice.\n\n"
        f"Doctor visits context:\n{context}"
    )
    return [{"role": "system", "content": system}, *history]


def chat_reply(
    messages: Sequence[Mapping[str, Any]],
    context: str,
    chat: Optional[Callable[[ChatMessages], str]] = None,
) -> ChatReply:
    prompt = build_chat_messages(messages, context)
    complete = chat or openai_client.call_openai
    try:
        return ChatReply(content=complete(prompt))
    except Exception as exc:
        REPORT_FALLBACKS.labels(kind="chat").inc()
        logger.warning("chat_reply_fallback", error=str(exc), error_type=type(exc).__name__)
        return ChatReply(content=CHAT_FALLBACK_REPLY, source="template")


# ---------------------------------------------------------------------------
# Monthly email report
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MonthlyReport:
    subject: str
    html: str
    period_start: date
    period_end: date
    visit_count: int


def previous_month_range(today: Optional[date] = None) -> tuple[date, date]:
    """Return the first and last day of the month 30 days before *today*."""

    reference = (today or utc_now().date()) - timedelta(days=30)
    last_day = calendar.monthrange(reference.year, reference.month)[1]
    return reference.replace(day=1), reference.replace(day=last_day)


def _section(title: str, value: Any) -> str:
    text = html.escape(str(value)) if value else "Not specified"
    return f'<div class="section"><span class="section-title">{title}:</span> {text}</div>'


def build_monthly_report(
    visits: Sequence[VisitRecord],
    *,
    today: Optional[date] = None,
    include_details: bool = False,
    include_prescriptions: bool = False,
) -> MonthlyReport:
    start, end = previous_month_range(today)
    monthly: List[VisitRecord] = []
    for visit in visits:
        visit_day = parse_date(visit.fields.get("visit_date"))
        if visit_day is not None and start <= visit_day <= end:
            monthly.append(visit)

    parts: List[str] = [
        "<html><body>",
        "<h1>Your Monthly Health Report</h1>",
        f"<p>Here's a summary of your doctor visits from {start:%B %d, %Y} to {end:%B %d, %Y}.</p>",
        f"<p>Total visits this month: <strong>{len(monthly)}</strong></p>",
    ]
    if not monthly:
        parts.append("<p>You had no doctor visits during this period.</p>")
    else:
        parts.append("<h2>Visit Details</h2>")
        for visit in monthly:
            fields = visit.fields
            parts.append('<div class="visit">')
            parts.append(f"<h3>{html.escape(str(fields.get('doctor_name') or 'Unknown doctor'))}</h3>")
            parts.append(f'<p class="visit-date">{html.escape(str(fields.get("visit_date")))}</p>')
            parts.append(_section("Specialty", fields.get("specialty")))
            parts.append(_section("Reason for Visit", fields.get("reason")))
            parts.append(_section("Diagnosis", fields.get("diagnosis")))
            if include_prescriptions and fields.get("prescription"):
                parts.append(_section("Prescription", fields.get("prescription")))
            if include_details and fields.get("notes"):
                parts.append(_section("Notes", fields.get("notes")))
            if fields.get("follow_up_date"):
                parts.append(_section("Follow-up Date", fields.get("follow_up_date")))
            parts.append("</div>")
    generated = utc_now().date()
    parts.append(
        f'<div class="footer"><p>This report was automatically generated on {generated:%B %d, %Y}.</p>'
        "<p>Remember to schedule your regular check-ups!</p></div>"
    )
    parts.append("</body></html>")

    return MonthlyReport(
        subject=f"Your Health Report for {start:%B %Y}",
        html="\n".join(parts),
        period_start=start,
        period_end=end,
        visit_count=len(monthly),
    )


def export_visits(owner_id: str, visits: Sequence[VisitRecord]) -> Dict[str, Any]:
    """Return a JSON-serialisable backup of *visits*."""

    return {
        "exported_at": isoformat_utc(utc_now()),
        "user_id": owner_id,
        "visits": [visit.to_dict() for visit in visits],
        "version": EXPORT_FORMAT_VERSION,
    }


__all__ = [
    "CHAT_FALLBACK_REPLY",
    "CHAT_HISTORY_LIMIT",
    "ChatReply",
    "HealthReport",
    "HealthScore",
    "MonthlyReport",
    "REPORT_SECTIONS",
    "build_chat_messages",
    "build_health_score_prompt",
    "build_monthly_report",
    "build_report_prompt",
    "chat_reply",
    "export_visits",
    "generate_health_report",
    "parse_health_score",
    "parse_report_text",
    "previous_month_range",
    "score_diagnosis",
    "template_report",
    "visits_context",
]
