"""
Generative-AI flows.

Each flow renders a prompt from plain records, asks Gemini for JSON that
matches a pydantic schema, and returns the parsed model. Callers never see
AI errors: any failure is logged and the canned "unavailable" payload is
returned instead.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Type, TypeVar

from google import genai
from google.genai import types
from pydantic import BaseModel

import config
from schemas import (
    AttendanceAnalysisInputItem,
    AttendanceAnalysisOutput,
    EmailDraftOutput,
    GradeAnalysisInputItem,
    GradeAnalysisOutput,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_genai_client = None


def get_genai_client():
    global _genai_client
    if _genai_client is None:
        api_key = os.getenv("GOOGLE_GENAI_API_KEY")
        if not api_key:
            raise RuntimeError("GOOGLE_GENAI_API_KEY is not set")
        _genai_client = genai.Client(api_key=api_key)
    return _genai_client


def generate_structured(prompt: str, output_model: Type[T]) -> T:
    client = get_genai_client()
    response = client.models.generate_content(
        model=config.GENAI_MODEL,
        contents=prompt,
        config=types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=output_model,
        ),
    )
    if isinstance(response.parsed, output_model):
        return response.parsed
    if not response.text:
        raise ValueError("The AI model did not return a valid response.")
    return output_model.model_validate_json(response.text)


# ==================== GRADE ANALYSIS ====================

GRADE_ANALYSIS_PROMPT = """You are an encouraging and insightful academic advisor. Analyze the following list of student grades.

Provide a brief, positive summary of their performance. Then identify their strengths (courses with high grades) and suggest areas where they could improve (courses with lower grades). Keep the tone supportive and motivational.

Here are the grades:
{grades}
"""

GRADES_EMPTY = GradeAnalysisOutput(
    overallSummary="No grades are available yet to analyze. Keep up the good work and your grades will appear here as they are entered!",
    strengths=[],
    areasForImprovement=[],
)

GRADES_UNAVAILABLE = GradeAnalysisOutput(
    overallSummary="AI analysis is currently unavailable. Please check your API key or try again later.",
    strengths=[],
    areasForImprovement=[],
)


def analyze_grades(grades: List[Dict[str, Any]]) -> GradeAnalysisOutput:
    items = [GradeAnalysisInputItem(courseName=g["courseName"], grade=g["grade"]) for g in grades]
    if not items:
        return GRADES_EMPTY

    prompt = GRADE_ANALYSIS_PROMPT.format(
        grades="\n".join(f"- {item.courseName}: {item.grade}" for item in items)
    )
    try:
        return generate_structured(prompt, GradeAnalysisOutput)
    except Exception as e:
        logger.error(f"[analyze_grades] Gemini prompt failed: {e}")
        return GRADES_UNAVAILABLE


# ==================== ATTENDANCE ANALYSIS ====================

ATTENDANCE_ANALYSIS_PROMPT = """You are an expert academic data analyst reviewing a classroom's attendance records for a period. Give the faculty member insightful, actionable feedback.

- Overall summary: a brief, high-level summary of attendance, with the overall percentage if possible and the general trend.
- Key observations: specific, noteworthy patterns, such as a student who is repeatedly absent on one weekday, a date with unusually low attendance, students with perfect attendance, or students who tend to be absent together.
- Actionable suggestions: a few concrete, supportive steps, such as reaching out to students below 70% attendance or acknowledging students with excellent attendance.

Keep the tone professional, data-driven and supportive. Do not invent data. Base the analysis strictly on these records:
{records}
"""

ATTENDANCE_EMPTY = AttendanceAnalysisOutput(
    overallSummary="No attendance records were provided for analysis.",
    keyObservations=[],
    actionableSuggestions=[],
)

ATTENDANCE_UNAVAILABLE = AttendanceAnalysisOutput(
    overallSummary="AI analysis for attendance is currently unavailable. Please check the API key or try again later.",
    keyObservations=[],
    actionableSuggestions=[],
)


def analyze_attendance(records: List[Dict[str, Any]]) -> AttendanceAnalysisOutput:
    items = [
        AttendanceAnalysisInputItem(
            date=r["date"],
            studentName=r.get("studentName") or r["studentId"],
            status=r["status"],
        )
        for r in records
    ]
    if not items:
        return ATTENDANCE_EMPTY

    prompt = ATTENDANCE_ANALYSIS_PROMPT.format(
        records="\n".join(
            f"- Date: {item.date}, Student: {item.studentName}, Status: {item.status}" for item in items
        )
    )
    try:
        return generate_structured(prompt, AttendanceAnalysisOutput)
    except Exception as e:
        logger.error(f"[analyze_attendance] Gemini prompt failed: {e}")
        return ATTENDANCE_UNAVAILABLE


# ==================== BULK EMAIL DRAFTING ====================

EMAIL_DRAFT_PROMPT = """You write announcements for a university administration office.

Draft an email about the topic below for the stated audience. Return a short subject line and an HTML body using only <p>, <ul>, <li> and <strong> tags. Be clear, polite and concise. Do not invent dates, names or figures that are not in the topic.

Audience: {audience}
Topic: {topic}
"""


def email_draft_unavailable(topic: str) -> EmailDraftOutput:
    return EmailDraftOutput(
        subject=topic.strip()[:120],
        body="<p>AI drafting is currently unavailable. Please write the message manually.</p>",
    )


def draft_bulk_email(topic: str, audience: Optional[str] = None) -> EmailDraftOutput:
    prompt = EMAIL_DRAFT_PROMPT.format(audience=audience or "all users", topic=topic.strip())
    try:
        return generate_structured(prompt, EmailDraftOutput)
    except Exception as e:
        logger.error(f"[draft_bulk_email] Gemini prompt failed: {e}")
        return email_draft_unavailable(topic)
