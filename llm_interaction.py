import json
import math
import re
import time
from functools import lru_cache
from statistics import mean
from typing import Any, Iterable

import structlog
from openai import AsyncOpenAI

from settings import get_settings
from schemas import (
    Feedback,
    Question,
    SessionReport,
    QUESTION_TYPES,
    READINESS_LEVELS,
    TONES,
)


logger = structlog.get_logger(__name__)


class LLMError(Exception):
    """Raised when the text-generation call cannot produce a usable payload."""


# --- Application Info sent with every request ---
APP_NAME = "Interview Coach"

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

QUESTION_COUNT = 8

FALLBACK_QUESTIONS = [
    Question(
        id="fallback-1",
        text="Tell me about your experience with the technologies mentioned in this job description.",
        type="technical",
        category="Technical Experience",
    ),
    Question(
        id="fallback-2",
        text="Describe a challenging project you worked on and how you overcame obstacles.",
        type="behavioral",
        category="Problem Solving",
    ),
    Question(
        id="fallback-3",
        text="How do you stay current with industry trends and technologies?",
        type="technical",
        category="Continuous Learning",
    ),
    Question(
        id="fallback-4",
        text="Give an example of a time when you had to work with a difficult team member.",
        type="behavioral",
        category="Teamwork",
    ),
]

FALLBACK_FEEDBACK = Feedback(
    clarity=6,
    tone="neutral",
    keywords_missed=[],
    grammar_mistakes=[],
    suggestions=[
        "Try to be more specific with examples",
        "Structure your answer with a clear beginning, middle, and end",
    ],
    overall_score=60,
    strengths=["Provided a response to the question"],
    areas_for_improvement=[
        "Add more specific examples",
        "Consider using the STAR method for behavioral questions",
    ],
)

FALLBACK_REPORT_STRENGTHS = ["Completed all questions", "Showed engagement with the process"]
FALLBACK_REPORT_IMPROVEMENTS = ["Provide more specific examples", "Improve answer structure"]
FALLBACK_REPORT_RECOMMENDATIONS = [
    "Practice the STAR method",
    "Research the company more thoroughly",
    "Prepare specific examples beforehand",
]

# --- Structured Output Examples ---
QUESTIONS_OUTPUT_EXAMPLE = """{
    "questions": [
        {
            "id": "q1",
            "text": "Walk me through how you would design a rate limiter for a public API.",
            "type": "technical",
            "category": "System Design"
        },
        {
            "id": "q2",
            "text": "Tell me about a time you disagreed with a teammate on a technical decision.",
            "type": "behavioral",
            "category": "Collaboration"
        }
    ]
}"""

FEEDBACK_OUTPUT_EXAMPLE = """{
    "clarity": 8,
    "tone": "confident",
    "keywords_missed": ["Kubernetes", "observability"],
    "grammar_mistakes": ["\\"we was\\" should be \\"we were\\""],
    "suggestions": ["Quantify the latency improvement you mentioned"],
    "overall_score": 74,
    "strengths": ["Clear problem statement"],
    "areas_for_improvement": ["Explain the trade-offs you considered"],
    "better_answer": "A concise, improved version of the candidate's answer."
}"""

REPORT_OUTPUT_EXAMPLE = """{
    "overall_performance": 72,
    "key_strengths": ["Structured answers", "Relevant examples"],
    "priority_improvements": ["Quantify results", "Cover system design trade-offs"],
    "recommendations": ["Rehearse two STAR stories per competency"],
    "interview_readiness": "Good"
}"""
QUESTIONS_OUTPUT_EXAMPLE = re.sub(r"\n +", "", QUESTIONS_OUTPUT_EXAMPLE).replace("\n", "")
FEEDBACK_OUTPUT_EXAMPLE = re.sub(r"\n +", "", FEEDBACK_OUTPUT_EXAMPLE).replace("\n", "")
REPORT_OUTPUT_EXAMPLE = re.sub(r"\n +", "", REPORT_OUTPUT_EXAMPLE).replace("\n", "")

SYSTEM_PROMPT = (
    "You are an expert interview coach. You always respond with a single JSON "
    "object and nothing else: no markdown fences, no commentary."
)


@lru_cache()
def get_client() -> AsyncOpenAI:
    """Build the async client on first use so a missing key degrades to fallbacks."""
    settings = get_settings()
    if not settings.gemini_api_key:
        raise LLMError(
            "GEMINI_API_KEY not found. Ensure it's set in your environment or .env file."
        )
    return AsyncOpenAI(
        base_url=settings.ai_base_url,
        api_key=settings.gemini_api_key,
        timeout=settings.ai_timeout_seconds,
        max_retries=settings.ai_max_retries,
        default_headers={"X-Title": APP_NAME},
    )


def _request_options() -> dict:
    """Fixed decoding parameters shared by every gateway call."""
    settings = get_settings()
    options = {
        "model": settings.ai_model,
        "temperature": settings.ai_temperature,
        "top_p": settings.ai_top_p,
        "max_tokens": settings.ai_max_output_tokens,
    }
    if settings.ai_safety_filtering:
        options["extra_body"] = {"extra_body": {"google": {"safety_settings": SAFETY_SETTINGS}}}
    return options


async def call_llm(system_prompt: str, user_prompt: str, task: str) -> str:
    """Send one chat completion and return the text of the first choice."""

    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]

    logger.debug("Calling text-generation endpoint", task=task, prompt_length=len(user_prompt))
    response = await get_client().chat.completions.create(
        messages=messages,
        **_request_options(),
    )
    if not response.choices or response.choices[0].message is None:
        raise LLMError("AI response did not contain any candidates")

    content = response.choices[0].message.content
    if not content or not content.strip():
        raise LLMError("AI response candidate had no text content")
    return content


# --- Response decoding --- #


def extract_json_object(text: str) -> dict:
    """Parse the outermost `{...}` span (first `{` to last `}`) of a free-form reply."""
    match = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if not match:
        raise LLMError("No JSON object found in AI response")
    payload = json.loads(match.group(0))
    if not isinstance(payload, dict):
        raise LLMError("AI response JSON is not an object")
    return payload


def round_half_up(value: float) -> int:
    """Round halves up (72.5 -> 73); built-in round() would give 72."""
    return int(math.floor(value + 0.5))


def clamp_number(value: Any, low: int, high: int, default: int) -> int:
    """Round and clamp a number (or numeric string) into [low, high]."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return default
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return default
    return max(low, min(high, round_half_up(value)))


def pick_choice(value: Any, allowed: Iterable[str], default: str) -> str:
    return value if isinstance(value, str) and value in allowed else default


def string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def decode_questions(payload: dict) -> list[Question]:
    raw_questions = payload.get("questions")
    if not isinstance(raw_questions, list):
        raise LLMError("Invalid response structure: missing questions array")

    stamp = int(time.time() * 1000)
    seen_ids: set[str] = set()
    questions: list[Question] = []
    for index, item in enumerate(raw_questions):
        if not isinstance(item, dict):
            continue
        text = item.get("text")
        if not isinstance(text, str) or not text.strip():
            continue
        question_id = item.get("id")
        if not isinstance(question_id, str) or not question_id.strip() or question_id in seen_ids:
            question_id = f"question-{stamp}-{index}"
        seen_ids.add(question_id)
        category = item.get("category")
        questions.append(
            Question(
                id=question_id,
                text=text.strip(),
                type=pick_choice(item.get("type"), QUESTION_TYPES, "behavioral"),
                category=category.strip() if isinstance(category, str) and category.strip() else "General",
            )
        )

    if not questions:
        raise LLMError("AI response contained no usable questions")
    return questions


def decode_feedback(payload: dict) -> Feedback:
    better_answer = payload.get("better_answer")
    return Feedback(
        clarity=clamp_number(payload.get("clarity"), 1, 10, 5),
        tone=pick_choice(payload.get("tone"), TONES, "neutral"),
        keywords_missed=string_list(payload.get("keywords_missed")),
        grammar_mistakes=string_list(payload.get("grammar_mistakes")),
        suggestions=string_list(payload.get("suggestions")),
        overall_score=clamp_number(payload.get("overall_score"), 1, 100, 50),
        strengths=string_list(payload.get("strengths")),
        areas_for_improvement=string_list(payload.get("areas_for_improvement")),
        better_answer=better_answer.strip()
        if isinstance(better_answer, str) and better_answer.strip()
        else None,
    )


def decode_session_report(payload: dict) -> SessionReport:
    return SessionReport(
        overall_performance=clamp_number(payload.get("overall_performance"), 1, 100, 50),
        key_strengths=string_list(payload.get("key_strengths")),
        priority_improvements=string_list(payload.get("priority_improvements")),
        recommendations=string_list(payload.get("recommendations")),
        interview_readiness=pick_choice(
            payload.get("interview_readiness"), READINESS_LEVELS, "Needs Improvement"
        ),
    )


def fallback_readiness(score: float) -> str:
    # Never "Excellent": the fallback only has per-answer scores to go on.
    if score >= 80:
        return "Good"
    if score >= 60:
        return "Needs Improvement"
    return "Not Ready"


def fallback_session_report(scores: list[int]) -> SessionReport:
    average = mean(scores) if scores else 0
    return SessionReport(
        overall_performance=round_half_up(average),
        key_strengths=list(FALLBACK_REPORT_STRENGTHS),
        priority_improvements=list(FALLBACK_REPORT_IMPROVEMENTS),
        recommendations=list(FALLBACK_REPORT_RECOMMENDATIONS),
        interview_readiness=fallback_readiness(average),
    )


# --- Gateway operations --- #


async def generate_questions(job_description: str) -> list[Question]:
    """Generate tailored questions; never fails, never returns an empty list."""

    user_prompt = f"""Analyze the job description below and write exactly {QUESTION_COUNT} interview questions tailored to it.

# Job Description
{job_description}

Requirements:
- {QUESTION_COUNT // 2} technical questions about the specific skills, technologies and responsibilities in the posting
- {QUESTION_COUNT // 2} behavioral questions assessing soft skills and fit for this role
- "type" must be either "technical" or "behavioral"
- "category" names the skill or area the question assesses
- Give every question a unique "id"

Make the questions challenging but fair and designed to reveal the candidate's real experience level.
Return ONLY JSON shaped like this example: {QUESTIONS_OUTPUT_EXAMPLE}"""

    try:
        text = await call_llm(SYSTEM_PROMPT, user_prompt, task="question_generation")
        questions = decode_questions(extract_json_object(text))
    except Exception as exc:
        logger.warning("Question generation failed; using fallback questions", exc_info=exc)
        return [question.model_copy() for question in FALLBACK_QUESTIONS]

    logger.info("Generated interview questions", count=len(questions))
    return questions


async def get_feedback(job_description: str, question: str, answer: str) -> Feedback:
    """Score one answer; any failure yields the neutral fallback feedback."""

    user_prompt = f"""Evaluate the candidate's answer to an interview question.

# Job Description
{job_description}

# Interview Question
{question}

# Candidate Answer
{answer}

Assess:
1. clarity (integer 1-10): how well structured and understandable the answer is
2. tone: exactly one of "confident", "weak", "neutral"
3. keywords_missed: important terms from the job description the answer did not mention
4. grammar_mistakes: grammatical errors in the answer, quoted with a correction
5. suggestions: specific, actionable advice to improve the answer
6. overall_score (integer 1-100): holistic quality of the answer
7. strengths: what the candidate did well
8. areas_for_improvement: what needs the most work
9. better_answer: a short improved version of the answer

Be constructive and specific.
Return ONLY JSON shaped like this example: {FEEDBACK_OUTPUT_EXAMPLE}"""

    try:
        text = await call_llm(SYSTEM_PROMPT, user_prompt, task="answer_feedback")
        feedback = decode_feedback(extract_json_object(text))
    except Exception as exc:
        logger.warning("Answer feedback failed; using fallback feedback", exc_info=exc)
        return FALLBACK_FEEDBACK.model_copy(deep=True)

    logger.info("Scored answer", overall_score=feedback.overall_score, clarity=feedback.clarity)
    return feedback


async def generate_session_report(
    job_description: str, items: list[tuple[str, str, Feedback]]
) -> SessionReport:
    """Summarize a whole session from its (question, answer, feedback) triples."""

    scores = [feedback.overall_score for _, _, feedback in items]
    if not items:
        logger.warning("Session report requested without scored answers")
        return fallback_session_report(scores)

    session_data = "\n\n".join(
        f"Question {number}: {question}\nAnswer: {answer}\nIndividual Score: {feedback.overall_score}/100"
        for number, (question, answer, feedback) in enumerate(items, start=1)
    )
    user_prompt = f"""Analyze this complete interview practice session.

# Job Description
{job_description}

# Session
{session_data}

Report:
1. overall_performance (integer 1-100): performance across all answers
2. key_strengths: the top 3-4 strengths shown across the answers
3. priority_improvements: the most important areas to work on next
4. recommendations: specific, actionable preparation advice
5. interview_readiness: exactly one of "Excellent", "Good", "Needs Improvement", "Not Ready"

Be encouraging yet realistic.
Return ONLY JSON shaped like this example: {REPORT_OUTPUT_EXAMPLE}"""

    try:
        text = await call_llm(SYSTEM_PROMPT, user_prompt, task="session_report")
        report = decode_session_report(extract_json_object(text))
    except Exception as exc:
        logger.warning("Session report failed; averaging answer scores", exc_info=exc)
        return fallback_session_report(scores)

    logger.info(
        "Generated session report",
        overall_performance=report.overall_performance,
        readiness=report.interview_readiness,
    )
    return report

