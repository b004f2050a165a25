from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


QuestionType = Literal["technical", "behavioral"]
Tone = Literal["confident", "weak", "neutral"]
Readiness = Literal["Excellent", "Good", "Needs Improvement", "Not Ready"]
SessionStatus = Literal["draft", "in_progress", "completed"]

QUESTION_TYPES: tuple[str, ...] = ("technical", "behavioral")
TONES: tuple[str, ...] = ("confident", "weak", "neutral")
READINESS_LEVELS: tuple[str, ...] = ("Excellent", "Good", "Needs Improvement", "Not Ready")
STATUS_ORDER: dict[str, int] = {"draft": 0, "in_progress": 1, "completed": 2}


class CamelModel(BaseModel):
    """Persisted/API shape uses camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    AWAITING_ANSWER = "awaiting_answer"
    SCORING = "scoring"
    COMPLETING = "completing"
    DONE = "done"


# --- Jobs ---
class JobCreate(BaseModel):
    title: str
    company: str
    description: str
    requirements: Optional[list[str]] = None


class JobDescription(CamelModel):
    id: str
    title: str
    company: str
    description: str
    requirements: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


# --- AI-produced payloads ---
class Question(BaseModel):
    id: str
    text: str
    type: QuestionType = "behavioral"
    category: str = "General"


class Feedback(BaseModel):
    clarity: int = Field(ge=1, le=10)
    tone: Tone = "neutral"
    keywords_missed: list[str] = Field(default_factory=list)
    grammar_mistakes: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    overall_score: int = Field(ge=1, le=100)
    strengths: list[str] = Field(default_factory=list)
    areas_for_improvement: list[str] = Field(default_factory=list)
    better_answer: Optional[str] = None


class SessionReport(BaseModel):
    # 0 only appears on the fallback path for a session without scored answers
    overall_performance: int = Field(ge=0, le=100)
    key_strengths: list[str] = Field(default_factory=list)
    priority_improvements: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    interview_readiness: Readiness = "Needs Improvement"


# --- Sessions ---
class SessionAnswer(CamelModel):
    question_id: str
    question: str
    answer: str
    feedback: Optional[Feedback] = None
    time_spent: int = 0  # milliseconds
    is_voice: bool = False
    created_at: datetime


class JobSession(CamelModel):
    id: str
    job_id: str
    job_title: str
    company: str
    status: SessionStatus = "in_progress"
    questions: list[Question]
    answers: list[SessionAnswer] = Field(default_factory=list)
    current_question_index: int = 0
    total_questions: int
    progress: float = 0.0
    overall_score: Optional[int] = None
    session_report: Optional[SessionReport] = None
    question_shown_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class RecentTrends(CamelModel):
    score_improvement: float = 0.0
    confidence_growth: int = 0


class UserProgress(CamelModel):
    total_sessions: int = 0
    completed_sessions: int = 0
    average_score: int = 0
    total_time_spent: int = 0
    strong_areas: list[str] = Field(default_factory=list)
    improvement_areas: list[str] = Field(default_factory=list)
    recent_trends: RecentTrends = Field(default_factory=RecentTrends)


class HistoryEntry(CamelModel):
    session_id: str
    job_id: str
    job_title: str
    company: str
    overall_performance: int
    interview_readiness: Readiness
    questions_answered: int
    total_questions: int
    total_time: int  # milliseconds
    session_date: datetime


# --- API payloads ---
class AnswerSubmission(CamelModel):
    answer: str
    is_voice: bool = False
    question_id: Optional[str] = None


class SessionView(CamelModel):
    session: JobSession
    state: SessionState
    current_question: Optional[Question] = None


class SubmissionResult(CamelModel):
    session: JobSession
    answer: SessionAnswer
    state: SessionState
    report: Optional[SessionReport] = None
