import re
from datetime import datetime
from typing import Callable, Optional

import structlog
from aws_embedded_metrics import metric_scope

import llm_interaction
import schemas
from repository import (
    ActiveSessionExistsError,
    JobSessionRepository,
    NotFoundError,
    SessionStateError,
    utcnow,
)
from schemas import SessionState
from settings import get_settings

# Set up logging
logger = structlog.get_logger(__name__)

MAX_REQUIREMENTS = 10


class InvalidInputError(ValueError):
    """User input rejected before any AI call or state change."""


class SessionClosedError(SessionStateError):
    """The session is completed and only readable."""


class ScoringInProgressError(SessionStateError):
    """An answer for this session is still being scored."""


class StaleQuestionError(SessionStateError):
    """The submission targets a question other than the current one."""


# ---------------------------------------------------------------------------
# Jobs


def validate_job_fields(job_in: schemas.JobCreate) -> None:
    if not (job_in.title.strip() and job_in.company.strip() and job_in.description.strip()):
        raise InvalidInputError("Please fill in all required fields.")

    min_length = get_settings().min_job_description_length
    if len(job_in.description.strip()) < min_length:
        raise InvalidInputError(
            f"Please provide a more detailed job description (at least {min_length} characters)."
        )


def derive_requirements(description: str) -> list[str]:
    """Pick the first sentences of a description long enough to read as requirements."""
    sentences = (sentence.strip() for sentence in re.split(r"[.!?]", description))
    return [sentence for sentence in sentences if len(sentence) > 10][:MAX_REQUIREMENTS]


def create_job(repository: JobSessionRepository, job_in: schemas.JobCreate) -> schemas.JobDescription:
    validate_job_fields(job_in)
    description = job_in.description.strip()
    cleaned = schemas.JobCreate(
        title=job_in.title.strip(),
        company=job_in.company.strip(),
        description=description,
        requirements=job_in.requirements or derive_requirements(description),
    )
    return repository.create_job(cleaned)


def validate_answer_text(answer: str) -> str:
    cleaned = (answer or "").strip()
    if not cleaned:
        raise InvalidInputError("Please provide an answer before submitting.")
    return cleaned


# ---------------------------------------------------------------------------
# Reports


def format_duration(milliseconds: int) -> str:
    seconds = max(milliseconds, 0) // 1000
    return f"{seconds // 60}:{seconds % 60:02d}"


def total_time_spent(session: schemas.JobSession) -> int:
    return sum(answer.time_spent for answer in session.answers)


def render_report_text(session: schemas.JobSession) -> str:
    """Plain-text export of a completed session's report."""
    report = session.session_report
    if session.status != "completed" or report is None:
        raise SessionStateError("The report is available once the session is completed.")

    def numbered(items: list[str]) -> list[str]:
        if not items:
            return ["(none)"]
        return [f"{number}. {item}" for number, item in enumerate(items, start=1)]

    lines = [
        "Interview Practice Report",
        f"Position: {session.job_title} at {session.company}",
    ]
    if session.completed_at is not None:
        lines.append(f"Completed: {session.completed_at:%Y-%m-%d %H:%M} UTC")
    lines += [
        "",
        f"Overall Performance: {report.overall_performance}/100",
        f"Interview Readiness: {report.interview_readiness}",
        f"Questions Answered: {len(session.answers)} of {session.total_questions}",
        f"Total Time: {format_duration(total_time_spent(session))}",
        "",
        "Key Strengths:",
        *numbered(report.key_strengths),
        "",
        "Priority Improvements:",
        *numbered(report.priority_improvements),
        "",
        "Recommendations:",
        *numbered(report.recommendations),
    ]
    return "\n".join(lines) + "\n"


def report_filename(session: schemas.JobSession) -> str:
    company = re.sub(r"[^a-z0-9]+", "-", session.company.lower()).strip("-") or "job"
    return f"interview-report-{company}-{session.id[:8]}.txt"


def history_entry(session: schemas.JobSession) -> schemas.HistoryEntry:
    report = session.session_report
    return schemas.HistoryEntry(
        session_id=session.id,
        job_id=session.job_id,
        job_title=session.job_title,
        company=session.company,
        overall_performance=report.overall_performance,
        interview_readiness=report.interview_readiness,
        questions_answered=len(session.answers),
        total_questions=session.total_questions,
        total_time=total_time_spent(session),
        session_date=session.completed_at or utcnow(),
    )


@metric_scope
async def emit_session_completed(session: schemas.JobSession, metrics=None):
    metrics.set_namespace(get_settings().metrics_namespace)
    metrics.put_metric("sessions_completed", 1, "Count")
    metrics.put_metric("session_score", session.overall_score or 0, "None")
    metrics.put_metric("questions_answered", len(session.answers), "Count")
    metrics.set_property("session_id", session.id)
    metrics.set_property("job_id", session.job_id)


# ---------------------------------------------------------------------------
# Session lifecycle

# Session id -> SCORING / COMPLETING while an AI call for it is pending.
_IN_FLIGHT: dict[str, SessionState] = {}


class SessionLifecycleController:
    """Drives one practice session from question generation to its final report.

    Transitions: NotStarted -> AwaitingAnswer -> Scoring -> AwaitingAnswer ...
    -> Completing -> Done. Every AI result is stored before the session moves
    on, and a session accepts no second submission while one is pending.
    """

    def __init__(
        self,
        repository: JobSessionRepository,
        clock: Optional[Callable[[], datetime]] = None,
        in_flight: Optional[dict[str, SessionState]] = None,
    ):
        self.repository = repository
        self._clock = clock or utcnow
        self._in_flight = _IN_FLIGHT if in_flight is None else in_flight

    # --- Queries ---
    def state(self, session_id: str) -> SessionState:
        session = self.repository.get_session(session_id)
        if session is None or session.status == "draft":
            return SessionState.NOT_STARTED
        if session.status == "completed":
            return SessionState.DONE
        return self._in_flight.get(session_id, SessionState.AWAITING_ANSWER)

    def view(self, session_id: str) -> schemas.SessionView:
        session = self._require_session(session_id)
        current = None
        if session.status != "completed":
            current = session.questions[session.current_question_index]
        return schemas.SessionView(
            session=session, state=self.state(session_id), current_question=current
        )

    # --- Transitions ---
    async def start_session(self, job_id: str) -> schemas.JobSession:
        job = self.repository.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")

        active = self.repository.get_active_session(job_id)
        if active is not None:
            raise ActiveSessionExistsError(job_id, active.id)

        questions = await llm_interaction.generate_questions(job.description)
        session = self.repository.create_session(job_id, questions)
        self.repository.update_session(session.id, {"question_shown_at": self._clock()})
        logger.info("Practice session started", session_id=session.id, job_id=job_id)
        return self.repository.get_session(session.id)

    async def submit_answer(
        self,
        session_id: str,
        answer: str,
        is_voice: bool = False,
        question_id: Optional[str] = None,
    ) -> schemas.SubmissionResult:
        answer_text = validate_answer_text(answer)
        session = self._require_open_session(session_id)

        index = session.current_question_index
        question = session.questions[index]
        if question_id is not None and question_id != question.id:
            raise StaleQuestionError(
                f"Question {question_id} is not the current question of session {session_id}."
            )

        job_description = self._job_description(session)
        self._in_flight[session_id] = SessionState.SCORING
        try:
            feedback = await llm_interaction.get_feedback(job_description, question.text, answer_text)
            session_answer = schemas.SessionAnswer(
                question_id=question.id,
                question=question.text,
                answer=answer_text,
                feedback=feedback,
                time_spent=self._elapsed_ms(session.question_shown_at),
                is_voice=is_voice,
                created_at=self._clock(),
            )
            if not self.repository.add_answer(session_id, session_answer):
                raise SessionStateError(f"Session {session_id} no longer accepts answers.")

            if index < session.total_questions - 1:
                self.repository.update_session(session_id, {"question_shown_at": self._clock()})
                logger.info("Answer scored", session_id=session_id, question_index=index)
                return schemas.SubmissionResult(
                    session=self.repository.get_session(session_id),
                    answer=session_answer,
                    state=SessionState.AWAITING_ANSWER,
                )

            self._in_flight[session_id] = SessionState.COMPLETING
            report = await self._complete(session_id, job_description)
            return schemas.SubmissionResult(
                session=self.repository.get_session(session_id),
                answer=session_answer,
                state=SessionState.DONE,
                report=report,
            )
        finally:
            self._in_flight.pop(session_id, None)

    def skip_question(self, session_id: str) -> schemas.JobSession:
        session = self._require_open_session(session_id)
        if session.current_question_index >= session.total_questions - 1:
            raise SessionStateError("The last question cannot be skipped; answer it to finish the session.")

        self.repository.update_session(
            session_id,
            {
                "current_question_index": session.current_question_index + 1,
                "question_shown_at": self._clock(),
            },
        )
        logger.info(
            "Question skipped", session_id=session_id, question_index=session.current_question_index
        )
        return self.repository.get_session(session_id)

    # --- Internals ---
    async def _complete(self, session_id: str, job_description: str) -> schemas.SessionReport:
        session = self.repository.get_session(session_id)
        items = [
            (answer.question, answer.answer, answer.feedback)
            for answer in session.answers
            if answer.feedback is not None
        ]
        report = await llm_interaction.generate_session_report(job_description, items)
        self.repository.complete_session(session_id, report)

        completed = self.repository.get_session(session_id)
        self.repository.record_history(history_entry(completed))
        await emit_session_completed(completed)
        logger.info(
            "Practice session completed",
            session_id=session_id,
            overall_score=completed.overall_score,
            answered=len(completed.answers),
            total_questions=completed.total_questions,
        )
        return completed.session_report

    def _require_session(self, session_id: str) -> schemas.JobSession:
        session = self.repository.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def _require_open_session(self, session_id: str) -> schemas.JobSession:
        session = self._require_session(session_id)
        if session.status == "completed":
            raise SessionClosedError(f"Session {session_id} is already completed.")
        if session_id in self._in_flight:
            raise ScoringInProgressError(
                "Your previous answer is still being analyzed. Please wait."
            )
        return session

    def _job_description(self, session: schemas.JobSession) -> str:
        job = self.repository.get_job(session.job_id)
        if job is None:
            logger.warning("Job missing for session", session_id=session.id, job_id=session.job_id)
            return ""
        return job.description

    def _elapsed_ms(self, since: Optional[datetime]) -> int:
        if since is None:
            return 0
        return max(0, int((self._clock() - since).total_seconds() * 1000))
