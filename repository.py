"""Job & session repository.

Every read and write of practice state goes through :class:`JobSessionRepository`;
nothing else touches the key/value store. Collections are stored as whole JSON
arrays under fixed keys and rewritten on each mutation (read-modify-write).
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from statistics import mean
from typing import Any, Callable, Optional

import structlog
from pydantic import TypeAdapter
from sqlalchemy.orm import Session

import crud
import schemas
from llm_interaction import round_half_up
from settings import get_settings

logger = structlog.get_logger(__name__)

JOBS_KEY = "jobs"
SESSIONS_KEY = "jobSessions"
HISTORY_KEY = "interview_sessions"

RECENT_WINDOW = 5

_jobs_adapter = TypeAdapter(list[schemas.JobDescription])
_sessions_adapter = TypeAdapter(list[schemas.JobSession])
_history_adapter = TypeAdapter(list[schemas.HistoryEntry])


class NotFoundError(LookupError):
    """A job or session id does not resolve to a stored record."""


class SessionStateError(RuntimeError):
    """The operation is not allowed in the session's current state."""


class InvalidTransitionError(SessionStateError):
    """A session status change would move backwards."""


class ActiveSessionExistsError(SessionStateError):
    """The job already has a session in progress."""

    def __init__(self, job_id: str, session_id: str):
        super().__init__(
            f"Job {job_id} already has a practice session in progress. "
            "Continue it or finish it before starting a new one."
        )
        self.job_id = job_id
        self.session_id = session_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Time-based unique id."""
    return uuid.uuid1().hex


class JobSessionRepository:
    def __init__(self, db: Session):
        self.db = db

    # --- Storage helpers ---
    def _load_jobs(self) -> list[schemas.JobDescription]:
        return crud.get_value(self.db, JOBS_KEY, [], adapter=_jobs_adapter)

    def _load_sessions(self) -> list[schemas.JobSession]:
        return crud.get_value(self.db, SESSIONS_KEY, [], adapter=_sessions_adapter)

    def _save_sessions(self, sessions: list[schemas.JobSession]) -> None:
        crud.set_value(self.db, SESSIONS_KEY, sessions, adapter=_sessions_adapter)

    def _mutate_session(
        self,
        session_id: str,
        change: Callable[[schemas.JobSession], Optional[schemas.JobSession]],
    ) -> Optional[schemas.JobSession]:
        """Apply `change` to one stored session and persist the result.

        Returns the updated session, or None when the id is unknown or `change`
        declined to modify anything (by returning None).
        """
        sessions = self._load_sessions()
        for index, session in enumerate(sessions):
            if session.id != session_id:
                continue
            updated = change(session)
            if updated is None:
                return None
            sessions[index] = updated
            self._save_sessions(sessions)
            return updated

        logger.warning("Session not found; update dropped", session_id=session_id)
        return None

    # --- Jobs ---
    def create_job(self, job_in: schemas.JobCreate) -> schemas.JobDescription:
        now = utcnow()
        job = schemas.JobDescription(
            id=new_id(),
            title=job_in.title,
            company=job_in.company,
            description=job_in.description,
            requirements=job_in.requirements or [],
            created_at=now,
            updated_at=now,
        )
        jobs = self._load_jobs()
        jobs.append(job)
        crud.set_value(self.db, JOBS_KEY, jobs, adapter=_jobs_adapter)
        logger.info("Created job", job_id=job.id, title=job.title, company=job.company)
        return job

    def get_job(self, job_id: str) -> Optional[schemas.JobDescription]:
        return next((job for job in self._load_jobs() if job.id == job_id), None)

    def list_jobs(self) -> list[schemas.JobDescription]:
        return self._load_jobs()

    # --- Sessions ---
    def create_session(
        self, job_id: str, questions: list[schemas.Question]
    ) -> schemas.JobSession:
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if not questions:
            raise ValueError("A practice session needs at least one question")

        active = self.get_active_session(job_id)
        if active is not None:
            raise ActiveSessionExistsError(job_id, active.id)

        now = utcnow()
        session = schemas.JobSession(
            id=new_id(),
            job_id=job.id,
            job_title=job.title,
            company=job.company,
            status="in_progress",
            questions=list(questions),
            answers=[],
            current_question_index=0,
            total_questions=len(questions),
            progress=0.0,
            question_shown_at=now,
            created_at=now,
            updated_at=now,
        )
        sessions = self._load_sessions()
        sessions.append(session)
        self._save_sessions(sessions)
        logger.info(
            "Created practice session",
            session_id=session.id,
            job_id=job_id,
            total_questions=session.total_questions,
        )
        return session

    def get_session(self, session_id: str) -> Optional[schemas.JobSession]:
        return next((s for s in self._load_sessions() if s.id == session_id), None)

    def update_session(self, session_id: str, updates: dict[str, Any]) -> bool:
        """Merge `updates` (snake_case field names) into a session.

        Unknown ids are a logged no-op returning False.
        """
        changes = {key: value for key, value in updates.items() if key != "id"}

        def change(session: schemas.JobSession) -> schemas.JobSession:
            new_status = changes.get("status", session.status)
            if new_status not in schemas.STATUS_ORDER:
                raise InvalidTransitionError(f"Session {session_id} cannot move to unknown status {new_status!r}")
            if schemas.STATUS_ORDER[new_status] < schemas.STATUS_ORDER[session.status]:
                raise InvalidTransitionError(
                    f"Session {session_id} cannot move from {session.status} to {new_status}"
                )
            data = session.model_dump()
            data.update(changes)
            data["updated_at"] = utcnow()
            return schemas.JobSession.model_validate(data)

        return self._mutate_session(session_id, change) is not None

    def add_answer(self, session_id: str, answer: schemas.SessionAnswer) -> bool:
        """Append an answer, recompute progress and advance the question index."""

        def change(session: schemas.JobSession) -> Optional[schemas.JobSession]:
            if session.status == "completed":
                logger.warning("Answer dropped for completed session", session_id=session_id)
                return None
            if len(session.answers) >= session.total_questions:
                logger.warning("Answer dropped; every question already answered", session_id=session_id)
                return None

            answers = [*session.answers, answer]
            return session.model_copy(
                update={
                    "answers": answers,
                    "progress": len(answers) / session.total_questions * 100,
                    "current_question_index": min(
                        session.current_question_index + 1, session.total_questions - 1
                    ),
                    "updated_at": utcnow(),
                }
            )

        return self._mutate_session(session_id, change) is not None

    def complete_session(self, session_id: str, report: schemas.SessionReport) -> bool:
        """Mark a session completed. A second call leaves the first result intact."""

        def change(session: schemas.JobSession) -> Optional[schemas.JobSession]:
            if session.status == "completed":
                logger.info("Session already completed; ignoring", session_id=session_id)
                return None
            now = utcnow()
            return session.model_copy(
                update={
                    "status": "completed",
                    "overall_score": report.overall_performance,
                    "session_report": report,
                    "completed_at": now,
                    "updated_at": now,
                }
            )

        completed = self._mutate_session(session_id, change)
        if completed is not None:
            logger.info(
                "Completed practice session",
                session_id=session_id,
                overall_score=completed.overall_score,
            )
        return completed is not None

    def get_sessions_by_job(self, job_id: str) -> list[schemas.JobSession]:
        return [s for s in self._load_sessions() if s.job_id == job_id]

    def get_active_session(self, job_id: str) -> Optional[schemas.JobSession]:
        return next(
            (s for s in self._load_sessions() if s.job_id == job_id and s.status == "in_progress"),
            None,
        )

    # --- Aggregates ---
    def get_user_progress(self) -> schemas.UserProgress:
        sessions = self._load_sessions()
        completed = [s for s in sessions if s.status == "completed"]

        average_score = (
            mean(s.overall_score or 0 for s in completed) if completed else 0
        )
        total_time_spent = sum(a.time_spent for s in sessions for a in s.answers)

        strong_areas: list[str] = []
        improvement_areas: list[str] = []
        for session in completed[-RECENT_WINDOW:]:
            if session.session_report is None:
                continue
            strong_areas.extend(session.session_report.key_strengths)
            improvement_areas.extend(session.session_report.priority_improvements)

        recent = completed[-RECENT_WINDOW:]
        previous = completed[-2 * RECENT_WINDOW:-RECENT_WINDOW]
        recent_average = mean(s.overall_score or 0 for s in recent) if recent else 0
        previous_average = mean(s.overall_score or 0 for s in previous) if previous else 0
        delta = recent_average - previous_average

        return schemas.UserProgress(
            total_sessions=len(sessions),
            completed_sessions=len(completed),
            average_score=round_half_up(average_score),
            total_time_spent=total_time_spent,
            strong_areas=list(dict.fromkeys(strong_areas))[:RECENT_WINDOW],
            improvement_areas=list(dict.fromkeys(improvement_areas))[:RECENT_WINDOW],
            recent_trends=schemas.RecentTrends(
                score_improvement=delta,
                confidence_growth=(delta > 0) - (delta < 0),
            ),
        )

    # --- Rolling history ---
    def record_history(self, entry: schemas.HistoryEntry) -> None:
        limit = get_settings().history_limit
        history = self.get_history()
        history.append(entry)
        crud.set_value(self.db, HISTORY_KEY, history[-limit:], adapter=_history_adapter)

    def get_history(self) -> list[schemas.HistoryEntry]:
        return crud.get_value(self.db, HISTORY_KEY, [], adapter=_history_adapter)
