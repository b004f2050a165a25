import json
from datetime import datetime, timezone

from pydantic import TypeAdapter
from sqlalchemy.orm import Session

import crud
import models
import schemas


def _stored_raw(db: Session, key: str) -> str:
    entry = db.query(models.KeyValueEntry).filter(models.KeyValueEntry.key == key).first()
    return entry.value


def test_missing_key_returns_default(db_session: Session):
    assert crud.get_value(db_session, "jobs", []) == []
    assert crud.get_value(db_session, "nothing-here", {"a": 1}) == {"a": 1}


def test_set_value_upserts(db_session: Session):
    crud.set_value(db_session, "counter", {"value": 1})
    crud.set_value(db_session, "counter", {"value": 2})

    assert crud.get_value(db_session, "counter", None) == {"value": 2}
    assert db_session.query(models.KeyValueEntry).count() == 1


def test_corrupt_json_yields_default(db_session: Session):
    db_session.add(models.KeyValueEntry(key="jobs", value="{not json"))
    db_session.commit()

    assert crud.get_value(db_session, "jobs", []) == []


def test_adapter_rejection_yields_default(db_session: Session):
    adapter = TypeAdapter(list[schemas.JobDescription])
    db_session.add(models.KeyValueEntry(key="jobs", value=json.dumps([{"id": 1}])))
    db_session.commit()

    assert crud.get_value(db_session, "jobs", [], adapter=adapter) == []


def test_session_round_trip_keeps_every_field(db_session: Session):
    now = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    feedback = schemas.Feedback(clarity=7, tone="confident", overall_score=81)
    session = schemas.JobSession(
        id="s1",
        job_id="j1",
        job_title="Backend Engineer",
        company="Acme",
        questions=[schemas.Question(id="q1", text="Why Acme?", type="behavioral", category="Motivation")],
        answers=[
            schemas.SessionAnswer(
                question_id="q1",
                question="Why Acme?",
                answer="Because of the mission.",
                feedback=feedback,
                time_spent=42000,
                is_voice=True,
                created_at=now,
            )
        ],
        current_question_index=0,
        total_questions=1,
        progress=100.0,
        overall_score=81,
        session_report=schemas.SessionReport(overall_performance=81, interview_readiness="Good"),
        status="completed",
        question_shown_at=now,
        created_at=now,
        updated_at=now,
        completed_at=now,
    )
    adapter = TypeAdapter(list[schemas.JobSession])

    crud.set_value(db_session, "jobSessions", [session], adapter=adapter)
    loaded = crud.get_value(db_session, "jobSessions", [], adapter=adapter)

    assert loaded == [session]
    assert loaded[0].answers[0].feedback.keywords_missed == []
    assert loaded[0].session_report.key_strengths == []


def test_stored_documents_use_camel_case_keys(db_session: Session):
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    job = schemas.JobDescription(
        id="j1",
        title="Data Analyst",
        company="Acme",
        description="Analyze data.",
        created_at=now,
        updated_at=now,
    )
    crud.set_value(db_session, "jobs", [job], adapter=TypeAdapter(list[schemas.JobDescription]))

    stored = json.loads(_stored_raw(db_session, "jobs"))
    assert set(stored[0]) >= {"id", "createdAt", "updatedAt", "requirements"}
    assert stored[0]["requirements"] == []
