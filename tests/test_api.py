import io
from unittest.mock import AsyncMock

import pytest
import fitz
from docx import Document
from fastapi import status

import llm_interaction
import schemas
from main import DOCX_CONTENT_TYPE, UNSUPPORTED_UPLOAD_MESSAGE

DESCRIPTION = (
    "Globex needs a data engineer to build streaming pipelines. "
    "Strong SQL and Python skills are essential."
)

REPORT = schemas.SessionReport(
    overall_performance=64,
    key_strengths=["Clear structure"],
    priority_improvements=["More metrics"],
    recommendations=["Rehearse STAR stories"],
    interview_readiness="Needs Improvement",
)


@pytest.fixture
def ai(monkeypatch):
    questions = [
        schemas.Question(id="q1", text="How do you model late-arriving events?", type="technical", category="Streaming"),
        schemas.Question(id="q2", text="Describe a conflict you resolved.", type="behavioral", category="Teamwork"),
    ]
    mocks = {
        "generate_questions": AsyncMock(return_value=questions),
        "get_feedback": AsyncMock(return_value=schemas.Feedback(clarity=8, overall_score=64)),
        "generate_session_report": AsyncMock(return_value=REPORT),
    }
    for name, mock in mocks.items():
        monkeypatch.setattr(llm_interaction, name, mock)
    return mocks


def create_job(client, **overrides) -> dict:
    payload = {"title": "Data Engineer", "company": "Globex", "description": DESCRIPTION, **overrides}
    response = client.post("/jobs/", json=payload)
    assert response.status_code == status.HTTP_201_CREATED, response.text
    return response.json()


def start_session(client, job_id: str) -> dict:
    response = client.post(f"/jobs/{job_id}/sessions")
    assert response.status_code == status.HTTP_201_CREATED, response.text
    return response.json()


def test_root(test_client):
    response = test_client.get("/")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["service"] == "Interview Coach"
    assert "X-Request-ID" in response.headers


def test_request_id_is_echoed(test_client):
    response = test_client.get("/", headers={"X-Request-ID": "client-trace-1234"})
    assert response.headers["X-Request-ID"] == "client-trace-1234"


# --- Jobs ---
def test_create_and_fetch_job(test_client):
    job = create_job(test_client)

    assert job["title"] == "Data Engineer"
    assert "createdAt" in job
    assert job["requirements"] == [
        "Globex needs a data engineer to build streaming pipelines",
        "Strong SQL and Python skills are essential",
    ]

    response = test_client.get(f"/jobs/{job['id']}")
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == job
    assert [j["id"] for j in test_client.get("/jobs/").json()] == [job["id"]]


def test_create_job_with_short_description(test_client):
    response = test_client.post(
        "/jobs/", json={"title": "Data Engineer", "company": "Globex", "description": "Short."}
    )
    assert response.status_code == 422
    assert response.json()["detail"] == (
        "Please provide a more detailed job description (at least 50 characters)."
    )


def test_create_job_missing_fields(test_client):
    response = test_client.post(
        "/jobs/", json={"title": "", "company": "Globex", "description": DESCRIPTION}
    )
    assert response.status_code == 422
    assert response.json()["detail"] == "Please fill in all required fields."


def test_upload_plain_text_job(test_client):
    response = test_client.post(
        "/jobs/upload",
        data={"title": "Data Engineer", "company": "Globex"},
        files={"file": ("posting.txt", DESCRIPTION.encode("utf-8"), "text/plain")},
    )
    assert response.status_code == status.HTTP_201_CREATED, response.text
    assert response.json()["description"] == DESCRIPTION


def test_upload_docx_job(test_client):
    document = Document()
    document.add_paragraph("Globex needs a data engineer to build streaming pipelines.")
    document.add_paragraph("Strong SQL and Python skills are essential.")
    buffer = io.BytesIO()
    document.save(buffer)

    response = test_client.post(
        "/jobs/upload",
        data={"title": "Data Engineer", "company": "Globex"},
        files={"file": ("posting.docx", buffer.getvalue(), DOCX_CONTENT_TYPE)},
    )
    assert response.status_code == status.HTTP_201_CREATED, response.text
    description = response.json()["description"]
    assert "Globex needs a data engineer to build streaming pipelines.\nStrong SQL and Python skills are essential." in description


def test_upload_pdf_job(test_client):
    with fitz.open() as pdf:
        page = pdf.new_page()
        page.insert_text((50, 72), "Globex needs a data engineer to build streaming pipelines.")
        page.insert_text((50, 90), "Strong SQL and Python skills are essential.")
        content = pdf.tobytes()

    response = test_client.post(
        "/jobs/upload",
        data={"title": "Data Engineer", "company": "Globex"},
        files={"file": ("posting.pdf", content, "application/pdf")},
    )
    assert response.status_code == status.HTTP_201_CREATED, response.text
    description = response.json()["description"]
    assert "streaming pipelines" in description
    assert "Strong SQL and Python skills" in description


def test_upload_legacy_word_document_is_rejected(test_client):
    response = test_client.post(
        "/jobs/upload",
        data={"title": "Data Engineer", "company": "Globex"},
        files={"file": ("posting.doc", b"\xd0\xcf\x11\xe0legacy", "application/msword")},
    )
    assert response.status_code == 422
    assert response.json()["detail"] == UNSUPPORTED_UPLOAD_MESSAGE


def test_upload_corrupt_docx_is_rejected(test_client):
    response = test_client.post(
        "/jobs/upload",
        data={"title": "Data Engineer", "company": "Globex"},
        files={"file": ("posting.docx", b"not a zip archive", DOCX_CONTENT_TYPE)},
    )
    assert response.status_code == 422
    assert response.json()["detail"] == "The uploaded file could not be read."


def test_upload_unsupported_file_type(test_client):
    response = test_client.post(
        "/jobs/upload",
        data={"title": "Data Engineer", "company": "Globex"},
        files={"file": ("posting.png", b"\x89PNG", "image/png")},
    )
    assert response.status_code == 422


def test_unknown_job(test_client):
    assert test_client.get("/jobs/missing").status_code == status.HTTP_404_NOT_FOUND
    assert test_client.get("/jobs/missing/sessions").status_code == status.HTTP_404_NOT_FOUND
    assert test_client.post("/jobs/missing/sessions").status_code == status.HTTP_404_NOT_FOUND


# --- Sessions ---
def test_practice_session_flow(test_client, ai):
    job = create_job(test_client)
    view = start_session(test_client, job["id"])

    session_id = view["session"]["id"]
    assert view["state"] == "awaiting_answer"
    assert view["currentQuestion"]["id"] == "q1"
    assert view["session"]["totalQuestions"] == 2

    active = test_client.get(f"/jobs/{job['id']}/sessions/active")
    assert active.status_code == status.HTTP_200_OK
    assert active.json()["session"]["id"] == session_id

    first = test_client.post(
        f"/sessions/{session_id}/answers",
        json={"answer": "I use watermarks.", "questionId": "q1", "isVoice": True},
    )
    assert first.status_code == status.HTTP_200_OK, first.text
    body = first.json()
    assert body["state"] == "awaiting_answer"
    assert body["answer"]["isVoice"] is True
    assert body["answer"]["feedback"]["overall_score"] == 64
    assert body["session"]["progress"] == 50

    second = test_client.post(
        f"/sessions/{session_id}/answers", json={"answer": "We agreed on a plan.", "questionId": "q2"}
    )
    body = second.json()
    assert body["state"] == "done"
    assert body["report"]["overall_performance"] == 64
    assert body["session"]["status"] == "completed"
    assert body["session"]["overallScore"] == 64

    view = test_client.get(f"/sessions/{session_id}").json()
    assert view["state"] == "done"
    assert view["currentQuestion"] is None

    assert test_client.get(f"/jobs/{job['id']}/sessions/active").status_code == status.HTTP_404_NOT_FOUND
    assert len(test_client.get(f"/jobs/{job['id']}/sessions").json()) == 1

    closed = test_client.post(f"/sessions/{session_id}/answers", json={"answer": "One more"})
    assert closed.status_code == status.HTTP_409_CONFLICT

    progress = test_client.get("/progress").json()
    assert progress["completedSessions"] == 1
    assert progress["averageScore"] == 64
    assert progress["strongAreas"] == ["Clear structure"]

    history = test_client.get("/history").json()
    assert [entry["sessionId"] for entry in history] == [session_id]
    assert history[0]["questionsAnswered"] == 2


def test_second_active_session_conflicts(test_client, ai):
    job = create_job(test_client)
    start_session(test_client, job["id"])

    response = test_client.post(f"/jobs/{job['id']}/sessions")
    assert response.status_code == status.HTTP_409_CONFLICT
    assert ai["generate_questions"].await_count == 1


def test_empty_answer_is_rejected(test_client, ai):
    job = create_job(test_client)
    session_id = start_session(test_client, job["id"])["session"]["id"]

    response = test_client.post(f"/sessions/{session_id}/answers", json={"answer": "  "})
    assert response.status_code == 422
    assert response.json()["detail"] == "Please provide an answer before submitting."
    ai["get_feedback"].assert_not_awaited()


def test_stale_question_conflicts(test_client, ai):
    job = create_job(test_client)
    session_id = start_session(test_client, job["id"])["session"]["id"]

    response = test_client.post(
        f"/sessions/{session_id}/answers", json={"answer": "Answer", "questionId": "q2"}
    )
    assert response.status_code == status.HTTP_409_CONFLICT


def test_skip_question(test_client, ai):
    job = create_job(test_client)
    session_id = start_session(test_client, job["id"])["session"]["id"]

    response = test_client.post(f"/sessions/{session_id}/skip")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["currentQuestion"]["id"] == "q2"

    last = test_client.post(f"/sessions/{session_id}/skip")
    assert last.status_code == status.HTTP_409_CONFLICT


def test_unknown_session(test_client):
    assert test_client.get("/sessions/missing").status_code == status.HTTP_404_NOT_FOUND
    assert test_client.post("/sessions/missing/skip").status_code == status.HTTP_404_NOT_FOUND
    response = test_client.post("/sessions/missing/answers", json={"answer": "Hello"})
    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert test_client.get("/sessions/missing/report.txt").status_code == status.HTTP_404_NOT_FOUND


# --- Reports ---
def test_report_download(test_client, ai):
    job = create_job(test_client)
    session_id = start_session(test_client, job["id"])["session"]["id"]

    early = test_client.get(f"/sessions/{session_id}/report.txt")
    assert early.status_code == status.HTTP_409_CONFLICT

    for answer in ("First answer", "Second answer"):
        test_client.post(f"/sessions/{session_id}/answers", json={"answer": answer})

    response = test_client.get(f"/sessions/{session_id}/report.txt")
    assert response.status_code == status.HTTP_200_OK
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["content-disposition"] == (
        f'attachment; filename="interview-report-globex-{session_id[:8]}.txt"'
    )
    assert "Overall Performance: 64/100" in response.text
    assert "Interview Readiness: Needs Improvement" in response.text


def test_unexpected_error_is_generic(test_client, monkeypatch):
    import repository

    def explode(self):
        raise RuntimeError("database on fire")

    monkeypatch.setattr(repository.JobSessionRepository, "get_user_progress", explode)

    response = test_client.get("/progress")
    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json() == {"detail": "Something went wrong. Please try again."}


def test_progress_with_no_sessions(test_client):
    body = test_client.get("/progress").json()
    assert body["totalSessions"] == 0
    assert body["recentTrends"] == {"scoreImprovement": 0.0, "confidenceGrowth": 0}
    assert test_client.get("/history").json() == []
