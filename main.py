import io
import zipfile
from typing import List

from fastapi import (
    FastAPI,
    Depends,
    HTTPException,
    UploadFile,
    File,
    Form,
    Request,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.orm import Session
import fitz
from docx import Document
from docx.opc.exceptions import PackageNotFoundError
import structlog

import schemas
import logic
from database import create_db_and_tables, get_db
from repository import JobSessionRepository, NotFoundError, SessionStateError
from settings import get_settings
from request_id_middleware import RequestIdMiddleware
from observability import init_observability


# Initialise observability before creating app
init_observability()
logger = structlog.get_logger(__name__)

# Create DB tables on startup
create_db_and_tables()

app = FastAPI(
    title="Interview Coach",
    description="Backend API for AI-assisted interview practice sessions",
    version="0.1.0",
)

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."

# --- CORS Middleware ---
origins = [
    "http://localhost",
    "http://localhost:5173",
    "http://localhost:8000",
    "http://127.0.0.1",
    "http://127.0.0.1:8000",
    get_settings().app_base_url,
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)


# --- Error mapping --- #
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(SessionStateError)
async def session_state_handler(request: Request, exc: SessionStateError):
    logger.info("Rejected session transition", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(logic.InvalidInputError)
async def invalid_input_handler(request: Request, exc: logic.InvalidInputError):
    return JSONResponse(
        status_code=422, content={"detail": str(exc)}
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": GENERIC_ERROR_MESSAGE},
    )


# --- Dependencies --- #
def get_repository(db: Session = Depends(get_db)) -> JobSessionRepository:
    return JobSessionRepository(db)


def get_controller(
    repository: JobSessionRepository = Depends(get_repository),
) -> logic.SessionLifecycleController:
    return logic.SessionLifecycleController(repository)


# --- Root Endpoint --- #
@app.get("/")
async def read_root():
    return {
        "service": app.title,
        "version": app.version,
        "endpoints": {
            "jobs": "/jobs/",
            "sessions": "/sessions/{session_id}",
            "progress": "/progress",
            "history": "/history",
            "docs": "/docs",
        },
    }


@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Helper Functions for Job Description Uploads ---
DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
UNSUPPORTED_UPLOAD_MESSAGE = "Please upload a plain text (.txt), PDF or Word (.docx) file."


def _pdf_text(content: bytes) -> str:
    with fitz.open(stream=content, filetype="pdf") as doc:
        return "\n".join(page.get_text() for page in doc)


def _docx_text(content: bytes) -> str:
    document = Document(io.BytesIO(content))
    return "\n".join(paragraph.text for paragraph in document.paragraphs)


def _plain_text(content: bytes) -> str:
    return content.decode("utf-8", errors="replace")


# Legacy .doc files are not readable by python-docx and are rejected.
UPLOAD_EXTRACTORS = {
    "application/pdf": _pdf_text,
    DOCX_CONTENT_TYPE: _docx_text,
    "text/plain": _plain_text,
}


async def extract_text_from_upload(file: UploadFile) -> str:
    """Extract the job description text from an uploaded TXT, PDF or DOCX file."""
    extractor = UPLOAD_EXTRACTORS.get(file.content_type)
    if extractor is None:
        raise logic.InvalidInputError(UNSUPPORTED_UPLOAD_MESSAGE)

    content = await file.read()
    try:
        return extractor(content)
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError, RuntimeError) as exc:
        logger.warning("Unreadable job description upload", filename=file.filename, error=str(exc))
        raise logic.InvalidInputError("The uploaded file could not be read.") from exc


# --- Job Endpoints ---
@app.post(
    "/jobs/",
    response_model=schemas.JobDescription,
    status_code=status.HTTP_201_CREATED,
    tags=["Jobs"],
)
def create_job_endpoint(
    job: schemas.JobCreate,
    repository: JobSessionRepository = Depends(get_repository),
):
    return logic.create_job(repository, job)


@app.post(
    "/jobs/upload",
    response_model=schemas.JobDescription,
    status_code=status.HTTP_201_CREATED,
    tags=["Jobs"],
)
async def upload_job_endpoint(
    title: str = Form(...),
    company: str = Form(...),
    file: UploadFile = File(...),
    repository: JobSessionRepository = Depends(get_repository),
):
    description = await extract_text_from_upload(file)
    logger.info("Extracted job description from upload", filename=file.filename, length=len(description))
    return logic.create_job(
        repository,
        schemas.JobCreate(title=title, company=company, description=description),
    )


@app.get("/jobs/", response_model=List[schemas.JobDescription], tags=["Jobs"])
def list_jobs_endpoint(repository: JobSessionRepository = Depends(get_repository)):
    return repository.list_jobs()


@app.get("/jobs/{job_id}", response_model=schemas.JobDescription, tags=["Jobs"])
def get_job_endpoint(job_id: str, repository: JobSessionRepository = Depends(get_repository)):
    job = repository.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


# --- Session Endpoints ---
@app.get("/jobs/{job_id}/sessions", response_model=List[schemas.JobSession], tags=["Sessions"])
def list_job_sessions_endpoint(
    job_id: str, repository: JobSessionRepository = Depends(get_repository)
):
    if repository.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return repository.get_sessions_by_job(job_id)


@app.get("/jobs/{job_id}/sessions/active", response_model=schemas.SessionView, tags=["Sessions"])
def get_active_session_endpoint(
    job_id: str,
    repository: JobSessionRepository = Depends(get_repository),
    controller: logic.SessionLifecycleController = Depends(get_controller),
):
    session = repository.get_active_session(job_id)
    if session is None:
        raise HTTPException(status_code=404, detail="No active session for this job")
    return controller.view(session.id)


@app.post(
    "/jobs/{job_id}/sessions",
    response_model=schemas.SessionView,
    status_code=status.HTTP_201_CREATED,
    tags=["Sessions"],
)
async def start_session_endpoint(
    job_id: str, controller: logic.SessionLifecycleController = Depends(get_controller)
):
    session = await controller.start_session(job_id)
    return controller.view(session.id)


@app.get("/sessions/{session_id}", response_model=schemas.SessionView, tags=["Sessions"])
def get_session_endpoint(
    session_id: str, controller: logic.SessionLifecycleController = Depends(get_controller)
):
    return controller.view(session_id)


@app.post(
    "/sessions/{session_id}/answers",
    response_model=schemas.SubmissionResult,
    tags=["Sessions"],
)
async def submit_answer_endpoint(
    session_id: str,
    submission: schemas.AnswerSubmission,
    controller: logic.SessionLifecycleController = Depends(get_controller),
):
    return await controller.submit_answer(
        session_id,
        submission.answer,
        is_voice=submission.is_voice,
        question_id=submission.question_id,
    )


@app.post("/sessions/{session_id}/skip", response_model=schemas.SessionView, tags=["Sessions"])
def skip_question_endpoint(
    session_id: str, controller: logic.SessionLifecycleController = Depends(get_controller)
):
    controller.skip_question(session_id)
    return controller.view(session_id)


@app.get("/sessions/{session_id}/report.txt", response_class=PlainTextResponse, tags=["Reports"])
def download_report_endpoint(
    session_id: str, repository: JobSessionRepository = Depends(get_repository)
):
    session = repository.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return PlainTextResponse(
        logic.render_report_text(session),
        headers={
            "Content-Disposition": f'attachment; filename="{logic.report_filename(session)}"'
        },
    )


# --- Progress Endpoints ---
@app.get("/progress", response_model=schemas.UserProgress, tags=["Progress"])
def get_progress_endpoint(repository: JobSessionRepository = Depends(get_repository)):
    return repository.get_user_progress()


@app.get("/history", response_model=List[schemas.HistoryEntry], tags=["Progress"])
def get_history_endpoint(repository: JobSessionRepository = Depends(get_repository)):
    return list(reversed(repository.get_history()))


# --- Main execution --- (for running with uvicorn)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
