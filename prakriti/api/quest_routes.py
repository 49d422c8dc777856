# prakriti/api/quest_routes.py
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from prakriti.analytics import class_overview, student_summaries
from prakriti.config import Settings
from prakriti.progress import ProgressTracker
from prakriti.quest_feed import QUEST_COMPLETED, QUEST_CREATED, QuestFeed
from prakriti.quest_generation import generate_quest_from_pdf
from prakriti.quest_store import DuplicateQuestError, QuestStore, QuestStoreError
from prakriti.schemas import QuizSubmission

logger = logging.getLogger(__name__)

DIFFICULTIES = ("easy", "medium", "hard")

router = APIRouter()


class Services:
    """Everything a request handler needs, built once per app."""

    def __init__(
        self,
        settings: Settings,
        store: QuestStore,
        tracker: ProgressTracker,
        feed: QuestFeed,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.store = store
        self.tracker = tracker
        self.feed = feed
        # upstream HTTP transport override, used by tests
        self.transport = transport


def get_services(request: Request) -> Services:
    return request.app.state.services


def parse_difficulty(value: Optional[str]) -> str:
    value = (value or "").strip().lower()
    return value if value in DIFFICULTIES else "medium"


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


async def read_limited_upload(upload: UploadFile, settings: Settings) -> bytes:
    """Reads at most one byte past the limit; the declared size is checked first."""
    limit = settings.max_upload_bytes
    too_large = HTTPException(
        status_code=413,
        detail=f"Please choose a PDF smaller than {settings.max_upload_mb}MB.",
    )
    if upload.size is not None and upload.size > limit:
        raise too_large
    data = await upload.read(limit + 1)
    if len(data) > limit:
        raise too_large
    return data


@router.get("/api/quests")
async def list_quests(services: Services = Depends(get_services)):
    try:
        quests = await services.store.load_all()
    except QuestStoreError:
        logger.exception("Failed to load quests")
        raise HTTPException(status_code=500, detail="Failed to load quests")
    return {"quests": [q.model_dump(mode="json") for q in quests]}


@router.post("/api/quests")
async def create_quest(
    quest_pdf: Optional[UploadFile] = File(None, alias="questPdf"),
    pdf: Optional[UploadFile] = File(None),
    difficulty: Optional[str] = Form(None),
    quest_title: Optional[str] = Form(None, alias="questTitle"),
    grade_level: Optional[str] = Form(None, alias="gradeLevel"),
    teacher_notes: Optional[str] = Form(None, alias="teacherNotes"),
    assigned_by: Optional[str] = Form(None, alias="assignedBy"),
    created_by: Optional[str] = Form(None, alias="createdBy"),
    services: Services = Depends(get_services),
):
    upload = quest_pdf or pdf
    if upload is None:
        raise HTTPException(status_code=400, detail="Missing questPdf file upload")

    pdf_bytes = await read_limited_upload(upload, services.settings)
    if not pdf_bytes:
        raise HTTPException(status_code=400, detail="Uploaded PDF is empty")
    if not pdf_bytes.startswith(b"%PDF"):
        raise HTTPException(status_code=415, detail="Uploaded file is not a PDF")

    generated = await generate_quest_from_pdf(
        pdf_bytes,
        parse_difficulty(difficulty),
        services.settings,
        services.store,
        quest_title=_clean(quest_title),
        grade_level=_clean(grade_level),
        teacher_notes=_clean(teacher_notes),
        assigned_by=_clean(assigned_by) or _clean(created_by),
        transport=services.transport,
    )
    quest = generated.quest

    try:
        await services.store.append(quest)
    except DuplicateQuestError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except QuestStoreError:
        logger.exception("Failed to store quest %s", quest.id)
        raise HTTPException(status_code=500, detail="Failed to create quest")

    await services.feed.publish(QUEST_CREATED, {"quest_id": quest.id, "title": quest.title})

    return JSONResponse(
        status_code=201,
        content={
            "success": True,
            "quest": quest.model_dump(mode="json"),
            "draft_summary": generated.draft_summary,
            "panels": generated.panel_paths,
            "panel_art": [art.model_dump() for art in generated.panel_art],
            "degraded": generated.degraded,
        },
    )


@router.post("/api/quests/{quest_id}/completions")
async def complete_quest(
    quest_id: str,
    submission: QuizSubmission,
    services: Services = Depends(get_services),
):
    try:
        quest = await services.store.get(quest_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Quest {quest_id} not found")
    except QuestStoreError:
        logger.exception("Failed to load quest %s", quest_id)
        raise HTTPException(status_code=500, detail="Failed to load quest")

    completion, entry = await services.tracker.record_completion(quest, submission)
    await services.feed.publish(
        QUEST_COMPLETED,
        {"quest_id": quest.id, "user_id": completion.user_id, "score": completion.score},
    )
    return JSONResponse(
        status_code=201,
        content={
            "completion": completion.model_dump(mode="json"),
            "leaderboard_entry": entry.model_dump(mode="json"),
        },
    )


@router.get("/api/history")
async def quest_history(user_id: Optional[str] = None, services: Services = Depends(get_services)):
    if user_id:
        history = await services.tracker.user_history(user_id)
    else:
        history = await services.tracker.global_history()
    return {"history": [h.model_dump(mode="json") for h in history]}


@router.get("/api/leaderboard")
async def leaderboard(services: Services = Depends(get_services)):
    entries = await services.tracker.leaderboard()
    return {"leaderboard": [e.model_dump(mode="json") for e in entries]}


@router.get("/api/analytics")
async def analytics(school_id: Optional[str] = None, services: Services = Depends(get_services)):
    history = await services.tracker.global_history()
    board = await services.tracker.leaderboard()
    return {
        "overview": class_overview(history, board, school_id).model_dump(),
        "students": [s.model_dump() for s in student_summaries(history, board, school_id)],
    }


@router.websocket("/ws/quests")
async def quest_events(websocket: WebSocket):
    feed: QuestFeed = websocket.app.state.services.feed
    await feed.connect(websocket)
    try:
        while True:
            # clients only listen; inbound frames keep the socket alive
            await websocket.receive_text()
    except WebSocketDisconnect:
        feed.disconnect(websocket)
