# prakriti/quest_generation.py
import asyncio
import logging
import uuid
from typing import Optional

import httpx

from prakriti.config import Settings
from prakriti.llm_client import DEFAULT_QUEST_TITLE, request_draft_or_fallback
from prakriti.panel_renderer import render_panels
from prakriti.quest_builder import build_quest
from prakriti.quest_store import QuestStore
from prakriti.schemas import GeneratedQuest

logger = logging.getLogger(__name__)


async def generate_quest_from_pdf(
    pdf_bytes: bytes,
    difficulty: str,
    settings: Settings,
    store: QuestStore,
    quest_title: Optional[str] = None,
    grade_level: Optional[str] = None,
    teacher_notes: Optional[str] = None,
    assigned_by: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> GeneratedQuest:
    """Draft -> panel art -> assembled quest. Persisting the result is the caller's job."""
    draft_result = await request_draft_or_fallback(
        pdf_bytes,
        difficulty,
        settings,
        quest_title=quest_title,
        grade_level=grade_level,
        teacher_notes=teacher_notes,
        transport=transport,
    )
    draft = draft_result.draft

    render_result = await render_panels(
        f"quest-{uuid.uuid4()}",
        draft.quest_title or quest_title or DEFAULT_QUEST_TITLE,
        draft.panels,
        settings,
        fallback_paths=await asyncio.to_thread(store.fallback_story_paths),
        transport=transport,
    )

    quest = build_quest(draft, difficulty, render_result.art, created_by=assigned_by)
    degraded = draft_result.degraded or render_result.degraded
    if degraded:
        logger.warning(
            "Quest %s generated with offline content (draft: %s, panels: %s)",
            quest.id,
            draft_result.reason or "live",
            render_result.reason or "live",
        )

    return GeneratedQuest(
        quest=quest,
        draft_summary=draft.quest_summary,
        panel_paths={art.panel_id: art.image_path for art in render_result.art},
        panel_art=render_result.art,
        degraded=degraded,
    )
