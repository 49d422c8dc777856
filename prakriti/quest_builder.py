# prakriti/quest_builder.py
import re
import uuid
from datetime import datetime, timezone
from typing import Optional, Sequence

from prakriti.schemas import (
    PanelArt,
    PanelPlan,
    Quest,
    QuestDraft,
    QuizContent,
    QuizQuestion,
    StoryPanel,
)

FALLBACK_REWARD_POINTS = 80
FALLBACK_REWARD_COINS = 40
DEFAULT_PASSING_SCORE = 70
DEFAULT_TIME_LIMIT = 240
DEFAULT_SLUG = "sdg13-quest"
DEFAULT_DESCRIPTION = "A sustainability quest generated from your PDF."

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(text: str, max_length: int = 60) -> str:
    slug = _NON_SLUG.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")


def make_quest_id(title: str, now: Optional[datetime] = None) -> str:
    """<slug>-<epoch ms>-<random hex>; the hex suffix separates same-millisecond twins."""
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"{slugify(title) or DEFAULT_SLUG}-{millis}-{uuid.uuid4().hex[:6]}"


def _or_default(value: Optional[int], default: int) -> int:
    return value if value is not None else default


def build_caption(plan: PanelPlan) -> str:
    lines = [plan.narration]
    if plan.realtime_anchor:
        lines.append(f"Real-time context: {plan.realtime_anchor}")
    if plan.sustainable_actions:
        lines.append(f"Key sustainable actions: {', '.join(plan.sustainable_actions)}")
    return "\n".join(line for line in lines if line)


def build_quest(
    draft: QuestDraft,
    difficulty: str,
    panel_art: Sequence[PanelArt],
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Quest:
    """Merges a draft and its rendered panel art into a persisted Quest. No I/O."""
    now = now or datetime.now(timezone.utc)
    art_by_id = {}
    for art in panel_art:
        art_by_id.setdefault(art.panel_id, art.image_path)

    story = []
    for index, plan in enumerate(draft.panels):
        panel_id = plan.panel_id or f"p{index + 1}"
        # rendered art arrives in plan order; ids only cover short or reordered lists
        image_path = panel_art[index].image_path if index < len(panel_art) else None
        if not image_path:
            image_path = art_by_id.get(panel_id)
        if not image_path:
            raise ValueError(f"No panel art for {panel_id}")
        story.append(
            StoryPanel(
                id=panel_id,
                title=plan.headline or None,
                caption=build_caption(plan),
                dialogue="\n".join(f"{line.speaker}: {line.line}" for line in plan.dialogue),
                image_prompt=plan.image_prompt,
                image_path=image_path,
            )
        )

    questions = [
        QuizQuestion(
            id=question.id or f"q{index + 1}",
            question=question.question,
            options=list(question.options),
            correct_answer=question.correct_option,
            explanation=question.explanation,
        )
        for index, question in enumerate(draft.quiz.questions)
    ]

    rewards = draft.rewards
    return Quest(
        id=make_quest_id(draft.quest_title, now),
        title=draft.quest_title,
        description=draft.quest_summary or draft.quest_description or DEFAULT_DESCRIPTION,
        type="quiz",
        difficulty=difficulty,
        content=QuizContent(
            questions=questions,
            time_limit=draft.quiz.time_limit_seconds or DEFAULT_TIME_LIMIT,
            passing_score=draft.quiz.passing_score or DEFAULT_PASSING_SCORE,
            story=story,
        ),
        reward_points=_or_default(rewards.points if rewards else None, FALLBACK_REWARD_POINTS),
        reward_coins=_or_default(rewards.coins if rewards else None, FALLBACK_REWARD_COINS),
        assigned_by=created_by,
        is_active=True,
        created_at=now.isoformat(),
    )
