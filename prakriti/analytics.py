# prakriti/analytics.py
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from prakriti.schemas import LeaderboardRecord, QuestCompletion

# quest count at which a student's progress bar is full
PROGRESS_TARGET = 10


class ClassOverview(BaseModel):
    unique_students: int
    unique_quests: int
    total_completions: int
    avg_score: int
    total_coins: int
    total_points: int


class StudentSummary(BaseModel):
    user_id: str
    name: str
    points: int
    coin_balance: int
    quests: int
    average_score: int
    total_reward: int
    total_reward_coins: int
    last_quest: str = ""
    last_score: int = 0
    last_reward_points: int = 0
    last_reward_coins: int = 0
    progress_percent: int


def _round(value: float) -> int:
    return int(value + 0.5)


def _for_school(
    leaderboard: Sequence[LeaderboardRecord], school_id: Optional[str]
) -> List[LeaderboardRecord]:
    if not school_id:
        return list(leaderboard)
    return [entry for entry in leaderboard if entry.school_id == school_id]


def class_overview(
    history: Sequence[QuestCompletion],
    leaderboard: Sequence[LeaderboardRecord],
    school_id: Optional[str] = None,
) -> ClassOverview:
    students = _for_school(leaderboard, school_id)
    total = len(history)
    total_score = sum(entry.score for entry in history)
    return ClassOverview(
        unique_students=len(students),
        unique_quests=len({entry.quest_id for entry in history}),
        total_completions=total,
        avg_score=_round(total_score / total) if total else 0,
        total_coins=sum(entry.coins for entry in students),
        total_points=sum(entry.points for entry in students),
    )


def student_summaries(
    history: Sequence[QuestCompletion],
    leaderboard: Sequence[LeaderboardRecord],
    school_id: Optional[str] = None,
) -> List[StudentSummary]:
    per_user: Dict[str, List[QuestCompletion]] = {}
    for entry in history:
        per_user.setdefault(entry.user_id, []).append(entry)

    summaries = []
    for record in _for_school(leaderboard, school_id):
        entries = per_user.get(record.user_id, [])
        count = len(entries)
        # ISO timestamps sort chronologically
        last = max(entries, key=lambda e: e.completed_at) if entries else None
        summaries.append(
            StudentSummary(
                user_id=record.user_id,
                name=record.username,
                points=record.points,
                coin_balance=record.coins,
                quests=count,
                average_score=_round(sum(e.score for e in entries) / count) if count else 0,
                total_reward=sum(e.reward_points for e in entries),
                total_reward_coins=sum(e.reward_coins for e in entries),
                last_quest=last.quest_title if last else "",
                last_score=last.score if last else 0,
                last_reward_points=last.reward_points if last else 0,
                last_reward_coins=last.reward_coins if last else 0,
                progress_percent=min(100, _round(count / PROGRESS_TARGET * 100)),
            )
        )

    return sorted(summaries, key=lambda s: (s.points, s.average_score), reverse=True)
