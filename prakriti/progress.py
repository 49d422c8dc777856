# prakriti/progress.py
import json
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import redis.asyncio as redis
from pydantic import BaseModel

from prakriti.schemas import (
    LeaderboardRecord,
    QuestCompletion,
    Quest,
    QuizQuestion,
    QuizSubmission,
)

logger = logging.getLogger(__name__)

SKIPPED = -1
KEY_PREFIX = "prakriti:"
GLOBAL_HISTORY_KEY = f"{KEY_PREFIX}history"
# set of user ids with a leaderboard hash
LEADERBOARD_KEY = f"{KEY_PREFIX}leaderboard"

REWARD_POLICIES = ("perfect_only", "proportional")


def user_history_key(user_id: str) -> str:
    return f"{KEY_PREFIX}history:{user_id}"


def leaderboard_entry_key(user_id: str) -> str:
    return f"{LEADERBOARD_KEY}:{user_id}"


# --- Storage ---

class KeyValueStore:
    """
    Storage behind progress tracking: append-only JSON lists, counter hashes
    and member sets. Every call is atomic on its own, so several workers can
    share one backend without a read-modify-write of their own.
    """

    async def append_json(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def list_json(self, key: str) -> List[Any]:
        raise NotImplementedError

    async def increment_hash(
        self, key: str, increments: Dict[str, int], fields: Dict[str, str]
    ) -> Dict[str, str]:
        """Adds `increments`, overwrites `fields`, returns the whole hash afterwards."""
        raise NotImplementedError

    async def get_hash(self, key: str) -> Dict[str, str]:
        raise NotImplementedError

    async def add_member(self, key: str, member: str) -> None:
        raise NotImplementedError

    async def members(self, key: str) -> Set[str]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self._lists: Dict[str, List[str]] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._sets: Dict[str, Set[str]] = {}

    async def append_json(self, key: str, value: Any) -> None:
        self._lists.setdefault(key, []).append(json.dumps(value))

    async def list_json(self, key: str) -> List[Any]:
        return [json.loads(item) for item in self._lists.get(key, [])]

    async def increment_hash(
        self, key: str, increments: Dict[str, int], fields: Dict[str, str]
    ) -> Dict[str, str]:
        values = self._hashes.setdefault(key, {})
        for field, amount in increments.items():
            values[field] = str(int(values.get(field, 0)) + amount)
        values.update(fields)
        return dict(values)

    async def get_hash(self, key: str) -> Dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def add_member(self, key: str, member: str) -> None:
        self._sets.setdefault(key, set()).add(member)

    async def members(self, key: str) -> Set[str]:
        return set(self._sets.get(key, set()))


class RedisKeyValueStore(KeyValueStore):
    """
    Lists map onto Redis lists (RPUSH) and counters onto hashes (HINCRBY in a
    MULTI/EXEC pipeline), so concurrent workers never overwrite each other.
    """

    def __init__(self, redis_url: str):
        self.redis = redis.from_url(redis_url, decode_responses=True)
        logger.info(f"RedisKeyValueStore initialized with Redis URL: {redis_url}")

    async def append_json(self, key: str, value: Any) -> None:
        await self.redis.rpush(key, json.dumps(value))

    async def list_json(self, key: str) -> List[Any]:
        return [json.loads(item) for item in await self.redis.lrange(key, 0, -1)]

    async def increment_hash(
        self, key: str, increments: Dict[str, int], fields: Dict[str, str]
    ) -> Dict[str, str]:
        async with self.redis.pipeline(transaction=True) as pipe:
            for field, amount in increments.items():
                pipe.hincrby(key, field, amount)
            if fields:
                pipe.hset(key, mapping=fields)
            pipe.hgetall(key)
            results = await pipe.execute()
        return results[-1]

    async def get_hash(self, key: str) -> Dict[str, str]:
        return await self.redis.hgetall(key)

    async def add_member(self, key: str, member: str) -> None:
        await self.redis.sadd(key, member)

    async def members(self, key: str) -> Set[str]:
        return await self.redis.smembers(key)

    async def close(self) -> None:
        await self.redis.aclose()


def create_kv_store(backend: str, redis_url: str) -> KeyValueStore:
    if backend == "redis":
        return RedisKeyValueStore(redis_url)
    if backend != "memory":
        raise ValueError(f"Unknown key-value backend: {backend}")
    return InMemoryKeyValueStore()


# --- Scoring ---

class ScoreResult(BaseModel):
    score: int
    correct: int
    attempted: int

    @property
    def is_perfect(self) -> bool:
        return self.attempted > 0 and self.correct == self.attempted


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_submission(questions: Sequence[QuizQuestion], answers: Sequence[int]) -> ScoreResult:
    """Percentage over attempted questions only; SKIPPED answers are ignored."""
    correct = attempted = 0
    for index, question in enumerate(questions):
        answer = answers[index] if index < len(answers) else SKIPPED
        if answer == SKIPPED:
            continue
        attempted += 1
        if answer == question.correct_answer:
            correct += 1

    if not attempted:
        return ScoreResult(score=0, correct=0, attempted=0)
    score = _round_half_up(correct / attempted * 100)
    if correct < attempted:
        # a miss must never round up to a perfect run
        score = min(score, 99)
    return ScoreResult(score=score, correct=correct, attempted=attempted)


def award_rewards(quest: Quest, result: ScoreResult, policy: str = "perfect_only") -> Tuple[int, int]:
    if policy == "proportional":
        return (
            _round_half_up(quest.reward_points * result.score / 100),
            _round_half_up(quest.reward_coins * result.score / 100),
        )
    if policy != "perfect_only":
        raise ValueError(f"Unknown reward policy: {policy}")
    if result.is_perfect:
        return quest.reward_points, quest.reward_coins
    return 0, 0


def feedback_for(score: int, passing_score: int) -> str:
    return "Fantastic work!" if score >= passing_score else "Keep exploring and try again!"


# --- Tracking ---

class ProgressTracker:
    """Records quest completions and keeps the leaderboard in step."""

    def __init__(self, kv: KeyValueStore, reward_policy: str = "perfect_only"):
        if reward_policy not in REWARD_POLICIES:
            raise ValueError(f"Unknown reward policy: {reward_policy}")
        self.kv = kv
        self.reward_policy = reward_policy

    async def record_completion(
        self,
        quest: Quest,
        submission: QuizSubmission,
        now: Optional[datetime] = None,
    ) -> Tuple[QuestCompletion, LeaderboardRecord]:
        now = now or datetime.now(timezone.utc)
        result = score_submission(quest.content.questions, submission.answers)
        points, coins = award_rewards(quest, result, self.reward_policy)

        completion = QuestCompletion(
            id=f"completion-{quest.id}-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:6]}",
            user_id=submission.user_id,
            username=submission.username,
            quest_id=quest.id,
            quest_title=quest.title,
            quest_type=quest.type,
            answers=list(submission.answers),
            time_taken=submission.time_taken,
            score=result.score,
            feedback=feedback_for(result.score, quest.content.passing_score),
            is_perfect=result.is_perfect,
            reward_points=points,
            reward_coins=coins,
            completed_at=now.isoformat(),
        )
        record = completion.model_dump(mode="json")
        await self.kv.append_json(user_history_key(submission.user_id), record)
        await self.kv.append_json(GLOBAL_HISTORY_KEY, record)

        entry = await self._credit(submission, points, coins, now)
        logger.info(
            "User %s completed %s with %d%% (+%d points, +%d coins)",
            submission.user_id, quest.id, result.score, points, coins,
        )
        return completion, entry

    async def _credit(
        self, submission: QuizSubmission, points: int, coins: int, now: datetime
    ) -> LeaderboardRecord:
        fields = {
            "user_id": submission.user_id,
            "username": submission.username,
            "updated_at": now.isoformat(),
        }
        if submission.school_id:
            fields["school_id"] = submission.school_id
        values = await self.kv.increment_hash(
            leaderboard_entry_key(submission.user_id), {"points": points, "coins": coins}, fields
        )
        await self.kv.add_member(LEADERBOARD_KEY, submission.user_id)
        return LeaderboardRecord.model_validate(values)

    async def user_history(self, user_id: str) -> List[QuestCompletion]:
        records = await self.kv.list_json(user_history_key(user_id))
        return [QuestCompletion.model_validate(r) for r in records]

    async def global_history(self) -> List[QuestCompletion]:
        """Newest first."""
        records = await self.kv.list_json(GLOBAL_HISTORY_KEY)
        return [QuestCompletion.model_validate(r) for r in reversed(records)]

    async def leaderboard(self) -> List[LeaderboardRecord]:
        entries = []
        for user_id in await self.kv.members(LEADERBOARD_KEY):
            values = await self.kv.get_hash(leaderboard_entry_key(user_id))
            if values:
                entries.append(LeaderboardRecord.model_validate(values))
        return sorted(entries, key=lambda e: (e.points, e.coins, e.user_id), reverse=True)
