# prakriti/quest_store.py
import asyncio
import json
import logging
import os
import tempfile
from typing import List

from pydantic import ValidationError

from prakriti.schemas import Quest

logger = logging.getLogger(__name__)


class QuestStoreError(Exception):
    """Raised when the quest files cannot be read or written."""


class DuplicateQuestError(QuestStoreError):
    pass


class QuestStore:
    """
    Seed quests plus a generated-quests JSON file ({"quests": [...]}).
    Appends are serialized by a lock and land on disk with an atomic replace.
    """

    def __init__(self, seed_path: str, generated_path: str):
        self.seed_path = seed_path
        self.generated_path = generated_path
        self._lock = asyncio.Lock()

    def _read_file(self, path: str) -> List[Quest]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as e:
            raise QuestStoreError(f"Failed to read quests from {path}: {e}") from e

        quests = raw.get("quests") if isinstance(raw, dict) else None
        if not isinstance(quests, list):
            return []
        try:
            return [Quest.model_validate(q) for q in quests]
        except ValidationError as e:
            raise QuestStoreError(f"Malformed quest record in {path}") from e

    def _write_generated(self, quests: List[Quest]) -> None:
        directory = os.path.dirname(self.generated_path) or "."
        payload = {"quests": [q.model_dump(mode="json") for q in quests]}
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".quests-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, ensure_ascii=False)
                os.replace(tmp_path, self.generated_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise QuestStoreError(f"Failed to write {self.generated_path}: {e}") from e

    def seed_quests(self) -> List[Quest]:
        return self._read_file(self.seed_path)

    def generated_quests(self) -> List[Quest]:
        return self._read_file(self.generated_path)

    def _load_all(self) -> List[Quest]:
        return self.seed_quests() + self.generated_quests()

    def _append(self, quest: Quest) -> int:
        generated = self.generated_quests()
        known_ids = {q.id for q in generated} | {q.id for q in self.seed_quests()}
        if quest.id in known_ids:
            raise DuplicateQuestError(f"Quest id already exists: {quest.id}")
        self._write_generated([quest] + generated)
        return len(generated) + 1

    async def load_all(self) -> List[Quest]:
        """Seed quests first, then generated quests newest-first."""
        return await asyncio.to_thread(self._load_all)

    async def get(self, quest_id: str) -> Quest:
        for quest in await self.load_all():
            if quest.id == quest_id:
                return quest
        raise KeyError(quest_id)

    async def append(self, quest: Quest) -> None:
        # serialized in-process; file work runs in a worker thread
        async with self._lock:
            count = await asyncio.to_thread(self._append, quest)
        logger.info("Stored quest %s (%d generated quests)", quest.id, count)

    def fallback_story_paths(self) -> List[str]:
        """Panel images of the first seed quest that has a story; the placeholder rotation."""
        try:
            seed = self.seed_quests()
        except QuestStoreError:
            logger.warning("Seed quests unreadable; no fallback panel rotation", exc_info=True)
            return []
        for quest in seed:
            if quest.content.story:
                return [panel.image_path for panel in quest.content.story if panel.image_path]
        return []
