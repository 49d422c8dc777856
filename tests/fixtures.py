"""
Shared sample data and helpers for the quest service tests.
"""
import base64
import json
import os
import shutil
import tempfile
from typing import Callable, Dict, List, Optional

import httpx

from prakriti.config import Settings
from prakriti.schemas import (
    PanelPlan,
    Quest,
    QuizContent,
    QuizQuestion,
    StoryPanel,
)

SAMPLE_PDF = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\ntrailer << >>\n%%EOF\n"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-bytes"
SEED_PATHS = [f"/story-panels/seed/p{i}.png" for i in range(1, 4)]


class QuestFixtures:
    """Centralized sample data for all test modules."""

    @staticmethod
    def make_workspace() -> str:
        return tempfile.mkdtemp(prefix="prakriti-test-")

    @staticmethod
    def cleanup(path: str) -> None:
        shutil.rmtree(path, ignore_errors=True)

    @staticmethod
    def make_settings(workspace: str, **overrides) -> Settings:
        values = dict(
            data_dir=os.path.join(workspace, "data"),
            static_dir=os.path.join(workspace, "public"),
            gemini_api_key="test-gemini-key",
            nanobanana_api_key="test-nano-key",
            nanobanana_endpoints=["https://render.test/v1/comics:render"],
        )
        values.update(overrides)
        return Settings(**values)

    @staticmethod
    def stub_settings(workspace: str, **overrides) -> Settings:
        values = dict(use_gemini_stub=True, use_nanobanana_stub=True, use_image_stub=True)
        values.update(overrides)
        return QuestFixtures.make_settings(workspace, **values)

    @staticmethod
    def draft_payload(panel_count: int = 3, title: str = "River Guardians") -> Dict:
        """A live-looking draft as the text model would return it."""
        return {
            "quest_title": title,
            "quest_summary": "Kids restore a polluted river.",
            "quest_description": "A quest about river clean-up and monsoon readiness.",
            "positive_outcome": "The river runs clear again.",
            "panels": [
                {
                    "panel_id": f"p{i + 1}",
                    "layout": "full" if i == 0 else "split",
                    "headline": f"Scene {i + 1}",
                    "narration": f"Narration {i + 1}",
                    "realtime_anchor": f"Anchor {i + 1}",
                    "dialogue": [{"speaker": "Riya", "line": f"Line {i + 1}"}],
                    "sustainable_actions": ["Collect litter", "Plant reeds"],
                    "sdg_alignment": "SDG13",
                    "nep2020_link": "Experiential learning",
                    "image_prompt": f"Prompt {i + 1}",
                }
                for i in range(panel_count)
            ],
            "quiz": {
                "passing_score": 60,
                "time_limit_seconds": 300,
                "questions": [
                    {
                        "id": f"q{i + 1}",
                        "question": f"Question {i + 1}?",
                        "options": ["A", "B", "C", "D"],
                        "correct_option": i % 4,
                        "explanation": "Because.",
                    }
                    for i in range(3)
                ],
            },
            "rewards": {"points": 100, "coins": 50},
        }

    @staticmethod
    def gemini_text_response(payload) -> Dict:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        return {"candidates": [{"content": {"parts": [{"text": text}]}}]}

    @staticmethod
    def gemini_image_response(data: bytes = PNG_BYTES, mime_type: str = "image/png") -> Dict:
        return {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "Here is your panel"},
                            {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode()}},
                        ]
                    }
                }
            ]
        }

    @staticmethod
    def panel_plans(count: int = 3) -> List[PanelPlan]:
        payload = QuestFixtures.draft_payload(panel_count=count)
        return [PanelPlan.model_validate(p) for p in payload["panels"]]

    @staticmethod
    def sample_quest(
        quest_id: str = "river-guardians-1",
        reward_points: int = 100,
        reward_coins: int = 50,
        correct_answers: Optional[List[int]] = None,
        passing_score: int = 70,
    ) -> Quest:
        correct_answers = correct_answers if correct_answers is not None else [0, 1, 2]
        return Quest(
            id=quest_id,
            title="River Guardians",
            description="Restore the river.",
            difficulty="medium",
            content=QuizContent(
                questions=[
                    QuizQuestion(
                        id=f"q{i + 1}",
                        question=f"Question {i + 1}?",
                        options=["A", "B", "C", "D"],
                        correct_answer=answer,
                    )
                    for i, answer in enumerate(correct_answers)
                ],
                time_limit=240,
                passing_score=passing_score,
                story=[
                    StoryPanel(
                        id="p1",
                        caption="The river is choked with plastic.",
                        image_prompt="A polluted river",
                        image_path="/story-panels/river/p1.png",
                    )
                ],
            ),
            reward_points=reward_points,
            reward_coins=reward_coins,
            created_at="2025-03-01T10:00:00+00:00",
        )

    @staticmethod
    def write_seed(settings: Settings, quests: List[Quest]) -> None:
        os.makedirs(settings.data_dir, exist_ok=True)
        with open(settings.seed_quests_path, "w", encoding="utf-8") as f:
            json.dump({"quests": [q.model_dump(mode="json") for q in quests]}, f)


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it saw."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def recording_handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(recording_handler)
