"""
Unit tests for assembling quests from drafts and panel art.
"""
import unittest
from datetime import datetime, timezone

from prakriti.llm_client import fallback_quest_draft
from prakriti.panel_renderer import fallback_assets
from prakriti.quest_builder import (
    FALLBACK_REWARD_COINS,
    FALLBACK_REWARD_POINTS,
    build_quest,
    make_quest_id,
    slugify,
)
from prakriti.schemas import PanelArt, QuestDraft
from tests.fixtures import SEED_PATHS, QuestFixtures

FIXED_NOW = datetime(2025, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


class TestSlugs(unittest.TestCase):

    def test_slugify(self):
        self.assertEqual(slugify("Climate Action: Field Quest!"), "climate-action-field-quest")
        self.assertEqual(slugify("  --Rain__Garden--  "), "rain-garden")
        self.assertEqual(slugify("!!!"), "")

    def test_slugify_is_deterministic_and_capped(self):
        title = "A very long quest title " * 10
        self.assertEqual(slugify(title), slugify(title))
        self.assertLessEqual(len(slugify(title)), 60)
        self.assertFalse(slugify(title).endswith("-"))

    def test_same_millisecond_ids_do_not_collide(self):
        first = make_quest_id("Rain Garden", FIXED_NOW)
        second = make_quest_id("Rain Garden", FIXED_NOW)

        self.assertNotEqual(first, second)
        millis = str(int(FIXED_NOW.timestamp() * 1000))
        self.assertTrue(first.startswith(f"rain-garden-{millis}-"))

    def test_empty_slug_gets_default(self):
        self.assertTrue(make_quest_id("???", FIXED_NOW).startswith("sdg13-quest-"))


class TestBuildQuest(unittest.TestCase):

    def setUp(self):
        self.draft = QuestDraft.model_validate(QuestFixtures.draft_payload(panel_count=4))
        self.art = fallback_assets(self.draft.panels, SEED_PATHS)

    def test_story_matches_panel_plans(self):
        quest = build_quest(self.draft, "hard", self.art, created_by="teacher1", now=FIXED_NOW)

        self.assertEqual(len(quest.content.story), len(self.draft.panels))
        self.assertTrue(all(panel.image_path for panel in quest.content.story))
        self.assertEqual(quest.content.story[3].image_path, SEED_PATHS[0])
        self.assertEqual(quest.assigned_by, "teacher1")
        self.assertEqual(quest.difficulty, "hard")
        self.assertEqual(quest.type, "quiz")
        self.assertTrue(quest.is_active)
        self.assertEqual(quest.created_at, FIXED_NOW.isoformat())

    def test_panel_text_is_flattened(self):
        quest = build_quest(self.draft, "easy", self.art, now=FIXED_NOW)
        panel = quest.content.story[0]

        self.assertEqual(panel.id, "p1")
        self.assertEqual(panel.title, "Scene 1")
        self.assertEqual(
            panel.caption,
            "Narration 1\nReal-time context: Anchor 1\nKey sustainable actions: Collect litter, Plant reeds",
        )
        self.assertEqual(panel.dialogue, "Riya: Line 1")
        self.assertEqual(panel.image_prompt, "Prompt 1")

    def test_questions_and_rewards(self):
        quest = build_quest(self.draft, "medium", self.art, now=FIXED_NOW)

        self.assertEqual([q.correct_answer for q in quest.content.questions], [0, 1, 2])
        self.assertEqual(quest.content.passing_score, 60)
        self.assertEqual(quest.content.time_limit, 300)
        self.assertEqual((quest.reward_points, quest.reward_coins), (100, 50))
        self.assertEqual(quest.description, "Kids restore a polluted river.")

    def test_missing_rewards_and_ids_get_defaults(self):
        payload = QuestFixtures.draft_payload()
        payload["rewards"] = None
        payload["quest_summary"] = ""
        payload["quiz"]["questions"][1]["id"] = ""
        draft = QuestDraft.model_validate(payload)

        quest = build_quest(draft, "medium", fallback_assets(draft.panels, SEED_PATHS), now=FIXED_NOW)

        self.assertEqual((quest.reward_points, quest.reward_coins), (FALLBACK_REWARD_POINTS, FALLBACK_REWARD_COINS))
        self.assertEqual(quest.content.questions[1].id, "q2")
        self.assertEqual(quest.description, draft.quest_description)

    def test_partial_rewards_default_per_field(self):
        payload = QuestFixtures.draft_payload()
        payload["rewards"] = {"points": 100}
        draft = QuestDraft.model_validate(payload)

        quest = build_quest(draft, "medium", self.art, now=FIXED_NOW)

        self.assertEqual((quest.reward_points, quest.reward_coins), (100, FALLBACK_REWARD_COINS))

    def test_zero_reward_is_kept(self):
        payload = QuestFixtures.draft_payload()
        payload["rewards"] = {"points": 0, "coins": 5}
        draft = QuestDraft.model_validate(payload)

        quest = build_quest(draft, "medium", self.art, now=FIXED_NOW)

        self.assertEqual((quest.reward_points, quest.reward_coins), (0, 5))

    def test_repeated_panel_ids_keep_their_own_art(self):
        payload = QuestFixtures.draft_payload(panel_count=3)
        for panel in payload["panels"]:
            panel["panel_id"] = "scene"
        draft = QuestDraft.model_validate(payload)
        art = [PanelArt(panel_id="scene", image_path=f"/art/{i}.png") for i in range(3)]

        quest = build_quest(draft, "easy", art, now=FIXED_NOW)

        self.assertEqual([p.image_path for p in quest.content.story], ["/art/0.png", "/art/1.png", "/art/2.png"])

    def test_art_matched_by_position_when_ids_differ(self):
        art = [PanelArt(panel_id=f"x{i}", image_path=f"/art/{i}.png") for i in range(4)]

        quest = build_quest(self.draft, "easy", art, now=FIXED_NOW)

        self.assertEqual([p.image_path for p in quest.content.story], [f"/art/{i}.png" for i in range(4)])

    def test_missing_art_is_rejected(self):
        with self.assertRaises(ValueError):
            build_quest(self.draft, "easy", self.art[:2], now=FIXED_NOW)

    def test_offline_draft_assembles(self):
        draft = fallback_quest_draft("hard")

        quest = build_quest(draft, "hard", fallback_assets(draft.panels, []), now=FIXED_NOW)

        self.assertEqual(len(quest.content.story), 5)
        self.assertEqual(len(quest.content.questions), 3)
        self.assertEqual((quest.reward_points, quest.reward_coins), (120, 60))


if __name__ == "__main__":
    unittest.main()
