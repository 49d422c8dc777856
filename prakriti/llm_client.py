# prakriti/llm_client.py
import base64
import json
import logging
from typing import List, Optional

import httpx
from pydantic import ValidationError

from prakriti.config import Settings
from prakriti.schemas import (
    DialogueLine,
    DraftQuizQuestion,
    DraftResult,
    PanelPlan,
    QuestDraft,
    QuizPlan,
    Rewards,
)

logger = logging.getLogger(__name__)

DEFAULT_QUEST_TITLE = "Climate Action Field Quest"

# points, coins per difficulty tier for the offline draft
FALLBACK_REWARDS = {
    "easy": (60, 30),
    "medium": (90, 45),
    "hard": (120, 60),
}

DRAFT_SCHEMA = """{
  "quest_title": string,
  "quest_summary": string,
  "quest_description": string,
  "positive_outcome": string,
  "panels": [
    {
      "panel_id": string,
      "layout": "full" | "split",
      "headline": string,
      "narration": string,
      "realtime_anchor": string,
      "dialogue": [{"speaker": string, "line": string}],
      "sustainable_actions": string[],
      "sdg_alignment": string,
      "nep2020_link": string,
      "image_prompt": string
    }
  ],
  "quiz": {
    "passing_score": number,
    "time_limit_seconds": number,
    "questions": [
      {
        "id": string,
        "question": string,
        "options": string[],
        "correct_option": number,
        "explanation": string
      }
    ]
  },
  "rewards": {
    "points": number,
    "coins": number
  }
}"""

PROMPT_SECTIONS = [
    "You are an education-focused storyteller and assessment designer helping teachers build quests for children aged 8-13.",
    "The teacher uploaded a PDF with reference material. Read it carefully and extract the key themes, facts, and emotional beats.",
    "Create a comic style quest narrative that strictly stays relevant to the PDF information.",
    "Requirements:",
    "- Theme must highlight Sustainable Development Goal 13 (Climate Action) and explicitly weave in National Education Policy 2020 classroom principles (experiential, joyful, multidisciplinary, real-world problem solving).",
    "- Focus on real-time, relatable situations learners might encounter in their school or community.",
    "- The main characters are children who collaborate and make intentional sustainable choices.",
    "- Story must conclude with a hopeful, positive impact showing measurable change.",
    "Comic layout constraints:",
    "1. Produce a maximum of 5 panels.",
    '2. Panel 1 layout is always "full" (single immersive image).',
    '3. Panels 2-5 should be "split" layouts where each panel can collage up to 3 key moments.',
    "4. Provide rich visual directions for each panel so an artist can compose them accurately.",
    "5. Include concrete references to observed actions, props, settings, emotions, lighting, and time of day.",
    "6. Highlight how SDG13 and NEP2020 ideas appear inside the scene.",
    "Quiz requirements:",
    "- Build exactly 3 multiple choice questions.",
    "- Each question has 4 options.",
    "- The correct_option must be a zero-based index.",
    "- Provide a concise explanation that references the story.",
    "- Set passing_score to 70 and time_limit_seconds to 240 unless you have a better reason to adjust.",
    "Response format: Return only valid JSON following this schema:\n" + DRAFT_SCHEMA,
]


def _fallback_panels(title: str) -> List[PanelPlan]:
    return [
        PanelPlan(
            panel_id="p1",
            layout="full",
            headline=f"{title}: The Wake-Up",
            narration="A monsoon morning reveals flooded streets around the school. Students gather with their teacher to plan climate action.",
            realtime_anchor="Morning assembly with live updates on rainfall and flood alerts for the district.",
            dialogue=[
                DialogueLine(speaker="Teacher Asha", line="Team, this is our chance to apply NEP2020 experiential learning!"),
                DialogueLine(speaker="Riya", line="Let's map the water flow and protect our neighborhood!"),
            ],
            sustainable_actions=["Conduct local climate observations", "Use data from IMD apps"],
            sdg_alignment="SDG13 Target 13.3: Improve education and awareness on climate change mitigation and adaptation.",
            nep2020_link="Experiential, joyful learning through real community challenges.",
            image_prompt="Vibrant school courtyard under grey clouds, students in raincoats examining flood map projections on a tablet, teacher encouraging them. Comic style, dynamic lighting.",
        ),
        PanelPlan(
            panel_id="p2",
            layout="split",
            headline="Community Climate Audit",
            narration="Students split into teams capturing photos, interviews, and soil readings.",
            realtime_anchor="Students gather geo-tagged evidence near waterlogged lanes and rooftops.",
            dialogue=[
                DialogueLine(speaker="Arjun", line="Soil is compacted; no rain can soak in!"),
                DialogueLine(speaker="Mia", line="We'll propose rain gardens to the ward officer."),
            ],
            sustainable_actions=["Citizen-science data collection", "Interviewing elders about traditional rain practices"],
            sdg_alignment="SDG13 Target 13.2: Integrate climate measures into local planning.",
            nep2020_link="Multidisciplinary project integrating science, geography, and civic studies.",
            image_prompt="Comic collage showing students using smartphones for surveys, another team testing soil with jars, grandparents sharing stories under umbrellas.",
        ),
        PanelPlan(
            panel_id="p3",
            layout="split",
            headline="Design Lab Sprint",
            narration="Back in the makerspace, teams convert findings into prototypes.",
            realtime_anchor="Students apply design thinking toolkit referencing their field data.",
            dialogue=[
                DialogueLine(speaker="Neha", line="Permeable tiles will reduce surface runoff near the library."),
                DialogueLine(speaker="Kabir", line="Let's 3D-print mini flood gates for the drains!"),
            ],
            sustainable_actions=["Creating models of permeable pavements", "Planning rainwater harvesting barrels"],
            sdg_alignment="SDG13 Target 13.b: Promote climate resilience in marginalized communities.",
            nep2020_link="STEAM integration with hands-on, collaborative problem solving.",
            image_prompt="Indoor maker lab, students assembling scale models, laptops open with rainfall simulations, comic energy, joyful teamwork.",
        ),
        PanelPlan(
            panel_id="p4",
            layout="split",
            headline="Community Pitch Day",
            narration="Students present to parents, local officials, and eco-club members.",
            realtime_anchor="Town hall with live dashboards, rainfall mitigation metrics, and budget notes.",
            dialogue=[
                DialogueLine(speaker="Parent", line="Your rain garden plan can protect our playground!"),
                DialogueLine(speaker="Ward Officer", line="We will provide saplings and compost for your design."),
            ],
            sustainable_actions=["Public storytelling with data visualisations", "Securing civic partnership for implementation"],
            sdg_alignment="SDG13 Target 13.1: Strengthen resilience to climate-related hazards.",
            nep2020_link="Community engagement and social responsibility emphasised by NEP2020.",
            image_prompt="Comic split scene of students presenting posters and digital dashboards, audience applauding, local leaders nodding.",
        ),
        PanelPlan(
            panel_id="p5",
            layout="split",
            headline="Impact and Reflection",
            narration="Weeks later, the neighborhood enjoys safer pathways and lush micro rain forests.",
            realtime_anchor="Students monitor impact via rainfall gauges and reflection journals.",
            dialogue=[
                DialogueLine(speaker="Riya", line="Flood alerts dropped by half after the rain garden!"),
                DialogueLine(speaker="Teacher Asha", line="Climate literacy in action - bravo, team!"),
            ],
            sustainable_actions=["Citizen-led monitoring", "Maintaining rain gardens and saplings"],
            sdg_alignment="SDG13: Visible reduction in local flood risk and increased awareness.",
            nep2020_link="Continuous reflective learning and local language storytelling.",
            image_prompt="Comic-style celebration scene, kids tending rain garden, clean street, data dashboard displaying lower flood markers.",
        ),
    ]


def _fallback_quiz(title: str) -> QuizPlan:
    return QuizPlan(
        passing_score=70,
        time_limit_seconds=240,
        questions=[
            DraftQuizQuestion(
                id="q1",
                question=f'Why did the team choose to study real flood data for "{title}"?',
                options=[
                    "To memorise textbook definitions",
                    "To design solutions based on local realities",
                    "To avoid working with the community",
                    "To collect trophies for the school",
                ],
                correct_option=1,
                explanation="Field data helped them create NEP2020-aligned, real-world climate solutions.",
            ),
            DraftQuizQuestion(
                id="q2",
                question="Which NEP2020 principle guided their makerspace sprint?",
                options=[
                    "Rote repetition",
                    "Experiential, multidisciplinary design thinking",
                    "Solo worksheets at home",
                    "Copying another school project",
                ],
                correct_option=1,
                explanation="They collaborated across subjects, building joyful prototypes to solve community issues.",
            ),
            DraftQuizQuestion(
                id="q3",
                question="What SDG13 impact did the community observe after implementation?",
                options=[
                    "Increased plastic usage",
                    "Reduced flood alerts and greener spaces",
                    "More traffic jams",
                    "Less student involvement",
                ],
                correct_option=1,
                explanation="Their rain garden and awareness drives lowered flood risk and improved sustainability.",
            ),
        ],
    )


def fallback_quest_draft(
    difficulty: str,
    quest_title: Optional[str] = None,
    grade_level: Optional[str] = None,
    teacher_notes: Optional[str] = None,
) -> QuestDraft:
    """Deterministic offline draft: 5 panels, 3 questions, difficulty-tiered rewards."""
    title = quest_title or DEFAULT_QUEST_TITLE
    notes_line = f" Teacher note: {teacher_notes}." if teacher_notes else ""
    grade_line = f" Designed for learners in {grade_level}." if grade_level else ""
    points, coins = FALLBACK_REWARDS.get(difficulty, FALLBACK_REWARDS["medium"])

    return QuestDraft(
        quest_title=title,
        quest_summary=(
            "Students lead a climate resilience mission analysing real flood data "
            f"and co-creating solutions.{grade_line}"
        ),
        quest_description=(
            "A hands-on SDG13 quest where learners document climate risks, experiment with "
            f"NEP2020-aligned prototypes, and mobilise their neighbourhood.{notes_line}"
        ),
        positive_outcome="Flood alerts reduce, rain gardens thrive, and students evolve into climate champions.",
        panels=_fallback_panels(title),
        quiz=_fallback_quiz(title),
        rewards=Rewards(points=points, coins=coins),
    )


def build_draft_prompt(
    difficulty: str,
    quest_title: Optional[str] = None,
    grade_level: Optional[str] = None,
    teacher_notes: Optional[str] = None,
) -> str:
    context_hints = []
    if quest_title:
        context_hints.append(f"Working title: {quest_title}")
    if grade_level:
        context_hints.append(f"Target grade level or age band: {grade_level}")
    if teacher_notes:
        context_hints.append(f"Teacher notes: {teacher_notes}")
    context_hints.append(f"Desired difficulty: {difficulty}")

    return "\n".join(PROMPT_SECTIONS) + "\nAdditional context:\n- " + "\n- ".join(context_hints)


def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


async def call_gemini_api(
    prompt: str,
    pdf_bytes: bytes,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Sends the prompt plus the inline PDF and returns the decoded JSON draft payload."""
    url = f"{settings.gemini_api_url}/models/{settings.gemini_model}:generateContent"
    payload = {
        "contents": [
            {
                "role": "user",
                "parts": [
                    {"text": prompt},
                    {
                        "inlineData": {
                            "mimeType": "application/pdf",
                            "data": base64.b64encode(pdf_bytes).decode("ascii"),
                        }
                    },
                ],
            }
        ],
        "generationConfig": {
            "temperature": 0.8,
            "topP": 0.95,
            "topK": 40,
            "responseMimeType": "application/json",
        },
    }

    logger.info("Requesting quest draft from %s", settings.gemini_model)
    async with httpx.AsyncClient(timeout=settings.http_timeout, transport=transport) as client:
        resp = await client.post(url, params={"key": settings.gemini_api_key}, json=payload)
        resp.raise_for_status()
        body = resp.json()

    try:
        text = body["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as e:
        raise ValueError("Gemini response missing content") from e
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Gemini response missing content")

    try:
        return json.loads(_strip_fences(text))
    except json.JSONDecodeError as json_err:
        logger.error("Failed to decode JSON from Gemini draft text: %.200s", text)
        raise ValueError(f"Invalid JSON output structure from Gemini: {json_err}") from json_err


async def request_draft_or_fallback(
    pdf_bytes: bytes,
    difficulty: str,
    settings: Settings,
    quest_title: Optional[str] = None,
    grade_level: Optional[str] = None,
    teacher_notes: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> DraftResult:
    """
    Tries the live text model once, then degrades to the offline draft.
    Never raises for upstream problems; the result says whether it is degraded.
    """
    def offline(reason: str) -> DraftResult:
        logger.info("Falling back to offline quest draft (%s).", reason)
        draft = fallback_quest_draft(difficulty, quest_title, grade_level, teacher_notes)
        return DraftResult(draft=draft, degraded=True, reason=reason)

    if settings.use_gemini_stub:
        return offline("stubbed")
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; skipping live draft request.")
        return offline("missing credential")

    prompt = build_draft_prompt(difficulty, quest_title, grade_level, teacher_notes)
    try:
        data = await call_gemini_api(prompt, pdf_bytes, settings, transport=transport)
        draft = QuestDraft.model_validate(data)
        logger.info("Generated quest draft '%s' with %d panels", draft.quest_title, len(draft.panels))
        return DraftResult(draft=draft)
    except (httpx.HTTPError, ValueError, ValidationError) as e:
        logger.warning(
            "Gemini draft request failed or returned an invalid draft. Model attempted: %s",
            settings.gemini_model,
            exc_info=True,
        )
        return offline(type(e).__name__)
