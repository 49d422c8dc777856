# prakriti/schemas.py
from pydantic import BaseModel, Field, model_validator
from typing import Dict, List, Literal, Optional

Difficulty = Literal["easy", "medium", "hard"]
PanelLayout = Literal["full", "split"]


# --- Draft shapes returned by the text model ---

class DialogueLine(BaseModel):
    speaker: str
    line: str


class PanelPlan(BaseModel):
    panel_id: str = ""
    layout: PanelLayout = "split"
    headline: str = ""
    narration: str = ""
    realtime_anchor: str = ""
    dialogue: List[DialogueLine] = Field(default_factory=list)
    sustainable_actions: List[str] = Field(default_factory=list)
    sdg_alignment: str = ""
    nep2020_link: str = ""
    image_prompt: str = ""


class DraftQuizQuestion(BaseModel):
    id: str = ""
    question: str
    options: List[str] = Field(..., min_length=2)
    # zero-based index into options
    correct_option: int = Field(..., ge=0)
    explanation: Optional[str] = None

    @model_validator(mode="after")
    def _correct_option_in_range(self):
        if self.correct_option >= len(self.options):
            raise ValueError(
                f"correct_option {self.correct_option} out of range for {len(self.options)} options"
            )
        return self


class QuizPlan(BaseModel):
    passing_score: int = 70
    time_limit_seconds: int = 240
    questions: List[DraftQuizQuestion] = Field(..., min_length=1)


class Rewards(BaseModel):
    # either may be omitted by the model; the assembler fills defaults per field
    points: Optional[int] = None
    coins: Optional[int] = None


class QuestDraft(BaseModel):
    quest_title: str = Field(..., min_length=1)
    quest_summary: str = ""
    quest_description: str = ""
    positive_outcome: str = ""
    panels: List[PanelPlan] = Field(..., min_length=1)
    quiz: QuizPlan
    rewards: Optional[Rewards] = None


class PanelArt(BaseModel):
    panel_id: str
    image_path: str = Field(..., min_length=1)


# --- Persisted quest shape ---

class StoryPanel(BaseModel):
    id: str
    title: Optional[str] = None
    caption: str
    dialogue: Optional[str] = None
    image_prompt: str
    image_path: str = Field(..., min_length=1)


class QuizQuestion(BaseModel):
    id: str
    question: str
    options: List[str]
    correct_answer: int
    explanation: Optional[str] = None


class QuizContent(BaseModel):
    questions: List[QuizQuestion]
    time_limit: Optional[int] = None
    passing_score: int = 0
    story: List[StoryPanel] = Field(default_factory=list)


class Quest(BaseModel):
    id: str
    title: str
    description: str
    type: Literal["quiz"] = "quiz"
    difficulty: Difficulty
    content: QuizContent
    reward_points: int
    reward_coins: int
    assigned_by: Optional[str] = None
    is_active: bool = True
    expires_at: Optional[str] = None
    created_at: str


# --- Student progress ---

class QuizSubmission(BaseModel):
    user_id: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    school_id: Optional[str] = None
    # -1 marks a skipped question
    answers: List[int]
    time_taken: int = Field(0, ge=0)


class QuestCompletion(BaseModel):
    id: str
    user_id: str
    username: str
    quest_id: str
    quest_title: str
    quest_type: str = "quiz"
    answers: List[int]
    time_taken: int = 0
    score: int
    status: str = "completed"
    feedback: str
    is_perfect: bool
    reward_points: int
    reward_coins: int
    completed_at: str


class LeaderboardRecord(BaseModel):
    user_id: str
    username: str
    school_id: Optional[str] = None
    points: int = 0
    coins: int = 0
    updated_at: str


# --- Pipeline outcomes ---

class DraftResult(BaseModel):
    draft: QuestDraft
    degraded: bool = False
    reason: Optional[str] = None


class RenderResult(BaseModel):
    art: List[PanelArt]
    degraded: bool = False
    reason: Optional[str] = None


class GeneratedQuest(BaseModel):
    quest: Quest
    draft_summary: str
    panel_paths: Dict[str, str]
    panel_art: List[PanelArt]
    degraded: bool = False
