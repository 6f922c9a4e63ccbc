# schemas.py
from pydantic import BaseModel
from typing import Any, Dict, List, Optional, Literal

QuestionType = Literal["OPEN", "SCALE", "CHOICE", "YES_NO", "STAR_RATING", "RANKING", "PROBE"]
FieldType = Literal["text", "email", "number", "select", "tel"]
SurveyStatus = Literal["DRAFT", "COLLECTING", "ANALYSING", "COMPLETED"]

class SurveyCreate(BaseModel):
    title: str
    goal: Optional[str] = None
    target_audience: Optional[str] = None
    context: Optional[str] = None

class SurveyUpdate(BaseModel):
    title: Optional[str] = None
    goal: Optional[str] = None
    target_audience: Optional[str] = None
    context: Optional[str] = None
    status: Optional[SurveyStatus] = None

class RespondentFieldIn(BaseModel):
    label: str
    field_type: FieldType = "text"
    is_required: bool = False
    options: Optional[List[str]] = None

class FieldsReplace(BaseModel):
    fields: List[RespondentFieldIn] = []

class QuestionIn(BaseModel):
    text: str
    type: QuestionType = "OPEN"
    category: str = "general"
    options: Optional[List[str]] = None
    scale_min: int = 1
    scale_max: int = 10
    scale_min_label: Optional[str] = "Not at all"
    scale_max_label: Optional[str] = "Absolutely"
    star_count: int = 5
    is_required: bool = False
    allow_followup: bool = True

class QuestionsReplace(BaseModel):
    questions: List[QuestionIn] = []

class GenerateQuestions(BaseModel):
    count: int = 7

class SessionStart(BaseModel):
    respondent_name: Optional[str] = None
    respondent_email: Optional[str] = None
    respondent_meta: Dict[str, Any] = {}

class AnswerSubmit(BaseModel):
    session_id: int
    turn_key: str
    question_id: Optional[int] = None
    answer: str = ""
    category: Optional[str] = None

class FollowUpRequest(BaseModel):
    question_text: str
    answer: str
    survey_goal: Optional[str] = None
    category: Optional[str] = None

class NotificationIn(BaseModel):
    message: Optional[str] = None
    type: Optional[str] = None

class FollowUpResult(BaseModel):
    should_follow_up: bool = False
    follow_up_question: Optional[str] = None
    reason: str = ""

class Theme(BaseModel):
    theme: str
    summary: str
    sentiment: float
    quotes: List[str] = []

class PainPoint(BaseModel):
    point: str
    severity: int
    evidence: str

class Opportunity(BaseModel):
    opportunity: str
    impact: Literal["High", "Med", "Low"]
    effort: Literal["High", "Med", "Low"]
    evidence: str

class ActionItem(BaseModel):
    action: str
    priority: Literal["Urgent", "High", "Med"]
    rationale: str

class AnalysisReport(BaseModel):
    executive_summary: str
    overall_sentiment: float
    nps_score: float
    response_count: int
    themes: List[Theme] = []
    pain_points: List[PainPoint] = []
    opportunities: List[Opportunity] = []
    action_plan: List[ActionItem] = []
