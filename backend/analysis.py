"""Survey analysis: reduce every session of a survey into one report row."""
from __future__ import annotations
import logging
from typing import List, Protocol

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

import lifecycle
from lifecycle import ANALYSING, COLLECTING, COMPLETED
from models import Analysis, InterviewSession, Survey
from realtime import ANALYSIS_READY, EventHub
from schemas import ActionItem, AnalysisReport, Opportunity, PainPoint, Theme

log = logging.getLogger(__name__)


class NoSessionsError(Exception):
    pass


class AnalysisInProgressError(Exception):
    pass


class AnalysisFailed(Exception):
    pass


class AnalysisStrategy(Protocol):
    def build(self, survey: Survey, sessions: List[InterviewSession]) -> AnalysisReport: ...


def responses_frame(sessions: List[InterviewSession]) -> pd.DataFrame:
    rows = [
        {
            "session_id": s.id,
            "respondent": s.respondent_name,
            "category": r.category or "general",
            "is_probe": bool(r.is_probe),
            "question": r.question_text,
            "answer": r.answer,
        }
        for s in sessions
        for r in s.responses
    ]
    return pd.DataFrame(rows, columns=["session_id", "respondent", "category", "is_probe", "question", "answer"])


class TemplateAnalysis:
    """Deterministic placeholder analysis.

    Scores are fixed; themes are the question categories, each carrying its
    answer volume and the first few quotes.
    """

    SENTIMENT = 7.2
    NPS = 24.0
    MAX_QUOTES = 3

    def build(self, survey: Survey, sessions: List[InterviewSession]) -> AnalysisReport:
        n = len(sessions)
        goal = (survey.goal or "").strip() or "this product or experience"
        df = responses_frame(sessions)
        df = df[df["answer"].fillna("").str.strip() != ""]

        themes: List[Theme] = []
        for category, group in df.groupby("category", sort=True):
            label = "Follow-up detail" if category == "PROBE" else str(category).replace("_", " ").title()
            themes.append(Theme(
                theme=label,
                summary=f"{len(group)} answer{'s' if len(group) != 1 else ''} from "
                        f"{group['session_id'].nunique()} respondent{'s' if group['session_id'].nunique() != 1 else ''}.",
                sentiment=0.5,
                quotes=group["answer"].head(self.MAX_QUOTES).tolist(),
            ))
        if not themes:
            themes.append(Theme(
                theme="Perceived Value",
                summary="Respondents can clearly articulate what they expect to get from the experience "
                        "and how it fits into their workflow.",
                sentiment=0.5,
                quotes=[],
            ))

        return AnalysisReport(
            executive_summary=(
                f"We spoke with {n} respondent{'' if n == 1 else 's'} about \"{goal}\". Their feedback "
                "highlights a mix of clear value, specific friction points, and concrete opportunities to "
                "improve the experience. This report clusters what people said into themes you can act on."
            ),
            overall_sentiment=self.SENTIMENT,
            nps_score=self.NPS,
            response_count=n,
            themes=themes,
            pain_points=[PainPoint(
                point="Onboarding & clarity",
                severity=6,
                evidence="Several respondents mentioned moments of confusion or hesitation when first "
                         "trying the experience.",
            )],
            opportunities=[Opportunity(
                opportunity="Tighten first-time experience",
                impact="High",
                effort="Med",
                evidence="Comments suggest clearer guidance on first use would unlock more value, faster.",
            )],
            action_plan=[ActionItem(
                action="Redesign the first 5 minutes of the experience",
                priority="Urgent",
                rationale="Early moments shape overall sentiment; streamlining onboarding is the fastest "
                          "way to improve outcomes for new users.",
            )],
        )


class AnalysisAggregator:
    def __init__(self, hub: EventHub, strategy: AnalysisStrategy | None = None):
        self.hub = hub
        self.strategy = strategy or TemplateAnalysis()

    def analyse(self, db: Session, survey: Survey) -> Analysis:
        """Run one analysis pass and write a new Analysis row.

        Raises:
            AnalysisInProgressError: another run holds the survey in ANALYSING.
            NoSessionsError: nothing to analyse; status is back at COLLECTING.
            AnalysisFailed: the strategy or the write failed; status restored.
        """
        survey_id = survey.id
        prior = survey.status
        if prior == ANALYSING:
            raise AnalysisInProgressError("Analysis already running")
        try:
            lifecycle.transition(db, survey_id, prior, ANALYSING)
        except lifecycle.StaleStatus as e:
            raise AnalysisInProgressError(str(e))

        sessions = db.execute(
            select(InterviewSession)
            .where(InterviewSession.survey_id == survey_id)
            .options(selectinload(InterviewSession.responses))
            .order_by(InterviewSession.id)
        ).scalars().all()

        if not sessions:
            lifecycle.transition(db, survey_id, ANALYSING, COLLECTING)
            raise NoSessionsError("No sessions to analyze")

        try:
            report = self.strategy.build(survey, list(sessions))
            row = Analysis(survey_id=survey_id, **report.model_dump())
            db.add(row)
            db.commit()
        except Exception as e:
            db.rollback()
            log.error("analysis of survey %s failed: %s", survey_id, e)
            lifecycle.transition(db, survey_id, ANALYSING, COMPLETED if prior == COMPLETED else COLLECTING)
            raise AnalysisFailed(str(e)) from e

        lifecycle.transition(db, survey_id, ANALYSING, COMPLETED)
        db.refresh(row)
        self.hub.emit(survey_id, ANALYSIS_READY, {"survey_id": survey_id})
        log.info("analysis %s written for survey %s (%d sessions)", row.id, survey_id, row.response_count)
        return row
