import os, json, logging, secrets
from typing import Optional
from dotenv import load_dotenv
from fastapi import FastAPI, Depends, HTTPException, Response as HTTPResponse, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import HTTPConnection
from sqlalchemy.orm import Session
from sqlalchemy import select, func, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import pandas as pd

from db import Base, engine, get_db
from models import Survey, RespondentField, Question, InterviewSession, Response, Analysis, Notification
from schemas import *
from security import TokenIdentity, get_current_user
from llm_followup import FollowUpJudge
from question_script import draft_questions, intro_message
from interview_engine import (
    InterviewEngine, PROBE, question_dict, SessionStartFailed, MissingRespondentFields,
    SessionClosed, OutOfOrderAnswer, AnswerRequired,
)
from analysis import AnalysisAggregator, TemplateAnalysis, NoSessionsError, AnalysisInProgressError, AnalysisFailed
from realtime import EventHub, ADMIN_TYPING_VIEW
import lifecycle

load_dotenv()
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("probeai")

app = FastAPI(title="ProbeAI Interview API")

origins = os.getenv("ORIGINS", "http://localhost:5173").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)

RESPONDENT_ERROR = "Something went wrong, please try again."

# Collaborators are built once per process and handed to routes via Depends
def build_services(target: FastAPI) -> None:
    hub = EventHub()
    judge = FollowUpJudge.from_env()
    target.state.identity = TokenIdentity.from_env()
    target.state.hub = hub
    target.state.judge = judge
    target.state.engine = InterviewEngine(judge=judge, hub=hub)
    target.state.aggregator = AnalysisAggregator(hub=hub, strategy=TemplateAnalysis())

build_services(app)

def get_hub(conn: HTTPConnection) -> EventHub:
    return conn.app.state.hub

def get_judge(conn: HTTPConnection) -> FollowUpJudge:
    return conn.app.state.judge

def get_engine(conn: HTTPConnection) -> InterviewEngine:
    return conn.app.state.engine

def get_aggregator(conn: HTTPConnection) -> AnalysisAggregator:
    return conn.app.state.aggregator

# ------------------------
# Helpers
# ------------------------
def _new_share_token() -> str:
    """Return an unguessable URL-safe capability string."""
    return secrets.token_urlsafe(9)

def _owned_survey(db: Session, survey_id: int, user_id: str) -> Survey:
    """Load a survey owned by the caller.

    Raises:
        HTTPException: 404 if missing or owned by someone else.
    """
    s = db.get(Survey, survey_id)
    if not s or s.owner_id != user_id:
        raise HTTPException(404, "Survey not found")
    return s

def _survey_row(s: Survey) -> dict:
    return {
        "id": s.id,
        "title": s.title,
        "goal": s.goal,
        "target_audience": s.target_audience,
        "context": s.context,
        "status": s.status,
        "share_token": s.share_token,
        "created_at": s.created_at,
    }

def _field_row(f: RespondentField) -> dict:
    return {
        "id": f.id, "label": f.label, "field_type": f.field_type,
        "is_required": bool(f.is_required), "options": f.options, "order_index": f.order_index,
    }

def _survey_detail(s: Survey) -> dict:
    out = _survey_row(s)
    out["questions"] = [question_dict(q) for q in sorted(s.questions, key=lambda q: (q.order_index, q.id))]
    out["respondent_fields"] = [_field_row(f) for f in sorted(s.fields, key=lambda f: (f.order_index, f.id))]
    return out

def _session_count(db: Session, survey_id: int) -> int:
    return db.execute(
        select(func.count()).select_from(InterviewSession).where(InterviewSession.survey_id == survey_id)
    ).scalar_one()

def _analysis_row(a: Analysis) -> dict:
    return {
        "id": a.id,
        "survey_id": a.survey_id,
        "executive_summary": a.executive_summary,
        "overall_sentiment": a.overall_sentiment,
        "nps_score": a.nps_score,
        "response_count": a.response_count,
        "themes": a.themes or [],
        "pain_points": a.pain_points or [],
        "opportunities": a.opportunities or [],
        "action_plan": a.action_plan or [],
        "created_at": a.created_at,
    }

@app.get("/health")
def health():
    """Basic readiness probe.

    Returns:
        dict: {"ok": True, "llm": bool}
    """
    return {"ok": True, "llm": app.state.judge.client is not None}

# ------------------------
# Researcher: surveys
# ------------------------
@app.post("/surveys")
def create_survey(payload: SurveyCreate, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """Create a DRAFT survey with a fresh share token (setup step 1).

    Args:
        payload (SurveyCreate): title (required), goal, target_audience, context.

    Returns:
        dict: the created survey row.

    Raises:
        HTTPException: 400 if title blank; 500 if no unique token could be generated.
    """
    title = (payload.title or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")

    for _ in range(5):
        survey = Survey(
            owner_id=user_id,
            title=title,
            goal=(payload.goal or "").strip() or None,
            target_audience=(payload.target_audience or "").strip() or None,
            context=(payload.context or "").strip() or None,
            status=lifecycle.DRAFT,
            share_token=_new_share_token(),
        )
        db.add(survey)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            continue
        db.refresh(survey)
        log.info("survey %s created by %s", survey.id, user_id)
        return _survey_row(survey)

    raise HTTPException(500, "Failed to generate a unique share token")

@app.get("/surveys")
def list_surveys(db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """List the caller's surveys, newest first, with question/session counts."""
    rows = db.execute(
        select(Survey).where(Survey.owner_id == user_id).order_by(Survey.created_at.desc(), Survey.id.desc())
    ).scalars().all()
    out = []
    for s in rows:
        item = _survey_row(s)
        item["question_count"] = len(s.questions)
        item["session_count"] = _session_count(db, s.id)
        out.append(item)
    return out

@app.get("/surveys/token/{token}")
def load_public_survey(token: str, db: Session = Depends(get_db)):
    """Resolve a share token to the respondent-facing survey (no auth).

    Raises:
        HTTPException: 404 if no survey holds the token.
    """
    s = db.execute(select(Survey).where(Survey.share_token == token)).scalar_one_or_none()
    if not s:
        raise HTTPException(404, "Survey not found")
    out = _survey_detail(s)
    out.pop("created_at", None)
    return out

@app.get("/surveys/{survey_id}")
def survey_detail(survey_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """Survey detail with ordered questions, respondent fields and session count."""
    s = _owned_survey(db, survey_id, user_id)
    out = _survey_detail(s)
    out["session_count"] = _session_count(db, s.id)
    return out

@app.patch("/surveys/{survey_id}")
def update_survey(survey_id: int, payload: SurveyUpdate, db: Session = Depends(get_db),
                  user_id: str = Depends(get_current_user)):
    """Edit survey text fields and/or move its status along the lifecycle.

    Raises:
        HTTPException: 404 if not owned; 409 for an illegal or stale transition,
            or for statuses only the analysis run may set.
    """
    s = _owned_survey(db, survey_id, user_id)
    for attr in ("title", "goal", "target_audience", "context"):
        value = getattr(payload, attr)
        if value is not None:
            value = value.strip()
            if attr == "title" and not value:
                raise HTTPException(400, "Title is required")
            setattr(s, attr, value or None)
    db.commit()

    target = payload.status
    if target and target != s.status:
        if target in lifecycle.MANAGED_STATUSES:
            raise HTTPException(409, f"Status {target} is set by the analysis run")
        try:
            lifecycle.transition(db, s.id, s.status, target)
        except lifecycle.IllegalTransition as e:
            raise HTTPException(409, str(e))
        except lifecycle.StaleStatus as e:
            raise HTTPException(409, str(e))
    db.refresh(s)
    return _survey_row(s)

@app.delete("/surveys/{survey_id}")
def delete_survey(survey_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """Hard-delete a survey and everything under it."""
    s = _owned_survey(db, survey_id, user_id)
    db.delete(s)
    db.commit()
    return {"ok": True}

@app.delete("/account")
def delete_account_data(db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """Remove all of the caller's surveys. The auth user itself is left alone."""
    rows = db.execute(select(Survey).where(Survey.owner_id == user_id)).scalars().all()
    for s in rows:
        db.delete(s)
    db.commit()
    return {"ok": True, "deleted": len(rows)}

# ------------------------
# Researcher: respondent fields & questions
# ------------------------
@app.post("/surveys/{survey_id}/fields")
def replace_fields(survey_id: int, body: FieldsReplace, db: Session = Depends(get_db),
                   user_id: str = Depends(get_current_user)):
    """Replace the onboarding fields (delete-all + reinsert, order = list position)."""
    s = _owned_survey(db, survey_id, user_id)
    try:
        db.execute(delete(RespondentField).where(RespondentField.survey_id == s.id))
        for i, f in enumerate(body.fields):
            label = f.label.strip()
            if not label:
                raise HTTPException(400, f"Field {i + 1} has no label")
            db.add(RespondentField(survey_id=s.id, label=label, field_type=f.field_type,
                                   is_required=f.is_required, options=f.options, order_index=i))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise HTTPException(500, str(e))
    except HTTPException:
        db.rollback()
        raise
    db.expire(s)
    return [_field_row(f) for f in s.fields]

@app.post("/surveys/{survey_id}/generate-questions")
def generate_questions(survey_id: int, body: GenerateQuestions, db: Session = Depends(get_db),
                       user_id: str = Depends(get_current_user)):
    """Draft questions from the survey goal. Nothing is saved."""
    s = _owned_survey(db, survey_id, user_id)
    return draft_questions(s.goal, body.count)

@app.post("/surveys/{survey_id}/questions")
def replace_questions(survey_id: int, body: QuestionsReplace, db: Session = Depends(get_db),
                      user_id: str = Depends(get_current_user)):
    """Replace the question list (delete-all + reinsert).

    Earlier responses keep their copied question text and category; their
    question link is cleared by the foreign key.
    """
    s = _owned_survey(db, survey_id, user_id)
    try:
        db.execute(delete(Question).where(Question.survey_id == s.id))
        for i, q in enumerate(body.questions):
            text = q.text.strip()
            if not text:
                raise HTTPException(400, f"Question {i + 1} has no text")
            db.add(Question(
                survey_id=s.id, text=text, type=q.type, category=(q.category or "general").strip() or "general",
                options=q.options, scale_min=q.scale_min, scale_max=q.scale_max,
                scale_min_label=q.scale_min_label, scale_max_label=q.scale_max_label,
                star_count=q.star_count, is_required=q.is_required, allow_followup=q.allow_followup,
                order_index=i,
            ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise HTTPException(500, str(e))
    except HTTPException:
        db.rollback()
        raise
    db.expire(s)
    return [question_dict(q) for q in s.questions]

@app.delete("/questions/{question_id}")
def delete_question(question_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """Delete one question of a survey the caller owns."""
    q = db.get(Question, question_id)
    if not q or q.survey.owner_id != user_id:
        raise HTTPException(status_code=404, detail="Question not found")
    db.delete(q)
    db.commit()
    return {"ok": True}

# ------------------------
# Researcher: collected data
# ------------------------
@app.get("/surveys/{survey_id}/sessions")
def list_sessions(survey_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """Sessions with response counts; the pull-based refresh for the dashboard."""
    s = _owned_survey(db, survey_id, user_id)
    rows = db.execute(
        select(InterviewSession, func.count(Response.id))
        .join(Response, Response.session_id == InterviewSession.id, isouter=True)
        .where(InterviewSession.survey_id == s.id)
        .group_by(InterviewSession.id)
        .order_by(InterviewSession.id)
    ).all()
    return [{
        "id": sess.id,
        "respondent_name": sess.respondent_name,
        "respondent_email": sess.respondent_email,
        "respondent_meta": sess.respondent_meta or {},
        "started_at": sess.started_at,
        "completed_at": sess.completed_at,
        "response_count": count,
    } for sess, count in rows]

@app.get("/surveys/{survey_id}/export.csv")
def export_csv(survey_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """Export every answered turn as CSV (by session, then answer order).

    Returns:
        Response: text/csv attachment `survey_<id>_responses.csv`.
    """
    s = _owned_survey(db, survey_id, user_id)
    q = select(
        InterviewSession.id.label("session_id"), InterviewSession.respondent_name, InterviewSession.respondent_email,
        InterviewSession.started_at, InterviewSession.completed_at,
        Response.question_text.label("question"), Response.category, Response.is_probe,
        Response.answer, Response.created_at.label("answered_at"),
    ).join(Response, Response.session_id == InterviewSession.id).where(
        InterviewSession.survey_id == s.id
    ).order_by(InterviewSession.id, Response.id)
    df = pd.read_sql(q, db.bind)
    csv_bytes = df.to_csv(index=False).encode("utf-8")
    return HTTPResponse(content=csv_bytes, media_type="text/csv",
                        headers={"Content-Disposition": f"attachment; filename=survey_{survey_id}_responses.csv"})

@app.post("/surveys/{survey_id}/analyse")
def analyse_survey(survey_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_current_user),
                   aggregator: AnalysisAggregator = Depends(get_aggregator)):
    """Run the analysis over every session of the survey.

    Returns:
        dict: {"analysis_id": int}

    Raises:
        HTTPException: 400 "No sessions to analyze"; 409 if a run is in flight;
            500 with the underlying message if the run fails.
    """
    s = _owned_survey(db, survey_id, user_id)
    try:
        row = aggregator.analyse(db, s)
    except NoSessionsError as e:
        raise HTTPException(400, str(e))
    except AnalysisInProgressError as e:
        raise HTTPException(409, str(e))
    except (AnalysisFailed, lifecycle.StaleStatus) as e:
        raise HTTPException(500, str(e))
    return {"analysis_id": row.id}

@app.get("/surveys/{survey_id}/analysis")
def latest_analysis(survey_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """Most recent analysis row for the survey."""
    s = _owned_survey(db, survey_id, user_id)
    a = db.execute(
        select(Analysis).where(Analysis.survey_id == s.id)
        .order_by(Analysis.created_at.desc(), Analysis.id.desc()).limit(1)
    ).scalar_one_or_none()
    if not a:
        raise HTTPException(404, "Analysis not found")
    return _analysis_row(a)

# ------------------------
# Researcher: notification log
# ------------------------
@app.post("/notifications")
def log_notification(body: NotificationIn, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """Store a dashboard notification for the caller. Best effort.

    Returns:
        dict: {"success": bool}; storage failures are logged, never raised.
    """
    message = (body.message or "").strip()
    if not message:
        return {"success": False}
    try:
        db.add(Notification(user_id=user_id, message=message, type=(body.type or "").strip() or "info"))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.warning("notification for %s not stored: %s", user_id, e)
        return {"success": False}
    return {"success": True}

# ------------------------
# Respondent: interview session
# ------------------------
def _public_survey(db: Session, survey_id: int) -> Survey:
    s = db.get(Survey, survey_id)
    if not s:
        raise HTTPException(404, "Survey not found")
    return s

def _session_of(db: Session, session_id: int, survey_id: Optional[int] = None) -> InterviewSession:
    sess = db.get(InterviewSession, session_id)
    if not sess or (survey_id is not None and sess.survey_id != survey_id):
        raise HTTPException(404, "Session not found")
    return sess

@app.post("/surveys/{survey_id}/sessions")
def start_session(survey_id: int, body: SessionStart, db: Session = Depends(get_db),
                  interview: InterviewEngine = Depends(get_engine)):
    """Create a respondent session from the onboarding form.

    Returns:
        dict: {"session_id", "intro", "question"}; `question` is the first turn.

    Raises:
        HTTPException: 404 unknown survey; 422 missing required fields;
            500 "Could not start session".
    """
    s = _public_survey(db, survey_id)
    try:
        started = interview.start_session(db, s, body.respondent_name, body.respondent_email, body.respondent_meta)
    except MissingRespondentFields as e:
        raise HTTPException(422, {"message": str(e), "fields": e.labels})
    except SessionStartFailed as e:
        raise HTTPException(500, str(e))
    return {
        "session_id": started.session.id,
        "intro": intro_message(s.goal),
        "question": started.first_turn.as_dict() if started.first_turn else None,
    }

@app.get("/sessions/{session_id}/turn")
def current_turn(session_id: int, db: Session = Depends(get_db), interview: InterviewEngine = Depends(get_engine)):
    """The turn a session is waiting on, for resuming after a reload."""
    sess = _session_of(db, session_id)
    cursor = interview.cursor_for(sess.survey, sess)
    turn = interview.current_turn(sess.survey, sess)
    completed = sess.completed_at is not None
    return {
        "session_id": sess.id,
        "completed": completed,
        "state": "COMPLETED" if completed else cursor.state,
        "question": turn.as_dict() if turn else None,
    }

@app.post("/surveys/{survey_id}/respond")
def respond(survey_id: int, body: AnswerSubmit, db: Session = Depends(get_db),
            interview: InterviewEngine = Depends(get_engine)):
    """Answer the session's current turn and get the next one.

    Returns:
        dict: {"success", "recorded", "completed", "next_question"}

    Raises:
        HTTPException: 404 unknown survey/session; 409 answer out of order or
            session closed; 422 blank answer to a required question.
    """
    s = _public_survey(db, survey_id)
    sess = _session_of(db, body.session_id, survey_id=s.id)
    try:
        outcome = interview.submit_answer(db, s, sess, body.turn_key, body.answer, question_id=body.question_id)
    except OutOfOrderAnswer as e:
        expected = e.expected.as_dict() if e.expected else None
        raise HTTPException(409, {"message": str(e), "expected": expected})
    except SessionClosed as e:
        raise HTTPException(409, str(e))
    except AnswerRequired as e:
        raise HTTPException(422, str(e))
    except SQLAlchemyError as e:
        db.rollback()
        log.error("respond failed for session %s: %s", body.session_id, e)
        raise HTTPException(500, RESPONDENT_ERROR)
    return outcome.as_dict()

@app.post("/surveys/{survey_id}/followup")
def followup(survey_id: int, body: FollowUpRequest, db: Session = Depends(get_db),
             judge: FollowUpJudge = Depends(get_judge)):
    """Ask the judge whether an answer deserves a probe (stateless).

    Answers given to a probe never get another one.
    """
    s = _public_survey(db, survey_id)
    if (body.category or "").upper() == PROBE:
        return FollowUpResult(should_follow_up=False, reason="already a follow-up").model_dump()
    result = judge.judge(body.question_text, body.answer, body.survey_goal or s.goal)
    return result.model_dump()

@app.patch("/sessions/{session_id}/complete")
def complete_session(session_id: int, db: Session = Depends(get_db),
                     interview: InterviewEngine = Depends(get_engine)):
    """Stamp the session complete. Calling it again is a no-op."""
    sess = _session_of(db, session_id)
    first = interview.complete(db, sess)
    return {"success": True, "already_completed": not first}

# ------------------------
# Realtime: survey rooms
# ------------------------
@app.websocket("/ws/surveys/{survey_id}")
async def survey_room(ws: WebSocket, survey_id: int, hub: EventHub = Depends(get_hub)):
    await ws.accept()
    hub.join(survey_id, ws)
    await ws.send_json({"event": "joined", "data": {"survey_id": survey_id}})
    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await ws.send_json({"event": "error", "data": {"message": "Payload must be JSON"}})
                continue
            if isinstance(msg, dict) and msg.get("event") == "respondent_typing":
                await hub.broadcast(survey_id, ADMIN_TYPING_VIEW, {"active": True}, skip=ws)
    except WebSocketDisconnect:
        pass
    finally:
        hub.leave(survey_id, ws)
