"""Interview session engine.

One respondent walks a fixed, ordered question list. After each answer to
an original question the engine may insert a single probe, chosen by the
follow-up judge, and then moves on. The cursor (position, probes asked per
question, the unanswered probe) lives on the session row, so every HTTP
call sees the same state.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import InterviewSession, Question, Response, Survey
from question_script import fallback_script
from realtime import EventHub, NEW_RESPONSE, SESSION_COMPLETED, SESSION_STARTED, now_iso
from schemas import FollowUpResult

log = logging.getLogger(__name__)

PROBE = "PROBE"
ANONYMOUS = "Anonymous"
MAX_PROBES_PER_QUESTION = 1
# presentational "thinking" pause the client shows before a turn
QUESTION_PACE_MS = 1200
PROBE_PACE_MS = 1500

NAME_LABELS = {"full name", "name"}


class SessionError(Exception):
    pass


class SessionNotFound(SessionError):
    pass


class SessionStartFailed(SessionError):
    pass


class MissingRespondentFields(SessionError):
    def __init__(self, labels: List[str]):
        super().__init__("Missing required fields: " + ", ".join(labels))
        self.labels = labels


class SessionClosed(SessionError):
    pass


class OutOfOrderAnswer(SessionError):
    def __init__(self, expected: Optional["Turn"]):
        super().__init__("Answer does not match the current question")
        self.expected = expected


class AnswerRequired(SessionError):
    pass


def question_dict(q: Question) -> Dict[str, Any]:
    return {
        "id": q.id,
        "text": q.text,
        "type": q.type,
        "category": q.category or "general",
        "options": q.options,
        "scale_min": q.scale_min,
        "scale_max": q.scale_max,
        "scale_min_label": q.scale_min_label,
        "scale_max_label": q.scale_max_label,
        "star_count": q.star_count,
        "is_required": bool(q.is_required),
        "allow_followup": q.allow_followup is not False,
        "order_index": q.order_index,
    }


@dataclass
class Turn:
    """One question presentation: an original question or a probe after it."""
    index: int
    question: Dict[str, Any]
    is_probe: bool = False
    probe_text: Optional[str] = None

    @property
    def question_id(self) -> Optional[int]:
        return self.question.get("id")

    @property
    def key(self) -> str:
        """Position token the client echoes back; unique per presentation in a session."""
        return f"{self.index}:{'probe' if self.is_probe else 'question'}"

    @property
    def text(self) -> str:
        return self.probe_text if self.is_probe else self.question["text"]

    @property
    def category(self) -> str:
        return PROBE if self.is_probe else (self.question.get("category") or "general")

    @property
    def is_required(self) -> bool:
        return not self.is_probe and bool(self.question.get("is_required"))

    def as_dict(self) -> Dict[str, Any]:
        q = self.question
        if self.is_probe:
            config = {"type": PROBE, "options": None, "allow_followup": False}
        else:
            config = {k: q.get(k) for k in ("type", "options", "scale_min", "scale_max",
                                            "scale_min_label", "scale_max_label", "star_count", "allow_followup")}
        return {
            "turn_key": self.key,
            "question_id": self.question_id,
            "index": self.index,
            "order_index": q.get("order_index", self.index),
            "text": self.text,
            "category": self.category,
            "is_probe": self.is_probe,
            "is_required": self.is_required,
            "pace_ms": PROBE_PACE_MS if self.is_probe else QUESTION_PACE_MS,
            **config,
        }


class Cursor:
    """Position of one session in its question list.

    ``probe_counts`` is the engine's own depth guard: the judge is never
    consulted for a question whose probe budget is spent, whatever it
    would have said.
    """

    def __init__(self, questions: List[Dict[str, Any]], index: int = 0,
                 probe_counts: Optional[Dict[str, int]] = None, pending_probe: Optional[str] = None,
                 max_probes: int = MAX_PROBES_PER_QUESTION):
        self.questions = questions
        self.index = index
        self.probe_counts = dict(probe_counts or {})
        self.pending_probe = pending_probe
        self.max_probes = max_probes

    @property
    def completed(self) -> bool:
        return self.index >= len(self.questions)

    @property
    def state(self) -> str:
        if self.completed:
            return "COMPLETED"
        return "PROBING" if self.pending_probe else "AWAITING_ANSWER"

    def current(self) -> Optional[Turn]:
        if self.completed:
            return None
        q = self.questions[self.index]
        if self.pending_probe:
            return Turn(self.index, q, is_probe=True, probe_text=self.pending_probe)
        return Turn(self.index, q)

    def probes_asked(self) -> int:
        return int(self.probe_counts.get(str(self.index), 0))

    def can_probe(self) -> bool:
        if self.completed or self.pending_probe:
            return False
        if self.questions[self.index].get("allow_followup") is False:
            return False
        return self.probes_asked() < self.max_probes

    def probe(self, text: str) -> Turn:
        if not self.can_probe():
            raise SessionError("Probe budget for this question is spent")
        self.probe_counts[str(self.index)] = self.probes_asked() + 1
        self.pending_probe = text
        return self.current()

    def advance(self) -> Optional[Turn]:
        self.pending_probe = None
        self.index += 1
        return self.current()


@dataclass
class AnswerOutcome:
    answered: Turn
    recorded: bool
    next_turn: Optional[Turn] = None
    completed: bool = False
    follow_up: Optional[FollowUpResult] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "recorded": self.recorded,
            "completed": self.completed,
            "next_question": self.next_turn.as_dict() if self.next_turn else None,
        }


@dataclass
class StartedSession:
    session: InterviewSession
    first_turn: Optional[Turn]
    script: List[Dict[str, Any]] = field(default_factory=list)


def _missing_fields(survey: Survey, name: Optional[str], email: Optional[str], meta: Dict[str, Any]) -> List[str]:
    missing = []
    for f in survey.fields:
        if not f.is_required:
            continue
        value = meta.get(f.label)
        if value is None or not str(value).strip():
            if f.field_type == "email":
                value = email
            elif f.label.strip().lower() in NAME_LABELS:
                value = name
        if value is None or not str(value).strip():
            missing.append(f.label)
    return missing


class InterviewEngine:
    def __init__(self, judge, hub: EventHub, max_probes: int = MAX_PROBES_PER_QUESTION):
        self.judge = judge
        self.hub = hub
        self.max_probes = max_probes

    # -- question list ------------------------------------------------------
    def script_for(self, survey: Survey) -> List[Dict[str, Any]]:
        """Saved questions in order, or the goal-derived fallback script."""
        if survey.questions:
            return [question_dict(q) for q in sorted(survey.questions, key=lambda q: (q.order_index, q.id))]
        return [dict(q, id=None) for q in fallback_script(survey.goal)]

    def cursor_for(self, survey: Survey, session: InterviewSession) -> Cursor:
        return Cursor(
            self.script_for(survey),
            index=session.cursor or 0,
            probe_counts=session.probe_counts,
            pending_probe=session.pending_probe,
            max_probes=self.max_probes,
        )

    def current_turn(self, survey: Survey, session: InterviewSession) -> Optional[Turn]:
        if session.completed_at is not None:
            return None
        return self.cursor_for(survey, session).current()

    # -- lifecycle ----------------------------------------------------------
    def start_session(self, db: Session, survey: Survey, respondent_name: Optional[str] = None,
                      respondent_email: Optional[str] = None,
                      respondent_meta: Optional[Dict[str, Any]] = None) -> StartedSession:
        meta = dict(respondent_meta or {})
        name = (respondent_name or "").strip() or None
        email = (respondent_email or "").strip() or None
        missing = _missing_fields(survey, name, email, meta)
        if missing:
            raise MissingRespondentFields(missing)

        row = InterviewSession(
            survey_id=survey.id, respondent_name=name, respondent_email=email,
            respondent_meta=meta, cursor=0, probe_counts={}, pending_probe=None,
        )
        try:
            db.add(row)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            log.error("could not start session for survey %s: %s", survey.id, e)
            raise SessionStartFailed("Could not start session") from e
        db.refresh(row)

        self.hub.emit(survey.id, SESSION_STARTED, {"respondent_name": name or ANONYMOUS, "timestamp": now_iso()})
        script = self.script_for(survey)
        cursor = Cursor(script, max_probes=self.max_probes)
        log.info("session %s started on survey %s (%d questions)", row.id, survey.id, len(script))
        return StartedSession(session=row, first_turn=cursor.current(), script=script)

    def submit_answer(self, db: Session, survey: Survey, session: InterviewSession,
                      turn_key: str, answer: str, question_id: Optional[int] = None) -> AnswerOutcome:
        if session.completed_at is not None:
            raise SessionClosed("Session already completed")

        cursor = self.cursor_for(survey, session)
        turn = cursor.current()
        if turn is None:
            # question list shrank under an in-flight session
            self.complete(db, session)
            raise SessionClosed("No questions left in this session")
        # a retried or duplicated submit names a turn the cursor has already left
        if turn_key != turn.key:
            raise OutOfOrderAnswer(turn)
        if question_id is not None and question_id != turn.question_id:
            raise OutOfOrderAnswer(turn)

        answer = (answer or "").strip()
        if not answer and turn.is_required:
            raise AnswerRequired("This question requires an answer")

        recorded = self._append_response(db, session, turn, answer)
        self.hub.emit(survey.id, NEW_RESPONSE, {
            "respondent_name": session.respondent_name or ANONYMOUS,
            "question_category": turn.category,
            "timestamp": now_iso(),
        })

        judgment = None
        if not turn.is_probe and answer and cursor.can_probe():
            judgment = self._judge(turn, answer, survey.goal)
        probe_text = (judgment.follow_up_question or "").strip() if judgment is not None else ""
        if judgment is not None and judgment.should_follow_up and probe_text:
            next_turn = cursor.probe(probe_text)
        else:
            next_turn = cursor.advance()

        session.cursor = cursor.index
        session.probe_counts = dict(cursor.probe_counts)
        session.pending_probe = cursor.pending_probe
        db.commit()

        completed = cursor.completed
        if completed:
            self.complete(db, session)
        return AnswerOutcome(answered=turn, recorded=recorded, next_turn=next_turn,
                             completed=completed, follow_up=judgment)

    def complete(self, db: Session, session: InterviewSession) -> bool:
        """Stamp ``completed_at`` once. Returns False when it was already set."""
        result = db.execute(
            update(InterviewSession)
            .where(InterviewSession.id == session.id, InterviewSession.completed_at.is_(None))
            .values(completed_at=datetime.now(timezone.utc), pending_probe=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            return False
        db.refresh(session)
        self.hub.emit(session.survey_id, SESSION_COMPLETED, {
            "respondent_name": session.respondent_name or ANONYMOUS,
            "timestamp": now_iso(),
        })
        log.info("session %s completed", session.id)
        return True

    # -- collaborators ------------------------------------------------------
    def _append_response(self, db: Session, session: InterviewSession, turn: Turn, answer: str) -> bool:
        # a lost turn must not stall the conversation
        try:
            db.add(Response(
                session_id=session.id,
                question_id=turn.question_id,
                question_text=turn.text,
                category=turn.category,
                is_probe=turn.is_probe,
                answer=answer,
            ))
            db.commit()
            return True
        except SQLAlchemyError as e:
            db.rollback()
            log.warning("response for session %s not stored: %s", session.id, e)
            return False

    def _judge(self, turn: Turn, answer: str, goal: Optional[str]) -> FollowUpResult:
        try:
            result = self.judge.judge(turn.text, answer, goal)
        except Exception as e:
            log.warning("follow-up judge failed, moving on: %s", e)
            return FollowUpResult(should_follow_up=False, reason="judge error")
        if not isinstance(result, FollowUpResult):
            return FollowUpResult(should_follow_up=False, reason="malformed judgment")
        return result
