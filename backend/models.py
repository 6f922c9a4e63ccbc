from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, Float, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base

class Survey(Base):
    __tablename__ = "surveys"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), index=True, nullable=False)
    title = Column(String(255), nullable=False)
    goal = Column(Text, nullable=True)
    target_audience = Column(Text, nullable=True)
    context = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="DRAFT")
    share_token = Column(String(64), unique=True, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    fields = relationship("RespondentField", back_populates="survey", cascade="all, delete-orphan",
                          order_by="RespondentField.order_index")
    questions = relationship("Question", back_populates="survey", cascade="all, delete-orphan",
                             order_by="Question.order_index")
    sessions = relationship("InterviewSession", back_populates="survey", cascade="all, delete-orphan")
    analyses = relationship("Analysis", back_populates="survey", cascade="all, delete-orphan")

class RespondentField(Base):
    __tablename__ = "respondent_fields"
    # replaced lists must never hand out a deleted row id again
    __table_args__ = {"sqlite_autoincrement": True}
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    label = Column(String(255), nullable=False)
    field_type = Column(String(20), nullable=False, default="text")
    is_required = Column(Boolean, default=False)
    options = Column(JSON, nullable=True)
    order_index = Column(Integer, nullable=False, default=0)
    survey = relationship("Survey", back_populates="fields")

class Question(Base):
    __tablename__ = "questions"
    __table_args__ = {"sqlite_autoincrement": True}
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    text = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default="OPEN")
    category = Column(String(100), nullable=False, default="general")
    options = Column(JSON, nullable=True)
    scale_min = Column(Integer, default=1)
    scale_max = Column(Integer, default=10)
    scale_min_label = Column(String(100), default="Not at all")
    scale_max_label = Column(String(100), default="Absolutely")
    star_count = Column(Integer, default=5)
    is_required = Column(Boolean, default=False)
    allow_followup = Column(Boolean, default=True)
    survey = relationship("Survey", back_populates="questions")

class InterviewSession(Base):
    __tablename__ = "sessions"
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    respondent_name = Column(String(255), nullable=True)
    respondent_email = Column(String(255), nullable=True)
    respondent_meta = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    # engine cursor: index into the question list, probes asked per index, unanswered probe text
    cursor = Column(Integer, nullable=False, default=0)
    probe_counts = Column(JSON, nullable=True)
    pending_probe = Column(Text, nullable=True)
    survey = relationship("Survey", back_populates="sessions")
    responses = relationship("Response", back_populates="session", cascade="all, delete-orphan",
                             order_by="Response.id")

class Response(Base):
    __tablename__ = "responses"
    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    question_id = Column(Integer, ForeignKey("questions.id", ondelete="SET NULL"), index=True, nullable=True)
    question_text = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    is_probe = Column(Boolean, default=False)
    answer = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    session = relationship("InterviewSession", back_populates="responses")

class Analysis(Base):
    __tablename__ = "analysis"
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    executive_summary = Column(Text, nullable=False)
    overall_sentiment = Column(Float, nullable=True)
    nps_score = Column(Float, nullable=True)
    response_count = Column(Integer, nullable=False, default=0)
    themes = Column(JSON, nullable=True)
    pain_points = Column(JSON, nullable=True)
    opportunities = Column(JSON, nullable=True)
    action_plan = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    survey = relationship("Survey", back_populates="analyses")

class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), index=True, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default="info")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
