import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import relationship
from sqlalchemy import Column, Integer, String, ForeignKey, Text, DateTime
from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String, unique=True, index=True)
    cognito_sub = Column(String, unique=True, index=True, nullable=False)
    plan = Column(String, default="free", nullable=False)  # free | pro
    stripe_customer_id = Column(String, nullable=True)

    job_infos = relationship("JobInfo", back_populates="user")


class JobInfo(Base):
    __tablename__ = "job_infos"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    title = Column(String, nullable=True)
    experience_level = Column(String, nullable=False)  # junior | mid-level | senior
    description = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    user = relationship("User", back_populates="job_infos")
    questions = relationship("Question", back_populates="job_info")


class Question(Base):
    __tablename__ = "questions"

    id = Column(String(36), primary_key=True, default=_new_id)
    job_info_id = Column(String(36), ForeignKey("job_infos.id"), nullable=False, index=True)
    text = Column(Text, nullable=False)
    difficulty = Column(String, nullable=False)  # easy | medium | hard
    answer = Column(Text, nullable=True)
    feedback = Column(Text, nullable=True)
    feedback_rating = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    job_info = relationship("JobInfo", back_populates="questions")
