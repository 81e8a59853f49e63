"""
Database models and configuration for analysis job checkpoints.
"""
from sqlalchemy import create_engine, Column, String, Integer, DateTime, Text, ForeignKey, JSON
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.pool import StaticPool
from datetime import datetime, timezone
from typing import Optional

from .config import settings
from .utils.id_gen import short_id

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisJobRow(Base):
    __tablename__ = "analysis_jobs"

    id = Column(String(64), primary_key=True, default=lambda: short_id("job"))
    identity = Column(String(255), nullable=False, index=True)
    total_stages = Column(Integer, nullable=False)
    processed_stages = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")  # pending/processing/completed/failed
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    chunks = relationship("AnalysisChunkRow", back_populates="job", order_by="AnalysisChunkRow.id")

class AnalysisChunkRow(Base):
    __tablename__ = "analysis_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(64), ForeignKey("analysis_jobs.id"), nullable=False, index=True)
    stage_index = Column(Integer, nullable=False)  # 1..6, AnalysisStage value
    item_count = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="completed")  # completed/failed
    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    job = relationship("AnalysisJobRow", back_populates="chunks")

# Database configuration
def get_database_url() -> str:
    """Database URL from settings, defaulting to a local SQLite file."""
    return settings.DATABASE_URL

def create_engine_instance(url: Optional[str] = None):
    """Create SQLAlchemy engine with proper configuration."""
    url = url or get_database_url()
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=settings.DATABASE_ECHO, **kwargs)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_recycle=300,
        echo=settings.DATABASE_ECHO,
    )

def get_session_factory(engine=None):
    engine = engine or create_engine_instance()
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Initialize database
def init_db(engine=None):
    """Initialize database tables."""
    engine = engine or create_engine_instance()
    Base.metadata.create_all(bind=engine)
    return engine
