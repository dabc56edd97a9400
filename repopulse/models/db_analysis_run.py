"""
Postgres-backed analysis run record — one row per run, never deleted.
"""
from sqlalchemy import Column, Text, Integer, Float, DateTime, JSON, Index

from repopulse.database import Base


class DbAnalysisRun(Base):
    __tablename__ = 'analysis_runs'

    id = Column(Text, primary_key=True)
    owner = Column(Text, nullable=False)
    project = Column(Text, nullable=False)
    repository_key = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default='pending')
    step = Column(Text, nullable=True)
    lock_token = Column(Text, nullable=True)
    attempt_count = Column(Integer, default=0)
    trigger_source = Column(Text, default='api')
    metrics = Column(JSON, nullable=True)
    category = Column(Text, nullable=True)
    score = Column(Float, nullable=True)
    breakdown = Column(JSON, nullable=True)
    error_code = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_analysis_runs_repository_started', 'repository_key', 'started_at'),
        Index('ix_analysis_runs_status_completed', 'status', 'completed_at'),
        # At most one pending/running row per repository
        Index(
            'ux_analysis_runs_repository_active', 'repository_key',
            unique=True,
            sqlite_where=status.in_(('pending', 'running')),
            postgresql_where=status.in_(('pending', 'running')),
        ),
    )
