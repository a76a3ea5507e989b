"""
database.py - SQLAlchemy models and session management.

Uses PostgreSQL in production (via DATABASE_URL).
Falls back to SQLite locally so you can develop without Postgres.

A completed pipeline run is stored as one immutable AnalysisResult under the
CompanyProfile for (user, website). Results are never updated, only deleted.
"""

import json
import logging
import os
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

logger = logging.getLogger("seo-gap.database")

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./seo_gap.db")

# Some hosts expose postgres:// but SQLAlchemy requires postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class CompanyProfile(Base):
    __tablename__ = "company_profiles"

    id               = Column(String(36), primary_key=True)
    user_id          = Column(String(255), nullable=False, index=True)
    name             = Column(String(255), nullable=False)
    website_url      = Column(String(2048), nullable=False)
    description      = Column(Text, nullable=True)
    target_audience  = Column(Text, nullable=True)
    created_at       = Column(DateTime, default=datetime.utcnow)


class AnalysisResult(Base):
    __tablename__ = "analysis_results"

    id                  = Column(String(36), primary_key=True)
    company_profile_id  = Column(String(36), ForeignKey("company_profiles.id"), nullable=False, index=True)
    # JSON as text, same behaviour on SQLite and Postgres
    queries             = Column(Text, nullable=False)
    competitor_data     = Column(Text, nullable=False)
    generated_html      = Column(Text, nullable=True)
    created_at          = Column(DateTime, default=datetime.utcnow, index=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def init_db() -> None:
    """Create all tables. Safe to call on every startup."""
    Base.metadata.create_all(bind=engine)


def _dumps(value) -> str:
    # Postgres rejects \x00 in text columns
    return json.dumps(value, default=str).replace("\\u0000", "")


def _profile_name(url: str) -> str:
    host = url.split("://", 1)[-1].split("/", 1)[0]
    return host.removeprefix("www.") or url


def _result_dict(row: AnalysisResult, profile: CompanyProfile, full: bool = True) -> dict:
    out = {
        "id": row.id,
        "companyProfileId": profile.id,
        "companyName": profile.name,
        "websiteUrl": profile.website_url,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }
    if full:
        out.update({
            "companyDescription": profile.description,
            "targetAudience": profile.target_audience,
            "queries": json.loads(row.queries),
            "competitorData": json.loads(row.competitor_data),
            "generatedHtml": row.generated_html,
        })
    return out


# ---------------------------------------------------------------------------
# Completed runs - synchronous, call via run_in_executor from async code
# ---------------------------------------------------------------------------

def save_completed_run(user_id: str, run) -> str:
    """Persist a completed PipelineRun. Returns the new result id."""
    db = SessionLocal()
    try:
        profile = (
            db.query(CompanyProfile)
            .filter(CompanyProfile.user_id == user_id, CompanyProfile.website_url == run.url)
            .first()
        )
        if profile is None:
            profile = CompanyProfile(
                id=str(uuid.uuid4()),
                user_id=user_id,
                name=_profile_name(run.url),
                website_url=run.url,
            )
            db.add(profile)
        profile.description = run.company_description
        profile.target_audience = run.target_audience

        html = "\n\n".join(
            (entry.get("content") or {}).get("html", "") for entry in run.query_contents
        )
        result = AnalysisResult(
            id=run.run_id,
            company_profile_id=profile.id,
            queries=_dumps(run.queries),
            competitor_data=_dumps([
                {"query": entry.get("query"), "competitors": entry.get("competitors", [])}
                for entry in run.competitor_results
            ]),
            generated_html=html or None,
        )
        db.add(result)
        db.commit()
        logger.info(f"[{run.run_id}] Saved analysis result (user={user_id})")
        return result.id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def list_results(user_id: str, limit: int = 20, offset: int = 0) -> list[dict]:
    db = SessionLocal()
    try:
        rows = (
            db.query(AnalysisResult, CompanyProfile)
            .join(CompanyProfile, AnalysisResult.company_profile_id == CompanyProfile.id)
            .filter(CompanyProfile.user_id == user_id)
            .order_by(AnalysisResult.created_at.desc())
            .offset(offset)
            .limit(min(limit, 100))
            .all()
        )
        return [_result_dict(row, profile, full=False) for row, profile in rows]
    finally:
        db.close()


def get_result(user_id: str, result_id: str) -> Optional[dict]:
    """Full result for its owner, or None."""
    db = SessionLocal()
    try:
        found = (
            db.query(AnalysisResult, CompanyProfile)
            .join(CompanyProfile, AnalysisResult.company_profile_id == CompanyProfile.id)
            .filter(AnalysisResult.id == result_id, CompanyProfile.user_id == user_id)
            .first()
        )
        if not found:
            return None
        return _result_dict(*found)
    finally:
        db.close()


def delete_result(user_id: str, result_id: str) -> bool:
    db = SessionLocal()
    try:
        row = (
            db.query(AnalysisResult)
            .join(CompanyProfile, AnalysisResult.company_profile_id == CompanyProfile.id)
            .filter(AnalysisResult.id == result_id, CompanyProfile.user_id == user_id)
            .first()
        )
        if row is None:
            return False
        db.delete(row)
        db.commit()
        return True
    finally:
        db.close()
