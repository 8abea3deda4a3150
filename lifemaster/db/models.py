from datetime import date, datetime
from typing import Optional

from sqlalchemy import BigInteger, Date, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

Base = declarative_base()

TOKEN_RECORD_KEY = "withings"


class WithingsToken(Base):
    __tablename__ = "withings_tokens"

    # Singleton row keyed by TOKEN_RECORD_KEY.
    key: Mapped[str] = mapped_column(String(32), primary_key=True, default=TOKEN_RECORD_KEY)
    encrypted_access_token: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ProgressEntry(Base):
    __tablename__ = "progress_entries"
    __table_args__ = (
        Index("ix_progress_entries_ts", "entry_ts", "id"),
        Index("ix_progress_entries_type_ts", "entry_type", "entry_ts"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    entry_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    impact_assessment: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    confidence: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    metrics_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delta_vs_baseline_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    consent_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    entry_ts: Mapped[datetime] = mapped_column(DateTime, nullable=False)
