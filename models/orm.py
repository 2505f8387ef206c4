#Description: ORM entity definitions.

from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import Integer, String, Float, DateTime, JSON
from datetime import datetime

Base = declarative_base()

class StateSnapshot(Base):
    __tablename__ = "state_snapshots"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    equity: Mapped[float] = mapped_column(Float, default=0.0)
    payload: Mapped[dict] = mapped_column(JSON)  # PersistedState.model_dump()

class SignalRecord(Base):
    __tablename__ = "signal_records"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    signal_id: Mapped[str] = mapped_column(String, index=True)
    symbol: Mapped[str] = mapped_column(String, index=True)
    signal_type: Mapped[str] = mapped_column(String)
    ts: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    price: Mapped[float] = mapped_column(Float)
    direction: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    decision_action: Mapped[str | None] = mapped_column(String, nullable=True)
    decision_note: Mapped[str] = mapped_column(String, default="")
    indicators: Mapped[dict] = mapped_column(JSON, default=dict)

class Alert(Base):
    __tablename__ = "alerts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    level: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(String)
    context: Mapped[dict] = mapped_column(JSON)
