"""
Relational schema for the price catalog and cost estimates.

Observations and estimate lines are append-only; the only columns updated
after insert are ``selling_price``/``margin``/``updated_at`` on estimates.
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import utcnow

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class MaterialRow(Base):
    __tablename__ = "materials"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    # Lower-cased, whitespace-collapsed name; the uniqueness guard for get-or-create.
    normalized_name = Column(String(255), nullable=False, unique=True, index=True)
    unit = Column(String(32), nullable=False, default="piece")
    category = Column(String(128))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    observations = relationship("PriceObservationRow", back_populates="material")


class PriceObservationRow(Base):
    __tablename__ = "price_observations"

    id = Column(String(36), primary_key=True, default=_new_id)
    material_id = Column(String(36), ForeignKey("materials.id"), nullable=False, index=True)
    source = Column(String(16), nullable=False, index=True)
    unit_price = Column(Float, nullable=False)
    vendor_name = Column(String(255))
    # Originating record (PO line, cost-sheet row); unique for idempotent re-ingestion.
    source_ref = Column(String(255), unique=True)
    confidence = Column(Float, nullable=False, default=1.0)
    detail = Column(String(255))
    recorded_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    expires_at = Column(DateTime)

    material = relationship("MaterialRow", back_populates="observations")


class CostEstimateRow(Base):
    __tablename__ = "cost_estimates"

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    category = Column(String(128), index=True)
    client_name = Column(String(255))
    material_cost = Column(Float, nullable=False)
    labour_cost = Column(Float, nullable=False)
    overhead_cost = Column(Float, nullable=False)
    total_cost_price = Column(Float, nullable=False)
    selling_price = Column(Float)
    margin = Column(Float)
    confidence_score = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    lines = relationship(
        "EstimateLineRow",
        back_populates="estimate",
        order_by="EstimateLineRow.position",
        cascade="all, delete-orphan",
    )


class EstimateLineRow(Base):
    __tablename__ = "estimate_lines"

    id = Column(String(36), primary_key=True, default=_new_id)
    estimate_id = Column(String(36), ForeignKey("cost_estimates.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    material_name = Column(String(255), nullable=False)
    quantity = Column(Float, nullable=False)
    unit = Column(String(32), nullable=False)
    unit_price = Column(Float, nullable=False)
    line_total = Column(Float, nullable=False)
    source = Column(String(16), nullable=False)
    confidence = Column(Float, nullable=False)
    detail = Column(String(255))

    estimate = relationship("CostEstimateRow", back_populates="lines")


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for ``url`` and make sure the schema exists."""

    kwargs: dict = {"echo": echo, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every session sees the same in-memory database.
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def shares_one_connection(session_factory: sessionmaker) -> bool:
    """True when every session runs on the same DBAPI connection (in-memory SQLite)."""

    engine = session_factory.kw.get("bind")
    return engine is not None and isinstance(engine.pool, StaticPool)


__all__ = [
    "Base",
    "CostEstimateRow",
    "EstimateLineRow",
    "MaterialRow",
    "PriceObservationRow",
    "create_db_engine",
    "make_session_factory",
    "shares_one_connection",
]
