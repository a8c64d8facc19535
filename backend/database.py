"""
Database models for the CANSLIM Screener
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import (
    create_engine, Column, Integer, String, Float, Boolean, DateTime, Date, ForeignKey, Index, JSON,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_session_factory(database_url: str) -> sessionmaker:
    """Create engine and tables for a database URL and return a session factory"""
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            # one shared connection, otherwise each session sees an empty database
            engine_kwargs["poolclass"] = StaticPool
        else:
            db_path = database_url.split("sqlite:///", 1)[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, **engine_kwargs)
    init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine):
    """Initialize database tables"""
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database ready: {engine.url.render_as_string(hide_password=True)}")


@contextmanager
def session_scope(session_factory: sessionmaker):
    """Commit on success, roll back on error, always close"""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


class SymbolRow(Base):
    """Universe membership, replaced wholesale on refresh"""
    __tablename__ = "symbols"

    symbol = Column(String, primary_key=True)
    name = Column(String)
    sector = Column(String)
    industry = Column(String)
    exchange = Column(String)
    position = Column(Integer, index=True)  # provider order, largest first
    updated_at = Column(DateTime, default=datetime.utcnow)


class PriceBar(Base):
    """Daily OHLCV bar"""
    __tablename__ = "prices"

    symbol = Column(String, primary_key=True)
    date = Column(Date, primary_key=True)
    open = Column(Float)
    high = Column(Float)
    low = Column(Float)
    close = Column(Float, nullable=False)
    volume = Column(Float)

    __table_args__ = (
        Index('idx_prices_date', 'date'),
    )


class EarningsQuarter(Base):
    __tablename__ = "eps_quarterly"

    symbol = Column(String, primary_key=True)
    quarter_end = Column(Date, primary_key=True)
    eps = Column(Float, nullable=False)


class OwnershipSnapshot(Base):
    __tablename__ = "ownership"

    symbol = Column(String, primary_key=True)
    date = Column(Date, primary_key=True)
    inst_pct = Column(Float, nullable=False)  # 0-1
    filers_added = Column(Integer, default=0)


class ScanRun(Base):
    """One scan invocation and the configuration it ran with"""
    __tablename__ = "scans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_at = Column(DateTime, nullable=False, index=True)
    universe = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    mode = Column(String, default="daily")
    config = Column(JSON)
    status = Column(String, default="running")  # running, completed, failed, gated
    gate_reason = Column(String)
    completed_at = Column(DateTime)
    result_count = Column(Integer, default=0)


class _ResultColumns:
    """Columns shared by the per-run and live result tables"""
    symbol = Column(String, primary_key=True)
    rank = Column(Integer)
    score = Column(Float)
    qualified = Column(Boolean)
    criteria_met = Column(Integer)
    disqualification_reasons = Column(JSON)
    flags = Column(JSON)
    price = Column(Float)
    name = Column(String)
    sector = Column(String)
    industry = Column(String)

    # Factor values
    c_qoq = Column(Float)
    a_cagr = Column(Float)
    pct_52w = Column(Float)
    vol_spike = Column(Float)
    rs_pct = Column(Float)
    i_delta = Column(Float)
    has_earnings_history = Column(Boolean)

    # IBD ratings
    ibd_rs_rating = Column(Integer)
    ibd_up_down_ratio = Column(Float)
    ibd_ad_rating = Column(String)
    ibd_smr_rating = Column(String)
    ibd_composite = Column(Integer)
    industry_group_rank = Column(Integer)


class ScanResultRow(_ResultColumns, Base):
    """Results of a completed scan, kept per run"""
    __tablename__ = "scan_results"

    scan_id = Column(Integer, ForeignKey("scans.id"), primary_key=True)


class LiveResultRow(_ResultColumns, Base):
    """The running scan's accumulator; replaced in full after every batch"""
    __tablename__ = "live_scan_results"

    scan_id = Column(Integer, ForeignKey("scans.id"), index=True)


class BacktestRecord(Base):
    __tablename__ = "backtests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, nullable=False, index=True)
    config = Column(JSON)
    summary = Column(JSON)
