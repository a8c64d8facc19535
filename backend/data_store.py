"""
Persistent store over SQLAlchemy.

Holds bars, earnings, ownership, universe metadata, scan runs, per-run and
live results, and backtest records. Every public method opens its own
session; multi-row writes run inside a single transaction.
"""

import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker

from backend.database import (
    BacktestRecord, EarningsQuarter, LiveResultRow, OwnershipSnapshot, PriceBar,
    ScanResultRow, ScanRun, SymbolRow, create_session_factory, session_scope,
)
from canslim_scorer import ScoreResult
from metrics import BAR_COLUMNS, EarningsRecord, OwnershipRecord, SymbolMeta, bars_frame, empty_bars

logger = logging.getLogger(__name__)

# Keep bound parameters per statement under SQLite's limit
UPSERT_CHUNK = 100
IN_CLAUSE_CHUNK = 500


def _chunks(items: Sequence, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class DataStore:
    """Persistence for the screener; construct with a session factory or a URL"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "DataStore":
        return cls(create_session_factory(database_url))

    def _session(self):
        return session_scope(self.session_factory)

    def _upsert(self, db, model, rows: List[dict], keys: Tuple[str, ...]):
        """Insert rows, replacing any existing row with the same key"""
        if not rows:
            return

        dialect = db.get_bind().dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            value_columns = [c for c in rows[0] if c not in keys]
            for chunk in _chunks(rows, UPSERT_CHUNK):
                stmt = insert(model).values(chunk)
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(keys),
                    set_={c: getattr(stmt.excluded, c) for c in value_columns},
                )
                db.execute(stmt)
        else:
            for row in rows:
                db.merge(model(**row))

    # ============== Universe ==============

    def replace_symbols(self, metas: List[SymbolMeta]) -> int:
        now = datetime.utcnow()
        with self._session() as db:
            db.query(SymbolRow).delete()
            seen = set()
            for position, meta in enumerate(metas):
                if meta.symbol in seen:
                    continue
                seen.add(meta.symbol)
                db.add(SymbolRow(
                    symbol=meta.symbol, name=meta.name, sector=meta.sector,
                    industry=meta.industry, exchange=meta.exchange,
                    position=position, updated_at=now,
                ))
        logger.info(f"Universe replaced with {len(seen)} symbols")
        return len(seen)

    def list_symbols(self) -> List[SymbolMeta]:
        with self._session() as db:
            rows = db.query(SymbolRow).order_by(SymbolRow.position).all()
            return [
                SymbolMeta(symbol=r.symbol, name=r.name or "", sector=r.sector or "Unknown",
                           industry=r.industry or "Unknown", exchange=r.exchange or "")
                for r in rows
            ]

    # ============== Bars ==============

    def upsert_bars(self, symbol: str, bars: pd.DataFrame) -> int:
        bars = bars_frame(bars)
        rows = [
            {
                "symbol": symbol,
                "date": row.date,
                "open": float(row.open),
                "high": float(row.high),
                "low": float(row.low),
                "close": float(row.close),
                "volume": float(row.volume),
            }
            for row in bars.itertuples(index=False)
        ]
        with self._session() as db:
            self._upsert(db, PriceBar, rows, ("symbol", "date"))
        return len(rows)

    def get_bars(self, symbol: str, start: Optional[date] = None, end: Optional[date] = None) -> pd.DataFrame:
        return self.get_bars_bulk([symbol], start, end).get(symbol, empty_bars())

    def get_bars_bulk(self, symbols: Iterable[str], start: Optional[date] = None,
                      end: Optional[date] = None) -> Dict[str, pd.DataFrame]:
        """Bars for many symbols; symbols with no bars are omitted"""
        symbols = list(dict.fromkeys(symbols))
        records: Dict[str, list] = {}
        with self._session() as db:
            for chunk in _chunks(symbols, IN_CLAUSE_CHUNK):
                query = db.query(
                    PriceBar.symbol, PriceBar.date, PriceBar.open, PriceBar.high,
                    PriceBar.low, PriceBar.close, PriceBar.volume,
                ).filter(PriceBar.symbol.in_(chunk))
                if start is not None:
                    query = query.filter(PriceBar.date >= start)
                if end is not None:
                    query = query.filter(PriceBar.date <= end)
                for symbol, *bar in query.order_by(PriceBar.symbol, PriceBar.date):
                    records.setdefault(symbol, []).append(tuple(bar))

        return {
            symbol: pd.DataFrame(rows, columns=BAR_COLUMNS)
            for symbol, rows in records.items()
        }

    def latest_bar_dates(self, symbols: Iterable[str]) -> Dict[str, date]:
        symbols = list(symbols)
        latest = {}
        with self._session() as db:
            for chunk in _chunks(symbols, IN_CLAUSE_CHUNK):
                rows = (
                    db.query(PriceBar.symbol, func.max(PriceBar.date))
                    .filter(PriceBar.symbol.in_(chunk))
                    .group_by(PriceBar.symbol)
                    .all()
                )
                latest.update({symbol: last for symbol, last in rows})
        return latest

    def bar_date_range(self, symbols: Optional[Iterable[str]] = None) -> Optional[Tuple[date, date]]:
        """Earliest and latest bar date across the given symbols (or all)"""
        with self._session() as db:
            query = db.query(func.min(PriceBar.date), func.max(PriceBar.date))
            if symbols is not None:
                query = query.filter(PriceBar.symbol.in_(list(symbols)))
            first, last = query.one()
        if first is None or last is None:
            return None
        return first, last

    # ============== Earnings / ownership ==============

    def upsert_earnings(self, symbol: str, records: List[EarningsRecord]) -> int:
        rows = {r.quarter_end: {"symbol": symbol, "quarter_end": r.quarter_end, "eps": float(r.eps)}
                for r in records}
        with self._session() as db:
            self._upsert(db, EarningsQuarter, list(rows.values()), ("symbol", "quarter_end"))
        return len(rows)

    def get_earnings_bulk(self, symbols: Iterable[str]) -> Dict[str, List[EarningsRecord]]:
        symbols = list(symbols)
        result: Dict[str, List[EarningsRecord]] = {}
        with self._session() as db:
            for chunk in _chunks(symbols, IN_CLAUSE_CHUNK):
                query = (
                    db.query(EarningsQuarter)
                    .filter(EarningsQuarter.symbol.in_(chunk))
                    .order_by(EarningsQuarter.symbol, EarningsQuarter.quarter_end.desc())
                )
                for row in query:
                    result.setdefault(row.symbol, []).append(
                        EarningsRecord(symbol=row.symbol, quarter_end=row.quarter_end, eps=row.eps)
                    )
        return result

    def get_earnings(self, symbol: str) -> List[EarningsRecord]:
        return self.get_earnings_bulk([symbol]).get(symbol, [])

    def upsert_ownership(self, symbol: str, records: List[OwnershipRecord]) -> int:
        rows = {
            r.date: {"symbol": symbol, "date": r.date, "inst_pct": float(r.inst_pct),
                     "filers_added": int(r.filers_added)}
            for r in records
        }
        with self._session() as db:
            self._upsert(db, OwnershipSnapshot, list(rows.values()), ("symbol", "date"))
        return len(rows)

    def get_ownership_bulk(self, symbols: Iterable[str]) -> Dict[str, List[OwnershipRecord]]:
        symbols = list(symbols)
        result: Dict[str, List[OwnershipRecord]] = {}
        with self._session() as db:
            for chunk in _chunks(symbols, IN_CLAUSE_CHUNK):
                query = (
                    db.query(OwnershipSnapshot)
                    .filter(OwnershipSnapshot.symbol.in_(chunk))
                    .order_by(OwnershipSnapshot.symbol, OwnershipSnapshot.date.desc())
                )
                for row in query:
                    result.setdefault(row.symbol, []).append(OwnershipRecord(
                        symbol=row.symbol, date=row.date, inst_pct=row.inst_pct,
                        filers_added=row.filers_added or 0,
                    ))
        return result

    def get_ownership(self, symbol: str) -> List[OwnershipRecord]:
        return self.get_ownership_bulk([symbol]).get(symbol, [])

    # ============== Scan runs ==============

    def create_scan_run(self, universe: str, provider: str, mode: str, config: dict,
                        run_at: datetime) -> int:
        with self._session() as db:
            run = ScanRun(run_at=run_at, universe=universe, provider=provider, mode=mode,
                          config=config, status="running")
            db.add(run)
            db.flush()
            return run.id

    def finish_scan_run(self, run_id: int, status: str, result_count: int = 0,
                        completed_at: Optional[datetime] = None, gate_reason: Optional[str] = None):
        with self._session() as db:
            run = db.get(ScanRun, run_id)
            if run is None:
                return
            run.status = status
            run.result_count = result_count
            run.completed_at = completed_at or datetime.utcnow()
            if gate_reason is not None:
                run.gate_reason = gate_reason

    @staticmethod
    def _run_dict(run: ScanRun) -> dict:
        return {
            "id": run.id,
            "run_at": run.run_at.isoformat() if run.run_at else None,
            "universe": run.universe,
            "provider": run.provider,
            "mode": run.mode,
            "status": run.status,
            "gate_reason": run.gate_reason,
            "completed_at": run.completed_at.isoformat() if run.completed_at else None,
            "result_count": run.result_count,
            "config": run.config,
        }

    def get_scan_run(self, run_id: int) -> Optional[dict]:
        with self._session() as db:
            run = db.get(ScanRun, run_id)
            return self._run_dict(run) if run else None

    def list_scan_runs(self, limit: int = 50) -> List[dict]:
        with self._session() as db:
            runs = db.query(ScanRun).order_by(ScanRun.id.desc()).limit(limit).all()
            return [self._run_dict(r) for r in runs]

    # ============== Results ==============

    @staticmethod
    def _result_rows(model, results: List[ScoreResult], run_id: int) -> list:
        rows = []
        for rank, result in enumerate(results, start=1):
            rows.append(model(scan_id=run_id, rank=rank, **result.to_record()))
        return rows

    @staticmethod
    def _row_to_result(row) -> ScoreResult:
        record = {c.name: getattr(row, c.name) for c in row.__table__.columns}
        return ScoreResult.from_record(record)

    def save_scan_results(self, run_id: int, results: List[ScoreResult]):
        """Copy a finished accumulator into the per-run table"""
        with self._session() as db:
            db.query(ScanResultRow).filter(ScanResultRow.scan_id == run_id).delete()
            db.add_all(self._result_rows(ScanResultRow, results, run_id))

    def get_scan_results(self, run_id: int) -> List[ScoreResult]:
        with self._session() as db:
            rows = (
                db.query(ScanResultRow)
                .filter(ScanResultRow.scan_id == run_id)
                .order_by(ScanResultRow.rank)
                .all()
            )
            return [self._row_to_result(r) for r in rows]

    def replace_live_results(self, run_id: int, results: List[ScoreResult]):
        """Swap the live table for a new snapshot in one transaction"""
        with self._session() as db:
            db.query(LiveResultRow).delete()
            db.add_all(self._result_rows(LiveResultRow, results, run_id))

    def get_live_results(self) -> Tuple[Optional[int], List[ScoreResult]]:
        with self._session() as db:
            rows = db.query(LiveResultRow).order_by(LiveResultRow.rank).all()
            run_id = rows[0].scan_id if rows else None
            return run_id, [self._row_to_result(r) for r in rows]

    # ============== Backtests ==============

    def save_backtest(self, config: dict, summary: dict, created_at: Optional[datetime] = None) -> int:
        with self._session() as db:
            record = BacktestRecord(created_at=created_at or datetime.utcnow(), config=config, summary=summary)
            db.add(record)
            db.flush()
            return record.id

    def list_backtests(self, limit: int = 50) -> List[dict]:
        with self._session() as db:
            records = db.query(BacktestRecord).order_by(BacktestRecord.id.desc()).limit(limit).all()
            return [
                {
                    "id": r.id,
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                    "config": r.config,
                    "summary": r.summary,
                }
                for r in records
            ]
