"""Append-only progress ledger backed by SQLModel + SQLite."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from sqlalchemy import Column, DateTime, Text, func
from sqlmodel import Field, Session, SQLModel, col, select

from mise_loop.orchestrator.models import ProgressEntry
from mise_loop.orchestrator.storage import build_sqlite_engine, from_iso, utc_now

INTERRUPTED_STATUS = "interrupted"


class ProgressEntryRow(SQLModel, table=True):
    __tablename__ = "progress_entries"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    task_id: str = Field(index=True)
    status: str = Field(index=True)
    duration_ms: int | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    cost_usd: float | None = None
    run_id: str | None = Field(default=None, index=True)
    note: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class ProgressLedger:
    """Progress persistence facade; rows are only ever inserted."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        SQLModel.metadata.create_all(self.engine, tables=[ProgressEntryRow.__table__])  # type: ignore[attr-defined]

    def close(self) -> None:
        self.engine.dispose()

    def log_entry(self, entry: ProgressEntry) -> ProgressEntry:
        created_at = entry.created_at or utc_now()
        with Session(self.engine) as session:
            session.add(
                ProgressEntryRow(
                    created_at=created_at,
                    task_id=entry.task_id,
                    status=entry.status,
                    duration_ms=entry.duration_ms,
                    tokens_in=entry.tokens_in,
                    tokens_out=entry.tokens_out,
                    cost_usd=entry.cost_usd,
                    run_id=entry.run_id,
                    note=entry.note,
                ),
            )
            session.commit()
        entry.created_at = created_at
        return entry

    def log_interrupt(self, task_id: str, reason: str, *, run_id: str | None = None) -> ProgressEntry:
        return self.log_entry(
            ProgressEntry(task_id=task_id, status=INTERRUPTED_STATUS, run_id=run_id, note=reason),
        )

    def total_cost(self) -> float:
        with Session(self.engine) as session:
            total = session.exec(select(func.sum(ProgressEntryRow.cost_usd))).one()
        return float(total or 0.0)

    def recent_entries(self, limit: int = 20) -> list[ProgressEntry]:
        """Newest ``limit`` entries, returned oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ProgressEntryRow).order_by(col(ProgressEntryRow.id).desc()).limit(max(0, limit)),
            ).all()
        return [_entry_from_row(row) for row in reversed(rows)]


def format_entry(entry: ProgressEntry) -> str:
    """Render ``[ts] id | status | 12.3s | in / out | $0.0123``."""

    timestamp = entry.created_at.isoformat(timespec="seconds") if entry.created_at else "unknown"
    if entry.status == INTERRUPTED_STATUS:
        return f"[{timestamp}] {entry.task_id} | {entry.status} | {entry.note or 'unknown'}"

    duration = f"{entry.duration_ms / 1000:.1f}s" if entry.duration_ms is not None else "unknown"
    tokens_in = str(entry.tokens_in) if entry.tokens_in is not None else "unknown"
    tokens_out = str(entry.tokens_out) if entry.tokens_out is not None else "unknown"
    cost = f"${entry.cost_usd:.4f}" if entry.cost_usd is not None else "unknown"
    line = f"[{timestamp}] {entry.task_id} | {entry.status} | {duration} | {tokens_in} / {tokens_out} | {cost}"
    if entry.note:
        line += f" | {entry.note}"
    return line


def _entry_from_row(row: ProgressEntryRow) -> ProgressEntry:
    return ProgressEntry(
        task_id=row.task_id,
        status=row.status,
        duration_ms=row.duration_ms,
        tokens_in=row.tokens_in,
        tokens_out=row.tokens_out,
        cost_usd=row.cost_usd,
        run_id=row.run_id,
        note=row.note,
        created_at=from_iso(row.created_at),
    )
