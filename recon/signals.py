"""Training-signal sinks for column classification events.

The mapper emits one :class:`ClassificationSignal` per mapped column, and a
second one (``accepted_by_human=True``) whenever a human accepts or overrides
a mapping. The engine only ever writes to a sink; nothing here is read back
during reconciliation.

Sinks are passed explicitly to the mapper. There is no module-level log.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import duckdb

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationSignal:
    column: str
    chosen_role: str
    confidence: float
    origin: str  # 'ai' | 'deterministic' | 'manual_override'
    accepted_by_human: bool = False
    source_name: str | None = None


class SignalSink(Protocol):
    def record(self, signal: ClassificationSignal) -> None: ...


class NullSignalSink:
    """Sink that drops every signal."""

    def record(self, signal: ClassificationSignal) -> None:
        return None


@dataclass
class MemorySignalSink:
    """Collects signals in a list (tests, short-lived hosts)."""

    signals: list[ClassificationSignal] = field(default_factory=list)

    def record(self, signal: ClassificationSignal) -> None:
        self.signals.append(signal)


# ---------------------------------------------------------------------------
# DuckDB-backed sink
# ---------------------------------------------------------------------------


def ensure_signal_table(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the _classification_signals table."""
    conn.execute("CREATE SEQUENCE IF NOT EXISTS _classification_signals_seq")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _classification_signals (
            id INTEGER DEFAULT nextval('_classification_signals_seq'),
            timestamp TIMESTAMP DEFAULT current_timestamp,
            source_name VARCHAR,
            column_name VARCHAR NOT NULL,
            chosen_role VARCHAR NOT NULL,
            confidence DOUBLE NOT NULL,
            origin VARCHAR NOT NULL,
            accepted_by_human BOOLEAN NOT NULL
        )
        """
    )


class DuckDBSignalSink:
    """Append signals to a ``_classification_signals`` table.

    Write failures are logged and dropped: a broken signal store must not
    fail a reconciliation.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn
        ensure_signal_table(conn)

    def record(self, signal: ClassificationSignal) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO _classification_signals
                    (source_name, column_name, chosen_role, confidence, origin, accepted_by_human)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    signal.source_name,
                    signal.column,
                    signal.chosen_role,
                    signal.confidence,
                    signal.origin,
                    signal.accepted_by_human,
                ],
            )
        except duckdb.Error as e:
            log.warning("Failed to record classification signal for %r: %s", signal.column, e)
