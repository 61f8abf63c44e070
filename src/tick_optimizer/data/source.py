"""
Tick sources — where recorded sessions come from.

The optimizer only depends on the TickSource protocol; the in-memory source
backs tests and embedding callers, the CSV source reads one file per session.
"""

from pathlib import Path
from typing import Iterable, Protocol, runtime_checkable

import pandas as pd

from tick_optimizer.data.models import Session, Tick
from tick_optimizer.exceptions import SessionDataError, SessionNotFoundError
from tick_optimizer.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class TickSource(Protocol):
    """Supplies ordered, validated tick sessions by id."""

    def get_session(self, session_id: str) -> Session:
        ...

    def list_sessions(self) -> list[str]:
        ...


class InMemoryTickSource:
    """Sessions held in a dict, validated on registration.

    When ``outcome`` is given only that outcome's ticks are kept, as with
    CsvTickSource.
    """

    def __init__(self, sessions: Iterable[Session] = (), outcome: str | None = None) -> None:
        self.outcome = outcome
        self._sessions: dict[str, Session] = {}
        for session in sessions:
            self.add(session)

    def add(self, session: Session) -> None:
        if self.outcome is not None:
            session = session.for_outcome(self.outcome)
        session.validate()
        self._sessions[session.session_id] = session

    def get_session(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(session_id) from None

    def list_sessions(self) -> list[str]:
        return sorted(self._sessions)


class CsvTickSource:
    """
    One ``<session_id>.csv`` per session under ``data_dir``.

    Required columns: ``timestamp`` (epoch seconds or ISO-8601) and ``price``.
    Optional ``outcome`` column; rows of other outcomes are dropped when
    ``outcome`` is given.
    """

    def __init__(self, data_dir: str | Path, outcome: str | None = "YES") -> None:
        self.data_dir = Path(data_dir)
        self.outcome = outcome

    def _path(self, session_id: str) -> Path:
        return self.data_dir / f"{session_id}.csv"

    def list_sessions(self) -> list[str]:
        if not self.data_dir.exists():
            return []
        return sorted(p.stem for p in self.data_dir.glob("*.csv"))

    def get_session(self, session_id: str) -> Session:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFoundError(session_id)

        df = pd.read_csv(path)
        missing = {"timestamp", "price"} - set(df.columns)
        if missing:
            raise SessionDataError(
                f"Session {session_id}: missing columns {sorted(missing)}"
            )

        if "outcome" in df.columns:
            if self.outcome is not None:
                df = df[df["outcome"].astype(str) == self.outcome]
            outcomes = df["outcome"].astype(str).tolist()
        else:
            outcomes = [self.outcome or "YES"] * len(df)

        timestamps = self._to_epoch_seconds(df["timestamp"])
        prices = df["price"].astype(float).tolist()

        session = Session.from_ticks(
            session_id,
            (Tick(timestamp=ts, price=p, outcome=o) for ts, p, o in zip(timestamps, prices, outcomes)),
        )
        session.validate()

        logger.debug("Session loaded", session_id=session_id, ticks=len(session.ticks))
        return session

    @staticmethod
    def _to_epoch_seconds(column: pd.Series) -> list[float]:
        if pd.api.types.is_numeric_dtype(column):
            return column.astype(float).tolist()
        parsed = pd.to_datetime(column, utc=True)
        return [ts.timestamp() for ts in parsed]

    def write_session(self, session: Session) -> Path:
        """Persist a session in the format ``get_session`` reads."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        df = pd.DataFrame(
            {
                "timestamp": [t.timestamp for t in session.ticks],
                "price": [t.price for t in session.ticks],
                "outcome": [t.outcome for t in session.ticks],
            }
        )
        path = self._path(session.session_id)
        df.to_csv(path, index=False)
        return path
