from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from models import LogKind, RoundStatus
from schemas import (
    EventLogEntrySchema,
    HistoryRecordSchema,
    ParticipantSchema,
    PlayerIdentity,
    RoundSchema,
    Stake,
)
from core.change_feed import ChangeFilter, Subscription


class RoundStore(Protocol):
    """
    Abstraction over the shared round store.

    Implementations are responsible for:
    - Acting as the sole arbiter of truth: a join, lock or settle is only
      real once the write here succeeds.
    - Returning boundary schemas, never ORM rows or driver objects.
    - Raising `TransportError` when the store is unreachable or a call
      times out, `ConflictError` when a conditional write loses a race and
      `ValidationError` subclasses when the store rejects the input.
    """

    async def fetch_current_open_round(self) -> Optional[RoundSchema]:
        """Return the single OPEN round, if any."""

        ...

    async def fetch_round(self, round_id: str) -> Optional[RoundSchema]:
        ...

    async def fetch_latest_round(self) -> Optional[RoundSchema]:
        """Return the round with the highest sequence number, whatever its status."""

        ...

    async def create_round(self, sequence_number: int) -> RoundSchema:
        """
        Create a new OPEN round.

        Raises `ConflictError` when another round is already OPEN or the
        sequence number was taken by a concurrent creator.
        """

        ...

    async def join_round(
        self,
        round_id: str,
        identity: PlayerIdentity,
        stake: Stake,
    ) -> ParticipantSchema:
        ...

    async def compare_and_set_round_status(
        self,
        round_id: str,
        expected: RoundStatus,
        new: RoundStatus,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Conditional status write.

        Returns True only if the stored status still equalled `expected`
        at write time; False means another client won the race.
        """

        ...

    async def append_log_entry(
        self,
        round_id: str,
        participant_id: Optional[str],
        kind: LogKind,
        message: str,
    ) -> EventLogEntrySchema:
        ...

    async def fetch_log_entries(self, round_id: str) -> List[EventLogEntrySchema]:
        ...

    async def write_history_record(self, record: HistoryRecordSchema) -> None:
        ...

    async def fetch_history(self, limit: int = 20) -> List[HistoryRecordSchema]:
        ...

    def subscribe(self, change_filter: ChangeFilter) -> Subscription:
        """Open a stream of change events matching `change_filter`."""

        ...
