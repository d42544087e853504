"""
Session Controller：單一客戶端的回合流程

- 所有狀態都放在明確的 SessionContext 裡（沒有全域變數）
- 計時器、變更通知、使用者操作全部進同一個 asyncio.Queue，
  由 handle_event 逐一處理，同一時間只有一個決策點
- 每個回合最多觸發一次鎖定 + 抽獎
- 每次結算只公布一次贏家

客戶端階段：
    IDLE -> WAITING_FOR_PLAYERS -> COUNTDOWN -> SPINNING -> WINNER_SHOWN -> IDLE
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Optional, Set, Tuple, Union

from models import RoundStatus
from schemas import (
    ChangeEvent,
    ParticipantView,
    PlayerIdentity,
    RoundProjection,
    RoundSchema,
    Stake,
)
from core.exceptions import WheelGameException
from core.sync_coordinator import CloseOutcome, JoinResult, SyncCoordinator
from services import stake_service
from services.countdown_service import can_draw, countdown_remaining, deadline_passed

logger = logging.getLogger(__name__)


class ClientPhase(str, Enum):
    IDLE = "IDLE"
    WAITING_FOR_PLAYERS = "WAITING_FOR_PLAYERS"
    COUNTDOWN = "COUNTDOWN"
    SPINNING = "SPINNING"
    WINNER_SHOWN = "WINNER_SHOWN"


@dataclass
class SessionContext:
    """一個客戶端 session 的全部可變狀態"""
    identity: Optional[PlayerIdentity] = None
    phase: ClientPhase = ClientPhase.IDLE
    avatar_cache: Dict[str, Optional[str]] = field(default_factory=dict)
    timer_task: Optional[asyncio.Task] = None
    # 已觸發抽獎的回合 id（只保留目前與上一個回合）
    draw_triggered: Set[str] = field(default_factory=set)
    # 已公布的結算 (round_id, settled_at)，同上只保留兩個回合
    announced: Set[Tuple[str, Optional[datetime]]] = field(default_factory=set)
    current_round_id: Optional[str] = None
    previous_round_id: Optional[str] = None
    join_error: Optional[str] = None
    offline: bool = False
    winner_shown_at: Optional[datetime] = None


# ============ 事件 ============

@dataclass
class Tick:
    now: Optional[datetime] = None


@dataclass
class RemoteChange:
    event: ChangeEvent


@dataclass
class JoinRequested:
    stake: Stake
    identity: Optional[PlayerIdentity] = None
    future: Optional[asyncio.Future] = None


@dataclass
class ManualRefresh:
    pass


@dataclass
class AcknowledgeWinner:
    pass


@dataclass
class NewRoundRequested:
    pass


SessionEvent = Union[Tick, RemoteChange, JoinRequested, ManualRefresh, AcknowledgeWinner, NewRoundRequested]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionController:
    """One client's view of the current round."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        identity: PlayerIdentity = None,
        cooldown_seconds: float = 3.0,
        tick_interval: float = 1.0,
        clock: Callable[[], datetime] = None,
        on_winner: Callable[[RoundSchema], None] = None
    ):
        self.coordinator = coordinator
        self.context = SessionContext(identity=identity)
        self.cooldown_seconds = cooldown_seconds
        self.tick_interval = tick_interval
        self._clock = clock or _utcnow
        self._on_winner = on_winner
        self.queue: asyncio.Queue = asyncio.Queue()
        self._loop_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, coordinator: SyncCoordinator, settings, **kwargs) -> "SessionController":
        return cls(
            coordinator,
            cooldown_seconds=settings.settle_cooldown_seconds,
            tick_interval=settings.tick_interval_seconds,
            **kwargs
        )

    @property
    def phase(self) -> ClientPhase:
        return self.context.phase

    # ------------------------------------------------------------------
    # 生命週期
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """連上共享儲存並同步第一次的畫面狀態（不啟動事件迴圈）"""
        await self.coordinator.start(sink=self.enqueue_remote)
        self._sync_phase(self._clock())

    async def start(self) -> None:
        await self.connect()
        self._loop_task = asyncio.create_task(self._run())
        self.context.timer_task = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        tasks = [t for t in (self.context.timer_task, self._loop_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.context.timer_task = None
        self._loop_task = None
        await self.coordinator.stop()

    def enqueue_remote(self, event: ChangeEvent) -> None:
        self.queue.put_nowait(RemoteChange(event))

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.queue.put_nowait(Tick())

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Failed to handle {type(event).__name__}: {e}", exc_info=True)
                if isinstance(event, JoinRequested) and event.future and not event.future.done():
                    event.future.set_exception(e)

    async def drain(self) -> None:
        """處理佇列中目前所有的事件（事件迴圈未啟動時使用）"""
        while not self.queue.empty():
            await self.handle_event(self.queue.get_nowait())

    # ------------------------------------------------------------------
    # 唯一的決策點
    # ------------------------------------------------------------------
    async def handle_event(self, event: SessionEvent) -> None:
        now = self._clock()

        if isinstance(event, Tick):
            await self._on_tick(event.now or now)
            return

        if isinstance(event, RemoteChange):
            await self.coordinator.handle_change(event.event)
        elif isinstance(event, JoinRequested):
            result = await self._join(event)
            if event.future is not None and not event.future.done():
                event.future.set_result(result)
        elif isinstance(event, ManualRefresh):
            await self.coordinator.refresh()
        elif isinstance(event, AcknowledgeWinner):
            if self.context.phase == ClientPhase.WINNER_SHOWN:
                await self._finish_round(now)
                return
        elif isinstance(event, NewRoundRequested):
            mirror = self.coordinator.mirror
            if mirror is None or mirror.status == RoundStatus.SETTLED:
                await self._finish_round(now)
                return
            logger.info(f"Ignoring new round request while round #{mirror.sequence_number} is {mirror.status.value}")
        else:
            raise TypeError(f"Unknown session event: {event!r}")

        self._sync_phase(now)

    async def _join(self, event: JoinRequested) -> JoinResult:
        identity = event.identity or self.context.identity
        if identity is None:
            self.context.join_error = "No player identity for this session"
            return JoinResult(success=False, error=self.context.join_error)

        result = await self.coordinator.join(identity, event.stake)
        self.context.join_error = None if result.success else result.error
        if result.success:
            self.context.avatar_cache[identity.participant_external_id] = identity.avatar_ref
        return result

    async def _on_tick(self, now: datetime) -> None:
        if self.context.phase == ClientPhase.WINNER_SHOWN:
            if self.context.winner_shown_at is None:
                self.context.winner_shown_at = now
            if (now - self.context.winner_shown_at).total_seconds() >= self.cooldown_seconds:
                await self._finish_round(now)
            return

        mirror = self.coordinator.mirror
        if mirror is not None and mirror.status in (RoundStatus.LOCKED, RoundStatus.DRAWING):
            outcome = await self.coordinator.recover_stalled_round(now)
            if outcome != CloseOutcome.NOT_READY:
                logger.info(f"Recover round #{mirror.sequence_number}: {outcome.value}")
        elif mirror is not None and mirror.status == RoundStatus.OPEN and deadline_passed(mirror, now):
            if not can_draw(mirror):
                await self.coordinator.close_round(now)
            elif mirror.id not in self.context.draw_triggered:
                self.context.draw_triggered.add(mirror.id)
                self.context.phase = ClientPhase.SPINNING
                outcome = await self.coordinator.close_round(now)
                logger.info(f"Close round #{mirror.sequence_number}: {outcome.value}")

        self._sync_phase(now)

    async def _finish_round(self, now: datetime) -> None:
        """
        冷卻結束：切換到下一回合

        切換失敗，或協調器仍停在已結算的回合（等待遠端），
        就維持 WINNER_SHOWN 並重新計時，下一次冷卻結束再試
        """
        self.context.join_error = None
        try:
            await self.coordinator.advance_to_next_round()
        except WheelGameException as e:
            logger.warning(f"Cannot advance yet: {e}")

        mirror = self.coordinator.mirror
        if mirror is not None and mirror.status == RoundStatus.SETTLED:
            self.context.winner_shown_at = now
        else:
            self.context.winner_shown_at = None
            self.context.phase = ClientPhase.IDLE
        self._sync_phase(now)

    def _track_round(self, mirror: RoundSchema) -> None:
        if mirror.id == self.context.current_round_id:
            return
        self.context.previous_round_id = self.context.current_round_id
        self.context.current_round_id = mirror.id
        keep = {self.context.current_round_id, self.context.previous_round_id}
        self.context.draw_triggered = {r for r in self.context.draw_triggered if r in keep}
        self.context.announced = {k for k in self.context.announced if k[0] in keep}

    def _sync_phase(self, now: datetime) -> None:
        """依本地鏡像推導客戶端階段，並公布新的結算"""
        self.context.offline = self.coordinator.degraded_mode
        mirror = self.coordinator.mirror
        if mirror is not None:
            self._track_round(mirror)

        if mirror is None:
            self.context.phase = ClientPhase.IDLE
        elif mirror.status == RoundStatus.SETTLED:
            key = (mirror.id, mirror.settled_at)
            if key not in self.context.announced:
                self.context.announced.add(key)
                self.context.winner_shown_at = now
                self._announce(mirror)
            self.context.phase = ClientPhase.WINNER_SHOWN
        elif mirror.status in (RoundStatus.LOCKED, RoundStatus.DRAWING):
            self.context.phase = ClientPhase.SPINNING
        elif mirror.id in self.context.draw_triggered:
            self.context.phase = ClientPhase.SPINNING
        elif mirror.countdown_deadline is not None:
            self.context.phase = ClientPhase.COUNTDOWN
        elif mirror.participants:
            self.context.phase = ClientPhase.WAITING_FOR_PLAYERS
        else:
            self.context.phase = ClientPhase.IDLE

        for p in mirror.participants if mirror else []:
            self.context.avatar_cache.setdefault(p.id, p.avatar_ref)

    def _announce(self, settled: RoundSchema) -> None:
        if settled.winner_id is None:
            logger.warning(f"Round #{settled.sequence_number} settled with no winner")
        else:
            logger.info(
                f"Round #{settled.sequence_number} winner: {settled.winner_id} "
                f"({settled.winner_probability}%)"
            )
        if self._on_winner is not None:
            self._on_winner(settled)

    # ------------------------------------------------------------------
    # 使用者操作
    # ------------------------------------------------------------------
    async def join(self, stake: Stake, identity: PlayerIdentity = None) -> JoinResult:
        event = JoinRequested(stake=stake, identity=identity)
        if self._loop_task is None:
            return await self._handle_join_inline(event)
        event.future = asyncio.get_running_loop().create_future()
        self.queue.put_nowait(event)
        return await event.future

    async def _handle_join_inline(self, event: JoinRequested) -> JoinResult:
        await self.drain()
        result = await self._join(event)
        self._sync_phase(self._clock())
        return result

    def request_manual_refresh(self) -> None:
        self.queue.put_nowait(ManualRefresh())

    def acknowledge_winner(self) -> None:
        self.queue.put_nowait(AcknowledgeWinner())

    def request_new_round(self) -> None:
        self.queue.put_nowait(NewRoundRequested())

    # ------------------------------------------------------------------
    # 唯讀的畫面資料
    # ------------------------------------------------------------------
    def projection(self, now: datetime = None) -> Optional[RoundProjection]:
        mirror = self.coordinator.mirror
        if mirror is None:
            return None
        now = now or self._clock()

        total = stake_service.total_pot(mirror)
        participants = []
        for p in mirror.participants:
            share = stake_service.total_weight(p) / total if total > 0 else Decimal("0")
            participants.append(ParticipantView(
                id=p.id,
                display_name=p.display_name,
                weight_share=share.quantize(Decimal("0.0001")),
                avatar_ref=self.context.avatar_cache.get(p.id, p.avatar_ref),
                assigned_color=p.assigned_color
            ))

        return RoundProjection(
            sequence_number=mirror.sequence_number,
            status=mirror.status,
            phase=self.context.phase.value,
            participants=participants,
            countdown_remaining=countdown_remaining(mirror, now) if mirror.status == RoundStatus.OPEN else None,
            winner_id=mirror.winner_id,
            winner_probability=mirror.winner_probability,
            total_pot_value=mirror.total_pot_value,
            offline=self.context.offline,
            join_error=self.context.join_error
        )
