"""Fan-out broadcaster: delivers events to every live session of a user.

The broadcaster is the only owner of the live session registry. Each
session gets a bounded queue drained by its own writer task, so publishing
never waits on a socket. A session whose queue is full, or whose socket
does not accept an event within the send timeout, is evicted and
disconnected instead of slowing down the publisher or other sessions.

There is no acknowledgement or replay: a session that is offline at
publish time catches up through the REST read endpoints.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from unibox.config import settings

logger = structlog.get_logger()

SendFn = Callable[[str, dict[str, Any]], Awaitable[None]]
CloseFn = Callable[[], Awaitable[None]]


@dataclass
class SessionHandle:
    """Transport callbacks for one live client session."""

    sid: str
    user_id: str
    send: SendFn
    close: CloseFn | None = None


@dataclass
class _LiveSession:
    handle: SessionHandle
    queue: asyncio.Queue[tuple[str, dict[str, Any]]]
    rooms: set[str] = field(default_factory=set)
    writer: asyncio.Task[None] | None = None


class FanoutBroadcaster:
    """Process-wide registry of live sessions keyed by user and room."""

    def __init__(
        self,
        buffer_size: int | None = None,
        send_timeout: float | None = None,
    ) -> None:
        self._buffer_size = buffer_size or settings.FANOUT_SESSION_BUFFER
        self._send_timeout = send_timeout or settings.FANOUT_SEND_TIMEOUT
        self._sessions: dict[str, _LiveSession] = {}
        self._by_user: dict[str, set[str]] = {}
        self._by_room: dict[str, set[str]] = {}
        self._closing: set[asyncio.Task[None]] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Accept subscriptions and publishes."""
        self._running = True
        logger.info("Fan-out broadcaster started")

    async def stop(self) -> None:
        """Drop every session and stop all writer tasks."""
        self._running = False
        writers = [s.writer for s in self._sessions.values() if s.writer is not None]
        for writer in writers:
            writer.cancel()
        for writer in writers:
            with contextlib.suppress(asyncio.CancelledError):
                await writer
        self._sessions.clear()
        self._by_user.clear()
        self._by_room.clear()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        logger.info("Fan-out broadcaster stopped")

    def subscribe(self, user_id: str, handle: SessionHandle) -> None:
        """Register a live session under its user's channel."""
        if not self._running:
            logger.warning("Subscribe on stopped broadcaster ignored", sid=handle.sid)
            return
        if handle.sid in self._sessions:
            self.unsubscribe(handle.sid)

        session = _LiveSession(handle=handle, queue=asyncio.Queue(maxsize=self._buffer_size))
        session.writer = asyncio.create_task(self._writer(session), name=f"fanout:{handle.sid}")
        self._sessions[handle.sid] = session
        self._by_user.setdefault(user_id, set()).add(handle.sid)
        logger.debug("Session subscribed", sid=handle.sid, user_id=user_id)

    def unsubscribe(self, sid: str) -> None:
        """Remove a session from every channel and stop its writer."""
        session = self._sessions.pop(sid, None)
        if session is None:
            return
        user_sids = self._by_user.get(session.handle.user_id)
        if user_sids is not None:
            user_sids.discard(sid)
            if not user_sids:
                del self._by_user[session.handle.user_id]
        for room in session.rooms:
            room_sids = self._by_room.get(room)
            if room_sids is not None:
                room_sids.discard(sid)
                if not room_sids:
                    del self._by_room[room]
        if session.writer is not None and session.writer is not asyncio.current_task():
            session.writer.cancel()
        logger.debug("Session unsubscribed", sid=sid)

    def join_room(self, sid: str, room: str) -> bool:
        """Add a session to an ad hoc room (older clients address rooms directly)."""
        session = self._sessions.get(sid)
        if session is None:
            return False
        session.rooms.add(room)
        self._by_room.setdefault(room, set()).add(sid)
        return True

    def in_room(self, sid: str, room: str) -> bool:
        session = self._sessions.get(sid)
        return session is not None and room in session.rooms

    def leave_room(self, sid: str, room: str) -> None:
        session = self._sessions.get(sid)
        if session is None:
            return
        session.rooms.discard(room)
        room_sids = self._by_room.get(room)
        if room_sids is not None:
            room_sids.discard(sid)
            if not room_sids:
                del self._by_room[room]

    def publish(
        self,
        user_id: str,
        event: str,
        payload: dict[str, Any],
        exclude_sid: str | None = None,
    ) -> int:
        """Queue an event for every live session of a user.

        Never blocks. Returns the number of sessions the event was queued for.
        """
        return self._enqueue(self._by_user.get(user_id, set()), event, payload, exclude_sid)

    def publish_to_room(
        self,
        room: str,
        event: str,
        payload: dict[str, Any],
        exclude_sid: str | None = None,
    ) -> int:
        """Queue an event for every live session in a room."""
        return self._enqueue(self._by_room.get(room, set()), event, payload, exclude_sid)

    def session_count(self, user_id: str | None = None) -> int:
        if user_id is None:
            return len(self._sessions)
        return len(self._by_user.get(user_id, set()))

    def user_of(self, sid: str) -> str | None:
        session = self._sessions.get(sid)
        return session.handle.user_id if session else None

    def _enqueue(
        self,
        sids: set[str],
        event: str,
        payload: dict[str, Any],
        exclude_sid: str | None,
    ) -> int:
        if not self._running:
            return 0
        delivered = 0
        # Copy: eviction mutates the registry
        for sid in list(sids):
            if sid == exclude_sid:
                continue
            session = self._sessions.get(sid)
            if session is None:
                continue
            try:
                session.queue.put_nowait((event, payload))
            except asyncio.QueueFull:
                self._evict(session, "buffer full")
                continue
            delivered += 1
        return delivered

    def _evict(self, session: _LiveSession, reason: str) -> None:
        sid = session.handle.sid
        if self._sessions.get(sid) is not session:
            return
        logger.warning(
            "Evicting slow session",
            sid=sid,
            user_id=session.handle.user_id,
            reason=reason,
        )
        self.unsubscribe(sid)
        if session.handle.close is not None:
            task = asyncio.create_task(self._close(session.handle))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    async def _close(self, handle: SessionHandle) -> None:
        if handle.close is None:
            return
        try:
            await asyncio.wait_for(handle.close(), timeout=self._send_timeout)
        except Exception as e:
            logger.warning("Failed to disconnect evicted session", sid=handle.sid, error=str(e))

    async def _writer(self, session: _LiveSession) -> None:
        """Drain one session's queue into its socket."""
        handle = session.handle
        while True:
            event, payload = await session.queue.get()
            try:
                await asyncio.wait_for(handle.send(event, payload), timeout=self._send_timeout)
            except TimeoutError:
                self._evict(session, "send timeout")
                return
            except Exception as e:
                logger.warning("Session send failed", sid=handle.sid, event=event, error=str(e))
                self._evict(session, "send error")
                return


# Process-wide instance, started and stopped by the application lifespan
broadcaster = FanoutBroadcaster()


def get_broadcaster() -> FanoutBroadcaster:
    """Get the process-wide broadcaster."""
    return broadcaster
