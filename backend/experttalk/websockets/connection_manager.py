"""
In-memory registry of live websocket connections and per-session groups.

Membership is process-local and rebuilt by clients re-joining after a
reconnect. Each connection owns a bounded outbound queue drained by its own
sender task, so publishing never waits on a slow peer.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set
from uuid import UUID, uuid4

from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)


class ClientConnection:
    """One accepted websocket and its outbound queue."""

    def __init__(
        self,
        websocket: WebSocket,
        user_id: UUID,
        queue_size: int = 256,
        on_failure: Optional[Callable[["ClientConnection"], None]] = None,
    ):
        self.id = uuid4()
        self.websocket = websocket
        self.user_id = user_id
        self.sessions: Set[UUID] = set()
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._sender: Optional[asyncio.Task] = None
        self._on_failure = on_failure

    def start(self) -> None:
        self._sender = asyncio.create_task(self._run_sender())

    def enqueue(self, message: Dict[str, Any]) -> bool:
        """Queue a frame for delivery; False if closed or the buffer is full."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    async def _run_sender(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Error sending to user {self.user_id}: {e}")
                self.closed = True
                if self._on_failure is not None:
                    self._on_failure(self)
                return

    async def close(self, code: Optional[int] = None) -> None:
        self.closed = True
        if self._sender is not None and not self._sender.done():
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
        if code is not None:
            try:
                await self.websocket.close(code=code)
            except Exception as e:
                logger.debug(f"Websocket for user {self.user_id} already closed: {e}")

    def __repr__(self) -> str:
        return f"<ClientConnection {self.id} user={self.user_id}>"


class ConnectionManager:
    """
    Tracks live connections and which of them joined which session.

    The only operations are connect/disconnect, join/leave and broadcast; no
    session data is stored here.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self.active_connections: Dict[UUID, ClientConnection] = {}
        self.session_members: Dict[UUID, Set[ClientConnection]] = {}
        self._session_locks: Dict[UUID, asyncio.Lock] = {}
        self._closing: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket, user_id: UUID) -> ClientConnection:
        await websocket.accept()
        connection = ClientConnection(
            websocket,
            user_id,
            queue_size=self.queue_size,
            on_failure=self._evict,
        )
        connection.start()
        self.active_connections[connection.id] = connection
        logger.info(f"User {user_id} connected ({connection.id})")
        return connection

    async def disconnect(self, connection: ClientConnection) -> None:
        self._forget(connection)
        await connection.close()
        logger.info(f"User {connection.user_id} disconnected ({connection.id})")

    async def disconnect_all(self) -> None:
        for connection in list(self.active_connections.values()):
            self._forget(connection)
            await connection.close(code=1001)
        self.session_members.clear()
        self._session_locks.clear()

    def join(self, session_id: UUID, connection: ClientConnection) -> None:
        if connection.closed:
            return
        self.session_members.setdefault(session_id, set()).add(connection)
        connection.sessions.add(session_id)
        logger.debug(f"User {connection.user_id} joined session {session_id}")

    def leave(self, session_id: UUID, connection: ClientConnection) -> None:
        members = self.session_members.get(session_id)
        if members is not None:
            members.discard(connection)
            if not members:
                del self.session_members[session_id]
        connection.sessions.discard(session_id)
        logger.debug(f"User {connection.user_id} left session {session_id}")

    def broadcast_to_session(
        self,
        session_id: UUID,
        message: Dict[str, Any],
        exclude: Optional[ClientConnection] = None,
    ) -> int:
        """
        Queue ``message`` for every member of the session.

        Returns the number of connections it was queued for. Members whose
        buffer is full are evicted instead of blocking the others.
        """
        recipients = 0
        for connection in list(self.session_members.get(session_id, ())):
            if connection is exclude:
                continue
            if connection.enqueue(message):
                recipients += 1
            else:
                logger.warning(f"Dropping slow connection {connection.id} of user {connection.user_id}")
                self._evict(connection)
        return recipients

    def close_session(self, session_id: UUID) -> None:
        """Tear down the session's group; already queued frames still go out."""
        for connection in self.session_members.pop(session_id, set()):
            connection.sessions.discard(session_id)
        # Later sends are refused by the store, so ordering no longer matters.
        self._session_locks.pop(session_id, None)

    def session_lock(self, session_id: UUID) -> asyncio.Lock:
        """Single append point per session: held across persist and publish."""
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = self._session_locks[session_id] = asyncio.Lock()
        return lock

    def is_member(self, session_id: UUID, connection: ClientConnection) -> bool:
        return connection in self.session_members.get(session_id, ())

    def get_session_members(self, session_id: UUID) -> Set[UUID]:
        return {c.user_id for c in self.session_members.get(session_id, ())}

    def _forget(self, connection: ClientConnection) -> None:
        self.active_connections.pop(connection.id, None)
        for session_id in list(connection.sessions):
            self.leave(session_id, connection)

    def _evict(self, connection: ClientConnection) -> None:
        self._forget(connection)
        connection.closed = True
        # Closing the socket makes the owning receive loop exit and clean up.
        task = asyncio.create_task(connection.close(code=1013))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

