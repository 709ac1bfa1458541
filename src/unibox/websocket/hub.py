"""Socket.IO hub for live inbox sessions.

Each connection is authenticated once, on connect, and then registered with
the fan-out broadcaster under its user. Every server-to-client event goes
through the broadcaster, which owns the session registry.
"""

from http.cookies import SimpleCookie
from typing import Any

import socketio
import structlog

from unibox.config import settings
from unibox.exceptions import (
    AccountNotConnected,
    ExternalSendFailure,
    LimitExceeded,
    NotFoundError,
    TransientStorageError,
)
from unibox.middleware.auth import decode_access_token
from unibox.middleware.rate_limit import check_socket_connect_rate
from unibox.pipeline.outbound import get_outbound_service
from unibox.websocket.broadcaster import SessionHandle, get_broadcaster
from unibox.websocket.payloads import EVENT_ERROR, EVENT_MESSAGE_SENT, EVENT_USER_TYPING

logger = structlog.get_logger()

USER_ROOM_PREFIX = "user_"


def _create_client_manager() -> socketio.AsyncManager | None:
    """Redis pub/sub manager so emits reach sockets held by other instances."""
    if settings.SOCKETIO_USE_REDIS and settings.REDIS_URL:
        return socketio.AsyncRedisManager(settings.REDIS_URL)
    return None


sio = socketio.AsyncServer(
    async_mode="asgi",
    client_manager=_create_client_manager(),
    cors_allowed_origins=settings.CORS_ORIGINS if settings.CORS_ORIGINS else "*",
    cors_credentials=True,
    logger=False,
    engineio_logger=False,
)


def _extract_cookie_token(environ: dict[str, Any]) -> str | None:
    """Extract the access token from the handshake's Cookie header."""
    cookie_header = environ.get("HTTP_COOKIE")
    if not cookie_header:
        for key, value in environ.get("headers") or []:
            header_key = key.decode("latin-1") if isinstance(key, bytes) else str(key)
            if header_key.lower() == "cookie":
                cookie_header = value.decode("latin-1") if isinstance(value, bytes) else str(value)
                break
    if not cookie_header:
        return None
    cookie: SimpleCookie = SimpleCookie()
    cookie.load(cookie_header)
    if settings.COOKIE_ACCESS_TOKEN in cookie:
        return cookie[settings.COOKIE_ACCESS_TOKEN].value
    return None


def authenticate_handshake(environ: dict[str, Any], auth: Any) -> str | None:
    """User id for a connection attempt, or None to refuse it.

    ``auth.token`` wins over the cookie. A connection without any token is
    mapped to DEFAULT_USER_ID only when anonymous sockets are allowed; an
    invalid token is always refused.
    """
    token = None
    if isinstance(auth, dict):
        token = auth.get("token")
    if not token:
        token = _extract_cookie_token(environ)
    if not token:
        return settings.DEFAULT_USER_ID if settings.SOCKET_ALLOW_ANONYMOUS else None
    return decode_access_token(str(token))


async def _session_user(sid: str) -> str | None:
    session = await sio.get_session(sid)
    return session.get("user_id") if session else None


def _make_handle(sid: str, user_id: str) -> SessionHandle:
    async def send(event: str, payload: dict[str, Any]) -> None:
        await sio.emit(event, payload, to=sid)

    async def close() -> None:
        await sio.disconnect(sid)

    return SessionHandle(sid=sid, user_id=user_id, send=send, close=close)


async def _emit_error(sid: str, message: str, code: str, **extra: Any) -> None:
    await sio.emit(EVENT_ERROR, {"message": message, "code": code, **extra}, to=sid)


@sio.event
async def connect(sid: str, environ: dict[str, Any], auth: Any = None) -> None:
    """Authenticate the handshake and subscribe the session to its user."""
    client_key = f"ip:{environ.get('REMOTE_ADDR', 'unknown')}"
    if not await check_socket_connect_rate(client_key):
        raise socketio.exceptions.ConnectionRefusedError("Too many connection attempts")

    user_id = authenticate_handshake(environ, auth)
    if user_id is None:
        logger.warning("Socket connection refused", sid=sid)
        raise socketio.exceptions.ConnectionRefusedError("Authentication error")

    await sio.save_session(sid, {"user_id": user_id})
    get_broadcaster().subscribe(user_id, _make_handle(sid, user_id))
    logger.info("Client connected", sid=sid, user_id=user_id)


@sio.event
async def disconnect(sid: str, *_args: Any) -> None:
    get_broadcaster().unsubscribe(sid)
    logger.info("Client disconnected", sid=sid)


def _room_name(data: Any) -> str | None:
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        room = data.get("room") or data.get("roomName")
        return str(room) if room else None
    return None


@sio.event
async def join_room(sid: str, data: Any) -> None:
    """Join an ad hoc room; older clients also join their own ``user_<id>`` room."""
    room = _room_name(data)
    user_id = await _session_user(sid)
    if not room or user_id is None:
        return
    if room.startswith(USER_ROOM_PREFIX) and room != f"{USER_ROOM_PREFIX}{user_id}":
        logger.warning("Refused join of another user's room", sid=sid, room=room)
        await _emit_error(sid, "Cannot join room", "FORBIDDEN_ROOM")
        return
    get_broadcaster().join_room(sid, room)
    logger.debug("Socket joined room", sid=sid, room=room)


@sio.event
async def leave_room(sid: str, data: Any) -> None:
    room = _room_name(data)
    if room:
        get_broadcaster().leave_room(sid, room)


@sio.event
async def send_message(sid: str, data: dict[str, Any]) -> None:
    """Send a message from a live session.

    The sender gets ``message_sent``; the user's other sessions get
    ``new_message`` from the outbound pipeline.
    """
    user_id = await _session_user(sid)
    if user_id is None:
        await _emit_error(sid, "Not authenticated", "UNAUTHENTICATED")
        return
    if not isinstance(data, dict):
        await _emit_error(sid, "Invalid message payload", "INVALID_PAYLOAD")
        return

    conversation_id = data.get("conversation_id") or data.get("threadId")
    body = data.get("text") or data.get("content") or ""
    if not conversation_id or not isinstance(body, str) or not body.strip():
        await _emit_error(sid, "conversation_id and text are required", "INVALID_PAYLOAD")
        return

    try:
        outcome = await get_outbound_service().send(
            user_id,
            str(conversation_id),
            body,
            attachments=data.get("attachments") or None,
            subject=data.get("subject"),
            reply_to_message_id=data.get("reply_to_message_id"),
            origin_sid=sid,
        )
    except LimitExceeded as e:
        await _emit_error(
            sid, "Monthly message limit reached", "LIMIT_EXCEEDED", limit=e.limit, sent=e.sent
        )
        return
    except ExternalSendFailure as e:
        await _emit_error(sid, "Failed to send message", "SEND_FAILED", message_id=e.message_id)
        return
    except AccountNotConnected:
        await _emit_error(sid, "Account is not connected", "ACCOUNT_NOT_CONNECTED")
        return
    except NotFoundError:
        await _emit_error(sid, "Conversation not found", "NOT_FOUND")
        return
    except TransientStorageError:
        await _emit_error(sid, "Temporarily unavailable, try again", "UNAVAILABLE")
        return

    await sio.emit(EVENT_MESSAGE_SENT, outcome.payload, to=sid)


async def _typing(sid: str, data: Any, is_typing: bool) -> None:
    user_id = await _session_user(sid)
    if user_id is None:
        return
    data = data if isinstance(data, dict) else {}
    payload = {"userId": user_id, "threadId": data.get("threadId"), "isTyping": is_typing}
    room = _room_name(data)
    broadcaster = get_broadcaster()
    if room and broadcaster.in_room(sid, room):
        broadcaster.publish_to_room(room, EVENT_USER_TYPING, payload, exclude_sid=sid)
    else:
        broadcaster.publish(user_id, EVENT_USER_TYPING, payload, exclude_sid=sid)


@sio.event
async def typing_start(sid: str, data: Any = None) -> None:
    await _typing(sid, data, True)


@sio.event
async def typing_stop(sid: str, data: Any = None) -> None:
    await _typing(sid, data, False)
