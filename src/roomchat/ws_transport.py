from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Dict, Set, Tuple

from aiohttp import WSMsgType, web

from .chat import ChatService
from .config import ChatConfig
from .errors import (
    ERROR_CODE_TO_STATUS,
    AuthorizationError,
    ChatError,
    MediaRejected,
    ValidationError,
)
from .hub import FanoutHub, Subscription, SubscriptionDropped
from .identity import StaticProfileProvider
from .logging import bind_context, clear_context, get_logger
from .media import LocalMediaResolver
from .messages import ChangeEvent, Message
from .sessions import Session, SessionStore
from .topics import BROADCAST, ConversationSelector, PrivateTopic, Topic, UserTopic

logger = get_logger(__name__)


class Runtime:
    def __init__(self, *, service: ChatService, sessions: SessionStore, config: ChatConfig) -> None:
        self.service = service
        self.sessions = sessions
        self.config = config


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


def _error_body(exc: ChatError) -> dict[str, Any]:
    body: dict[str, Any] = {"code": exc.code, "message": exc.message}
    if isinstance(exc, MediaRejected):
        body["reason"] = exc.reason.value
    return body


def _unauthorized() -> web.Response:
    return web.json_response({"code": "unauthorized", "message": "invalid session_token"}, status=401)


@web.middleware
async def error_middleware(request: web.Request, handler):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    clear_context()
    bind_context(request_id=request_id)
    try:
        response = await handler(request)
    except ChatError as exc:
        status = ERROR_CODE_TO_STATUS.get(exc.code, 500)
        if status >= 500:
            logger.error("request_failed", path=request.path, code=exc.code, error=exc.message)
        else:
            logger.info("request_rejected", path=request.path, code=exc.code, error=exc.message)
        response = web.json_response(_error_body(exc), status=status)
    response.headers["X-Request-ID"] = request_id
    return response


def _authenticate_request(request: web.Request) -> Session | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    session = runtime.sessions.get(session_token)
    if session is not None:
        bind_context(user_id=session.user_id)
    return session


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("malformed json") from None
    if not isinstance(body, dict):
        raise ValidationError("request body must be an object")
    return body


def _query_int(request: web.Request, name: str) -> int | None:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None
    if value < 0:
        raise ValidationError(f"{name} must be non-negative")
    return value


def _optional_str(body: dict[str, Any], name: str) -> str | None:
    value = body.get(name)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _with_author(service: ChatService, data: dict[str, Any], author_id: str) -> dict[str, Any]:
    profile = service.profile_for(author_id)
    if profile is not None:
        data = dict(data)
        data["author"] = profile.as_dict()
    return data


def _message_json(service: ChatService, message: Message) -> dict[str, Any]:
    data = message.as_dict()
    return _with_author(service, data, data.get("author_id") or data.get("sender_id"))


def _event_frame(service: ChatService, event: ChangeEvent) -> dict[str, Any]:
    body = event.as_dict()
    message = body["payload"].get("message")
    if message is not None:
        author_id = message.get("author_id") or message.get("sender_id")
        body["payload"] = dict(body["payload"], message=_with_author(service, message, author_id))
    return {"v": 1, "t": "event", "body": body}


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_session_start(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    user_id = body.get("user_id")
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("user_id required")
    if runtime.service.profiles is not None and runtime.service.profile_for(user_id) is None:
        return _unauthorized()
    session = runtime.sessions.create(user_id)
    logger.info("session_started", user_id=user_id)
    return web.json_response({"session_token": session.session_token, "expires_at": session.expires_at_ms})


async def handle_broadcast_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    if _authenticate_request(request) is None:
        return _unauthorized()
    messages = runtime.service.broadcast_history(
        since_id=_query_int(request, "since_id"),
        since_ms=_query_int(request, "since_ms"),
        limit=_query_int(request, "limit"),
    )
    return web.json_response({"messages": [_message_json(runtime.service, m) for m in messages]})


async def handle_broadcast_send(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    message = runtime.service.send_broadcast(
        session.user_id,
        _optional_str(body, "content"),
        body.get("kind", "text"),
        _optional_str(body, "media_ref"),
        client_msg_id=_optional_str(body, "client_msg_id"),
    )
    return web.json_response({"message": _message_json(runtime.service, message)})


async def handle_private_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    messages = runtime.service.private_history(
        session.user_id,
        request.match_info["counterpart"],
        since_id=_query_int(request, "since_id"),
        since_ms=_query_int(request, "since_ms"),
        limit=_query_int(request, "limit"),
    )
    return web.json_response({"messages": [_message_json(runtime.service, m) for m in messages]})


async def handle_private_send(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    message = runtime.service.send_private(
        session.user_id,
        request.match_info["counterpart"],
        _optional_str(body, "content"),
        body.get("kind", "text"),
        _optional_str(body, "media_ref"),
        client_msg_id=_optional_str(body, "client_msg_id"),
    )
    return web.json_response({"message": _message_json(runtime.service, message)})


async def handle_private_delete(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        message_id = int(request.match_info["message_id"])
    except ValueError:
        raise ValidationError("message id must be an integer") from None
    message = runtime.service.delete_private(message_id, session.user_id)
    return web.json_response({"status": "ok", "id": message.id})


async def handle_media_upload(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    kind = request.query.get("kind")
    if not kind:
        raise ValidationError("kind required")
    data = await request.read()
    message = runtime.service.send_media(
        session.user_id,
        kind,
        data,
        request.headers.get("Content-Type"),
        receiver_id=request.query.get("to") or None,
        client_msg_id=request.query.get("client_msg_id") or None,
    )
    return web.json_response({"url": message.media_ref, "message": _message_json(runtime.service, message)})


async def handle_broadcast_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    count = runtime.service.open_broadcast(session.user_id)
    return web.json_response({"unread": count, "cursor": runtime.service.tracker.get_cursor(session.user_id)})


async def handle_private_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    count = runtime.service.open_private(session.user_id, request.match_info["counterpart"])
    return web.json_response({"unread": count})


async def handle_unread(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    return web.json_response(runtime.service.unread_summary(session.user_id))


async def handle_conversations(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    return web.json_response(runtime.service.list_conversations(session.user_id).as_dict())


async def handle_notifications_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    limit = _query_int(request, "limit")
    if limit is None:
        limit = runtime.config.notification_limit
    notifications = runtime.service.list_notifications(session.user_id, limit)
    return web.json_response(
        {
            "notifications": [item.as_dict() for item in notifications],
            "unread": runtime.service.aggregator.unread_notification_count(session.user_id),
        }
    )


async def handle_notification_create(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    profile = runtime.service.profile_for(session.user_id)
    if profile is None or not profile.is_operator:
        raise AuthorizationError("only operators can create notifications")
    body = await _json_body(request)
    user_ids = body.get("user_ids")
    if user_ids is None and "user_id" in body:
        user_ids = [body.get("user_id")]
    if not isinstance(user_ids, list) or not user_ids:
        raise ValidationError("user_ids required")
    if not all(isinstance(user_id, str) and user_id for user_id in user_ids):
        raise ValidationError("user_ids must be non-empty strings")
    kind = _optional_str(body, "type") or ""
    message = _optional_str(body, "message") or ""
    metadata = body.get("metadata")
    created = [
        runtime.service.create_notification(user_id, kind, message, metadata)
        for user_id in dict.fromkeys(user_ids)
    ]
    return web.json_response({"notifications": [n.as_dict() for n in created]})


async def handle_notification_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        notification_id = int(request.match_info["notification_id"])
    except ValueError:
        raise ValidationError("notification id must be an integer") from None
    notification = runtime.service.mark_notification_read(notification_id, session.user_id)
    return web.json_response({"notification": notification.as_dict()})


async def handle_notifications_read_all(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    flipped = runtime.service.mark_all_notifications_read(session.user_id)
    return web.json_response({"status": "ok", "updated": flipped})


def build_service(config: ChatConfig, *, hub: FanoutHub | None = None) -> ChatService:
    hub = hub or FanoutHub(max_pending=config.subscriber_buffer)
    profiles = StaticProfileProvider.from_json_file(config.profiles_path) if config.profiles_path else None
    media = None
    if config.media_dir:
        media = LocalMediaResolver(config.media_dir, config.media_base_url, max_bytes=config.max_media_bytes)
    options = {
        "hub": hub,
        "media": media,
        "profiles": profiles,
        "history_limit": config.history_limit,
        "max_media_bytes": config.max_media_bytes,
    }
    if config.db_path is not None:
        return ChatService.with_sqlite(config.db_path, **options)
    return ChatService.in_memory(**options)


def create_app(
    config: ChatConfig | None = None,
    *,
    service: ChatService | None = None,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
) -> web.Application:
    config = config or ChatConfig()
    service = service or build_service(config)
    runtime = Runtime(
        service=service,
        sessions=SessionStore(config.session_ttl_ms),
        config=config,
    )
    app = web.Application(middlewares=[error_middleware], client_max_size=config.max_media_bytes * 2)
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": config.ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_get("/v1/broadcast/messages", handle_broadcast_list)
    app.router.add_post("/v1/broadcast/messages", handle_broadcast_send)
    app.router.add_post("/v1/broadcast/read", handle_broadcast_read)
    app.router.add_delete("/v1/private/messages/{message_id}", handle_private_delete)
    app.router.add_get("/v1/private/{counterpart}/messages", handle_private_list)
    app.router.add_post("/v1/private/{counterpart}/messages", handle_private_send)
    app.router.add_post("/v1/private/{counterpart}/read", handle_private_read)
    app.router.add_post("/v1/media", handle_media_upload)
    app.router.add_get("/v1/unread", handle_unread)
    app.router.add_get("/v1/conversations", handle_conversations)
    app.router.add_get("/v1/notifications", handle_notifications_list)
    app.router.add_post("/v1/notifications", handle_notification_create)
    app.router.add_post("/v1/notifications/read-all", handle_notifications_read_all)
    app.router.add_post("/v1/notifications/{notification_id}/read", handle_notification_read)
    app.router.add_get("/v1/ws", websocket_handler)
    if isinstance(service.media, LocalMediaResolver):
        service.media.root.mkdir(parents=True, exist_ok=True)
        app.router.add_static(service.media.base_url, service.media.root)

    async def close_service(_: web.Application) -> None:
        service.close()

    app.on_cleanup.append(close_service)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _parse_topic(body: dict[str, Any], user_id: str) -> Topic:
    name = body.get("topic")
    if name == "broadcast":
        return BROADCAST
    if name == "user":
        return UserTopic(user_id)
    if name == "private":
        counterpart = body.get("with")
        if not isinstance(counterpart, str) or not counterpart or counterpart == user_id:
            raise ValidationError("private topic needs another user in 'with'")
        return PrivateTopic.for_pair(user_id, counterpart)
    raise ValidationError("topic must be broadcast, private or user")


def _parse_selector(body: dict[str, Any], user_id: str) -> ConversationSelector:
    topic = _parse_topic(body, user_id)
    if isinstance(topic, UserTopic):
        raise ValidationError("viewer signals need a conversation topic")
    return topic


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]
    service = runtime.service

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=runtime.config.subscriber_buffer)
    subscriptions: Dict[str, Tuple[Subscription, asyncio.Task]] = {}
    viewing: Set[ConversationSelector] = set()
    session: Session | None = None

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def pump(subscription: Subscription) -> None:
        try:
            async for event in subscription:
                await outbound.put(_event_frame(service, event))
        except SubscriptionDropped:
            subscriptions.pop(subscription.topic.key, None)
            await outbound.put({"v": 1, "t": "dropped", "body": {"topic": subscription.topic.key}})
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    def unsubscribe(key: str) -> bool:
        entry = subscriptions.pop(key, None)
        if entry is None:
            return False
        subscription, task = entry
        service.hub.unsubscribe(subscription)
        task.cancel()
        return True

    async def handle_frame(frame_type: str, frame_id: Any, body: dict[str, Any]) -> None:
        user_id = session.user_id
        if frame_type == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": frame_id})
        elif frame_type == "pong":
            return
        elif frame_type == "sub":
            topic = _parse_topic(body, user_id)
            if topic.key not in subscriptions:
                subscription = service.subscribe(user_id, topic)
                subscriptions[topic.key] = (subscription, asyncio.create_task(pump(subscription)))
            await ws.send_json({"v": 1, "t": "subscribed", "id": frame_id, "body": {"topic": topic.key}})
        elif frame_type == "unsub":
            topic = _parse_topic(body, user_id)
            unsubscribe(topic.key)
            await ws.send_json({"v": 1, "t": "unsubscribed", "id": frame_id, "body": {"topic": topic.key}})
        elif frame_type == "viewer.active":
            selector = _parse_selector(body, user_id)
            if selector not in viewing:
                count = service.viewer_active(user_id, selector)
                viewing.add(selector)
            elif isinstance(selector, PrivateTopic):
                count = service.open_private(user_id, selector.counterpart(user_id))
            else:
                count = service.open_broadcast(user_id)
            await ws.send_json(
                {"v": 1, "t": "viewer.acked", "id": frame_id, "body": {"topic": selector.key, "unread": count}}
            )
        elif frame_type == "viewer.inactive":
            selector = _parse_selector(body, user_id)
            if selector in viewing:
                viewing.discard(selector)
                service.viewer_inactive(user_id, selector)
            await ws.send_json({"v": 1, "t": "viewer.acked", "id": frame_id, "body": {"topic": selector.key}})
        else:
            await ws.send_json(_error_frame("invalid_request", "unknown frame type", request_id=frame_id))

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws
        if not isinstance(payload, dict) or payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version"))
            await ws.close()
            return ws
        if payload.get("t") != "session.start":
            await ws.send_json(
                _error_frame("invalid_request", "first frame must start session", request_id=payload.get("id"))
            )
            await ws.close()
            return ws

        body = payload.get("body") or {}
        session_token = body.get("session_token")
        session = runtime.sessions.get(session_token) if isinstance(session_token, str) else None
        if session is None:
            await ws.send_json(
                _error_frame("unauthorized", "invalid session_token", request_id=payload.get("id"))
            )
            await ws.close()
            return ws

        bind_context(user_id=session.user_id)
        mark_activity()
        logger.info("ws_session_ready", user_id=session.user_id)
        await ws.send_json(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {
                    "user_id": session.user_id,
                    "expires_at": session.expires_at_ms,
                    "unread": service.unread_summary(session.user_id),
                },
            }
        )

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    await ws.send_json(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    await ws.send_json(_error_frame("invalid_request", "unsupported version"))
                    continue

                frame_body = frame.get("body") or {}
                if not isinstance(frame_body, dict):
                    await ws.send_json(_error_frame("invalid_request", "body must be an object", request_id=frame.get("id")))
                    continue
                try:
                    await handle_frame(frame.get("t"), frame.get("id"), frame_body)
                except ChatError as exc:
                    await ws.send_json(_error_frame(exc.code, exc.message, request_id=frame.get("id")))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for key in list(subscriptions):
            unsubscribe(key)
        if session is not None:
            for selector in viewing:
                service.viewer_inactive(session.user_id, selector)
        writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)
        if session is not None:
            logger.info("ws_session_closed", user_id=session.user_id)

    return ws
