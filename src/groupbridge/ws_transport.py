from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Awaitable, Callable, Union

from aiohttp import WSMsgType, web

from .commands import GroupCommandService
from .config import BridgeConfig, load_client_factory
from .errors import BridgeError, InvalidRequest
from .events import BroadcastEvent, event_frame
from .hub import SubscriptionHub
from .identity import ClientFactory
from .models import GroupPatch, MembershipChange
from .sessions import SessionStore
from .signer import Signer, load_signer
from .streaming import MessageStreamer

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class Runtime:
    def __init__(
        self,
        *,
        config: BridgeConfig,
        sessions: SessionStore,
        commands: GroupCommandService,
        hub: SubscriptionHub,
        streamer: MessageStreamer,
    ) -> None:
        self.config = config
        self.sessions = sessions
        self.commands = commands
        self.hub = hub
        self.streamer = streamer


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except BridgeError as exc:
        if exc.status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.path, exc.message)
        return web.json_response(exc.to_api_dict(), status=exc.status)


async def _read_body(request: web.Request) -> dict[str, Any]:
    if request.content_type == "application/json":
        try:
            body = await request.json()
        except Exception as exc:
            raise InvalidRequest("malformed json") from exc
    elif request.can_read_body:
        body = dict(await request.post())
    else:
        body = {}
    if not isinstance(body, dict):
        raise InvalidRequest("request body must be an object")
    return body


def _optional_str(body: dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequest(f"{key} must be a string")
    return value


def _runtime(request: web.Request) -> Runtime:
    return request.app["runtime"]


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_setup_client(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_body(request)
    session, challenge = await runtime.sessions.open_session(body.get("address"))
    return web.json_response(
        {
            "signatureText": challenge,
            "inboxId": session.inbox_id,
            "installationId": session.installation_id,
            "registered": session.is_registered,
        }
    )


async def handle_register_client(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_body(request)
    result = await runtime.sessions.complete_registration(body.get("address"), body.get("signature"))
    return web.json_response(
        {
            "status": "Client registered successfully",
            "inboxId": result.inbox_id,
            "alreadyRegistered": result.already_registered,
        }
    )


async def handle_register_client_default(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_body(request)
    result = await runtime.sessions.default_registration(body.get("address"))
    return web.json_response(
        {
            "status": "Client registered successfully",
            "inboxId": result.inbox_id,
            "alreadyRegistered": result.already_registered,
        }
    )


async def handle_create_group(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_body(request)
    view = await runtime.commands.create_group(
        body.get("address"),
        body.get("members"),
        name=_optional_str(body, "groupName"),
        description=_optional_str(body, "description"),
        image_url=_optional_str(body, "imageUrl"),
    )
    return web.json_response({"groupId": view.id, "conversation": view.to_api_dict()})


async def handle_update_group(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_body(request)
    patch = GroupPatch(
        name=_optional_str(body, "name"),
        description=_optional_str(body, "description"),
        image_url=_optional_str(body, "imageUrl"),
    )
    applied = await runtime.commands.update_group_metadata(body.get("address"), body.get("groupId"), patch)
    return web.json_response({"status": "Group details updated successfully", "applied": applied})


async def handle_update_group_members(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_body(request)
    change = MembershipChange.from_csv(body.get("addMembers"), body.get("removeMembers"))
    applied = await runtime.commands.update_group_members(body.get("address"), body.get("groupId"), change)
    return web.json_response({"status": "Group members updated successfully", "applied": applied})


async def handle_update_group_admins(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_body(request)
    change = MembershipChange.from_csv(body.get("addAdmins"), body.get("removeAdmins"))
    applied = await runtime.commands.update_group_admins(body.get("address"), body.get("groupId"), change)
    return web.json_response({"status": "Group admins updated successfully", "applied": applied})


async def handle_send_message(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_body(request)
    group_id = body.get("groupId")
    content = body.get("messageContent")
    message_id = await runtime.commands.send_message(body.get("address"), group_id, content)
    return web.json_response(
        {
            "status": f"Message sent to group {group_id}",
            "groupId": group_id,
            "messageContent": content,
            "messageId": message_id,
        }
    )


async def handle_conversations(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_body(request)
    views = await runtime.commands.list_conversations(body.get("address"))
    return web.json_response({"conversations": [view.to_api_dict() for view in views]})


async def handle_group_messages(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_body(request)
    messages = await runtime.commands.list_messages(body.get("address"), request.match_info["id"])
    return web.json_response([message.to_api_dict() for message in messages])


def create_app(
    config: BridgeConfig | None = None,
    *,
    client_factory: ClientFactory | None = None,
    signer: Signer | None = None,
) -> web.Application:
    config = config or BridgeConfig()
    if client_factory is None:
        client_factory = load_client_factory(config.engine)
    if signer is None:
        signer = load_signer(config.private_key)

    hub = SubscriptionHub()
    streamer = MessageStreamer(hub)
    sessions = SessionStore(
        client_factory,
        cache_root=config.cache_dir,
        env=config.env,
        signer=signer,
        call_timeout=config.call_timeout_s,
    )
    sessions.add_registration_listener(streamer.watch)
    commands = GroupCommandService(sessions, hub, call_timeout=config.call_timeout_s)

    app = web.Application(middlewares=[error_middleware])
    app["runtime"] = Runtime(config=config, sessions=sessions, commands=commands, hub=hub, streamer=streamer)
    app["ws_config"] = {
        "ping_interval_s": config.ping_interval_s,
        "ping_miss_limit": config.ping_miss_limit,
        "max_msg_size": config.max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/setupClient", handle_setup_client)
    app.router.add_post("/registerClient", handle_register_client)
    app.router.add_post("/registerClientDefault", handle_register_client_default)
    app.router.add_post("/createGroup", handle_create_group)
    app.router.add_post("/updateGroup", handle_update_group)
    app.router.add_post("/updateGroupMembers", handle_update_group_members)
    app.router.add_post("/updateGroupAdmins", handle_update_group_admins)
    app.router.add_post("/sendMessage", handle_send_message)
    app.router.add_post("/conversations", handle_conversations)
    app.router.add_post("/{id}/messages", handle_group_messages)
    app.router.add_get("/ws", websocket_handler)

    async def shutdown(_: web.Application) -> None:
        await streamer.stop()
        await sessions.close()

    app.on_cleanup.append(shutdown)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = _runtime(request)
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    subscriber_id = f"ws_{secrets.token_urlsafe(8)}"
    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Union[dict, None]] = asyncio.Queue(maxsize=1000)
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue_frame(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    def enqueue_event(event: BroadcastEvent) -> None:
        enqueue_frame(event_frame(event))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    enqueue_frame({"v": 1, "t": "connection", "body": None})
    subscription = runtime.hub.subscribe(subscriber_id, enqueue_event)
    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue_frame(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    enqueue_frame(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                if frame_type == "ping":
                    enqueue_frame({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                else:
                    enqueue_frame(_error_frame("invalid_request", "unknown frame type", request_id=frame.get("id")))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        runtime.hub.unsubscribe(subscription)
        heartbeat_task.cancel()
        writer_task.cancel()
        if not outbound.full():
            outbound.put_nowait(None)
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
