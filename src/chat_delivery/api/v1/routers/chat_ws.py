"""Per-connection chat session: one delivery coordinator per WebSocket."""
from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from chat_delivery.api.deps import CoordinatorFactory, authenticate, get_coordinator_factory
from chat_delivery.application.exceptions import AuthError, NotFoundError, ValidationError
from chat_delivery.config import settings
from chat_delivery.infrastructure.ws.protocol import MessageOut, WsInbound, WsOutbound
from chat_delivery.services.delivery_coordinator import MessageDeliveryCoordinator

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/chat")
async def ws_chat(
    websocket: WebSocket,
    token: str = Query(...),
    factory: CoordinatorFactory = Depends(get_coordinator_factory),
) -> None:
    try:
        directory = authenticate(token)
    except AuthError:
        logger.debug("WS auth failed", exc_info=True)
        await websocket.close(code=4001, reason="Authentication failed")
        return

    await websocket.accept()
    user_id = directory.current_user()

    async with factory(directory) as coordinator:
        tasks = [
            asyncio.create_task(_forward_snapshots(websocket, coordinator), name=f"ws-snapshots-{user_id}"),
            asyncio.create_task(_heartbeat(websocket), name=f"ws-heartbeat-{user_id}"),
        ]
        try:
            await _read_loop(websocket, coordinator)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("WS error for user %s", user_id)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.wait(tasks)


def _error(code: str, **extra: Any) -> str:
    return WsOutbound(type="error", data={"code": code, **extra}).model_dump_json()


async def _forward_snapshots(ws: WebSocket, coordinator: MessageDeliveryCoordinator) -> None:
    try:
        async for snapshot in coordinator.stream.observe():
            payload = WsOutbound(
                type="messages.snapshot",
                data={
                    "other_user_id": snapshot.other_user,
                    "messages": [
                        MessageOut.model_validate(m).model_dump(mode="json")
                        for m in snapshot.messages
                    ],
                },
            )
            await ws.send_text(payload.model_dump_json())
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.debug("Snapshot forwarding stopped", exc_info=True)


async def _heartbeat(ws: WebSocket) -> None:
    interval = settings.WS_HEARTBEAT_SECONDS
    try:
        while True:
            await asyncio.sleep(interval)
            await ws.send_text(WsOutbound(type="pong", data={}).model_dump_json())
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.debug("Heartbeat stopped", exc_info=True)


async def _cancel_opening(task: asyncio.Task[Any] | None) -> None:
    if task is None:
        return
    if not task.done():
        task.cancel()
        await asyncio.wait([task])
    if not task.cancelled() and task.exception() is not None:
        logger.error("Opening conversation failed", exc_info=task.exception())


async def _read_loop(ws: WebSocket, coordinator: MessageDeliveryCoordinator) -> None:
    """Dispatch client envelopes until the socket goes away.

    ``open`` runs in its own task so a slow initial fetch never holds up the
    next envelope. A later ``open`` or ``close`` cancels a pending one.
    """
    opening: asyncio.Task[Any] | None = None
    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = WsInbound.model_validate_json(raw)
            except Exception:
                await ws.send_text(_error("invalid_payload"))
                continue

            if msg.type == "ping":
                await ws.send_text(WsOutbound(type="pong", data={}).model_dump_json())

            elif msg.type == "open":
                try:
                    other_user_id = int(msg.data["other_user_id"])
                except (KeyError, TypeError, ValueError) as exc:
                    await ws.send_text(_error("invalid_data", detail=str(exc)))
                    continue
                await _cancel_opening(opening)
                opening = asyncio.create_task(
                    coordinator.open_conversation(other_user_id),
                    name=f"ws-open-{other_user_id}",
                )
                # Let the switch take effect before the next envelope is read.
                await asyncio.sleep(0)

            elif msg.type == "send":
                await _handle_send(ws, coordinator, msg.data)

            elif msg.type == "edit":
                await _handle_edit(ws, coordinator, msg.data)

            elif msg.type == "delete":
                await _handle_delete(ws, coordinator, msg.data)

            elif msg.type == "refresh":
                await coordinator.refresh()

            elif msg.type == "pause":
                coordinator.pause_polling()

            elif msg.type == "resume":
                coordinator.resume_polling()

            elif msg.type == "close":
                await _cancel_opening(opening)
                opening = None
                await coordinator.close()

            else:
                await ws.send_text(_error("unknown_type", type=msg.type))
    finally:
        await _cancel_opening(opening)


def _message_id(data: dict[str, Any]) -> UUID | None:
    try:
        return UUID(str(data["message_id"]))
    except (KeyError, ValueError):
        return None


async def _handle_send(
    ws: WebSocket,
    coordinator: MessageDeliveryCoordinator,
    data: dict[str, Any],
) -> None:
    text = data.get("text")
    if not isinstance(text, str):
        await ws.send_text(_error("invalid_data", detail="text must be a string"))
        return
    try:
        message = await coordinator.send(text)
    except ValidationError as exc:
        await ws.send_text(_error("no_conversation", detail=exc.detail))
        return
    if message is None:
        await ws.send_text(_error("not_sent"))


async def _handle_edit(
    ws: WebSocket,
    coordinator: MessageDeliveryCoordinator,
    data: dict[str, Any],
) -> None:
    message_id = _message_id(data)
    text = data.get("text")
    if message_id is None or not isinstance(text, str):
        await ws.send_text(_error("invalid_data", detail="message_id and text are required"))
        return
    try:
        message = await coordinator.edit_message(message_id, text)
    except NotFoundError as exc:
        await ws.send_text(_error("not_found", detail=exc.detail))
        return
    if message is None:
        await ws.send_text(_error("not_saved"))


async def _handle_delete(
    ws: WebSocket,
    coordinator: MessageDeliveryCoordinator,
    data: dict[str, Any],
) -> None:
    message_id = _message_id(data)
    if message_id is None:
        await ws.send_text(_error("invalid_data", detail="message_id is required"))
        return
    try:
        deleted = await coordinator.delete_message(message_id)
    except NotFoundError as exc:
        await ws.send_text(_error("not_found", detail=exc.detail))
        return
    if not deleted:
        await ws.send_text(_error("not_saved"))
