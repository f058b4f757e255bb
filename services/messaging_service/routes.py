from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, WebSocketException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from database import get_db
from schemas import (
    ProfileResponse, MessageCreate, MessageResponse, ConversationSummary,
    ReadReceipt, UnreadCountResponse
)
from crud import (
    Actor, MessagingError, ProfileNotFound, NotACounterpart, EmptyMessage, MessageNotFound,
    list_counterparts, require_counterpart, get_conversation_summaries, count_unread,
    get_thread, mark_thread_read, create_message
)
from auth import get_current_actor, resolve_account_from_token, actor_for_account
from events import publish_event, message_notification
from typing import Optional
import anyio
import feed
import json
import logging

logger = logging.getLogger("messaging.routes")

router = APIRouter(prefix="/api/v1/messages", tags=["messages"])


def _http_error(exc: MessagingError) -> HTTPException:
    if isinstance(exc, (ProfileNotFound, MessageNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, NotACounterpart):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, EmptyMessage):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _push(frame: dict, recipients):
    """Hand a frame to the live feed from a sync endpoint; delivery problems never fail the request."""
    try:
        anyio.from_thread.run(feed.broker.publish, frame, list(recipients))
    except Exception as exc:
        logger.warning("Live feed delivery of %s failed: %s", frame.get("type"), exc)


def _summary_payload(row) -> ConversationSummary:
    return ConversationSummary(
        counterpart=ProfileResponse.model_validate(row.counterpart),
        last_message=MessageResponse.model_validate(row.last_message) if row.last_message else None,
        unread_count=row.unread_count,
    )


@router.get("/contacts", response_model=list[ProfileResponse])
def get_contacts(
    q: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return list_counterparts(db, actor, q)


@router.get("/conversations", response_model=list[ConversationSummary])
def get_conversations(
    q: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    try:
        rows = get_conversation_summaries(db, actor, q)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Building conversation list for profile %s failed: %s", actor.id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Conversations are temporarily unavailable, please retry",
            headers={"Retry-After": "5"},
        ) from exc
    return [_summary_payload(row) for row in rows]


@router.get("/unread", response_model=UnreadCountResponse)
def get_unread_count(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return UnreadCountResponse(unread_count=count_unread(db, actor))


@router.get("/threads/{counterpart_id}", response_model=list[MessageResponse])
def open_thread(
    counterpart_id: int,
    limit: Optional[int] = Query(None, ge=1, le=500),
    before_id: Optional[int] = None,
    mark_read: bool = True,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    try:
        require_counterpart(db, actor, counterpart_id)
        messages = get_thread(db, actor, counterpart_id, limit=limit, before_id=before_id)
    except MessagingError as exc:
        raise _http_error(exc) from exc

    if mark_read:
        try:
            updated = mark_thread_read(db, actor, counterpart_id)
        except SQLAlchemyError as exc:
            # Unread counts stay high until the next open retries the update
            db.rollback()
            logger.warning("Marking thread %s -> %s read failed: %s", counterpart_id, actor.id, exc)
        else:
            if updated:
                receipt = ReadReceipt(reader_id=actor.id, sender_id=counterpart_id, count=updated)
                _push(feed.messages_read_frame(receipt), (actor.id, counterpart_id))
                publish_event("messages.read", receipt.model_dump())
    return messages


@router.post("/threads/{counterpart_id}/read", response_model=ReadReceipt)
def mark_read(
    counterpart_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    try:
        require_counterpart(db, actor, counterpart_id)
    except MessagingError as exc:
        raise _http_error(exc) from exc

    updated = mark_thread_read(db, actor, counterpart_id)
    receipt = ReadReceipt(reader_id=actor.id, sender_id=counterpart_id, count=updated)
    if updated:
        _push(feed.messages_read_frame(receipt), (actor.id, counterpart_id))
        publish_event("messages.read", receipt.model_dump())
    return receipt


@router.post("/threads/{counterpart_id}", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def send_message(
    counterpart_id: int,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    try:
        message = create_message(db, actor, counterpart_id, payload.content)
    except MessagingError as exc:
        raise _http_error(exc) from exc

    logger.info("Message %s sent from %s to %s", message.id, message.sender_id, message.receiver_id)
    _push(feed.message_created_frame(message), (message.sender_id, message.receiver_id))
    publish_event("chat.message", message_notification(message, message.sender.full_name))
    return message


async def websocket_account(token: Optional[str] = Query(None)):
    try:
        return await resolve_account_from_token(token)
    except HTTPException as exc:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc.detail)) from exc
    except SQLAlchemyError as exc:
        logger.error("Resolving feed subscriber failed: %s", exc)
        raise WebSocketException(code=status.WS_1011_INTERNAL_ERROR, reason="Profile store unavailable") from exc


@router.websocket("/ws")
async def feed_websocket(
    websocket: WebSocket,
    account: dict = Depends(websocket_account),
    db: Session = Depends(get_db)
):
    try:
        actor = actor_for_account(db, account)
    except HTTPException as exc:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc.detail)) from exc
    finally:
        # the socket may stay open for hours; do not pin a pooled connection to it
        db.close()

    await feed.manager.connect(websocket, actor.id)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
            except ValueError:
                await websocket.send_text(json.dumps({"type": "error", "message": "Frames must be JSON"}))
                continue
            if isinstance(frame, dict) and frame.get("type") == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
            else:
                await websocket.send_text(json.dumps({"type": "error", "message": "Unsupported frame"}))
    except WebSocketDisconnect:
        pass
    finally:
        feed.manager.disconnect(websocket, actor.id)
