"""Async client for the messaging service.

``MessagingClient`` wraps the REST surface. On top of it sit the three pieces
of state a messages screen needs:

* :class:`ConversationDirectory` - contacts with their last message and unread count
* :class:`MessageThread` - the open conversation, its draft and the send guard
* :class:`LiveFeed` - the WebSocket subscription, reconnecting until released

:class:`MessagesView` wires them together the way the portal page does.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
import websockets
from pydantic import ValidationError

from schemas import ConversationSummary, MessageResponse, ProfileResponse, ReadReceipt

logger = logging.getLogger("messaging.client")

API_PREFIX = "/api/v1/messages"


class MessagingError(Exception):
    """Base class for client side messaging failures."""


class EmptyMessage(MessagingError):
    pass


class SendInProgress(MessagingError):
    pass


class SendFailed(MessagingError):
    pass


class NoThreadOpen(MessagingError):
    pass


class MessagingClient:
    """Thin async wrapper around the messaging REST API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "MessagingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get(self, path: str, **params) -> httpx.Response:
        query = {key: value for key, value in params.items() if value is not None}
        response = await self._http.get(f"{API_PREFIX}{path}", params=query)
        response.raise_for_status()
        return response

    async def _post(self, path: str, payload: Optional[dict] = None) -> httpx.Response:
        response = await self._http.post(f"{API_PREFIX}{path}", json=payload)
        response.raise_for_status()
        return response

    async def list_contacts(self, query: Optional[str] = None) -> List[ProfileResponse]:
        response = await self._get("/contacts", q=query)
        return [ProfileResponse.model_validate(item) for item in response.json()]

    async def list_conversations(self, query: Optional[str] = None) -> List[ConversationSummary]:
        response = await self._get("/conversations", q=query)
        entries = []
        for item in response.json():
            try:
                entries.append(ConversationSummary.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping unreadable conversation entry: %s", exc)
        return entries

    async def unread_count(self) -> int:
        response = await self._get("/unread")
        return int(response.json()["unread_count"])

    async def fetch_thread(
        self,
        counterpart_id: int,
        *,
        limit: Optional[int] = None,
        before_id: Optional[int] = None,
        mark_read: bool = True,
    ) -> List[MessageResponse]:
        response = await self._get(
            f"/threads/{counterpart_id}",
            limit=limit,
            before_id=before_id,
            mark_read=str(mark_read).lower(),
        )
        return [MessageResponse.model_validate(item) for item in response.json()]

    async def mark_read(self, counterpart_id: int) -> ReadReceipt:
        response = await self._post(f"/threads/{counterpart_id}/read")
        return ReadReceipt.model_validate(response.json())

    async def send_message(self, counterpart_id: int, content: str) -> MessageResponse:
        response = await self._post(f"/threads/{counterpart_id}", {"content": content})
        return MessageResponse.model_validate(response.json())

    @property
    def feed_url(self) -> str:
        parts = urlsplit(self.base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        path = parts.path.rstrip("/") + f"{API_PREFIX}/ws"
        return urlunsplit((scheme, parts.netloc, path, urlencode({"token": self.token}), ""))


class ConversationDirectory:
    """Contacts of the actor, newest conversation first."""

    def __init__(self, client: MessagingClient) -> None:
        self.client = client
        self.entries: List[ConversationSummary] = []
        self.stale = False
        self.last_error: Optional[Exception] = None
        self.generation = 0

    async def refresh(self) -> bool:
        self.generation += 1
        generation = self.generation
        try:
            entries = await self.client.list_conversations()
        except httpx.HTTPError as exc:
            if generation != self.generation:
                return False
            # keep showing what we had; the caller offers a retry
            self.stale = True
            self.last_error = exc
            logger.warning("Conversation list refresh failed: %s", exc)
            return False
        if generation != self.generation:
            logger.debug("Discarding superseded conversation list")
            return False
        self.entries = entries
        self.stale = False
        self.last_error = None
        return True

    def search(self, query: str) -> List[ConversationSummary]:
        needle = query.strip().lower()
        if not needle:
            return list(self.entries)
        return [entry for entry in self.entries if needle in entry.counterpart.full_name.lower()]

    def entry_for(self, counterpart_id: int) -> Optional[ConversationSummary]:
        for entry in self.entries:
            if entry.counterpart.id == counterpart_id:
                return entry
        return None

    @property
    def total_unread(self) -> int:
        return sum(entry.unread_count for entry in self.entries)


def _sort_key(message: MessageResponse):
    return (message.created_at, message.id)


class MessageThread:
    """The conversation currently open between the actor and one counterpart."""

    def __init__(
        self,
        client: MessagingClient,
        actor_id: int,
        directory: Optional[ConversationDirectory] = None,
    ) -> None:
        self.client = client
        self.actor_id = actor_id
        self.directory = directory
        self.counterpart_id: Optional[int] = None
        self.messages: List[MessageResponse] = []
        self.draft = ""
        self.sending = False
        self.stale = False
        self.last_error: Optional[Exception] = None
        self.generation = 0

    def involves(self, message: MessageResponse) -> bool:
        if self.counterpart_id is None:
            return False
        return (message.sender_id, message.receiver_id) in {
            (self.counterpart_id, self.actor_id),
            (self.actor_id, self.counterpart_id),
        }

    def _merge(self, incoming: List[MessageResponse]) -> None:
        by_id: Dict[int, MessageResponse] = {message.id: message for message in self.messages}
        for message in incoming:
            existing = by_id.get(message.id)
            if existing is not None and existing.read and not message.read:
                # read only ever moves false -> true
                message = message.model_copy(update={"read": True})
            by_id[message.id] = message
        self.messages = sorted(by_id.values(), key=_sort_key)

    async def open(self, counterpart_id: int) -> bool:
        """Load the history with ``counterpart_id``; the server marks it read on the way."""
        self.generation += 1
        generation = self.generation
        if counterpart_id != self.counterpart_id:
            self.messages = []
            self.draft = ""
        self.counterpart_id = counterpart_id
        return await self._load(generation)

    async def reload(self) -> bool:
        if self.counterpart_id is None:
            return False
        self.generation += 1
        return await self._load(self.generation)

    async def _load(self, generation: int) -> bool:
        counterpart_id = self.counterpart_id
        try:
            messages = await self.client.fetch_thread(counterpart_id)
        except httpx.HTTPError as exc:
            if generation == self.generation:
                self.stale = True
                self.last_error = exc
            logger.warning("Loading thread with %s failed: %s", counterpart_id, exc)
            return False

        if generation != self.generation:
            logger.debug("Discarding stale thread response for %s", counterpart_id)
            return False

        read_ids = {message.id for message in self.messages if message.read}
        self.messages = sorted(
            (
                message.model_copy(update={"read": True}) if message.id in read_ids and not message.read else message
                for message in messages
            ),
            key=_sort_key,
        )
        self.stale = False
        self.last_error = None
        if self.directory is not None:
            await self.directory.refresh()
        return True

    def close(self) -> None:
        self.generation += 1
        self.counterpart_id = None
        self.messages = []
        self.draft = ""

    async def send(self, text: Optional[str] = None) -> MessageResponse:
        if self.counterpart_id is None:
            raise NoThreadOpen("Select a contact before sending")
        if self.sending:
            raise SendInProgress("A message is already being sent")
        if text is not None:
            self.draft = text
        if not self.draft.strip():
            raise EmptyMessage("Message content must not be empty")

        self.sending = True
        generation = self.generation
        counterpart_id = self.counterpart_id
        try:
            message = await self.client.send_message(counterpart_id, self.draft.strip())
        except httpx.HTTPError as exc:
            self.last_error = exc
            raise SendFailed(f"Sending to {counterpart_id} failed: {exc}") from exc
        finally:
            self.sending = False

        if generation == self.generation:
            self.draft = ""
            self._merge([message])
        if self.directory is not None:
            await self.directory.refresh()
        return message

    def apply_message(self, message: MessageResponse) -> bool:
        """Fold a pushed message into the open thread. Returns True when it belonged here."""
        if not self.involves(message):
            return False
        self._merge([message])
        return True

    def apply_read_receipt(self, receipt: ReadReceipt) -> int:
        """Counterpart read our messages: flip them locally. Returns how many changed."""
        if receipt.reader_id != self.counterpart_id or receipt.sender_id != self.actor_id:
            return 0
        changed = 0
        updated = []
        for message in self.messages:
            if message.sender_id == self.actor_id and not message.read:
                message = message.model_copy(update={"read": True})
                changed += 1
            updated.append(message)
        self.messages = updated
        return changed


FrameHandler = Callable[[dict], Awaitable[None]]
ReconnectHandler = Callable[[], Awaitable[None]]


class LiveFeed:
    """WebSocket subscription held open for the lifetime of an ``async with`` block.

    Drops are retried with capped exponential backoff. ``on_reconnect`` runs
    each time a connection is established, the first one included, so the
    owner can re-fetch whatever was written before the socket was listening.
    """

    def __init__(
        self,
        url: str,
        on_frame: FrameHandler,
        *,
        on_reconnect: Optional[ReconnectHandler] = None,
        initial_delay: float = 0.5,
        max_delay: float = 30.0,
    ) -> None:
        self.url = url
        self.on_frame = on_frame
        self.on_reconnect = on_reconnect
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.connected = asyncio.Event()
        self.connections = 0
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "LiveFeed":
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            self.connected.clear()

    def backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.initial_delay * (2 ** attempt))

    async def _run(self) -> None:
        attempt = 0
        while True:
            try:
                async with websockets.connect(self.url) as socket:
                    self.connections += 1
                    self.connected.set()
                    attempt = 0
                    if self.on_reconnect is not None:
                        await self.on_reconnect()
                    async for raw in socket:
                        await self._dispatch(raw)
                logger.info("Live feed closed by server, reconnecting")
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
                logger.warning("Live feed connection lost: %s", exc)
            finally:
                self.connected.clear()
            await asyncio.sleep(self.backoff(attempt))
            attempt += 1

    async def _dispatch(self, raw) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON feed frame")
            return
        if not isinstance(frame, dict):
            return
        try:
            await self.on_frame(frame)
        except (httpx.HTTPError, ValidationError) as exc:
            logger.warning("Handling %s frame failed: %s", frame.get("type"), exc)


class MessagesView:
    """Directory, open thread and live feed for one signed-in actor."""

    def __init__(self, client: MessagingClient, actor_id: int, **feed_options) -> None:
        self.client = client
        self.actor_id = actor_id
        self.directory = ConversationDirectory(client)
        self.thread = MessageThread(client, actor_id, self.directory)
        self.feed = LiveFeed(client.feed_url, self.handle_frame, on_reconnect=self.resync, **feed_options)

    async def __aenter__(self) -> "MessagesView":
        await self.directory.refresh()
        await self.feed.__aenter__()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.feed.__aexit__(*exc_info)

    async def select(self, counterpart_id: int) -> bool:
        return await self.thread.open(counterpart_id)

    async def send(self, text: Optional[str] = None) -> MessageResponse:
        return await self.thread.send(text)

    async def resync(self) -> None:
        await self.directory.refresh()
        await self.thread.reload()

    async def handle_frame(self, frame: dict) -> None:
        kind = frame.get("type")
        if kind == "message.created":
            message = MessageResponse.model_validate(frame.get("data") or {})
            self.thread.apply_message(message)
            await self.directory.refresh()
        elif kind == "messages.read":
            receipt = ReadReceipt.model_validate(frame.get("data") or {})
            self.thread.apply_read_receipt(receipt)
            await self.directory.refresh()
        elif kind == "error":
            logger.warning("Live feed error: %s", frame.get("message"))
