"""
Webhook payload normalization.

Meta batches deliveries as ``entry[]`` lists. Each entry is first classified
into one of a closed set of raw shapes (:data:`RawShape`), then every known
shape is mapped explicitly onto :class:`InboundEvent`. Anything that does not
fit lands in :class:`Unrecognized` and is skipped; one bad entry never fails
the batch.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from metahub.errors import NormalizationSkipped
from metahub.persistence.models import Channel, EventType

logger = logging.getLogger(__name__)

WorkspaceResolver = Callable[[Channel, str], Union[uuid.UUID, None]]

_OBJECT_CHANNELS = {
    "whatsapp_business_account": Channel.whatsapp,
    "page": Channel.messenger,
    "instagram": Channel.instagram,
}
_MEDIA_KINDS = {"image", "document", "video", "audio", "sticker"}
_DELIVERY_STATUSES = {"sent", "delivered", "read", "failed"}


@dataclass(frozen=True)
class InboundEvent:
    """Normalized, immutable view of one inbound delivery item."""

    provider: str
    channel: Channel
    workspace_id: uuid.UUID
    thread_id: str
    external_message_id: str
    sender_id: str
    timestamp: datetime
    raw_payload: dict[str, Any]
    event_type: EventType
    account_id: str = ""
    message_type: str = "text"
    text: str | None = None
    contact_name: str | None = None
    status: str | None = None

    @property
    def dedup_key(self) -> str:
        if self.event_type == EventType.status:
            return f"{self.external_message_id}:{self.status}"
        return self.external_message_id

    @property
    def is_customer_message(self) -> bool:
        return self.event_type in (EventType.message, EventType.postback)


# Raw shapes --------------------------------------------------------------


@dataclass(frozen=True)
class WhatsAppMessage:
    account_id: str
    business_id: str
    message: dict[str, Any]
    contacts: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class WhatsAppStatus:
    account_id: str
    business_id: str
    status: dict[str, Any]


@dataclass(frozen=True)
class MessagingItem:
    """Messenger or Instagram ``entry.messaging[]`` element."""

    channel: Channel
    page_id: str
    item: dict[str, Any]


@dataclass(frozen=True)
class Unrecognized:
    reason: str
    fragment: Any = None


RawShape = Union[WhatsAppMessage, WhatsAppStatus, MessagingItem, Unrecognized]


@dataclass
class NormalizationResult:
    events: list[InboundEvent] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    duplicates: int = 0


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def iter_shapes(payload: Any) -> Iterator[RawShape]:
    body = _as_dict(payload)
    obj = body.get("object")
    channel = _OBJECT_CHANNELS.get(obj) if isinstance(obj, str) else None
    if channel is None:
        yield Unrecognized(f"unsupported object {obj!r}")
        return

    for entry in _as_list(body.get("entry")):
        entry = _as_dict(entry)
        entry_id = str(entry.get("id") or "")
        if channel == Channel.whatsapp:
            for change in _as_list(entry.get("changes")):
                change = _as_dict(change)
                if change.get("field") not in (None, "messages"):
                    yield Unrecognized(f"unsupported field {change.get('field')!r}")
                    continue
                value = _as_dict(change.get("value"))
                metadata = _as_dict(value.get("metadata"))
                account_id = str(metadata.get("phone_number_id") or "")
                contacts = tuple(_as_dict(c) for c in _as_list(value.get("contacts")))
                for message in _as_list(value.get("messages")):
                    yield WhatsAppMessage(account_id, entry_id, _as_dict(message), contacts)
                for status in _as_list(value.get("statuses")):
                    yield WhatsAppStatus(account_id, entry_id, _as_dict(status))
        else:
            for item in _as_list(entry.get("messaging")):
                yield MessagingItem(channel, entry_id, _as_dict(item))


def _epoch(value: Any, *, millis: bool) -> datetime:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise NormalizationSkipped(f"bad timestamp {value!r}") from exc
    if millis:
        number /= 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise NormalizationSkipped(f"bad timestamp {value!r}") from exc


def _require(item: dict[str, Any], key: str) -> str:
    value = item.get(key)
    if value is None or value == "" or isinstance(value, (dict, list)):
        raise NormalizationSkipped(f"missing {key}")
    return str(value)


def _first_str(item: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class _CachedResolver:
    """Per-request memo around the injected workspace resolver."""

    def __init__(self, resolve: WorkspaceResolver) -> None:
        self._resolve = resolve
        self._cache: dict[tuple[Channel, str], uuid.UUID | None] = {}

    def __call__(self, channel: Channel, *account_ids: str) -> uuid.UUID:
        for account_id in account_ids:
            if not account_id:
                continue
            key = (channel, account_id)
            if key not in self._cache:
                self._cache[key] = self._resolve(channel, account_id)
            if self._cache[key] is not None:
                return self._cache[key]
        raise NormalizationSkipped(f"no workspace for account {account_ids!r}")


def _whatsapp_message(shape: WhatsAppMessage, resolve: _CachedResolver) -> InboundEvent:
    message = shape.message
    message_id = _require(message, "id")
    sender = _require(message, "from")
    timestamp = _epoch(_require(message, "timestamp"), millis=False)
    workspace_id = resolve(Channel.whatsapp, shape.account_id, shape.business_id)

    kind = str(message.get("type") or "unknown")
    event_type = EventType.message
    if kind == "text":
        text = _first_str(_as_dict(message.get("text")), "body")
    elif kind in _MEDIA_KINDS:
        text = _first_str(_as_dict(message.get(kind)), "caption") or f"[{kind}]"
    elif kind == "interactive":
        interactive = _as_dict(message.get("interactive"))
        reply = _as_dict(interactive.get("button_reply") or interactive.get("list_reply"))
        text = _first_str(reply, "title", "id")
        event_type = EventType.postback
    elif kind == "button":
        button = _as_dict(message.get("button"))
        text = _first_str(button, "text", "payload")
        event_type = EventType.postback
    else:
        text = f"[{kind}]"

    contact_name = None
    for contact in shape.contacts:
        if str(contact.get("wa_id") or "") == sender:
            contact_name = _first_str(_as_dict(contact.get("profile")), "name")
            break

    return InboundEvent(
        provider="whatsapp",
        channel=Channel.whatsapp,
        workspace_id=workspace_id,
        thread_id=sender,
        external_message_id=message_id,
        sender_id=sender,
        timestamp=timestamp,
        raw_payload=message,
        event_type=event_type,
        account_id=shape.account_id,
        message_type=kind,
        text=text,
        contact_name=contact_name,
    )


def _whatsapp_status(shape: WhatsAppStatus, resolve: _CachedResolver) -> InboundEvent:
    status = shape.status
    message_id = _require(status, "id")
    state = _require(status, "status")
    if state not in _DELIVERY_STATUSES:
        raise NormalizationSkipped(f"unsupported status {state!r}")
    recipient = _require(status, "recipient_id")
    timestamp = _epoch(_require(status, "timestamp"), millis=False)
    workspace_id = resolve(Channel.whatsapp, shape.account_id, shape.business_id)
    return InboundEvent(
        provider="whatsapp",
        channel=Channel.whatsapp,
        workspace_id=workspace_id,
        thread_id=recipient,
        external_message_id=message_id,
        sender_id=shape.account_id,
        timestamp=timestamp,
        raw_payload=status,
        event_type=EventType.status,
        account_id=shape.account_id,
        message_type="status",
        status=state,
    )


def _messaging_item(shape: MessagingItem, resolve: _CachedResolver) -> InboundEvent:
    item = shape.item
    sender = _require(_as_dict(item.get("sender")), "id")
    timestamp = _epoch(_require(item, "timestamp"), millis=True)
    message = _as_dict(item.get("message"))
    postback = _as_dict(item.get("postback"))

    if message:
        if message.get("is_echo"):
            raise NormalizationSkipped("echo of an outbound message")
        message_id = _require(message, "mid")
        attachments = _as_list(message.get("attachments"))
        if isinstance(message.get("text"), str) and message["text"]:
            kind, text = "text", message["text"]
        elif attachments:
            kind = str(_as_dict(attachments[0]).get("type") or "attachment")
            text = f"[{kind}]"
        else:
            raise NormalizationSkipped("message without text or attachments")
        event_type = EventType.message
    elif postback:
        message_id = str(postback.get("mid") or f"postback:{sender}:{item['timestamp']}")
        kind, text = "postback", _first_str(postback, "title", "payload")
        event_type = EventType.postback
    else:
        raise NormalizationSkipped("messaging item has no message or postback")

    workspace_id = resolve(shape.channel, shape.page_id)
    return InboundEvent(
        provider=shape.channel.value,
        channel=shape.channel,
        workspace_id=workspace_id,
        thread_id=sender,
        external_message_id=message_id,
        sender_id=sender,
        timestamp=timestamp,
        raw_payload=item,
        event_type=event_type,
        account_id=shape.page_id,
        message_type=kind,
        text=text,
    )


_HANDLERS: dict[type, Callable[[Any, _CachedResolver], InboundEvent]] = {
    WhatsAppMessage: _whatsapp_message,
    WhatsAppStatus: _whatsapp_status,
    MessagingItem: _messaging_item,
}


def normalize(payload: Any, resolve_workspace: WorkspaceResolver) -> NormalizationResult:
    """Flatten a webhook body into events, deduplicated within this delivery."""
    result = NormalizationResult()
    resolve = _CachedResolver(resolve_workspace)
    seen: set[tuple[uuid.UUID, str]] = set()

    for shape in iter_shapes(payload):
        handler = _HANDLERS.get(type(shape))
        if handler is None:
            result.skipped.append(shape.reason)
            continue
        try:
            event = handler(shape, resolve)
        except NormalizationSkipped as exc:
            logger.info("Skipping webhook item: %s", exc.reason)
            result.skipped.append(exc.reason)
            continue

        key = (event.workspace_id, event.dedup_key)
        if key in seen:
            result.duplicates += 1
            continue
        seen.add(key)
        result.events.append(event)
    return result
