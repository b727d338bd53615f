"""
Outbound send path over the Meta Graph API.

WhatsApp Cloud API: ``POST {base}/{phone_number_id}/messages``.
Messenger / Instagram: ``POST {base}/{page_id}/messages`` with a recipient id.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from sqlalchemy.orm import Session

from metahub.config.settings import Settings
from metahub.errors import ChannelSendFailed
from metahub.persistence.models import Channel, ChannelConnection, Thread

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundTarget:
    channel: Channel
    account_id: str
    recipient_id: str
    access_token: str


class ChannelSender(Protocol):
    def send_text(self, target: OutboundTarget, text: str) -> str:
        """Deliver ``text`` and return the provider message id."""

    def send_template(
        self,
        target: OutboundTarget,
        template_name: str,
        language: str = "en_US",
        components: list[dict[str, Any]] | None = None,
    ) -> str:
        ...


def resolve_target(db: Session, thread: Thread, fallback_token: str | None = None) -> OutboundTarget:
    """Connection the thread came in on, else any active one for its channel."""
    query = db.query(ChannelConnection).filter(
        ChannelConnection.workspace_id == thread.workspace_id,
        ChannelConnection.channel == thread.channel,
        ChannelConnection.active.is_(True),
    )
    connection = None
    if thread.account_id:
        connection = query.filter(ChannelConnection.external_account_id == thread.account_id).first()
    if connection is None:
        connection = query.order_by(ChannelConnection.created_at).first()
    if connection is None:
        raise ChannelSendFailed(f"no active {Channel(thread.channel).value} connection for workspace")
    token = connection.access_token or fallback_token
    if not token:
        raise ChannelSendFailed("no access token for channel connection")
    return OutboundTarget(
        channel=Channel(connection.channel),
        account_id=connection.external_account_id,
        recipient_id=thread.external_id,
        access_token=token,
    )


class GraphChannelSender:
    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None) -> None:
        self.base_url = settings.graph_api_base.rstrip("/")
        self._transport = transport

    def _post(self, target: OutboundTarget, payload: dict[str, Any]) -> str:
        url = f"{self.base_url}/{target.account_id}/messages"
        headers = {"Authorization": f"Bearer {target.access_token}"}
        try:
            with httpx.Client(timeout=30, transport=self._transport) as client:
                response = client.post(url, headers=headers, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ChannelSendFailed(
                f"Graph API error {exc.response.status_code}: {exc.response.text[:300]}"
            ) from exc
        except (httpx.RequestError, ValueError) as exc:
            raise ChannelSendFailed(f"Graph API request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise ChannelSendFailed("Graph API response is not an object")
        if target.channel == Channel.whatsapp:
            messages = data.get("messages") or [{}]
            message_id = messages[0].get("id")
        else:
            message_id = data.get("message_id")
        if not message_id:
            raise ChannelSendFailed("Graph API response carried no message id")
        return str(message_id)

    def send_text(self, target: OutboundTarget, text: str) -> str:
        if target.channel == Channel.whatsapp:
            payload = {
                "messaging_product": "whatsapp",
                "to": target.recipient_id,
                "type": "text",
                "text": {"body": text},
            }
        else:
            payload = {
                "recipient": {"id": target.recipient_id},
                "messaging_type": "RESPONSE",
                "message": {"text": text},
            }
        message_id = self._post(target, payload)
        logger.info("Sent %s text to %s", target.channel.value, target.recipient_id)
        return message_id

    def send_template(
        self,
        target: OutboundTarget,
        template_name: str,
        language: str = "en_US",
        components: list[dict[str, Any]] | None = None,
    ) -> str:
        if target.channel != Channel.whatsapp:
            raise ChannelSendFailed("templates are only supported on WhatsApp")
        template: dict[str, Any] = {"name": template_name, "language": {"code": language}}
        if components:
            template["components"] = components
        payload = {
            "messaging_product": "whatsapp",
            "to": target.recipient_id,
            "type": "template",
            "template": template,
        }
        return self._post(target, payload)
