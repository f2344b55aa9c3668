"""
Messaging Dispatcher - text messages to and from buyers.

Each store configures one WhatsApp channel. Its credentials are validated
into a provider-specific config (a discriminated union on `provider`) and
resolved to a concrete sender behind one interface:

    send_text(to, body) -> SendResult(ok, id, error)

Provider failures come back as SendResult(ok=False); a store without a
usable channel raises ChannelConfigurationError, which callers must not
swallow. Inbound webhooks are parsed into InboundMessage objects and
published as conversation.user_message events.
"""

import json
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, Union

import httpx
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from sqlalchemy import select, update

from orderdesk.app.core.database import Database
from orderdesk.app.core.exceptions import ChannelConfigurationError
from orderdesk.app.core.logging import get_logger, mask_phone
from orderdesk.app.core.resilience import with_timeout
from orderdesk.app.events.bus import EventBus
from orderdesk.app.events.schemas import ConversationUserMessageEvent
from orderdesk.app.models import MessagingChannelORM
from orderdesk.app.workers.background import BackgroundTasks

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Channel configuration
# ---------------------------------------------------------------------------

class MetaChannelConfig(BaseModel):
    provider: Literal["meta"] = "meta"
    access_token: str = Field(min_length=1)
    phone_number_id: str = Field(min_length=1)
    api_version: str = "v20.0"


class TwilioChannelConfig(BaseModel):
    provider: Literal["twilio"] = "twilio"
    account_sid: str = Field(min_length=1)
    auth_token: str = Field(min_length=1)
    from_number: str = Field(min_length=1)


class GupshupChannelConfig(BaseModel):
    provider: Literal["gupshup"] = "gupshup"
    api_key: str = Field(min_length=1)
    source_number: str = Field(min_length=1)
    app_name: str = Field(min_length=1)


class ConsoleChannelConfig(BaseModel):
    """Development channel: messages are logged, never sent."""
    provider: Literal["console"] = "console"


ChannelConfig = Annotated[
    Union[MetaChannelConfig, TwilioChannelConfig, GupshupChannelConfig, ConsoleChannelConfig],
    Field(discriminator="provider"),
]

_channel_adapter: TypeAdapter = TypeAdapter(ChannelConfig)


def parse_channel_config(provider: str, credentials: Optional[Dict[str, Any]]) -> BaseModel:
    """
    Validate stored credentials for `provider`.

    Raises:
        ChannelConfigurationError: unknown provider or missing/invalid fields
    """
    data = dict(credentials or {})
    data["provider"] = provider
    try:
        return _channel_adapter.validate_python(data)
    except ValidationError as e:
        raise ChannelConfigurationError(f"Invalid {provider!r} channel configuration: {e.errors()}") from e


# ---------------------------------------------------------------------------
# Senders
# ---------------------------------------------------------------------------

class SendResult(BaseModel):
    ok: bool
    id: Optional[str] = None
    error: Optional[str] = None


class MessageSender(ABC):
    """Sends plain text through one provider."""

    provider: str = ""

    def __init__(self, config: BaseModel, timeout_seconds: float = 15.0, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.timeout_seconds = timeout_seconds
        self._http = http_client
        self.channel_id: Optional[str] = None

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, timeout=self.timeout_seconds, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.post(url, timeout=self.timeout_seconds, **kwargs)

    @staticmethod
    def _http_error(resp: httpx.Response) -> SendResult:
        return SendResult(ok=False, error=f"HTTP {resp.status_code}: {resp.text[:200]}")

    @abstractmethod
    async def send_text(self, to: str, body: str) -> SendResult:
        ...


class MetaSender(MessageSender):
    """WhatsApp Cloud API."""

    provider = "meta"

    async def send_text(self, to: str, body: str) -> SendResult:
        cfg: MetaChannelConfig = self.config
        resp = await self._post(
            f"https://graph.facebook.com/{cfg.api_version}/{cfg.phone_number_id}/messages",
            headers={"Authorization": f"Bearer {cfg.access_token}"},
            json={
                "messaging_product": "whatsapp",
                "to": to,
                "type": "text",
                "text": {"preview_url": False, "body": body},
            },
        )
        if resp.status_code >= 400:
            return self._http_error(resp)
        messages = resp.json().get("messages") or [{}]
        return SendResult(ok=True, id=messages[0].get("id"))


class TwilioSender(MessageSender):
    provider = "twilio"

    async def send_text(self, to: str, body: str) -> SendResult:
        cfg: TwilioChannelConfig = self.config
        resp = await self._post(
            f"https://api.twilio.com/2010-04-01/Accounts/{cfg.account_sid}/Messages.json",
            auth=(cfg.account_sid, cfg.auth_token),
            data={"From": f"whatsapp:{cfg.from_number}", "To": f"whatsapp:{to}", "Body": body},
        )
        if resp.status_code >= 400:
            return self._http_error(resp)
        return SendResult(ok=True, id=resp.json().get("sid"))


class GupshupSender(MessageSender):
    provider = "gupshup"

    async def send_text(self, to: str, body: str) -> SendResult:
        cfg: GupshupChannelConfig = self.config
        resp = await self._post(
            "https://api.gupshup.io/wa/api/v1/msg",
            headers={"apikey": cfg.api_key},
            data={
                "channel": "whatsapp",
                "source": cfg.source_number,
                "destination": to.lstrip("+"),
                "message": json.dumps({"type": "text", "text": body}),
                "src.name": cfg.app_name,
            },
        )
        if resp.status_code >= 400:
            return self._http_error(resp)
        return SendResult(ok=True, id=resp.json().get("messageId"))


class ConsoleSender(MessageSender):
    provider = "console"

    async def send_text(self, to: str, body: str) -> SendResult:
        logger.info(f"[console channel] to={mask_phone(to)}: {body}")
        return SendResult(ok=True, id=f"console-{int(time.time() * 1000)}")


DEFAULT_SENDERS: Dict[str, Type[MessageSender]] = {
    "meta": MetaSender,
    "twilio": TwilioSender,
    "gupshup": GupshupSender,
    "console": ConsoleSender,
}


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------

class InboundMessage(BaseModel):
    provider: str
    from_number: str
    text: str = ""
    message_id: Optional[str] = None
    location: Optional[Dict[str, float]] = None


def _e164(number: Optional[str]) -> str:
    s = (number or "").strip()
    if s.startswith("whatsapp:"):
        s = s[len("whatsapp:"):]
    digits = "".join(ch for ch in s if ch.isdigit())
    return f"+{digits}" if digits else ""


def _location_text(lat: Any, lng: Any) -> str:
    return f"LOCATION {lat},{lng}"


def _coordinates(lat: Any, lng: Any) -> Optional[Dict[str, float]]:
    """Latitude/longitude pair, or None when either is missing or not a number."""
    try:
        return {"latitude": float(lat), "longitude": float(lng)}
    except (TypeError, ValueError):
        return None


def _parse_meta(payload: Dict[str, Any]) -> List[InboundMessage]:
    out = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for m in value.get("messages") or []:
                kind = m.get("type")
                location = None
                if kind == "text":
                    text = (m.get("text") or {}).get("body", "")
                elif kind == "button":
                    button = m.get("button") or {}
                    text = button.get("text") or button.get("payload") or ""
                elif kind == "interactive":
                    inter = m.get("interactive") or {}
                    reply = inter.get("button_reply") or inter.get("list_reply") or {}
                    text = reply.get("title") or reply.get("id") or ""
                elif kind == "location":
                    loc = m.get("location") or {}
                    location = _coordinates(loc.get("latitude"), loc.get("longitude"))
                    if location is None:
                        logger.warning(f"Ignoring Meta location message {m.get('id')} without coordinates")
                        continue
                    text = _location_text(location["latitude"], location["longitude"])
                else:
                    logger.debug(f"Ignoring inbound Meta message of type {kind}")
                    continue
                out.append(InboundMessage(
                    provider="meta",
                    from_number=_e164(m.get("from")),
                    text=text,
                    message_id=m.get("id"),
                    location=location,
                ))
    return out


def _parse_twilio(payload: Dict[str, Any]) -> List[InboundMessage]:
    sender = _e164(payload.get("From"))
    if not sender:
        return []
    location = None
    text = payload.get("Body") or ""
    if payload.get("Latitude") and payload.get("Longitude"):
        location = _coordinates(payload["Latitude"], payload["Longitude"])
    if location is not None:
        text = text or _location_text(location["latitude"], location["longitude"])
    return [InboundMessage(
        provider="twilio",
        from_number=sender,
        text=text,
        message_id=payload.get("MessageSid"),
        location=location,
    )]


_INBOUND_PARSERS = {
    "meta": _parse_meta,
    "twilio": _parse_twilio,
}


def parse_inbound(provider: str, payload: Dict[str, Any]) -> List[InboundMessage]:
    """
    Turn a provider webhook body into inbound messages.

    Raises:
        ChannelConfigurationError: provider has no inbound parser
    """
    parser = _INBOUND_PARSERS.get(provider)
    if parser is None:
        raise ChannelConfigurationError(f"No inbound parser for provider {provider!r}")
    return [m for m in parser(payload or {}) if m.from_number]


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class MessagingDispatcher:
    """Resolves a store's channel to a sender, sends, and receives."""

    def __init__(
        self,
        db: Database,
        bus: Optional[EventBus] = None,
        timeout_seconds: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
        background: Optional[BackgroundTasks] = None,
        senders: Optional[Dict[str, Type[MessageSender]]] = None,
    ):
        self.db = db
        self.bus = bus
        self.timeout_seconds = timeout_seconds
        self._http = http_client
        self.background = background
        self.senders = dict(senders or DEFAULT_SENDERS)

    async def resolve_sender(self, store_id: str) -> MessageSender:
        """
        Sender for the store's most recently updated enabled WhatsApp channel.

        Raises:
            ChannelConfigurationError: no channel, bad credentials, or no sender for the provider
        """
        async with self.db.session() as session:
            result = await session.execute(
                select(MessagingChannelORM)
                .where(
                    MessagingChannelORM.store_id == store_id,
                    MessagingChannelORM.kind == "whatsapp",
                    MessagingChannelORM.enabled.is_(True),
                )
                .order_by(MessagingChannelORM.updated_at.desc())
                .limit(1)
            )
            channel = result.scalars().first()

        if channel is None:
            raise ChannelConfigurationError(f"No WhatsApp channel configured for store {store_id}")

        config = parse_channel_config(channel.provider, channel.credentials)
        sender_cls = self.senders.get(channel.provider)
        if sender_cls is None:
            raise ChannelConfigurationError(f"No sender registered for provider {channel.provider!r}")

        sender = sender_cls(config, timeout_seconds=self.timeout_seconds, http_client=self._http)
        sender.channel_id = channel.id
        return sender

    async def send_text(self, store_id: str, to: str, body: str, sender: Optional[MessageSender] = None) -> SendResult:
        """
        Send `body` to `to`. Transport failures and timeouts are reported in
        the result, never raised; channel configuration errors are raised.
        """
        sender = sender or await self.resolve_sender(store_id)
        try:
            result = await with_timeout(sender.send_text(to, body), self.timeout_seconds, f"send:{sender.provider}")
        except Exception as e:
            result = SendResult(ok=False, error=str(e) or e.__class__.__name__)

        if result.ok:
            logger.info(f"Message sent via {sender.provider} to {mask_phone(to)} (id={result.id})")
            self._touch_channel(sender.channel_id)
        else:
            logger.warning(f"Message to {mask_phone(to)} via {sender.provider} failed: {result.error}")
        return result

    def _touch_channel(self, channel_id: Optional[str]) -> None:
        if self.background is None or channel_id is None:
            return

        async def _update():
            async with self.db.session() as session:
                await session.execute(
                    update(MessagingChannelORM)
                    .where(MessagingChannelORM.id == channel_id)
                    .values(last_used_at=datetime.now(timezone.utc))
                )

        self.background.spawn(_update(), name=f"channel-last-used:{channel_id}")

    async def receive(self, store_id: str, provider: str, payload: Dict[str, Any]) -> List[ConversationUserMessageEvent]:
        """Parse a webhook body and publish one user_message event per inbound message."""
        events = []
        for msg in parse_inbound(provider, payload):
            context: Dict[str, Any] = {"provider": provider, "message_id": msg.message_id}
            if msg.location:
                context["location"] = msg.location
            event = ConversationUserMessageEvent(
                store_id=store_id,
                to=msg.from_number,
                text=msg.text,
                context=context,
            )
            if self.bus is not None:
                await self.bus.publish(event)
            events.append(event)
        logger.info(f"Received {len(events)} inbound messages via {provider}")
        return events
