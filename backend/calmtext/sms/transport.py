"""
CalmText - Outbound SMS Transport

Architecture:
    - Protocol defines the send interface
    - DummyTransport: records messages in memory (development/testing)
    - TwilioTransport: Twilio Programmable Messaging

The Twilio REST client is synchronous; sends run in a worker thread so the
event loop keeps serving other users while Twilio answers.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from calmtext.core.exceptions import ConfigurationError, TransportError
from calmtext.core.types import SendResult, utcnow
from calmtext.sms.privacy import mask_phone_number

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol (Interface)
# =============================================================================

@runtime_checkable
class OutboundTransport(Protocol):
    """Protocol for sending an SMS to a user."""

    @abstractmethod
    async def send(self, to: str, text: str) -> SendResult:
        """
        Send a message.

        Returns a SendResult; may also raise TransportError.
        """
        ...

    @property
    @abstractmethod
    def transport_id(self) -> str:
        ...


# =============================================================================
# Dummy Implementation (Development/Testing)
# =============================================================================

@dataclass
class SentMessage:
    to: str
    text: str
    message_id: str
    sent_at: datetime = field(default_factory=utcnow)


class DummyTransport:
    """
    Transport that delivers nothing and records everything.

    `outbox` holds every message that was "sent", in order.
    """

    def __init__(self):
        self.outbox: List[SentMessage] = []

    @property
    def transport_id(self) -> str:
        return "dummy-transport"

    async def send(self, to: str, text: str) -> SendResult:
        message_id = f"SM{len(self.outbox) + 1:032d}"
        self.outbox.append(SentMessage(to=to, text=text, message_id=message_id))
        logger.debug("DummyTransport recorded message to %s", mask_phone_number(to))
        return SendResult(success=True, message_id=message_id, status="queued")

    def messages_to(self, to: str) -> List[str]:
        return [m.text for m in self.outbox if m.to == to]


# =============================================================================
# Twilio Implementation (Production)
# =============================================================================

class TwilioTransport:
    """Send SMS through Twilio's Messages API."""

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        client: Optional[Client] = None,
    ):
        if not (account_sid and auth_token and from_number):
            raise ConfigurationError(
                "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER "
                "must be set when transport_backend='twilio'"
            )
        self._from_number = from_number
        self._client = client or Client(account_sid, auth_token)

    @property
    def transport_id(self) -> str:
        return "twilio"

    async def send(self, to: str, text: str) -> SendResult:
        try:
            message = await asyncio.to_thread(
                self._client.messages.create,
                body=text,
                from_=self._from_number,
                to=to,
            )
        except TwilioException as e:
            raise TransportError(
                f"Twilio send failed: {e}",
                details={"to": mask_phone_number(to)},
            ) from e

        logger.info(
            "SMS sent: to=%s, sid=%s, status=%s",
            mask_phone_number(to),
            message.sid,
            message.status,
        )
        return SendResult(success=True, message_id=message.sid, status=message.status)
