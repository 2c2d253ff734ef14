import asyncio
import logging
from typing import Protocol

import telnyx
from telnyx.error import TelnyxError

from app.types.errors import TransportError
from config import settings

_LOGGER = logging.getLogger(__name__)

MAX_BODY_CHARS = 1600


class Transport(Protocol):
    async def send(self, to: str, body: str) -> bool: ...


def _truncate(body: str) -> str:
    if len(body) <= MAX_BODY_CHARS:
        return body
    _LOGGER.warning("Message too long (%d chars), truncating", len(body))
    return body[: MAX_BODY_CHARS - 3] + "..."


class TelnyxTransport:
    """Outbound SMS over Telnyx. Called at most once per queue entry."""

    def __init__(self, api_key: str | None = None, from_number: str | None = None):
        self.api_key = api_key if api_key is not None else settings.TELNYX_API_KEY
        self.from_number = from_number if from_number is not None else settings.TELNYX_FROM_NUMBER

    @property
    def dev_mode(self) -> bool:
        return not self.api_key or not self.from_number

    def _create_message(self, to: str, body: str) -> None:
        telnyx.api_key = self.api_key
        telnyx.Message.create(from_=self.from_number, to=to, text=body)

    async def send(self, to: str, body: str) -> bool:
        body = _truncate(body)
        if self.dev_mode:
            _LOGGER.info("[SMS] DEV mode: would send to %s: %s", to, body)
            return True
        try:
            await asyncio.to_thread(self._create_message, to, body)
        except TelnyxError as exc:
            raise TransportError(f"Telnyx rejected message: {exc}") from exc
        _LOGGER.info("[SMS] queued message to %s", to)
        return True
