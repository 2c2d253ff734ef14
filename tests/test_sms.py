import pytest
import telnyx
from telnyx.error import TelnyxError

from app.types.errors import TransportError
from app.utils import sms as sms_util


@pytest.mark.asyncio
async def test_dev_mode_logs_instead_of_sending(monkeypatch):
    def boom(**kwargs):
        raise AssertionError("telnyx must not be called in dev mode")

    monkeypatch.setattr(telnyx.Message, "create", boom)
    transport = sms_util.TelnyxTransport(api_key="", from_number="")
    assert transport.dev_mode
    assert await transport.send("+15550000001", "hello") is True


@pytest.mark.asyncio
async def test_send_truncates_long_bodies(monkeypatch):
    sent = []
    monkeypatch.setattr(telnyx.Message, "create", lambda **kwargs: sent.append(kwargs))
    transport = sms_util.TelnyxTransport(api_key="KEY", from_number="+15559990000")

    assert await transport.send("+15550000001", "x" * 2000) is True
    (call,) = sent
    assert call["from_"] == "+15559990000"
    assert call["to"] == "+15550000001"
    assert len(call["text"]) == sms_util.MAX_BODY_CHARS
    assert call["text"].endswith("...")


@pytest.mark.asyncio
async def test_telnyx_errors_become_transport_errors(monkeypatch):
    def reject(**kwargs):
        raise TelnyxError("invalid destination")

    monkeypatch.setattr(telnyx.Message, "create", reject)
    transport = sms_util.TelnyxTransport(api_key="KEY", from_number="+15559990000")
    with pytest.raises(TransportError, match="invalid destination"):
        await transport.send("+15550000001", "hello")
