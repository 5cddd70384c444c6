from typing import Dict, List, Optional

import pytest

from apiproxy.forwarder import OutboundRequest, UpstreamResponse
from apiproxy.main import app, get_transport


class FakeTransport:
    """Records outbound calls and answers with a canned response or error."""

    def __init__(self, response: Optional[UpstreamResponse] = None, error: Optional[Exception] = None) -> None:
        self.response = response or UpstreamResponse(200, "application/json", b'{"x":1}')
        self.error = error
        self.calls: List[OutboundRequest] = []

    async def send(self, method: str, url: str, headers: Dict[str, str], body: Optional[str]) -> UpstreamResponse:
        self.calls.append(OutboundRequest(method=method, url=url, headers=dict(headers), body=body))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def fake_transport():
    transport = FakeTransport()
    app.dependency_overrides[get_transport] = lambda: transport
    yield transport
    app.dependency_overrides.pop(get_transport, None)
