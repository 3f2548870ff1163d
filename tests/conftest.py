import pytest

from gcs_link.connection import LinkDiagnostics, MessageSender
from gcs_link.core import FcuIdentity, FrameBus, LatestValue

from fakes import FCU, FakeTransport


@pytest.fixture
def bus():
    return FrameBus(queue_size=64)


@pytest.fixture
def transport(bus):
    """Transport whose scripted replies are published straight onto ``bus``."""
    return FakeTransport(bus=bus)


@pytest.fixture
def sender(transport):
    return MessageSender(
        transport, system_id=255, component_id=1, diagnostics=LinkDiagnostics()
    )


@pytest.fixture
def fcu():
    return LatestValue(FCU)


@pytest.fixture
def undetected_fcu():
    return LatestValue(FcuIdentity())
