import pytest

from upload_manager.core_logic.resilience import RetryPolicy
from upload_manager.core_logic.session import UploadManager
from tests.mocks.mock_transport import EventRecorder, ImmediateScheduler, ScriptedTransport


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def scheduler():
    return ImmediateScheduler()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def manager(transport, scheduler, recorder):
    """An UploadManager wired to the scripted transport, with instant retries."""
    upload_manager = UploadManager(
        transport,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=2.0, backoff=2.0, max_delay=30.0),
        scheduler=scheduler,
    )
    upload_manager.subscribe(recorder)
    yield upload_manager
    upload_manager.shutdown()
