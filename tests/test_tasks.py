import asyncio

import pytest

from gcs_link.core import TaskScope


@pytest.mark.asyncio
async def test_aclose_cancels_every_child():
    scope = TaskScope("test")
    first = scope.spawn(asyncio.sleep(10), name="first")
    second = scope.spawn(asyncio.sleep(10), name="second")
    assert len(scope) == 2
    assert first.get_name() == "test:first"

    await scope.aclose()

    assert first.cancelled()
    assert second.cancelled()
    assert len(scope) == 0


@pytest.mark.asyncio
async def test_failed_child_is_logged_and_siblings_keep_running(caplog):
    async def _boom():
        raise RuntimeError("boom")

    async with TaskScope("test") as scope:
        sibling = scope.spawn(asyncio.sleep(10), name="sibling")
        with caplog.at_level("ERROR"):
            failed = scope.spawn(_boom(), name="boom")
            await asyncio.gather(failed, return_exceptions=True)
            await asyncio.sleep(0)

        assert not sibling.done()
        assert "Background task test:boom failed" in caplog.text

    assert sibling.cancelled()


@pytest.mark.asyncio
async def test_spawn_after_close_is_rejected():
    scope = TaskScope("test")
    await scope.aclose()

    with pytest.raises(RuntimeError):
        scope.spawn(asyncio.sleep(0))
