import pytest

from convosync.errors import ConflictError, NetworkError
from convosync.utils.retry import exponential_backoff_delay, retry_async


def test_backoff_grows_and_is_capped():
    assert 0.5 <= exponential_backoff_delay(0) <= 0.55
    assert 2.0 <= exponential_backoff_delay(2) <= 2.2
    assert 30.0 <= exponential_backoff_delay(10) <= 33.0


@pytest.mark.asyncio
async def test_retry_async_recovers_from_transient_errors(mocker):
    func = mocker.AsyncMock(side_effect=[NetworkError("blip"), NetworkError("blip"), "ok"])
    retries = []

    result = await retry_async(func, base_delay=0.001, on_retry=lambda n, exc: retries.append(n))

    assert result == "ok"
    assert func.await_count == 3
    assert retries == [1, 2]


@pytest.mark.asyncio
async def test_retry_async_gives_up(mocker):
    func = mocker.AsyncMock(side_effect=NetworkError("down"))

    with pytest.raises(NetworkError):
        await retry_async(func, max_retries=2, base_delay=0.001)
    assert func.await_count == 3


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_other_errors(mocker):
    func = mocker.AsyncMock(side_effect=ConflictError("dup"))

    with pytest.raises(ConflictError):
        await retry_async(func, base_delay=0.001)
    assert func.await_count == 1
