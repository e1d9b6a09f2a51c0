"""Unit tests for HeartbeatPinger."""
from unittest.mock import MagicMock

import httpx
import pytest

from keeper.core.lifecycle import HealthStatus
from keeper.services.heartbeat import HeartbeatPinger

URL = "https://uptime.example.com/ping/keeper"


def client_returning(*statuses: int) -> tuple[httpx.AsyncClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []
    codes = iter(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(next(codes))

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), seen


class TestPing:
    @pytest.mark.asyncio
    async def test_success(self, mock_metrics):
        client, seen = client_returning(200)
        pinger = HeartbeatPinger(URL, metrics=mock_metrics, client=client)

        assert await pinger.ping() is True

        assert str(seen[0].url) == URL
        assert pinger.successes == 1
        mock_metrics.record_heartbeat.assert_called_once_with(True)

    @pytest.mark.asyncio
    async def test_error_status_counted_not_raised(self, mock_metrics):
        client, _ = client_returning(503)
        pinger = HeartbeatPinger(URL, metrics=mock_metrics, client=client)

        assert await pinger.ping() is False

        assert pinger.failures == 1
        mock_metrics.record_heartbeat.assert_called_once_with(False)

    @pytest.mark.asyncio
    async def test_transport_error_counted(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        pinger = HeartbeatPinger(URL, client=client)

        assert await pinger.ping() is False
        assert pinger.failures == 1


class TestLoop:
    @pytest.mark.asyncio
    async def test_pings_every_interval(self, clock):
        client, seen = client_returning(200, 200, 200)
        pinger = HeartbeatPinger(URL, interval=30, sleep=clock.sleep, client=client)

        await pinger.start()
        await clock.advance(0)
        assert len(seen) == 1

        await clock.advance(30)
        await clock.advance(30)
        assert len(seen) == 3

        await pinger.stop()
        assert not pinger.is_running

    @pytest.mark.asyncio
    async def test_health_degraded_until_first_success(self, clock):
        client, _ = client_returning(500, 200)
        pinger = HeartbeatPinger(URL, interval=10, sleep=clock.sleep, client=client)

        await pinger.start()
        await clock.advance(0)
        assert (await pinger.health_check()).status == HealthStatus.DEGRADED

        await clock.advance(10)
        assert (await pinger.health_check()).status == HealthStatus.HEALTHY

        await pinger.stop()

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self, clock):
        client = MagicMock(spec=httpx.AsyncClient)
        pinger = HeartbeatPinger(URL, sleep=clock.sleep, client=client)

        await pinger.start()
        await pinger.stop()

        client.aclose.assert_not_called()
