"""
Test suite for the metric sampler
"""

from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

from aire.config import ExternalServiceConfig, SamplerConfig
from aire.sampler import MetricSampler

GB = 1024**3


@pytest.fixture
def host():
    """Patch the psutil host readings with fixed values"""
    with patch("aire.sampler.psutil.cpu_percent", return_value=42.5), patch(
        "aire.sampler.psutil.getloadavg", return_value=(1.0, 0.5, 0.25)
    ), patch("aire.sampler.psutil.cpu_count", return_value=8), patch(
        "aire.sampler.psutil.virtual_memory",
        return_value=SimpleNamespace(total=16 * GB, available=4 * GB, percent=75.0),
    ), patch(
        "aire.sampler.psutil.disk_usage",
        return_value=SimpleNamespace(percent=60.0, free=40 * GB, total=100 * GB),
    ) as disk:
        yield disk


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestSample:
    """Test MetricSampler.sample"""

    @pytest.mark.asyncio
    async def test_host_sections(self, host, clock):
        sampler = MetricSampler(SamplerConfig(disk_path="/data"), clock=clock)

        snapshot = await sampler.sample()

        assert snapshot.timestamp == clock()
        assert snapshot.cpu.usage == 42.5
        assert snapshot.cpu.load_average == (1.0, 0.5, 0.25)
        assert snapshot.cpu.cores == 8
        assert snapshot.memory.usage_percent == 75.0
        assert snapshot.memory.used == 12 * GB
        assert snapshot.disk.available_gb == 40.0
        assert snapshot.process.pid > 0
        assert snapshot.degraded is False
        assert snapshot.external_services == ()
        assert sampler.last_snapshot is snapshot
        host.assert_called_once_with("/data")

    @pytest.mark.asyncio
    async def test_failed_section_degrades_snapshot(self, host, clock):
        sampler = MetricSampler(SamplerConfig(), clock=clock)

        with patch("aire.sampler.psutil.getloadavg", side_effect=OSError("no loadavg")):
            snapshot = await sampler.sample()

        assert snapshot.degraded is True
        assert snapshot.errors[0].startswith("cpu:")
        assert snapshot.cpu.usage == 0.0
        assert snapshot.memory.usage_percent == 75.0

    @pytest.mark.asyncio
    async def test_read_metric(self, host, clock):
        sampler = MetricSampler(SamplerConfig(), clock=clock)

        assert await sampler.read_metric("memory.usage_percent") == 75.0
        assert await sampler.read_metric("gpu.usage") is None


class TestProbes:
    """Test database and external service probes"""

    @pytest.mark.asyncio
    async def test_database_probe(self, host, clock):
        def handler(request):
            return httpx.Response(200, json={"active_connections": 12})

        config = SamplerConfig(database_probe_url="http://db.test/health")
        async with _client(handler) as client:
            snapshot = await MetricSampler(config, client, clock).sample()

        assert snapshot.database.active_connections == 12
        assert snapshot.database.health_status == "healthy"
        assert snapshot.database.response_time >= 0

    @pytest.mark.asyncio
    async def test_database_probe_failure(self, host, clock):
        config = SamplerConfig(database_probe_url="http://db.test/health")
        async with _client(lambda request: httpx.Response(503)) as client:
            snapshot = await MetricSampler(config, client, clock).sample()

        assert snapshot.database.health_status == "unhealthy"
        assert snapshot.degraded
        assert any(e.startswith("database:") for e in snapshot.errors)

    def test_database_health_thresholds(self, host, clock):
        sampler = MetricSampler(
            SamplerConfig(database_healthy_ms=100, database_degraded_ms=1000), clock=clock
        )
        assert sampler._database_health(50) == "healthy"
        assert sampler._database_health(100) == "degraded"
        assert sampler._database_health(1000) == "unhealthy"

    @pytest.mark.asyncio
    async def test_external_services(self, host, clock):
        def handler(request):
            if request.url.host == "down.test":
                raise httpx.ConnectError("refused", request=request)
            if request.url.host == "busy.test":
                return httpx.Response(429)
            return httpx.Response(200)

        config = SamplerConfig(
            external_services=[
                ExternalServiceConfig(name="openrouter", health_url="http://up.test/health"),
                ExternalServiceConfig(name="queue", health_url="http://busy.test/health"),
                ExternalServiceConfig(name="search", health_url="http://down.test/health"),
            ]
        )
        async with _client(handler) as client:
            snapshot = await MetricSampler(config, client, clock).sample()

        statuses = {s.name: s.status for s in snapshot.external_services}
        assert statuses == {"openrouter": "healthy", "queue": "degraded", "search": "unhealthy"}
        assert snapshot.get_metric("external_services.openrouter.health_level") == 0
        assert snapshot.get_metric("external_services.search.health_level") == 2
        assert snapshot.degraded
