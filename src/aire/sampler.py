"""
Metric sampler

Reads host, process and dependency health into an immutable Snapshot. Any
section that cannot be read falls back to its defaults and marks the
snapshot degraded; sampling itself never raises.
"""

import asyncio
import logging
import os
import time
from datetime import datetime
from typing import Callable, Optional

import httpx
import psutil

from .config import ExternalServiceConfig, SamplerConfig
from .models import (
    CpuMetrics,
    DatabaseMetrics,
    DiskMetrics,
    ExternalServiceHealth,
    MemoryMetrics,
    ProcessMetrics,
    Snapshot,
    utcnow,
)
from .observability.tracer import trace_operation

logger = logging.getLogger(__name__)


class MetricSampler:
    """Produces one Snapshot per call to sample()"""

    def __init__(
        self,
        config: SamplerConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self._clock = clock
        self._client = http_client
        self._owns_client = http_client is None
        self._process = psutil.Process(os.getpid())
        self.last_snapshot: Optional[Snapshot] = None

        # First cpu_percent call only primes the counters
        psutil.cpu_percent(interval=None)
        self._process.cpu_percent(interval=None)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.probe_timeout)
        return self._client

    async def sample(self) -> Snapshot:
        """Take one reading of every section"""
        errors: list[str] = []

        with trace_operation("sampler.sample") as span:
            cpu = await self._read("cpu", self._cpu_metrics, CpuMetrics, errors)
            memory = await self._read("memory", self._memory_metrics, MemoryMetrics, errors)
            disk = await self._read("disk", self._disk_metrics, DiskMetrics, errors)
            process = await self._read("process", self._process_metrics, ProcessMetrics, errors)
            database = await self._database_metrics(errors)
            services = await self._external_services(errors)

            snapshot = Snapshot(
                timestamp=self._clock(),
                cpu=cpu,
                memory=memory,
                disk=disk,
                process=process,
                database=database,
                external_services=tuple(services),
                degraded=bool(errors),
                errors=tuple(errors),
            )
            span.set_attribute("snapshot.degraded", snapshot.degraded)

        self.last_snapshot = snapshot
        return snapshot

    async def read_metric(self, path: str) -> Optional[float]:
        """Fresh reading of a single metric path"""
        snapshot = await self.sample()
        return snapshot.get_metric(path)

    async def _read(self, section, reader, default_factory, errors: list[str]):
        try:
            return await reader()
        except (psutil.Error, OSError, ValueError) as e:
            logger.warning(f"Failed to sample {section} metrics: {e}")
            errors.append(f"{section}: {e}")
            return default_factory()

    async def _cpu_metrics(self) -> CpuMetrics:
        usage = psutil.cpu_percent(interval=None)
        load = psutil.getloadavg()
        return CpuMetrics(
            usage=round(usage, 2),
            load_average=tuple(round(v, 2) for v in load),
            cores=psutil.cpu_count() or 1,
        )

    async def _memory_metrics(self) -> MemoryMetrics:
        vm = psutil.virtual_memory()
        return MemoryMetrics(
            total=vm.total,
            used=vm.total - vm.available,
            free=vm.available,
            usage_percent=round(vm.percent, 2),
        )

    async def _disk_metrics(self) -> DiskMetrics:
        usage = await asyncio.to_thread(psutil.disk_usage, self.config.disk_path)
        return DiskMetrics(
            usage_percent=round(usage.percent, 2),
            available_gb=round(usage.free / 1024**3, 2),
            total_gb=round(usage.total / 1024**3, 2),
        )

    async def _process_metrics(self) -> ProcessMetrics:
        lag = await self._event_loop_lag()
        with self._process.oneshot():
            memory_info = self._process.memory_info()
            cpu = self._process.cpu_percent(interval=None)
            created = self._process.create_time()
        return ProcessMetrics(
            heap_used=memory_info.rss,
            heap_total=memory_info.vms,
            rss=memory_info.rss,
            cpu_usage=round(cpu, 2),
            event_loop_lag=round(lag, 3),
            uptime=round(time.time() - created, 1),
            pid=self._process.pid,
        )

    @staticmethod
    async def _event_loop_lag() -> float:
        """Milliseconds a zero-delay callback waits before it runs"""
        loop = asyncio.get_running_loop()
        start = loop.time()
        await asyncio.sleep(0)
        return (loop.time() - start) * 1000

    def _database_health(self, response_ms: float) -> str:
        if response_ms < self.config.database_healthy_ms:
            return "healthy"
        if response_ms < self.config.database_degraded_ms:
            return "degraded"
        return "unhealthy"

    async def _database_metrics(self, errors: list[str]) -> DatabaseMetrics:
        if not self.config.database_probe_url:
            return DatabaseMetrics()

        start = time.perf_counter()
        try:
            response = await self._http().get(
                self.config.database_probe_url, timeout=self.config.probe_timeout
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Database probe failed: {e}")
            errors.append(f"database: {e}")
            return DatabaseMetrics(health_status="unhealthy")
        elapsed_ms = (time.perf_counter() - start) * 1000

        connections = 0
        if response.headers.get("content-type", "").startswith("application/json"):
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                connections = int(body.get("active_connections", 0) or 0)

        return DatabaseMetrics(
            active_connections=connections,
            response_time=round(elapsed_ms, 2),
            health_status=self._database_health(elapsed_ms),
        )

    async def _external_services(self, errors: list[str]) -> list[ExternalServiceHealth]:
        if not self.config.external_services:
            return []
        return list(
            await asyncio.gather(
                *(self._probe_service(s, errors) for s in self.config.external_services)
            )
        )

    async def _probe_service(
        self, service: ExternalServiceConfig, errors: list[str]
    ) -> ExternalServiceHealth:
        start = time.perf_counter()
        try:
            response = await self._http().get(service.health_url, timeout=service.timeout)
        except httpx.HTTPError as e:
            logger.warning(f"External service {service.name} unreachable: {e}")
            errors.append(f"external_services.{service.name}: {e}")
            return ExternalServiceHealth(
                name=service.name, status="unhealthy", last_check=self._clock()
            )

        elapsed_ms = (time.perf_counter() - start) * 1000
        status = "healthy" if response.status_code < 400 else "degraded"
        if response.status_code >= 500:
            status = "unhealthy"
        return ExternalServiceHealth(
            name=service.name,
            status=status,
            response_time=round(elapsed_ms, 2),
            last_check=self._clock(),
        )

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
