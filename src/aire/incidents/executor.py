"""
Response action execution and verification

Runs exactly one implementation kind per action (shell command, HTTP call
or script) under its timeout and probes post-conditions. Neither execute()
nor verify() raises for operational failures; outcomes are returned as
results.
"""

import asyncio
import logging
import operator
import re
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import urljoin

import httpx
from jinja2 import Environment, TemplateError

from ..models import (
    ActionExecutionResult,
    ActionImplementation,
    ApiCallImplementation,
    CommandImplementation,
    ScriptImplementation,
    Verification,
    VerificationResult,
)
from ..observability.tracer import trace_async

if TYPE_CHECKING:
    from ..sampler import MetricSampler

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 4000

_EXPECTATION = re.compile(r"^\s*(>=|<=|==|!=|>|<)?\s*(-?\d+(?:\.\d+)?)\s*$")
_OPERATORS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}

_template_env = Environment(autoescape=False)


def expectation_met(value: float, expected: Any) -> bool:
    """
    Compare a metric reading against an expectation

    Accepts a bare number (equality) or a string such as ``"<85"`` or
    ``">= 10"``.
    """
    if isinstance(expected, bool):
        return bool(value) == expected
    if isinstance(expected, (int, float)):
        return value == float(expected)
    match = _EXPECTATION.match(str(expected))
    if not match:
        raise ValueError(f"Unsupported expected value: {expected!r}")
    op, threshold = match.groups()
    return _OPERATORS[op or "=="](value, float(threshold))


def render_body(body: Any, context: dict[str, Any]) -> Any:
    """Render jinja2 placeholders in every string of a JSON-like body"""
    if isinstance(body, str):
        try:
            return _template_env.from_string(body).render(**context)
        except TemplateError as e:
            logger.warning(f"Failed to render action body template: {e}")
            return body
    if isinstance(body, dict):
        return {k: render_body(v, context) for k, v in body.items()}
    if isinstance(body, list):
        return [render_body(v, context) for v in body]
    return body


def _truncate(text: str) -> str:
    return text if len(text) <= MAX_OUTPUT_CHARS else text[:MAX_OUTPUT_CHARS] + "..."


class ActionExecutor:
    """Executes action implementations and verification probes"""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        api_base_url: str = "http://localhost:3000",
        sampler: Optional["MetricSampler"] = None,
    ):
        self._client = http_client
        self._owns_client = http_client is None
        self.api_base_url = api_base_url
        self.sampler = sampler

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def resolve_url(self, url: str) -> str:
        """Relative URLs are resolved against the configured API base"""
        if url.startswith(("http://", "https://")):
            return url
        return urljoin(self.api_base_url.rstrip("/") + "/", url.lstrip("/"))

    @trace_async("action.execute")
    async def execute(
        self,
        implementation: ActionImplementation,
        context: Optional[dict[str, Any]] = None,
    ) -> ActionExecutionResult:
        context = context or {}
        match implementation:
            case CommandImplementation(command=command, timeout_seconds=timeout):
                return await self._run_shell(command, timeout)
            case ApiCallImplementation():
                return await self._call_api(implementation, context)
            case ScriptImplementation(path=path, args=args, timeout_seconds=timeout):
                return await self._run_script(path, args, timeout)
            case _:
                return ActionExecutionResult(
                    success=False, error=f"Unsupported implementation: {implementation!r}"
                )

    async def _communicate(
        self, process: asyncio.subprocess.Process, timeout: float, label: str
    ) -> ActionExecutionResult:
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ActionExecutionResult(
                success=False, error=f"{label} timed out after {timeout}s"
            )

        out = _truncate(stdout.decode(errors="replace")) if stdout else None
        err = _truncate(stderr.decode(errors="replace")) if stderr else None
        if process.returncode != 0:
            return ActionExecutionResult(
                success=False,
                output=out,
                error=err or f"{label} exited with code {process.returncode}",
            )
        return ActionExecutionResult(success=True, output=out, error=err)

    async def _run_shell(self, command: str, timeout: float) -> ActionExecutionResult:
        logger.info(f"Running command: {command}")
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return ActionExecutionResult(success=False, error=f"Command failed to start: {e}")
        return await self._communicate(process, timeout, "Command")

    async def _run_script(
        self, path: str, args: list[str], timeout: float
    ) -> ActionExecutionResult:
        logger.info(f"Running script: {path} {' '.join(args)}".rstrip())
        try:
            process = await asyncio.create_subprocess_exec(
                path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return ActionExecutionResult(success=False, error=f"Script failed to start: {e}")
        return await self._communicate(process, timeout, "Script")

    async def _call_api(
        self, call: ApiCallImplementation, context: dict[str, Any]
    ) -> ActionExecutionResult:
        url = self.resolve_url(call.url)
        body = render_body(call.body, context) if call.body is not None else None
        logger.info(f"Calling {call.method} {url}")
        try:
            response = await self._http().request(
                call.method,
                url,
                headers=call.headers,
                json=body,
                timeout=call.timeout_seconds,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return ActionExecutionResult(success=False, error=f"API call failed: {e}")

        return ActionExecutionResult(
            success=response.is_success,
            output=_truncate(response.text),
            status_code=response.status_code,
            error=None if response.is_success else f"HTTP {response.status_code}",
        )

    async def verify(self, verification: Verification) -> VerificationResult:
        """Probe a post-condition; failures and timeouts become unsuccessful results"""
        try:
            return await asyncio.wait_for(
                self._probe(verification), timeout=verification.timeout_seconds
            )
        except asyncio.TimeoutError:
            return VerificationResult(
                success=False,
                details=f"Verification timed out after {verification.timeout_seconds}s",
            )
        except Exception as e:
            logger.warning(f"Verification probe raised: {e}")
            return VerificationResult(success=False, details=f"Verification failed: {e}")

    async def _probe(self, verification: Verification) -> VerificationResult:
        if verification.health_check:
            url = self.resolve_url(verification.health_check)
            response = await self._http().get(url)
            return VerificationResult(
                success=response.is_success,
                details=f"Health check returned {response.status_code}",
            )

        if verification.metric:
            if self.sampler is None:
                return VerificationResult(
                    success=False, details="No metric sampler available for verification"
                )
            value = await self.sampler.read_metric(verification.metric)
            if value is None:
                return VerificationResult(
                    success=False, details=f"Metric {verification.metric} unavailable"
                )
            if verification.expected_value is None:
                return VerificationResult(
                    success=True, details=f"Metric {verification.metric} = {value:g}"
                )
            held = expectation_met(value, verification.expected_value)
            return VerificationResult(
                success=held,
                details=(
                    f"Metric {verification.metric} = {value:g}, "
                    f"expected {verification.expected_value}"
                ),
            )

        return VerificationResult(success=True, details="No verification configured")

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
