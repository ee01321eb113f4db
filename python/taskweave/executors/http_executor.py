"""Brain-provider executor over an OpenAI-compatible chat-completions API.

Returns the model's text without touching the workspace, so it suits
review and analysis prompts. Code-writing tasks go to an agent that edits
files itself (see ``CommandExecutor``).

Transport errors are retried with tenacity; repeated provider failures open
a circuit breaker so a dead provider is not hammered by every executor.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from taskweave.exceptions_unified import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    ExecutorInvocationError,
    ExecutorTimeoutError,
)
from taskweave.interfaces.executor import ExecutorResult

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are an expert software engineer and code reviewer."


class HttpExecutor:
    """IExecutor backed by an HTTP brain provider."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        cost_per_1k_tokens: float = 0.0,
        max_tokens: int = 4096,
        temperature: float = 0.2,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.cost_per_1k_tokens = cost_per_1k_tokens
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.system_prompt = system_prompt
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            f"brain:{model}", CircuitBreakerConfig(failure_threshold=5, recovery_timeout_sec=60)
        )
        self._requests = 0
        self._tokens = 0
        self._cost = 0.0

    @classmethod
    def from_settings(cls, settings: Any) -> "HttpExecutor":
        return cls(
            base_url=settings.brain_provider_url,
            model=settings.brain_provider_model,
            api_key=settings.brain_provider_api_key,
            cost_per_1k_tokens=settings.brain_provider_cost_per_1k_tokens,
        )

    async def invoke(self, prompt: str, working_directory: str, timeout: float) -> ExecutorResult:
        if not self.circuit_breaker.can_execute():
            self.circuit_breaker.record_rejection()
            raise CircuitOpenError(
                f"Brain provider circuit open for {self.model}",
                details={"breaker": self.circuit_breaker.get_status()},
            )

        start = time.perf_counter()
        try:
            text, tokens = await self._complete(prompt, timeout)
        except httpx.TimeoutException as e:
            self.circuit_breaker.record_failure()
            raise ExecutorTimeoutError(f"Brain provider timed out: {e}", details={"timeout": timeout})
        except httpx.HTTPError as e:
            self.circuit_breaker.record_failure()
            raise ExecutorInvocationError(f"Brain provider request failed: {e}")
        except ExecutorInvocationError:
            self.circuit_breaker.record_failure()
            raise

        self.circuit_breaker.record_success()
        cost = (tokens / 1000) * self.cost_per_1k_tokens
        self._requests += 1
        self._tokens += tokens
        self._cost += cost
        return ExecutorResult(
            success=True,
            output=text,
            cost=cost,
            metadata={
                "model": self.model,
                "tokens_used": tokens,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "working_directory": working_directory,
            },
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _complete(self, prompt: str, timeout: float) -> Tuple[str, int]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }

        async with httpx.AsyncClient(timeout=timeout) as client:
            r = await client.post(f"{self.base_url}/chat/completions", headers=headers, json=payload)
            if r.status_code != 200:
                raise ExecutorInvocationError(
                    f"Brain provider error: {r.status_code}",
                    details={"status_code": r.status_code, "body": r.text[:500]},
                )
            d = r.json()
            text = d["choices"][0]["message"]["content"]
            tokens = d.get("usage", {}).get("total_tokens", len(prompt.split()) + len(text.split()))
            return text, tokens

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "requests": self._requests,
            "tokens": self._tokens,
            "cost": round(self._cost, 4),
            "circuit_breaker": self.circuit_breaker.get_status(),
        }
