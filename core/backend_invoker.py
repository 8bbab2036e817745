"""Single-call backend invocation with a hard timeout.

The invoker issues exactly one call per ``invoke`` and reports the result as a
``GenerationAttempt``; transient failures never escape as exceptions.

Updates:
    v0.1 - 2025-11-06 - Added LiteLLM backend adapter with provider credential handling.
    v0.2 - 2025-11-07 - Normalised Azure and Ollama model identifiers for LiteLLM routing.
    v0.3 - 2025-11-08 - Raced backend calls against a timer on a bounded call pool.
    v0.4 - 2025-11-09 - Gave each backend its own call pool; unstarted calls report saturation.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from os import getenv
from typing import Callable, Dict, Mapping, Optional, Protocol

import litellm

from config.settings import AppConfig, BackendConfig
from core.exceptions import BackendError
from models.generation import AttemptOutcome, GenerationAttempt, SubRequest

LOGGER = logging.getLogger("agc.invoker")


class GenerationBackend(Protocol):
    """Anything that turns a sub-request into generated text."""

    def generate(self, sub_request: SubRequest, timeout: float) -> str:
        ...


class CallableBackend:
    """Adapter wrapping a plain callable as a generation backend."""

    def __init__(self, func: Callable[[SubRequest], str]) -> None:
        self._func = func

    def generate(self, sub_request: SubRequest, timeout: float) -> str:
        return self._func(sub_request)


class LiteLLMBackend:
    """Generation backend routed through ``litellm.completion``."""

    DEFAULT_OLLAMA_BASE = "http://localhost:11434"

    def __init__(self, backend_id: str, backend_cfg: BackendConfig) -> None:
        self.backend_id = backend_id
        self._config = backend_cfg
        self._logger = LOGGER

    def generate(self, sub_request: SubRequest, timeout: float) -> str:
        provider_kwargs = self._build_provider_kwargs(self._config.provider)
        temperature = (
            sub_request.temperature
            if sub_request.temperature is not None
            else self._config.temperature
        )
        completion_kwargs: Dict[str, object] = {
            "model": self._resolve_model_name(),
            "messages": [
                {"role": "system", "content": sub_request.system},
                {"role": "user", "content": sub_request.prompt},
            ],
            "temperature": temperature,
            "request_timeout": timeout,
        }
        if sub_request.max_tokens is not None:
            completion_kwargs["max_tokens"] = sub_request.max_tokens
        self._logger.debug(
            "Calling backend '%s' (%s) for tier %s",
            self.backend_id,
            completion_kwargs["model"],
            sub_request.tier.value,
        )
        response = litellm.completion(**completion_kwargs, **provider_kwargs)
        content = response["choices"][0]["message"]["content"]
        return content or ""

    def _build_provider_kwargs(self, provider: str) -> Dict[str, object]:
        """Prepare provider-specific keyword arguments for LiteLLM."""
        if provider.lower() == "azure":
            api_key = getenv("AZURE_OPENAI_API_KEY")
            endpoint = getenv("AZURE_OPENAI_ENDPOINT")
            api_version = getenv("AZURE_OPENAI_API_VERSION", "2024-08-01-preview")
            if not api_key or not endpoint:
                raise BackendError(
                    "Azure OpenAI credentials missing. Set AZURE_OPENAI_API_KEY and "
                    "AZURE_OPENAI_ENDPOINT environment variables."
                )
            base = endpoint.rstrip("/")
            return {
                "api_key": api_key,
                "api_base": base,
                "base_url": base,
                "api_version": api_version,
                "custom_llm_provider": "azure",
            }

        if provider.lower() == "ollama":
            base_url = (getenv("OLLAMA_BASE_URL") or self.DEFAULT_OLLAMA_BASE).rstrip("/")
            return {
                "base_url": base_url,
                "api_base": base_url,
                "custom_llm_provider": "ollama",
            }

        return {}

    def _resolve_model_name(self) -> str:
        """Normalise provider-specific model identifiers for LiteLLM."""
        model_name = self._config.model
        provider = self._config.provider.lower()

        if provider == "azure":
            if model_name.startswith("azure/"):
                return model_name
            return f"azure/{model_name}"

        if provider == "ollama":
            if model_name.startswith(("ollama/", "ollama_chat/")):
                return model_name
            return f"ollama/{model_name}"

        return model_name


def build_backends(config: AppConfig) -> Dict[str, GenerationBackend]:
    """Instantiate LiteLLM backends for every enabled configured backend."""
    return {
        backend_id: LiteLLMBackend(backend_id, backend_cfg)
        for backend_id, backend_cfg in config.backends.items()
        if backend_cfg.enabled
    }


class BackendInvoker:
    """Executes one call against one backend with a hard timeout."""

    def __init__(
        self,
        backends: Mapping[str, GenerationBackend],
        max_workers: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backends: Dict[str, GenerationBackend] = dict(backends)
        # One pool per backend so a hung backend cannot starve the others.
        self._pools: Dict[str, ThreadPoolExecutor] = {
            backend_id: ThreadPoolExecutor(
                max_workers=max(1, max_workers),
                thread_name_prefix=f"agc-invoke-{backend_id}",
            )
            for backend_id in self._backends
        }
        self._clock = clock
        self._logger = LOGGER

    @property
    def backend_ids(self) -> list[str]:
        return list(self._backends)

    def invoke(self, backend_id: str, sub_request: SubRequest, timeout: float) -> GenerationAttempt:
        """Call *backend_id* once, returning a timeout attempt if the timer wins."""
        started = self._clock()
        backend = self._backends.get(backend_id)
        if backend is None:
            return self._finish(
                backend_id,
                started,
                AttemptOutcome.ERROR,
                error=f"Backend '{backend_id}' is not registered.",
            )
        if timeout <= 0:
            return self._finish(
                backend_id,
                started,
                AttemptOutcome.TIMEOUT,
                error="No time budget left for the call.",
            )

        future: Future = self._pools[backend_id].submit(backend.generate, sub_request, timeout)
        try:
            output = future.result(timeout=timeout)
        except FutureTimeoutError:
            if future.cancel():
                # Still queued: every worker of this backend is busy with earlier calls.
                self._logger.warning(
                    "Backend '%s' call never started within %.2fs; invoker saturated.",
                    backend_id,
                    timeout,
                )
                return self._finish(
                    backend_id,
                    started,
                    AttemptOutcome.ERROR,
                    error=f"Invoker saturated: call not started within {timeout:.2f}s",
                )
            self._logger.warning(
                "Backend '%s' timed out after %.2fs; discarding late response.",
                backend_id,
                timeout,
            )
            return self._finish(
                backend_id,
                started,
                AttemptOutcome.TIMEOUT,
                error=f"Timed out after {timeout:.2f}s",
            )
        except litellm.Timeout as exc:
            self._logger.warning("Backend '%s' reported a provider timeout: %s", backend_id, exc)
            return self._finish(backend_id, started, AttemptOutcome.TIMEOUT, error=str(exc))
        except Exception as exc:
            self._logger.warning("Backend '%s' failed: %s", backend_id, exc)
            return self._finish(
                backend_id,
                started,
                AttemptOutcome.ERROR,
                error=f"{type(exc).__name__}: {exc}",
            )

        ended = self._clock()
        if ended - started > timeout:
            self._logger.warning(
                "Backend '%s' answered after %.2fs (budget %.2fs); treating as timeout.",
                backend_id,
                ended - started,
                timeout,
            )
            return GenerationAttempt(
                backend_id=backend_id,
                outcome=AttemptOutcome.TIMEOUT,
                started_at=started,
                ended_at=ended,
                error=f"Response exceeded {timeout:.2f}s budget",
            )
        return GenerationAttempt(
            backend_id=backend_id,
            outcome=AttemptOutcome.SUCCESS,
            started_at=started,
            ended_at=ended,
            output="" if output is None else str(output),
        )

    def shutdown(self, wait: bool = False) -> None:
        for pool in self._pools.values():
            pool.shutdown(wait=wait, cancel_futures=True)

    def _finish(
        self,
        backend_id: str,
        started: float,
        outcome: AttemptOutcome,
        error: Optional[str] = None,
    ) -> GenerationAttempt:
        return GenerationAttempt(
            backend_id=backend_id,
            outcome=outcome,
            started_at=started,
            ended_at=self._clock(),
            error=error,
        )
