"""
Client for the remote code runner.

The runner is opaque to the credit engine: it takes source code and input
and returns output or an error. A non-empty error marks a failed attempt.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

import httpx
from pydantic import BaseModel


logger = logging.getLogger(__name__)


LANGUAGE_RUNNERS: Mapping[str, str] = {
    "python": "python3-runner",
    "javascript": "js-runner",
    "java": "java-runner",
    "c": "c-runner",
    "cpp": "cpp-runner",
}


class DelegateResult(BaseModel):
    output: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return bool(self.error)


class ExecutionDelegate(ABC):
    @abstractmethod
    async def run(
        self,
        language: str,
        code: str,
        input: str = "",
        request_id: Optional[str] = None,
    ) -> DelegateResult: ...

    def supported_languages(self) -> list[str]:
        return list(LANGUAGE_RUNNERS)

    def supports(self, language: str) -> bool:
        return language.lower() in self.supported_languages()


class HttpExecutionDelegate(ExecutionDelegate):
    """
    Posts `{code, inputs, requestId}` to `{gateway}/function/{runner}` on an
    OpenFaaS-style gateway, picking the runner function by language.
    """

    def __init__(
        self,
        gateway_url: str,
        *,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._gateway_url = gateway_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client

    async def run(
        self,
        language: str,
        code: str,
        input: str = "",
        request_id: Optional[str] = None,
    ) -> DelegateResult:
        runner = LANGUAGE_RUNNERS.get(language.lower())
        if runner is None:
            return DelegateResult(
                error=(
                    f"Unsupported language: {language}. "
                    f"Please choose from: {', '.join(LANGUAGE_RUNNERS)}."
                )
            )

        url = f"{self._gateway_url}/function/{runner}"
        payload = {"code": code, "inputs": input, "requestId": request_id or f"exec-{language}"}
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Runner %s returned %s", runner, exc.response.status_code,
                extra={"request_id": request_id},
            )
            return DelegateResult(error=exc.response.text or f"Runner returned {exc.response.status_code}")
        except httpx.TimeoutException:
            return DelegateResult(error="Execution timed out")
        except httpx.HTTPError as exc:
            logger.warning("Runner %s unreachable: %s", runner, exc, extra={"request_id": request_id})
            return DelegateResult(error="No response received from the execution service")

        return self._parse(response)

    @staticmethod
    def _parse(response: httpx.Response) -> DelegateResult:
        try:
            data: Any = response.json()
        except ValueError:
            return DelegateResult(output=response.text)
        if not isinstance(data, dict):
            return DelegateResult(output=str(data))
        error = data.get("error") or None
        result = data.get("result", data.get("output"))
        return DelegateResult(
            output=None if result is None else str(result),
            error=None if error is None else str(error),
        )
