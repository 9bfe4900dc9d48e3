"""OpenAI-compatible chat completions client for the worker and planner models."""

import logging
import re

import httpx

from device_orchestrator.config import Config
from device_orchestrator.core.messages import create_system_message, create_user_message
from device_orchestrator.core.planning import (
    PLANNER_SYSTEM_PROMPT,
    SUMMARY_SYSTEM_PROMPT,
    SubTaskResult,
    TaskAnalysis,
    build_analysis_prompt,
    build_decision_prompt,
    build_summary_prompt,
)
from device_orchestrator.core.protocols import ModelResponse

logger = logging.getLogger(__name__)

_THINK = re.compile(r"<think>(.*?)</think>", re.DOTALL)
_ANSWER = re.compile(r"<answer>(.*?)(?:</answer>|$)", re.DOTALL)


class ModelClientError(Exception):
    """Raised when a model request fails or returns nothing usable."""


def split_response(content: str) -> tuple[str, str]:
    """Split raw model output into (thinking, action).

    The action starts at the first ``finish(message=`` or ``do(action=``
    marker; without a marker the ``<think>``/``<answer>`` tags are used,
    and without those the whole text is the action.
    """
    for marker in ("finish(message=", "do(action="):
        if marker in content:
            before, _, after = content.partition(marker)
            thinking = _THINK.sub(lambda m: m.group(1), before)
            thinking = thinking.replace("<answer>", "").strip()
            action = (marker + after).replace("</answer>", "").strip()
            return thinking, action

    think = _THINK.search(content)
    answer = _ANSWER.search(content)
    if answer:
        return (think.group(1).strip() if think else ""), answer.group(1).strip()
    return "", content.strip()


class ModelClient:
    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        *,
        max_tokens: int = 3000,
        temperature: float = 0.0,
        timeout: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def for_worker(cls, config: Config, **kwargs) -> "ModelClient":
        return cls(config.model_base_url, config.model_name, config.model_api_key, **kwargs)

    @classmethod
    def for_planner(cls, config: Config, **kwargs) -> "ModelClient":
        return cls(
            config.effective_planner_base_url,
            config.effective_planner_model,
            config.effective_planner_api_key,
            **kwargs,
        )

    def complete(self, messages: list[dict]) -> str:
        """Send a chat completion request and return the message content."""
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        try:
            response = self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ModelClientError(
                f"Model returned HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise ModelClientError(f"Model request failed: {e}") from e
        except ValueError as e:
            raise ModelClientError("Model returned invalid JSON") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ModelClientError(f"Unexpected response shape: {data!r}"[:300]) from e
        if content is None:
            raise ModelClientError("Model returned an empty message")
        return content

    def request(self, messages: list[dict]) -> ModelResponse:
        content = self.complete(messages)
        thinking, action = split_response(content)
        logger.debug("Model action: %s", action)
        return ModelResponse(thinking=thinking, action=action, raw=content)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class ModelPlanner:
    """Planner backed by a chat model; returns raw text for the core to parse."""

    def __init__(self, client: ModelClient):
        self.client = client

    def _ask(self, system: str, prompt: str) -> str:
        return self.client.complete([
            create_system_message(system),
            create_user_message(prompt),
        ])

    def plan(self, task: str) -> str:
        return self._ask(PLANNER_SYSTEM_PROMPT, build_analysis_prompt(task))

    def decide(self, task: str, analysis: TaskAnalysis, results: list[SubTaskResult]) -> str:
        return self._ask(PLANNER_SYSTEM_PROMPT, build_decision_prompt(task, analysis, results))

    def summarize(self, task: str, results: list[SubTaskResult]) -> str:
        return self._ask(SUMMARY_SYSTEM_PROMPT, build_summary_prompt(task, results))
