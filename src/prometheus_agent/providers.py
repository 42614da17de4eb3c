"""Provider adapters for the model router.

Every provider implements one capability, `call(prompt, model, options)`,
returning the raw completion text. Selection happens in the router through a
lookup table, so adding a provider means adding an adapter and a table entry.

Adapters:
- google: Gemini REST generateContent (httpx)
- openai / groq / mistral: OpenAI-compatible chat completions (httpx)
- anthropic: Claude Agent SDK client, single turn, no tools
- scripted: canned responses from an injectable ScriptedSession
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
)

from prometheus_agent.config import PROVIDER_KEY_ENV, ModelConfig
from prometheus_agent.errors import ModelResponseError, ProviderConfigError

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
OPENAI_COMPATIBLE_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
    "mistral": "https://api.mistral.ai/v1",
}
JSON_ONLY_SYSTEM_PROMPT = (
    "You are a tool-using agent. Reply with exactly one JSON object and nothing else."
)


@dataclass
class GenerationOptions:
    temperature: float
    max_tokens: int
    json_mode: bool = True


class ProviderAdapter(Protocol):
    async def call(self, prompt: str, model: str, options: GenerationOptions) -> str: ...


def _missing_key(provider: str) -> ProviderConfigError:
    env_name = PROVIDER_KEY_ENV.get(provider, f"{provider.upper()}_API_KEY")
    return ProviderConfigError(f"{env_name} is not set; cannot call provider '{provider}'")


def _error_body(response: httpx.Response) -> str:
    return response.text[:300] if response.text else response.reason_phrase


class OpenAICompatibleAdapter:
    """Chat-completions endpoint shared by OpenAI, Groq and Mistral."""

    def __init__(
        self,
        provider: str,
        api_key: str | None,
        base_url: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.provider = provider
        self.api_key = api_key
        self.base_url = base_url or OPENAI_COMPATIBLE_BASE_URLS[provider]
        self.timeout = timeout
        self._transport = transport

    async def call(self, prompt: str, model: str, options: GenerationOptions) -> str:
        if not self.api_key:
            raise _missing_key(self.provider)

        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if options.json_mode:
            payload["response_format"] = {"type": "json_object"}

        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.post(
                "/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )

        if response.status_code != 200:
            raise ModelResponseError(
                f"{self.provider} API returned {response.status_code}: {_error_body(response)}"
            )
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ModelResponseError(f"{self.provider} API returned an unexpected payload: {e}") from e
        if not isinstance(content, str) or not content.strip():
            raise ModelResponseError(f"{self.provider} API returned an empty response.")
        return content


class GeminiAdapter:
    """Google Gemini generateContent REST endpoint."""

    provider = "google"

    def __init__(
        self,
        api_key: str | None,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    async def call(self, prompt: str, model: str, options: GenerationOptions) -> str:
        if not self.api_key:
            raise _missing_key(self.provider)

        generation_config: dict[str, Any] = {
            "temperature": options.temperature,
            "maxOutputTokens": options.max_tokens,
        }
        if options.json_mode:
            generation_config["responseMimeType"] = "application/json"

        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.post(
                f"/models/{model}:generateContent",
                json={
                    "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                    "generationConfig": generation_config,
                },
                headers={"x-goog-api-key": self.api_key},
            )

        if response.status_code != 200:
            raise ModelResponseError(f"Gemini API returned {response.status_code}: {_error_body(response)}")
        try:
            parts = response.json()["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ModelResponseError(f"Gemini API returned an unexpected payload: {e}") from e
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        if not text.strip():
            raise ModelResponseError("Gemini API returned an empty response.")
        return text


class ClaudeAgentAdapter:
    """Claude through the Agent SDK: one query, no tools, text blocks collected.

    The SDK reads its own credentials (ANTHROPIC_API_KEY and friends).
    Temperature is not exposed by the SDK and is ignored.
    """

    provider = "anthropic"

    async def call(self, prompt: str, model: str, options: GenerationOptions) -> str:
        sdk_options = ClaudeAgentOptions(
            model=model,
            max_turns=1,
            allowed_tools=[],
            system_prompt=JSON_ONLY_SYSTEM_PROMPT,
        )
        text_buf: list[str] = []
        async with ClaudeSDKClient(options=sdk_options) as client:
            await client.query(prompt)
            async for message in client.receive_response():
                if isinstance(message, AssistantMessage):
                    for block in message.content:
                        if isinstance(block, TextBlock):
                            text_buf.append(block.text)
                elif isinstance(message, ResultMessage) and message.is_error:
                    raise ModelResponseError(f"Claude returned an error: {message.result or 'unknown error'}")

        raw = "".join(text_buf).strip()
        if not raw:
            raise ModelResponseError("Claude returned an empty response.")
        return raw


# --- Scripted sessions ---

FINISHED_RESPONSE = {
    "thought": "All steps are done. The task is complete.",
    "command": "",
    "args": [],
    "finished": True,
}

DEMO_SCRIPT: list[dict] = [
    {
        "thought": "The task is clear. First, look at what is in the working directory.",
        "command": "ls",
        "args": ["-la", "/app"],
        "finished": False,
    },
    {
        "thought": "I can see the repository. Now create hello.txt as the task asks.",
        "command": "echo",
        "args": ["Hello, World!", ">", "/app/hello.txt"],
        "finished": False,
    },
    {
        "thought": "hello.txt is written. Check that it holds the right text.",
        "command": "cat",
        "args": ["/app/hello.txt"],
        "finished": False,
    },
    FINISHED_RESPONSE,
]


@dataclass
class ScriptedSession:
    """Canned responses for one simulated session.

    Items may be dicts (serialized to JSON), raw strings (returned verbatim,
    useful for malformed output), or exceptions (raised). Once the script runs
    out, every call returns FINISHED_RESPONSE.
    """

    responses: list[Any] = field(default_factory=list)
    call_count: int = 0
    prompts: list[str] = field(default_factory=list)

    def next_response(self, prompt: str) -> str:
        self.prompts.append(prompt)
        index = self.call_count
        self.call_count += 1
        item = self.responses[index] if index < len(self.responses) else FINISHED_RESPONSE
        if isinstance(item, Exception):
            raise item
        if isinstance(item, dict):
            return json.dumps(item)
        return str(item)

    def reset(self) -> None:
        self.call_count = 0
        self.prompts.clear()


class ScriptedAdapter:
    provider = "scripted"

    def __init__(self, session: ScriptedSession | None = None):
        self.session = session or ScriptedSession(responses=list(DEMO_SCRIPT))

    async def call(self, prompt: str, model: str, options: GenerationOptions) -> str:
        logger.debug(f"Scripted call #{self.session.call_count + 1} ({model})")
        return self.session.next_response(prompt)


def build_default_adapters(
    config: ModelConfig,
    transport: httpx.AsyncBaseTransport | None = None,
    session: ScriptedSession | None = None,
) -> dict[str, ProviderAdapter]:
    """Adapter table keyed by provider name."""
    adapters: dict[str, ProviderAdapter] = {
        "google": GeminiAdapter(
            config.api_keys.get("google"), timeout=config.request_timeout, transport=transport
        ),
        "anthropic": ClaudeAgentAdapter(),
        "scripted": ScriptedAdapter(session),
    }
    for name in OPENAI_COMPATIBLE_BASE_URLS:
        adapters[name] = OpenAICompatibleAdapter(
            name, config.api_keys.get(name), timeout=config.request_timeout, transport=transport
        )
    return adapters
