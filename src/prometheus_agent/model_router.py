"""Model routing: multi-provider dispatch with response healing.

Router logic for one generation call:
1. Resolve provider, model, temperature and max_tokens from the agent's
   LLM config, falling back to provider defaults
2. Call the provider adapter, asking for a JSON object where supported
3. Extract the first embedded JSON object (models wrap JSON in prose/fences)
4. Heal missing or mistyped fields instead of rejecting the response
5. On any failure in 2-4, retry with the error and the strict JSON shape
   appended to the prompt, up to the retry budget

Exhausting the budget fails this call only; the caller decides what that
means for the task.
"""

import logging
from dataclasses import dataclass
from typing import Any

from prometheus_agent.config import PrometheusConfig, ModelConfig
from prometheus_agent.errors import (
    ModelResponseError,
    ModelRetriesExhausted,
    ProviderConfigError,
    UnsupportedProviderError,
)
from prometheus_agent.jsonscan import load_first_object
from prometheus_agent.models import LLMConfig, ModelResponse
from prometheus_agent.providers import GenerationOptions, ProviderAdapter, build_default_adapters

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_TOKENS = 4096
STRICT_JSON_SHAPE = '{"thought": "...", "command": "...", "args": ["..."], "finished": false}'


@dataclass(frozen=True)
class ProviderInfo:
    """Static description of a provider."""

    name: str
    display_name: str
    default_model: str
    max_tokens: int
    models: tuple[str, ...]


PROVIDERS: dict[str, ProviderInfo] = {
    "google": ProviderInfo(
        name="google",
        display_name="Google Gemini",
        default_model="gemini-1.5-pro",
        max_tokens=1048576,
        models=("gemini-1.5-pro", "gemini-1.5-flash", "gemini-2.5-flash"),
    ),
    "openai": ProviderInfo(
        name="openai",
        display_name="OpenAI",
        default_model="gpt-4-turbo",
        max_tokens=128000,
        models=("gpt-4-turbo", "gpt-4", "gpt-3.5-turbo", "gpt-4o"),
    ),
    "groq": ProviderInfo(
        name="groq",
        display_name="Groq",
        default_model="llama3-70b-8192",
        max_tokens=32768,
        models=("llama3-70b-8192", "llama3-8b-8192", "mixtral-8x7b-32768"),
    ),
    "mistral": ProviderInfo(
        name="mistral",
        display_name="Mistral AI",
        default_model="mistral-large-latest",
        max_tokens=32768,
        models=("mistral-large-latest", "mistral-medium-latest", "mistral-small-latest"),
    ),
    "anthropic": ProviderInfo(
        name="anthropic",
        display_name="Anthropic Claude",
        default_model="claude-sonnet-4-5-20250929",
        max_tokens=200000,
        models=("claude-sonnet-4-5-20250929", "claude-haiku-4-5-20251001", "claude-opus-4-6"),
    ),
    "scripted": ProviderInfo(
        name="scripted",
        display_name="Scripted session",
        default_model="scripted",
        max_tokens=DEFAULT_MAX_OUTPUT_TOKENS,
        models=("scripted",),
    ),
}


def heal_response(parsed: dict[str, Any]) -> ModelResponse:
    """Normalize a parsed object into a ModelResponse.

    Field rules:
    - thought: missing or not a string -> ""
    - command: missing or not a string -> ""
    - args: missing, not a list, or any non-string element -> []
    - finished: missing or not a bool -> False
    """
    thought = parsed.get("thought")
    command = parsed.get("command")
    args = parsed.get("args")
    finished = parsed.get("finished")

    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        if args is not None:
            logger.warning(f"Model 'args' is not a list of strings ({type(args).__name__}); using []")
        args = []

    return ModelResponse(
        thought=thought if isinstance(thought, str) else "",
        command=command.strip() if isinstance(command, str) else "",
        args=list(args),
        finished=finished if isinstance(finished, bool) else False,
    )


def parse_model_output(text: str) -> ModelResponse:
    """Extract, parse and heal raw provider text."""
    if not text or not text.strip():
        raise ModelResponseError("Model returned empty output.")
    try:
        parsed = load_first_object(text)
    except ValueError as e:
        raise ModelResponseError(str(e)) from e
    return heal_response(parsed)


def build_correction_prompt(prompt: str, error: Exception) -> str:
    return (
        f"{prompt}\n\n"
        f'Your previous response caused an error: "{error}". '
        f"Reminder: reply with ONLY a JSON object in exactly this format: {STRICT_JSON_SHAPE}"
    )


@dataclass
class ResolvedModel:
    provider: ProviderInfo
    model: str
    temperature: float
    max_tokens: int


class ModelRouter:
    """Dispatches prompts to providers and returns healed ModelResponses."""

    def __init__(
        self,
        config: ModelConfig | None = None,
        adapters: dict[str, ProviderAdapter] | None = None,
    ):
        self.config = config or PrometheusConfig.load().models
        self.providers: dict[str, ProviderInfo] = dict(PROVIDERS)
        self._adapters = adapters if adapters is not None else build_default_adapters(self.config)
        self._stats: dict[str, dict[str, int]] = {}

    def register_provider(self, info: ProviderInfo, adapter: ProviderAdapter) -> None:
        """Add or replace a provider table entry and its adapter."""
        self.providers[info.name] = info
        self._adapters[info.name] = adapter

    def resolve(self, llm_config: LLMConfig, model_override: str | None = None) -> ResolvedModel:
        provider_name = (llm_config.provider or self.config.default_provider).lower()
        info = self.providers.get(provider_name)
        if info is None or provider_name not in self._adapters:
            raise UnsupportedProviderError(llm_config.provider)

        temperature = (
            llm_config.temperature
            if llm_config.temperature is not None
            else self.config.default_temperature
        )
        max_tokens = llm_config.max_tokens or DEFAULT_MAX_OUTPUT_TOKENS
        return ResolvedModel(
            provider=info,
            model=model_override or llm_config.model or info.default_model,
            temperature=temperature,
            max_tokens=min(max_tokens, info.max_tokens),
        )

    def _bump(self, provider: str, key: str) -> None:
        stats = self._stats.setdefault(provider, {"calls": 0, "retries": 0, "failures": 0})
        stats[key] += 1

    async def generate(
        self,
        llm_config: LLMConfig,
        prompt: str,
        *,
        model_override: str | None = None,
        retry_budget: int | None = None,
    ) -> ModelResponse:
        """Return a healed response, retrying malformed output up to the budget."""
        resolved = self.resolve(llm_config, model_override)
        adapter = self._adapters[resolved.provider.name]
        budget = max(1, retry_budget if retry_budget is not None else self.config.retry_budget)
        options = GenerationOptions(temperature=resolved.temperature, max_tokens=resolved.max_tokens)

        current_prompt = prompt
        last_error: Exception | None = None
        for attempt in range(1, budget + 1):
            logger.info(
                f"Routing: {resolved.provider.name}, model: {resolved.model}, "
                f"temp: {resolved.temperature} (attempt {attempt}/{budget})"
            )
            self._bump(resolved.provider.name, "calls")
            try:
                raw = await adapter.call(current_prompt, resolved.model, options)
                logger.debug(f"[{resolved.provider.name}] raw response: {raw[:1000]}")
                return parse_model_output(raw)
            except ProviderConfigError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"Model response error: {e}. Retrying with correction prompt")
                if attempt < budget:
                    self._bump(resolved.provider.name, "retries")
                current_prompt = build_correction_prompt(prompt, e)

        self._bump(resolved.provider.name, "failures")
        raise ModelRetriesExhausted(budget, last_error)

    async def validate_credentials(self, provider: str) -> bool:
        """Probe a provider with a tiny request. Never raises."""
        try:
            resolved = self.resolve(LLMConfig(provider=provider))
            adapter = self._adapters[resolved.provider.name]
            await adapter.call(
                'Test connection. Respond with: {"status": "ok"}',
                resolved.model,
                GenerationOptions(temperature=0.1, max_tokens=100),
            )
            return True
        except Exception as e:
            logger.warning(f"Provider {provider} validation failed: {e}")
            return False

    def available_providers(self) -> list[ProviderInfo]:
        return [info for name, info in self.providers.items() if name in self._adapters]

    def provider_info(self, provider: str) -> ProviderInfo | None:
        return self.providers.get(provider.lower())

    def provider_models(self, provider: str) -> list[str]:
        info = self.provider_info(provider)
        return list(info.models) if info else []

    def get_stats(self) -> dict[str, Any]:
        """Per-provider call, retry and failure counts."""
        totals = {"calls": 0, "retries": 0, "failures": 0}
        for stats in self._stats.values():
            for key in totals:
                totals[key] += stats[key]
        return {"total": totals, "providers": {k: dict(v) for k, v in self._stats.items()}}
