"""
Model provider definitions written into the gateway config.

Covers Cloudflare AI Gateway routing (one provider per upstream, derived
from ``CF_AI_GATEWAY_MODEL``) and the OpenRouter catalog.
"""

from typing import Any, NamedTuple

AI_GATEWAY_URL = "https://gateway.ai.cloudflare.com/v1"
WORKERS_AI_URL = "https://api.cloudflare.com/client/v4/accounts/{account_id}/ai/v1"
AI_GATEWAY_PROVIDER_PREFIX = "cf-ai-gw-"
AI_GATEWAY_CONTEXT_WINDOW = 131072
AI_GATEWAY_MAX_TOKENS = 8192

OPENROUTER_PROVIDER = "openrouter"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_DEFAULT_MODEL = "openrouter/deepseek/deepseek-v3.2"

# Providers OpenRouter replaces; keeping them would let calls bypass the proxy.
DIRECT_PROVIDERS = ("anthropic", "openai")

API_ANTHROPIC = "anthropic-messages"
API_OPENAI = "openai-completions"


class ModelSpec(NamedTuple):
    id: str
    name: str
    context_window: int
    max_tokens: int = 8192

    def to_config(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "contextWindow": self.context_window,
            "maxTokens": self.max_tokens,
        }


OPENROUTER_MODELS: tuple[ModelSpec, ...] = (
    # Free tier
    ModelSpec("openrouter/free", "auto-free", 200000),
    ModelSpec("openrouter/pony-alpha", "pony-alpha", 200000, 131000),
    ModelSpec("google/gemini-2.5-flash:free", "gemini-2.5-flash-free", 1000000),
    ModelSpec("google/gemini-3-flash-preview:free", "gemini-3-flash-free", 1000000),
    ModelSpec("meta-llama/llama-3.3-70b-instruct:free", "llama-3.3-70b-free", 131000),
    ModelSpec("meta-llama/llama-3.1-405b:free", "llama-3.1-405b-free", 131000),
    ModelSpec("deepseek/deepseek-r1-0528:free", "deepseek-r1-free", 164000),
    ModelSpec("openai/gpt-oss-120b:free", "gpt-oss-120b-free", 131000),
    ModelSpec("xiaomi/mimo-v2-flash:free", "mimo-v2-flash-free", 262000),
    ModelSpec("mistralai/devstral-2512:free", "devstral-2-free", 262000),
    ModelSpec("qwen/qwen3-coder:free", "qwen3-coder-free", 262000),
    ModelSpec("nvidia/nemotron-3-nano-30b-a3b:free", "nemotron-3-nano-free", 256000),
    # Ultra-cheap
    ModelSpec("mistralai/devstral-2512", "devstral-2", 262000),
    ModelSpec("qwen/qwen3-30b-a3b", "qwen3-30b", 262000),
    ModelSpec("z-ai/glm-4.7-flash", "glm-4.7-flash", 202000),
    ModelSpec("qwen/qwen3-coder-next", "qwen3-coder-next", 262000),
    ModelSpec("bytedance-seed/seed-1.6-flash", "seed-1.6-flash", 262000),
    ModelSpec("xiaomi/mimo-v2-flash", "mimo-v2-flash", 262000),
    ModelSpec("qwen/qwq-32b", "qwq-32b", 65000),
    ModelSpec("deepseek/deepseek-v3.2", "deepseek-v3.2", 164000),
    ModelSpec("deepseek/deepseek-v3.2-speciale", "deepseek-v3.2-speciale", 164000),
    ModelSpec("x-ai/grok-4.1-fast", "grok-4.1-fast", 2000000),
    ModelSpec("qwen/qwen3-235b-a22b", "qwen3-235b", 262000),
    ModelSpec("z-ai/glm-4.7", "glm-4.7", 202000),
    ModelSpec("minimax/minimax-m2.1", "minimax-m2.1", 196000),
    # Mid-range
    ModelSpec("google/gemini-3-flash-preview", "gemini-3-flash", 1000000),
    ModelSpec("mistralai/mistral-large-2512", "mistral-large-3", 262000),
    ModelSpec("moonshotai/kimi-k2.5", "kimi-k2.5", 262000),
    ModelSpec("deepseek/deepseek-r1", "deepseek-r1", 64000),
    ModelSpec("z-ai/glm-5", "glm-5", 202000),
    ModelSpec("anthropic/claude-haiku-4.5", "claude-haiku-4.5", 1000000),
    ModelSpec("qwen/qwen3-max-thinking", "qwen3-max-thinking", 262000),
    ModelSpec("openai/gpt-5.1", "gpt-5.1", 400000),
    ModelSpec("openai/gpt-5.2", "gpt-5.2", 400000),
    ModelSpec("google/gemini-3-pro-preview", "gemini-3-pro", 1000000),
    # Premium
    ModelSpec("openai/gpt-5.3-codex", "gpt-5.3-codex", 256000),
    ModelSpec("anthropic/claude-sonnet-4.5", "claude-sonnet-4.5", 200000),
    ModelSpec("anthropic/claude-opus-4.5", "claude-opus-4.5", 200000),
    ModelSpec("anthropic/claude-opus-4.6", "claude-opus-4.6", 1000000),
    ModelSpec("openai/gpt-5.2-pro", "gpt-5.2-pro", 400000),
)


def split_model_ref(raw: str) -> tuple[str, str] | None:
    """Split ``provider/model-id`` on the first slash; None if either half is empty."""
    provider, sep, model_id = raw.partition("/")
    if not sep or not provider or not model_id:
        return None
    return provider, model_id


def ai_gateway_base_url(
    provider: str,
    gateway_account_id: str | None,
    gateway_id: str | None,
    cf_account_id: str | None = None,
) -> str | None:
    """
    Base URL for an AI Gateway upstream.

    With both gateway IDs the request is routed through the named gateway
    (Workers AI needs an extra ``/v1``). Workers AI without a gateway can
    still be reached directly through the account's REST endpoint.
    """
    if gateway_account_id and gateway_id:
        url = f"{AI_GATEWAY_URL}/{gateway_account_id}/{gateway_id}/{provider}"
        if provider == "workers-ai":
            url += "/v1"
        return url
    if provider == "workers-ai" and cf_account_id:
        return WORKERS_AI_URL.format(account_id=cf_account_id)
    return None


def ai_gateway_provider(
    provider: str, model_id: str, base_url: str, api_key: str
) -> tuple[str, dict[str, Any]]:
    """Provider name and entry for a single AI Gateway model."""
    name = f"{AI_GATEWAY_PROVIDER_PREFIX}{provider}"
    entry = {
        "baseUrl": base_url,
        "apiKey": api_key,
        "api": API_ANTHROPIC if provider == "anthropic" else API_OPENAI,
        "models": [
            ModelSpec(
                model_id, model_id, AI_GATEWAY_CONTEXT_WINDOW, AI_GATEWAY_MAX_TOKENS
            ).to_config()
        ],
    }
    return name, entry


def openrouter_provider(api_key: str) -> dict[str, Any]:
    return {
        "baseUrl": OPENROUTER_BASE_URL,
        "apiKey": api_key,
        "api": API_OPENAI,
        "models": [model.to_config() for model in OPENROUTER_MODELS],
    }
