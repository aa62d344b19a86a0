"""
Decision Core — LLM Provider Factory

Single point of chat-model construction. The LLM oracle imports
`create_llm` from here — nowhere else.

Configuration (in priority order):
  1. Explicit `provider` argument to create_llm()
  2. LLM_PROVIDER environment variable
  3. Auto-detect from available API key env vars

Model aliasing:
  The oracle config uses logical model names ("default", "fast",
  "strong"). The alias table maps them to provider-specific
  identifiers. Provider-specific names pass through unchanged.

Supported providers:
  openai         — OpenAI direct (langchain-openai)
  azure          — Azure OpenAI Service (langchain-openai)
  google         — Google Gemini (langchain-google-genai)

Design rules:
  - Returns langchain BaseChatModel — all downstream code is provider-blind
  - No provider-specific imports at module level (lazy imports only)
"""

import os

from langchain_core.language_models.chat_models import BaseChatModel


MODEL_ALIASES: dict[str, dict[str, str]] = {
    "default": {
        "openai": "gpt-4o-mini",
        "azure": "gpt-4o-mini",
        "google": "gemini-2.0-flash",
    },
    "fast": {
        "openai": "gpt-4o-mini",
        "azure": "gpt-4o-mini",
        "google": "gemini-2.0-flash",
    },
    "strong": {
        "openai": "gpt-4o",
        "azure": "gpt-4o",
        "google": "gemini-2.5-pro",
    },
}


# ═══════════════════════════════════════════════════════════════════════
# Provider detection
# ═══════════════════════════════════════════════════════════════════════

def detect_provider() -> str:
    """
    Detect LLM provider. Priority:
      1. LLM_PROVIDER env var
      2. Auto-detect from API key env vars
    """
    explicit = os.environ.get("LLM_PROVIDER", "").lower().strip()
    if explicit:
        return explicit

    if os.environ.get("AZURE_OPENAI_ENDPOINT") and os.environ.get("AZURE_OPENAI_API_KEY"):
        return "azure"
    if os.environ.get("OPENAI_API_KEY"):
        return "openai"
    if os.environ.get("GOOGLE_API_KEY"):
        return "google"

    raise EnvironmentError(
        "No LLM provider detected. Set one of:\n"
        "  LLM_PROVIDER=openai|azure|google\n"
        "  Or set provider API key env vars:\n"
        "    AZURE_OPENAI_ENDPOINT=... + AZURE_OPENAI_API_KEY=...\n"
        "    OPENAI_API_KEY=...\n"
        "    GOOGLE_API_KEY=..."
    )


def resolve_model(model: str, provider: str) -> str:
    """Resolve a logical alias to a provider-specific model ID."""
    if model == "default":
        env_model = os.environ.get("LLM_DEFAULT_MODEL", "").strip()
        if env_model:
            return env_model
    alias_map = MODEL_ALIASES.get(model, {})
    return alias_map.get(provider, model)


# ═══════════════════════════════════════════════════════════════════════
# Provider factories (lazy imports)
# ═══════════════════════════════════════════════════════════════════════

def _create_openai(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    return ChatOpenAI(model=model, temperature=temperature, **kwargs)


def _create_azure(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import AzureChatOpenAI
    return AzureChatOpenAI(
        azure_deployment=model,
        azure_endpoint=os.environ["AZURE_OPENAI_ENDPOINT"],
        api_key=os.environ.get("AZURE_OPENAI_API_KEY"),
        api_version=os.environ.get("AZURE_OPENAI_VERSION", "2024-12-01-preview"),
        temperature=temperature,
        **kwargs,
    )


def _create_google(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_google_genai import ChatGoogleGenerativeAI
    return ChatGoogleGenerativeAI(model=model, temperature=temperature, **kwargs)


_FACTORIES = {
    "openai": _create_openai,
    "azure":  _create_azure,
    "google": _create_google,
}


# ═══════════════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════════════

def create_llm(
    model: str = "default",
    temperature: float = 0.0,
    provider: str | None = None,
    **kwargs,
) -> BaseChatModel:
    """
    Create a chat model for the reasoning oracle.

    Args:
        model:       Logical alias ("default", "fast", "strong")
                     or provider-specific model name ("gpt-4o").
        temperature: Sampling temperature.
        provider:    Force a provider. If None, auto-detected.
        **kwargs:    Passed through to the underlying LangChain constructor.
    """
    provider = (provider or detect_provider()).lower().strip()
    if provider not in _FACTORIES:
        raise ValueError(
            f"Unknown provider '{provider}'. "
            f"Supported: {', '.join(_FACTORIES.keys())}"
        )

    # Prevents hangs when the connection stalls
    timeout = kwargs.pop("timeout", None)
    if timeout is None:
        env_timeout = os.environ.get("LLM_TIMEOUT_SECONDS", "").strip()
        if env_timeout:
            timeout = int(env_timeout)
    if timeout:
        kwargs["timeout"] = timeout

    return _FACTORIES[provider](resolve_model(model, provider), temperature, **kwargs)
