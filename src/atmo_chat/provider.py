from typing import Protocol, runtime_checkable


@runtime_checkable
class LLMProvider(Protocol):
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> str:
        """Single non-streaming completion; returns the concatenated text blocks."""
        ...


def create_provider(provider_name: str, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from atmo_chat.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from atmo_chat.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
