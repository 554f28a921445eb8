import openai
from loguru import logger
from tenacity import retry

from atmo_chat.providers.common import default_retry_kwargs


def _to_openai_messages(system_prompt: str, messages: list[dict]) -> list[dict]:
    out: list[dict] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    for msg in messages:
        content = msg.get("content", "")
        out.append({"role": msg["role"], "content": content if isinstance(content, str) else str(content)})
    return out


class OpenAIProvider:
    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key)

    @retry(**default_retry_kwargs((
        openai.RateLimitError,
        openai.APIConnectionError,
        openai.APITimeoutError,
    )))
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> str:
        oai_messages = _to_openai_messages(system_prompt, messages)
        logger.debug(f"API request: model={model}, messages={len(oai_messages)}")
        response = await self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
        )
        text = response.choices[0].message.content or ""
        logger.debug(f"API response: finish_reason={response.choices[0].finish_reason}, len={len(text)}")
        return text
