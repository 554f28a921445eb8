import asyncio
import unittest
from types import SimpleNamespace

from atmo_chat.providers.openai_provider import OpenAIProvider, _to_openai_messages


class ToOpenAIMessagesTests(unittest.TestCase):
    def test_system_prompt_becomes_system_message(self) -> None:
        result = _to_openai_messages("You are helpful.", [])
        self.assertEqual([{"role": "system", "content": "You are helpful."}], result)

    def test_empty_system_prompt_is_omitted(self) -> None:
        result = _to_openai_messages("", [{"role": "user", "content": "hello"}])
        self.assertEqual([{"role": "user", "content": "hello"}], result)

    def test_history_order_is_kept(self) -> None:
        result = _to_openai_messages("sys", [
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b"},
            {"role": "user", "content": "c"},
        ])
        self.assertEqual(["system", "user", "assistant", "user"], [m["role"] for m in result])
        self.assertEqual("c", result[-1]["content"])

    def test_non_string_content_is_stringified(self) -> None:
        result = _to_openai_messages("", [{"role": "user", "content": 42}])
        self.assertEqual("42", result[0]["content"])


class _FakeCompletions:
    def __init__(self, response):
        self._response = response
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return self._response


class _FakeClient:
    def __init__(self, response):
        self.chat = SimpleNamespace(completions=_FakeCompletions(response))


class OpenAIProviderTests(unittest.TestCase):
    def _make_provider(self, content: str | None) -> OpenAIProvider:
        response = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        )
        provider = OpenAIProvider.__new__(OpenAIProvider)
        provider._client = _FakeClient(response)
        return provider

    def test_create_message_returns_content(self) -> None:
        provider = self._make_provider('{"conversationalResponse": "ok", "entities": []}')

        result = asyncio.run(
            provider.create_message("gpt", 512, 0.2, "sys", [{"role": "user", "content": "hi"}])
        )

        self.assertEqual('{"conversationalResponse": "ok", "entities": []}', result)
        call = provider._client.chat.completions.calls[0]
        self.assertEqual("gpt", call["model"])
        self.assertEqual("system", call["messages"][0]["role"])
        self.assertEqual(2, len(call["messages"]))

    def test_create_message_handles_empty_content(self) -> None:
        provider = self._make_provider(None)
        result = asyncio.run(provider.create_message("gpt", 512, 0.2, "sys", []))
        self.assertEqual("", result)


if __name__ == "__main__":
    unittest.main()
