import asyncio
import json
import unittest

from atmo_chat.errors import ExtractionError
from atmo_chat.extractor import (
    ExtractionContext,
    LlmEntityExtractor,
    extract_json_object,
    parse_extraction,
)
from atmo_chat.store.models import ChatMessage
from atmo_chat.system_prompt import build_system_prompt


def _message(role: str, content: str) -> ChatMessage:
    return ChatMessage(id=f"{role}-{content}", session_id="s1", role=role, content=content, created_at="t")


class _FakeProvider:
    def __init__(self, text: str = "", error: Exception | None = None):
        self._text = text
        self._error = error
        self.calls: list[tuple] = []

    async def create_message(self, model, max_tokens, temperature, system_prompt, messages):
        self.calls.append((model, max_tokens, temperature, system_prompt, messages))
        if self._error is not None:
            raise self._error
        return self._text


class ExtractJsonObjectTests(unittest.TestCase):
    def test_finds_object_inside_prose(self) -> None:
        text = 'Sure! Here you go:\n{"a": 1, "b": {"c": 2}}\nAnything else?'
        self.assertEqual('{"a": 1, "b": {"c": 2}}', extract_json_object(text))

    def test_braces_inside_strings_are_ignored(self) -> None:
        text = '{"code": "if (x) { return \\"}\\"; }", "n": 1} trailing }'
        self.assertEqual({"code": 'if (x) { return "}"; }', "n": 1}, json.loads(extract_json_object(text)))

    def test_missing_or_unbalanced(self) -> None:
        self.assertIsNone(extract_json_object(""))
        self.assertIsNone(extract_json_object("no json here"))
        self.assertIsNone(extract_json_object('{"a": 1'))


class ParseExtractionTests(unittest.TestCase):
    def test_parses_reply_entities_and_next_steps(self) -> None:
        text = json.dumps({
            "conversationalResponse": "Created your project.",
            "entities": [
                {"type": "Project", "data": {"name": "Blog"}},
                {"type": "task", "data": {"name": "Outline", "project": "Blog"}},
            ],
            "nextSteps": [{"action": "create_task", "description": "d", "command": "add a task"}, "junk"],
        })

        extraction = parse_extraction(text)

        self.assertEqual("Created your project.", extraction.reply)
        self.assertEqual([("project", {"name": "Blog"}), ("task", {"name": "Outline", "project": "Blog"})], extraction.entities)
        self.assertEqual(1, len(extraction.next_steps))

    def test_unknown_or_malformed_entities_are_skipped(self) -> None:
        text = json.dumps({
            "conversationalResponse": "ok",
            "entities": [
                {"type": "meeting", "data": {"name": "x"}},
                {"type": "task", "data": "not a dict"},
                "garbage",
                {"type": "goal", "data": {"name": "Run"}},
            ],
        })

        extraction = parse_extraction(text)

        self.assertEqual([("goal", {"name": "Run"})], extraction.entities)
        self.assertEqual([], extraction.next_steps)

    def test_invalid_payloads_raise(self) -> None:
        for text in (
            "plain text",
            "{not json}",
            json.dumps({"entities": []}),
            json.dumps({"conversationalResponse": "hi"}),
            json.dumps({"conversationalResponse": "hi", "entities": {}}),
        ):
            with self.subTest(text=text):
                with self.assertRaises(ExtractionError):
                    parse_extraction(text)


class LlmEntityExtractorTests(unittest.TestCase):
    def test_builds_messages_from_history(self) -> None:
        provider = _FakeProvider(json.dumps({"conversationalResponse": "Hi Sam", "entities": []}))
        extractor = LlmEntityExtractor(provider, model="m", max_tokens=100, temperature=0.3)
        context = ExtractionContext(
            owner_id="u1",
            message="And now?",
            history=[_message("assistant", "Welcome"), _message("user", "Hi"), _message("assistant", "Hello")],
            projects=[{"name": "Blog"}],
            user_name="Sam",
        )

        extraction = asyncio.run(extractor.extract(context))

        self.assertEqual("Hi Sam", extraction.reply)
        model, max_tokens, temperature, system_prompt, messages = provider.calls[0]
        self.assertEqual(("m", 100, 0.3), (model, max_tokens, temperature))
        self.assertIn("Sam", system_prompt)
        self.assertIn('"Blog"', system_prompt)
        self.assertEqual(["user", "assistant", "user"], [m["role"] for m in messages])
        self.assertEqual("And now?", messages[-1]["content"])

    def test_provider_errors_become_extraction_errors(self) -> None:
        extractor = LlmEntityExtractor(_FakeProvider(error=ConnectionError("down")), model="m")

        with self.assertRaises(ExtractionError) as ctx:
            asyncio.run(extractor.extract(ExtractionContext(owner_id="u1", message="hi")))

        self.assertIn("ConnectionError", str(ctx.exception))

    def test_unparseable_output_is_an_extraction_error(self) -> None:
        extractor = LlmEntityExtractor(_FakeProvider("I can't do JSON today"), model="m")
        with self.assertRaises(ExtractionError):
            asyncio.run(extractor.extract(ExtractionContext(owner_id="u1", message="hi")))


class SystemPromptTests(unittest.TestCase):
    def test_without_projects(self) -> None:
        prompt = build_system_prompt()
        self.assertIn("No active projects yet", prompt)
        self.assertIn("conversationalResponse", prompt)


if __name__ == "__main__":
    unittest.main()
