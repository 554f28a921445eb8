import asyncio
import shutil
import unittest
from pathlib import Path
from uuid import uuid4

import httpx

from atmo_chat.api import create_app
from atmo_chat.app_config import parse_app_config
from atmo_chat.bootstrap import build_runtime
from atmo_chat.client import ClientSessionCache, HttpSessionApi, MemoryCacheStorage
from atmo_chat.errors import AuthError, ChatCoreError, ConflictError, ExtractionError, NotFoundError
from atmo_chat.extractor import Extraction
from tests.test_gateway import FakeExtractor


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class HttpSessionApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        config = parse_app_config({"DatabasePath": str(self._tmp_dir / "workspace.db")}, environ={})
        self._extractor = FakeExtractor(Extraction(reply="Done."))
        self._runtime = build_runtime(config, self._extractor)
        self._app = create_app(self._runtime)
        self._token = self._runtime.authenticator.issue_token("u1")

    def tearDown(self) -> None:
        self._runtime.store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _api(self, token: str | None = None) -> HttpSessionApi:
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=self._app), base_url="http://atmo.test")
        return HttpSessionApi("http://atmo.test", token or self._token, client=client)

    def test_session_calls(self) -> None:
        async def run():
            api = self._api()
            try:
                self.assertIsNone(await api.get_active_session())
                first = await api.get_or_create_active_session()
                second = await api.create_new_session()
                archived = await api.list_archived_sessions()
                self.assertEqual([first.id], [s.id for s in archived])

                renamed = await api.set_session_title(second.id, "Errands")
                self.assertEqual("Errands", renamed.title)

                activated = await api.activate_archived_session(first.id)
                self.assertEqual(first.id, activated.id)
                self.assertEqual(first.id, (await api.get_active_session()).id)

                self.assertIsNone(await api.delete_session(second.id))
                self.assertEqual([], await api.list_archived_sessions())
            finally:
                await api.close()

        asyncio.run(run())

    def test_errors_map_to_typed_exceptions(self) -> None:
        async def run():
            api = self._api()
            bad = self._api("not-a-token")
            try:
                with self.assertRaises(NotFoundError):
                    await api.load_messages("missing")
                with self.assertRaises(AuthError):
                    await bad.get_active_session()

                first = await api.get_or_create_active_session()
                await api.create_new_session()
                with self.assertRaises(ConflictError):
                    await api.set_session_title(first.id, "late")
            finally:
                await api.close()
                await bad.close()

        asyncio.run(run())

    def test_submit_message_and_hydrate_cache(self) -> None:
        async def run():
            api = self._api()
            try:
                result = await api.submit_message("remind me to water plants", "c1")
                self.assertEqual("Done.", result.reply)

                cache = ClientSessionCache(api, MemoryCacheStorage(), "u1")
                session = await cache.initialize()
                self.assertEqual(result.session_id, session.id)
                self.assertEqual(
                    ["remind me to water plants", "Done."],
                    [m.content for m in cache.messages],
                )

                self._extractor.error = ExtractionError("no JSON")
                with self.assertRaises(ExtractionError):
                    await api.submit_message("again", "c2")
            finally:
                await api.close()

        asyncio.run(run())


class MalformedResponseTests(unittest.TestCase):
    def _api(self, responses: dict[str, httpx.Response]) -> HttpSessionApi:
        transport = httpx.MockTransport(lambda request: responses[request.url.path])
        client = httpx.AsyncClient(transport=transport, base_url="http://atmo.test")
        return HttpSessionApi("http://atmo.test", "token", client=client)

    def test_cache_records_incomplete_session_payload(self) -> None:
        api = self._api({"/sessions/active": httpx.Response(200, json={"id": "s1"})})
        cache = ClientSessionCache(api, MemoryCacheStorage(), "u1")

        async def run():
            try:
                return await cache.refresh_active_session()
            finally:
                await api.close()

        self.assertIsNone(asyncio.run(run()))
        self.assertIsInstance(cache.last_error, ChatCoreError)
        self.assertIn("Malformed response", str(cache.last_error))
        self.assertIsNone(cache.active_session)

    def test_unparseable_bodies_raise_typed_errors(self) -> None:
        api = self._api(
            {
                "/sessions/archived": httpx.Response(200, text="<html>upstream proxy</html>"),
                "/sessions/s1/messages": httpx.Response(200, json={"not": "a list"}),
                "/sessions": httpx.Response(201, json=["s1"]),
            }
        )

        async def run():
            try:
                with self.assertRaises(ChatCoreError):
                    await api.list_archived_sessions()
                with self.assertRaises(ChatCoreError):
                    await api.load_messages("s1")
                with self.assertRaises(ChatCoreError):
                    await api.create_new_session()
            finally:
                await api.close()

        asyncio.run(run())


if __name__ == "__main__":
    unittest.main()
