import json
import os
import sys
import tempfile
import textwrap
import unittest
from pathlib import Path


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from fastapi.testclient import TestClient

from app.config import Settings
from app.main import create_app
from app.secrets import MemorySecrets
from result_cache import MemoryCache


HELLO = textwrap.dedent(
    """
    metadata = {
        "name": "github-hello",
        "match": {"contextType": "github", "context": {"url": {"startsWith": "https://github.com/"}}},
        "cache": 60,
    }

    def run(context, secrets, data_files):
        return [{"type": "text", "content": "hi " + context["url"]}]
    """
)

INTRANET = textwrap.dedent(
    """
    metadata = {
        "name": "intranet-links",
        "match": {"contextType": "generic", "context": {"url": {"startsWith": "https://intranet.example.com/"}}},
    }

    def run(context, secrets, data_files):
        raise RuntimeError("boom")
    """
)


class BrokenCache(MemoryCache):
    def get(self, key):
        raise RuntimeError("cache backend unavailable")


class TestApp(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        (self.root / "github-hello.integration.py").write_text(HELLO, encoding="utf-8")
        (self.root / "intranet-links.integration.py").write_text(INTRANET, encoding="utf-8")
        self.settings = Settings(integrations_dir=self.root, run_timeout_ms=2000)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _client(self, **kwargs) -> TestClient:
        app = create_app(self.settings, secrets=MemorySecrets(), **kwargs)
        client = TestClient(app)
        client.__enter__()
        self.addCleanup(client.__exit__, None, None, None)
        return client

    def test_health(self) -> None:
        res = self._client().get("/health")
        self.assertEqual(res.json(), {"ok": True})
        self.assertIn("X-Req-MS", res.headers)

    def test_context_roundtrip(self) -> None:
        client = self._client()
        res = client.post("/context", json={"type": "github", "url": "https://github.com/acme/widgets"})
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["data"], [{"type": "text", "content": "hi https://github.com/acme/widgets"}])
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["cacheHits"], 0)
        self.assertEqual(body["integrationNames"], ["github-hello"])

        again = client.post("/context", json={"type": "github", "url": "https://github.com/acme/widgets"}).json()
        self.assertEqual(again["cacheHits"], 1)
        self.assertEqual(again["data"], body["data"])

    def test_failures_are_isolated(self) -> None:
        res = self._client().post("/context", json={"type": "generic", "url": "https://intranet.example.com/page"})
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["data"], [{"type": "text", "status": "important", "content": "intranet-links: boom"}])
        self.assertEqual(body["failedCount"], 1)

    def test_invalid_context(self) -> None:
        client = self._client()
        res = client.post("/context", json={"type": "jira", "url": "not-a-url"})
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertEqual(body["error"], "Invalid request body")
        paths = {d["path"] for d in body["details"]}
        self.assertEqual(paths, {"type", "url"})
        url_detail = next(d for d in body["details"] if d["path"] == "url")
        self.assertIn("URL", url_detail["message"])

        res = client.post("/context", json={"url": "https://github.com"})
        self.assertEqual(res.status_code, 400)

        res = client.post("/context", json={"type": "github", "url": "https://github.com", "items": [{"a": 1}]})
        self.assertEqual(res.status_code, 400)

    def test_malformed_json(self) -> None:
        res = self._client().post("/context", content=b"{nope", headers={"content-type": "application/json"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["error"], "Invalid request body")

    def test_body_too_large(self) -> None:
        payload = {"type": "github", "url": "https://github.com", "blob": "x" * (101 * 1024)}
        res = self._client().post("/context", content=json.dumps(payload), headers={"content-type": "application/json"})
        self.assertEqual(res.status_code, 413)

    def test_engine_fault_is_500(self) -> None:
        client = self._client(cache=BrokenCache())
        res = client.post("/context", json={"type": "github", "url": "https://github.com/acme/widgets"})
        self.assertEqual(res.status_code, 500)
        self.assertEqual(res.json(), {"error": "Internal server error"})

    def test_config(self) -> None:
        body = self._client().get("/config").json()
        names = [a["name"] for a in body["adapters"]]
        self.assertEqual(names, ["aws", "github", "generic"])
        github = next(a for a in body["adapters"] if a["name"] == "github")
        self.assertTrue(github["enabled"])
        self.assertEqual(github["urls"], ["https://github.com"])
        self.assertIn("GitHub adapter", github["description"])
        self.assertEqual(body["customDomains"], ["https://intranet.example.com"])
        self.assertIn("timestamp", body)

    def test_custom_domains(self) -> None:
        body = self._client().get("/custom-domains").json()
        self.assertEqual(body["hosts"], ["https://intranet.example.com"])
        self.assertEqual(body["count"], 1)

    def test_diagnostics(self) -> None:
        body = self._client().get("/diagnostics").json()
        self.assertEqual(sorted(i["name"] for i in body["integrations"]), ["github-hello", "intranet-links"])
        self.assertTrue(body["snapshot_hash"].startswith("sha256:"))
        self.assertEqual(body["history"][0]["action"], "startup")

    def test_reload_picks_up_changes_and_clears_cache(self) -> None:
        client = self._client()
        ctx = {"type": "github", "url": "https://github.com/acme/widgets"}
        client.post("/context", json=ctx)
        (self.root / "github-hello.integration.py").write_text(HELLO.replace("hi ", "hello "), encoding="utf-8")
        res = client.post("/integrations/reload")
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.json()["ok"])
        body = client.post("/context", json=ctx).json()
        self.assertEqual(body["cacheHits"], 0)
        self.assertEqual(body["data"][0]["content"], "hello https://github.com/acme/widgets")

    def test_reload_failure(self) -> None:
        client = self._client()
        for path in self.root.iterdir():
            path.unlink()
        res = client.post("/integrations/reload")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "LOADER_FAILED")

    def test_startup_without_directory(self) -> None:
        settings = Settings(integrations_dir=self.root / "absent")
        app = create_app(settings, secrets=MemorySecrets())
        with TestClient(app) as client:
            body = client.post("/context", json={"type": "github", "url": "https://github.com/a"}).json()
        self.assertEqual(body["data"], [])


if __name__ == "__main__":
    unittest.main()
