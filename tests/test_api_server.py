import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

from docchat.api_server import create_app
from docchat.config import Settings
from docchat.llm_gateway import ProviderReply


class _StubProvider:
    model_name = "gpt-3.5-turbo"

    def __init__(self, replies=None, error: BaseException | None = None):
        self.replies = list(replies or [])
        self.error = error
        self.calls = []

    async def complete(self, messages, *, max_tokens, temperature):
        self.calls.append({"messages": list(messages), "max_tokens": max_tokens, "temperature": temperature})
        if self.error is not None:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return ProviderReply(text="Stub answer", input_tokens=90, output_tokens=3, total_tokens=93)


async def _no_sleep(_delay):
    return None


class _ApiTestCase(unittest.TestCase):
    settings_overrides: dict = {}

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.upload_dir = self.root / "uploads"
        self.provider = _StubProvider()
        self.app = self._make_app(provider=self.provider)
        self.client = TestClient(self.app)

    def tearDown(self):
        self.client.close()
        self.app.state.docchat.reset()
        self.tmp.cleanup()

    def _make_app(self, provider=None, **overrides):
        values = {
            "upload_dir": self.upload_dir,
            "metrics_dir": self.root / "logs",
            "openai_api_key": None,
            **self.settings_overrides,
            **overrides,
        }
        return create_app(Settings(**values), provider=provider, sleep=_no_sleep)

    def _upload(self, name="hello.txt", content=b"Hello\nWorld", mime="text/plain", user="u1", client=None):
        client = client or self.client
        return client.post(
            "/files/upload",
            data={"userId": user},
            files={"file": (name, content, mime)},
        )

    def assertErrorEnvelope(self, response, status: int, code: str):
        self.assertEqual(response.status_code, status, response.text)
        body = response.json()
        self.assertEqual(body["code"], code)
        self.assertTrue(body["error"])
        self.assertIn("T", body["timestamp"])


class TestFileRoutes(_ApiTestCase):
    def test_upload_text_file(self):
        response = self._upload()
        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertTrue(body["success"])
        file = body["file"]
        self.assertEqual(file["filename"], "hello.txt")
        self.assertEqual(file["mimeType"], "text/plain")
        self.assertEqual(file["summary"], "Hello World")
        self.assertEqual(file["tokenCount"], 3)
        self.assertEqual(file["fileSize"], 11)
        self.assertIn("uploadedAt", file)

        stored = list(self.upload_dir.iterdir())
        self.assertEqual(len(stored), 1)
        self.assertTrue(stored[0].name.startswith("hello-"))
        self.assertEqual(stored[0].suffix, ".txt")

    def test_upload_requires_user_id(self):
        response = self.client.post("/files/upload", files={"file": ("a.txt", b"x", "text/plain")})
        self.assertErrorEnvelope(response, 400, "MISSING_USER_ID")

    def test_upload_requires_file(self):
        response = self.client.post("/files/upload", data={"userId": "u1"})
        self.assertErrorEnvelope(response, 400, "NO_FILE")

    def test_upload_rejects_disallowed_type(self):
        response = self._upload(name="paper.pdf", content=b"%PDF", mime="application/pdf")
        self.assertErrorEnvelope(response, 400, "INVALID_FILE_TYPE")
        self.assertFalse(self.upload_dir.exists() and any(self.upload_dir.iterdir()))

    def test_upload_rejects_oversized_file(self):
        app = self._make_app(provider=self.provider, max_upload_bytes=4)
        with TestClient(app) as client:
            response = self._upload(content=b"too many bytes", client=client)
        self.assertErrorEnvelope(response, 413, "FILE_TOO_LARGE")
        self.assertEqual(list(self.upload_dir.iterdir()), [])

    def test_upload_reports_extraction_failure(self):
        response = self._upload(name="bad.csv", content=b"a,b\n1,2,3\n", mime="text/csv")
        self.assertErrorEnvelope(response, 422, "EXTRACTION_FAILED")
        self.assertEqual(list(self.upload_dir.iterdir()), [])

    def test_upload_multiple_isolates_failures(self):
        response = self.client.post(
            "/files/upload-multiple",
            data={"userId": "u1"},
            files=[
                ("files", ("good.txt", b"first line\nsecond line", "text/plain")),
                ("files", ("paper.pdf", b"%PDF", "application/pdf")),
                ("files", ("bad.csv", b"a,b\n1,2,3\n", "text/csv")),
                ("files", ("table.csv", b"name,qty\napple,3\n", "text/csv")),
            ],
        )
        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual([f["filename"] for f in body["uploadedFiles"]], ["good.txt", "table.csv"])
        self.assertEqual([e["filename"] for e in body["errors"]], ["paper.pdf", "bad.csv"])
        self.assertEqual(body["uploadedFiles"][1]["summary"], "name: apple, qty: 3")

        listing = self.client.get("/files/list", params={"userId": "u1"}).json()
        self.assertEqual(len(listing["files"]), 2)

    def test_upload_multiple_all_failed_is_not_success(self):
        response = self.client.post(
            "/files/upload-multiple",
            data={"userId": "u1"},
            files=[("files", ("paper.pdf", b"%PDF", "application/pdf"))],
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["success"])

    def test_upload_multiple_caps_file_count(self):
        app = self._make_app(provider=self.provider, max_files_per_upload=2)
        with TestClient(app) as client:
            response = client.post(
                "/files/upload-multiple",
                data={"userId": "u1"},
                files=[("files", (f"f{i}.txt", b"x", "text/plain")) for i in range(3)],
            )
        self.assertErrorEnvelope(response, 400, "TOO_MANY_FILES")

    def test_list_get_delete_cycle(self):
        file_id = self._upload().json()["file"]["id"]

        listing = self.client.get("/files/list", params={"userId": "u1"}).json()
        self.assertEqual([f["id"] for f in listing["files"]], [file_id])
        self.assertNotIn("extractedText", listing["files"][0])

        detail = self.client.get(f"/files/{file_id}", params={"userId": "u1"}).json()
        self.assertEqual(detail["file"]["extractedText"], "Hello\nWorld")

        other_owner = self.client.get(f"/files/{file_id}", params={"userId": "u2"})
        self.assertErrorEnvelope(other_owner, 404, "FILE_NOT_FOUND")

        deleted = self.client.delete(f"/files/{file_id}", params={"userId": "u1"})
        self.assertEqual(deleted.status_code, 200)
        self.assertTrue(deleted.json()["success"])
        self.assertEqual(list(self.upload_dir.iterdir()), [])

        again = self.client.delete(f"/files/{file_id}", params={"userId": "u1"})
        self.assertErrorEnvelope(again, 404, "FILE_NOT_FOUND")

    def test_same_name_uploads_in_one_millisecond_keep_separate_bytes(self):
        with patch("docchat.storage_provider.time.time", return_value=1_700_000_000.0):
            alice = self._upload(name="report.txt", content=b"alice data", user="alice")
            bob = self._upload(name="report.txt", content=b"bob data", user="bob")
        self.assertEqual(len(list(self.upload_dir.iterdir())), 2)

        alice_id = alice.json()["file"]["id"]
        self.assertEqual(self.client.delete(f"/files/{alice_id}", params={"userId": "alice"}).status_code, 200)

        remaining = list(self.upload_dir.iterdir())
        self.assertEqual(len(remaining), 1)
        self.assertEqual(remaining[0].read_bytes(), b"bob data")
        bob_id = bob.json()["file"]["id"]
        detail = self.client.get(f"/files/{bob_id}", params={"userId": "bob"}).json()
        self.assertEqual(detail["file"]["extractedText"], "bob data")

    def test_list_requires_user_id(self):
        self.assertErrorEnvelope(self.client.get("/files/list"), 400, "MISSING_USER_ID")

    def test_list_for_unknown_user_is_empty(self):
        body = self.client.get("/files/list", params={"userId": "ghost"}).json()
        self.assertEqual(body, {"success": True, "files": []})


class TestChatRoute(_ApiTestCase):
    def test_chat_uses_uploaded_file_summary_as_context(self):
        self._upload()
        response = self.client.post("/chat", json={"userId": "u1", "prompt": "What does it say?"})

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["response"], "Stub answer")
        self.assertEqual(body["tokensUsed"], 93)
        self.assertEqual(body["filesReferenced"], ["hello.txt"])
        self.assertTrue(body["success"])

        system_message = self.provider.calls[0]["messages"][0]
        self.assertIn("Summary: Hello World", system_message.content)
        self.assertEqual(self.provider.calls[0]["max_tokens"], 1000)
        self.assertEqual(self.provider.calls[0]["temperature"], 0.7)

    def test_chat_forwards_generation_parameters(self):
        self.client.post("/chat", json={"userId": "u1", "prompt": "hi", "maxTokens": 64, "temperature": 0.1})
        self.assertEqual(self.provider.calls[0]["max_tokens"], 64)
        self.assertEqual(self.provider.calls[0]["temperature"], 0.1)

    def test_chat_without_files_uses_sentinel_context(self):
        response = self.client.post("/chat", json={"userId": "fresh", "prompt": "hi"})
        self.assertEqual(response.json()["filesReferenced"], [])
        self.assertIn("No files have been uploaded yet.", self.provider.calls[0]["messages"][0].content)

    def test_chat_validation_codes(self):
        self.assertErrorEnvelope(self.client.post("/chat", json={"prompt": "hi"}), 400, "MISSING_USER_ID")
        self.assertErrorEnvelope(self.client.post("/chat", json={"userId": "u1"}), 400, "MISSING_PROMPT")
        self.assertErrorEnvelope(self.client.post("/chat", json={"userId": "u1", "prompt": "   "}), 400, "MISSING_PROMPT")
        self.assertErrorEnvelope(self.client.post("/chat", json={"userId": "u1", "prompt": 42}), 400, "MISSING_PROMPT")
        self.assertErrorEnvelope(
            self.client.post("/chat", json={"userId": "u1", "prompt": "hi", "maxTokens": "lots"}),
            400,
            "INVALID_REQUEST",
        )
        self.assertEqual(self.provider.calls, [])

    def test_chat_rate_limit(self):
        app = self._make_app(provider=self.provider, rate_limit_requests=2)
        with TestClient(app) as client:
            codes = [client.post("/chat", json={"userId": "u1", "prompt": "hi"}).status_code for _ in range(3)]
            other = client.post("/chat", json={"userId": "u2", "prompt": "hi"})
            limited = client.post("/chat", json={"userId": "u1", "prompt": "hi"})
        self.assertEqual(codes, [200, 200, 429])
        self.assertEqual(other.status_code, 200)
        self.assertErrorEnvelope(limited, 429, "RATE_LIMIT_EXCEEDED")
        self.assertEqual(len(self.provider.calls), 3)

    def test_chat_token_limit(self):
        app = self._make_app(provider=self.provider, max_tokens_per_request=20)
        with TestClient(app) as client:
            response = client.post("/chat", json={"userId": "u1", "prompt": "hi"})
        self.assertErrorEnvelope(response, 400, "TOKEN_LIMIT_EXCEEDED")
        self.assertEqual(self.provider.calls, [])

    def test_chat_without_credential_is_config_error(self):
        app = self._make_app(provider=None, openai_api_key=None)
        with TestClient(app) as client:
            response = client.post("/chat", json={"userId": "u1", "prompt": "hi"})
        self.assertErrorEnvelope(response, 500, "OPENAI_CONFIG_ERROR")

    def test_chat_provider_failure_after_retries(self):
        failing = _StubProvider(error=RuntimeError("provider down"))
        app = self._make_app(provider=failing)
        with TestClient(app) as client:
            response = client.post("/chat", json={"userId": "u1", "prompt": "hi"})
        self.assertErrorEnvelope(response, 502, "LLM_CALL_FAILED")
        self.assertIn("provider down", response.json()["error"])
        self.assertEqual(len(failing.calls), 3)

    def test_metrics_track_chat_tokens(self):
        self.client.post("/chat", json={"userId": "u1", "prompt": "hi"})
        self.client.post("/chat", json={"prompt": "missing user"})
        summary = self.client.get("/metrics").json()
        self.assertEqual(summary["total_requests"], 1)
        self.assertEqual(summary["tokens"]["total_tokens_used"], 93)
        self.assertEqual(summary["errors"]["count"], 0)
        log_path = self.app.state.docchat.metrics.log_path
        self.assertEqual(len(log_path.read_text(encoding="utf-8").splitlines()), 1)

    def test_metrics_count_failed_chats_by_code(self):
        app = self._make_app(provider=_StubProvider(error=RuntimeError("provider down")))
        with TestClient(app) as client:
            client.post("/chat", json={"userId": "u1", "prompt": "hi"})
            summary = client.get("/metrics").json()
        self.assertEqual(summary["total_requests"], 1)
        self.assertEqual(summary["errors"], {"count": 1, "by_code": {"LLM_CALL_FAILED": 1}})
        self.assertEqual(summary["tokens"]["total_tokens_used"], 0)
        self.assertGreater(summary["memory_rss_mb"], 0)

    def test_health(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})


if __name__ == "__main__":
    unittest.main()
