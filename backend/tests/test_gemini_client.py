import base64
import json
import unittest

import httpx

from toon_engine.core.errors import ModelError, QuotaExceededError
from toon_engine.services.gemini.client import GeminiImageClient, extract_image, serialize_parts
from toon_engine.services.gemini.types import ImagePart, TextPart


PNG = b"\x89PNG\r\n\x1a\nresult"


def _image_payload(data=PNG):
    return {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "here is your panel"},
                        {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(data).decode()}},
                    ]
                },
                "finishReason": "STOP",
            }
        ]
    }


class TestExtractImage(unittest.TestCase):
    def test_inline_image(self):
        image = extract_image(_image_payload())
        self.assertEqual(image, ImagePart(data=PNG, mime_type="image/png"))

    def test_blocked_prompt(self):
        with self.assertRaisesRegex(ModelError, "blocked: SAFETY"):
            extract_image({"promptFeedback": {"blockReason": "SAFETY"}})

    def test_safety_finish(self):
        with self.assertRaisesRegex(ModelError, "safety filter"):
            extract_image({"candidates": [{"finishReason": "SAFETY", "content": {"parts": []}}]})

    def test_text_only_answer(self):
        payload = {"candidates": [{"content": {"parts": [{"text": "I can't draw that"}]}}]}
        with self.assertRaisesRegex(ModelError, "text only"):
            extract_image(payload)

    def test_empty_candidate(self):
        self.assertIsNone(extract_image({"candidates": [{"content": {"parts": []}}]}))

    def test_serialize_parts(self):
        out = serialize_parts([TextPart("draw"), ImagePart(data=b"abc", mime_type="image/jpeg")])
        self.assertEqual(out[0], {"text": "draw"})
        self.assertEqual(out[1], {"inlineData": {"mimeType": "image/jpeg", "data": "YWJj"}})


class TestGeminiImageClient(unittest.IsolatedAsyncioTestCase):
    def _client(self, handler):
        return GeminiImageClient(
            api_key="secret",
            base_url="https://gemini.test/v1beta/",
            model="image-model",
            timeout_s=60,
            transport=httpx.MockTransport(handler),
        )

    async def test_generate_posts_parts_and_returns_image(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_image_payload())

        client = self._client(handler)
        try:
            image = await client.generate([TextPart("draw"), ImagePart(data=b"src")], 0.4)
        finally:
            await client.aclose()

        self.assertEqual(image.data, PNG)
        self.assertEqual(seen["url"].path, "/v1beta/models/image-model:generateContent")
        self.assertEqual(seen["url"].params["key"], "secret")
        self.assertEqual(seen["body"]["generationConfig"]["temperature"], 0.4)
        self.assertEqual(seen["body"]["generationConfig"]["responseModalities"], ["TEXT", "IMAGE"])
        self.assertEqual(len(seen["body"]["contents"][0]["parts"]), 2)

    async def test_rate_limit_is_a_quota_error(self):
        client = self._client(lambda request: httpx.Response(429, json={"error": {"status": "RESOURCE_EXHAUSTED"}}))
        try:
            with self.assertRaises(QuotaExceededError):
                await client.generate([TextPart("draw")], 0.5)
        finally:
            await client.aclose()

    async def test_resource_exhausted_body_is_a_quota_error(self):
        client = self._client(lambda request: httpx.Response(400, text='{"error": "RESOURCE_EXHAUSTED"}'))
        try:
            with self.assertRaises(QuotaExceededError):
                await client.generate([TextPart("draw")], 0.5)
        finally:
            await client.aclose()

    async def test_server_error(self):
        client = self._client(lambda request: httpx.Response(500, text="boom"))
        try:
            with self.assertRaisesRegex(ModelError, "Gemini 500"):
                await client.generate([TextPart("draw")], 0.5)
        finally:
            await client.aclose()

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = self._client(handler)
        try:
            with self.assertRaisesRegex(ModelError, r"timeout \(60s\)"):
                await client.generate([TextPart("draw")], 0.5)
        finally:
            await client.aclose()


if __name__ == "__main__":
    unittest.main()
