"""
End-to-end message processing against faked backend and host APIs.

Backend:  https://api.test   (generic REST) / https://gem.test (multimodal chat)
Host:     http://st.test     (avatars, HEAD checks, uploads)
"""

import asyncio
import base64

from fakes import PNG, PNG_B64, FakeAsyncClient, FakeHttpTestCase, FakeResponse, RecordingSleep

from inline_image_bridge.host import CharacterInfo, ChatMessage, MemoryChatStore, SillyTavernHost
from inline_image_bridge.pipeline import (
    STATUS_DISABLED,
    STATUS_NO_TAGS,
    STATUS_NOT_FOUND,
    STATUS_PROCESSED,
    STATUS_SKIPPED,
    BridgeContext,
    StatusBroadcaster,
    process_message,
    regenerate_message,
)
from inline_image_bridge.scanner import ERROR_IMAGE_PATH
from inline_image_bridge.settings import SettingsStore

HOST = "http://st.test"
OPENAI_URL = "https://api.test/v1/images/generations"
GEMINI_URL = "https://gem.test/v1beta/models/nano-banana:generateContent"
UPLOAD_URL = f"{HOST}/api/images/upload"
STORED_PATH = "/user/images/generated/iig_1.png"

CAT_TEXT = 'The image [IMG:GEN:{"prompt":"a cat","style":"anime"}] appears.'


def drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class PipelineTestCase(FakeHttpTestCase):

    def setUp(self):
        super().setUp()
        self.sleep = RecordingSleep()
        self.settings_store = SettingsStore(None)
        self.settings_store.update({
            "endpoint": "https://api.test",
            "apiKey": "sk-test",
            "model": "dall-e-3",
        })
        self.context = BridgeContext(self.settings_store, SillyTavernHost(HOST, {}), sleep=self.sleep)
        FakeAsyncClient.set_route("POST", OPENAI_URL, FakeResponse(200, {"data": [{"b64_json": PNG_B64}]}))
        FakeAsyncClient.set_route("POST", UPLOAD_URL, FakeResponse(200, {"path": STORED_PATH.lstrip("/")}))

    def tearDown(self):
        self.context.close()
        super().tearDown()

    def backend_prompts(self, url=OPENAI_URL):
        return [call["json"]["prompt"] for call in FakeAsyncClient.requests_to("POST", url)]


class TestProcessMessage(PipelineTestCase):

    async def test_anime_cat_scenario(self):
        store = MemoryChatStore([ChatMessage(CAT_TEXT)])
        result = await process_message(self.context, "chat-1", 0, store)

        self.assertEqual(result.status, STATUS_PROCESSED)
        self.assertEqual(self.backend_prompts(), ["[Style: anime] a cat"])
        expected = f"The image [IMG:✓:{STORED_PATH}] appears."
        self.assertEqual(store.messages[0].mes, expected)
        self.assertEqual(result.text, expected)
        self.assertEqual(store.save_count, 1)
        self.assertEqual(self.context.in_flight, set())

        upload = FakeAsyncClient.requests_to("POST", UPLOAD_URL)[0]["json"]
        self.assertEqual(upload["format"], "png")
        self.assertEqual(upload["ch_name"], "generated")
        self.assertTrue(upload["filename"].startswith("iig_"))
        self.assertEqual(base64.b64decode(upload["image"]), PNG)

    async def test_uploads_into_character_folder(self):
        store = MemoryChatStore([ChatMessage(CAT_TEXT, False, "Alice")])
        await process_message(self.context, "chat-1", 0, store, CharacterInfo("Alice", "Alice.png"))
        upload = FakeAsyncClient.requests_to("POST", UPLOAD_URL)[0]["json"]
        self.assertEqual(upload["ch_name"], "Alice")

    async def test_duplicate_trigger_runs_one_batch(self):
        store = MemoryChatStore([ChatMessage(CAT_TEXT)])
        first, second = await asyncio.gather(
            process_message(self.context, "chat-1", 0, store),
            process_message(self.context, "chat-1", 0, store),
        )

        self.assertEqual(sorted([first.status, second.status]), [STATUS_PROCESSED, STATUS_SKIPPED])
        self.assertEqual(len(FakeAsyncClient.requests_to("POST", OPENAI_URL)), 1)
        self.assertEqual(len(FakeAsyncClient.requests_to("POST", UPLOAD_URL)), 1)
        self.assertEqual(store.save_count, 1)

    async def test_same_message_in_other_chat_is_independent(self):
        store_a = MemoryChatStore([ChatMessage(CAT_TEXT)])
        store_b = MemoryChatStore([ChatMessage(CAT_TEXT)])
        results = await asyncio.gather(
            process_message(self.context, "chat-a", 0, store_a),
            process_message(self.context, "chat-b", 0, store_b),
        )
        self.assertEqual([r.status for r in results], [STATUS_PROCESSED, STATUS_PROCESSED])

    async def test_sibling_failure_is_isolated(self):
        def backend(request):
            if "broken" in request["json"]["prompt"]:
                return FakeResponse(500, text="boom")
            return FakeResponse(200, {"data": [{"b64_json": PNG_B64}]})

        FakeAsyncClient.set_route("POST", OPENAI_URL, backend)
        text = ('A [IMG:GEN:{"prompt":"broken"}] B '
                '<img data-iig-instruction=\'{"prompt":"fine"}\' src="[IMG:GEN]"> C '
                '[IMG:GEN:{"prompt":"also fine"}] D')
        store = MemoryChatStore([ChatMessage(text)])
        result = await process_message(self.context, "chat-1", 0, store)

        self.assertEqual(result.status, STATUS_PROCESSED)
        self.assertEqual(
            store.messages[0].mes,
            'A [IMG:ERROR:API Error (500): boom] B '
            f'<img data-iig-instruction=\'{{"prompt":"fine"}}\' src="{STORED_PATH}"> C '
            f'[IMG:✓:{STORED_PATH}] D',
        )
        errors = [o.outcome.error for o in result.outcomes if not o.outcome.ok]
        self.assertEqual(errors, ["API Error (500): boom"])
        self.assertEqual(store.save_count, 1)

    async def test_tagged_failure_points_at_error_image(self):
        FakeAsyncClient.set_route("POST", OPENAI_URL, FakeResponse(400, text="rejected"))
        store = MemoryChatStore([ChatMessage('<img data-iig-instruction=\'{"prompt":"p"}\' src="[IMG:GEN]">')])
        await process_message(self.context, "chat-1", 0, store)
        self.assertIn(f'src="{ERROR_IMAGE_PATH}"', store.messages[0].mes)

    async def test_invalid_configuration_fails_before_network(self):
        self.settings_store.update({"endpoint": "", "apiKey": ""})
        store = MemoryChatStore([ChatMessage(CAT_TEXT)])
        result = await process_message(self.context, "chat-1", 0, store)

        self.assertEqual(result.status, STATUS_PROCESSED)
        self.assertIn("[IMG:ERROR:Settings error: endpoint URL is not set", store.messages[0].mes)
        self.assertEqual(FakeAsyncClient.requests_to("POST", OPENAI_URL), [])

    async def test_retry_progress_is_published(self):
        self.settings_store.update({"maxRetries": 2, "retryDelay": 1000})
        FakeAsyncClient.set_route("POST", OPENAI_URL, [
            FakeResponse(429, text="rate limited"),
            FakeResponse(200, {"data": [{"b64_json": PNG_B64}]}),
        ])
        queue = self.context.events.subscribe()
        store = MemoryChatStore([ChatMessage(CAT_TEXT)])
        await process_message(self.context, "chat-1", 0, store)

        self.assertEqual(self.sleep.delays, [1.0])
        statuses = [event["status"] for event in drain(queue)]
        self.assertEqual(statuses, [
            "Found tags: 1. Generating...",
            "Generating image...",
            "Retrying in 1s...",
            "Generating (retry 1/2)...",
            "Saving...",
            "Image 1/1 ready",
        ])
        self.assertIn(f"[IMG:✓:{STORED_PATH}]", store.messages[0].mes)

    async def test_existing_image_is_left_alone(self):
        FakeAsyncClient.set_route("HEAD", f"{HOST}/user/images/Alice/old.png", FakeResponse(200))
        text = '<img data-iig-instruction=\'{"prompt":"p"}\' src="/user/images/Alice/old.png">'
        store = MemoryChatStore([ChatMessage(text)])
        result = await process_message(self.context, "chat-1", 0, store)

        self.assertEqual(result.status, STATUS_NO_TAGS)
        self.assertEqual(store.messages[0].mes, text)
        self.assertEqual(store.save_count, 0)

    async def test_missing_image_is_regenerated(self):
        text = '<img data-iig-instruction=\'{"prompt":"p"}\' src="/user/images/Alice/gone.png">'
        store = MemoryChatStore([ChatMessage(text)])
        result = await process_message(self.context, "chat-1", 0, store)

        self.assertEqual(result.status, STATUS_PROCESSED)
        self.assertIn(f'src="{STORED_PATH}"', store.messages[0].mes)

    async def test_early_exits(self):
        store = MemoryChatStore([ChatMessage(CAT_TEXT, is_user=True), ChatMessage("plain text")])
        self.assertEqual((await process_message(self.context, "c", 0, store)).status, STATUS_SKIPPED)
        self.assertEqual((await process_message(self.context, "c", 1, store)).status, STATUS_NO_TAGS)
        self.assertEqual((await process_message(self.context, "c", 7, store)).status, STATUS_NOT_FOUND)

        self.settings_store.update({"enabled": False})
        self.assertEqual((await process_message(self.context, "c", 1, store)).status, STATUS_DISABLED)
        self.assertEqual(FakeAsyncClient.calls, [])
        self.assertEqual(self.context.in_flight, set())


class TestReferencesThroughPipeline(PipelineTestCase):

    async def test_gemini_receives_character_avatar(self):
        self.settings_store.update({
            "apiType": "gemini",
            "endpoint": "https://gem.test",
            "model": "nano-banana",
            "sendCharAvatar": True,
        })
        FakeAsyncClient.set_route("GET", f"{HOST}/characters/Alice.png",
                                  FakeResponse(200, content=PNG, headers={"content-type": "image/png"}))
        FakeAsyncClient.set_route("POST", GEMINI_URL, FakeResponse(200, {"candidates": [{"content": {"parts": [
            {"inlineData": {"mimeType": "image/png", "data": PNG_B64}},
        ]}}]}))
        store = MemoryChatStore([ChatMessage(CAT_TEXT, False, "Alice")])
        await process_message(self.context, "chat-1", 0, store, CharacterInfo("Alice", "Alice.png"))

        parts = FakeAsyncClient.requests_to("POST", GEMINI_URL)[0]["json"]["contents"][0]["parts"]
        self.assertEqual(parts[0]["inlineData"]["data"], PNG_B64)
        self.assertTrue(parts[1]["text"].endswith("[Style: anime] a cat"))
        self.assertIn(f"[IMG:✓:{STORED_PATH}]", store.messages[0].mes)

    async def test_generic_rest_collects_no_references(self):
        self.settings_store.update({"sendCharAvatar": True, "sendPreviousImages": True})
        store = MemoryChatStore([
            ChatMessage('<img src="/user/images/Alice/old.png">'),
            ChatMessage(CAT_TEXT, False, "Alice"),
        ])
        await process_message(self.context, "chat-1", 1, store, CharacterInfo("Alice", "Alice.png"))

        self.assertEqual([m for m, _, _ in FakeAsyncClient.calls if m == "GET"], [])
        self.assertNotIn("image", FakeAsyncClient.requests_to("POST", OPENAI_URL)[0]["json"])


class TestRegenerateMessage(PipelineTestCase):

    async def test_replaces_existing_images(self):
        text = ('<img data-iig-instruction=\'{"prompt":"one"}\' src="/user/images/Alice/a.png"> '
                '<img data-iig-instruction=\'{"prompt":"two"}\' src="/user/images/Alice/b.png">')
        store = MemoryChatStore([ChatMessage(text)])
        result = await regenerate_message(self.context, "chat-1", 0, store)

        self.assertEqual(result.status, STATUS_PROCESSED)
        self.assertEqual(self.backend_prompts(), ["one", "two"])
        self.assertEqual(store.messages[0].mes.count(f'src="{STORED_PATH}"'), 2)
        self.assertEqual(FakeAsyncClient.requests_to("HEAD", f"{HOST}/user/images/Alice/a.png"), [])
        self.assertEqual(store.save_count, 1)

    async def test_failure_keeps_current_image(self):
        FakeAsyncClient.set_route("POST", OPENAI_URL, FakeResponse(400, text="nope"))
        text = '<img data-iig-instruction=\'{"prompt":"one"}\' src="/user/images/Alice/a.png">'
        store = MemoryChatStore([ChatMessage(text)])
        result = await regenerate_message(self.context, "chat-1", 0, store)

        self.assertEqual(store.messages[0].mes, text)
        self.assertEqual(result.outcomes[0].outcome.error, "API Error (400): nope")
        self.assertEqual(store.save_count, 1)

    async def test_mixed_formats_with_duplicates_patch_their_own_region(self):
        FakeAsyncClient.set_route("POST", OPENAI_URL, [
            FakeResponse(200, {"data": [{"b64_json": PNG_B64}]}),
            FakeResponse(400, text="nope"),
            FakeResponse(200, {"data": [{"b64_json": PNG_B64}]}),
        ])
        FakeAsyncClient.set_route("POST", UPLOAD_URL, [
            FakeResponse(200, {"path": "/user/images/generated/one.png"}),
            FakeResponse(200, {"path": "/user/images/generated/two.png"}),
        ])
        text = ('<img data-iig-instruction=\'{"prompt":"one"}\' src="/user/images/A/a.png"> X '
                '[IMG:GEN:{"prompt":"x"}] Y [IMG:GEN:{"prompt":"x"}] Z')
        store = MemoryChatStore([ChatMessage(text)])
        result = await regenerate_message(self.context, "chat-1", 0, store)

        self.assertEqual(
            store.messages[0].mes,
            '<img data-iig-instruction=\'{"prompt":"one"}\' src="/user/images/generated/one.png"> X '
            '[IMG:ERROR:API Error (400): nope] Y [IMG:✓:/user/images/generated/two.png] Z',
        )
        self.assertEqual([o.outcome.error for o in result.outcomes], [None, "API Error (400): nope", None])
        self.assertEqual(store.save_count, 1)

    async def test_nothing_to_regenerate(self):
        queue = self.context.events.subscribe()
        store = MemoryChatStore([ChatMessage("no images here")])
        result = await regenerate_message(self.context, "chat-1", 0, store)
        self.assertEqual(result.status, STATUS_NO_TAGS)
        self.assertEqual([e["status"] for e in drain(queue)], ["No tags to regenerate"])

    async def test_shares_in_flight_marker(self):
        self.context.in_flight.add("chat-1:0")
        store = MemoryChatStore([ChatMessage(CAT_TEXT)])
        result = await regenerate_message(self.context, "chat-1", 0, store)
        self.assertEqual(result.status, STATUS_SKIPPED)
        self.assertEqual(FakeAsyncClient.calls, [])


class TestStatusBroadcaster(FakeHttpTestCase):

    async def test_fan_out_and_unsubscribe(self):
        events = StatusBroadcaster(queue_size=2)
        first = events.subscribe()
        second = events.subscribe()
        events.publish(3, "iig-3-0", "Generating image...")
        events.unsubscribe(second)
        events.publish(3, "iig-3-0", "Saving...")
        events.publish(3, "iig-3-0", "Image 1/1 ready")

        self.assertEqual(events.subscriber_count, 1)
        self.assertEqual([e["status"] for e in drain(first)], ["Generating image...", "Saving..."])
        self.assertEqual(drain(second), [{"message_id": 3, "tag_id": "iig-3-0", "status": "Generating image..."}])
