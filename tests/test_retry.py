import unittest

from fakes import RecordingSleep

from inline_image_bridge.errors import (
    BackendHttpError,
    BackendProtocolError,
    BackendTransportError,
    ConfigurationInvalid,
    is_retryable,
)
from inline_image_bridge.retry import run_with_retry


class FlakyCall:
    """Fails with the queued errors, then returns 'ok'."""

    def __init__(self, *errors, forever=None):
        self.errors = list(errors)
        self.forever = forever
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.forever is not None:
            raise self.forever
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestRetryClassification(unittest.TestCase):

    def test_retryable_markers(self):
        self.assertTrue(is_retryable(BackendHttpError(429, "Too Many Requests")))
        self.assertTrue(is_retryable(BackendHttpError(503, "unavailable")))
        self.assertTrue(is_retryable(BackendTransportError("[OpenAI] Request timeout: read")))
        self.assertTrue(is_retryable(BackendTransportError("[Gemini] network error: refused")))

    def test_fatal_errors(self):
        self.assertFalse(is_retryable(BackendHttpError(400, "bad prompt")))
        self.assertFalse(is_retryable(BackendProtocolError("No image data in response")))
        self.assertFalse(is_retryable(ConfigurationInvalid(["API key is not set"])))


class TestRunWithRetry(unittest.IsolatedAsyncioTestCase):

    async def test_perpetual_429_backoff(self):
        call = FlakyCall(forever=BackendHttpError(429, "rate limited"))
        sleep = RecordingSleep()
        with self.assertRaises(BackendHttpError) as ctx:
            await run_with_retry(call, max_retries=2, base_delay_ms=1000, sleep=sleep)
        self.assertEqual(call.attempts, 3)
        self.assertEqual(sleep.delays, [1.0, 2.0])
        self.assertEqual(ctx.exception.status, 429)

    async def test_non_retryable_propagates_immediately(self):
        call = FlakyCall(forever=BackendProtocolError("No image data in response"))
        sleep = RecordingSleep()
        with self.assertRaises(BackendProtocolError):
            await run_with_retry(call, max_retries=5, sleep=sleep)
        self.assertEqual(call.attempts, 1)
        self.assertEqual(sleep.delays, [])

    async def test_zero_retries_means_single_attempt(self):
        call = FlakyCall(forever=BackendHttpError(502, "bad gateway"))
        sleep = RecordingSleep()
        with self.assertRaises(BackendHttpError):
            await run_with_retry(call, max_retries=0, sleep=sleep)
        self.assertEqual(call.attempts, 1)
        self.assertEqual(sleep.delays, [])

    async def test_recovers_and_reports_progress(self):
        call = FlakyCall(BackendHttpError(503, "busy"))
        sleep = RecordingSleep()
        statuses = []
        result = await run_with_retry(call, max_retries=2, base_delay_ms=500,
                                      on_status=statuses.append, sleep=sleep)
        self.assertEqual(result, "ok")
        self.assertEqual(call.attempts, 2)
        self.assertEqual(sleep.delays, [0.5])
        self.assertEqual(statuses, [
            "Generating image...",
            "Retrying in 0.5s...",
            "Generating (retry 1/2)...",
        ])

    async def test_progress_is_localized(self):
        statuses = []
        await run_with_retry(FlakyCall(), on_status=statuses.append, locale="ru", sleep=RecordingSleep())
        self.assertEqual(statuses, ["Генерация картинки..."])


if __name__ == "__main__":
    unittest.main()
