import asyncio
import unittest

import httpx

from ai_gateway.config import FailoverConfig, GatewayRequest, ProviderConfig
from ai_gateway.errors import (
    AllProvidersFailedError,
    ProviderError,
    StreamCallbackError,
    StreamCancelledError,
    UnsupportedProviderError,
)
from ai_gateway.manager import ProviderManager
from ai_gateway.pricing import ModelInfo
from ai_gateway.providers import AnthropicProvider, OpenRouterProvider
from ai_gateway.providers.base import BaseProvider
from ai_gateway.streaming import StreamAssembler, StreamEvent, StreamHandler
from ai_gateway.types import (
    CompletionOptions,
    CompletionResult,
    Message,
    StreamChunk,
    Usage,
    UsageRecord,
)

PRICED = ModelInfo("priced-model", "Priced", "fake", 8192, 1024, 1.0, 2.0)


class FakeProvider(BaseProvider):
    """Scripted adapter: fails, or answers with fixed text and token counts."""

    def __init__(
        self,
        name: str,
        *,
        error: str | None = None,
        text: str = "ok",
        tokens: tuple[int, int] = (1, 2),
        fail_at: int | None = None,
        models: tuple[ModelInfo, ...] = (PRICED,),
        gate: asyncio.Event | None = None,
        valid: bool = True,
    ) -> None:
        self.name = name
        self.models = models
        self.error = error
        self.text = text
        self.tokens = tokens
        self.fail_at = fail_at
        self.gate = gate
        self.valid = valid
        self.calls: list[CompletionOptions] = []
        self.closed = False

    async def complete(self, options: CompletionOptions) -> CompletionResult:
        self.calls.append(options)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            return self._error_result(options, ProviderError(self.name, self.error))
        prompt, completion = self.tokens
        return CompletionResult(
            content=self.text,
            usage=Usage.from_counts(prompt, completion, self.calculate_cost(options.model, prompt, completion)),
            model=options.model,
            provider=self.name,
            finish_reason="stop",
        )

    async def stream(self, options, handler, *, cancel=None) -> None:
        self.calls.append(options)
        assembler = StreamAssembler(provider=self.name, model=options.model, handler=handler, cost=self.calculate_cost)
        try:
            if cancel is not None and cancel.is_set():
                raise StreamCancelledError(self.name)
            if self.error is not None and self.fail_at is None:
                raise ProviderError(self.name, self.error)
            for i, word in enumerate(self.text.split(" ")):
                if self.fail_at is not None and i == self.fail_at:
                    raise ProviderError(self.name, self.error or "connection reset")
                await assembler.feed(StreamEvent(type="text_delta", text=word if i == 0 else " " + word))
            prompt, completion = self.tokens
            await assembler.feed(StreamEvent(type="usage", prompt_tokens=prompt, completion_tokens=completion))
            result = await assembler.finish()
        except StreamCallbackError:
            raise
        except Exception as exc:
            await handler.chunk(StreamChunk(type="error", error=str(exc)))
            await handler.error(exc)
            return
        await handler.complete(result)

    async def validate_config(self) -> bool:
        return self.valid

    async def aclose(self) -> None:
        self.closed = True


def _options(**kwargs) -> CompletionOptions:
    kwargs.setdefault("model", "priced-model")
    kwargs.setdefault("messages", [Message(role="user", content="Summarize the deposition.")])
    return CompletionOptions(**kwargs)


def _manager(*adapters: FakeProvider, failover: bool = True, **kwargs) -> ProviderManager:
    names = [a.name for a in adapters]
    return ProviderManager(
        adapters={a.name: a for a in adapters},
        failover=FailoverConfig(providers=names) if failover else None,
        **kwargs,
    )


class Collector:
    def __init__(self) -> None:
        self.chunks: list[StreamChunk] = []
        self.results: list[CompletionResult] = []
        self.errors: list[BaseException] = []

    def handler(self) -> StreamHandler:
        return StreamHandler(
            on_chunk=self.chunks.append,
            on_complete=self.results.append,
            on_error=self.errors.append,
        )


class ProviderOrderTests(unittest.TestCase):
    def test_without_failover_uses_registration_order(self) -> None:
        manager = _manager(FakeProvider("a"), FakeProvider("b"), failover=False)
        self.assertEqual(manager.get_provider_order(), ["a", "b"])

    def test_without_failover_preferred_is_exclusive(self) -> None:
        manager = _manager(FakeProvider("a"), FakeProvider("b"), failover=False)
        self.assertEqual(manager.get_provider_order("b"), ["b"])
        self.assertEqual(manager.get_provider_order("missing"), ["a", "b"])

    def test_failover_list_with_preferred_promoted(self) -> None:
        manager = ProviderManager(
            adapters={n: FakeProvider(n) for n in ("a", "b", "c")},
            failover=FailoverConfig(providers=["c", "a", "b"]),
        )
        self.assertEqual(manager.get_provider_order(), ["c", "a", "b"])
        self.assertEqual(manager.get_provider_order("b"), ["b", "c", "a"])
        self.assertEqual(manager.get_provider_order("zzz"), ["c", "a", "b"])


class CompleteTests(unittest.TestCase):
    def test_returns_first_success(self) -> None:
        for failures in range(4):
            with self.subTest(failures=failures):
                adapters = [FakeProvider(f"bad{i}", error="boom") for i in range(failures)]
                adapters.append(FakeProvider("good"))
                manager = _manager(*adapters)

                result = asyncio.run(manager.complete(_options()))

                self.assertEqual(result.provider, "good")
                for bad in adapters[:-1]:
                    self.assertFalse(manager.is_provider_available(bad.name))
                    self.assertEqual(len(bad.calls), 1)
                self.assertTrue(manager.is_provider_available("good"))

    def test_preferred_provider_is_tried_first(self) -> None:
        a, b = FakeProvider("a"), FakeProvider("b")
        manager = _manager(a, b)
        result = asyncio.run(manager.complete(_options(), preferred="b"))
        self.assertEqual(result.provider, "b")
        self.assertEqual(a.calls, [])

    def test_usage_recorded_with_cost(self) -> None:
        sunk: list[UsageRecord] = []

        async def sink(record: UsageRecord) -> None:
            sunk.append(record)

        manager = _manager(FakeProvider("a", tokens=(1, 2)), on_usage_record=sink)
        result = asyncio.run(
            manager.complete(_options(user_id="u-17", purpose="summary", metadata={"matter": "42"}))
        )

        self.assertAlmostEqual(result.usage.cost, 1 / 1e6 * 1.0 + 2 / 1e6 * 2.0)
        records = manager.get_usage_records()
        self.assertEqual(len(records), 1)
        self.assertEqual(sunk, records)
        record = records[0]
        self.assertEqual((record.user_id, record.provider, record.model), ("u-17", "a", "priced-model"))
        self.assertEqual(record.total_tokens, 3)
        self.assertEqual(record.purpose, "summary")
        self.assertEqual(record.metadata, {"matter": "42"})

    def test_two_failures_then_priced_success(self) -> None:
        manager = _manager(
            FakeProvider("a", error="boom"),
            FakeProvider("b", error="boom"),
            FakeProvider("c", tokens=(10, 5)),
        )
        result = asyncio.run(manager.complete(_options()))

        self.assertEqual(result.provider, "c")
        self.assertAlmostEqual(result.usage.cost, 0.00002)
        self.assertEqual(len(manager.get_usage_records()), 1)

    def test_anonymous_user_when_unset(self) -> None:
        manager = _manager(FakeProvider("a"))
        asyncio.run(manager.complete(_options()))
        self.assertEqual(manager.get_usage_records()[0].user_id, "anonymous")

    def test_no_providers(self) -> None:
        manager = ProviderManager()
        with self.assertRaises(AllProvidersFailedError) as ctx:
            asyncio.run(manager.complete(_options()))
        self.assertIn("Unknown error", str(ctx.exception))

    def test_exhaustion_reports_last_error_and_skips_unavailable(self) -> None:
        a = FakeProvider("a", error="rate limited")
        b = FakeProvider("b", error="overloaded")
        manager = _manager(a, b)

        with self.assertRaises(AllProvidersFailedError) as ctx:
            asyncio.run(manager.complete(_options()))
        self.assertIn("overloaded", str(ctx.exception))
        self.assertEqual(manager.get_available_providers(), [])
        self.assertEqual(manager.get_usage_records(), [])

        with self.assertRaises(AllProvidersFailedError):
            asyncio.run(manager.complete(_options()))
        self.assertEqual((len(a.calls), len(b.calls)), (1, 1))

    def test_reset_provider_makes_it_eligible_again(self) -> None:
        a = FakeProvider("a", error="boom")
        manager = _manager(a)
        with self.assertRaises(AllProvidersFailedError):
            asyncio.run(manager.complete(_options()))

        a.error = None
        manager.reset_provider("a")
        self.assertTrue(manager.is_provider_available("a"))
        self.assertEqual(asyncio.run(manager.complete(_options())).provider, "a")

    def test_status_records_latency_and_error(self) -> None:
        manager = _manager(FakeProvider("a", error="boom"), FakeProvider("b"))
        asyncio.run(manager.complete(_options()))

        failed = manager.get_provider_status("a")
        self.assertFalse(failed.available)
        self.assertIn("boom", failed.error)
        self.assertIsNotNone(failed.latency_ms)
        ok = manager.get_provider_status("b")
        self.assertTrue(ok.available)
        self.assertIsNone(ok.error)
        self.assertEqual({s.provider for s in manager.get_all_provider_statuses()}, {"a", "b"})

    def test_repeated_success_keeps_status_available(self) -> None:
        manager = _manager(FakeProvider("a"))
        for _ in range(3):
            asyncio.run(manager.complete(_options()))
        self.assertEqual(manager.get_available_providers(), ["a"])
        self.assertEqual(len(manager.get_usage_records()), 3)

    def test_stale_outcome_does_not_overwrite_newer_one(self) -> None:
        gate = asyncio.Event()
        slow = FakeProvider("a", error="timed out", gate=gate)
        manager = _manager(slow)

        async def scenario() -> None:
            first = asyncio.create_task(manager.complete(_options()))
            await asyncio.sleep(0)
            # a later attempt finishes first and succeeds
            slow.gate = None
            slow.error = None
            await manager.complete(_options())
            slow.error = "timed out"
            gate.set()
            with self.assertRaises(AllProvidersFailedError):
                await first

        asyncio.run(scenario())
        self.assertTrue(manager.is_provider_available("a"))

    def test_sink_failure_does_not_fail_call(self) -> None:
        async def sink(record: UsageRecord) -> None:
            raise RuntimeError("database offline")

        manager = _manager(FakeProvider("a"), on_usage_record=sink)
        with self.assertLogs("ai_gateway.ledger", level="ERROR"):
            result = asyncio.run(manager.complete(_options()))
        self.assertEqual(result.content, "ok")
        self.assertEqual(len(manager.get_usage_records()), 1)

    def test_fallback_model_for_provider_without_requested_model(self) -> None:
        other = ModelInfo("other-model", "Other", "fake", 8192, 1024, 0.5, 0.5)
        a = FakeProvider("a", error="down")
        b = FakeProvider("b", models=(other,))
        manager = ProviderManager(
            adapters={"a": a, "b": b},
            failover=FailoverConfig(providers=["a", "b"], fallback_models={"b": "other-model"}),
        )
        result = asyncio.run(manager.complete(_options()))

        self.assertEqual(a.calls[0].model, "priced-model")
        self.assertEqual(b.calls[0].model, "other-model")
        self.assertEqual(result.model, "other-model")
        self.assertEqual(manager.get_usage_records()[0].model, "other-model")


class ConstructionTests(unittest.TestCase):
    def test_bad_configs_mark_provider_unavailable(self) -> None:
        manager = ProviderManager(
            {
                "anthropic": ProviderConfig(api_key=""),
                "cohere": {"apiKey": "k"},
                "openai": {"apiKey": "sk-test"},
            }
        )

        self.assertFalse(manager.is_provider_available("anthropic"))
        self.assertFalse(manager.is_provider_available("cohere"))
        self.assertTrue(manager.is_provider_available("openai"))
        self.assertEqual(manager.get_available_providers(), ["openai"])
        with self.assertRaises(UnsupportedProviderError):
            manager.get_provider("cohere")
        self.assertEqual(manager.get_provider("openai").name, "openai")
        asyncio.run(manager.aclose())

    def test_configured_adapter_end_to_end(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "content": [{"type": "text", "text": "Deposition summary."}],
                    "stop_reason": "end_turn",
                    "usage": {"input_tokens": 100, "output_tokens": 20},
                },
            )

        adapter = AnthropicProvider(api_key="k", transport=httpx.MockTransport(handler), max_retries=0)
        manager = ProviderManager(adapters={"anthropic": adapter})
        request = GatewayRequest.model_validate(
            {
                "messages": [{"role": "user", "content": "Summarize."}],
                "model": "claude-sonnet-4-20250514",
                "maxTokens": 256,
                "provider": "anthropic",
                "purpose": "deposition-summary",
            }
        )
        options, preferred = request.to_options(user_id="u-1")
        result = asyncio.run(manager.complete(options, preferred))

        self.assertEqual(result.content, "Deposition summary.")
        stats = manager.get_usage_stats(user_id="u-1")
        self.assertEqual(stats.request_count, 1)
        self.assertAlmostEqual(stats.total_cost, 100 / 1e6 * 3.0 + 20 / 1e6 * 15.0)
        asyncio.run(manager.aclose())

    def test_aclose_closes_adapters(self) -> None:
        a, b = FakeProvider("a"), FakeProvider("b")
        asyncio.run(_manager(a, b).aclose())
        self.assertTrue(a.closed and b.closed)


class StreamTests(unittest.TestCase):
    def test_single_provider_stream(self) -> None:
        manager = _manager(FakeProvider("a", text="The witness stated"))
        collector = Collector()
        asyncio.run(manager.stream(_options(), collector.handler()))

        self.assertEqual([c.type for c in collector.chunks], ["content", "content", "content", "done"])
        self.assertEqual(collector.results[0].content, "The witness stated")
        self.assertEqual(collector.errors, [])
        self.assertEqual(len(manager.get_usage_records()), 1)

    def test_failover_mid_stream_emits_restart(self) -> None:
        a = FakeProvider("a", text="partial answer here", fail_at=2)
        b = FakeProvider("b", text="full answer")
        manager = _manager(a, b)
        collector = Collector()
        asyncio.run(manager.stream(_options(), collector.handler()))

        types = [c.type for c in collector.chunks]
        self.assertEqual(types, ["content", "content", "restart", "content", "content", "done"])
        self.assertEqual(collector.chunks[2].provider, "b")
        self.assertEqual(collector.results[0].content, "full answer")
        self.assertEqual(collector.errors, [])
        self.assertFalse(manager.is_provider_available("a"))
        self.assertEqual([r.provider for r in manager.get_usage_records()], ["b"])

    def test_failure_before_output_needs_no_restart(self) -> None:
        manager = _manager(FakeProvider("a", error="refused"), FakeProvider("b"))
        collector = Collector()
        asyncio.run(manager.stream(_options(), collector.handler()))

        self.assertEqual([c.type for c in collector.chunks], ["content", "done"])
        self.assertEqual(collector.results[0].provider, "b")

    def test_exhaustion_reports_single_error(self) -> None:
        manager = _manager(FakeProvider("a", error="refused"), FakeProvider("b", error="overloaded"))
        collector = Collector()
        with self.assertRaises(AllProvidersFailedError):
            asyncio.run(manager.stream(_options(), collector.handler()))

        self.assertEqual([c.type for c in collector.chunks], ["error"])
        self.assertIn("overloaded", collector.chunks[0].error)
        self.assertEqual(len(collector.errors), 1)
        self.assertIsInstance(collector.errors[0], AllProvidersFailedError)
        self.assertEqual(collector.results, [])

    def test_failing_caller_callback_is_not_failed_over(self) -> None:
        a, b = FakeProvider("a"), FakeProvider("b")
        manager = _manager(a, b)
        errors: list[BaseException] = []

        def on_chunk(chunk: StreamChunk) -> None:
            raise ValueError("socket closed by client")

        handler = StreamHandler(on_chunk=on_chunk, on_error=errors.append)
        with self.assertRaises(StreamCallbackError) as ctx:
            asyncio.run(manager.stream(_options(), handler))

        self.assertIsInstance(ctx.exception.error, ValueError)
        self.assertEqual(b.calls, [])
        self.assertEqual(errors, [])
        self.assertTrue(manager.is_provider_available("a"))

    def test_upstream_error_in_ok_stream_fails_over(self) -> None:
        body = (
            'data: {"choices": [{"delta": {"content": "Partial"}}]}\n\n'
            'data: {"error": {"message": "upstream provider overloaded"}, '
            '"choices": [{"finish_reason": "error"}]}\n\n'
            "data: [DONE]\n\n"
        ).encode()
        router = OpenRouterProvider(
            api_key="k",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body)),
            max_retries=0,
        )
        backup = FakeProvider("backup", text="Complete answer")
        manager = ProviderManager(
            adapters={"openrouter": router, "backup": backup},
            failover=FailoverConfig(providers=["openrouter", "backup"]),
        )
        collector = Collector()
        asyncio.run(manager.stream(_options(model="openai/gpt-4o"), collector.handler()))

        self.assertEqual([c.type for c in collector.chunks], ["content", "restart", "content", "content", "done"])
        self.assertEqual(collector.results[0].content, "Complete answer")
        self.assertFalse(manager.is_provider_available("openrouter"))
        self.assertIn("upstream provider overloaded", manager.get_provider_status("openrouter").error)
        self.assertEqual([r.provider for r in manager.get_usage_records()], ["backup"])
        asyncio.run(manager.aclose())

    def test_cancel_is_not_failed_over(self) -> None:
        a, b = FakeProvider("a"), FakeProvider("b")
        manager = _manager(a, b)
        collector = Collector()
        cancel = asyncio.Event()
        cancel.set()
        asyncio.run(manager.stream(_options(), collector.handler(), cancel=cancel))

        self.assertEqual(len(collector.errors), 1)
        self.assertIsInstance(collector.errors[0], StreamCancelledError)
        self.assertEqual(b.calls, [])
        self.assertTrue(manager.is_provider_available("a"))
        self.assertEqual(manager.get_usage_records(), [])


class ValidationTests(unittest.TestCase):
    def test_validate_all_providers_updates_status(self) -> None:
        manager = _manager(FakeProvider("a"), FakeProvider("b", valid=False))
        results = asyncio.run(manager.validate_all_providers())

        self.assertEqual(results, {"a": True, "b": False})
        self.assertTrue(manager.is_provider_available("a"))
        status = manager.get_provider_status("b")
        self.assertFalse(status.available)
        self.assertEqual(status.error, "Validation failed")


if __name__ == "__main__":
    unittest.main()
