"""Tests for the two-stage review pipeline with a mocked LLM."""

import asyncio
import json

import pytest

from stet.diff import Hunk
from stet.errors import Cancelled, ParseError, ReviewError, Unreachable, ValidationError
from stet.llm import GenerateOptions
from stet.progress import CollectingSink
from stet.review import CriticConfig, PipelineConfig, PrepareConfig, Prepared, PromptBuilder, ReviewPipeline
from stet.review.critic import CRITIC_SYSTEM_PROMPT
from stet.review.pipeline import DRY_RUN_MESSAGE, keep_alive_for

from conftest import MockLLMClient, finding_json

HUNKS = [
    Hunk("a.go", "@@ -1,2 +1,2 @@\n-x := 1\n+x := 2\n y := 3"),
    Hunk("a.go", "@@ -20,2 +20,3 @@\n a()\n+b()\n c()"),
    Hunk("b.go", "@@ -5 +5 @@\n-return nil\n+return err"),
]


def _file_of(prompt: str) -> str:
    return prompt.split("\n", 1)[0].removeprefix("File: ")


def _line_of(prompt: str) -> int:
    header = next(line for line in prompt.split("\n") if line.startswith("@@"))
    return int(header.split("+", 1)[1].split(",", 1)[0].split(" ", 1)[0])


def one_finding_per_hunk(model, system, prompt):
    return json.dumps([finding_json(_line_of(prompt), f"issue in {_file_of(prompt)} at {_line_of(prompt)}")])


def make_pipeline(client, sink=None, cancel=None, builder=None, **config) -> ReviewPipeline:
    builder = builder or PromptBuilder(PrepareConfig(system_base="SYSTEM"))
    cfg = PipelineConfig(model="review-model", options=GenerateOptions(), **config)
    return ReviewPipeline(client, builder, cfg, sink=sink or CollectingSink(), cancel=cancel)


class CancelOnFirstFinding(CollectingSink):
    def __init__(self, cancel: asyncio.Event):
        super().__init__()
        self.cancel = cancel

    def finding(self, data: dict) -> None:
        super().finding(data)
        self.cancel.set()


class FailingBuilder(PromptBuilder):
    """Fails to prepare hunks of one file."""

    def __init__(self, bad_path: str):
        super().__init__(PrepareConfig(system_base="SYSTEM"))
        self.bad_path = bad_path

    async def build(self, hunk):
        if hunk.file_path == self.bad_path:
            raise OSError("disk on fire")
        return await super().build(hunk)


class GatedClient(MockLLMClient):
    """Each generate call waits for one permit from the test."""

    def __init__(self, respond):
        super().__init__(respond)
        self.permits = asyncio.Semaphore(0)
        self.started = 0

    async def generate(self, model, system, prompt, options):
        self.started += 1
        await self.permits.acquire()
        return await super().generate(model, system, prompt, options)


class CountingBuilder(PromptBuilder):
    def __init__(self):
        super().__init__(PrepareConfig(system_base="SYSTEM"))
        self.built = 0

    async def build(self, hunk):
        self.built += 1
        return await super().build(hunk)


class StatusSink(CollectingSink):
    """Tracks how many hunks were handed to the model but not yet reviewed."""

    def __init__(self):
        super().__init__()
        self.sent = 0
        self.reviewed = 0
        self.max_outstanding = 0

    def hunk_status(self, file_path, status, completed, total):
        if status == "Reviewing":
            self.sent += 1
        else:
            self.reviewed += 1
        self.max_outstanding = max(self.max_outstanding, self.sent - self.reviewed)


MANY_HUNKS = [Hunk(f"f{i}.go", f"@@ -{i + 1} +{i + 1} @@\n-old\n+new") for i in range(20)]


class TestPipelineOrdering:
    @pytest.mark.asyncio
    async def test_findings_in_input_order(self):
        client = MockLLMClient(one_finding_per_hunk, delay=0.01)
        sink = CollectingSink()
        result = await make_pipeline(client, sink=sink, prepare_workers=3, prepare_buffer_size=1).run(HUNKS)

        assert [(f.file, f.line) for f in result.findings] == [("a.go", 1), ("a.go", 20), ("b.go", 5)]
        events = sink.of_type("finding")
        assert [(e["data"]["file"], e["data"]["line"]) for e in events] == [("a.go", 1), ("a.go", 20), ("b.go", 5)]
        assert [_file_of(c["prompt"]) for c in client.calls] == ["a.go", "a.go", "b.go"]

    @pytest.mark.asyncio
    async def test_model_calls_never_overlap(self):
        client = MockLLMClient(one_finding_per_hunk, delay=0.01)
        await make_pipeline(client, prepare_workers=3).run(HUNKS)
        assert client.max_active == 1

    @pytest.mark.asyncio
    async def test_keep_alive_unloads_after_last_hunk(self):
        client = MockLLMClient(one_finding_per_hunk)
        await make_pipeline(client).run(HUNKS)
        assert [c["options"].keep_alive for c in client.calls] == [-1, -1, 0]
        assert keep_alive_for(0, 1) == 0

    @pytest.mark.asyncio
    async def test_prompts_and_context(self):
        client = MockLLMClient(one_finding_per_hunk)
        result = await make_pipeline(client).run(HUNKS[:1])
        call = client.calls[0]
        assert call["model"] == "review-model"
        assert call["system"] == "SYSTEM"
        assert call["prompt"] == f"File: a.go\n\n{HUNKS[0].raw_content}"
        assert result.prompt_context[result.findings[0].id] == HUNKS[0].raw_content

    @pytest.mark.asyncio
    async def test_usage_summed(self):
        client = MockLLMClient(one_finding_per_hunk)
        result = await make_pipeline(client).run(HUNKS)
        assert result.usage.prompt_tokens == 30
        assert result.usage.completion_tokens == 15
        assert result.usage.eval_duration_ns == 3000

    @pytest.mark.asyncio
    async def test_empty_input(self):
        client = MockLLMClient()
        result = await make_pipeline(client).run([])
        assert result.findings == [] and client.calls == []

    @pytest.mark.asyncio
    async def test_cursor_uris_with_repo_root(self, tmp_path):
        client = MockLLMClient(one_finding_per_hunk)
        result = await make_pipeline(client, repo_root=tmp_path).run(HUNKS[:1])
        assert result.findings[0].cursor_uri.endswith("a.go#L1")


class TestPipelineFilters:
    @pytest.mark.asyncio
    async def test_abstention_fp_and_evidence(self):
        def respond(model, system, prompt):
            return json.dumps(
                [
                    finding_json(1, "real bug"),
                    finding_json(1, "low confidence", confidence=0.5),
                    finding_json(2, "Consider adding comments to explain"),
                    finding_json(50, "outside the hunk"),
                ]
            )

        result = await make_pipeline(MockLLMClient(respond)).run(HUNKS[:1])
        assert [f.message for f in result.findings] == ["real bug"]

    @pytest.mark.asyncio
    async def test_nitpicky_skips_fp_kill_list(self):
        client = MockLLMClient(lambda *a: json.dumps([finding_json(1, "Consider adding comments to explain")]))
        result = await make_pipeline(client, nitpicky=True).run(HUNKS[:1])
        assert len(result.findings) == 1

    @pytest.mark.asyncio
    async def test_critic_rejection(self):
        def respond(model, system, prompt):
            if system == CRITIC_SYSTEM_PROMPT:
                return '{"verdict": "yes"}' if "genuine" in prompt else '{"verdict": "no"}'
            return json.dumps([finding_json(1, "genuine defect"), finding_json(2, "imagined defect")])

        client = MockLLMClient(respond)
        result = await make_pipeline(
            client, critic=CriticConfig(model="review-model", shares_review_model=True)
        ).run(HUNKS[:1])

        assert [f.message for f in result.findings] == ["genuine defect"]
        critic_calls = [c for c in client.calls if c["system"] == CRITIC_SYSTEM_PROMPT]
        assert len(critic_calls) == 2
        assert client.max_active == 1


class TestPipelineDryRun:
    @pytest.mark.asyncio
    async def test_one_canned_finding_per_hunk(self):
        sink = CollectingSink()
        result = await make_pipeline(None, sink=sink, dry_run=True).run(HUNKS)

        assert len(result.findings) == 3
        for f, expected_line in zip(result.findings, [1, 20, 5]):
            assert f.message == DRY_RUN_MESSAGE
            assert (f.severity, f.category, f.confidence) == ("info", "maintainability", 1.0)
            assert f.line == expected_line
        ids = [f.id for f in result.findings]
        assert len(set(ids)) == 3
        again = await make_pipeline(None, dry_run=True).run(HUNKS)
        assert [f.id for f in again.findings] == ids
        assert len(sink.of_type("finding")) == 3


class TestPipelineErrors:
    @pytest.mark.asyncio
    async def test_parse_retry_once(self):
        responses = iter(["not json", json.dumps([finding_json(1, "found on retry")])])
        client = MockLLMClient(lambda *a: next(responses))
        result = await make_pipeline(client).run(HUNKS[:1])
        assert [f.message for f in result.findings] == ["found on retry"]
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_parse_failure_after_retry(self):
        client = MockLLMClient(lambda *a: "still not json")
        with pytest.raises(ReviewError) as exc_info:
            await make_pipeline(client).run(HUNKS[:1])
        assert exc_info.value.path == "a.go"
        assert isinstance(exc_info.value.__cause__, ParseError)

    @pytest.mark.asyncio
    async def test_invalid_finding_stops_the_run(self):
        client = MockLLMClient(lambda *a: json.dumps([finding_json(1, "ok"), finding_json(1, "", confidence=1.5)]))
        with pytest.raises(ReviewError) as exc_info:
            await make_pipeline(client).run(HUNKS)
        assert exc_info.value.path == "a.go"
        assert isinstance(exc_info.value.__cause__, ValidationError)
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_generate_error(self):
        class DownClient(MockLLMClient):
            async def generate(self, model, system, prompt, options):
                raise Unreachable("connection refused")

        with pytest.raises(ReviewError) as exc_info:
            await make_pipeline(DownClient()).run(HUNKS)
        assert exc_info.value.path == "a.go"
        assert isinstance(exc_info.value.__cause__, Unreachable)

    @pytest.mark.asyncio
    async def test_prepare_error(self):
        client = MockLLMClient(one_finding_per_hunk)
        with pytest.raises(ReviewError) as exc_info:
            await make_pipeline(client, builder=FailingBuilder("b.go")).run(HUNKS)
        assert exc_info.value.path == "b.go"
        assert isinstance(exc_info.value.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_prepare_captures_error(self):
        prepared = await FailingBuilder("a.go").prepare(0, HUNKS[0])
        assert isinstance(prepared, Prepared)
        assert isinstance(prepared.error, OSError)


class TestPipelineCancellation:
    @pytest.mark.asyncio
    async def test_cancel_after_first_finding(self):
        cancel = asyncio.Event()
        sink = CancelOnFirstFinding(cancel)
        client = MockLLMClient(one_finding_per_hunk, delay=0.01)

        with pytest.raises(Cancelled):
            await make_pipeline(client, sink=sink, cancel=cancel).run(HUNKS)

        assert len(sink.of_type("finding")) == 1
        await asyncio.sleep(0.05)
        assert client.active == 0

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        cancel = asyncio.Event()
        cancel.set()
        client = MockLLMClient()
        with pytest.raises(Cancelled):
            await make_pipeline(client, cancel=cancel).run(HUNKS)
        assert client.calls == []


class TestPipelineBackpressure:
    @pytest.mark.asyncio
    async def test_preparers_stop_ahead_of_slow_model(self):
        client = GatedClient(one_finding_per_hunk)
        builder = CountingBuilder()
        sink = StatusSink()
        pipeline = make_pipeline(client, sink=sink, builder=builder, prepare_workers=2, prepare_buffer_size=1)

        task = asyncio.create_task(pipeline.run(MANY_HUNKS))
        await asyncio.sleep(0.05)

        assert client.started == 1
        # one generating, one queued, a full ready queue and one blocked hunk per preparer
        assert builder.built <= 2 + 2 * 1 + 2 * 2
        assert sink.sent == 2

        for step in range(1, len(MANY_HUNKS) + 1):
            client.permits.release()
            await asyncio.sleep(0.01)
            assert builder.built <= step + 2 + 2 * 1 + 2 * 2

        result = await task
        assert [f.file for f in result.findings] == [h.file_path for h in MANY_HUNKS]
        assert builder.built == len(MANY_HUNKS)

    @pytest.mark.asyncio
    async def test_at_most_one_request_queued_behind_the_model(self):
        client = MockLLMClient(one_finding_per_hunk, delay=0.002)
        sink = StatusSink()
        pipeline = make_pipeline(client, sink=sink, prepare_workers=4, prepare_buffer_size=3)

        result = await pipeline.run(MANY_HUNKS)

        assert len(result.findings) == len(MANY_HUNKS)
        assert sink.max_outstanding == 2
        assert client.max_active == 1
