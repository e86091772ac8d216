import asyncio
import json
from datetime import timedelta

from helpers import T0, Clock, FakeAIClient, add_session, open_archive
from memcore.ai.router import ModelRouter
from memcore.config import ModelConfig, SummarizerConfig
from memcore.core.types import EndReason
from memcore.services.summarizer import (
    EMPTY_SESSION_TITLE,
    SummarizerWorker,
    build_transcript,
    parse_metadata_response,
)
from memcore.storage.models import ArchivedMessage, ArchivedToolCall

METADATA_JSON = json.dumps(
    {
        "title": "Deploy rollback",
        "tags": ["Deploy", "CI"],
        "one_liner": "Rolled back a failed deploy.",
        "paragraph": "The deploy failed and was rolled back.",
        "detailed": "Longer text.",
        "key_decisions": ["roll back"],
        "participants": ["user", "assistant"],
        "session_type": "operations",
    }
)

QUICK = SummarizerConfig(pause_between_seconds=0, interval_seconds=3600, timeout_seconds=5)


def _router():
    return ModelRouter(
        [
            ModelConfig(name="big", quality=9, cost_tier=3),
            ModelConfig(name="local-small", provider="local", quality=7, cost_tier=0),
        ],
        default_model="big",
    )


class TestBuildTranscript:
    def test_skips_system_messages(self):
        msgs = [
            ArchivedMessage(session_id="s", conversation_id="c", role="system", content="note", timestamp=T0),
            ArchivedMessage(session_id="s", conversation_id="c", role="user", content="hi", timestamp=T0),
        ]
        assert build_transcript(msgs) == "[12:00] user: hi\n"

    def test_truncates_after_byte_cap(self):
        msgs = [
            ArchivedMessage(session_id="s", conversation_id="c", role="user", content="x" * 1000, timestamp=T0)
            for _ in range(20)
        ]
        text = build_transcript(msgs)
        assert text.endswith("\n... (truncated)\n")
        assert text.count("user: ") == 8


class TestParseMetadata:
    def test_plain_json(self):
        parsed = parse_metadata_response(METADATA_JSON, {"archive_search": 2})
        assert parsed.title == "Deploy rollback"
        assert parsed.tags == ["deploy", "ci"]
        assert parsed.metadata.session_type == "operations"
        assert parsed.metadata.key_decisions == ["roll back"]
        assert parsed.metadata.tools_used == {"archive_search": 2}

    def test_fenced_json(self):
        parsed = parse_metadata_response(f"```json\n{METADATA_JSON}\n```")
        assert parsed.title == "Deploy rollback"

    def test_unparseable_reply_becomes_paragraph(self):
        parsed = parse_metadata_response("The session was about deploys.", {"t": 1})
        assert parsed.title == ""
        assert parsed.tags == []
        assert parsed.metadata.paragraph == "The session was about deploys."
        assert parsed.metadata.tools_used == {"t": 1}

    def test_non_object_json(self):
        parsed = parse_metadata_response("[1, 2]")
        assert parsed.metadata.paragraph == "[1, 2]"

    def test_unknown_session_type_is_kept(self):
        parsed = parse_metadata_response(json.dumps({"title": "x", "session_type": "gardening"}))
        assert parsed.metadata.session_type == "gardening"

    def test_mistyped_list_fields_fall_back_to_paragraph(self):
        reply = json.dumps({"title": "t", "tags": "ops, infra", "key_decisions": "none"})
        parsed = parse_metadata_response(reply, {"t": 1})
        assert parsed.title == ""
        assert parsed.tags == []
        assert parsed.metadata.key_decisions == []
        assert parsed.metadata.paragraph == reply
        assert parsed.metadata.tools_used == {"t": 1}

    def test_null_fields_are_empty(self):
        parsed = parse_metadata_response(json.dumps({"title": "t", "tags": None, "participants": None}))
        assert parsed.title == "t"
        assert parsed.tags == []
        assert parsed.metadata.participants == []


class TestSummarizerWorker:
    def test_orphan_recovery_then_backfill(self, tmp_path):
        async def _case():
            clock = Clock(T0 + timedelta(hours=1))
            async with open_archive(tmp_path, clock=clock) as archive:
                orphan = await add_session(
                    archive, T0, None, [("user", "deploy failed", T0), ("assistant", "rolled back", T0)]
                )
                client = FakeAIClient([METADATA_JSON])
                worker = SummarizerWorker(archive, client, _router(), QUICK, clock=clock)

                assert await worker.recover_orphans() == 1
                recovered = await archive.get_session(orphan.id)
                assert recovered.end_reason == EndReason.CRASH_RECOVERY
                assert recovered.ended_at == worker.start_time

                assert await worker.run_once() == 1
                done = await archive.get_session(orphan.id)
                assert done.title == "Deploy rollback"
                assert done.metadata.one_liner == "Rolled back a failed deploy."
                assert await archive.unsummarized_sessions(10) == []

                call = client.calls[0]
                assert call["model"] == "local-small"
                assert "[12:00] user: deploy failed" in call["messages"][0]["content"]

        asyncio.run(_case())

    def test_start_runs_catch_up_scan(self, tmp_path):
        async def _case():
            clock = Clock(T0 + timedelta(hours=1))
            async with open_archive(tmp_path, clock=clock) as archive:
                orphan = await add_session(archive, T0, None, [("user", "hello", T0)])
                worker = SummarizerWorker(archive, FakeAIClient([METADATA_JSON]), _router(), QUICK, clock=clock)

                await worker.start()
                try:
                    for _ in range(100):
                        session = await archive.get_session(orphan.id)
                        if session.metadata is not None:
                            break
                        await asyncio.sleep(0.02)
                    assert await worker.health_check()
                finally:
                    await worker.stop()

                assert session.end_reason == EndReason.CRASH_RECOVERY
                assert session.title == "Deploy rollback"
                assert not await worker.health_check()

        asyncio.run(_case())

    def test_failed_session_stays_eligible(self, tmp_path):
        class FailingClient(FakeAIClient):
            async def chat(self, *args, **kwargs):
                raise ConnectionError("backend unreachable")

        async def _case():
            async with open_archive(tmp_path) as archive:
                session = await add_session(archive, T0, T0 + timedelta(minutes=5), [("user", "hi", T0)])
                worker = SummarizerWorker(archive, FailingClient(), _router(), QUICK)

                assert await worker.run_once() == 1
                assert [s.id for s in await archive.unsummarized_sessions(10)] == [session.id]

        asyncio.run(_case())

    def test_tool_usage_merged(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                session = await add_session(archive, T0, T0 + timedelta(minutes=5), [("user", "hi", T0)])
                await archive.archive_tool_calls(
                    [
                        ArchivedToolCall(id=f"c{i}", session_id=session.id, conversation_id="chat",
                                         tool_name=name, started_at=T0)
                        for i, name in enumerate(["archive_search", "archive_search", "create_temp_file"])
                    ]
                )
                worker = SummarizerWorker(archive, FakeAIClient([METADATA_JSON]), _router(), QUICK)
                await worker.run_once()

                meta = (await archive.get_session(session.id)).metadata
                assert meta.tools_used == {"archive_search": 2, "create_temp_file": 1}

        asyncio.run(_case())

    def test_system_only_session_marked_empty(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                session = await add_session(archive, T0, T0 + timedelta(minutes=5), [("system", "preamble", T0)])
                client = FakeAIClient()
                worker = SummarizerWorker(archive, client, _router(), QUICK)
                await worker.summarize_session(session)

                stored = await archive.get_session(session.id)
                assert stored.title == EMPTY_SESSION_TITLE
                assert stored.metadata.session_type == "empty"
                assert client.calls == []

        asyncio.run(_case())

    def test_idle_sessions_closed_at_last_activity(self, tmp_path):
        async def _case():
            clock = Clock(T0)
            async with open_archive(tmp_path, clock=clock) as archive:
                config = SummarizerConfig(idle_timeout_minutes=30, pause_between_seconds=0)
                worker = SummarizerWorker(archive, FakeAIClient(), _router(), config, clock=clock)
                idle = await add_session(archive, T0, None, [("user", "hi", T0 + timedelta(minutes=1))])

                clock.advance(minutes=20)
                assert await worker.close_idle_sessions() == 0
                clock.advance(minutes=20)
                assert await worker.close_idle_sessions() == 1

                stored = await archive.get_session(idle.id)
                assert stored.end_reason == EndReason.IDLE_TIMEOUT
                assert stored.ended_at == T0 + timedelta(minutes=1)

        asyncio.run(_case())

    def test_stop_interrupts_pause_between_sessions(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                for i in range(3):
                    start = T0 + timedelta(hours=i)
                    await add_session(archive, start, start + timedelta(minutes=5), [("user", f"topic {i}", start)])
                config = SummarizerConfig(pause_between_seconds=30, interval_seconds=3600, timeout_seconds=5)
                worker = SummarizerWorker(archive, FakeAIClient([METADATA_JSON] * 3), _router(), config)

                await worker.start()
                for _ in range(100):
                    if len(await archive.unsummarized_sessions(10)) < 3:
                        break
                    await asyncio.sleep(0.02)

                loop = asyncio.get_running_loop()
                began = loop.time()
                await worker.stop()
                assert loop.time() - began < 5
                assert not await worker.health_check()
                assert len(await archive.unsummarized_sessions(10)) == 2

        asyncio.run(_case())

    def test_timed_out_call_stays_eligible(self, tmp_path):
        class SlowClient(FakeAIClient):
            async def chat(self, *args, **kwargs):
                await asyncio.sleep(10)
                return await super().chat(*args, **kwargs)

        async def _case():
            async with open_archive(tmp_path) as archive:
                session = await add_session(archive, T0, T0 + timedelta(minutes=5), [("user", "hi", T0)])
                config = SummarizerConfig(pause_between_seconds=0, interval_seconds=3600, timeout_seconds=0.05)
                worker = SummarizerWorker(archive, SlowClient([METADATA_JSON]), _router(), config)

                assert await worker.run_once() == 1
                assert [s.id for s in await archive.unsummarized_sessions(10)] == [session.id]

        asyncio.run(_case())
