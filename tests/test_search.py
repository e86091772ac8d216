import asyncio
from datetime import timedelta

from helpers import T0, add_session, open_archive
from memcore.storage.models import SearchOptions, SessionMetadata


def _conversation():
    """Two bursts of talk separated by a 45 minute pause."""
    minute = timedelta(minutes=1)
    return [
        ("user", "morning, any news on the build", T0),
        ("assistant", "the build is green", T0 + 2 * minute),
        ("user", "great, ship the release", T0 + 4 * minute),
        ("user", "the release deployment failed", T0 + 49 * minute),
        ("assistant", "rolling back the deployment", T0 + 51 * minute),
        ("user", "thanks", T0 + 53 * minute),
    ]


class TestSearch:
    def test_context_stops_at_silence_gap(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                await add_session(archive, T0, T0 + timedelta(hours=1), _conversation())
                results = await archive.search(SearchOptions(query="rolling"))

                assert len(results) == 1
                result = results[0]
                assert result.message.content == "rolling back the deployment"
                assert [m.content for m in result.context_before] == ["the release deployment failed"]
                assert [m.content for m in result.context_after] == ["thanks"]

        asyncio.run(_case())

    def test_silence_override_widens_context(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                await add_session(archive, T0, T0 + timedelta(hours=1), _conversation())
                results = await archive.search(SearchOptions(query="rolling", silence_minutes=60))
                assert len(results[0].context) == 6

        asyncio.run(_case())

    def test_context_message_cap(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path, max_context_messages=1) as archive:
                await add_session(archive, T0, T0 + timedelta(hours=1), _conversation())
                results = await archive.search(SearchOptions(query="green"))
                assert [m.content for m in results[0].context] == [
                    "morning, any news on the build",
                    "the build is green",
                    "great, ship the release",
                ]

        asyncio.run(_case())

    def test_no_context(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                await add_session(archive, T0, T0 + timedelta(hours=1), _conversation())
                results = await archive.search(SearchOptions(query="thanks", no_context=True))
                assert len(results) == 1
                assert results[0].context == []

        asyncio.run(_case())

    def test_filters_by_conversation(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                await add_session(archive, T0, T0 + timedelta(hours=1), _conversation(), "a")
                await add_session(archive, T0, T0 + timedelta(hours=1), _conversation(), "b")

                both = await archive.search(SearchOptions(query="thanks"))
                only_b = await archive.search(SearchOptions(query="thanks", conversation_id="b"))
                assert len(both) == 2
                assert [r.message.conversation_id for r in only_b] == ["b"]

        asyncio.run(_case())

    def test_blank_query(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                await add_session(archive, T0, T0 + timedelta(hours=1), _conversation())
                assert await archive.search(SearchOptions(query="   ")) == []

        asyncio.run(_case())

    def test_query_syntax_is_not_interpreted(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                await add_session(archive, T0, T0 + timedelta(hours=1), _conversation())
                results = await archive.search(SearchOptions(query='deployment"'))
                assert len(results) == 2

        asyncio.run(_case())

    def test_like_fallback_without_fts(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path, fts_enabled=False) as archive:
                await add_session(archive, T0, T0 + timedelta(hours=1), _conversation())
                results = await archive.search(SearchOptions(query="release failed"))
                assert [r.message.content for r in results] == ["the release deployment failed"]
                assert len(results[0].context) == 3

        asyncio.run(_case())

    def test_result_carries_session_title(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                session = await add_session(archive, T0, T0 + timedelta(hours=1), _conversation())
                await archive.set_session_metadata(session.id, SessionMetadata(), "Release day", [])
                results = await archive.search(SearchOptions(query="thanks"))
                assert results[0].session_title == "Release day"
                assert results[0].session_started_at == T0

        asyncio.run(_case())
