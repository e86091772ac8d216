import asyncio
from datetime import timedelta

from helpers import T0, Clock, add_session, open_archive
from memcore.memory.episodic import (
    EpisodicProvider,
    estimate_tokens,
    first_sentence,
    format_gap,
    truncate_content,
)
from memcore.memory.prompts import ARCHIVED_HISTORY_FRAMING
from memcore.storage.models import SessionMetadata

NOW = T0 + timedelta(hours=12)


async def _summarized_session(archive, started, ended, index, text="hello"):
    session = await add_session(
        archive,
        started,
        ended,
        [("user", f"{text} {index}", started), ("assistant", f"reply {index}", started + timedelta(minutes=1))],
    )
    meta = SessionMetadata(one_liner=f"one-{index}", paragraph=f"para-{index}")
    await archive.set_session_metadata(session.id, meta, f"title-{index}", [])
    return session


class TestHelpers:
    def test_format_gap(self):
        assert format_gap(timedelta(minutes=45)) == "45m"
        assert format_gap(timedelta(hours=4, minutes=20)) == "4h"
        assert format_gap(timedelta(days=1, hours=3)) == "1 day"
        assert format_gap(timedelta(days=3)) == "3 days"

    def test_truncate_content(self):
        assert truncate_content("a\nb") == "a b"
        assert truncate_content("x" * 250) == "x" * 200 + "..."

    def test_first_sentence(self):
        assert first_sentence("We fixed it. Then we left.") == "We fixed it."
        assert first_sentence("y" * 90) == "y" * 80 + "..."


class TestEpisodicProvider:
    def test_tiers_by_recency(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                for i in range(6):
                    start = NOW - timedelta(minutes=10 * (i + 1))
                    await _summarized_session(archive, start, start + timedelta(minutes=5), i)

                out = await EpisodicProvider(archive, clock=Clock(NOW)).get_context()

                assert out.startswith("### Recent Conversations\n\n" + ARCHIVED_HISTORY_FRAMING)
                assert "**user:** hello 0" in out
                assert "**assistant:** reply 0" in out
                assert "para-0" not in out
                for i in (1, 2, 3):
                    assert f"para-{i}" in out
                    assert f"one-{i}" not in out
                for i in (4, 5):
                    assert f"one-{i}" in out
                    assert f"para-{i}" not in out
                # Chronological: oldest session first
                assert out.index("title-5") < out.index("title-0")
                assert "gap)*" not in out

        asyncio.run(_case())

    def test_gap_note_between_distant_sessions(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                await _summarized_session(
                    archive, NOW - timedelta(hours=6), NOW - timedelta(hours=5), 1, "older"
                )
                await _summarized_session(
                    archive, NOW - timedelta(hours=1), NOW - timedelta(minutes=30), 0, "newer"
                )

                out = await EpisodicProvider(
                    archive, session_gap_minutes=30, clock=Clock(NOW)
                ).get_context()

                assert "*(4h gap)*" in out
                assert out.index("title-1") < out.index("4h gap") < out.index("title-0")

        asyncio.run(_case())

    def test_open_and_empty_sessions_excluded(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                await add_session(archive, NOW - timedelta(hours=2), NOW - timedelta(hours=1),
                                  [("user", "never summarized", NOW - timedelta(hours=2))])
                await add_session(archive, NOW - timedelta(minutes=5), None,
                                  [("user", "still open", NOW - timedelta(minutes=5))])

                assert await EpisodicProvider(archive, clock=Clock(NOW)).get_context() == ""

        asyncio.run(_case())

    def test_output_stays_within_budget(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                for i in range(15):
                    start = NOW - timedelta(minutes=20 * (i + 1))
                    await _summarized_session(archive, start, start + timedelta(minutes=5), i, "z" * 300)

                for budget in (100, 250, 400, 1000):
                    out = await EpisodicProvider(
                        archive, history_tokens=budget, clock=Clock(NOW)
                    ).get_context()
                    assert estimate_tokens(out) <= budget

        asyncio.run(_case())

    def test_excerpt_scans_user_and_assistant_only(self, tmp_path):
        async def _case():
            async with open_archive(tmp_path) as archive:
                start = NOW - timedelta(hours=1)
                session = await add_session(
                    archive,
                    start,
                    start + timedelta(minutes=10),
                    [
                        ("system", "hidden preamble", start),
                        ("user", "line one\nline two", start + timedelta(minutes=1)),
                        ("tool", "tool output", start + timedelta(minutes=2)),
                    ],
                )
                await archive.set_session_summary(session.id, "summary only")

                out = await EpisodicProvider(archive, clock=Clock(NOW)).get_context()
                assert "[2026-02-10T23:01:00Z] **user:** line one line two" in out
                assert "hidden preamble" not in out
                assert "tool output" not in out

        asyncio.run(_case())

    def test_daily_notes(self, tmp_path):
        async def _case():
            daily = tmp_path / "daily"
            daily.mkdir()
            (daily / "2026-02-11.md").write_text("Ship the release\n", encoding="utf-8")
            (daily / "2026-02-10.md").write_text("Plan the release", encoding="utf-8")
            (daily / "2026-02-09.md").write_text("Too old", encoding="utf-8")

            async with open_archive(tmp_path) as archive:
                provider = EpisodicProvider(
                    archive, daily_dir=str(daily), lookback_days=2,
                    clock=Clock(T0 + timedelta(days=1)),
                )
                out = await provider.get_context()

            assert out.startswith("### Daily Notes\n\n**Today (2026-02-11):**\nShip the release")
            assert "**Yesterday (2026-02-10):**\nPlan the release" in out
            assert "Too old" not in out

        asyncio.run(_case())

    def test_archive_failure_keeps_daily_notes(self, tmp_path):
        class BrokenArchive:
            async def list_sessions(self, conversation_id="", limit=20):
                raise RuntimeError("database is locked")

            async def get_session_transcript(self, session_id):
                return []

        async def _case():
            daily = tmp_path / "daily"
            daily.mkdir()
            (daily / "2026-02-10.md").write_text("notes", encoding="utf-8")

            provider = EpisodicProvider(BrokenArchive(), daily_dir=str(daily), clock=Clock(T0))
            out = await provider.get_context()
            assert out == "### Daily Notes\n\n**Today (2026-02-10):**\nnotes"

            assert await EpisodicProvider(BrokenArchive(), clock=Clock(T0)).get_context() == ""

        asyncio.run(_case())

    def test_unknown_timezone_falls_back_to_local(self, tmp_path):
        async def _case():
            daily = tmp_path / "daily"
            daily.mkdir()
            # Noon UTC falls on one of these dates in every local zone
            for day in ("2026-02-10", "2026-02-11"):
                (daily / f"{day}.md").write_text("local notes", encoding="utf-8")

            async with open_archive(tmp_path) as archive:
                provider = EpisodicProvider(
                    archive, timezone="Mars/Olympus_Mons", daily_dir=str(daily), clock=Clock(T0)
                )
                out = await provider.get_context()

            assert out.startswith("### Daily Notes\n\n**Today (2026-02-1")
            assert "local notes" in out

        asyncio.run(_case())
