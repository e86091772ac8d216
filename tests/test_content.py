import asyncio
import stat

import pytest

from helpers import open_db
from memcore.ai.tools.content_resolver import ContentResolver
from memcore.ai.tools.context import conversation_scope, current_conversation_id
from memcore.ai.tools.errors import ContentResolveError, InvalidLabelError
from memcore.ai.tools.registry import ToolRegistry
from memcore.ai.tools.tempfile_tools import CreateTempFileTool
from memcore.ai.tools.tempfiles import TempFileStore, sanitize_conversation_id
from memcore.core.paths import PathResolver
from memcore.storage.opstate import OpStateStore


class TestPathResolver:
    def test_resolve(self, tmp_path):
        paths = PathResolver({"kb": str(tmp_path / "kb"), "kb-archive:": str(tmp_path / "old")})
        assert paths.prefixes() == ["kb-archive:", "kb:"]
        assert paths.resolve("kb:notes/a.md") == (tmp_path / "kb" / "notes" / "a.md").resolve()
        assert paths.resolve("kb-archive:x.md") == (tmp_path / "old" / "x.md").resolve()
        assert paths.resolve("kb:") == (tmp_path / "kb").resolve()
        assert paths.resolve("other:x") is None

    def test_escape_rejected(self, tmp_path):
        paths = PathResolver({"kb": str(tmp_path / "kb")})
        assert paths.resolve("kb:../secret.txt") is None


class TestTempFileStore:
    def test_sanitize_conversation_id(self):
        assert sanitize_conversation_id("tg:12/34 x") == "tg_12_34_x"
        assert len(sanitize_conversation_id("c" * 100)) == 64

    def test_create_layout_and_modes(self, tmp_path):
        async def _case():
            async with open_db(tmp_path) as db:
                store = TempFileStore(tmp_path / "tmp", OpStateStore(db))
                path = await store.create("tg:42", "draft", "hello")

                assert path.parent == (tmp_path / "tmp").absolute()
                assert path.name.startswith("tg_42_draft_")
                assert len(path.stem.rsplit("_", 1)[1]) == 8
                assert path.suffix == ".md"
                assert path.read_text(encoding="utf-8") == "hello"
                assert stat.S_IMODE(path.stat().st_mode) == 0o644
                assert await store.lookup("tg:42", "draft") == path
                assert await store.lookup("other", "draft") is None

        asyncio.run(_case())

    def test_invalid_label(self, tmp_path):
        async def _case():
            async with open_db(tmp_path) as db:
                store = TempFileStore(tmp_path / "tmp", OpStateStore(db))
                for label in ("", "-lead", "has space", "x" * 64, "draft\n"):
                    with pytest.raises(InvalidLabelError):
                        await store.create("c", label, "data")
                assert not (tmp_path / "tmp").exists() or list((tmp_path / "tmp").iterdir()) == []
                assert await OpStateStore(db).list("tempfile:c") == {}

        asyncio.run(_case())

    def test_overwrite_removes_previous_file(self, tmp_path):
        async def _case():
            async with open_db(tmp_path) as db:
                store = TempFileStore(tmp_path / "tmp", OpStateStore(db))
                first = await store.create("c", "draft", "v1")
                second = await store.create("c", "draft", "v2")

                assert not first.exists()
                assert second.read_text(encoding="utf-8") == "v2"
                assert await store.labels("c") == {"draft": str(second)}

        asyncio.run(_case())

    def test_failed_mapping_write_rolls_back_file(self, tmp_path):
        class BrokenState(OpStateStore):
            async def set(self, namespace, key, value):
                raise RuntimeError("disk full")

        async def _case():
            async with open_db(tmp_path) as db:
                base = tmp_path / "tmp"
                store = TempFileStore(base, BrokenState(db))
                with pytest.raises(RuntimeError):
                    await store.create("c", "draft", "data")
                assert list(base.iterdir()) == []

        asyncio.run(_case())

    def test_expand_labels_longest_first(self, tmp_path):
        async def _case():
            async with open_db(tmp_path) as db:
                store = TempFileStore(tmp_path / "tmp", OpStateStore(db))
                short = await store.create("c", "draft", "a")
                longer = await store.create("c", "draft2", "b")

                text = "see temp:draft2 and temp:draft, not temp:drafts or temp:missing"
                expanded = await store.expand_labels("c", text)
                assert expanded == f"see {longer} and {short}, not temp:drafts or temp:missing"
                assert await store.expand_labels("nobody", text) == text

        asyncio.run(_case())

    def test_cleanup_removes_files_and_mappings(self, tmp_path):
        async def _case():
            async with open_db(tmp_path) as db:
                store = TempFileStore(tmp_path / "tmp", OpStateStore(db))
                a = await store.create("c", "a", "1")
                b = await store.create("c", "b", "2")
                kept = await store.create("other", "a", "3")
                a.unlink()  # already gone; must not stop the rest

                assert await store.cleanup("c") == 2
                assert not b.exists()
                assert await store.labels("c") == {}
                assert kept.exists()
                assert await store.labels("other") == {"a": str(kept)}

        asyncio.run(_case())


class TestContentResolver:
    def test_temp_label_resolution(self, tmp_path):
        async def _case():
            async with open_db(tmp_path) as db:
                store = TempFileStore(tmp_path / "tmp", OpStateStore(db))
                resolver = ContentResolver(store)
                with conversation_scope("c1"):
                    await store.create(current_conversation_id(), "draft", "X")

                    args = {"body": "temp:draft", "count": 3, "note": "temp:draft please", "empty": "temp:"}
                    await resolver.resolve_args(args)
                    assert args == {"body": "X", "count": 3, "note": "temp:draft please", "empty": "temp:"}

                    with pytest.raises(ContentResolveError, match='unknown temp label "unknown"'):
                        await resolver.resolve_args({"body": "temp:unknown"})

                # Labels are per conversation
                with conversation_scope("c2"):
                    with pytest.raises(ContentResolveError):
                        await resolver.resolve_args({"body": "temp:draft"})

        asyncio.run(_case())

    def test_unreadable_temp_file_is_an_error(self, tmp_path):
        async def _case():
            async with open_db(tmp_path) as db:
                store = TempFileStore(tmp_path / "tmp", OpStateStore(db))
                path = await store.create("default", "gone", "X")
                path.unlink()
                with pytest.raises(ContentResolveError, match="read temp file"):
                    await ContentResolver(store).resolve_args({"body": "temp:gone"})

        asyncio.run(_case())

    def test_path_prefix_resolution_is_soft(self, tmp_path):
        async def _case():
            kb = tmp_path / "kb"
            kb.mkdir()
            (kb / "a.md").write_text("knowledge", encoding="utf-8")
            resolver = ContentResolver(paths=PathResolver({"kb": str(kb)}))

            args = {"doc": "kb:a.md", "missing": "kb:nope.md", "escape": "kb:../x", "plain": "kb"}
            await resolver.resolve_args(args)
            assert args == {"doc": "knowledge", "missing": "kb:nope.md", "escape": "kb:../x", "plain": "kb"}

        asyncio.run(_case())

    def test_registry_resolves_unless_skipped(self, tmp_path):
        async def _case():
            async with open_db(tmp_path) as db:
                store = TempFileStore(tmp_path / "tmp", OpStateStore(db))
                registry = ToolRegistry(ContentResolver(store))
                registry.register(CreateTempFileTool(store))

                result = await registry.execute(
                    "create_temp_file", '{"label": "ref", "content": "temp:ref"}'
                )
                assert result.startswith("Stored 8 characters as temp:ref (default_ref_")
                path = await store.lookup("default", "ref")
                assert path.read_text(encoding="utf-8") == "temp:ref"

        asyncio.run(_case())
