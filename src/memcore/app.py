"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from pathlib import Path

from memcore.ai.client import AIClient, AnthropicClient
from memcore.ai.handler import AgentLoop
from memcore.ai.router import ModelRouter
from memcore.ai.tools.archive_tools import register_archive_tools
from memcore.ai.tools.capability import build_capability_manifest
from memcore.ai.tools.content_resolver import ContentResolver
from memcore.ai.tools.registry import ToolRegistry
from memcore.ai.tools.tempfile_tools import CreateTempFileTool
from memcore.ai.tools.tempfiles import TempFileStore
from memcore.config import AppConfig
from memcore.core.paths import PathResolver
from memcore.core.session import SessionManager
from memcore.log import get_logger
from memcore.memory.archive_context import ArchiveContextProvider
from memcore.memory.episodic import EpisodicProvider
from memcore.services.service_manager import ServiceManager
from memcore.services.summarizer import SummarizerWorker
from memcore.storage.archive_repo import ArchiveStore
from memcore.storage.database import Database
from memcore.storage.opstate import OpStateStore

logger = get_logger(__name__)


class MemcoreApp:
    """Top-level application orchestrator."""

    def __init__(self, config: AppConfig, ai_client: AIClient | None = None):
        self.config = config
        self.db = Database(config.storage.db_path, fts_enabled=config.storage.fts_enabled)
        self.archive = ArchiveStore(
            self.db,
            silence_minutes=config.archive.silence_minutes,
            max_context_messages=config.archive.max_context_messages,
            max_context_minutes=config.archive.max_context_minutes,
        )
        self.opstate = OpStateStore(self.db)
        self.sessions = SessionManager(self.archive)
        self.paths = PathResolver(config.paths)
        self.temp_files = TempFileStore(Path(config.tempfiles.base_dir), self.opstate)
        self.router = ModelRouter(config.models, config.default_model)
        self.ai_client = ai_client or self._create_ai_client()

        self.tool_registry = ToolRegistry(ContentResolver(self.temp_files, self.paths))
        register_archive_tools(self.tool_registry, self.archive)
        self.tool_registry.register(CreateTempFileTool(self.temp_files))

        self.episodic = EpisodicProvider(
            self.archive,
            timezone=config.timezone,
            daily_dir=config.episodic.daily_dir,
            lookback_days=config.episodic.lookback_days,
            history_tokens=config.episodic.history_tokens,
            session_gap_minutes=config.episodic.session_gap_minutes,
        )
        caps = config.capabilities
        manifest = build_capability_manifest(
            {tag: c.tools for tag, c in caps.items()},
            {tag: c.description for tag, c in caps.items()},
            {tag for tag, c in caps.items() if c.always_active},
        )
        self.agent = AgentLoop(
            ai_client=self.ai_client,
            router=self.router,
            sessions=self.sessions,
            registry=self.tool_registry,
            manifest=manifest,
            episodic=self.episodic,
            archive_context=ArchiveContextProvider(self.archive),
            temp_files=self.temp_files,
            config=config.agent,
            system_prompt=config.system_prompt,
        )

        self.service_manager = ServiceManager()
        if config.summarizer.enabled:
            self.service_manager.add(
                SummarizerWorker(self.archive, self.ai_client, self.router, config.summarizer)
            )

    async def start(self) -> None:
        """Initialize and start all components."""
        await self.db.initialize()
        await self.service_manager.start_all()
        logger.info("memcore_started", tools=len(self.tool_registry))

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        await self.service_manager.stop_all()
        await self.sessions.end_all()
        await self.db.close()
        logger.info("memcore_stopped")

    def _create_ai_client(self) -> AIClient:
        if not self.config.anthropic:
            raise ValueError("no 'anthropic' section in config")
        return AnthropicClient(self.config.anthropic)
