"""Apply orchestrator: one end-to-end reconciliation run.

Order of a run:

1. flag preconditions, then document normalization (fail fast, no mutation)
2. remote state load (read barrier)
3. shared blocks, external tool servers, tools and folders, each provisioned
   exactly once
4. agents, one at a time: create, or diff + update
5. summary

A failure inside step 4 is recorded for that agent and the run moves on to
the next one. Dry runs take the same path with a DryRunExecutor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Union

from .canary import build_canary_metadata, check_canary_flags, cleanup_canary_agents, rewrite_for_canary
from .cleanup import CleanupResult
from .client import LettaClient, LettaClientError
from .diff import AgentDiff, DiffContext, FileChanges, ToolChangeReason, compute_agent_diff
from .errors import (
    AgentOperationError,
    ApplyFailedError,
    PreconditionError,
    UnresolvedReferenceError,
    format_letta_error,
)
from .executor import DryRunExecutor, Executor, LiveExecutor
from .fleet import parse_fleet_file, with_tools
from .hashing import content_hash
from .mcp import sync_mcp
from .models import (
    AgentConfig,
    ArchiveConfig,
    DEFAULT_CONTEXT_WINDOW,
    DEFAULT_EMBEDDING,
    DEFAULT_MODEL,
    DEFAULT_REASONING,
    FOLDER_HASHES_KEY,
    FleetSpec,
    FolderConfig,
)
from .registry import RemoteState, fetch_snapshot
from .validators import DEFAULT_CANARY_PREFIX, validate_embeddings


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Options and result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApplyOptions:
    file: Path
    root: Path | None = None
    agent_filter: str | None = None
    dry_run: bool = False
    force: bool = False
    canary: bool = False
    canary_prefix: str = DEFAULT_CANARY_PREFIX
    promote: bool = False
    cleanup: bool = False
    match: str | None = None
    skip_first_message: bool = False

    def __post_init__(self) -> None:
        if not self.canary_prefix:
            object.__setattr__(self, "canary_prefix", DEFAULT_CANARY_PREFIX)

    @property
    def cleanup_only(self) -> bool:
        return self.canary and self.cleanup and not self.promote

    @property
    def skips_first_message(self) -> bool:
        # canary deploys are for testing, not calibration
        return self.skip_first_message or (self.canary and not self.promote)


class AgentAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class CreatePlan:
    """Resources a newly created agent is assembled from."""

    blocks: list[str] = field(default_factory=list)
    shared_blocks: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    folders: list[str] = field(default_factory=list)
    archives: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AgentOutcome:
    name: str
    id: str
    action: AgentAction
    diff: AgentDiff | None = None
    plan: CreatePlan | None = None
    skipped_removals: int = 0


@dataclass(frozen=True)
class AgentError:
    name: str
    error: str


@dataclass(frozen=True)
class Ok:
    value: AgentOutcome
    ok = True


@dataclass(frozen=True)
class Err:
    error: AgentError
    ok = False


AgentResult = Union[Ok, Err]


@dataclass
class ApplyResult:
    agents: dict[str, str] = field(default_factory=dict)
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: list[AgentError] = field(default_factory=list)
    outcomes: list[AgentResult] = field(default_factory=list)
    dry_run: bool = False
    force: bool = False
    updated_tools: list[str] = field(default_factory=list)
    canary_cleanup: CleanupResult | None = None
    plan: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> list[str]:
        return self.created + self.updated

    @property
    def total(self) -> int:
        return len(self.created) + len(self.updated) + len(self.unchanged) + len(self.failed)

    @property
    def ok(self) -> bool:
        cleanup_ok = self.canary_cleanup is None or self.canary_cleanup.ok
        return not self.failed and cleanup_ok

    def record(self, result: AgentResult) -> None:
        self.outcomes.append(result)
        if isinstance(result, Err):
            self.failed.append(result.error)
            return
        outcome = result.value
        self.agents[outcome.name] = outcome.id
        {
            AgentAction.CREATED: self.created,
            AgentAction.UPDATED: self.updated,
            AgentAction.UNCHANGED: self.unchanged,
        }[outcome.action].append(outcome.name)

    def raise_for_failures(self) -> None:
        if self.failed:
            raise ApplyFailedError([e.name for e in self.failed])


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def apply_fleet(client: LettaClient, options: ApplyOptions) -> ApplyResult:
    """Run one reconciliation.

    Raises:
        PreconditionError: invalid flag combination (before any remote call)
        FleetConfigError: the document failed validation (before any mutation)
    """

    check_canary_flags(
        canary=options.canary,
        promote=options.promote,
        cleanup=options.cleanup,
        match=options.match,
        prefix=options.canary_prefix,
    )

    fleet = parse_fleet_file(options.file, options.root)
    validate_embeddings(options.file, fleet.agents, client.config.base_url)

    executor: Executor = DryRunExecutor() if options.dry_run else LiveExecutor(client)

    if options.cleanup_only:
        result = ApplyResult(dry_run=options.dry_run, force=options.force)
        result.canary_cleanup = await cleanup_canary_agents(
            client, executor, options.canary_prefix, options.agent_filter
        )
        _finish(result, executor)
        return result

    agents = _select_agents(fleet, options)
    applier = FleetApplier(client, executor, fleet, options)

    if options.match:
        result = await applier.apply_template(_template_agent(agents), options.match)
    else:
        if options.canary and not options.promote:
            agents, name_map = rewrite_for_canary(agents, options.canary_prefix)
            logger.info("canary deploy: %s", ", ".join(name_map.values()) or "(no agents)")
        result = await applier.apply(agents)

    if options.canary and options.promote and options.cleanup:
        result.canary_cleanup = await cleanup_canary_agents(
            client, executor, options.canary_prefix, options.agent_filter
        )

    _finish(result, executor)
    return result


def _finish(result: ApplyResult, executor: Executor) -> None:
    if isinstance(executor, DryRunExecutor):
        result.plan = list(executor.plan)


def _select_agents(fleet: FleetSpec, options: ApplyOptions) -> list[AgentConfig]:
    if not options.agent_filter:
        return list(fleet.agents)
    selected = [a for a in fleet.agents if options.agent_filter in a.name]
    logger.info("agent filter %r selected %d of %d agents", options.agent_filter, len(selected), len(fleet.agents))
    return selected


def _template_agent(agents: list[AgentConfig]) -> AgentConfig:
    if len(agents) != 1:
        raise PreconditionError(
            f"--match needs exactly one agent definition, found {len(agents)}; use --agent to select one"
        )
    return agents[0]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class FleetApplier:
    def __init__(self, client: LettaClient, executor: Executor, fleet: FleetSpec, options: ApplyOptions):
        self.client = client
        self.executor = executor
        self.fleet = fleet
        self.options = options
        self.state = RemoteState()
        self.ctx = DiffContext()
        self.archive_ids: dict[str, str] = {}
        # folders whose file set was already synced during this run
        self.synced_folder_ids: set[str] = set()
        self.updated_tools: list[str] = []

    # --- shared provisioning ---

    async def prepare(self, agents: list[AgentConfig]) -> list[AgentConfig]:
        """Load remote state and provision everything agents reference.

        Returns `agents` with tools contributed by external tool servers
        appended.
        """

        self.state = await RemoteState.load(self.client)

        shared_block_ids = await self._process_shared_blocks()

        mcp = await sync_mcp(replace(self.fleet, agents=agents), self.state, self.client, self.executor)
        agents = [with_tools(a, mcp.agent_tools.get(a.name, [])) for a in agents]

        tool_ids, updated_tools = await self._process_tools(agents)
        tool_ids.update({k: v for k, v in mcp.tool_ids.items() if k not in tool_ids})

        folder_ids = await self._process_folders(agents)

        self.archive_ids = {a.name: a.id for a in self.state.archives}
        self.ctx = DiffContext(
            shared_block_ids=shared_block_ids,
            tool_ids=tool_ids,
            folder_ids=folder_ids,
            archive_ids=dict(self.archive_ids),
            updated_tools=frozenset(updated_tools),
        )
        self.updated_tools = sorted(updated_tools)
        self._check_shared_refs(agents)
        return agents

    def _check_shared_refs(self, agents: list[AgentConfig]) -> None:
        """Fail the run before any agent is touched if a shared block or folder has no id.

        Tools are left to per-agent resolution: an unknown built-in tool only
        fails the agents that name it.
        """

        for agent in agents:
            for ref in agent.shared_block_refs:
                if ref not in self.ctx.shared_block_ids:
                    raise UnresolvedReferenceError(agent=agent.name, kind="shared block", name=ref)
            for folder in agent.folders:
                if folder.name not in self.ctx.folder_ids:
                    raise UnresolvedReferenceError(agent=agent.name, kind="folder", name=folder.name)

    async def _process_shared_blocks(self) -> dict[str, str]:
        ids: dict[str, str] = {}
        for block in self.fleet.shared_blocks:
            existing = self.state.blocks.get(block.name)
            if existing is None:
                logger.info("creating shared block %s", block.name)
                ids[block.name] = await self.executor.create_block(block, shared=True)
                continue
            if not block.agent_owned and content_hash(existing.value) != block.value_hash:
                logger.info("syncing shared block %s", block.name)
                await self.executor.update_block_value(existing.id, block.name, block.value)
            ids[block.name] = existing.id
        return ids

    async def _process_tools(self, agents: list[AgentConfig]) -> tuple[dict[str, str], set[str]]:
        ids: dict[str, str] = {}
        updated: set[str] = set()
        names = list(dict.fromkeys(t for a in agents for t in a.tools))
        for name in names:
            remote = self.state.tools.get(name)
            source_path = self.fleet.tool_sources.get(name)
            if source_path is None:
                if remote is not None:
                    ids[name] = remote.id
                continue

            raw = source_path.read_bytes()
            source = raw.decode("utf-8")
            if remote is None:
                ids[name] = await self.executor.upsert_tool(name, source)
            elif content_hash(remote.source_code or "") != content_hash(raw):
                ids[name] = await self.executor.upsert_tool(name, source, remote.id)
                updated.add(name)
            else:
                ids[name] = remote.id
        return ids, updated

    async def _process_folders(self, agents: list[AgentConfig]) -> dict[str, str]:
        ids: dict[str, str] = {}
        folders: dict[str, tuple[FolderConfig, AgentConfig]] = {}
        for agent in agents:
            for folder in agent.folders:
                folders.setdefault(folder.name, (folder, agent))

        for name, (folder, agent) in folders.items():
            existing = self.state.folders.get(name)
            if existing is not None:
                ids[name] = existing.id
                continue
            logger.info("creating folder %s (%d files)", name, len(folder.files))
            folder_id = await self.executor.create_folder(name, embedding=agent.embedding or DEFAULT_EMBEDDING)
            for rel in folder.files:
                await self.executor.upload_file(folder_id, name, rel, (self.fleet.base_path / rel).read_bytes())
            self.synced_folder_ids.add(folder_id)
            ids[name] = folder_id
        return ids

    # --- runs ---

    async def apply(self, agents: list[AgentConfig]) -> ApplyResult:
        agents = await self.prepare(agents)
        result = self._new_result()
        for agent in agents:
            result.record(await self._isolated(agent, allow_create=True))
        return result

    async def apply_template(self, template: AgentConfig, pattern: str) -> ApplyResult:
        """Apply one agent definition to every existing agent matching `pattern`."""

        (template,) = await self.prepare([template])
        result = self._new_result()
        targets = self.state.agents.matching(pattern)
        if not targets:
            logger.warning("no existing agents match %r", pattern)
        for remote in targets:
            result.record(await self._isolated(replace(template, name=remote.name), allow_create=False))
        return result

    def _new_result(self) -> ApplyResult:
        return ApplyResult(
            dry_run=self.executor.dry_run,
            force=self.options.force,
            updated_tools=list(self.updated_tools),
        )

    async def _isolated(self, agent: AgentConfig, *, allow_create: bool) -> AgentResult:
        try:
            outcome = await self._apply_agent(agent, allow_create=allow_create)
        except Exception as e:
            # one agent's failure never aborts the run
            message = format_letta_error(str(e))
            logger.warning("agent %s failed: %s", agent.name, message)
            logger.debug("agent %s failure detail", agent.name, exc_info=True)
            return Err(AgentError(name=agent.name, error=message))
        return Ok(outcome)

    async def _apply_agent(self, agent: AgentConfig, *, allow_create: bool) -> AgentOutcome:
        lookup = self.state.agents.get_or_create_agent_id(agent.name)
        if not lookup.exists:
            if not allow_create:
                raise PreconditionError(f"agent {agent.name} does not exist")
            return await self._create_agent(agent)

        remote = self.state.agents.get(agent.name)
        assert remote is not None
        snapshot = await fetch_snapshot(self.client, remote)
        diff = compute_agent_diff(snapshot, agent, self.ctx)

        skipped = 0 if self.options.force else diff.removal_count
        if skipped:
            logger.warning(
                "agent %s: skipping %d removal(s); use --force to apply them", agent.name, skipped
            )
        if diff.applicable_count(self.options.force) == 0:
            logger.info("agent %s is up to date", agent.name)
            return AgentOutcome(agent.name, remote.id, AgentAction.UNCHANGED, diff=diff, skipped_removals=skipped)

        logger.info("updating agent %s (%d changes)", agent.name, diff.applicable_count(self.options.force))
        await self._execute_diff(agent, diff, remote.metadata)
        return AgentOutcome(agent.name, remote.id, AgentAction.UPDATED, diff=diff, skipped_removals=skipped)

    # --- create ---

    async def _create_agent(self, agent: AgentConfig) -> AgentOutcome:
        logger.info("creating agent %s", agent.name)
        ex = self.executor

        # resolve every reference before the first mutation
        block_ids: list[str] = []
        for ref in agent.shared_block_refs:
            block_id = self.ctx.shared_block_ids.get(ref)
            if block_id is None:
                raise UnresolvedReferenceError(agent=agent.name, kind="shared block", name=ref)
            block_ids.append(block_id)

        folder_ids: list[tuple[str, str]] = []
        for folder in agent.folders:
            folder_id = self.ctx.folder_ids.get(folder.name)
            if folder_id is None:
                raise UnresolvedReferenceError(agent=agent.name, kind="folder", name=folder.name)
            folder_ids.append((folder.name, folder_id))

        tool_ids: list[str] = []
        for name in agent.tools:
            tool_id = self.ctx.tool_ids.get(name)
            if tool_id is None:
                raise UnresolvedReferenceError(agent=agent.name, kind="tool", name=name)
            tool_ids.append(tool_id)

        for block in agent.memory_blocks:
            try:
                block_ids.append(await ex.create_block(block))
            except LettaClientError as e:
                raise AgentOperationError(format_letta_error(str(e), block_name=block.name)) from e

        agent_id = await ex.create_agent(self._create_payload(agent, block_ids, tool_ids))

        for name, folder_id in folder_ids:
            await ex.attach("folder", agent_id, folder_id, name)
        for archive in agent.archives:
            await ex.attach("archive", agent_id, await self._ensure_archive(archive), archive.name)

        if agent.first_message and not self.options.skips_first_message:
            try:
                await ex.send_message(agent_id, agent.name, agent.first_message)
            except LettaClientError as e:
                logger.warning("agent %s created but first message failed: %s", agent.name, e)

        plan = CreatePlan(
            blocks=[b.name for b in agent.memory_blocks],
            shared_blocks=list(agent.shared_block_refs),
            tools=list(agent.tools),
            folders=[f.name for f in agent.folders],
            archives=[a.name for a in agent.archives],
        )
        return AgentOutcome(agent.name, agent_id, AgentAction.CREATED, plan=plan)

    def _create_payload(self, agent: AgentConfig, block_ids: list[str], tool_ids: list[str]) -> dict[str, Any]:
        metadata: dict[str, Any] = {FOLDER_HASHES_KEY: agent.folder_hashes()}
        if agent.original_name is not None:
            metadata.update(build_canary_metadata(agent.original_name, self.options.canary_prefix))

        payload: dict[str, Any] = {
            "name": agent.name,
            "system": agent.system_prompt,
            "description": agent.description,
            "model": agent.model or DEFAULT_MODEL,
            "context_window": agent.context_window or DEFAULT_CONTEXT_WINDOW,
            "reasoning": DEFAULT_REASONING if agent.reasoning is None else agent.reasoning,
            "tags": list(agent.tags),
            "metadata": metadata,
            "block_ids": block_ids,
            "tool_ids": tool_ids,
            "include_base_tools": False,
        }
        if agent.embedding_config is not None:
            payload["embedding_config"] = agent.embedding_config
        if agent.embedding is not None or agent.embedding_config is None:
            payload["embedding"] = agent.embedding or DEFAULT_EMBEDDING
        return payload

    async def _ensure_archive(self, archive: ArchiveConfig) -> str:
        archive_id = self.archive_ids.get(archive.name)
        if archive_id is None:
            archive_id = await self.executor.create_archive(archive)
            self.archive_ids[archive.name] = archive_id
        return archive_id

    # --- update ---

    async def _execute_diff(self, agent: AgentConfig, diff: AgentDiff, metadata: dict[str, Any]) -> None:
        ex = self.executor
        agent_id = diff.agent_id
        force = self.options.force

        for tool in diff.tools.to_add:
            await ex.attach("tool", agent_id, tool.id, tool.name)
        for update in diff.tools.to_update:
            if update.reason is ToolChangeReason.SOURCE_CHANGED:
                # source already replaced in place during tool registration
                continue
            await ex.detach("tool", agent_id, update.from_id, update.name)
            await ex.attach("tool", agent_id, update.to_id, update.name)
        if force:
            for tool in diff.tools.to_remove:
                await ex.detach("tool", agent_id, tool.id, tool.name)

        for block in diff.blocks.to_add:
            block_id = block.id
            if block_id is None:
                assert block.config is not None
                block_id = await ex.create_block(block.config)
            await ex.attach("block", agent_id, block_id, block.name)
        for update in diff.blocks.to_update:
            new_id = update.to_id
            if new_id is None:
                assert update.config is not None
                new_id = await ex.create_block(update.config)
            await ex.detach("block", agent_id, update.from_id, update.name)
            await ex.attach("block", agent_id, new_id, update.name)
        for sync in diff.blocks.to_update_value:
            try:
                await ex.update_block_value(sync.id, sync.name, sync.value)
            except LettaClientError as e:
                raise AgentOperationError(format_letta_error(str(e), block_name=sync.name)) from e
        if force:
            for block in diff.blocks.to_remove:
                assert block.id is not None
                await ex.detach("block", agent_id, block.id, block.name)

        for folder in diff.folders.to_attach:
            await ex.attach("folder", agent_id, folder.id, folder.name)
        for update in diff.folders.to_update:
            await self._sync_folder_files(update.id, update.name, update.files)
        if force:
            for folder in diff.folders.to_detach:
                await ex.detach("folder", agent_id, folder.id, folder.name)

        for archive in diff.archives.to_attach:
            assert archive.config is not None
            await ex.attach("archive", agent_id, await self._ensure_archive(archive.config), archive.name)
        if force:
            for archive in diff.archives.to_detach:
                assert archive.id is not None
                await ex.detach("archive", agent_id, archive.id, archive.name)

        fields = diff.field_updates()
        fields["metadata"] = {**metadata, FOLDER_HASHES_KEY: agent.folder_hashes()}
        await ex.update_agent(agent_id, agent.name, fields)

    async def _sync_folder_files(self, folder_id: str, name: str, files: FileChanges) -> None:
        if folder_id in self.synced_folder_ids:
            logger.debug("folder %s already synced in this run", name)
            return
        ex = self.executor
        base = self.fleet.base_path
        for rel in files.to_remove:
            await ex.delete_file(folder_id, name, rel)
        for rel in files.to_update:
            await ex.delete_file(folder_id, name, rel)
            await ex.upload_file(folder_id, name, rel, (base / rel).read_bytes())
        for rel in files.to_add:
            await ex.upload_file(folder_id, name, rel, (base / rel).read_bytes())
        self.synced_folder_ids.add(folder_id)
