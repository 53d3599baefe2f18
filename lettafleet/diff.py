"""Diff engine: desired AgentConfig vs. an existing agent snapshot.

`compute_agent_diff` is a pure function. It never calls the client and never
mutates its inputs; two calls with equal inputs return equal diffs. Callers
execute the operations it returns.

Resource classes:
- scalar fields: direct inequality, a desired value of None means "not managed"
- tools: name-set difference; attached tools whose source changed are updated
  in place, tools attached under a stale id are swapped
- memory blocks: add / remove / identity update / value sync
- folders: attach / detach, plus a per-file diff against the hashes persisted
  in agent metadata by the previous run
- archives: attach / detach

Removals are always reported; whether they run is the executor's decision
(see `AgentDiff.applicable_count`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import UnresolvedReferenceError
from .hashing import content_hash
from .models import AgentConfig, AgentSnapshot, ArchiveConfig, FolderConfig, MemoryBlockConfig


class ToolChangeReason(str, Enum):
    """Why an attached tool needs attention.

    SOURCE_CHANGED: same tool id, new source; updated in place so the tool's
    identity survives. IDENTITY_CHANGED: the agent holds a different id than
    the one the name now resolves to; detach the old id, attach the new one.
    """

    SOURCE_CHANGED = "source changed"
    IDENTITY_CHANGED = "identity changed"


@dataclass(frozen=True)
class DiffContext:
    """Name -> id maps resolved by the orchestrator before any diff runs."""

    shared_block_ids: dict[str, str] = field(default_factory=dict)
    tool_ids: dict[str, str] = field(default_factory=dict)
    folder_ids: dict[str, str] = field(default_factory=dict)
    archive_ids: dict[str, str] = field(default_factory=dict)
    updated_tools: frozenset[str] = frozenset()


@dataclass(frozen=True)
class FieldChange:
    field: str
    from_value: Any
    to_value: Any


# --- tools ---


@dataclass(frozen=True)
class ToolRef:
    name: str
    id: str


@dataclass(frozen=True)
class ToolUpdate:
    name: str
    reason: ToolChangeReason
    from_id: str
    to_id: str


@dataclass(frozen=True)
class ToolDiff:
    to_add: list[ToolRef] = field(default_factory=list)
    to_remove: list[ToolRef] = field(default_factory=list)
    to_update: list[ToolUpdate] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def operation_count(self) -> int:
        return len(self.to_add) + len(self.to_remove) + len(self.to_update)

    @property
    def removal_count(self) -> int:
        return len(self.to_remove)


# --- blocks ---


@dataclass(frozen=True)
class BlockRef:
    """A block to attach or detach.

    `id` is None for a private block that does not exist yet; `config`
    carries what is needed to create it.
    """

    name: str
    id: str | None = None
    shared: bool = False
    config: MemoryBlockConfig | None = None


@dataclass(frozen=True)
class BlockUpdate:
    """Same label, different backing block: detach `from_id`, attach the new one."""

    name: str
    from_id: str
    to_id: str | None = None
    config: MemoryBlockConfig | None = None


@dataclass(frozen=True)
class BlockValueSync:
    name: str
    id: str
    value: str


@dataclass(frozen=True)
class BlockDiff:
    to_add: list[BlockRef] = field(default_factory=list)
    to_remove: list[BlockRef] = field(default_factory=list)
    to_update: list[BlockUpdate] = field(default_factory=list)
    to_update_value: list[BlockValueSync] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def operation_count(self) -> int:
        return len(self.to_add) + len(self.to_remove) + len(self.to_update) + len(self.to_update_value)

    @property
    def removal_count(self) -> int:
        return len(self.to_remove)


# --- folders ---


@dataclass(frozen=True)
class FileChanges:
    to_add: list[str] = field(default_factory=list)
    to_remove: list[str] = field(default_factory=list)
    to_update: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def operation_count(self) -> int:
        return len(self.to_add) + len(self.to_remove) + len(self.to_update)


@dataclass(frozen=True)
class FolderRef:
    name: str
    id: str
    config: FolderConfig | None = None


@dataclass(frozen=True)
class FolderUpdate:
    name: str
    id: str
    files: FileChanges
    config: FolderConfig


@dataclass(frozen=True)
class FolderDiff:
    to_attach: list[FolderRef] = field(default_factory=list)
    to_detach: list[FolderRef] = field(default_factory=list)
    to_update: list[FolderUpdate] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def operation_count(self) -> int:
        return len(self.to_attach) + len(self.to_detach) + sum(u.files.operation_count for u in self.to_update)

    @property
    def removal_count(self) -> int:
        return len(self.to_detach)


# --- archives ---


@dataclass(frozen=True)
class ArchiveRef:
    name: str
    id: str | None = None
    config: ArchiveConfig | None = None


@dataclass(frozen=True)
class ArchiveDiff:
    to_attach: list[ArchiveRef] = field(default_factory=list)
    to_detach: list[ArchiveRef] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def operation_count(self) -> int:
        return len(self.to_attach) + len(self.to_detach)

    @property
    def removal_count(self) -> int:
        return len(self.to_detach)


# --- agent ---


@dataclass(frozen=True)
class AgentDiff:
    agent_name: str
    agent_id: str
    update_fields: list[FieldChange] = field(default_factory=list)
    tools: ToolDiff = field(default_factory=ToolDiff)
    blocks: BlockDiff = field(default_factory=BlockDiff)
    folders: FolderDiff = field(default_factory=FolderDiff)
    archives: ArchiveDiff = field(default_factory=ArchiveDiff)
    # Updates never delete and recreate the agent.
    preserves_conversation: bool = True

    @property
    def operation_count(self) -> int:
        return (
            len(self.update_fields)
            + self.tools.operation_count
            + self.blocks.operation_count
            + self.folders.operation_count
            + self.archives.operation_count
        )

    @property
    def removal_count(self) -> int:
        return (
            self.tools.removal_count
            + self.blocks.removal_count
            + self.folders.removal_count
            + self.archives.removal_count
        )

    def applicable_count(self, force: bool) -> int:
        """Operations that will actually run; removals only count under force."""

        return self.operation_count if force else self.operation_count - self.removal_count

    @property
    def has_changes(self) -> bool:
        return self.operation_count > 0

    def field_updates(self) -> dict[str, Any]:
        return {c.field: c.to_value for c in self.update_fields}


# ---------------------------------------------------------------------------
# Diff computation
# ---------------------------------------------------------------------------


def compute_agent_diff(existing: AgentSnapshot, desired: AgentConfig, ctx: DiffContext) -> AgentDiff:
    """Compute the minimal operation set moving `existing` to `desired`.

    Raises:
        UnresolvedReferenceError: a shared block, tool or folder named by
            `desired` has no id in `ctx`
    """

    return AgentDiff(
        agent_name=desired.name,
        agent_id=existing.id,
        update_fields=_diff_fields(existing, desired),
        tools=_diff_tools(existing, desired, ctx),
        blocks=_diff_blocks(existing, desired, ctx),
        folders=_diff_folders(existing, desired, ctx),
        archives=_diff_archives(existing, desired, ctx),
    )


def _diff_fields(existing: AgentSnapshot, desired: AgentConfig) -> list[FieldChange]:
    remote = existing.agent
    pairs: list[tuple[str, Any, Any]] = [
        ("system", remote.system, desired.system_prompt),
        ("description", remote.description, desired.description),
        ("model", remote.model, desired.model),
        ("embedding", remote.embedding, desired.embedding),
        ("context_window", remote.context_window, desired.context_window),
    ]
    changes = [FieldChange(name, old, new) for name, old, new in pairs if new is not None and old != new]
    if sorted(remote.tags) != sorted(desired.tags):
        changes.append(FieldChange("tags", sorted(remote.tags), sorted(desired.tags)))
    return changes


def _diff_tools(existing: AgentSnapshot, desired: AgentConfig, ctx: DiffContext) -> ToolDiff:
    attached = {t.name: t.id for t in existing.tools}
    wanted = list(desired.tools)

    to_add: list[ToolRef] = []
    to_update: list[ToolUpdate] = []
    unchanged: list[str] = []

    for name in wanted:
        tool_id = ctx.tool_ids.get(name)
        if tool_id is None:
            raise UnresolvedReferenceError(agent=desired.name, kind="tool", name=name)
        if name not in attached:
            to_add.append(ToolRef(name=name, id=tool_id))
        elif attached[name] != tool_id:
            to_update.append(ToolUpdate(name, ToolChangeReason.IDENTITY_CHANGED, attached[name], tool_id))
        elif name in ctx.updated_tools:
            to_update.append(ToolUpdate(name, ToolChangeReason.SOURCE_CHANGED, tool_id, tool_id))
        else:
            unchanged.append(name)

    wanted_set = set(wanted)
    to_remove = [ToolRef(name=n, id=attached[n]) for n in sorted(set(attached) - wanted_set)]
    return ToolDiff(to_add=to_add, to_remove=to_remove, to_update=to_update, unchanged=unchanged)


def _diff_blocks(existing: AgentSnapshot, desired: AgentConfig, ctx: DiffContext) -> BlockDiff:
    attached = {b.label: b for b in existing.blocks}

    to_add: list[BlockRef] = []
    to_update: list[BlockUpdate] = []
    to_update_value: list[BlockValueSync] = []
    unchanged: list[str] = []

    for ref in desired.shared_block_refs:
        block_id = ctx.shared_block_ids.get(ref)
        if block_id is None:
            raise UnresolvedReferenceError(agent=desired.name, kind="shared block", name=ref)
        current = attached.get(ref)
        if current is None:
            to_add.append(BlockRef(name=ref, id=block_id, shared=True))
        elif current.id != block_id:
            to_update.append(BlockUpdate(name=ref, from_id=current.id, to_id=block_id))
        else:
            unchanged.append(ref)

    for block in desired.memory_blocks:
        current = attached.get(block.name)
        if current is None:
            to_add.append(BlockRef(name=block.name, config=block))
        elif current.is_shared:
            # label now backed by a private block instead of a shared one
            to_update.append(BlockUpdate(name=block.name, from_id=current.id, config=block))
        elif not block.agent_owned and content_hash(current.value) != desired.block_hash(block):
            to_update_value.append(BlockValueSync(name=block.name, id=current.id, value=block.value))
        else:
            unchanged.append(block.name)

    wanted = set(desired.shared_block_refs) | {b.name for b in desired.memory_blocks}
    to_remove = [BlockRef(name=n, id=attached[n].id) for n in sorted(set(attached) - wanted)]
    return BlockDiff(
        to_add=to_add,
        to_remove=to_remove,
        to_update=to_update,
        to_update_value=to_update_value,
        unchanged=unchanged,
    )


def diff_folder_files(previous: dict[str, str], current: dict[str, str]) -> FileChanges:
    """Per-file diff of two `{file_name: hash}` maps."""

    prev_names = set(previous)
    cur_names = set(current)
    both = prev_names & cur_names
    return FileChanges(
        to_add=sorted(cur_names - prev_names),
        to_remove=sorted(prev_names - cur_names),
        to_update=sorted(n for n in both if previous[n] != current[n]),
        unchanged=sorted(n for n in both if previous[n] == current[n]),
    )


def _diff_folders(existing: AgentSnapshot, desired: AgentConfig, ctx: DiffContext) -> FolderDiff:
    attached = {f.name: f for f in existing.folders}
    baseline = existing.folder_file_hashes

    to_attach: list[FolderRef] = []
    to_update: list[FolderUpdate] = []
    unchanged: list[str] = []

    for folder in desired.folders:
        current = attached.get(folder.name)
        if current is None:
            folder_id = ctx.folder_ids.get(folder.name)
            if folder_id is None:
                raise UnresolvedReferenceError(agent=desired.name, kind="folder", name=folder.name)
            to_attach.append(FolderRef(name=folder.name, id=folder_id, config=folder))
            continue

        if folder.name in baseline:
            changes = diff_folder_files(baseline[folder.name], folder.file_content_hashes)
        else:
            changes = _diff_against_listing(existing.folder_files.get(folder.name, []), folder)

        if changes.operation_count:
            to_update.append(FolderUpdate(name=folder.name, id=current.id, files=changes, config=folder))
        else:
            unchanged.append(folder.name)

    wanted = {f.name for f in desired.folders}
    to_detach = [FolderRef(name=n, id=attached[n].id) for n in sorted(set(attached) - wanted)]
    return FolderDiff(to_attach=to_attach, to_detach=to_detach, to_update=to_update, unchanged=unchanged)


def _diff_against_listing(remote_names: list[str], folder: FolderConfig) -> FileChanges:
    # No persisted baseline: content is unknown, so every file already
    # present is re-uploaded once and the next run has a baseline.
    remote = set(remote_names)
    desired = set(folder.file_content_hashes)
    return FileChanges(
        to_add=sorted(desired - remote),
        to_remove=sorted(remote - desired),
        to_update=sorted(desired & remote),
    )


def _diff_archives(existing: AgentSnapshot, desired: AgentConfig, ctx: DiffContext) -> ArchiveDiff:
    attached = {a.name: a for a in existing.archives}

    to_attach: list[ArchiveRef] = []
    unchanged: list[str] = []
    for archive in desired.archives:
        if archive.name in attached:
            unchanged.append(archive.name)
        else:
            to_attach.append(ArchiveRef(name=archive.name, id=ctx.archive_ids.get(archive.name), config=archive))

    wanted = {a.name for a in desired.archives}
    to_detach = [ArchiveRef(name=n, id=attached[n].id) for n in sorted(set(attached) - wanted)]
    return ArchiveDiff(to_attach=to_attach, to_detach=to_detach, unchanged=unchanged)
