"""Diff engine tests.

Snapshots are built by hand; nothing here talks to a client.
"""

from __future__ import annotations

import pytest

from lettafleet.diff import (
    DiffContext,
    ToolChangeReason,
    compute_agent_diff,
    diff_folder_files,
)
from lettafleet.errors import UnresolvedReferenceError
from lettafleet.hashing import content_hash
from lettafleet.models import (
    FOLDER_HASHES_KEY,
    SHARED_BLOCK_KEY,
    AgentConfig,
    AgentSnapshot,
    ArchiveConfig,
    FolderConfig,
    MemoryBlockConfig,
    RemoteAgent,
    RemoteArchive,
    RemoteBlock,
    RemoteFolder,
    RemoteTool,
)


def _block(name: str, value: str = "v", *, agent_owned: bool = True) -> MemoryBlockConfig:
    return MemoryBlockConfig(
        name=name, description=name, limit=1000, value=value, agent_owned=agent_owned, value_hash=content_hash(value)
    )


def _snapshot(**kwargs) -> AgentSnapshot:
    metadata = kwargs.pop("metadata", {})
    agent = RemoteAgent(
        id="agent-1",
        name="bot",
        system=kwargs.pop("system", "prompt"),
        description=kwargs.pop("description", ""),
        tags=kwargs.pop("tags", []),
        metadata=metadata,
    )
    return AgentSnapshot(agent=agent, **kwargs)


# ---------------------------------------------------------------------------
# Scalar fields
# ---------------------------------------------------------------------------


class TestFields:
    def test_no_changes(self):
        diff = compute_agent_diff(_snapshot(), AgentConfig(name="bot", system_prompt="prompt"), DiffContext())
        assert diff.operation_count == 0
        assert not diff.has_changes
        assert diff.preserves_conversation

    def test_changed_system_and_model(self):
        desired = AgentConfig(name="bot", system_prompt="new", model="openai/gpt-4o")
        diff = compute_agent_diff(_snapshot(), desired, DiffContext())
        assert diff.field_updates() == {"system": "new", "model": "openai/gpt-4o"}

    def test_unset_fields_are_not_managed(self):
        desired = AgentConfig(name="bot", system_prompt="prompt", model=None, context_window=None)
        diff = compute_agent_diff(_snapshot(), desired, DiffContext())
        assert diff.update_fields == []

    def test_tag_order_is_ignored(self):
        desired = AgentConfig(name="bot", system_prompt="prompt", tags=["b", "a"])
        assert compute_agent_diff(_snapshot(tags=["a", "b"]), desired, DiffContext()).operation_count == 0

        diff = compute_agent_diff(_snapshot(tags=["a"]), desired, DiffContext())
        assert diff.field_updates() == {"tags": ["a", "b"]}


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class TestTools:
    def test_add_remove_unchanged(self):
        snap = _snapshot(tools=[RemoteTool(id="t1", name="keep"), RemoteTool(id="t9", name="old")])
        ctx = DiffContext(tool_ids={"keep": "t1", "new": "t2"})
        diff = compute_agent_diff(snap, AgentConfig(name="bot", system_prompt="prompt", tools=["keep", "new"]), ctx)

        assert [t.name for t in diff.tools.to_add] == ["new"]
        assert [t.name for t in diff.tools.to_remove] == ["old"]
        assert diff.tools.unchanged == ["keep"]
        assert diff.removal_count == 1
        assert diff.applicable_count(force=False) == 1
        assert diff.applicable_count(force=True) == 2

    def test_source_changed_keeps_identity(self):
        snap = _snapshot(tools=[RemoteTool(id="t1", name="lookup")])
        ctx = DiffContext(tool_ids={"lookup": "t1"}, updated_tools=frozenset({"lookup"}))
        diff = compute_agent_diff(snap, AgentConfig(name="bot", system_prompt="prompt", tools=["lookup"]), ctx)

        (update,) = diff.tools.to_update
        assert update.reason is ToolChangeReason.SOURCE_CHANGED
        assert update.from_id == update.to_id == "t1"

    def test_identity_changed(self):
        snap = _snapshot(tools=[RemoteTool(id="stale", name="lookup")])
        ctx = DiffContext(tool_ids={"lookup": "fresh"})
        diff = compute_agent_diff(snap, AgentConfig(name="bot", system_prompt="prompt", tools=["lookup"]), ctx)

        (update,) = diff.tools.to_update
        assert update.reason is ToolChangeReason.IDENTITY_CHANGED
        assert (update.from_id, update.to_id) == ("stale", "fresh")

    def test_unresolved_tool(self):
        with pytest.raises(UnresolvedReferenceError, match="tool 'ghost'"):
            compute_agent_diff(_snapshot(), AgentConfig(name="bot", tools=["ghost"]), DiffContext())


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------


class TestBlocks:
    def test_private_block_added_with_config(self):
        desired = AgentConfig(name="bot", system_prompt="prompt", memory_blocks=[_block("persona")])
        diff = compute_agent_diff(_snapshot(), desired, DiffContext())
        (ref,) = diff.blocks.to_add
        assert ref.id is None
        assert ref.config == _block("persona")

    def test_shared_block_attached_by_id(self):
        desired = AgentConfig(name="bot", system_prompt="prompt", shared_block_refs=["guidelines"])
        diff = compute_agent_diff(_snapshot(), desired, DiffContext(shared_block_ids={"guidelines": "b-shared"}))
        (ref,) = diff.blocks.to_add
        assert (ref.id, ref.shared) == ("b-shared", True)

    def test_shared_block_unresolved(self):
        desired = AgentConfig(name="bot", shared_block_refs=["guidelines"])
        with pytest.raises(UnresolvedReferenceError, match="shared block 'guidelines'"):
            compute_agent_diff(_snapshot(), desired, DiffContext())

    def test_shared_block_swapped(self):
        snap = _snapshot(blocks=[RemoteBlock(id="old", label="guidelines", metadata={SHARED_BLOCK_KEY: True})])
        desired = AgentConfig(name="bot", system_prompt="prompt", shared_block_refs=["guidelines"])
        diff = compute_agent_diff(snap, desired, DiffContext(shared_block_ids={"guidelines": "new"}))
        (update,) = diff.blocks.to_update
        assert (update.from_id, update.to_id) == ("old", "new")

    def test_shared_to_private_transition(self):
        snap = _snapshot(blocks=[RemoteBlock(id="s1", label="notes", metadata={SHARED_BLOCK_KEY: True})])
        desired = AgentConfig(name="bot", system_prompt="prompt", memory_blocks=[_block("notes")])
        diff = compute_agent_diff(snap, desired, DiffContext())
        (update,) = diff.blocks.to_update
        assert update.from_id == "s1"
        assert update.to_id is None
        assert update.config is not None

    def test_agent_owned_block_is_not_synced(self):
        snap = _snapshot(blocks=[RemoteBlock(id="b1", label="persona", value="edited by agent")])
        desired = AgentConfig(name="bot", system_prompt="prompt", memory_blocks=[_block("persona", "original")])
        diff = compute_agent_diff(snap, desired, DiffContext())
        assert diff.blocks.to_update_value == []
        assert diff.blocks.unchanged == ["persona"]

    def test_document_owned_block_value_sync(self):
        snap = _snapshot(blocks=[RemoteBlock(id="b1", label="policy", value="v1")])
        desired = AgentConfig(
            name="bot", system_prompt="prompt", memory_blocks=[_block("policy", "v2", agent_owned=False)]
        )
        diff = compute_agent_diff(snap, desired, DiffContext())
        (sync,) = diff.blocks.to_update_value
        assert (sync.id, sync.value) == ("b1", "v2")

    def test_removal_is_reported_but_force_gated(self):
        snap = _snapshot(blocks=[RemoteBlock(id="b1", label="scratch")])
        diff = compute_agent_diff(snap, AgentConfig(name="bot", system_prompt="prompt"), DiffContext())
        assert [b.name for b in diff.blocks.to_remove] == ["scratch"]
        assert diff.applicable_count(force=False) == 0
        assert diff.applicable_count(force=True) == 1


# ---------------------------------------------------------------------------
# Folders and archives
# ---------------------------------------------------------------------------


class TestFolders:
    def test_hash_driven_file_diff(self):
        changes = diff_folder_files({"a": "h1", "b": "h2"}, {"a": "h1", "c": "h3"})
        assert changes.to_remove == ["b"]
        assert changes.to_add == ["c"]
        assert changes.to_update == []
        assert changes.unchanged == ["a"]

    def test_changed_hash_is_update(self):
        changes = diff_folder_files({"a": "h1"}, {"a": "h2"})
        assert changes.to_update == ["a"]

    def test_uses_persisted_baseline(self):
        folder = FolderConfig(name="docs", files=["a", "c"], file_content_hashes={"a": "h1", "c": "h3"})
        snap = _snapshot(
            folders=[RemoteFolder(id="f1", name="docs")],
            metadata={FOLDER_HASHES_KEY: {"docs": {"a": "h1", "b": "h2"}}},
        )
        diff = compute_agent_diff(snap, AgentConfig(name="bot", system_prompt="prompt", folders=[folder]), DiffContext())
        (update,) = diff.folders.to_update
        assert update.files.to_add == ["c"]
        assert update.files.to_remove == ["b"]
        assert diff.folders.operation_count == 2
        assert diff.removal_count == 0

    def test_without_baseline_reuploads_listing(self):
        folder = FolderConfig(name="docs", files=["a", "c"], file_content_hashes={"a": "h1", "c": "h3"})
        snap = _snapshot(folders=[RemoteFolder(id="f1", name="docs")], folder_files={"docs": ["a", "b"]})
        diff = compute_agent_diff(snap, AgentConfig(name="bot", system_prompt="prompt", folders=[folder]), DiffContext())
        (update,) = diff.folders.to_update
        assert (update.files.to_add, update.files.to_remove, update.files.to_update) == (["c"], ["b"], ["a"])

    def test_attach_and_detach(self):
        folder = FolderConfig(name="kb", files=["x"], file_content_hashes={"x": "h"})
        snap = _snapshot(folders=[RemoteFolder(id="f-old", name="legacy")])
        diff = compute_agent_diff(
            snap,
            AgentConfig(name="bot", system_prompt="prompt", folders=[folder]),
            DiffContext(folder_ids={"kb": "f-kb"}),
        )
        assert [(f.name, f.id) for f in diff.folders.to_attach] == [("kb", "f-kb")]
        assert [f.name for f in diff.folders.to_detach] == ["legacy"]

    def test_unresolved_folder(self):
        folder = FolderConfig(name="kb", files=["x"], file_content_hashes={"x": "h"})
        with pytest.raises(UnresolvedReferenceError):
            compute_agent_diff(_snapshot(), AgentConfig(name="bot", folders=[folder]), DiffContext())


class TestArchives:
    def test_attach_missing_archive(self):
        desired = AgentConfig(name="bot", system_prompt="prompt", archives=[ArchiveConfig(name="notes")])
        diff = compute_agent_diff(_snapshot(), desired, DiffContext())
        (ref,) = diff.archives.to_attach
        assert ref.id is None
        assert ref.config == ArchiveConfig(name="notes")

    def test_existing_archive_unchanged_and_extra_detached(self):
        snap = _snapshot(archives=[RemoteArchive(id="a1", name="notes"), RemoteArchive(id="a2", name="old")])
        desired = AgentConfig(name="bot", system_prompt="prompt", archives=[ArchiveConfig(name="notes")])
        diff = compute_agent_diff(snap, desired, DiffContext())
        assert diff.archives.unchanged == ["notes"]
        assert [a.id for a in diff.archives.to_detach] == ["a2"]


# ---------------------------------------------------------------------------
# Purity
# ---------------------------------------------------------------------------


class TestPurity:
    def test_repeated_calls_are_equal_and_inputs_untouched(self):
        snap = _snapshot(
            tools=[RemoteTool(id="t1", name="a")],
            blocks=[RemoteBlock(id="b1", label="policy", value="v1"), RemoteBlock(id="b2", label="x")],
            folders=[RemoteFolder(id="f1", name="docs")],
            metadata={FOLDER_HASHES_KEY: {"docs": {"a": "h1"}}},
        )
        desired = AgentConfig(
            name="bot",
            system_prompt="changed",
            tools=["a", "b"],
            memory_blocks=[_block("policy", "v2", agent_owned=False)],
            folders=[FolderConfig(name="docs", files=["a"], file_content_hashes={"a": "h2"})],
        )
        ctx = DiffContext(tool_ids={"a": "t1", "b": "t2"})
        before = repr((snap, desired, ctx))

        first = compute_agent_diff(snap, desired, ctx)
        second = compute_agent_diff(snap, desired, ctx)

        assert first == second
        assert repr(first) == repr(second)
        assert repr((snap, desired, ctx)) == before
