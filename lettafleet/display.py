"""Plain-text rendering of apply, dry-run and cleanup results."""

from __future__ import annotations

from .apply import AgentAction, ApplyResult, Err
from .cleanup import CleanupResult
from .diff import AgentDiff, FieldChange

_LONG_FIELDS = {"system", "description"}


def _removal_note(force: bool) -> str:
    return "forced" if force else "requires --force"


def _field_line(change: FieldChange) -> str:
    if change.field in _LONG_FIELDS:
        return f"    {change.field}: changed ({len(str(change.from_value or ''))} -> {len(str(change.to_value))} chars)"
    return f"    {change.field}: {change.from_value} -> {change.to_value}"


def format_agent_diff(diff: AgentDiff, *, force: bool) -> list[str]:
    note = _removal_note(force)
    lines = [_field_line(c) for c in diff.update_fields]

    tools = diff.tools
    lines.extend(f"    Tool [+] {t.name}" for t in tools.to_add)
    lines.extend(f"    Tool [~] {u.name} ({u.reason.value})" for u in tools.to_update)
    lines.extend(f"    Tool [-] {t.name} ({note})" for t in tools.to_remove)

    blocks = diff.blocks
    lines.extend(f"    Block [+] {b.name}{' (shared)' if b.shared else ''}" for b in blocks.to_add)
    lines.extend(f"    Block [~] {u.name} (identity changed)" for u in blocks.to_update)
    lines.extend(f"    Block [~] {s.name} (value sync)" for s in blocks.to_update_value)
    lines.extend(f"    Block [-] {b.name} ({note})" for b in blocks.to_remove)

    folders = diff.folders
    lines.extend(f"    Folder [+] {f.name}" for f in folders.to_attach)
    for u in folders.to_update:
        files = u.files
        lines.append(
            f"    Folder [~] {u.name} (+{len(files.to_add)} files, -{len(files.to_remove)} files, "
            f"~{len(files.to_update)} files)"
        )
    lines.extend(f"    Folder [-] {f.name} ({note})" for f in folders.to_detach)

    archives = diff.archives
    lines.extend(f"    Archive [+] {a.name}" for a in archives.to_attach)
    lines.extend(f"    Archive [-] {a.name} ({note})" for a in archives.to_detach)
    return lines


def format_dry_run(result: ApplyResult) -> str:
    lines: list[str] = []
    total_changes = 0
    to_create = to_update = 0

    for entry in result.outcomes:
        if isinstance(entry, Err):
            lines.append(f"[!] {entry.error.name} (FAILED): {entry.error.error}")
            continue
        outcome = entry.value
        if outcome.action is AgentAction.CREATED:
            to_create += 1
            lines.append(f"[+] {outcome.name} (CREATE)")
            plan = outcome.plan
            if plan is not None:
                for label, names in (
                    ("Blocks", plan.blocks),
                    ("Shared blocks", plan.shared_blocks),
                    ("Tools", plan.tools),
                    ("Folders", plan.folders),
                    ("Archives", plan.archives),
                ):
                    if names:
                        lines.append(f"    {label}: {', '.join(names)}")
            continue

        diff = outcome.diff
        if diff is None or not diff.has_changes:
            lines.append(f"[=] {outcome.name} (no changes)")
            continue
        # removals are shown even when they will be skipped
        total_changes += diff.operation_count
        if outcome.action is AgentAction.UPDATED:
            to_update += 1
            lines.append(f"[~] {outcome.name} (UPDATE - {diff.operation_count} changes)")
        else:
            lines.append(f"[~] {outcome.name} (SKIPPED - {diff.removal_count} removals need --force)")
        lines.extend(format_agent_diff(diff, force=result.force))

    if result.updated_tools:
        lines.append(f"Tools updated in place: {', '.join(result.updated_tools)}")

    lines.append("")
    lines.append("Summary:")
    lines.append(f"  {to_create} to create, {to_update} to update, {len(result.unchanged)} unchanged")
    if result.failed:
        lines.append(f"  {len(result.failed)} failed")
    lines.append(f"Total changes: {total_changes + to_create}")

    if result.canary_cleanup is not None:
        lines.append("")
        lines.append(format_cleanup(result.canary_cleanup, "canary agents"))
    return "\n".join(lines)


def format_apply_summary(result: ApplyResult) -> str:
    lines: list[str] = []
    if result.failed:
        lines.append("Apply completed with errors:")
        lines.append(f"  Succeeded: {len(result.succeeded)}/{result.total}")
        lines.append("  Failures:")
        for failure in result.failed:
            lines.append(f"    - {failure.name}: {failure.error}")
    elif result.created or result.updated:
        applied = len(result.created) + len(result.updated)
        lines.append(f"Apply completed: {applied} applied, {len(result.unchanged)} unchanged")
        if result.created:
            lines.append(f"  Created: {', '.join(result.created)}")
        if result.updated:
            lines.append(f"  Updated: {', '.join(result.updated)}")
    elif result.total:
        lines.append(f"Apply completed: all {result.total} agents already up to date")
    elif result.canary_cleanup is None:
        lines.append("No agents to apply")

    if result.canary_cleanup is not None:
        if lines:
            lines.append("")
        lines.append(format_cleanup(result.canary_cleanup, "canary agents"))
    return "\n".join(lines)


def format_cleanup(result: CleanupResult, what: str, *, force_hint: bool = False) -> str:
    verb = "Would delete" if result.dry_run else "Deleted"
    if not result.deleted and not result.failed:
        return f"No {what} to delete"
    lines = [f"{verb} {len(result.deleted)} {what}:"]
    lines.extend(f"  - {name}" for name in result.deleted)
    if result.failed:
        lines.append(f"Failed to delete {len(result.failed)}:")
        lines.extend(f"  - {f.name}: {f.error}" for f in result.failed)
    if force_hint and result.dry_run and result.deleted:
        lines.append("Run with --force to delete.")
    return "\n".join(lines)
