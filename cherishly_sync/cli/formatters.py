"""CLI output formatting functions.

This module contains functions for displaying mappings, planned actions,
conflicts and sync results on the command line.
"""

from typing import TYPE_CHECKING

import click

from cherishly_sync.sync.mapping import MappingTarget
from cherishly_sync.sync.wire import (
    CreateLocalAction,
    CreateRemoteAction,
    ExcludeAction,
    LinkAction,
)

if TYPE_CHECKING:
    from cherishly_sync.sync.mapping import MappingNotice, MappingState
    from cherishly_sync.sync.models import Conflict
    from cherishly_sync.sync.remote_people import RemotePeopleListing
    from cherishly_sync.sync.triggers import RunResult
    from cherishly_sync.sync.wire import MappingAction

# Rows shown per section before "... and N more"
MAX_ROWS = 20


def _truncated(items: list) -> tuple[list, int]:
    return items[:MAX_ROWS], max(0, len(items) - MAX_ROWS)


def show_mapping(state: "MappingState") -> None:
    """
    Display a staged mapping, local side then unmatched remote people.

    Args:
        state: The mapping to display
    """
    click.echo("=== Local People ===\n")
    if not state.local_people:
        click.echo("  (none)")

    for person in state.local_people:
        target = state.local_mappings.get(person.id)
        if target == MappingTarget.CREATE_REMOTE:
            label = click.style("create remote", fg="cyan")
        elif target == MappingTarget.DO_NOT_SYNC:
            label = click.style("do not sync", fg="yellow")
        elif target is None:
            label = click.style("undecided", fg="yellow")
        else:
            remote = state.remote_person(target)
            name = remote.remote_name if remote else target
            label = click.style(f"-> {name}", fg="green")
            if person.id in state.suggested_ids:
                label += click.style(" (suggested)", fg="cyan")
        click.echo(f"  {person.name} [{person.id}]: {label}")

    unmatched = [
        remote
        for remote in state.remote_people
        if state.owner_of(remote.remote_person_uid) is None
    ]
    if unmatched:
        click.echo("\n=== Unmatched Remote People ===\n")
        for remote in unmatched:
            decision = state.resolve_remote(remote.remote_person_uid)
            if decision == MappingTarget.DO_NOT_SYNC:
                label = click.style("do not sync", fg="yellow")
            else:
                label = click.style("create local", fg="cyan")
            click.echo(f"  {remote.remote_name} [{remote.remote_person_uid}]: {label}")


def show_notices(notices: "list[MappingNotice]") -> None:
    """Print reconciler notices as warnings."""
    for notice in notices:
        click.echo(click.style(f"Note: {notice.message}", fg="yellow"))


def describe_action(action: "MappingAction", state: "MappingState") -> str:
    """One-line description of a planned mapping action."""
    if isinstance(action, LinkAction):
        remote = state.remote_person(action.remote_person_uid)
        remote_name = remote.remote_name if remote else action.remote_person_uid
        return f"  ~ link {state.display_name(action.local_person_id)} <-> {remote_name}"
    if isinstance(action, CreateRemoteAction):
        return f"  + create remotely: {state.display_name(action.local_person_id)}"
    if isinstance(action, CreateLocalAction):
        return f"  + create locally: {action.remote_name}"
    if isinstance(action, ExcludeAction):
        if action.remote_person_uid is not None:
            remote = state.remote_person(action.remote_person_uid)
            remote_name = remote.remote_name if remote else action.remote_person_uid
            return f"  - exclude remote: {remote_name}"
        return f"  - do not sync: {state.display_name(action.local_person_id or '')}"
    return f"  ? {action!r}"


def show_actions(actions: "list[MappingAction]", state: "MappingState") -> None:
    """Display the actions an activation would submit."""
    click.echo(f"\n=== Planned Changes ({len(actions)}) ===\n")
    shown, remaining = _truncated(actions)
    for action in shown:
        click.echo(describe_action(action, state))
    if remaining:
        click.echo(f"  ... and {remaining} more")


def show_people(listing: "RemotePeopleListing") -> None:
    """Display the cached remote people."""
    source = "refreshed" if listing.refreshed else "cached"
    click.echo(f"Remote people ({source}, last fetched {listing.last_fetched}):\n")
    if not listing.people:
        click.echo("  (none)")
    for person in listing.people:
        label = f" ({person.remote_relationship_label})" if person.remote_relationship_label else ""
        click.echo(f"  {person.remote_name}{label} [{person.remote_person_uid}]")


def show_conflicts(conflicts: "list[Conflict]") -> None:
    """Display conflicts, one line each plus any suggestion."""
    if not conflicts:
        click.echo(click.style("No open conflicts.", fg="green"))
        return

    shown, remaining = _truncated(conflicts)
    for conflict in shown:
        status = (
            click.style(conflict.resolution, fg="green")
            if conflict.resolution
            else click.style("open", fg="yellow")
        )
        click.echo(
            f"  #{conflict.id} {conflict.entity_type} {conflict.entity_uid} "
            f"[{conflict.conflict_type.value}] {status}"
        )
        name = conflict.remote_payload.get("name") or conflict.remote_payload.get("title")
        if name:
            click.echo(f"      remote: {name}")
        if conflict.suggested_resolution and not conflict.resolution:
            click.echo(f"      suggested: {conflict.suggested_resolution}")
    if remaining:
        click.echo(f"  ... and {remaining} more")


def show_run_result(result: "RunResult") -> None:
    """Display the outcome of a sync run."""
    click.echo(f"Pushed: {result.pushed} event(s)")
    click.echo(f"Pulled: {result.pulled} event(s), applied {result.applied}")

    if result.conflicts:
        click.echo(click.style(f"\nConflicts here ({len(result.conflicts)}):", fg="yellow"))
        for report in result.conflicts[:MAX_ROWS]:
            click.echo(f"  {report.entity_type} {report.entity_uid}: {report.reason}")
    if result.remote_conflicts:
        click.echo(
            click.style(
                f"\nConflicts on the peer ({len(result.remote_conflicts)}):", fg="yellow"
            )
        )
        for report in result.remote_conflicts[:MAX_ROWS]:
            click.echo(f"  {report.entity_type} {report.entity_uid}: {report.reason}")

    click.echo()
    click.echo(click.style(result.message, fg="green"))
