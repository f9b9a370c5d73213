#!/usr/bin/env python3
"""rally CLI entrypoint."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rally.agents import check_agent_available
from rally.lib import git
from rally.lib.config import RallyConfig, load_rally_config
from rally.lib.errors import ConfigError, RallyError, UnsupportedAgent
from rally.lib.github import BotFilter, GitHubClient, GitHubError
from rally.lib.session import SessionStore
from rally.lib.types import Context, RevieweeOutput
from rally.workflow.events import (
    Abort,
    Aborted,
    AgentText,
    AgentThinking,
    AgentToolResult,
    AgentToolUse,
    Approved,
    Channel,
    ClarificationNeeded,
    ClarificationResponse,
    ErrorRaised,
    Errored,
    FixCompleted,
    IterationStarted,
    Log,
    PermissionNeeded,
    PermissionResponse,
    RallyResult,
    ReviewApproved,
    ReviewCompleted,
    SkipClarification,
    StateChanged,
    command_channel,
    event_channel,
)
from rally.workflow.orchestrator import create_orchestrator

logger = logging.getLogger(__name__)


def load_config(args) -> RallyConfig:
    """Load config from --config or the default location."""
    path = Path(args.config).expanduser() if args.config else None
    return load_rally_config(path)


def build_context(args, config: RallyConfig) -> Context:
    """Gather PR details from GitHub, or from the local checkout with --local.

    Raises:
        GitHubError: If the PR can't be fetched
    """
    working_dir = Path(args.working_dir).resolve() if args.working_dir else None

    if args.local:
        cwd = working_dir or Path.cwd()
        return Context(
            repo=args.repo,
            pr_number=args.pr,
            pr_title=f"Local changes in {cwd.name}",
            diff=git.local_diff(cwd, args.base),
            head_sha=git.head_sha(cwd),
            base_branch=args.base,
            working_dir=cwd,
            local_mode=True,
        )

    github = GitHubClient(BotFilter(suffixes=config.bot_suffixes, logins=config.bot_logins))
    pr = github.fetch_pr(args.repo, args.pr)
    return Context(
        repo=args.repo,
        pr_number=args.pr,
        pr_title=pr.title,
        diff=github.fetch_pr_diff(args.repo, args.pr),
        head_sha=pr.head_sha,
        base_branch=pr.base_branch,
        pr_body=pr.body,
        working_dir=working_dir,
        external_comments=github.fetch_external_comments(args.repo, args.pr, config.max_external_comments),
    )


def _print_fix(fix: RevieweeOutput) -> None:
    print(f"Fix ({fix.status.value}): {fix.summary}")
    for path in fix.files_modified:
        print(f"  modified: {path}")


async def _ask(prompt: str) -> str | None:
    """Read one line from stdin without blocking the event loop. None on EOF."""
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def print_events(events: Channel, commands: Channel, verbose: bool) -> None:
    """Print rally events until the channel closes; answer human prompts from stdin."""
    while True:
        event = await events.recv()
        if event is None:
            return

        if isinstance(event, StateChanged):
            logger.debug(f"state: {event.state.value}")
        elif isinstance(event, IterationStarted):
            print()
            print(f"=== Iteration {event.iteration} ===")
        elif isinstance(event, ReviewCompleted):
            review = event.review
            print(f"Review: {review.action.label}: {review.summary}")
            for comment in review.comments:
                print(f"  [{comment.severity.value}] {comment.path}:{comment.line}: {comment.body}")
            for issue in review.blocking_issues:
                print(f"  blocking: {issue}")
        elif isinstance(event, FixCompleted):
            _print_fix(event.fix)
        elif isinstance(event, ReviewApproved):
            print(f"Approved: {event.summary}")
        elif isinstance(event, ErrorRaised):
            print(f"ERROR: {event.message}")
        elif isinstance(event, Log):
            print(f"  {event.message}")
        elif isinstance(event, ClarificationNeeded):
            print()
            print(f"Reviewee asks: {event.question}")
            answer = await _ask("Answer (empty to skip, 'abort' to stop): ")
            if answer is None or answer.strip().lower() == "abort":
                commands.send(Abort())
            elif not answer.strip():
                commands.send(SkipClarification())
            else:
                commands.send(ClarificationResponse(answer.strip()))
        elif isinstance(event, PermissionNeeded):
            print()
            print(f"Reviewee requests permission: {event.action}")
            if event.reason:
                print(f"  Reason: {event.reason}")
            answer = await _ask("Allow? [y/N]: ")
            commands.send(PermissionResponse(granted=(answer or "").strip().lower() in ("y", "yes")))
        elif isinstance(event, AgentToolUse):
            print(f"  > {event.name} {event.summary}".rstrip())
        elif isinstance(event, AgentToolResult):
            if verbose:
                print(f"  < {event.name}: {event.summary}")
        elif isinstance(event, (AgentThinking, AgentText)):
            if verbose:
                print(f"  {event.text}")


async def run_rally(context: Context, config: RallyConfig, verbose: bool = False) -> RallyResult:
    events = event_channel()
    commands = command_channel()
    orchestrator = create_orchestrator(context, config, events, commands)
    printer = asyncio.create_task(print_events(events, commands, verbose))
    try:
        return await orchestrator.run()
    finally:
        events.close()
        await printer


def describe_result(result: RallyResult) -> str:
    if isinstance(result, Approved):
        return f"Approved after {result.iteration} iteration(s): {result.summary}"
    if isinstance(result, Aborted):
        return f"Aborted at iteration {result.iteration}: {result.reason}"
    if isinstance(result, Errored):
        return f"Failed at iteration {result.iteration}: {result.error}"
    return f"Max iterations reached ({result.iteration}) without approval"


def missing_agent_message(config: RallyConfig) -> str | None:
    """Error text if a configured agent CLI isn't installed, else None.

    Raises:
        UnsupportedAgent: If config names an unknown agent
    """
    roles_by_agent: dict[str, list[str]] = {}
    for role, agent in (("reviewer", config.reviewer), ("reviewee", config.reviewee)):
        roles_by_agent.setdefault(agent, []).append(role)

    for agent, roles in roles_by_agent.items():
        if not check_agent_available(agent):
            other = "codex" if agent == "claude" else "claude"
            return "\n".join([
                f"Required tool '{agent}' is not installed.",
                f"Roles that need it: {', '.join(roles)}",
                f"Install {agent}, or set {'/'.join(roles)}: {other} in your config.yaml.",
            ])
    return None


def cmd_run(args) -> int:
    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return 2

    try:
        missing = missing_agent_message(config)
    except UnsupportedAgent as e:
        print(f"ERROR: {e}")
        return 2
    if missing:
        print(f"ERROR: {missing}")
        return 2

    try:
        context = build_context(args, config)
    except GitHubError as e:
        print(f"ERROR: Failed to load PR: {e}")
        return 1

    print(f"Rally: {context.repo}#{context.pr_number} - {context.pr_title}")
    print(f"Reviewer: {config.reviewer}, reviewee: {config.reviewee}, max iterations: {config.max_iterations}")

    try:
        result = asyncio.run(run_rally(context, config, verbose=args.verbose))
    except UnsupportedAgent as e:
        print(f"ERROR: {e}")
        return 2
    except RallyError as e:
        print(f"ERROR: {e}")
        return 1

    print()
    print(describe_result(result))
    return 0 if isinstance(result, Approved) else 1


def _open_store(args) -> SessionStore | None:
    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return None
    return SessionStore(config.cache_dir)


def cmd_status(args) -> int:
    store = _open_store(args)
    if store is None:
        return 2
    try:
        session = store.read_session(args.repo, args.pr)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 2
    if session is None:
        print(f"No rally found for {args.repo}#{args.pr}")
        return 1

    print(f"Rally: {session.repo}#{session.pr_number}")
    print("=" * 60)
    print(f"State:      {session.state.value}")
    print(f"Iteration:  {session.iteration}")
    print(f"Started:    {session.started_at.isoformat()}")
    print(f"Updated:    {session.updated_at.isoformat()}")
    return 0


def cmd_history(args) -> int:
    store = _open_store(args)
    if store is None:
        return 2
    try:
        entries = store.read_history(args.repo, args.pr)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 2
    if not entries:
        print(f"No history for {args.repo}#{args.pr}")
        return 0

    for entry in entries:
        stamp = entry.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        if isinstance(entry.output, RevieweeOutput):
            label = entry.output.status.value
        else:
            label = entry.output.action.label
        print(f"[{entry.iteration:03d}] {entry.kind:<6} {stamp}  {label}: {entry.output.summary}")
    return 0


def cmd_clean(args) -> int:
    store = _open_store(args)
    if store is None:
        return 2
    try:
        removed = store.cleanup_session(args.repo, args.pr)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 2
    if removed:
        print(f"Removed rally data for {args.repo}#{args.pr}")
    else:
        print(f"No rally data for {args.repo}#{args.pr}")
    return 0


def main(argv=None):
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--config', '-c', help='Path to config.yaml')
    common.add_argument('--verbose', '-v', action='store_true', help='Debug logging and full agent output')

    parser = argparse.ArgumentParser(prog='rally', description='AI reviewer/reviewee rally for pull requests')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # rally run
    p_run = subparsers.add_parser('run', parents=[common], help='Run the review/fix rally on a PR')
    p_run.add_argument('repo', help='Repository (owner/name)')
    p_run.add_argument('pr', type=int, help='Pull request number')
    p_run.add_argument('--working-dir', '-w', help='Local checkout of the PR branch')
    p_run.add_argument('--local', action='store_true', help='Review the local checkout without calling GitHub')
    p_run.add_argument('--base', default='main', help='Base branch for --local diffs (default: main)')
    p_run.set_defaults(func=cmd_run)

    # rally status
    p_status = subparsers.add_parser('status', parents=[common], help='Show stored rally state')
    p_status.add_argument('repo', help='Repository (owner/name)')
    p_status.add_argument('pr', type=int, help='Pull request number')
    p_status.set_defaults(func=cmd_status)

    # rally history
    p_history = subparsers.add_parser('history', parents=[common], help='Show per-iteration review/fix history')
    p_history.add_argument('repo', help='Repository (owner/name)')
    p_history.add_argument('pr', type=int, help='Pull request number')
    p_history.set_defaults(func=cmd_history)

    # rally clean
    p_clean = subparsers.add_parser('clean', parents=[common], help='Delete stored rally data')
    p_clean.add_argument('repo', help='Repository (owner/name)')
    p_clean.add_argument('pr', type=int, help='Pull request number')
    p_clean.set_defaults(func=cmd_clean)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
