"""Rally orchestrator.

Drives one rally for one PR: reviewer turn, then (unless approved) reviewee
turn, repeated until approval, the iteration cap, a human abort, or an
agent failure. Every state change goes through RallyFSM, which persists the
session and emits StateChanged.

Failure policy:
- Reviewer/reviewee calls (fresh or continuation) are fatal: the session is
  moved to error and the exception propagates out of run().
- GitHub calls (posting, head sha refresh, bot comments) and diff fetching
  are best-effort: logged, surfaced as Log events, never fatal.

Usage:
    orchestrator = create_orchestrator(context, config, events, commands)
    result = await orchestrator.run()
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from rally.agents.adapter import AgentAdapter
from rally.agents.factory import create_adapter
from rally.lib import git
from rally.lib.config import RallyConfig
from rally.lib.errors import RallyError, TimeoutExceeded
from rally.lib.github import BotFilter, GitHubClient, GitHubError
from rally.lib.prompts import (
    PromptBuilder,
    PromptError,
    build_clarification_prompt,
    build_clarification_skipped_prompt,
    build_permission_granted_prompt,
)
from rally.lib.session import RallySession, SessionStore
from rally.lib.types import (
    Context,
    PermissionRequest,
    ReviewAction,
    RevieweeOutput,
    RevieweeStatus,
    ReviewerOutput,
)
from rally.workflow.events import (
    Abort,
    Aborted,
    Approved,
    Channel,
    ClarificationNeeded,
    ClarificationResponse,
    ErrorRaised,
    Errored,
    FixCompleted,
    IterationStarted,
    Log,
    MaxIterationsReached,
    OrchestratorCommand,
    PermissionNeeded,
    PermissionResponse,
    RallyEvent,
    RallyResult,
    ReviewApproved,
    ReviewCompleted,
    SkipClarification,
    StateChanged,
)
from rally.workflow.fsm import RallyFSM
from rally.workflow.state_machine import RallyState

logger = logging.getLogger(__name__)

T = TypeVar("T")

REVIEWER_PREFIX = "[AI Rally - Reviewer]"
REVIEWEE_PREFIX = "[AI Rally - Reviewee]"

# Pause between inline comment posts (GitHub secondary rate limits)
INLINE_COMMENT_DELAY_SECONDS = 0.1


def format_changes_summary(fix: RevieweeOutput | None) -> str:
    """What the reviewee did, for the re-review prompt."""
    if fix is None:
        return "No changes recorded"
    files = ", ".join(fix.files_modified) if fix.files_modified else "No files modified"
    return f"{fix.summary}\n\nFiles modified: {files}"


def format_fix_comment(fix: RevieweeOutput) -> str:
    if fix.files_modified:
        files = "\n".join(f"- `{f}`" for f in fix.files_modified)
    else:
        files = "No files modified"
    return f"{REVIEWEE_PREFIX}\n\n{fix.summary}\n\n**Files modified:**\n{files}"


class Orchestrator:
    """Runs the review/fix loop for one PR."""

    def __init__(
        self,
        context: Context,
        config: RallyConfig,
        reviewer: AgentAdapter,
        reviewee: AgentAdapter,
        events: Channel,
        commands: Channel | None = None,
        store: SessionStore | None = None,
        github: GitHubClient | None = None,
        prompts: PromptBuilder | None = None,
    ):
        self.context = context
        self.config = config
        self.reviewer = reviewer
        self.reviewee = reviewee
        self.events = events
        self.commands = commands
        self.store = store
        self.github = github
        self.prompts = prompts or PromptBuilder(config.resolved_prompt_dir())
        self.last_fix: RevieweeOutput | None = None

        self.session = RallySession.new(context.repo, context.pr_number)
        self.fsm = RallyFSM(
            self.session,
            store,
            on_transition=self._on_transition,
            on_persist_error=self._on_persist_error,
        )

        reviewer.set_event_sender(events)
        reviewee.set_event_sender(events)

        self.fsm.save_state()

    @property
    def state(self) -> RallyState:
        return self.fsm.current

    def _emit(self, event: RallyEvent) -> None:
        self.events.send(event)

    def _log(self, message: str) -> None:
        logger.warning(f"[RALLY] {self.fsm.rally_id}: {message}")
        self._emit(Log(message))

    def _on_transition(self, from_state: RallyState, to_state: RallyState, trigger: str) -> None:
        self._emit(StateChanged(to_state))

    def _on_persist_error(self, error: Exception) -> None:
        self._emit(Log(f"Warning: Failed to write session: {error}"))

    async def run(self) -> RallyResult:
        """Run the rally to completion.

        Returns:
            Approved, MaxIterationsReached, Aborted or Errored

        Raises:
            RallyError: An agent call failed or timed out (session left in error)
        """
        self._emit(StateChanged(self.state))

        while self.session.iteration < self.config.max_iterations:
            self.session.increment_iteration()
            self.fsm.save_state()
            iteration = self.session.iteration

            logger.info(f"[RALLY] {self.fsm.rally_id}: iteration {iteration}/{self.config.max_iterations}")
            self._emit(IterationStarted(iteration))

            if iteration > 1:
                await self._refresh_head_sha()

            # Reviewer turn
            self.fsm.fire("start_review")
            diff = await self._fetch_current_diff() if iteration > 1 else None
            prompt = self._build_prompt("reviewer", self._reviewer_prompt, iteration, diff)
            review = await self._call_agent("reviewer", self.reviewer.run_reviewer(prompt, self.context))
            self._write_history(iteration, review)
            self._emit(ReviewCompleted(review))

            await self._refresh_head_sha()
            await self._post_review(review)

            if review.action is ReviewAction.APPROVE:
                self.fsm.fire("approve")
                self._emit(ReviewApproved(review.summary))
                return Approved(iteration=iteration, summary=review.summary)

            # Reviewee turn
            self.fsm.fire("request_fix")
            await self._refresh_external_comments()
            prompt = self._build_prompt(
                "reviewee", self.prompts.build_reviewee_prompt, self.context, review, iteration,
            )
            fix = await self._call_agent("reviewee", self.reviewee.run_reviewee(prompt, self.context))
            self._write_history(iteration, fix)
            self._emit(FixCompleted(fix))

            if fix.status is RevieweeStatus.COMPLETED:
                self.last_fix = fix
                await self._post_fix(fix)
            elif fix.status is RevieweeStatus.NEEDS_CLARIFICATION:
                result = await self._handle_clarification(iteration, fix.question or fix.summary)
                if result is not None:
                    return result
            elif fix.status is RevieweeStatus.NEEDS_PERMISSION:
                request = fix.permission_request or PermissionRequest(action=fix.summary, reason="")
                result = await self._handle_permission(iteration, request)
                if result is not None:
                    return result
            else:
                error = fix.error_details or fix.summary
                self.fsm.fire("fail")
                self._emit(ErrorRaised(error))
                return Errored(iteration=iteration, error=error)

        message = f"Max iterations ({self.config.max_iterations}) reached without approval"
        logger.info(f"[RALLY] {self.fsm.rally_id}: {message}")
        self._emit(Log(message))
        return MaxIterationsReached(iteration=self.session.iteration)

    def _reviewer_prompt(self, iteration: int, diff: str | None) -> str:
        if diff is None:
            return self.prompts.build_reviewer_prompt(self.context, iteration)
        return self.prompts.build_rereview_prompt(
            self.context, iteration, format_changes_summary(self.last_fix), diff,
        )

    def _build_prompt(self, role: str, build: Callable[..., str], *args) -> str:
        """Build a prompt outside the agent timeout. A broken template is fatal."""
        try:
            return build(*args)
        except PromptError as e:
            self._fail(f"{role.capitalize()} failed: {e}")
            raise

    async def _call_agent(self, role: str, call: Awaitable[T], fatal: bool = True) -> T:
        """Await an agent call under timeout_secs.

        A fatal failure moves the rally to error and emits ErrorRaised
        before re-raising.
        """
        try:
            return await asyncio.wait_for(call, timeout=self.config.timeout_secs)
        except asyncio.TimeoutError:
            error = TimeoutExceeded(role, self.config.timeout_secs)
            if fatal:
                self._fail(f"{role.capitalize()} failed: {error}")
            raise error from None
        except RallyError as e:
            if fatal:
                self._fail(f"{role.capitalize()} failed: {e}")
            raise

    def _fail(self, message: str) -> None:
        logger.error(f"[RALLY] {self.fsm.rally_id}: {message}")
        if self.fsm.can("fail"):
            self.fsm.fire("fail")
        self._emit(ErrorRaised(message))

    def _abort(self, iteration: int, reason: str) -> Aborted:
        logger.info(f"[RALLY] {self.fsm.rally_id}: aborted: {reason}")
        self.fsm.fire("abort")
        self._emit(Log(reason))
        return Aborted(iteration=iteration, reason=reason)

    async def _wait_for_command(self) -> OrchestratorCommand | None:
        # No timeout: a human may take as long as they like
        if self.commands is None:
            return None
        return await self.commands.recv()

    async def _handle_clarification(self, iteration: int, question: str) -> Aborted | None:
        """Wait for a human answer. Returns Aborted, or None to keep going."""
        self.fsm.fire("need_clarification")
        self._emit(ClarificationNeeded(question))

        command = await self._wait_for_command()

        if isinstance(command, ClarificationResponse):
            self._emit(Log(f"User provided clarification: {command.answer}"))
            reviewer_response = await self._call_agent(
                "reviewer", self.reviewer.continue_reviewer(build_clarification_prompt(command.answer)),
            )
            self._emit(Log(f"Reviewer clarification response: {reviewer_response.summary}"))
            followup = await self._call_agent("reviewee", self.reviewee.continue_reviewee(command.answer))
            await self._record_followup(iteration, followup)
            self.fsm.fire("resume_fix")
            return None

        if isinstance(command, SkipClarification):
            self._emit(Log(f"Clarification skipped for: {question}. Continuing with best judgment..."))
            try:
                followup = await self._call_agent(
                    "reviewee",
                    self.reviewee.continue_reviewee(build_clarification_skipped_prompt(question)),
                    fatal=False,
                )
            except RallyError as e:
                self.last_fix = None
                self._log(f"Error continuing after clarification skip: {e}. Proceeding to re-review.")
            else:
                await self._record_followup(iteration, followup)
            self.fsm.fire("resume_fix")
            return None

        if command is None or isinstance(command, Abort):
            return self._abort(iteration, "Clarification cancelled by user")
        return self._abort(iteration, f"Clarification needed: {question}")

    async def _handle_permission(self, iteration: int, request: PermissionRequest) -> Aborted | None:
        """Wait for a human decision. Returns Aborted, or None to keep going."""
        self.fsm.fire("need_permission")
        self._emit(PermissionNeeded(request.action, request.reason))

        command = await self._wait_for_command()

        if isinstance(command, PermissionResponse) and command.granted:
            self._emit(Log(f"User granted permission for: {request.action}"))
            self.reviewee.add_reviewee_allowed_tool(request.action)
            followup = await self._call_agent(
                "reviewee", self.reviewee.continue_reviewee(build_permission_granted_prompt(request.action)),
            )
            await self._record_followup(iteration, followup)
            self.fsm.fire("resume_fix")
            return None

        if isinstance(command, PermissionResponse):
            return self._abort(iteration, f"Permission denied: {request.action}")
        if command is None or isinstance(command, Abort):
            return self._abort(iteration, f"Permission aborted: {request.action}")
        return self._abort(iteration, f"Permission needed: {request.action}")

    async def _record_followup(self, iteration: int, followup: RevieweeOutput) -> None:
        """A continuation's output replaces the iteration's fix record."""
        self._write_history(iteration, followup)
        self._emit(FixCompleted(followup))
        self.last_fix = followup
        await self._post_fix(followup)

    def _write_history(self, iteration: int, output: ReviewerOutput | RevieweeOutput) -> None:
        if self.store is None:
            return
        try:
            self.store.write_history_entry(self.context.repo, self.context.pr_number, iteration, output)
        except (OSError, ValueError) as e:
            self._log(f"Warning: Failed to write history: {e}")

    # --- best-effort GitHub / git side operations ---

    def _github_enabled(self) -> bool:
        return self.github is not None and not self.context.local_mode

    async def _refresh_head_sha(self) -> None:
        if not self._github_enabled():
            return
        try:
            pr = await asyncio.to_thread(self.github.fetch_pr, self.context.repo, self.context.pr_number)
        except GitHubError as e:
            self._log(f"Warning: Failed to update head SHA: {e}")
            return
        self.context.head_sha = pr.head_sha

    async def _refresh_external_comments(self) -> None:
        if not self._github_enabled():
            return
        try:
            comments = await asyncio.to_thread(
                self.github.fetch_external_comments,
                self.context.repo,
                self.context.pr_number,
                self.config.max_external_comments,
            )
        except GitHubError as e:
            self._log(f"Warning: Failed to fetch external comments: {e}")
            return
        self.context.external_comments = comments
        if comments:
            self._emit(Log(f"Including {len(comments)} external tool comment(s) in reviewee prompt"))

    async def _post_review(self, review: ReviewerOutput) -> None:
        if self.context.local_mode:
            self._emit(Log("Local mode: skipping review posting to PR"))
            return
        if self.github is None:
            return

        body = f"{REVIEWER_PREFIX}\n\n{review.summary}"
        repo, pr_number = self.context.repo, self.context.pr_number
        try:
            await asyncio.to_thread(self.github.submit_review, repo, pr_number, review.action, body)
        except GitHubError as e:
            if review.action is not ReviewAction.APPROVE:
                self._log(f"Warning: Failed to post review to PR: {e}")
                return
            # Can't approve your own PR; say it as a comment instead
            logger.warning(f"Approve failed, falling back to comment: {e}")
            try:
                await asyncio.to_thread(self.github.submit_review, repo, pr_number, ReviewAction.COMMENT, body)
            except GitHubError as e2:
                self._log(f"Warning: Failed to post review to PR: {e2}")
                return

        if not self.context.head_sha:
            return
        for comment in review.comments:
            try:
                await asyncio.to_thread(
                    self.github.create_review_comment,
                    repo,
                    pr_number,
                    self.context.head_sha,
                    comment.path,
                    comment.line,
                    f"{REVIEWER_PREFIX}\n\n{comment.body}",
                )
            except GitHubError as e:
                logger.warning(f"Failed to post inline comment on {comment.path}:{comment.line}: {e}")
            await asyncio.sleep(INLINE_COMMENT_DELAY_SECONDS)

    async def _post_fix(self, fix: RevieweeOutput) -> None:
        if self.context.local_mode:
            self._emit(Log("Local mode: skipping fix comment posting"))
            return
        if self.github is None:
            return
        try:
            await asyncio.to_thread(
                self.github.submit_review,
                self.context.repo,
                self.context.pr_number,
                ReviewAction.COMMENT,
                format_fix_comment(fix),
            )
        except GitHubError as e:
            self._log(f"Warning: Failed to post fix comment to PR: {e}")

    async def _fetch_current_diff(self) -> str:
        """Diff for the re-review: local git first, then GitHub, then the original diff."""
        ctx = self.context
        if ctx.local_mode:
            if ctx.working_dir is None:
                return ""
            return await asyncio.to_thread(git.local_diff, ctx.working_dir, ctx.base_branch)

        if ctx.working_dir is not None:
            diff = await asyncio.to_thread(git.branch_diff, ctx.working_dir, ctx.base_branch)
            if diff and diff.strip():
                self._emit(Log("Using local git diff for re-review"))
                return diff
            self._emit(Log("Local git diff empty or failed, falling back to GitHub API"))

        if self.github is not None:
            try:
                return await asyncio.to_thread(self.github.fetch_pr_diff, ctx.repo, ctx.pr_number)
            except GitHubError as e:
                self._log(f"Warning: Failed to fetch updated diff: {e}")
        return ctx.diff


def create_orchestrator(
    context: Context,
    config: RallyConfig,
    events: Channel,
    commands: Channel | None = None,
) -> Orchestrator:
    """Wire an Orchestrator from config: adapters, session store, GitHub client.

    Raises:
        UnsupportedAgent: If config names an unknown reviewer/reviewee
    """
    reviewer = create_adapter(config.reviewer, config)
    reviewee = create_adapter(config.reviewee, config)
    github = None
    if not context.local_mode:
        github = GitHubClient(BotFilter(suffixes=config.bot_suffixes, logins=config.bot_logins))
    return Orchestrator(
        context,
        config,
        reviewer,
        reviewee,
        events,
        commands=commands,
        store=SessionStore(config.cache_dir),
        github=github,
    )
