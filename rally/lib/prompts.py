"""
Prompt templates for the reviewer and reviewee.

Templates are markdown files in rally/prompts/, optionally shadowed by a
file of the same name in a user prompt directory. Placeholders use
str.format() syntax, so literal braces in a template are written {{ }}.
Values substituted into a template are never re-scanned for braces.

<!-- ... --> blocks are notes for template authors and never reach the
agent.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path

from rally.lib.errors import RallyError
from rally.lib.parse import truncate
from rally.lib.types import Context, ReviewerOutput

logger = logging.getLogger(__name__)

__all__ = [
    "PromptError",
    "PromptBuilder",
    "load_prompt",
    "render_prompt",
    "build_section",
    "clear_cache",
    "build_clarification_prompt",
    "build_clarification_skipped_prompt",
    "build_permission_granted_prompt",
    "PROMPTS_DIR",
]

PROMPTS_DIR = Path(__file__).parent.parent / "prompts"

EXTERNAL_COMMENT_MAX_CHARS = 200

_AUTHOR_NOTES = re.compile(r"<!--.*?-->\s*", re.DOTALL)


class PromptError(RallyError):
    """A template is missing, unreadable, or can't be filled in."""


@lru_cache(maxsize=32)
def load_prompt(name: str, prompt_dir: Path | None = None) -> str:
    """
    Template text for `name`, with author notes removed.

    Looks in prompt_dir first, then the built-in templates. Results are
    cached per (name, prompt_dir); call clear_cache() after editing files.

    Raises:
        PromptError: If neither location has the template
    """
    search = [PROMPTS_DIR / f"{name}.md"]
    if prompt_dir is not None:
        search.insert(0, prompt_dir / f"{name}.md")

    for path in search:
        try:
            text = path.read_text()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Skipping unreadable prompt {path}: {e}")
            continue
        logger.debug(f"Using prompt template {path}")
        return _AUTHOR_NOTES.sub("", text).lstrip()

    raise PromptError(f"No '{name}' prompt template (looked in: {', '.join(str(p) for p in search)})")


def render_prompt(name: str, prompt_dir: Path | None = None, **values) -> str:
    """Fill in template `name` with `values`.

    Raises:
        PromptError: If the template is missing, malformed, or uses a
            placeholder not present in `values`
    """
    template = load_prompt(name, prompt_dir)
    try:
        return template.format(**values)
    except KeyError as e:
        raise PromptError(
            f"Prompt '{name}' needs {e} but only got {sorted(values)}"
        ) from e
    except (IndexError, ValueError) as e:
        raise PromptError(f"Malformed prompt template '{name}': {e}") from e


def build_section(content: str | None, header: str, empty_msg: str | None = None) -> str:
    """Markdown section under `header`.

    Falls back to `empty_msg` when there's no content, and to "" when
    there's no fallback either.
    """
    body = content or empty_msg
    if not body:
        return ""
    return f"{header}\n\n{body}\n"


def clear_cache():
    load_prompt.cache_clear()


class PromptBuilder:
    """Builds the three rally prompts from templates plus PR context."""

    def __init__(self, prompt_dir: Path | None = None):
        self.prompt_dir = prompt_dir

    def build_reviewer_prompt(self, context: Context, iteration: int) -> str:
        return render_prompt(
            "reviewer",
            self.prompt_dir,
            repo=context.repo,
            pr_number=context.pr_number,
            pr_title=context.pr_title,
            pr_body=context.pr_body or "(No description provided)",
            diff=context.diff,
            iteration=iteration,
        )

    def build_reviewee_prompt(self, context: Context, review: ReviewerOutput, iteration: int) -> str:
        comments = "\n".join(
            f"- [{c.severity.value.capitalize()}] {c.path}:{c.line}: {c.body}"
            for c in review.comments
        )
        blocking = "\n".join(f"- {issue}" for issue in review.blocking_issues) or "None"

        external = ""
        if context.external_comments:
            lines = "\n".join(
                f"- [{c.source}] {c.location}: {truncate(c.body, EXTERNAL_COMMENT_MAX_CHARS)}"
                for c in context.external_comments
            )
            external = "\n" + build_section(
                "The following comments are from external code review tools "
                "(Copilot, CodeRabbit, etc.):\n\n"
                f"{lines}\n\n"
                "Note: Address these comments if they are relevant and valid. "
                "Don't wait for more feedback from these tools.",
                "## External Tool Feedback",
            )

        return render_prompt(
            "reviewee",
            self.prompt_dir,
            repo=context.repo,
            pr_number=context.pr_number,
            pr_title=context.pr_title,
            iteration=iteration,
            review_summary=review.summary,
            review_action=review.action.label,
            review_comments=comments or "None",
            blocking_issues=blocking,
            external_comments=external,
        )

    def build_rereview_prompt(self, context: Context, iteration: int, changes_summary: str, diff: str) -> str:
        return render_prompt(
            "rereview",
            self.prompt_dir,
            repo=context.repo,
            pr_number=context.pr_number,
            pr_title=context.pr_title,
            iteration=iteration,
            changes_summary=changes_summary,
            updated_diff=diff,
        )


# Continuation prompts. Short enough that templating buys nothing.

def build_clarification_prompt(question: str) -> str:
    return (
        "The developer has a question about your review feedback:\n\n"
        f"## Question\n{question}\n\n"
        "Please provide a clear answer to help them proceed with the fixes.\n"
        "After answering, provide an updated review if needed."
    )


def build_clarification_skipped_prompt(question: str) -> str:
    return (
        "The user chose NOT to answer your clarification question:\n\n"
        f"## Unanswered Question\n{question}\n\n"
        "## Your Task\n\n"
        "Proceed WITHOUT this clarification. Use your best judgment based on:\n"
        "1. Common patterns in this codebase\n"
        "2. The context from the review feedback\n"
        "3. Conservative assumptions (prefer safe, non-breaking changes)\n\n"
        "If you're completely uncertain, make minimal changes and document your "
        "assumptions in the summary."
    )


def build_permission_granted_prompt(action: str) -> str:
    return (
        "Permission has been granted for the following action:\n\n"
        f"{action}\n\n"
        "Please proceed with the implementation."
    )

