"""LLM-summarize source files and commit diffs."""

from __future__ import annotations

import logging

from gitwhisper import config
from gitwhisper.errors import GitWhisperError
from gitwhisper.providers import GenerationProvider, GeminiProvider

logger = logging.getLogger(__name__)

CODE_SYSTEM_PROMPT = (
    "You are a senior software engineer onboarding a junior engineer onto a project. "
    "Given a source file, explain in at most 100 words what the file is for, "
    "the main logic it implements, and why it matters to the rest of the codebase. "
    "Be specific about what the code does, not generic. "
    "Do not start with 'This file'."
)

DIFF_SYSTEM_PROMPT = (
    "You are an expert software engineer analysing a git diff. "
    "Lines starting with '+' were added, lines starting with '-' were removed, "
    "and other lines are context. "
    "Summarise the behavioural changes as a short bullet list written in the past tense, "
    "for example '- Fixed token refresh when the session expired [auth.py]'. "
    "Mention file names only when few files changed. "
    "Avoid vague bullets such as 'Updated some files'."
)

TRUNCATION_MARKER = "\n... (truncated)"


def _truncate(text: str, max_chars: int) -> str:
    if len(text) > max_chars:
        return text[:max_chars] + TRUNCATION_MARKER
    return text


class Summarizer:
    """Produces bounded natural-language synopses of code and diffs.

    Failures degrade to an empty string so downstream stages keep moving.
    ``strict=True`` re-raises provider errors instead, which lets a queue
    stage retry them.
    """

    def __init__(
        self,
        provider: GenerationProvider | None = None,
        max_chars: int | None = None,
        diff_max_chars: int | None = None,
    ) -> None:
        self._provider = provider or GeminiProvider()
        self._max_chars = max_chars or config.SUMMARY_MAX_CHARS
        self._diff_max_chars = diff_max_chars or config.DIFF_MAX_CHARS

    def summarize_code(self, file_path: str, content: str, strict: bool = False) -> str:
        """Summarize a single file's content.

        Args:
            file_path: Relative path for context.
            content: File content, truncated to the configured budget.
            strict: Re-raise provider errors instead of returning "".

        Returns:
            Summary string, or "" on failure.
        """
        prompt = f"File: {file_path}\n\n```\n{_truncate(content, self._max_chars)}\n```"
        return self._run(prompt, CODE_SYSTEM_PROMPT, f"file {file_path}", strict)

    def summarize_diff(self, diff: str, strict: bool = False) -> str:
        """Summarize a unified commit diff as past-tense bullets."""
        prompt = f"```diff\n{_truncate(diff, self._diff_max_chars)}\n```"
        return self._run(prompt, DIFF_SYSTEM_PROMPT, "commit diff", strict)

    def _run(self, prompt: str, system: str, label: str, strict: bool) -> str:
        try:
            summary = (self._provider.generate(prompt, system=system) or "").strip()
        except GitWhisperError as e:
            if strict:
                raise
            logger.warning("Summarizing %s failed: %s", label, e)
            return ""
        except Exception as e:
            if strict:
                raise
            logger.warning("Summarizing %s failed unexpectedly: %s", label, e)
            return ""
        if not summary:
            logger.info("Provider returned an empty summary for %s", label)
        return summary
