"""
agentmem judge -- LLM arbitration between an existing and a new memory.

The conflict resolver asks the judge only for pairs in the ambiguous
similarity band. Any transport failure or reply that is not exactly one
recognised verdict yields ``None`` ("unable to judge"); the resolver then
inserts the new entry.

The ``anthropic`` SDK client is created lazily on first use.
"""

import logging
import os
import re
from datetime import datetime
from enum import Enum
from typing import Optional

logger = logging.getLogger("agentmem.judge")

DEFAULT_JUDGE_MODEL = "claude-haiku-4-5"
_SNIPPET_CHARS = 500


class Verdict(str, Enum):
    COMPATIBLE = "COMPATIBLE"
    DUPLICATE = "DUPLICATE"
    CONTRADICTION_NEW_WINS = "CONTRADICTION_NEW_WINS"
    CONTRADICTION_OLD_WINS = "CONTRADICTION_OLD_WINS"


# Longest names first so CONTRADICTION_* is not read as a partial match.
_VERDICT_RE = re.compile(
    r"(?<![A-Z_])(CONTRADICTION_NEW_WINS|CONTRADICTION_OLD_WINS|COMPATIBLE|DUPLICATE)(?![A-Z_])"
)

PROMPT_TEMPLATE = """Compare these two memory entries for the same agent. Do they contradict each other, or are they compatible/complementary?

EXISTING MEMORY (stored {stored}):
{existing}

NEW MEMORY:
{new}

Respond with EXACTLY one of:
- "COMPATIBLE" if they can coexist (different topics, complementary info)
- "CONTRADICTION_NEW_WINS" if the new memory supersedes/updates the old one
- "CONTRADICTION_OLD_WINS" if the existing memory is more authoritative
- "DUPLICATE" if they contain the same information"""


def build_prompt(existing_text: str, new_text: str, existing_created_at: datetime) -> str:
    return PROMPT_TEMPLATE.format(
        stored=existing_created_at.strftime("%Y-%m-%d"),
        existing=existing_text[:_SNIPPET_CHARS],
        new=new_text[:_SNIPPET_CHARS],
    )


def parse_verdict(text: Optional[str]) -> Optional[Verdict]:
    """Map a model reply to a Verdict.

    The reply must name exactly one distinct verdict token. Replies naming
    none, or several different ones, are unrecognised (None).
    """
    if not text:
        return None
    found = set(_VERDICT_RE.findall(text.strip().upper()))
    if len(found) != 1:
        return None
    return Verdict(found.pop())


class AnthropicJudge:
    """Judge capability backed by the Anthropic messages API."""

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        client=None,
        max_tokens: int = 32,
    ):
        self.model = model or os.environ.get("AGENTMEM_JUDGE_MODEL", DEFAULT_JUDGE_MODEL)
        self._api_key = api_key
        self._client = client
        self.max_tokens = max_tokens

    def is_configured(self) -> bool:
        return self._client is not None or bool(self._api_key or os.environ.get("ANTHROPIC_API_KEY"))

    def _get_client(self):
        if self._client is None:
            import anthropic

            self._client = anthropic.Anthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        return self._client

    def judge(self, existing_text: str, new_text: str, existing_created_at: datetime) -> Optional[Verdict]:
        """Return a Verdict, or None when the judge is unavailable or unsure."""
        if not self.is_configured():
            logger.debug("Judge not configured, skipping arbitration")
            return None
        prompt = build_prompt(existing_text, new_text, existing_created_at)
        try:
            response = self._get_client().messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
            text = "".join(
                getattr(block, "text", "") for block in response.content
                if getattr(block, "type", None) == "text"
            )
        except Exception as e:
            logger.warning("Judge call failed, treating as undecided: %s", e)
            return None

        verdict = parse_verdict(text)
        if verdict is None:
            logger.warning("Unrecognised judge reply: %r", text[:100])
        else:
            logger.debug("Judge verdict: %s", verdict.value)
        return verdict
