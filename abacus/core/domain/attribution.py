"""AI attribution detection for commits -- pure, no IO.

Rules are evaluated in table order. Each tool is reported at most once: the
first rule that matches for a tool decides its model and source.

Every pattern keeps at most one unbounded quantifier in sequence
(``[^<]*`` before an ``<email>``), so matching stays linear on hostile
commit messages.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional

from .schemas import AiAttribution, AttributionSource, Tool

ModelExtractor = Callable[[re.Match[str]], Optional[str]]

_LEADS = r"(?:generated|written|created|assisted) (?:with|using|by)"


def _claude_trailer_model(match: re.Match[str]) -> Optional[str]:
    part = (match.group(1) or "").strip()
    # "Code" is the product name, not a model
    if not part or part.lower() == "code":
        return None
    return re.sub(r"\s+", "-", part.lower())


@dataclass(frozen=True)
class AttributionRule:
    pattern: re.Pattern[str]
    tool: str
    extract_model: Optional[ModelExtractor] = None

    @property
    def source(self) -> AttributionSource:
        if "Co-Authored-By" in self.pattern.pattern:
            return AttributionSource.CO_AUTHOR
        return AttributionSource.MESSAGE_PATTERN


def _rule(pattern: str, tool: Tool, extract_model: Optional[ModelExtractor] = None) -> AttributionRule:
    return AttributionRule(re.compile(pattern, re.IGNORECASE), tool.value, extract_model)


MESSAGE_RULES: tuple[AttributionRule, ...] = (
    # --- Claude Code ---
    _rule(r"Co-Authored-By:\s+Claude\b([^<]*)<[^>]+@anthropic\.com>", Tool.CLAUDE_CODE, _claude_trailer_model),
    _rule(r"Generated with \[Claude Code\]", Tool.CLAUDE_CODE),
    _rule(rf"{_LEADS} Claude\b", Tool.CLAUDE_CODE),
    # --- Codex ---
    _rule(r"Co-Authored-By:\s+Codex\b[^<]*<[^>]+>", Tool.CODEX),
    _rule(rf"{_LEADS} Codex\b", Tool.CODEX),
    _rule(r"\bCodex (?:assisted|generated|helped)", Tool.CODEX),
    # --- GitHub Copilot ---
    _rule(r"Co-Authored-By:\s+GitHub Copilot\b[^<]*<[^>]+>", Tool.GITHUB_COPILOT),
    _rule(r"Co-Authored-By:\s+Copilot\b[^<]*<[^>]+>", Tool.GITHUB_COPILOT),
    _rule(rf"{_LEADS} (?:GitHub )?Copilot\b", Tool.GITHUB_COPILOT),
    _rule(r"\b(?:GitHub )?Copilot (?:assisted|generated|helped|suggestion)", Tool.GITHUB_COPILOT),
    _rule(r"\bAccepted (?:GitHub )?Copilot suggestion", Tool.GITHUB_COPILOT),
    # --- Cursor ---
    _rule(r"Co-Authored-By:\s+Cursor\b[^<]*<[^>]+>", Tool.CURSOR),
    _rule(rf"{_LEADS} Cursor\b", Tool.CURSOR),
    _rule(r"\bCursor (?:AI )?(?:assisted|generated|helped|completion)", Tool.CURSOR),
    # --- Windsurf / Codeium ---
    _rule(r"Co-Authored-By:\s+Windsurf\b[^<]*<[^>]+>", Tool.WINDSURF),
    _rule(r"Co-Authored-By:\s+Codeium\b[^<]*<[^>]+>", Tool.WINDSURF),
    _rule(rf"{_LEADS} (?:Windsurf|Codeium)\b", Tool.WINDSURF),
    _rule(r"\b(?:Windsurf|Codeium) (?:AI )?(?:assisted|generated|helped)", Tool.WINDSURF),
)

# Matched against "<author name> <author email>"
AUTHOR_RULES: tuple[AttributionRule, ...] = (
    _rule(r"copilot-swe-agent\[bot\]", Tool.GITHUB_COPILOT),
)


def detect_all(
    message: Optional[str],
    author_name: Optional[str] = None,
    author_email: Optional[str] = None,
) -> list[AiAttribution]:
    """Return one attribution per distinct tool found, in rule order."""
    found: list[AiAttribution] = []
    seen: set[str] = set()
    text = message or ""

    for rule in MESSAGE_RULES:
        if rule.tool in seen:
            continue
        m = rule.pattern.search(text)
        if m is None:
            continue
        seen.add(rule.tool)
        model = rule.extract_model(m) if rule.extract_model else None
        found.append(AiAttribution(tool=rule.tool, model=model, source=rule.source))

    author = f"{author_name or ''} {author_email or ''}"
    for rule in AUTHOR_RULES:
        if rule.tool in seen:
            continue
        if rule.pattern.search(author):
            seen.add(rule.tool)
            found.append(AiAttribution(tool=rule.tool, model=None, source=AttributionSource.AUTHOR_FIELD))

    return found


def detect_primary(
    message: Optional[str],
    author_name: Optional[str] = None,
    author_email: Optional[str] = None,
) -> Optional[AiAttribution]:
    """The attribution stored on the commit row itself, if any."""
    found = detect_all(message, author_name, author_email)
    return found[0] if found else None
