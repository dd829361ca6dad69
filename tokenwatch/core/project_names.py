"""
Project display names.

Project directories are named after the working directory path with
separators flattened to dashes, e.g. ``-Users-alice-Development-tokenwatch``.
These helpers turn them into short display names and apply user aliases.
"""

import re
from typing import Dict, Mapping, Optional

UNKNOWN_PROJECT_LABEL = "Unknown Project"

_WINDOWS_USERS_RE = re.compile(r"^[A-Z]:\\Users\\|^\\Users\\")
_UUID_RE = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}", re.IGNORECASE)
_BRANCH_WORD_RE = re.compile(
    r"^(?:dev|development|feat|feature|fix|bug|test|staging|prod|production|main|master|branch)$",
    re.IGNORECASE,
)
_EDGE_SEPARATORS_RE = re.compile(r"^[/\\-]+|[/\\-]+$")


def _strip_home_prefix(name: str) -> str:
    # Drop "Users/<user>/<dir>" so only the path below it remains
    if _WINDOWS_USERS_RE.match(name):
        segments = name.split("\\")
        if "Users" in segments:
            index = segments.index("Users")
            if index + 3 < len(segments):
                name = "-".join(segments[index + 3:])

    if name.startswith("-Users-") or name.startswith("/Users/"):
        separator = "-" if name.startswith("-Users-") else "/"
        segments = [s for s in name.split(separator) if s]
        if "Users" in segments:
            index = segments.index("Users")
            if index + 3 < len(segments):
                name = "-".join(segments[index + 3:])
    return name


def parse_project_name(raw: str) -> str:
    """Shorten a raw project directory name for display.

    >>> parse_project_name("-Users-alice-Development-tokenwatch")
    'tokenwatch'
    """
    if raw in ("", "unknown"):
        return UNKNOWN_PROJECT_LABEL

    cleaned = _strip_home_prefix(raw)
    if cleaned == raw:
        cleaned = _EDGE_SEPARATORS_RE.sub("", raw)

    if _UUID_RE.match(cleaned):
        parts = cleaned.split("-")
        if len(parts) >= 5:
            cleaned = "-".join(parts[-2:])

    # "project--feature-branch" keeps the project part
    if "--" in cleaned:
        cleaned = cleaned.split("--")[0]

    if "-" in cleaned and len(cleaned) > 20:
        meaningful = [s for s in cleaned.split("-") if len(s) > 2 and not _BRANCH_WORD_RE.match(s)]
        if len(meaningful) >= 2:
            tail = "-".join(meaningful[-2:])
            if len(tail) >= 6:
                cleaned = tail
            elif len(meaningful) >= 3:
                cleaned = "-".join(meaningful[-3:])

    cleaned = _EDGE_SEPARATORS_RE.sub("", cleaned)
    return cleaned or raw or UNKNOWN_PROJECT_LABEL


def parse_alias_pairs(text: Optional[str]) -> Dict[str, str]:
    """Parse ``raw=Alias,other=Other Alias``; incomplete pairs are ignored."""
    aliases: Dict[str, str] = {}
    if not text:
        return aliases
    for pair in text.split(","):
        raw, sep, alias = pair.partition("=")
        raw, alias = raw.strip(), alias.strip()
        if sep and raw and alias:
            aliases[raw] = alias
    return aliases


class ProjectNameFormatter:
    """Display names for projects, with aliases and a per-run cache.

    An alias may be keyed by the raw directory name or by its parsed short
    name; the raw name is checked first.
    """

    def __init__(self, aliases: Optional[Mapping[str, str]] = None):
        self.aliases: Dict[str, str] = dict(aliases or {})
        self._cache: Dict[str, str] = {}

    @classmethod
    def from_config(cls, aliases: Optional[Mapping[str, str]], extra: Optional[str] = None) -> "ProjectNameFormatter":
        """Config aliases overlaid with ``raw=Alias`` pairs from the command line."""
        merged = dict(aliases or {})
        merged.update(parse_alias_pairs(extra))
        return cls(merged)

    def format(self, raw: str) -> str:
        cached = self._cache.get(raw)
        if cached is not None:
            return cached

        if raw in self.aliases:
            name = self.aliases[raw]
        else:
            parsed = parse_project_name(raw)
            name = self.aliases.get(parsed, parsed)
        self._cache[raw] = name
        return name

    def clear(self) -> None:
        self._cache.clear()
