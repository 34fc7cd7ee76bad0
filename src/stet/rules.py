"""Cursor rule (.mdc) loading with nested .cursor/rules support."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

from .constants import STATE_DIR_NAME

logger = logging.getLogger(__name__)

# the state directory holds baseline worktrees, full checkouts of the repo
_SKIP_DIRS = frozenset({".git", "vendor", "node_modules", STATE_DIR_NAME})
_DESCRIPTION_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")

DESCRIPTION_GLOB_MAP: dict[str, tuple[str, ...]] = {
    "typescript": ("*.ts", "*.tsx"),
    "ts": ("*.ts", "*.tsx"),
    "go": ("*.go",),
    "golang": ("*.go",),
    "python": ("*.py",),
    "py": ("*.py",),
    "react": ("*.tsx", "*.jsx"),
    "javascript": ("*.js", "*.jsx"),
    "js": ("*.js", "*.jsx"),
    "frontend": ("frontend/*",),
    "backend": ("backend/*",),
    "cli": ("cli/*",),
    "extension": ("extension/*",),
    "api": ("api/*",),
}


@dataclass
class CursorRule:
    """A single project review rule parsed from an .mdc file."""

    globs: list[str] = field(default_factory=list)
    always_apply: bool = False
    description: str = ""
    content: str = ""
    source: str = ""
    # Directory (relative to repo root) that owns the .cursor/rules folder
    scope: str = ""
    _spec: PathSpec | None = field(default=None, repr=False, compare=False)

    def matches(self, file_path: str) -> bool:
        """Check whether the rule applies to a repo-relative path."""
        if self.always_apply:
            return True
        if not self.globs:
            return False
        rel = file_path.replace("\\", "/")
        if self.scope:
            if not rel.startswith(self.scope + "/"):
                return False
            rel = rel[len(self.scope) + 1 :]
        if self._spec is None:
            self._spec = PathSpec.from_lines(GitWildMatchPattern, self.globs)
        return self._spec.match_file(rel)


def _normalize_globs(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [v for v in value if isinstance(v, str)]
    else:
        return []
    return [g.strip() for g in items if g.strip()]


def infer_globs_from_description(description: str) -> list[str]:
    """Infer file globs from keywords in a rule description (e.g. "go" -> ``*.go``)."""
    out: list[str] = []
    for token in _DESCRIPTION_TOKEN_SPLIT.split(description.lower()):
        for glob in DESCRIPTION_GLOB_MAP.get(token, ()):
            if glob not in out:
                out.append(glob)
    return out


def parse_mdc(content: str, source: str = "", scope: str = "") -> CursorRule | None:
    """Parse an .mdc document: YAML frontmatter between ``---`` lines, then the body.

    Returns None when the frontmatter is missing or is not valid YAML.
    """
    parts = content.split("---", 2)
    if len(parts) < 2:
        return None
    try:
        frontmatter = yaml.safe_load(parts[1].strip()) or {}
    except yaml.YAMLError as e:
        logger.debug(f"Invalid frontmatter in {source or 'rule'}: {e}")
        return None
    if not isinstance(frontmatter, dict):
        return None
    rule = CursorRule(
        globs=_normalize_globs(frontmatter.get("globs")),
        always_apply=bool(frontmatter.get("alwaysApply", False)),
        description=str(frontmatter.get("description") or "").strip(),
        content=parts[2].strip() if len(parts) == 3 else "",
        source=source,
        scope=scope,
    )
    if not rule.globs and not rule.always_apply and rule.description:
        rule.globs = infer_globs_from_description(rule.description)
    return rule


def load_rules_dir(rules_dir: Path, scope: str = "") -> list[CursorRule]:
    """Load every .mdc file in a rules directory; unreadable files are skipped."""
    try:
        entries = sorted(p for p in rules_dir.iterdir() if p.is_file() and p.suffix.lower() == ".mdc")
    except OSError as e:
        logger.debug(f"Cannot list rules in {rules_dir}: {e}")
        return []
    rules = []
    for path in entries:
        try:
            text = path.read_text(encoding="utf-8", errors="ignore")
        except OSError as e:
            logger.debug(f"Cannot read rule {path}: {e}")
            continue
        rule = parse_mdc(text, source=path.name, scope=scope)
        if rule is not None:
            rules.append(rule)
    return rules


def filter_rules(rules: list[CursorRule], file_path: str) -> list[CursorRule]:
    """Rules applying to ``file_path``, ``alwaysApply`` rules first."""
    always = [r for r in rules if r.always_apply]
    matched = [r for r in rules if not r.always_apply and r.matches(file_path)]
    return always + matched


class RulesLoader:
    """Discovers nested ``.cursor/rules`` folders and caches parsed rules per folder.

    One loader is created per run; the cache lives as long as the loader.
    """

    def __init__(self, repo_root: Path):
        self.repo_root = Path(repo_root)
        self._dirs: list[tuple[str, Path]] = self._discover()
        self._cache: dict[Path, list[CursorRule]] = {}

    def _discover(self) -> list[tuple[str, Path]]:
        found: list[tuple[str, Path]] = []
        stack = [self.repo_root]
        while stack:
            current = stack.pop()
            try:
                children = [p for p in current.iterdir() if p.is_dir()]
            except OSError as e:
                logger.debug(f"Cannot scan {current}: {e}")
                continue
            for child in children:
                if child.name in _SKIP_DIRS:
                    continue
                if child.name == ".cursor":
                    rules_dir = child / "rules"
                    if rules_dir.is_dir():
                        rel = current.relative_to(self.repo_root).as_posix()
                        found.append(("" if rel == "." else rel, rules_dir))
                    continue
                stack.append(child)
        # Root rules first, then nested folders by path
        found.sort(key=lambda item: (item[0] != "", item[0]))
        return found

    @property
    def dirs(self) -> list[tuple[str, Path]]:
        return list(self._dirs)

    def rules_for_file(self, file_path: str) -> list[CursorRule]:
        """All rules from folders that are ancestors of ``file_path``."""
        path = file_path.replace("\\", "/")
        merged: list[CursorRule] = []
        for scope, rules_dir in self._dirs:
            if scope and path != scope and not path.startswith(scope + "/"):
                continue
            if rules_dir not in self._cache:
                self._cache[rules_dir] = load_rules_dir(rules_dir, scope=scope)
            merged.extend(self._cache[rules_dir])
        return merged
