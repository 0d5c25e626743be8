"""Path ignore filtering using .gitignore and hardcoded exclusions."""

from __future__ import annotations

from pathlib import Path

import pathspec

DEFAULT_EXCLUDES = (".git/", ".venv/", "node_modules/", "__pycache__/")


class PathFilter:
    def __init__(self, root: Path, extra_patterns: list[str] | None = None) -> None:
        self.root = root.resolve()
        self._spec = self._build_spec(extra_patterns or [])

    def _build_spec(self, extra_patterns: list[str]) -> pathspec.PathSpec:
        patterns: list[str] = [*DEFAULT_EXCLUDES, *extra_patterns]

        gitignore = self.root / ".gitignore"
        if gitignore.exists():
            for line in gitignore.read_text(encoding="utf-8", errors="replace").splitlines():
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                patterns.append(line)

        return pathspec.PathSpec.from_lines("gitwildmatch", patterns)

    def include(self, path: Path) -> bool:
        try:
            rel = path.resolve().relative_to(self.root)
        except ValueError:
            return False

        rel_text = rel.as_posix()
        if path.is_dir():
            rel_text = f"{rel_text}/"
        return not self._spec.match_file(rel_text)
