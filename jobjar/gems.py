"""Gem records shared by dependency selection and layout normalization."""

from dataclasses import dataclass
import pathlib


@dataclass(frozen=True, slots=True)
class GemSpec:
    """One gem of a resolved bundle, as reported by Bundler.

    :ivar name: Gem name (e.g. ``json``).
    :ivar version: Gem version string.
    :ivar full_gem_path: Installed gem directory.
    :ivar require_paths: Require paths relative to ``full_gem_path`` (usually ``lib``).
    :ivar files: Every file declared by the gemspec, relative to ``full_gem_path``.
    """

    name: str
    version: str
    full_gem_path: pathlib.Path
    require_paths: tuple[str, ...]
    files: tuple[str, ...]

    @property
    def full_name(self) -> str:
        return f"{self.name}-{self.version}"


@dataclass(frozen=True, slots=True)
class DependencyEntry:
    """Sources of one gem to embed under ``classes/``.

    :ivar name: Gem name.
    :ivar version: Gem version string.
    :ivar base_dir: Directory the relative paths below are taken from.
    :ivar require_paths: Directories embedded recursively, paths kept.
    :ivar files: Individual Ruby files embedded, paths kept.
    """

    name: str
    version: str
    base_dir: pathlib.Path
    require_paths: tuple[str, ...]
    files: tuple[str, ...]
