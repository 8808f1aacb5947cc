"""Layout normalization for gems that do not fit a flat ``classes/`` tree.

Most gems can be merged as-is: their require paths land under ``classes/`` and
resolve on the JRuby load path. A few gems assume extra load-path entries that
only exist in an installed gem, e.g. ``jruby-openssl`` ships::

    lib/shared/openssl.rb      (loads ../1.8 or ../1.9 at runtime)
    lib/shared/openssl/...
    lib/1.8/openssl/...
    lib/1.9/openssl/...

Such gems are copied into the scratch directory and rewritten by a transform
registered for their name, never in place (installed gems are often shared
or read-only).
"""

from collections.abc import Callable
from dataclasses import dataclass
import logging
import os
import pathlib
import re
import shutil
import stat

from jobjar.config import ConfigError
from jobjar.gems import DependencyEntry, GemSpec


class LayoutError(ConfigError):
    """Raised when a gem's layout does not match its transform's assumptions."""


LayoutTransform = Callable[[pathlib.Path], tuple[str, ...]]
"""Rewrites a copied gem tree in place and returns its new require paths."""


@dataclass(frozen=True, slots=True)
class VariantMergeTransform:
    """Fold per-version variant directories under the gem's own namespace.

    Given ``lib/<shared_dir>`` and sibling ``lib/<variant>`` directories, the
    result is a single ``lib`` where each variant lives at
    ``lib/<namespace>/<variant>``, with ``../<variant>`` references in the
    entry file pointing at the new location.

    :ivar namespace: Namespace directory the variants are moved under.
    :ivar shared_dir: Directory (under ``lib_dir``) holding the entry file.
    :ivar variant_dirs: Version-specific sibling directories.
    :ivar entry_file: Primary file, relative to ``shared_dir``.
    :ivar lib_dir: The gem's require path.
    """

    namespace: str
    shared_dir: str
    variant_dirs: tuple[str, ...]
    entry_file: str
    lib_dir: str = "lib"

    def __call__(self, root: pathlib.Path) -> tuple[str, ...]:
        lib: pathlib.Path = root / self.lib_dir
        shared: pathlib.Path = lib / self.shared_dir
        variants: list[pathlib.Path] = [lib / v for v in self.variant_dirs]

        missing: list[str] = []
        if shared.is_dir() is False:
            missing.append(f"{self.lib_dir}/{self.shared_dir}/")
        elif (shared / self.entry_file).is_file() is False:
            missing.append(f"{self.lib_dir}/{self.shared_dir}/{self.entry_file}")
        for v in variants:
            if v.is_dir() is False:
                missing.append(f"{self.lib_dir}/{v.name}/")
        if len(missing) > 0:
            raise LayoutError(f"Unexpected gem layout in {root}: missing {', '.join(missing)}")

        merged: pathlib.Path = root / f"{self.lib_dir}.merged"
        if merged.exists() is True:
            raise LayoutError(f"Unexpected gem layout in {root}: {merged.name} already exists")

        shutil.move(str(shared), str(merged))
        ns_dir: pathlib.Path = merged / self.namespace
        ns_dir.mkdir(parents=True, exist_ok=True)
        for v in variants:
            dest: pathlib.Path = ns_dir / v.name
            if dest.exists() is True:
                raise LayoutError(f"Cannot merge {v} into {dest}: destination exists")
            shutil.move(str(v), str(dest))

        entry_path: pathlib.Path = merged / self.entry_file
        text: str = entry_path.read_text(encoding="utf-8")
        for v in self.variant_dirs:
            text = text.replace(f"../{v}", f"{self.namespace}/{v}")
        entry_path.write_text(text, encoding="utf-8")

        shutil.rmtree(lib)
        merged.rename(lib)
        return (self.lib_dir,)


class TransformRegistry:
    """Layout transforms keyed by gem-name pattern.

    Patterns are full-match regular expressions on the gem name; the first
    registered match wins.
    """

    def __init__(self) -> None:
        self._transforms: list[tuple[re.Pattern[str], LayoutTransform]] = []

    def register(self, pattern: str, transform: LayoutTransform) -> None:
        """Register a transform for gems whose name fully matches ``pattern``.

        :param pattern: Regular expression.
        :param transform: Callable rewriting a copied gem tree.
        """

        self._transforms.append((re.compile(pattern), transform))

    def match(self, gem_name: str) -> LayoutTransform | None:
        for pattern, transform in self._transforms:
            if pattern.fullmatch(gem_name) is not None:
                return transform
        return None

    def normalize(
        self,
        spec: GemSpec,
        *,
        scratch_dir: pathlib.Path,
        logger: logging.Logger | None = None,
    ) -> DependencyEntry:
        """Copy a gem into ``scratch_dir`` and rewrite the copy.

        :param spec: Gem to normalize (must have a registered transform).
        :param scratch_dir: Scratch directory owned by the current build.
        :param logger: Optional logger.
        :returns: Entry pointing at the rewritten copy.
        :raises LayoutError: If the gem has no transform or an unexpected layout.
        """

        if logger is None:
            logger = logging.getLogger("jobjar")

        transform: LayoutTransform | None = self.match(spec.name)
        if transform is None:
            raise LayoutError(f"No layout transform registered for gem {spec.name!r}")
        if spec.full_gem_path.is_dir() is False:
            raise LayoutError(f"Gem directory does not exist: {spec.full_gem_path}")

        work_dir: pathlib.Path = scratch_dir / spec.full_name
        if work_dir.exists() is True:
            raise LayoutError(f"Gem {spec.full_name} normalized twice into {work_dir}")

        logger.info(f"jobjar: normalizing layout of {spec.full_name}")
        shutil.copytree(spec.full_gem_path, work_dir, symlinks=True)
        _make_writable(work_dir)
        require_paths: tuple[str, ...] = transform(work_dir)
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"jobjar: normalized {spec.full_name} into {work_dir} (require_paths={list(require_paths)})")

        return DependencyEntry(
            name=spec.name,
            version=spec.version,
            base_dir=work_dir,
            require_paths=require_paths,
            files=(),
        )


def _make_writable(root: pathlib.Path) -> None:
    """Add owner write permission to a copied tree (sources may be read-only).

    :param root: Tree root.
    """

    for dirpath, dirnames, filenames in os.walk(root):
        for name in [*dirnames, *filenames]:
            p: str = os.path.join(dirpath, name)
            if os.path.islink(p) is True:
                continue
            mode: int = os.stat(p).st_mode
            os.chmod(p, mode | stat.S_IWUSR)
    os.chmod(root, os.stat(root).st_mode | stat.S_IWUSR)


def default_registry() -> TransformRegistry:
    """Build a registry with the transforms for known non-conforming gems.

    :returns: New registry.
    """

    registry: TransformRegistry = TransformRegistry()
    registry.register(
        r"jruby-openssl",
        VariantMergeTransform(
            namespace="openssl",
            shared_dir="shared",
            variant_dirs=("1.8", "1.9"),
            entry_file="openssl.rb",
        ),
    )
    return registry
