"""Dependency selection.

Bundler has already resolved the bundle; this module only decides which gems
get embedded and how:

- ``bundler`` itself and ``rubydoop`` are never embedded as gems (the latter
  is packaged separately as support files).
- Gems with a registered layout transform are normalized into the scratch
  directory first.
- Every other gem contributes its require paths and its ``.rb`` files.
"""

import json
import logging
import os
import pathlib
import subprocess
import textwrap

from jobjar.gems import DependencyEntry, GemSpec
from jobjar.normalize import TransformRegistry


class DependencyError(RuntimeError):
    """Raised when the resolved bundle cannot be queried."""


EXCLUDED_GEMS: frozenset[str] = frozenset({"bundler", "rubydoop"})

_SPECS_SCRIPT: str = textwrap.dedent(
    """
    require 'bundler'
    require 'json'
    groups = ARGV.map(&:to_sym)
    specs = Bundler.definition.specs_for(groups).map do |spec|
      {
        'name' => spec.name,
        'version' => spec.version.to_s,
        'full_gem_path' => spec.full_gem_path,
        'require_paths' => spec.require_paths,
        'files' => spec.files,
      }
    end
    STDOUT.write(JSON.generate(specs))
    """
).strip()


class BundlerDependencySource:
    """Query a project's resolved bundle through a Ruby subprocess.

    :param project_root: Directory the query runs in.
    :param gemfile: Gemfile to load (``BUNDLE_GEMFILE``).
    :param ruby_command: Ruby interpreter (``ruby`` or ``jruby``).
    :param logger: Optional logger.
    """

    def __init__(
        self,
        *,
        project_root: pathlib.Path,
        gemfile: pathlib.Path,
        ruby_command: str = "ruby",
        logger: logging.Logger | None = None,
    ) -> None:
        self.project_root: pathlib.Path = project_root
        self.gemfile: pathlib.Path = gemfile
        self.ruby_command: str = ruby_command
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("jobjar")
        self._cache: dict[tuple[str, ...], list[GemSpec]] = {}

    def specs_for(self, groups: tuple[str, ...]) -> list[GemSpec]:
        """Return the bundle's gems for ``groups``, in Bundler's order.

        :param groups: Bundler group names.
        :returns: Gem specs.
        :raises DependencyError: If Bundler cannot be queried.
        """

        cached: list[GemSpec] | None = self._cache.get(groups)
        if cached is not None:
            return list(cached)

        if self.gemfile.is_file() is False:
            raise DependencyError(f"Gemfile does not exist: {self.gemfile}")

        cmd: list[str] = [self.ruby_command, "-e", _SPECS_SCRIPT, *groups]
        env: dict[str, str] = dict(os.environ)
        env["BUNDLE_GEMFILE"] = str(self.gemfile)
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"jobjar: querying bundle {self.gemfile} groups={list(groups)}")

        try:
            proc = subprocess.run(
                cmd,
                cwd=self.project_root,
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise DependencyError(f"Could not run {self.ruby_command!r} to query {self.gemfile}: {e}") from e

        if proc.returncode != 0:
            raise DependencyError(
                f"Bundler query failed for {self.gemfile} (exit={proc.returncode}):\n{proc.stderr.strip()}"
            )

        specs: list[GemSpec] = parse_specs_json(proc.stdout, source=str(self.gemfile))
        self._cache[groups] = specs
        return list(specs)

    def find(self, name: str, groups: tuple[str, ...]) -> GemSpec | None:
        for spec in self.specs_for(groups):
            if spec.name == name:
                return spec
        return None


def parse_specs_json(payload: str, *, source: str) -> list[GemSpec]:
    """Parse the JSON printed by the Bundler query script.

    :param payload: JSON text.
    :param source: Description of where the payload came from (for errors).
    :returns: Gem specs.
    :raises DependencyError: If the payload is malformed.
    """

    try:
        raw: object = json.loads(payload)
    except json.JSONDecodeError as e:
        raise DependencyError(f"Bundler query for {source} returned invalid JSON: {e}") from e
    if isinstance(raw, list) is False:
        raise DependencyError(f"Bundler query for {source} returned {type(raw).__name__}, expected a list")

    specs: list[GemSpec] = []
    for item in raw:  # type: ignore[union-attr]
        try:
            specs.append(
                GemSpec(
                    name=str(item["name"]),
                    version=str(item["version"]),
                    full_gem_path=pathlib.Path(item["full_gem_path"]),
                    require_paths=tuple(str(p) for p in item["require_paths"]),
                    files=tuple(str(f) for f in item["files"]),
                )
            )
        except (KeyError, TypeError) as e:
            raise DependencyError(f"Bundler query for {source} returned a malformed spec: {item!r}") from e
    return specs


def select_dependencies(
    *,
    specs: list[GemSpec],
    registry: TransformRegistry,
    scratch_dir: pathlib.Path,
    logger: logging.Logger | None = None,
) -> list[DependencyEntry]:
    """Turn resolved gems into the entries to embed, keeping their order.

    :param specs: Resolved gems, in Bundler's order.
    :param registry: Layout transforms for non-conforming gems.
    :param scratch_dir: Scratch directory for normalized copies.
    :param logger: Optional logger.
    :returns: Dependency entries.
    :raises LayoutError: If a non-conforming gem cannot be normalized.
    """

    if logger is None:
        logger = logging.getLogger("jobjar")

    entries: list[DependencyEntry] = []
    for spec in specs:
        if spec.name in EXCLUDED_GEMS:
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"jobjar: skipping {spec.full_name}")
            continue

        if registry.match(spec.name) is not None:
            entries.append(registry.normalize(spec, scratch_dir=scratch_dir, logger=logger))
            continue

        entries.append(
            DependencyEntry(
                name=spec.name,
                version=spec.version,
                base_dir=spec.full_gem_path,
                require_paths=spec.require_paths,
                files=tuple(f for f in spec.files if f.endswith(".rb") is True),
            )
        )

    logger.info(f"jobjar: selected {len(entries)} of {len(specs)} gems")
    return entries


def resolve_embedded_sources(
    *,
    source: BundlerDependencySource,
    groups: tuple[str, ...],
    registry: TransformRegistry,
    scratch_dir: pathlib.Path,
    logger: logging.Logger | None = None,
) -> list[DependencyEntry]:
    """Query ``source`` for ``groups`` and select the entries to embed.

    :param source: Resolved bundle.
    :param groups: Bundler groups.
    :param registry: Layout transforms.
    :param scratch_dir: Scratch directory.
    :param logger: Optional logger.
    :returns: Dependency entries.
    """

    if len(groups) == 0:
        return []
    return select_dependencies(
        specs=source.specs_for(groups),
        registry=registry,
        scratch_dir=scratch_dir,
        logger=logger,
    )
