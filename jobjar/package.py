"""Build orchestration.

``Package(options).create()`` runs the whole build::

    ensure build dir -> resolve runtime JAR -> scratch dir
        -> select (and normalize) gems -> assemble archive -> drop scratch dir

The scratch directory is removed on every exit path. Two builds sharing a
build directory must not run concurrently; callers are responsible for that.
"""

from collections.abc import Iterator, Mapping
import contextlib
import logging
import pathlib
import tempfile
import time

import httpx

from jobjar.archive import ArchiveStats, SupportFiles, assemble_archive, locate_support_files
from jobjar.config import DEFAULT_GEM_GROUPS, ConfigError, PackageConfig, resolve_package_config
from jobjar.dependencies import BundlerDependencySource, resolve_embedded_sources
from jobjar.gems import DependencyEntry, GemSpec
from jobjar.normalize import TransformRegistry, default_registry
from jobjar.runtime import RuntimeArtifact, resolve_runtime_artifact

SUPPORT_GEM: str = "rubydoop"


class Package:
    """A job JAR build.

    :param options: Option overrides, see :data:`jobjar.config.OPTION_NAMES`.
    :param dependency_source: Resolved bundle (defaults to querying Bundler).
    :param registry: Layout transforms (defaults to :func:`default_registry`).
    :param http_client: HTTP client for the runtime download.
    :param maven_repo: Local Maven repository override.
    :param ivy_cache: Local Ivy cache override.
    :param cwd: Default project root (defaults to the process cwd).
    :param logger: Optional logger.
    :raises ConfigError: If the options are invalid.
    """

    def __init__(
        self,
        options: Mapping[str, object] | None = None,
        *,
        dependency_source: BundlerDependencySource | None = None,
        registry: TransformRegistry | None = None,
        http_client: httpx.Client | None = None,
        maven_repo: pathlib.Path | None = None,
        ivy_cache: pathlib.Path | None = None,
        cwd: pathlib.Path | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("jobjar")
        self.config: PackageConfig = resolve_package_config(options, cwd=cwd)
        if dependency_source is None:
            dependency_source = BundlerDependencySource(
                project_root=self.config.project_root,
                gemfile=self.config.gemfile,
                ruby_command=self.config.ruby_command,
                logger=self.logger,
            )
        self.dependency_source: BundlerDependencySource = dependency_source
        self.registry: TransformRegistry = registry if registry is not None else default_registry()
        self.http_client: httpx.Client | None = http_client
        self.maven_repo: pathlib.Path | None = maven_repo
        self.ivy_cache: pathlib.Path | None = ivy_cache

    def create(self) -> pathlib.Path:
        """Build the archive.

        On the first run the ``jruby-complete`` JAR is downloaded into the build
        directory, unless the local Maven repository or Ivy cache has it.

        :returns: Path of the written archive.
        :raises ConfigError: If the project is not set up as configured.
        :raises FetchError: If the runtime JAR cannot be downloaded.
        :raises DependencyError: If the bundle cannot be queried.
        :raises AssemblyError: If the archive cannot be written.
        """

        config: PackageConfig = self.config
        t0: float = time.perf_counter()
        self.logger.info(f"jobjar: project={config.project_root}")
        self.logger.info(f"jobjar: output={config.archive_path}")

        with self._stage("configuration"):
            self._check_inputs()
            config.build_dir.mkdir(parents=True, exist_ok=True)

        with self._stage("runtime"):
            runtime: RuntimeArtifact = resolve_runtime_artifact(
                version=config.jruby_version,
                destination=config.jruby_jar_path,
                maven_repo=self.maven_repo,
                ivy_cache=self.ivy_cache,
                client=self.http_client,
                logger=self.logger,
            )

        with tempfile.TemporaryDirectory(prefix="jobjar_") as td:
            scratch_dir: pathlib.Path = pathlib.Path(td)
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"jobjar: scratch_dir={scratch_dir}")

            with self._stage("support files"):
                support: SupportFiles = self._support_files()

            with self._stage("dependencies"):
                dependencies: list[DependencyEntry] = resolve_embedded_sources(
                    source=self.dependency_source,
                    groups=config.gem_groups,
                    registry=self.registry,
                    scratch_dir=scratch_dir,
                    logger=self.logger,
                )

            with self._stage("assembly"):
                stats: ArchiveStats = assemble_archive(
                    config=config,
                    runtime=runtime,
                    support=support,
                    dependencies=dependencies,
                    logger=self.logger,
                )

        t1: float = time.perf_counter()
        self.logger.info(
            f"jobjar: done in {t1 - t0:.2f}s ({stats.duplicates_skipped} duplicate entries dropped)"
        )
        return config.archive_path

    def _check_inputs(self) -> None:
        config: PackageConfig = self.config
        if config.source_dir.is_dir() is False:
            raise ConfigError(f"Project source directory does not exist: {config.source_dir}")
        missing: list[str] = [str(p) for p in config.lib_jars if p.is_file() is False]
        if len(missing) > 0:
            raise ConfigError(f"Extra JAR(s) not found: {', '.join(missing)}")

    def _support_files(self) -> SupportFiles:
        """Locate the Rubydoop support files, from the config or the bundle.

        :returns: Support files.
        :raises ConfigError: If they cannot be found.
        """

        if self.config.support_dir is not None:
            return locate_support_files(self.config.support_dir)

        # The tool gem usually sits in the default group whatever groups get embedded.
        groups: tuple[str, ...] = tuple(dict.fromkeys((*DEFAULT_GEM_GROUPS, *self.config.gem_groups)))
        spec: GemSpec | None = self.dependency_source.find(SUPPORT_GEM, groups)
        if spec is None:
            raise ConfigError(
                f"The {SUPPORT_GEM} gem is not in the bundle for groups {list(groups)}; "
                "add it to the Gemfile or set support_dir."
            )
        return locate_support_files(spec.full_gem_path)

    @contextlib.contextmanager
    def _stage(self, name: str) -> Iterator[None]:
        try:
            yield
        except Exception as e:
            self.logger.error(f"jobjar: {name} stage failed: {e}")
            raise


def create_package(options: Mapping[str, object] | None = None, **kwargs: object) -> pathlib.Path:
    """Build a job JAR; see :class:`Package`.

    :param options: Option overrides.
    :param kwargs: Keyword arguments forwarded to :class:`Package`.
    :returns: Path of the written archive.
    """

    return Package(options, **kwargs).create()  # type: ignore[arg-type]
