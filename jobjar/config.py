"""Package configuration.

Options are given as a plain mapping (from the CLI or from Python callers) and
resolved against defaults into an immutable :class:`PackageConfig`:

- Unknown option names are rejected instead of being ignored.
- Every path is made absolute, relative paths being taken from the project root.
- Derived defaults (build dir, archive path, runtime JAR path) follow the
  project root, the project name and the JRuby version.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import os
import pathlib
import re


class ConfigError(ValueError):
    """Raised when package options cannot be resolved into a usable config."""


DEFAULT_JRUBY_VERSION: str = "9.4.8.0"
DEFAULT_MAIN_CLASS: str = "rubydoop.RubydoopJobRunner"
DEFAULT_GEM_GROUPS: tuple[str, ...] = ("default",)
RUNTIME_ARTIFACT_NAME: str = "jruby-complete"

OPTION_NAMES: frozenset[str] = frozenset(
    {
        "project_root",
        "project_name",
        "build_dir",
        "archive_path",
        "source_dir",
        "gem_groups",
        "lib_jars",
        "jruby_version",
        "jruby_jar_path",
        "main_class",
        "support_dir",
        "gemfile",
        "ruby_command",
    }
)

_VERSION_RE: re.Pattern[str] = re.compile(r"^\d+(?:\.[0-9A-Za-z]+)+$")
_GROUP_RE: re.Pattern[str] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True, slots=True)
class PackageConfig:
    """Resolved packaging configuration.

    :ivar project_root: Project base directory.
    :ivar project_name: Archive name without the ``.jar`` suffix.
    :ivar build_dir: Directory receiving the archive and the cached runtime JAR.
    :ivar archive_path: Output archive path.
    :ivar source_dir: Project source tree, embedded under ``classes/``.
    :ivar gem_groups: Bundler groups whose gems are embedded.
    :ivar lib_jars: Extra JAR files embedded under ``lib/``.
    :ivar jruby_version: JRuby version to embed.
    :ivar jruby_jar_path: Where the ``jruby-complete`` JAR is cached.
    :ivar main_class: ``Main-Class`` manifest attribute.
    :ivar support_dir: Rubydoop gem directory, or ``None`` to discover it from the bundle.
    :ivar gemfile: Gemfile used to query Bundler.
    :ivar ruby_command: Ruby interpreter used to query Bundler.
    """

    project_root: pathlib.Path
    project_name: str
    build_dir: pathlib.Path
    archive_path: pathlib.Path
    source_dir: pathlib.Path
    gem_groups: tuple[str, ...]
    lib_jars: tuple[pathlib.Path, ...]
    jruby_version: str
    jruby_jar_path: pathlib.Path
    main_class: str
    support_dir: pathlib.Path | None
    gemfile: pathlib.Path
    ruby_command: str


def validate_jruby_version(version: str) -> str:
    """Check that a JRuby version identifier is well formed.

    The version is embedded in cache paths and URLs, so anything other than
    dotted alphanumerics (``9.4.8.0``, ``1.7.0.preview1``) is refused.

    :param version: Candidate version.
    :returns: The version, unchanged.
    :raises ConfigError: If the version is malformed.
    """

    if _VERSION_RE.match(version) is None:
        raise ConfigError(f"Invalid JRuby version {version!r}; expected e.g. '9.4.8.0'.")
    return version


def resolve_package_config(
    options: Mapping[str, object] | None = None,
    *,
    cwd: pathlib.Path | None = None,
) -> PackageConfig:
    """Merge caller options onto the defaults.

    ``None`` values count as "not given", so CLI namespaces can be passed
    through without filtering.

    :param options: Option overrides keyed by :data:`OPTION_NAMES`.
    :param cwd: Directory used as the default project root (defaults to the process cwd).
    :returns: Resolved config.
    :raises ConfigError: If an option is unknown or invalid.
    """

    given: dict[str, object] = {}
    if options is not None:
        unknown: list[str] = sorted(k for k in options if k not in OPTION_NAMES)
        if len(unknown) > 0:
            raise ConfigError(
                f"Unknown package option(s): {', '.join(unknown)}. "
                f"Known options: {', '.join(sorted(OPTION_NAMES))}."
            )
        given = {k: v for k, v in options.items() if v is not None}

    base: pathlib.Path = cwd if cwd is not None else pathlib.Path.cwd()
    project_root: pathlib.Path = _abs_path(given.get("project_root", base), base=base)

    project_name: str = _as_str(given.get("project_name", project_root.name), name="project_name")
    if len(project_name) == 0 or "/" in project_name or os.sep in project_name:
        raise ConfigError(f"Invalid project_name {project_name!r}.")

    jruby_version: str = validate_jruby_version(
        _as_str(given.get("jruby_version", DEFAULT_JRUBY_VERSION), name="jruby_version")
    )

    build_dir: pathlib.Path = _abs_path(given.get("build_dir", project_root / "build"), base=project_root)
    archive_path: pathlib.Path = _abs_path(
        given.get("archive_path", build_dir / f"{project_name}.jar"),
        base=project_root,
    )
    jruby_jar_path: pathlib.Path = _abs_path(
        given.get("jruby_jar_path", build_dir / f"{RUNTIME_ARTIFACT_NAME}-{jruby_version}.jar"),
        base=project_root,
    )
    source_dir: pathlib.Path = _abs_path(given.get("source_dir", project_root / "lib"), base=project_root)
    gemfile: pathlib.Path = _abs_path(given.get("gemfile", project_root / "Gemfile"), base=project_root)

    support_dir: pathlib.Path | None = None
    if "support_dir" in given:
        support_dir = _abs_path(given["support_dir"], base=project_root)

    gem_groups: tuple[str, ...] = _resolve_groups(given.get("gem_groups", DEFAULT_GEM_GROUPS))

    lib_jars: tuple[pathlib.Path, ...] = tuple(
        _abs_path(p, base=project_root) for p in _as_sequence(given.get("lib_jars", ()), name="lib_jars")
    )

    main_class: str = _as_str(given.get("main_class", DEFAULT_MAIN_CLASS), name="main_class")
    if len(main_class.strip()) == 0:
        raise ConfigError("main_class must not be empty.")

    ruby_command: str = _as_str(given.get("ruby_command", "ruby"), name="ruby_command")

    return PackageConfig(
        project_root=project_root,
        project_name=project_name,
        build_dir=build_dir,
        archive_path=archive_path,
        source_dir=source_dir,
        gem_groups=gem_groups,
        lib_jars=lib_jars,
        jruby_version=jruby_version,
        jruby_jar_path=jruby_jar_path,
        main_class=main_class,
        support_dir=support_dir,
        gemfile=gemfile,
        ruby_command=ruby_command,
    )


def _resolve_groups(value: object) -> tuple[str, ...]:
    """Normalize Bundler group names, keeping order and dropping repeats.

    :param value: A group name or a sequence of group names.
    :returns: Group names.
    :raises ConfigError: If a group name is invalid.
    """

    groups: list[str] = []
    for g in _as_sequence(value, name="gem_groups"):
        name: str = str(g)
        if _GROUP_RE.match(name) is None:
            raise ConfigError(f"Invalid gem group {name!r}.")
        if name not in groups:
            groups.append(name)
    return tuple(groups)


def _abs_path(value: object, *, base: pathlib.Path) -> pathlib.Path:
    """Resolve a path option to an absolute path.

    :param value: ``str`` or ``os.PathLike`` value.
    :param base: Directory that relative paths are taken from.
    :returns: Absolute path.
    :raises ConfigError: If the value is not path-like.
    """

    if isinstance(value, (str, os.PathLike)) is False:
        raise ConfigError(f"Expected a path, got {type(value).__name__}: {value!r}")
    p: pathlib.Path = pathlib.Path(value).expanduser()  # type: ignore[arg-type]
    if p.is_absolute() is False:
        p = base / p
    return p.resolve()


def _as_str(value: object, *, name: str) -> str:
    if isinstance(value, str) is False:
        raise ConfigError(f"Option {name} must be a string, got {type(value).__name__}.")
    return value  # type: ignore[return-value]


def _as_sequence(value: object, *, name: str) -> list[object]:
    if isinstance(value, (str, os.PathLike)):
        return [value]
    if isinstance(value, Iterable) is False:
        raise ConfigError(f"Option {name} must be a list, got {type(value).__name__}.")
    return list(value)  # type: ignore[arg-type]
