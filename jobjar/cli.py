"""Command line interface for jobjar."""

import argparse
import logging
import pathlib
import sys

from jobjar.config import DEFAULT_JRUBY_VERSION, DEFAULT_MAIN_CLASS
from jobjar.package import create_package


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the jobjar logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("jobjar")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="jobjar",
        description="Package a JRuby project and its gems into a single Hadoop job JAR.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Build the job JAR.",
    )
    p_build.add_argument(
        "--project-root",
        type=pathlib.Path,
        default=None,
        help="Project base directory (defaults to the current directory).",
    )
    p_build.add_argument(
        "--name",
        type=str,
        default=None,
        help="JAR name without .jar (defaults to the project directory name).",
    )
    p_build.add_argument(
        "--build-dir",
        type=pathlib.Path,
        default=None,
        help="Build directory (defaults to <project root>/build).",
    )
    p_build.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        default=None,
        help="Output JAR path (defaults to <build dir>/<name>.jar).",
    )
    p_build.add_argument(
        "--source-dir",
        type=pathlib.Path,
        default=None,
        help="Project source directory embedded under classes/ (defaults to <project root>/lib).",
    )
    p_build.add_argument(
        "-g",
        "--group",
        dest="groups",
        action="append",
        default=None,
        help="Gemfile group to embed; repeat for several (defaults to 'default').",
    )
    p_build.add_argument(
        "--no-gems",
        action="store_true",
        help="Embed no gems at all.",
    )
    p_build.add_argument(
        "--lib-jar",
        dest="lib_jars",
        type=pathlib.Path,
        action="append",
        default=None,
        help="Extra JAR to place in lib/; repeat for several.",
    )
    p_build.add_argument(
        "--jruby-version",
        type=str,
        default=None,
        help=f"JRuby version to embed (defaults to {DEFAULT_JRUBY_VERSION}).",
    )
    p_build.add_argument(
        "--jruby-jar",
        type=pathlib.Path,
        default=None,
        help="Path of a local jruby-complete JAR (downloaded and cached there when missing).",
    )
    p_build.add_argument(
        "--main-class",
        type=str,
        default=None,
        help=f"Main-Class manifest attribute (defaults to {DEFAULT_MAIN_CLASS}).",
    )
    p_build.add_argument(
        "--support-dir",
        type=pathlib.Path,
        default=None,
        help="Rubydoop gem directory (defaults to the rubydoop gem of the bundle).",
    )
    p_build.add_argument(
        "--gemfile",
        type=pathlib.Path,
        default=None,
        help="Gemfile to read (defaults to <project root>/Gemfile).",
    )
    p_build.add_argument(
        "--ruby",
        type=str,
        default=None,
        help="Ruby interpreter used to query Bundler (defaults to 'ruby').",
    )
    p_build.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging.",
    )
    p_build.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass twice to only show errors.",
    )
    return parser


def _abs(path: pathlib.Path | None) -> pathlib.Path | None:
    if path is None:
        return None
    return path.expanduser().resolve()


def main(argv: list[str] | None = None) -> int:
    """Run the jobjar CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = _build_parser()
    ns = parser.parse_args(argv)
    if ns.command == "build":
        logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

        groups: list[str] | None = ns.groups
        if ns.no_gems is True:
            if groups is not None:
                parser.error("--no-gems cannot be combined with --group")
            groups = []

        # Paths given on the command line are relative to the cwd, not the project root.
        options: dict[str, object] = {
            "project_root": _abs(ns.project_root),
            "project_name": ns.name,
            "build_dir": _abs(ns.build_dir),
            "archive_path": _abs(ns.output),
            "source_dir": _abs(ns.source_dir),
            "gem_groups": groups,
            "lib_jars": None if ns.lib_jars is None else [_abs(p) for p in ns.lib_jars],
            "jruby_version": ns.jruby_version,
            "jruby_jar_path": _abs(ns.jruby_jar),
            "main_class": ns.main_class,
            "support_dir": _abs(ns.support_dir),
            "gemfile": _abs(ns.gemfile),
            "ruby_command": ns.ruby,
        }
        create_package(options, logger=logger)
        return 0

    raise AssertionError(f"Unhandled command: {ns.command}")

