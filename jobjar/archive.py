"""Job JAR assembly.

The archive layout expected by Hadoop and the Rubydoop runner::

    META-INF/MANIFEST.MF        Main-Class from the config
    <runtime contents>          jruby-complete unpacked at the root
    <bridge classes>            rubydoop.jar unpacked at the root
    rubydoop.rb, rubydoop/dsl.rb
    classes/...                 project sources, then gem sources
    lib/<name>.jar              jruby-complete and extra JARs

Entries are merged in that order and the first entry written for a path wins;
later entries with the same path are dropped. This lets project files shadow
same-named gem files.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import tempfile
import time
import types
import zipfile

from jobjar.config import ConfigError, PackageConfig
from jobjar.gems import DependencyEntry
from jobjar.runtime import RuntimeArtifact


class AssemblyError(RuntimeError):
    """Raised when the archive cannot be written."""


MANIFEST_PATH: str = "META-INF/MANIFEST.MF"
SUPPORT_BRIDGE_JAR: str = "rubydoop.jar"
SUPPORT_SCRIPTS: tuple[str, ...] = ("rubydoop.rb", "rubydoop/dsl.rb")

_MANIFEST_LINE_BYTES: int = 72


@dataclass(frozen=True, slots=True)
class SupportFiles:
    """Rubydoop files placed at the archive root.

    :ivar bridge_jar: JAR with the compiled runner and proxy classes (unpacked).
    :ivar scripts: ``(source, arcname)`` pairs for the configuration scripts.
    """

    bridge_jar: pathlib.Path
    scripts: tuple[tuple[pathlib.Path, str], ...]


@dataclass(frozen=True, slots=True)
class ArchiveStats:
    """Counts collected while writing an archive.

    :ivar entries_written: Entries (files and directories) written.
    :ivar duplicates_skipped: Entries dropped because their path was already taken.
    """

    entries_written: int
    duplicates_skipped: int


def locate_support_files(support_dir: pathlib.Path) -> SupportFiles:
    """Find the Rubydoop bridge JAR and scripts in a Rubydoop gem directory.

    :param support_dir: Rubydoop gem base directory.
    :returns: Support files.
    :raises ConfigError: If any of the fixed files is missing.
    """

    lib: pathlib.Path = support_dir / "lib"
    bridge_jar: pathlib.Path = lib / SUPPORT_BRIDGE_JAR
    scripts: list[tuple[pathlib.Path, str]] = [(lib / name, name) for name in SUPPORT_SCRIPTS]

    missing: list[str] = [str(p) for p in [bridge_jar, *(s for s, _ in scripts)] if p.is_file() is False]
    if len(missing) > 0:
        raise ConfigError(f"Rubydoop support files missing in {support_dir}: {', '.join(missing)}")
    return SupportFiles(bridge_jar=bridge_jar, scripts=tuple(scripts))


class JarWriter:
    """Write a JAR with first-wins collision handling.

    The archive is built in a temp file beside ``out_path`` and only moved onto
    ``out_path`` by :meth:`commit`; used as a context manager, it commits on a
    clean exit and discards the temp file otherwise.

    :param out_path: Final archive path.
    :param compresslevel: Deflate compression level (0-9).
    :param logger: Optional logger.
    """

    def __init__(
        self,
        out_path: pathlib.Path,
        *,
        compresslevel: int = 6,
        logger: logging.Logger | None = None,
    ) -> None:
        if compresslevel < 0 or compresslevel > 9:
            raise AssemblyError(f"Invalid compresslevel={compresslevel}; expected 0-9.")
        self.out_path: pathlib.Path = out_path
        self.compresslevel: int = compresslevel
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("jobjar")
        self._manifest: dict[str, str] = {"Manifest-Version": "1.0"}
        self._manifest_written: bool = False
        self._seen: set[str] = set()
        self._written: int = 0
        self._skipped: int = 0
        self._tmp_path: pathlib.Path | None = None
        self._zf: zipfile.ZipFile | None = None

    def __enter__(self) -> "JarWriter":
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: types.TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.abort()

    @property
    def stats(self) -> ArchiveStats:
        return ArchiveStats(entries_written=self._written, duplicates_skipped=self._skipped)

    def open(self) -> None:
        """Create the temp archive.

        :raises AssemblyError: If the temp file cannot be created.
        """

        try:
            self.out_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.out_path.name}.",
                suffix=".tmp",
                dir=self.out_path.parent,
            )
            os.close(fd)
            self._tmp_path = pathlib.Path(tmp_name)
            self._zf = zipfile.ZipFile(
                self._tmp_path,
                "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=self.compresslevel,
                strict_timestamps=False,
            )
        except OSError as e:
            raise AssemblyError(f"Cannot create archive next to {self.out_path}: {e}") from e

    def set_manifest_attribute(self, name: str, value: str) -> None:
        """Set a main-section manifest attribute.

        :param name: Attribute name (e.g. ``Main-Class``).
        :param value: Attribute value, used verbatim.
        :raises AssemblyError: If entries were already written.
        """

        if self._manifest_written is True:
            raise AssemblyError("Manifest attributes must be set before any entry is added.")
        if len(name) == 0 or ":" in name or "\n" in value or "\r" in value:
            raise AssemblyError(f"Invalid manifest attribute {name!r}: {value!r}")
        self._manifest[name] = value

    def add_file(self, src: pathlib.Path, arcname: str) -> bool:
        """Add one file.

        :param src: File on disk.
        :param arcname: Path inside the archive.
        :returns: ``True`` if written, ``False`` if the path was already taken.
        :raises AssemblyError: If the file cannot be read or written.
        """

        zf: zipfile.ZipFile = self._require_open()
        self._write_manifest()
        if arcname in self._seen:
            self._skip(arcname)
            return False
        try:
            self._ensure_parent_dirs(arcname)
            zf.write(src, arcname=arcname)
        except (OSError, ValueError) as e:
            raise AssemblyError(f"Cannot add {src} to {self.out_path}: {e}") from e
        self._seen.add(arcname)
        self._written += 1
        return True

    def add_tree(self, root: pathlib.Path, *, prefix: str = "") -> int:
        """Add a directory tree, keeping relative paths under ``prefix``.

        Symlinked directories are followed; a link back into a directory
        already being walked is skipped with a warning.

        :param root: Directory on disk.
        :param prefix: Archive directory the tree lands in (``""`` for the root).
        :returns: Number of entries written.
        :raises AssemblyError: If ``root`` is not a directory or a file cannot be added.
        """

        if root.is_dir() is False:
            raise AssemblyError(f"Cannot add {root} to {self.out_path}: not a directory")

        self._require_open()
        self._write_manifest()
        before: int = self._written
        ancestors: dict[str, str] = {}
        for dirpath, dirnames, filenames in os.walk(root, followlinks=True):
            # Only the real directories above dirpath count as a loop.
            real: str = os.path.realpath(dirpath)
            ancestors = {d: r for d, r in ancestors.items() if dirpath.startswith(d + os.sep)}
            ancestors[dirpath] = real
            kept: list[str] = []
            for d in sorted(dirnames):
                if os.path.realpath(os.path.join(dirpath, d)) in ancestors.values():
                    self.logger.warning(f"jobjar: skipped symlink loop {os.path.join(dirpath, d)}")
                    continue
                kept.append(d)
            dirnames[:] = kept

            rel_dir: pathlib.PurePosixPath = pathlib.PurePosixPath(pathlib.Path(dirpath).relative_to(root).as_posix())
            if rel_dir.as_posix() != ".":
                self._add_dir(_join(prefix, rel_dir.as_posix()))
            for name in sorted(filenames):
                self.add_file(pathlib.Path(dirpath) / name, _join(prefix, (rel_dir / name).as_posix()))
        return self._written - before

    def add_zip_contents(self, zip_path: pathlib.Path) -> int:
        """Unpack another zip/JAR into the archive root.

        :param zip_path: Source archive.
        :returns: Number of entries written.
        :raises AssemblyError: If the source cannot be read.
        """

        zf: zipfile.ZipFile = self._require_open()
        self._write_manifest()
        before: int = self._written
        try:
            with zipfile.ZipFile(zip_path, "r") as src:
                for info in src.infolist():
                    name: str = info.filename.lstrip("/")
                    if len(name) == 0:
                        continue
                    if info.is_dir() is True:
                        self._add_dir(name.rstrip("/"))
                        continue
                    if name in self._seen:
                        self._skip(name)
                        continue
                    self._ensure_parent_dirs(name)
                    out_info: zipfile.ZipInfo = zipfile.ZipInfo(name, date_time=info.date_time)
                    out_info.compress_type = zipfile.ZIP_DEFLATED
                    out_info.external_attr = info.external_attr
                    with src.open(info, "r") as fin, zf.open(out_info, "w") as fout:
                        shutil.copyfileobj(fin, fout, 1024 * 1024)
                    self._seen.add(name)
                    self._written += 1
        except (OSError, ValueError, zipfile.BadZipFile) as e:
            raise AssemblyError(f"Cannot merge {zip_path} into {self.out_path}: {e}") from e
        return self._written - before

    def commit(self) -> ArchiveStats:
        """Finish the archive and move it onto ``out_path``.

        :returns: Write statistics.
        :raises AssemblyError: If the archive cannot be finished.
        """

        zf: zipfile.ZipFile = self._require_open()
        tmp_path: pathlib.Path | None = self._tmp_path
        if tmp_path is None:
            raise AssemblyError(f"Archive {self.out_path} has no temp file.")
        try:
            self._write_manifest()
            zf.close()
            os.replace(tmp_path, self.out_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise AssemblyError(f"Cannot write archive {self.out_path}: {e}") from e
        finally:
            self._zf = None
        if self._skipped > 0:
            self.logger.debug(f"jobjar: dropped {self._skipped} duplicate entries")
        return self.stats

    def abort(self) -> None:
        """Discard the temp archive."""

        zf: zipfile.ZipFile | None = self._zf
        self._zf = None
        try:
            if zf is not None:
                zf.close()
        finally:
            if self._tmp_path is not None:
                self._tmp_path.unlink(missing_ok=True)

    def _require_open(self) -> zipfile.ZipFile:
        if self._zf is None:
            raise AssemblyError(f"Archive {self.out_path} is not open.")
        return self._zf

    def _write_manifest(self) -> None:
        if self._manifest_written is True:
            return
        zf: zipfile.ZipFile = self._require_open()
        self._manifest_written = True
        self._add_dir("META-INF")
        zf.writestr(MANIFEST_PATH, render_manifest(self._manifest))
        self._seen.add(MANIFEST_PATH)
        self._written += 1

    def _add_dir(self, name: str) -> None:
        """Add a directory entry (and its parents) unless already present.

        :param name: Directory path without trailing slash.
        """

        if len(name) == 0:
            return
        self._ensure_parent_dirs(name)
        arcname: str = f"{name}/"
        if arcname in self._seen:
            return
        zf: zipfile.ZipFile = self._require_open()
        info: zipfile.ZipInfo = zipfile.ZipInfo(arcname)
        info.external_attr = (0o40755 << 16) | 0x10
        zf.writestr(info, b"")
        self._seen.add(arcname)
        self._written += 1

    def _ensure_parent_dirs(self, arcname: str) -> None:
        parts: list[str] = arcname.rstrip("/").split("/")[:-1]
        for i in range(1, len(parts) + 1):
            d: str = "/".join(parts[0:i]) + "/"
            if d in self._seen:
                continue
            zf: zipfile.ZipFile = self._require_open()
            info: zipfile.ZipInfo = zipfile.ZipInfo(d)
            info.external_attr = (0o40755 << 16) | 0x10
            zf.writestr(info, b"")
            self._seen.add(d)
            self._written += 1

    def _skip(self, arcname: str) -> None:
        self._skipped += 1
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"jobjar: duplicate entry kept first copy: {arcname}")


def render_manifest(attributes: dict[str, str]) -> bytes:
    """Render a JAR manifest main section.

    Lines longer than 72 bytes are continued on lines starting with a space.

    :param attributes: Attribute names and values, in output order.
    :returns: Manifest bytes.
    """

    lines: list[bytes] = []
    for name, value in attributes.items():
        raw: bytes = f"{name}: {value}".encode("utf-8")
        lines.append(raw[0:_MANIFEST_LINE_BYTES])
        rest: bytes = raw[_MANIFEST_LINE_BYTES:]
        while len(rest) > 0:
            lines.append(b" " + rest[0 : _MANIFEST_LINE_BYTES - 1])
            rest = rest[_MANIFEST_LINE_BYTES - 1 :]
    return b"\r\n".join(lines) + b"\r\n\r\n"


def _join(prefix: str, rel: str) -> str:
    return pathlib.PurePosixPath(prefix, rel).as_posix().lstrip("/")


def assemble_archive(
    *,
    config: PackageConfig,
    runtime: RuntimeArtifact,
    support: SupportFiles,
    dependencies: list[DependencyEntry],
    compresslevel: int = 6,
    logger: logging.Logger | None = None,
) -> ArchiveStats:
    """Write ``config.archive_path``.

    :param config: Package config (archive path, source dir, extra JARs, main class).
    :param runtime: Located runtime JAR.
    :param support: Rubydoop support files.
    :param dependencies: Gem entries, in selection order.
    :param compresslevel: Deflate compression level.
    :param logger: Optional logger.
    :returns: Write statistics.
    :raises AssemblyError: If the archive cannot be written.
    """

    if logger is None:
        logger = logging.getLogger("jobjar")

    t0: float = time.perf_counter()
    with JarWriter(config.archive_path, compresslevel=compresslevel, logger=logger) as jar:
        jar.set_manifest_attribute("Main-Class", config.main_class)

        n_runtime: int = jar.add_zip_contents(runtime.path)
        logger.info(f"jobjar: merged runtime {runtime.path.name} ({n_runtime} entries)")

        jar.add_zip_contents(support.bridge_jar)
        for src, arcname in support.scripts:
            jar.add_file(src, arcname)

        n_project: int = jar.add_tree(config.source_dir, prefix="classes")
        logger.info(f"jobjar: added project sources from {config.source_dir} ({n_project} entries)")

        for entry in dependencies:
            _add_dependency(jar=jar, entry=entry, logger=logger)

        jar.add_file(runtime.path, f"lib/{runtime.path.name}")
        for extra in config.lib_jars:
            jar.add_file(extra, f"lib/{extra.name}")
    t1: float = time.perf_counter()

    stats: ArchiveStats = jar.stats
    size: int = config.archive_path.stat().st_size
    logger.info(
        f"jobjar: wrote {config.archive_path} ({size / (1024 * 1024):.1f} MiB, "
        f"{stats.entries_written} entries) in {t1 - t0:.2f}s"
    )
    return stats


def _add_dependency(*, jar: JarWriter, entry: DependencyEntry, logger: logging.Logger) -> None:
    """Add one gem's require paths and files under ``classes/``.

    :param jar: Open writer.
    :param entry: Gem entry.
    :param logger: Logger for progress output.
    """

    for rp in entry.require_paths:
        rp_dir: pathlib.Path = entry.base_dir / rp
        if rp_dir.is_dir() is False:
            logger.warning(f"jobjar: {entry.name}-{entry.version}: require path {rp!r} does not exist in {entry.base_dir}")
            continue
        jar.add_tree(rp_dir, prefix=_join("classes", rp))

    for f in entry.files:
        src: pathlib.Path = entry.base_dir / f
        if src.is_file() is False:
            logger.warning(f"jobjar: {entry.name}-{entry.version}: file {f!r} does not exist in {entry.base_dir}")
            continue
        jar.add_file(src, _join("classes", f))

    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(
            f"jobjar: added {entry.name}-{entry.version} "
            f"(require_paths={list(entry.require_paths)}, files={len(entry.files)})"
        )
