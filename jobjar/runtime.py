"""JRuby runtime resolution.

The ``jruby-complete`` JAR is large, so it is looked up in order:

1. The destination path (a previous build already fetched it).
2. The local Maven repository.
3. The local Ivy cache.
4. Maven Central, streamed into a temp file and renamed onto the destination.

Cache hits are used where they are; nothing is copied.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import tempfile
import time

import httpx

from jobjar.config import RUNTIME_ARTIFACT_NAME, validate_jruby_version


class FetchError(RuntimeError):
    """Raised when the runtime JAR cannot be downloaded."""


PROVENANCE_EXISTING: str = "existing"
PROVENANCE_MAVEN_CACHE: str = "maven-cache"
PROVENANCE_IVY_CACHE: str = "ivy-cache"
PROVENANCE_DOWNLOADED: str = "downloaded"

MAVEN_CENTRAL_URL: str = (
    "https://repo1.maven.org/maven2/org/jruby/{name}/{version}/{name}-{version}.jar"
)


@dataclass(frozen=True, slots=True)
class RuntimeArtifact:
    """A located ``jruby-complete`` JAR.

    :ivar version: JRuby version.
    :ivar path: Absolute path of the JAR.
    :ivar provenance: One of the ``PROVENANCE_*`` constants.
    """

    version: str
    path: pathlib.Path
    provenance: str


def maven_cache_path(version: str, *, maven_repo: pathlib.Path | None = None) -> pathlib.Path:
    root: pathlib.Path = maven_repo if maven_repo is not None else pathlib.Path("~/.m2/repository").expanduser()
    return root / "org" / "jruby" / RUNTIME_ARTIFACT_NAME / version / f"{RUNTIME_ARTIFACT_NAME}-{version}.jar"


def ivy_cache_path(version: str, *, ivy_cache: pathlib.Path | None = None) -> pathlib.Path:
    root: pathlib.Path = ivy_cache if ivy_cache is not None else pathlib.Path("~/.ivy2/cache").expanduser()
    return root / "org.jruby" / RUNTIME_ARTIFACT_NAME / "jars" / f"{RUNTIME_ARTIFACT_NAME}-{version}.jar"


def resolve_runtime_artifact(
    *,
    version: str,
    destination: pathlib.Path,
    maven_repo: pathlib.Path | None = None,
    ivy_cache: pathlib.Path | None = None,
    url_template: str = MAVEN_CENTRAL_URL,
    client: httpx.Client | None = None,
    timeout: float = 60.0,
    logger: logging.Logger | None = None,
) -> RuntimeArtifact:
    """Locate the runtime JAR, downloading it to ``destination`` if needed.

    :param version: JRuby version.
    :param destination: Where a downloaded JAR is stored.
    :param maven_repo: Local Maven repository (defaults to ``~/.m2/repository``).
    :param ivy_cache: Local Ivy cache (defaults to ``~/.ivy2/cache``).
    :param url_template: Download URL with ``{name}`` and ``{version}`` placeholders.
    :param client: Optional HTTP client (one is created when omitted).
    :param timeout: Network timeout in seconds for a created client.
    :param logger: Optional logger.
    :returns: Located artifact.
    :raises ConfigError: If the version is malformed.
    :raises FetchError: If the download fails.
    """

    if logger is None:
        logger = logging.getLogger("jobjar")

    validate_jruby_version(version)

    if destination.is_file() is True:
        logger.info(f"jobjar: runtime {destination.name} already present")
        return RuntimeArtifact(version=version, path=destination, provenance=PROVENANCE_EXISTING)

    maven_path: pathlib.Path = maven_cache_path(version, maven_repo=maven_repo)
    if maven_path.is_file() is True:
        logger.info(f"jobjar: runtime found in local Maven repository: {maven_path}")
        return RuntimeArtifact(version=version, path=maven_path, provenance=PROVENANCE_MAVEN_CACHE)

    ivy_path: pathlib.Path = ivy_cache_path(version, ivy_cache=ivy_cache)
    if ivy_path.is_file() is True:
        logger.info(f"jobjar: runtime found in local Ivy cache: {ivy_path}")
        return RuntimeArtifact(version=version, path=ivy_path, provenance=PROVENANCE_IVY_CACHE)

    url: str = url_template.format(name=RUNTIME_ARTIFACT_NAME, version=version)
    if client is None:
        with httpx.Client(timeout=timeout, follow_redirects=True) as own_client:
            _download(client=own_client, url=url, destination=destination, logger=logger)
    else:
        _download(client=client, url=url, destination=destination, logger=logger)
    return RuntimeArtifact(version=version, path=destination, provenance=PROVENANCE_DOWNLOADED)


def _download(
    *,
    client: httpx.Client,
    url: str,
    destination: pathlib.Path,
    logger: logging.Logger,
) -> None:
    """Stream ``url`` into ``destination`` via a temp file in the same directory.

    :param client: HTTP client.
    :param url: Source URL.
    :param destination: Final path; only ever holds a complete download.
    :param logger: Logger for progress output.
    :raises FetchError: If the request or the write fails.
    """

    logger.info(f"jobjar: downloading {url}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".part", dir=destination.parent)
    tmp_path: pathlib.Path = pathlib.Path(tmp_name)

    t0: float = time.perf_counter()
    size: int = 0
    try:
        with os.fdopen(fd, "wb") as f:
            with client.stream("GET", url) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes():
                    f.write(chunk)
                    size += len(chunk)
        os.replace(tmp_path, destination)
    except httpx.HTTPStatusError as e:
        raise FetchError(
            f"Download of {url} failed with status={e.response.status_code} (destination={destination})"
        ) from e
    except (httpx.HTTPError, OSError) as e:
        raise FetchError(f"Download of {url} to {destination} failed: {e}") from e
    finally:
        # Gone after a successful replace.
        tmp_path.unlink(missing_ok=True)
    t1: float = time.perf_counter()

    logger.info(f"jobjar: downloaded {destination.name} ({size / (1024 * 1024):.1f} MiB) in {t1 - t0:.2f}s")
