import pathlib
import zipfile
from collections.abc import Callable

import pytest

from jobjar.gems import GemSpec

JRUBY_VERSION = "9.4.8.0"

OPENSSL_MAIN = """\
if RUBY_VERSION >= '1.9.0'
  $LOAD_PATH.unshift(File.expand_path('../1.9', File.dirname(__FILE__)))
else
  $LOAD_PATH.unshift(File.expand_path('../1.8', File.dirname(__FILE__)))
end
require 'openssl/ssl'
"""


def write_jar(path: pathlib.Path, entries: dict[str, bytes]) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return path


def write_files(root: pathlib.Path, files: dict[str, str]) -> pathlib.Path:
    for rel, text in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
    return root


class FakeDependencySource:
    """Stands in for Bundler; returns fixed specs and records queries."""

    def __init__(self, specs: list[GemSpec]) -> None:
        self.specs = specs
        self.queries: list[tuple[str, ...]] = []

    def specs_for(self, groups: tuple[str, ...]) -> list[GemSpec]:
        self.queries.append(groups)
        return list(self.specs)

    def find(self, name: str, groups: tuple[str, ...]) -> GemSpec | None:
        for spec in self.specs_for(groups):
            if spec.name == name:
                return spec
        return None


@pytest.fixture
def gem_factory(tmp_path: pathlib.Path) -> Callable[..., GemSpec]:
    def make(name: str, version: str, files: dict[str, str], *, require_paths: tuple[str, ...] = ("lib",)) -> GemSpec:
        gem_dir = tmp_path / "gems" / f"{name}-{version}"
        write_files(gem_dir, files)
        return GemSpec(
            name=name,
            version=version,
            full_gem_path=gem_dir,
            require_paths=require_paths,
            files=tuple(files),
        )

    return make


@pytest.fixture
def json_gem(gem_factory: Callable[..., GemSpec]) -> GemSpec:
    return gem_factory(
        "json",
        "1.7.5",
        {
            "lib/json.rb": "require 'json/common'\n",
            "lib/json/common.rb": "module JSON; end\n",
            "lib/json/version.rb": "module JSON; VERSION = '1.7.5'; end\n",
            "README.rdoc": "json\n",
        },
    )


@pytest.fixture
def openssl_gem(gem_factory: Callable[..., GemSpec]) -> GemSpec:
    return gem_factory(
        "jruby-openssl",
        "0.7.7",
        {
            "lib/shared/openssl.rb": OPENSSL_MAIN,
            "lib/shared/openssl/ssl.rb": "module OpenSSL; module SSL; end; end\n",
            "lib/1.8/openssl/digest.rb": "# 1.8 digest\n",
            "lib/1.9/openssl/digest.rb": "# 1.9 digest\n",
        },
    )


@pytest.fixture
def support_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    root = tmp_path / "rubydoop-1.0.0"
    write_jar(
        root / "lib" / "rubydoop.jar",
        {
            "META-INF/MANIFEST.MF": b"Manifest-Version: 1.0\r\n\r\n",
            "rubydoop/RubydoopJobRunner.class": b"runner",
            "rubydoop/MapperProxy.class": b"mapper",
        },
    )
    write_files(
        root,
        {
            "lib/rubydoop.rb": "module Rubydoop; end\n",
            "lib/rubydoop/dsl.rb": "module Rubydoop; class ConfigurationDefinition; end; end\n",
            "lib/rubydoop/package.rb": "# packaging\n",
        },
    )
    return root


@pytest.fixture
def project_root(tmp_path: pathlib.Path) -> pathlib.Path:
    root = tmp_path / "test_project"
    write_files(
        root,
        {
            "lib/test_project.rb": "require 'word_count'\n",
            "lib/word_count.rb": "class WordCount; end\n",
        },
    )
    return root


@pytest.fixture
def runtime_jar(project_root: pathlib.Path) -> pathlib.Path:
    return write_jar(
        project_root / "build" / f"jruby-complete-{JRUBY_VERSION}.jar",
        {
            "META-INF/MANIFEST.MF": b"Manifest-Version: 1.0\r\nMain-Class: org.jruby.Main\r\n\r\n",
            "org/jruby/Main.class": b"jruby-main",
            "META-INF/jruby.home/lib/ruby/stdlib/set.rb": b"class Set; end\n",
        },
    )


@pytest.fixture
def empty_caches(tmp_path: pathlib.Path) -> dict[str, pathlib.Path]:
    return {"maven_repo": tmp_path / "m2", "ivy_cache": tmp_path / "ivy"}
