import pathlib
import tempfile
import zipfile

import httpx
import pytest

from conftest import JRUBY_VERSION, FakeDependencySource, write_jar
from jobjar.archive import MANIFEST_PATH, AssemblyError
from jobjar.config import ConfigError
from jobjar.dependencies import DependencyError
from jobjar.gems import GemSpec
from jobjar.normalize import LayoutError
from jobjar.package import Package, create_package


def _no_network() -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected request: {request.url}")

    return httpx.Client(transport=httpx.MockTransport(handler))


def _build(project_root, support_dir, specs, empty_caches, **options) -> pathlib.Path:
    opts = {"project_root": project_root, "support_dir": support_dir, "jruby_version": JRUBY_VERSION}
    opts.update(options)
    return create_package(
        opts,
        dependency_source=FakeDependencySource(specs),
        http_client=_no_network(),
        **empty_caches,
    )


def _names(path: pathlib.Path) -> list[str]:
    with zipfile.ZipFile(path) as zf:
        return zf.namelist()


def test_empty_groups_embed_only_runtime_support_and_project(project_root, support_dir, runtime_jar, json_gem, empty_caches):
    jar = _build(project_root, support_dir, [json_gem], empty_caches, gem_groups=[])

    names = _names(jar)
    assert jar == project_root.resolve() / "build" / "test_project.jar"
    assert "org/jruby/Main.class" in names
    assert "rubydoop/RubydoopJobRunner.class" in names
    assert "rubydoop/MapperProxy.class" in names
    assert "rubydoop.rb" in names
    assert "rubydoop/dsl.rb" in names
    assert "classes/test_project.rb" in names
    assert "classes/word_count.rb" in names
    assert not [n for n in names if n.startswith("classes/lib/")]


def test_plain_gem_lands_under_classes(project_root, support_dir, runtime_jar, json_gem, empty_caches):
    jar = _build(project_root, support_dir, [json_gem], empty_caches)

    names = _names(jar)
    assert "classes/lib/json.rb" in names
    assert "classes/lib/json/" in names
    assert "classes/lib/json/common.rb" in names
    assert "classes/README.rdoc" not in names


def test_existing_runtime_is_embedded_without_network(project_root, support_dir, runtime_jar, empty_caches):
    jar = _build(project_root, support_dir, [], empty_caches)

    with zipfile.ZipFile(jar) as zf:
        assert zf.read(f"lib/jruby-complete-{JRUBY_VERSION}.jar") == runtime_jar.read_bytes()
        assert zf.read("META-INF/jruby.home/lib/ruby/stdlib/set.rb") == b"class Set; end\n"


def test_non_conforming_gem_is_embedded_normalized(project_root, support_dir, runtime_jar, openssl_gem, empty_caches):
    jar = _build(project_root, support_dir, [openssl_gem], empty_caches)

    names = _names(jar)
    assert "classes/lib/openssl.rb" in names
    assert "classes/lib/openssl/ssl.rb" in names
    assert "classes/lib/openssl/1.9/openssl/digest.rb" in names
    assert "classes/lib/openssl/1.8/openssl/digest.rb" in names
    assert not [n for n in names if n.startswith(("classes/lib/1.8", "classes/lib/1.9", "classes/lib/shared"))]
    with zipfile.ZipFile(jar) as zf:
        assert b"openssl/1.9" in zf.read("classes/lib/openssl.rb")


def test_manifest_has_single_configured_main_class(project_root, support_dir, runtime_jar, empty_caches):
    jar = _build(project_root, support_dir, [], empty_caches, main_class="com.example.JobRunner")

    with zipfile.ZipFile(jar) as zf:
        manifest = zf.read(MANIFEST_PATH).decode("utf-8")
    main_lines = [line for line in manifest.splitlines() if line.startswith("Main-Class:")]
    assert main_lines == ["Main-Class: com.example.JobRunner"]
    assert _names(jar).count(MANIFEST_PATH) == 1


def test_project_file_shadows_gem_file(project_root, support_dir, runtime_jar, gem_factory, empty_caches):
    (project_root / "lib" / "lib").mkdir()
    (project_root / "lib" / "lib" / "json.rb").write_text("# project copy\n", encoding="utf-8")
    gem = gem_factory("json", "1.7.5", {"lib/json.rb": "# gem copy\n"})

    jar = _build(project_root, support_dir, [gem], empty_caches)

    with zipfile.ZipFile(jar) as zf:
        assert zf.read("classes/lib/json.rb") == b"# project copy\n"


def test_earlier_gem_wins_over_later_gem(project_root, support_dir, runtime_jar, gem_factory, empty_caches):
    first = gem_factory("alpha", "1.0", {"lib/shared_name.rb": "# alpha\n"})
    second = gem_factory("beta", "1.0", {"lib/shared_name.rb": "# beta\n"})

    jar = _build(project_root, support_dir, [first, second], empty_caches)

    with zipfile.ZipFile(jar) as zf:
        assert zf.read("classes/lib/shared_name.rb") == b"# alpha\n"


def test_extra_jars_are_placed_by_base_name(project_root, support_dir, runtime_jar, tmp_path, empty_caches):
    ext = write_jar(tmp_path / "vendor" / "deep" / "test_project_ext.jar", {"ext/Thing.class": b"thing"})

    jar = _build(project_root, support_dir, [], empty_caches, lib_jars=[ext])

    names = _names(jar)
    assert "lib/test_project_ext.jar" in names
    assert "ext/Thing.class" not in names


def test_excluded_gems_are_not_embedded(project_root, support_dir, runtime_jar, gem_factory, empty_caches):
    tool = gem_factory("rubydoop", "1.0.0", {"lib/rubydoop/package.rb": "# tool\n"})
    bundler = gem_factory("bundler", "2.4.0", {"lib/bundler.rb": "# bundler\n"})

    jar = _build(project_root, support_dir, [tool, bundler], empty_caches)

    names = _names(jar)
    assert "classes/lib/bundler.rb" not in names
    assert "classes/lib/rubydoop/package.rb" not in names


def test_support_files_come_from_the_bundle(project_root, support_dir, runtime_jar, empty_caches):
    tool = GemSpec(
        name="rubydoop",
        version="1.0.0",
        full_gem_path=support_dir,
        require_paths=("lib",),
        files=("lib/rubydoop.rb",),
    )

    jar = create_package(
        {"project_root": project_root, "jruby_version": JRUBY_VERSION},
        dependency_source=FakeDependencySource([tool]),
        http_client=_no_network(),
        **empty_caches,
    )

    assert "rubydoop/RubydoopJobRunner.class" in _names(jar)


def test_missing_support_gem_is_a_config_error(project_root, runtime_jar, empty_caches):
    package = Package(
        {"project_root": project_root, "jruby_version": JRUBY_VERSION},
        dependency_source=FakeDependencySource([]),
        http_client=_no_network(),
        **empty_caches,
    )

    with pytest.raises(ConfigError, match="rubydoop"):
        package.create()


def test_runtime_is_downloaded_into_build_dir(project_root, support_dir, empty_caches):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        buf = write_jar(project_root.parent / "served.jar", {"org/jruby/Main.class": b"served"})
        return httpx.Response(200, content=buf.read_bytes())

    jar = create_package(
        {"project_root": project_root, "support_dir": support_dir, "jruby_version": JRUBY_VERSION},
        dependency_source=FakeDependencySource([]),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        **empty_caches,
    )

    assert len(requests) == 1
    assert (project_root / "build" / f"jruby-complete-{JRUBY_VERSION}.jar").is_file()
    assert f"lib/jruby-complete-{JRUBY_VERSION}.jar" in _names(jar)


def test_missing_source_dir_is_a_config_error(tmp_path, support_dir, empty_caches):
    root = tmp_path / "empty_project"
    root.mkdir()

    with pytest.raises(ConfigError, match="source directory"):
        _build(root, support_dir, [], empty_caches)


def test_missing_extra_jar_is_a_config_error(project_root, support_dir, runtime_jar, tmp_path, empty_caches):
    with pytest.raises(ConfigError, match="nope.jar"):
        _build(project_root, support_dir, [], empty_caches, lib_jars=[tmp_path / "nope.jar"])


def _scratch_dirs() -> set[str]:
    return {p.name for p in pathlib.Path(tempfile.gettempdir()).glob("jobjar_*")}


def test_scratch_dir_is_removed_after_normalization_failure(
    project_root, support_dir, runtime_jar, gem_factory, empty_caches
):
    broken = gem_factory("jruby-openssl", "0.9.0", {"lib/shared/openssl.rb": "\n"})
    before = _scratch_dirs()

    with pytest.raises(LayoutError):
        _build(project_root, support_dir, [broken], empty_caches)

    assert _scratch_dirs() == before
    assert not (project_root / "build" / "test_project.jar").exists()


def test_scratch_dir_is_removed_after_assembly_failure(
    project_root, support_dir, runtime_jar, openssl_gem, empty_caches, monkeypatch
):
    import jobjar.package

    def fail(**kwargs):
        raise AssemblyError("disk full")

    monkeypatch.setattr(jobjar.package, "assemble_archive", fail)
    before = _scratch_dirs()

    with pytest.raises(AssemblyError):
        _build(project_root, support_dir, [openssl_gem], empty_caches)

    assert _scratch_dirs() == before


def test_dependency_query_failure_propagates(project_root, support_dir, runtime_jar, empty_caches):
    class FailingSource(FakeDependencySource):
        def specs_for(self, groups):
            raise DependencyError("bundle install first")

    with pytest.raises(DependencyError, match="bundle install"):
        create_package(
            {"project_root": project_root, "support_dir": support_dir, "jruby_version": JRUBY_VERSION},
            dependency_source=FailingSource([]),
            http_client=_no_network(),
            **empty_caches,
        )


class GroupedDependencySource(FakeDependencySource):
    """Returns the specs of each queried group, in group order."""

    def __init__(self, by_group: dict[str, list[GemSpec]]) -> None:
        super().__init__([])
        self.by_group = by_group

    def specs_for(self, groups):
        self.queries.append(groups)
        return [spec for group in groups for spec in self.by_group.get(group, [])]


def test_support_gem_is_found_in_default_group_when_other_groups_are_embedded(
    project_root, support_dir, runtime_jar, json_gem, empty_caches
):
    tool = GemSpec(
        name="rubydoop",
        version="1.0.0",
        full_gem_path=support_dir,
        require_paths=("lib",),
        files=("lib/rubydoop.rb",),
    )
    source = GroupedDependencySource({"default": [tool], "hadoop": [json_gem]})

    jar = create_package(
        {"project_root": project_root, "jruby_version": JRUBY_VERSION, "gem_groups": ["hadoop"]},
        dependency_source=source,
        http_client=_no_network(),
        **empty_caches,
    )

    names = _names(jar)
    assert "rubydoop/RubydoopJobRunner.class" in names
    assert "classes/lib/json.rb" in names
    assert ("default", "hadoop") in source.queries
    assert ("hadoop",) in source.queries
