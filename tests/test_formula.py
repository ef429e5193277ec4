import os

import pytest
from conftest import Tap

from cellar.modules.errors import NotFoundError, ParseError
from cellar.modules.formula import (BUILD, OPTIONAL, RECOMMENDED, REQUIRED, TEST, Checksum,
                                    FormulaRepository, parse_formula)


def base(**extra):
    data = {
        "name": "h5utils",
        "version": "1.12.1",
        "url": "http://ab-initio.mit.edu/h5utils/h5utils-1.12.1.tar.gz",
        "sha1": "1BD8EF8C50221DA35AAFB5424DE9B5F177250D2D",
        "install": ["./configure --prefix={prefix}", "make install"],
    }
    data.update(extra)
    return data


def test_parse_minimal_formula():
    f = parse_formula(base(), "core")
    assert f.full_name == "core/h5utils"
    assert f.effective_version == "1.12.1"
    assert f.source.checksum == Checksum("sha1", "1bd8ef8c50221da35aafb5424de9b5f177250d2d")
    assert f.source_hash == "sha1:1bd8ef8c50221da35aafb5424de9b5f177250d2d"
    assert f.dependencies == ()
    assert f.install == ("./configure --prefix={prefix}", "make install")


def test_dependency_qualifiers_and_aliases():
    f = parse_formula(base(depends=[
        "libpng",
        {"cmake": "build"},
        {"pytest": "test-only"},
        {"gsl": ":recommended"},
        {"name": "grass", "qualifier": "optional", "options": ["with-python"]},
        {"hdf5": "run"},
    ]), "core")
    quals = {d.name: d.qualifier for d in f.dependencies}
    assert quals == {"libpng": REQUIRED, "cmake": BUILD, "pytest": TEST, "gsl": RECOMMENDED,
                     "grass": OPTIONAL, "hdf5": REQUIRED}
    grass = [d for d in f.dependencies if d.name == "grass"][0]
    assert grass.requests() == {"python": True}


def test_implied_options_from_recommended_and_optional():
    f = parse_formula(base(depends=[{"postgresql": "recommended"}, {"grass": "optional"}],
                           options=["with-debug", {"name": "docs", "default": True}]), "core")
    opts = f.options
    assert opts["postgresql"].default is True
    assert opts["grass"].default is False
    assert opts["debug"].default is False
    assert opts["docs"].default is True
    assert opts["postgresql"].flag == "without-postgresql"
    assert opts["grass"].flag == "with-grass"


def test_unknown_qualifier_rejected():
    with pytest.raises(ParseError):
        parse_formula(base(depends=[{"zlib": "sometimes"}]), "core")


def test_duplicate_dependency_rejected():
    with pytest.raises(ParseError):
        parse_formula(base(depends=["zlib", {"zlib": "build"}]), "core")


def test_url_without_checksum_rejected():
    data = base()
    del data["sha1"]
    with pytest.raises(ParseError):
        parse_formula(data, "core")


def test_two_checksums_rejected():
    with pytest.raises(ParseError):
        parse_formula(base(sha256="ab" * 32), "core")


def test_nested_checksum_mapping():
    data = base(checksum={"algorithm": "sha256", "digest": "AB" * 32})
    del data["sha1"]
    f = parse_formula(data, "core")
    assert str(f.source.checksum) == "sha256:" + "ab" * 32


def test_head_only_formula():
    f = parse_formula({"name": "qgis", "head": {"url": "https://github.com/qgis/QGIS.git",
                                                "branch": "master"},
                       "install": "mypkg.build:install"}, "science")
    assert f.head_only
    assert f.effective_version == "HEAD"
    assert f.source_hash == "head:https://github.com/qgis/QGIS.git@master"
    assert f.install == "mypkg.build:install"


def test_missing_source_rejected():
    with pytest.raises(ParseError):
        parse_formula({"name": "x", "version": "1", "install": ["true"]}, "core")


def test_install_must_be_steps_or_callable():
    with pytest.raises(ParseError):
        parse_formula(base(install="make install"), "core")
    with pytest.raises(ParseError):
        parse_formula(base(install=None), "core")


def test_patch_strip_levels():
    f = parse_formula(base(patches=[{"url": "http://x/a.patch", "strip": 0},
                                    {"url": "http://x/b.patch", "strip": ":p2"},
                                    {"url": "http://x/c.patch"}]), "core")
    assert [p.strip for p in f.patches] == [0, 2, 1]


def test_name_must_match_file(tap, repository):
    tap.add("gdal")
    os.rename(os.path.join(tap.root, "gdal.yaml"), os.path.join(tap.root, "proj.yaml"))
    with pytest.raises(ParseError):
        repository.load("proj")


def test_unknown_hook_stage_rejected():
    with pytest.raises(ParseError):
        parse_formula(base(hooks={"post-build": ["true"]}), "core")


def test_single_hook_command_becomes_list():
    f = parse_formula(base(hooks={"post-install": "echo hi", "pre-install": None}), "core")
    assert f.hooks == {"post-install": ["echo hi"], "pre-install": []}


def test_malformed_hook_commands_rejected():
    with pytest.raises(ParseError):
        parse_formula(base(hooks={"post-install": ["true", 3]}), "core")
    with pytest.raises(ParseError):
        parse_formula(base(hooks={"post-install": {"run": "true"}}), "core")


# ---------------------------
# Repository
# ---------------------------
def test_repository_load_and_cache(tap, repository):
    tap.add("gdal", version="1.11.0")
    f = repository.load("gdal")
    assert f.full_name == "core/gdal"
    assert f.version == "1.11.0"
    assert repository.load("core/gdal") is f


def test_repository_not_found(repository):
    with pytest.raises(NotFoundError):
        repository.load("nope")
    assert not repository.exists("nope")


def test_repository_invalid_yaml(tap, repository):
    with open(os.path.join(tap.root, "broken.yaml"), "w") as fh:
        fh.write("name: [unterminated\n")
    with pytest.raises(ParseError):
        repository.load("broken")


def test_repository_undecodable_descriptor(tap, repository):
    with open(os.path.join(tap.root, "latin.yaml"), "wb") as fh:
        fh.write(b"name: latin\ndesc: caf\xe9 \xff\n")
    with pytest.raises(ParseError) as exc:
        repository.load("latin")
    assert "UTF-8" in str(exc.value)


def test_repository_multiple_taps(tmp_path, tap):
    science = Tap(tmp_path / "taps" / "science", tmp_path / "archives")
    tap.add("gdal", version="1.10")
    science.add("gdal", version="1.11")
    science.add("qgis", depends=["gdal"])
    repo = FormulaRepository([("core", tap.root), ("science", science.root)])

    assert repo.load("gdal").version == "1.10"
    assert repo.load("science/gdal").version == "1.11"
    assert repo.load("gdal", prefer_tap="science").full_name == "science/gdal"
    assert repo.names() == ["core/gdal", "science/gdal", "science/qgis"]


def test_formula_in_own_directory(tap, repository):
    os.makedirs(os.path.join(tap.root, "hdf5"))
    with open(os.path.join(tap.root, "hdf5", "formula.yaml"), "w") as fh:
        fh.write("name: hdf5\nhead: https://example.org/hdf5.git\ninstall: [make install]\n")
    assert repository.load("hdf5").head_only
    assert "core/hdf5" in repository.names()
