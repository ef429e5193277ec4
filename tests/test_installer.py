import os

import pytest

from cellar.modules.installer import UninstallError
from cellar.modules.report import (ALREADY_INSTALLED, DEPENDENCY_FAILED, EXIT_OK, EXIT_PARTIAL,
                                   INSTALLED)
from cellar.modules.resolver import SKIPPED


def test_install_then_idempotent_second_run(diamond, installer, store):
    report = installer.install(["d"])
    assert report.exit_code() == EXIT_OK
    assert [o.status for o in report.outcomes] == [INSTALLED] * 4
    # c is a build dependency of nothing, a is also needed at runtime by b
    assert not any(r.build_only for r in store.all())

    plan = installer.resolve(["d"])
    assert all(t.status == SKIPPED for t in plan)
    report = installer.execute(plan)
    assert [o.status for o in report.outcomes] == [ALREADY_INSTALLED] * 4
    assert report.built == []
    assert report.exit_code() == EXIT_OK


def test_partial_failure_report(tap, installer, store):
    tap.add("good")
    tap.add("bad", install=["exit 2"])
    tap.add("needs-bad", depends=["bad"])
    report = installer.install(["good", "needs-bad"])
    assert report.exit_code() == EXIT_PARTIAL
    by_name = {o.identity: o for o in report.outcomes}
    assert by_name["core/good"].status == INSTALLED
    assert by_name["core/needs-bad"].status == DEPENDENCY_FAILED
    assert by_name["core/needs-bad"].reason == "dependency core/bad failed"
    assert store.get("core/bad") is None
    assert [o.identity for o in report.requested] == ["core/good", "core/needs-bad"]
    assert report.to_dict()["exit_code"] == EXIT_PARTIAL


def test_reinstall_rebuilds(tap, installer):
    tap.add("zlib")
    installer.install(["zlib"])
    report = installer.install(["zlib"], reinstall=["zlib"])
    assert [o.status for o in report.outcomes] == [INSTALLED]


def test_options_recorded(tap, installer, store):
    tap.add("postgresql")
    tap.add("qgis", depends=[{"postgresql": "recommended"}])
    installer.install(["qgis"], ["without-postgresql"])
    assert store.get("core/qgis").options == ["without-postgresql"]
    assert store.get("core/postgresql") is None
    # same request again is a no-op, a different one is not
    assert installer.resolve(["qgis"], ["without-postgresql"]).get("core/qgis").status == SKIPPED
    assert installer.resolve(["qgis"]).get("core/qgis").status != SKIPPED


def test_caveats_reported(tap, installer):
    tap.add("pg", caveats="Run initdb before first use.")
    report = installer.install(["pg"])
    assert report.outcomes[0].caveats == "Run initdb before first use."


def test_uninstall_refuses_with_dependents(tap, installer, store):
    tap.add("zlib")
    tap.add("libpng", depends=["zlib"])
    installer.install(["libpng"])
    with pytest.raises(UninstallError) as exc:
        installer.uninstall("zlib")
    assert "core/libpng" in str(exc.value)
    assert exc.value.remediation

    prefix = store.get("core/libpng").prefix
    installer.uninstall("libpng")
    assert not os.path.exists(prefix)
    assert not os.path.exists(os.path.dirname(prefix))
    installer.uninstall("core/zlib")
    assert store.all() == []


def test_uninstall_force(tap, installer, store):
    tap.add("zlib")
    tap.add("libpng", depends=["zlib"])
    installer.install(["libpng"])
    installer.uninstall("zlib", force=True)
    assert store.get("core/zlib") is None


def test_uninstall_unknown(installer):
    with pytest.raises(UninstallError):
        installer.uninstall("ghost")


def test_removable_build_dependencies(tap, installer):
    tap.add("cmake")
    tap.add("hdf5", depends=[{"cmake": "build"}])
    installer.install(["hdf5"])
    assert [r.name for r in installer.removable_build_dependencies()] == ["core/cmake"]
