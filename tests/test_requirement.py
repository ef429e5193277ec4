import pytest
from conftest import FakeProbe

from cellar.modules.errors import ParseError
from cellar.modules.requirement import RequirementChecker, RequirementSpec


def test_invalid_check_reference():
    with pytest.raises(ParseError):
        RequirementSpec("x", "nonsense")
    with pytest.raises(ParseError):
        RequirementSpec("x", "unknown-kind:foo")
    with pytest.raises(ParseError):
        RequirementSpec.from_dict({"name": "x"})


def test_round_trip_dict():
    spec = RequirementSpec.from_dict({"name": "PyQt", "check": "python-import:PyQt4",
                                      "fatal": False, "message": "brew install pyqt"})
    assert spec.kind == "python-import"
    assert spec.argument == "PyQt4"
    assert RequirementSpec.from_dict(spec.to_dict()).to_dict() == spec.to_dict()


@pytest.mark.parametrize("check,probe,expected", [
    ("executable:gfortran", FakeProbe(executables=["gfortran"]), True),
    ("executable:gfortran", FakeProbe(), False),
    ("env:JAVA_HOME", FakeProbe(env={"JAVA_HOME": "/opt/java"}), True),
    ("env:JAVA_HOME", FakeProbe(env={"JAVA_HOME": ""}), False),
    ("path:/opt/X11", FakeProbe(paths=["/opt/X11"]), True),
    ("python-import:numpy", FakeProbe(modules=["numpy"]), True),
    ("python-import:numpy", FakeProbe(), False),
    ("command:pkg-config --exists gtk", FakeProbe(commands=["pkg-config --exists gtk"]), True),
])
def test_check_kinds(check, probe, expected):
    checker = RequirementChecker(probe, python="python3")
    assert checker.satisfied(RequirementSpec("req", check)) is expected


def test_python_import_uses_configured_interpreter():
    probe = FakeProbe(modules=["numpy"])
    RequirementChecker(probe, python="/opt/py/bin/python").satisfied(
        RequirementSpec("numpy", "python-import:numpy"))
    assert probe.calls == [("run", ["/opt/py/bin/python", "-c", "import numpy"])]


def test_each_check_evaluated_once():
    probe = FakeProbe(executables=["cmake"])
    checker = RequirementChecker(probe)
    first = RequirementSpec("cmake", "executable:cmake")
    second = RequirementSpec("CMake (again)", "executable:cmake")
    assert checker.satisfied(first)
    assert checker.satisfied(second)
    assert probe.calls == [("which", "cmake")]
    assert checker.evaluated() == ["executable:cmake"]
