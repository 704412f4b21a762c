"""Tests that the data files the program loads at runtime are shipped"""

from importlib.resources import files
from pathlib import Path

import tomllib

PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def load_pyproject():
    with PYPROJECT.open("rb") as f:
        return tomllib.load(f)


def test_data_package_is_declared():
    setuptools = load_pyproject()["tool"]["setuptools"]
    assert "therapeia_data" in setuptools["packages"]
    assert set(setuptools["package-data"]["therapeia_data"]) == {"therapeia_operations.toml", "templates/*.j2"}


def test_declared_data_files_exist():
    data = files("therapeia_data")
    assert (data / "therapeia_operations.toml").is_file()
    assert (data / "templates" / "report.md.j2").is_file()
    assert (data / "templates" / "report.html.j2").is_file()


def test_every_module_is_installed():
    root = PYPROJECT.parent
    modules = set(load_pyproject()["tool"]["setuptools"]["py-modules"])
    assert modules == {p.stem for p in root.glob("*.py")}
