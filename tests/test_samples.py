"""Run every program under tests/samples and compare against its .out file."""

import glob
import os

import pytest

from tests.conftest import make_interpreter

SAMPLES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "samples")
PROGRAMS = sorted(glob.glob(os.path.join(SAMPLES_DIR, "*.false")))


def _read_bytes(path):
    if not os.path.exists(path):
        return b""
    with open(path, "rb") as handle:
        return handle.read()


@pytest.mark.parametrize("path", PROGRAMS, ids=[os.path.basename(p) for p in PROGRAMS])
def test_sample_program(path):
    stem = os.path.splitext(path)[0]
    with open(path, "r", encoding="utf-8") as handle:
        source = handle.read()
    interpreter, console = make_interpreter(source, _read_bytes(stem + ".in"), filename=path)
    interpreter.run()
    assert console.text == _read_bytes(stem + ".out").decode("utf-8")


def test_samples_present():
    assert len(PROGRAMS) >= 5
