"""Shared fixtures: scratch directories and stub MATLAB executables."""

import os
import stat
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from matlab_engine import EngineConfig, MatlabGateway


@pytest.fixture
def scratch_dir(tmp_path):
    return str(tmp_path / "scratch")


@pytest.fixture
def make_stub(tmp_path):
    """Write an executable POSIX shell script standing in for ``matlab``."""
    def _make(body: str, name: str = "fake_matlab") -> str:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)
    return _make


@pytest.fixture
def make_gateway(scratch_dir):
    def _make(executable: str = "matlab", pause_seconds: int = 1) -> MatlabGateway:
        return MatlabGateway(EngineConfig(
            executable_path=executable,
            scratch_dir=scratch_dir,
            pause_seconds=pause_seconds,
        ))
    return _make
