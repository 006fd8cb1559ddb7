"""
conftest.py — Shared fixtures for controlfreak tests.
"""
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Ensure the parent directory is on sys.path so we can import the main module
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

# Keep test-run log files out of the source tree
os.environ.setdefault("CONTROLFREAK_LOG_DIR", tempfile.mkdtemp(prefix="controlfreak_logs_"))

import controlfreak as cf


@pytest.fixture
def blank_image() -> bytearray:
    """An 8KB image in the erased (all 0xFF) state."""
    return bytearray(b'\xFF' * cf.IMAGE_LENGTH)


@pytest.fixture
def butter() -> cf.Program:
    return cf.Program(
        "Butter (Clarified)", 240, cf.PowerLevel.SLOW, cf.Timer(0, 20, 0),
        cf.TimerStart.AT_SET_TEMPERATURE, cf.AfterTimer.KEEP_WARM,
    )


@pytest.fixture
def carrots() -> cf.Program:
    return cf.Program("Carrots (Caramelize)", 300, cf.PowerLevel.MEDIUM)


@pytest.fixture
def boiling() -> cf.Alarm:
    return cf.Alarm("Boiling", 212)


@pytest.fixture
def sample_lines() -> list:
    return [
        "Carrots (Caramelize) | 300 | Medium | no timer",
        "Butter (Clarified) | 240 | Slow | 0:20:00 | At Set Temperature | Keep Warm",
        "",
        "Boiling | 212",
    ]


@pytest.fixture
def sample_text_path(sample_lines, tmp_path) -> Path:
    p = tmp_path / "sample.txt"
    p.write_text("\n".join(sample_lines) + "\n")
    return p


@pytest.fixture
def sample_image_path(butter, carrots, boiling, tmp_path) -> Path:
    p = tmp_path / "SAMPLE.FA1"
    p.write_bytes(cf.encode_image([butter, carrots], [boiling]))
    return p
