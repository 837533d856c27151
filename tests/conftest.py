"""Shared pytest fixtures for Variation Guard tests."""

import os
import shutil
import tempfile
from typing import Generator, List, Union

import pytest

from variation_guard.core.dispatcher import GenerationCall, ImageGenerator
from variation_guard.core.errors import UpstreamUnavailable
from variation_guard.storage.repository import initialize_schema


class ScriptedGenerator(ImageGenerator):
    """Generator returning a scripted result per call, in call order.

    Each script entry is either image bytes or an exception to raise.
    """

    def __init__(self, script: List[Union[bytes, Exception]], unavailable: bool = False):
        self.script = list(script)
        self.unavailable = unavailable
        self.calls: List[GenerationCall] = []

    def ensure_available(self) -> None:
        if self.unavailable:
            raise UpstreamUnavailable("Image generation service unavailable: OPENAI_API_KEY is not set")

    def generate(self, source_image: bytes, call: GenerationCall) -> bytes:
        self.calls.append(call)
        result = self.script.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class CountingPacer:
    """Pacer that records pauses instead of sleeping."""

    def __init__(self):
        self.pauses = 0

    def pause(self) -> None:
        self.pauses += 1


@pytest.fixture
def temp_dir() -> Generator[str, None, None]:
    """Temporary directory removed after the test."""
    path = tempfile.mkdtemp()
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def db_path(temp_dir: str) -> str:
    """Initialized SQLite database in a temporary directory."""
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    return path


@pytest.fixture
def scripted_generator():
    """Factory for ScriptedGenerator instances."""
    return ScriptedGenerator


@pytest.fixture
def counting_pacer() -> CountingPacer:
    return CountingPacer()
