"""Shared fixtures for forkguard tests."""

import pytest


class FakeRunner:
    """CommandRunner replaying scripted results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: list[list[str]] = []

    def run(self, args, consume_line):
        self.calls.append(list(args))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        exit_code, lines = result
        for line in lines:
            consume_line(line)
        return exit_code


@pytest.fixture
def fake_runner():
    """Factory for FakeRunner instances."""
    return FakeRunner
