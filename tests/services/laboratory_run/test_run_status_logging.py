from __future__ import annotations

import logging

import pytest

from easy_genomics.logging_utils import configure_logging


def test_configure_logging_only_sets_level_when_root_has_handlers(monkeypatch: pytest.MonkeyPatch) -> None:
    root = logging.getLogger()
    handler = logging.NullHandler()
    monkeypatch.setattr(root, "handlers", [handler])
    previous = root.level
    try:
        configure_logging("debug")
        assert root.level == logging.DEBUG
        assert root.handlers == [handler]
        configure_logging("not-a-level")
        assert root.level == logging.INFO
    finally:
        root.setLevel(previous)
