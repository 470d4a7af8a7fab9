"""Module entrypoint for python -m velociraptor_deployer."""

from __future__ import annotations

import logging

from velociraptor_deployer.cli import app
from velociraptor_deployer.logging_utils import JsonLogFormatter


def _configure_json_logging() -> None:
    """Configure root logger to use JSON formatter when module is invoked directly."""
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonLogFormatter())
        root.addHandler(handler)
        root.setLevel(logging.INFO)


if __name__ == "__main__":
    _configure_json_logging()
    app()
