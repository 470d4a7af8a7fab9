"""Deployment orchestration and service lifecycle management for Velociraptor."""

from __future__ import annotations

__version__ = "0.1.0"
