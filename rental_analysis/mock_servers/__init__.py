"""Mock analysis server for local runs and tests."""

from .app import create_app, create_mock_app, run

__all__ = ["create_app", "create_mock_app", "run"]
