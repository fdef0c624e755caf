"""Allow running the engine via ``python -m routine_engine``."""

from routine_engine.main import cli

cli()
