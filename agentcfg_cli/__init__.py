"""Post-deployment agent configuration CLI.

The command surface is implemented with Typer and Rich for better help and
error ergonomics, while run summaries can also be emitted as machine-friendly
JSON for pipeline consumption.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
