"""Rich terminal output for the pmrunner CLI."""

from pmrunner.cli_ui.renderer import LiveOutputPrinter, ResultRenderer

__all__ = ["LiveOutputPrinter", "ResultRenderer"]
