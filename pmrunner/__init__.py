"""PM Runner - fail-closed supervisor for external coding-agent CLIs.

Runs an untrusted agent CLI as a subprocess, streams its output to live
subscribers, and only reports completion when file-system evidence proves it.
"""

__version__ = "0.1.0"
