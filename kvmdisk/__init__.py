"""kvmdisk package."""

__all__ = [
    "cleanup",
    "cli",
    "config",
    "constants",
    "exceptions",
    "host",
    "models",
    "pipeline",
    "preflight",
    "runner",
    "tracker",
    "utils",
    "vm",
]
