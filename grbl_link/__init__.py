"""grbl-link: command dispatch and connection health for GRBL controllers."""

__version__ = "0.1.0"

__all__ = ["__version__"]
