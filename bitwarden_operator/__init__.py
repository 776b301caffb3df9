"""Kubernetes operator that materializes Bitwarden vault items as Secrets."""

from bitwarden_operator.__version__ import __version__

__all__ = ["__version__"]
