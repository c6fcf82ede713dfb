"""
IssuePilot: issue lifecycle state machine and VM-backed task orchestrator.
"""

from issuepilot.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
