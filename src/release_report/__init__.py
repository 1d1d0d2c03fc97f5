"""Release report builder.

Assembles a markdown release report from git history and an issue tracker,
annotating every story with its review status and feature-flag state.
"""

__version__ = "0.1.0"
