"""Collaborators that gather release data from external systems.

These modules talk to git, the issue tracker and the feature-flag service
and hand the results back as the models in ``release_report.schemas``.
"""
