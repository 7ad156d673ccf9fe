"""
School voting API service.

Voter-facing and admin-facing HTTP endpoints over a single-school election,
with best-effort duplicate-vote prevention (fingerprint + IP lookup + UNIQUE
constraint).
"""

__version__ = '1.0.0'
