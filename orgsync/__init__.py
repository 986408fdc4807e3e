"""orgsync: resumable GitHub organisation sync.

Walks paginated GitHub REST listings (members, teams, repositories and their
cross-relations), paces requests to stay under rate limits, persists progress
so an interrupted pull can resume, and replaces rows in a local SQLite store
inside transactions.
"""

__version__ = "0.3.0"
