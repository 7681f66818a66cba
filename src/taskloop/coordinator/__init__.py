"""Task queue coordinator for a long-running CLI execution agent.

Why a SQLite table instead of a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Tasks are few, long-lived and human-facing: a single run may take an hour
and an idea can bounce between the agent and a person for days. What has to
be right is ownership of a task while an agent works on it, and that is
handled with a conditional ``UPDATE`` plus a claim token re-read afterwards.
Several coordinators may share one database file; nothing else in the
system needs to know they exist.
"""
