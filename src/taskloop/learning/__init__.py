"""Feedback learning: episodes from rated tasks, rules distilled from episodes.

Human ratings become episodes, batches of episodes become scoped rules with a
confidence score, and the rules relevant to a task are injected into the
agent prompt before it runs.
"""
