"""Supervisory control loop for outcome-scoped task execution.

One invocation runs per completed task: the observer turns raw worker output
into an ``Observation``, steering reacts with context injections and
corrective tasks, and the escalator pauses affected work behind a structured
question until a human (or the auto-resolver) answers it.
"""
