"""Thin wrappers over the external collaborators.

Each adapter implements one of the protocols in
`event_orchestrator.orchestrator.context` so the engine never talks to a
third-party client directly.
"""
