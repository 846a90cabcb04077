"""Workflow domain concepts.

This package holds first-class types and operations for:
- Events and case-file rules
- Action dispatch (notify, backend call, workflow control)
- Jobs and their status machine
- Condition checks guarding job resumption
"""

__all__: list[str] = []
