"""Tasks and the task dependency graph."""
