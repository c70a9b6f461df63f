"""Projects that own tasks."""
