"""Development plan markdown: extraction, parsing and codebase analysis."""
