"""Claude Code CLI integration: subprocess runner, stream parsing, retry policy."""
