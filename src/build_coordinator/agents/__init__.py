"""Agent registry and CLI agent execution for engine steps."""
