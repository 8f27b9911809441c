"""Problem analysis: delegate a failure to an agent or escalate it to a human."""
