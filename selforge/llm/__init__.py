"""Model backends behind the actor invocation boundary."""
