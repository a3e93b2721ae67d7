"""Orchestration kernel — status transitions, tick scheduling and the actor cycle."""
