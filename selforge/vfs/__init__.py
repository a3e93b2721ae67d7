"""In-memory source tree with a syntax-gated commit path."""
