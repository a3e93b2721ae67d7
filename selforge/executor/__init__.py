"""Action executor — directive decoding and the single writer of agent state."""
