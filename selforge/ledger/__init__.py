"""Version ledger — append-only history of accepted code snapshots."""
