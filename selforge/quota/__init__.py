"""Admission control — per-identity request and token ceilings for model calls."""
