"""Learned memories — the lessons every actor is prompted with."""
