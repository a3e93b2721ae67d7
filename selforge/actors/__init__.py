"""Cognitive actors — prompt templates, the tag parser and the actor calls."""
