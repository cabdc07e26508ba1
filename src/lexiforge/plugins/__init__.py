"""Pluggable collaborators of the pipeline."""
