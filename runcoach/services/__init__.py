"""Workout, analysis, roadmap and storage services."""
