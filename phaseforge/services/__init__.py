"""Orchestration helpers built on the operations."""
