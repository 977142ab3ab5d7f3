"""Workflow compilation and execution."""
