"""Workspace runtime: discovery, reconciliation and supervised execution."""
